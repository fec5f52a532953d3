# ws_manager.py
import asyncio
import itertools
import json
import logging
import re
from typing import Callable, Dict, Optional, Tuple

import socketio
import websockets
from pydantic import ValidationError

from delivery_sync import config
from delivery_sync.metrics import PUSH_EVENTS_APPLIED, PUSH_EVENTS_IGNORED
from delivery_sync.order_cache import OrderCache
from delivery_sync.schemas import Order

logger = logging.getLogger("delivery-sync.ws")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s"))
    logger.addHandler(handler)

PushHandler = Callable[[str, dict], None]

# Socket.IO EVENT packet as text, optionally behind the engine.io message prefix: 42/ns,id["event",data]
_SOCKETIO_EVENT = re.compile(r"^4?2(?:/[^,\[]*,)?\d*(\[.*\])$", re.DOTALL)


# -------------------------------
# Frame parser
# -------------------------------
def parse_push_message(raw) -> Tuple[Optional[str], dict]:
    """
    Normalize a push frame to (event_type, payload_dict).

    Accepts {"type"|"event_type"|"event": ..., "data"|"payload"|"detail": ...},
    a bare order record, or a Socket.IO event ["event", data] (raw or decoded).
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        match = _SOCKETIO_EVENT.match(raw.strip())
        if match:
            raw = match.group(1)
        try:
            msg = json.loads(raw)
        except ValueError:
            return None, {}
    else:
        msg = raw

    if isinstance(msg, list):
        if not msg or not isinstance(msg[0], str):
            return None, {}
        msg = {"type": msg[0], "data": msg[1] if len(msg) > 1 else {}}

    if not isinstance(msg, dict):
        return None, {}

    event_type = msg.get("type") or msg.get("event_type") or msg.get("event")
    payload = msg.get("data") or msg.get("payload") or msg.get("detail")
    if payload is None:
        payload = {k: v for k, v in msg.items() if k not in ("type", "event_type", "event")}
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError:
            payload = {}
    if isinstance(payload, dict) and isinstance(payload.get("order"), dict):
        payload = payload["order"]

    # Bare order records are order-changed events
    if event_type is None and isinstance(payload, dict) and "id" in payload and "status" in payload:
        event_type = "orders_update"

    return (
        event_type.lower() if isinstance(event_type, str) else None,
        payload if isinstance(payload, dict) else {},
    )


class Subscription:
    def __init__(self, channel: "PushChannel", key: int):
        self._channel = channel
        self._key = key
        self.active = True

    def cancel(self):
        if self.active:
            self._channel._unsubscribe(self._key)
            self.active = False


class PushChannel:
    """
    One long-lived connection to the push service, shared by every dashboard.

    Speaks Socket.IO to http(s) URLs and plain websocket frames to ws(s) URLs,
    unless `transport` says otherwise. Reconnects on its own with exponential
    backoff; subscriptions are held by the channel, so a reconnect never
    duplicates them.
    """

    def __init__(self, url: Optional[str] = None, event_types=None, connect=None,
                 backoff_initial: float = 1.0, backoff_max: float = 8.0,
                 transport: Optional[str] = None, client_factory=None):
        self.url = url or config.PUSH_CHANNEL_URL
        self.event_types = set(event_types or config.ORDER_EVENT_TYPES)
        self.transport = (transport or config.PUSH_TRANSPORT
                          or ("websocket" if self.url.startswith(("ws://", "wss://")) else "socketio"))
        self._connect = connect or websockets.connect
        self._client_factory = client_factory or (lambda: socketio.AsyncClient(reconnection=False))
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self._subscribers: Dict[int, PushHandler] = {}
        self._keys = itertools.count(1)
        self._task: Optional[asyncio.Task] = None
        self.connected = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, handler: PushHandler) -> Subscription:
        key = next(self._keys)
        self._subscribers[key] = handler
        logger.info(f"[WS] Subscriber added ({len(self._subscribers)} active)")
        return Subscription(self, key)

    def _unsubscribe(self, key: int):
        self._subscribers.pop(key, None)
        logger.info(f"[WS] Subscriber removed ({len(self._subscribers)} active)")

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="push-channel")

    async def close(self):
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.connected = False

    def dispatch(self, raw):
        """Fan a raw frame out to the current subscribers."""
        event_type, payload = parse_push_message(raw)
        if event_type not in self.event_types:
            logger.debug(f"[WS] Ignoring frame of type {event_type}")
            return
        for key, handler in list(self._subscribers.items()):
            if key not in self._subscribers:
                continue
            try:
                handler(event_type, payload)
            except Exception:
                logger.exception("[WS] Subscriber failed to handle event")

    def _relay(self, event_type: str):
        def handle(*args):
            self.dispatch({"type": event_type, "data": args[0] if args else {}})
        return handle

    async def _run(self):
        if self.transport == "socketio":
            await self._run_socketio()
        else:
            await self._run_websocket()

    async def _run_websocket(self):
        backoff = self.backoff_initial
        while True:
            try:
                logger.info(f"[WS] Connecting to push channel: {self.url}")
                async with self._connect(self.url) as ws:
                    self.connected = True
                    backoff = self.backoff_initial
                    logger.info(f"[WS] Connected to push channel: {self.url}")
                    async for msg in ws:
                        self.dispatch(msg)
                logger.info("[WS] Push channel closed by server, reconnecting")
            except asyncio.CancelledError:
                self.connected = False
                raise
            except Exception as e:
                logger.warning(f"[WS] Push channel error, reconnecting in {backoff:.1f}s → {e}")
            self.connected = False
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self.backoff_max)

    async def _run_socketio(self):
        backoff = self.backoff_initial
        while True:
            client = self._client_factory()
            for event_type in self.event_types:
                client.on(event_type, self._relay(event_type))
            try:
                logger.info(f"[WS] Connecting to push channel (socket.io): {self.url}")
                await client.connect(self.url)
                self.connected = True
                backoff = self.backoff_initial
                logger.info(f"[WS] Connected to push channel: {self.url}")
                await client.wait()
                logger.info("[WS] Push channel closed by server, reconnecting")
            except asyncio.CancelledError:
                self.connected = False
                await client.disconnect()
                raise
            except Exception as e:
                logger.warning(f"[WS] Push channel error, reconnecting in {backoff:.1f}s → {e}")
                await client.disconnect()
            self.connected = False
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self.backoff_max)


class PushSynchronizer:
    """
    Keeps one dashboard's OrderCache in step with the push channel.

    Every order-changed event becomes an upsert submitted to the dashboard's
    mutation queue. After stop() nothing reaches the cache any more, not even
    events that were already queued.
    """

    def __init__(self, channel: PushChannel, cache: OrderCache, submit: Callable[[Callable[[], None]], None],
                 view: str = "dashboard", accepts: Optional[Callable[[Order], bool]] = None):
        self.channel = channel
        self.cache = cache
        self.submit = submit
        self.view = view
        self.accepts = accepts
        self._subscription: Optional[Subscription] = None
        self._closed = False

    @property
    def active(self) -> bool:
        return self._subscription is not None and self._subscription.active and not self._closed

    def start(self):
        if self._closed:
            raise RuntimeError("synchronizer was stopped; mount a new dashboard instead")
        if self.active:
            return
        self._subscription = self.channel.subscribe(self._on_event)
        logger.info(f"[PUSH] {self.view} subscribed")

    def stop(self):
        self._closed = True
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
            logger.info(f"[PUSH] {self.view} unsubscribed")

    def _on_event(self, event_type: str, payload: dict):
        if self._closed:
            return
        try:
            order = Order.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"[PUSH] Malformed {event_type} event ignored: {e.errors()[:1]}")
            PUSH_EVENTS_IGNORED.labels(view=self.view, reason="malformed").inc()
            return
        if self.accepts is not None and not self.accepts(order):
            PUSH_EVENTS_IGNORED.labels(view=self.view, reason="out_of_scope").inc()
            return
        self.submit(lambda: self._apply(order))

    def _apply(self, order: Order):
        if self._closed:
            return
        changed = self.cache.upsert(order)
        PUSH_EVENTS_APPLIED.labels(view=self.view).inc()
        if changed:
            logger.info(f"[PUSH] {self.view} order {order.id} → {order.status.value}")
