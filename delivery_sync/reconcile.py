# reconcile.py
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple

from delivery_sync import config
from delivery_sync.order_cache import OrderCache
from delivery_sync.schemas import Order

logger = logging.getLogger("delivery-sync.reconcile")

OrderPredicate = Callable[[Order], bool]
Scheduler = Callable[[float, Callable[[], Awaitable[None]]], Optional[asyncio.Task]]


class Reconciler:
    """
    Waits for the push event that confirms a mutation the dashboard made.

    If it has not shown up after `delay` seconds, one full re-fetch runs
    instead. Fallbacks are tasks created through the dashboard's scheduler,
    so unmounting the dashboard cancels them.
    """

    def __init__(self, cache: OrderCache, schedule: Scheduler, refresh: Callable[[], Awaitable[None]],
                 delay: Optional[float] = None):
        self.cache = cache
        self.schedule = schedule
        self.refresh = refresh
        self.delay = delay if delay is not None else config.RECONCILE_DELAY_SECONDS
        self._pending: Dict[str, Tuple[OrderPredicate, asyncio.Task]] = {}
        cache.add_listener(self._on_change)

    @property
    def pending(self):
        return set(self._pending)

    def expect(self, order_id, predicate: OrderPredicate):
        key = str(order_id)
        self._drop(key)

        current = self.cache.get(order_id)
        if current is not None and predicate(current):
            logger.info(f"[RECONCILE] Order {order_id} already confirmed")
            return

        task = self.schedule(self.delay, lambda: self._fallback(key))
        if task is not None:
            self._pending[key] = (predicate, task)

    def cancel_all(self):
        for key in list(self._pending):
            self._drop(key)

    def _drop(self, key: str):
        entry = self._pending.pop(key, None)
        if entry is not None:
            entry[1].cancel()

    def _on_change(self, kind: str, orders):
        for order in orders:
            key = str(order.id)
            entry = self._pending.get(key)
            if entry is not None and entry[0](order):
                self._drop(key)
                logger.info(f"[RECONCILE] Order {order.id} confirmed by push ({kind})")

    async def _fallback(self, key: str):
        self._pending.pop(key, None)
        logger.warning(f"[RECONCILE] No push event for order {key}, re-fetching")
        await self.refresh()
