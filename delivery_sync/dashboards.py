# dashboards.py
import asyncio
import collections
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

from delivery_sync import config
from delivery_sync.assignment import AssignmentOrchestrator
from delivery_sync.clients import FleetServiceClient, OrderServiceClient, QueryGatewayClient
from delivery_sync.errors import ServiceError
from delivery_sync.lifecycle import is_active
from delivery_sync.metrics import ACTIVE_DASHBOARDS
from delivery_sync.order_cache import OrderCache
from delivery_sync.reconcile import Reconciler
from delivery_sync.schemas import DashboardSnapshot, Order, OrderDraft, OrderStatus, Session
from delivery_sync.ws_manager import PushChannel, PushSynchronizer

logger = logging.getLogger("delivery-sync.dashboards")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s"))
    logger.addHandler(handler)

DRIVER_AVAILABLE = config.DRIVER_AVAILABLE_STATUS
DRIVER_UNAVAILABLE = config.DRIVER_UNAVAILABLE_STATUS
# Both spellings of "available" seen on fleet profiles
AVAILABLE_STATUSES = {"AVAILABLE", "DISPONIBLE", DRIVER_AVAILABLE.upper()}

Mutation = Callable[[], None]


class MutationQueue:
    """
    Serialises every cache mutation of one dashboard on a single worker task.

    Mutations are plain callables and run to completion one at a time. The
    queue starts paused so pushes received during the initial fetch wait
    behind it.
    """

    def __init__(self, name: str):
        self.name = name
        self._pending = collections.deque()
        self._wakeup = asyncio.Event()
        self._worker: Optional[asyncio.Task] = None
        self._closed = False

    def submit(self, mutation: Mutation, first: bool = False):
        if self._closed:
            return
        if first:
            self._pending.appendleft(mutation)
        else:
            self._pending.append(mutation)
        self._wakeup.set()

    def start(self):
        if self._worker is None and not self._closed:
            self._worker = asyncio.create_task(self._run(), name=f"mutations-{self.name}")

    async def drain(self):
        """Wait until everything submitted so far has been applied."""
        while self._pending and self._worker is not None and not self._worker.done():
            await asyncio.sleep(0)

    async def close(self):
        self._closed = True
        self._pending.clear()
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

    async def _run(self):
        while True:
            while self._pending:
                mutation = self._pending.popleft()
                try:
                    mutation()
                except Exception:
                    logger.exception(f"[{self.name}] Cache mutation failed")
            self._wakeup.clear()
            await self._wakeup.wait()


class Dashboard:
    """
    A mounted role-scoped view: one OrderCache, one push subscription, one
    mutation queue and the background tasks scheduled on its behalf.
    """

    view = "dashboard"

    def __init__(self, session: Session, channel: PushChannel, orders: OrderServiceClient,
                 reconcile_delay: Optional[float] = None):
        self.session = session
        self.channel = channel
        self.orders = orders
        self.cache = OrderCache()
        self.queue = MutationQueue(self.view)
        self.sync = PushSynchronizer(channel, self.cache, self.queue.submit, view=self.view, accepts=self.accepts)
        self.reconciler = Reconciler(self.cache, self.schedule, self.refresh, delay=reconcile_delay)
        self.mounted = False
        self._tasks: Set[asyncio.Task] = set()

    # -------------------------
    # Lifecycle
    # -------------------------
    async def mount(self):
        if self.mounted:
            return
        self.mounted = True
        ACTIVE_DASHBOARDS.labels(view=self.view).inc()

        # Subscribe first: events arriving during the fetch queue up behind it
        self.sync.start()
        try:
            orders = await self.fetch_orders()
        except ServiceError:
            await self.unmount()
            raise
        if not self.mounted:
            return
        self.queue.submit(lambda: self.cache.replace_all(orders), first=True)
        self.queue.start()
        await self.queue.drain()
        logger.info(f"[{self.view}] Mounted for {self.session.display_name} with {len(self.cache)} orders")

    async def unmount(self):
        if not self.mounted:
            return
        self.mounted = False
        self.sync.stop()
        self.reconciler.cancel_all()
        tasks, self._tasks = list(self._tasks), set()
        for task in tasks:
            task.cancel()
        await self.queue.close()
        self.cache.clear()
        ACTIVE_DASHBOARDS.labels(view=self.view).dec()
        logger.info(f"[{self.view}] Unmounted")

    async def __aenter__(self):
        await self.mount()
        return self

    async def __aexit__(self, *exc):
        await self.unmount()

    # -------------------------
    # Background work
    # -------------------------
    def schedule(self, delay: float, factory: Callable[[], Awaitable[None]]) -> Optional[asyncio.Task]:
        """Run `factory()` after `delay` seconds unless the dashboard unmounts first."""
        if not self.mounted:
            return None

        async def runner():
            await asyncio.sleep(delay)
            if self.mounted:
                await factory()

        task = asyncio.create_task(runner())
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[{self.view}] Background task failed: {exc}")

    async def refresh(self):
        """Full re-fetch, applied through the mutation queue."""
        orders = await self.fetch_orders()
        if not self.mounted:
            return
        self.queue.submit(lambda: self.cache.replace_all(orders))
        await self.queue.drain()

    # -------------------------
    # View contract
    # -------------------------
    async def fetch_orders(self) -> List[Order]:
        raise NotImplementedError

    def accepts(self, order: Order) -> bool:
        return True

    def summary(self) -> dict:
        return {}

    def snapshot(self) -> DashboardSnapshot:
        return DashboardSnapshot(
            view=self.view,
            role=self.session.role,
            orders=self.cache.snapshot(),
            summary=self.summary(),
        )


# --------------------------------------------------
# Requester
# --------------------------------------------------
class RequesterDashboard(Dashboard):
    view = "client"

    async def fetch_orders(self) -> List[Order]:
        if self.session.subject_id is None:
            logger.warning("[client] Token carries no requester id, nothing to load")
            return []
        orders = await self.orders.list_orders_for_requester(self.session.token, self.session.subject_id)
        return list(reversed(orders))

    def accepts(self, order: Order) -> bool:
        return order.client_id is not None and str(order.client_id) == str(self.session.subject_id)

    async def create_order(self, description: str, delivery_location: str, pickup_location: Optional[str] = None,
                           latitude: Optional[float] = None, longitude: Optional[float] = None) -> Optional[Order]:
        draft = OrderDraft(
            client_id=self.session.subject_id,
            description=description,
            pickup_location=pickup_location,
            delivery_location=delivery_location,
            latitude=latitude if latitude is not None else config.DEFAULT_LATITUDE,
            longitude=longitude if longitude is not None else config.DEFAULT_LONGITUDE,
        )
        created = await self.orders.create_order(self.session.token, draft)
        if created is not None:
            logger.info(f"[client] Order {created.id} created")
            self.reconciler.expect(created.id, lambda o: True)
        else:
            self.schedule(self.reconciler.delay, self.refresh)
        return created

    def summary(self) -> dict:
        return status_counts(self.cache.snapshot())


# --------------------------------------------------
# Driver
# --------------------------------------------------
async def resolve_driver_identity(fleet: FleetServiceClient, session: Session) -> Dict[str, object]:
    """
    Find the driver profile behind the session and its assigned vehicle.

    Profiles spell the user correlation field as userId or user_id; both are
    handled by DriverProfile.from_wire. Missing profile or vehicle is not an
    error: the driver just cannot take orders.
    """
    identity = {"driver_id": None, "vehicle_id": None, "online": False}
    if session.subject_id is None:
        return identity

    drivers = await fleet.list_drivers(session.token)
    profile = next((d for d in drivers if d.user_id is not None and str(d.user_id) == str(session.subject_id)), None)
    if profile is None:
        logger.warning(f"[driver] No driver profile for user {session.subject_id}")
        return identity

    identity["driver_id"] = profile.id
    identity["online"] = (profile.status or "").upper() in AVAILABLE_STATUSES

    vehicle = await fleet.get_assigned_vehicle(session.token, profile.id)
    if vehicle is None:
        logger.warning(f"[driver] Driver {profile.id} has no assigned vehicle")
    else:
        identity["vehicle_id"] = vehicle.id
    return identity


class DriverDashboard(Dashboard):
    view = "driver"

    def __init__(self, session: Session, channel: PushChannel, orders: OrderServiceClient,
                 fleet: FleetServiceClient, identity_cache: Optional[Dict[str, dict]] = None,
                 reconcile_delay: Optional[float] = None):
        super().__init__(session, channel, orders, reconcile_delay=reconcile_delay)
        self.fleet = fleet
        self.identity_cache = identity_cache if identity_cache is not None else {}
        self.driver_id = None
        self.online = False
        self.orchestrator = AssignmentOrchestrator(session, orders, self.cache, self.reconciler)

    @property
    def vehicle_id(self):
        return self.orchestrator.vehicle_id

    async def mount(self):
        identity = self.identity_cache.get(self.session.token)
        if identity is None:
            try:
                identity = await resolve_driver_identity(self.fleet, self.session)
            except ServiceError as e:
                logger.error(f"[driver] Could not resolve driver profile: {e}")
                identity = None
            else:
                self.identity_cache[self.session.token] = identity
        if identity:
            self.driver_id = identity["driver_id"]
            self.online = identity["online"]
            self.orchestrator.vehicle_id = identity["vehicle_id"]
        await super().mount()

    async def fetch_orders(self) -> List[Order]:
        orders = await self.orders.list_orders(self.session.token)
        return list(reversed(orders))

    async def update_order_status(self, order_id, status):
        await self.orchestrator.transition(order_id, status)

    async def retry_status(self, order_id):
        await self.orchestrator.retry_status(order_id)

    async def toggle_availability(self) -> bool:
        if self.driver_id is None:
            raise ServiceError("fleet-service", "No driver profile for this session")
        new_status = DRIVER_UNAVAILABLE if self.online else DRIVER_AVAILABLE
        await self.fleet.set_driver_availability(self.session.token, self.driver_id, new_status)
        self.online = not self.online
        identity = self.identity_cache.get(self.session.token)
        if identity is not None:
            identity["online"] = self.online
        logger.info(f"[driver] Driver {self.driver_id} is now {new_status}")
        return self.online

    def pending_orders(self) -> List[Order]:
        return self.cache.filter(lambda o: o.status == OrderStatus.PENDING)

    def my_orders(self) -> List[Order]:
        if self.vehicle_id is None:
            return []
        return self.cache.filter(lambda o: o.vehicle_id is not None and str(o.vehicle_id) == str(self.vehicle_id))

    def active_order(self) -> Optional[Order]:
        return next((o for o in self.my_orders() if is_active(o.status)), None)

    def delivered_count(self) -> int:
        return sum(1 for o in self.my_orders() if o.status == OrderStatus.DELIVERED)

    def summary(self) -> dict:
        active = self.active_order()
        return {
            "driver_id": self.driver_id,
            "vehicle_id": self.vehicle_id,
            "online": self.online,
            "pending": len(self.pending_orders()),
            "active_order_id": active.id if active else None,
            "delivered": self.delivered_count(),
            "awaiting_status_retry": [p.order_id for p in self.orchestrator.partial_assignments()],
        }


# --------------------------------------------------
# Supervisor
# --------------------------------------------------
class SupervisorDashboard(Dashboard):
    view = "admin"

    def __init__(self, session: Session, channel: PushChannel, orders: OrderServiceClient,
                 gateway: QueryGatewayClient, reconcile_delay: Optional[float] = None):
        super().__init__(session, channel, orders, reconcile_delay=reconcile_delay)
        self.gateway = gateway

    async def fetch_orders(self) -> List[Order]:
        orders = await self.gateway.fetch_orders_overview(self.session.token)
        return list(reversed(orders))

    def summary(self) -> dict:
        return status_counts(self.cache.snapshot())


def status_counts(orders: List[Order]) -> dict:
    counts = {status.value: 0 for status in OrderStatus}
    for order in orders:
        counts[order.status.value] += 1
    counts["total"] = len(orders)
    counts["in_progress"] = counts[OrderStatus.ASSIGNED.value] + counts[OrderStatus.IN_TRANSIT.value]
    return counts
