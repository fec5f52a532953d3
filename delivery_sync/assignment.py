# assignment.py
"""
Driver-side status transitions, including the two-step assignment saga.

The order service models "bind vehicle" and "set status" as two separate
idempotent calls, so taking an order is:

    1. PUT   /orders/{id}/assign/{vehicle}   (only when the target is ASSIGNED)
    2. PATCH /orders/{id}/status?status=...

A failed step 1 aborts everything (AssignmentFailed, order stays PENDING).
A failed step 2 leaves the vehicle bound; it is remembered as a partial
assignment and surfaced as StatusUpdateFailed so the status step can be
retried on its own.

Neither step writes to the cache. The corroborating push event does, with a
Reconciler fallback re-fetch if it never arrives.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from delivery_sync.clients import OrderServiceClient
from delivery_sync.errors import (
    AssignmentFailed,
    CapacityExceeded,
    InvalidTransition,
    ServiceError,
    StatusUpdateFailed,
)
from delivery_sync.lifecycle import is_active, validate_role_authority, validate_transition
from delivery_sync.metrics import ASSIGNMENT_OUTCOMES
from delivery_sync.order_cache import OrderCache
from delivery_sync.reconcile import Reconciler
from delivery_sync.schemas import Identifier, Order, OrderStatus, Session, parse_status

logger = logging.getLogger("delivery-sync.assignment")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s"))
    logger.addHandler(handler)


@dataclass
class PartialAssignment:
    order_id: Identifier
    vehicle_id: Identifier
    target: OrderStatus


class AssignmentOrchestrator:
    def __init__(self, session: Session, orders: OrderServiceClient, cache: OrderCache,
                 reconciler: Reconciler, vehicle_id: Optional[Identifier] = None):
        self.session = session
        self.orders = orders
        self.cache = cache
        self.reconciler = reconciler
        self.vehicle_id = vehicle_id
        self._in_flight: Dict[str, OrderStatus] = {}
        self._partial: Dict[str, PartialAssignment] = {}
        cache.add_listener(self._on_change)

    # -------------------------
    # Local checks
    # -------------------------
    def partial_assignments(self):
        return list(self._partial.values())

    def _on_change(self, kind: str, orders):
        """Forget partial assignments the order service has since moved past."""
        for order in orders:
            partial = self._partial.get(str(order.id))
            if partial is None:
                continue
            rebound = order.vehicle_id is not None and str(order.vehicle_id) != str(partial.vehicle_id)
            if order.status != OrderStatus.PENDING or rebound:
                del self._partial[str(order.id)]
                logger.info(f"[ASSIGN] Dropping partial assignment of order {order.id}: now {order.status.value}"
                            f" on vehicle {order.vehicle_id}")

    def outstanding_order_id(self, exclude=None) -> Optional[Identifier]:
        """The order currently held by this driver, if any (other than `exclude`)."""
        skip = str(exclude) if exclude is not None else None

        for key, target in self._in_flight.items():
            if key != skip and target == OrderStatus.ASSIGNED:
                return key
        for key, partial in self._partial.items():
            if key != skip:
                return partial.order_id
        if self.vehicle_id is None:
            return None
        for order in self.cache:
            if str(order.id) == skip:
                continue
            if is_active(order.status) and str(order.vehicle_id) == str(self.vehicle_id):
                return order.id
        return None

    def check(self, order_id, target: OrderStatus) -> Order:
        """Every rejection that needs no network call. Raises, never mutates."""
        validate_role_authority(self.session.role)

        order = self.cache.get(order_id)
        if order is None:
            raise InvalidTransition(order_id, "UNKNOWN", target.value, "order is not loaded")

        if str(order_id) in self._in_flight:
            raise InvalidTransition(order_id, order.status.value, target.value, "another update is in progress")

        validate_transition(order, target, self.vehicle_id)

        if target == OrderStatus.ASSIGNED:
            outstanding = self.outstanding_order_id(exclude=order_id)
            if outstanding is not None:
                ASSIGNMENT_OUTCOMES.labels(outcome="capacity_exceeded").inc()
                raise CapacityExceeded(order_id, outstanding)
        return order

    # -------------------------
    # Saga
    # -------------------------
    async def transition(self, order_id, target) -> None:
        target = parse_status(target)
        try:
            self.check(order_id, target)
        except InvalidTransition:
            ASSIGNMENT_OUTCOMES.labels(outcome="invalid_transition").inc()
            raise

        key = str(order_id)
        self._in_flight[key] = target
        try:
            if target == OrderStatus.ASSIGNED and key not in self._partial:
                await self._bind(order_id)
            await self._set_status(order_id, target)
        finally:
            self._in_flight.pop(key, None)

    async def retry_status(self, order_id) -> None:
        """Re-issue only the status call of a partially applied assignment."""
        validate_role_authority(self.session.role)
        key = str(order_id)
        partial = self._partial.get(key)
        if partial is None:
            order = self.cache.get(order_id)
            current = order.status.value if order else "UNKNOWN"
            raise InvalidTransition(order_id, current, current, "no pending status update to retry")
        if key in self._in_flight:
            raise InvalidTransition(order_id, "PENDING", partial.target.value, "another update is in progress")

        self._in_flight[key] = partial.target
        try:
            await self._set_status(order_id, partial.target)
        finally:
            self._in_flight.pop(key, None)

    async def _bind(self, order_id):
        try:
            await self.orders.bind_vehicle(self.session.token, order_id, self.vehicle_id)
        except ServiceError as e:
            ASSIGNMENT_OUTCOMES.labels(outcome="assignment_failed").inc()
            logger.warning(f"[ASSIGN] Bind of vehicle {self.vehicle_id} to order {order_id} failed: {e}")
            raise AssignmentFailed(order_id, self.vehicle_id, e) from e
        logger.info(f"[ASSIGN] Vehicle {self.vehicle_id} bound to order {order_id}")

        self._partial[str(order_id)] = PartialAssignment(order_id, self.vehicle_id, OrderStatus.ASSIGNED)

    async def _set_status(self, order_id, target: OrderStatus):
        key = str(order_id)
        try:
            await self.orders.set_status(self.session.token, order_id, target)
        except ServiceError as e:
            ASSIGNMENT_OUTCOMES.labels(outcome="status_update_failed").inc()
            logger.error(f"[ASSIGN] Status {target.value} for order {order_id} failed: {e}")
            raise StatusUpdateFailed(order_id, target.value, self.vehicle_id, e) from e

        self._partial.pop(key, None)
        ASSIGNMENT_OUTCOMES.labels(outcome="succeeded").inc()
        logger.info(f"[ASSIGN] Order {order_id} → {target.value}, waiting for push confirmation")
        self.reconciler.expect(order_id, lambda o: o.status == target)
