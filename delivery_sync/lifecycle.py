# lifecycle.py
from delivery_sync import config
from delivery_sync.errors import InvalidTransition, RoleUnauthorized
from delivery_sync.schemas import Order, OrderStatus

# ==================================================
# STATE → STATES REACHABLE FROM IT
# ==================================================
TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.ASSIGNED, OrderStatus.CANCELLED},
    OrderStatus.ASSIGNED: {OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.IN_TRANSIT: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

TERMINAL_STATES = {OrderStatus.DELIVERED, OrderStatus.CANCELLED}
ACTIVE_STATES = {OrderStatus.ASSIGNED, OrderStatus.IN_TRANSIT}

# Transitions out of these states need the actor to hold the bound vehicle
VEHICLE_HOLDER_STATES = {OrderStatus.ASSIGNED, OrderStatus.IN_TRANSIT}


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATES


def is_active(status: OrderStatus) -> bool:
    return status in ACTIVE_STATES


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS.get(current, set())


def validate_transition(order: Order, target: OrderStatus, vehicle_id=None) -> None:
    """
    Check that the driver holding `vehicle_id` may move `order` to `target`.

    Raises InvalidTransition. Never touches the order.
    """
    current = order.status
    if is_terminal(current):
        raise InvalidTransition(order.id, current.value, target.value, "order is closed")

    if not can_transition(current, target):
        raise InvalidTransition(order.id, current.value, target.value)

    if target == OrderStatus.ASSIGNED:
        if vehicle_id is None:
            raise InvalidTransition(order.id, current.value, target.value, "no vehicle assigned to this driver")
        if order.vehicle_id is not None and str(order.vehicle_id) != str(vehicle_id):
            raise InvalidTransition(order.id, current.value, target.value, "order is bound to another vehicle")
        return

    if current in VEHICLE_HOLDER_STATES:
        if vehicle_id is None or str(order.vehicle_id) != str(vehicle_id):
            raise InvalidTransition(order.id, current.value, target.value, "order is not bound to your vehicle")


# ==================================================
# ROLE → MAY IT DRIVE TRANSITIONS
# ==================================================
def role_may_transition(role: str) -> bool:
    return role in config.DRIVER_ROLES


def validate_role_authority(role: str) -> None:
    """Requesters and supervisors only observe orders."""
    if not role_may_transition(role):
        raise RoleUnauthorized(role, config.DRIVER_ROLES)
