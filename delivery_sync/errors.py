# errors.py
from typing import Optional


class DeliverySyncError(Exception):
    """Base class for every recoverable error raised by the sync engine."""

    user_message = "Something went wrong."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.user_message)


# -------------------------
# Session / access
# -------------------------
class CredentialMissing(DeliverySyncError):
    user_message = "Please sign in to continue."


class CredentialInvalid(CredentialMissing):
    """An unparseable token is handled exactly like a missing one."""

    user_message = "Your session is no longer valid. Please sign in again."


class RoleUnauthorized(DeliverySyncError):
    def __init__(self, role: Optional[str], allowed=None):
        self.role = role
        self.allowed = sorted(allowed or [])
        super().__init__(f"Access denied: your role ({role}) is not allowed to view this page.")

    @property
    def user_message(self):
        return str(self)


# -------------------------
# Collaborator services
# -------------------------
class ServiceError(DeliverySyncError):
    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(message)


class ServiceUnreachable(ServiceError):
    """No response at all from the collaborator."""

    user_message = "Could not reach the server. Check your connection."


class RequestRejected(ServiceError):
    """The collaborator answered with an error status."""

    user_message = "The request was rejected by the server."

    def __init__(self, service: str, status_code: int, detail: str = ""):
        self.status_code = status_code
        self.detail = detail
        super().__init__(service, f"{service} rejected the request ({status_code}): {detail}".rstrip(": "))


# -------------------------
# Lifecycle / orchestration
# -------------------------
class InvalidTransition(DeliverySyncError):
    def __init__(self, order_id, current, target, reason: str = ""):
        self.order_id = order_id
        self.current = current
        self.target = target
        message = f"Order {order_id}: cannot move from {current} to {target}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)

    @property
    def user_message(self):
        return str(self)


class CapacityExceeded(DeliverySyncError):
    def __init__(self, order_id, outstanding_order_id):
        self.order_id = order_id
        self.outstanding_order_id = outstanding_order_id
        super().__init__(
            f"Order {order_id}: finish order {outstanding_order_id} before taking another one"
        )

    @property
    def user_message(self):
        return str(self)


class _StepFailed(DeliverySyncError):
    def __init__(self, order_id, cause: ServiceError, message: str):
        self.order_id = order_id
        self.cause = cause
        super().__init__(message)

    @property
    def unreachable(self) -> bool:
        return isinstance(self.cause, ServiceUnreachable)

    @property
    def user_message(self):
        return self.cause.user_message


class AssignmentFailed(_StepFailed):
    """Binding the vehicle failed; nothing was applied and the whole operation may be retried."""

    def __init__(self, order_id, vehicle_id, cause: ServiceError):
        self.vehicle_id = vehicle_id
        super().__init__(order_id, cause, f"Order {order_id}: could not bind vehicle {vehicle_id}: {cause}")


class StatusUpdateFailed(_StepFailed):
    """The vehicle is bound but the status call failed; retry the status step alone."""

    def __init__(self, order_id, target, vehicle_id, cause: ServiceError):
        self.target = target
        self.vehicle_id = vehicle_id
        super().__init__(order_id, cause, f"Order {order_id}: status update to {target} failed: {cause}")
