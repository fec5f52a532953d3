# access_gate.py
import logging
from typing import Iterable, Optional

from delivery_sync import config
from delivery_sync.auth import RoleResolver, resolve_session
from delivery_sync.errors import CredentialInvalid, CredentialMissing, RoleUnauthorized
from delivery_sync.schemas import Session

logger = logging.getLogger("delivery-sync.gate")

# View path → roles allowed to open it
VIEW_ROLES = {
    "client": config.REQUESTER_ROLES,
    "driver": config.DRIVER_ROLES,
    "admin": config.SUPERVISOR_ROLES,
}


def check_access(token: Optional[str], allowed_roles: Iterable[str], resolver: Optional[RoleResolver] = None) -> Session:
    """
    Resolve the session behind `token` and make sure its role may open the view.

    Raises CredentialMissing, CredentialInvalid or RoleUnauthorized. Holds no
    state: every navigation calls this again.
    """
    if not token:
        raise CredentialMissing()

    session = resolve_session(token, resolver)
    if session is None:
        raise CredentialInvalid()

    allowed = set(allowed_roles)
    if allowed and session.role not in allowed:
        logger.info(f"[GATE] Denied role={session.role} (allowed: {sorted(allowed)})")
        raise RoleUnauthorized(session.role, allowed)

    return session


def view_for_role(role: Optional[str]) -> str:
    """Landing view after sign-in."""
    if role in config.REQUESTER_ROLES:
        return "client"
    if role in config.DRIVER_ROLES:
        return "driver"
    return "admin"
