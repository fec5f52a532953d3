# session_store.py
import json
import logging
import os
from typing import Optional

from delivery_sync import config
from delivery_sync.auth import RoleResolver, resolve_session
from delivery_sync.schemas import Session

logger = logging.getLogger("delivery-sync.session")


class SessionStore:
    """
    Persists exactly the raw bearer token and the last known role.

    Survives process restarts (local file), never shared across devices.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path or config.SESSION_STORE_PATH

    def load(self) -> dict:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"[SESSION] Unreadable session store {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: data[k] for k in ("token", "role") if data.get(k)}

    def save(self, token: str, role: Optional[str]):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump({"token": token, "role": role}, f)

    def clear(self):
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass


class SessionContext:
    """
    The current session, passed explicitly to the gate and to every service call.

    init() stores a credential, clear() drops it; nothing is cached besides
    what the store holds.
    """

    def __init__(self, store: Optional[SessionStore] = None, resolver: Optional[RoleResolver] = None):
        self.store = store or SessionStore()
        self.resolver = resolver or RoleResolver()

    @property
    def token(self) -> Optional[str]:
        return self.store.load().get("token")

    @property
    def role(self) -> Optional[str]:
        """Last known role, as written at init()."""
        return self.store.load().get("role")

    def init(self, token: str) -> Optional[Session]:
        session = resolve_session(token, self.resolver)
        self.store.save(token, session.role if session else None)
        if session:
            logger.info(f"[SESSION] Signed in as {session.display_name} ({session.role})")
        else:
            logger.warning("[SESSION] Stored a credential that does not decode")
        return session

    def resolve(self) -> Optional[Session]:
        return resolve_session(self.token, self.resolver)

    def clear(self):
        self.store.clear()
        logger.info("[SESSION] Session cleared")
