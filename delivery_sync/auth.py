# auth.py
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from jose import JWTError
from jose.utils import base64url_decode

from delivery_sync import config
from delivery_sync.schemas import Session

logger = logging.getLogger("delivery-sync.auth")

ClaimExtractor = Callable[[Dict[str, Any]], Optional[str]]


def decode_claims(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Read the claim set of a bearer token without verifying its signature.

    Only the payload segment is decoded; header and signature are ignored.
    Returns None for anything that does not decode to a JSON object.
    """
    if not token or not isinstance(token, str):
        return None
    try:
        payload = token.strip().split(".")[1]
        claims = json.loads(base64url_decode(payload.encode("ascii")))
    except (IndexError, ValueError, JWTError):
        return None
    return claims if isinstance(claims, dict) else None


def normalise_role(value: Any) -> Optional[str]:
    if isinstance(value, (list, tuple)):
        if not value:
            return None
        value = value[0]
    if isinstance(value, dict):
        value = value.get("authority") or value.get("role")
    if value is None:
        return None
    role = str(value).strip()
    if role.upper().startswith("ROLE_"):
        role = role[len("ROLE_"):]
    return role.lower() or None


def claim_extractor(name: str) -> ClaimExtractor:
    def extract(claims: Dict[str, Any]) -> Optional[str]:
        return normalise_role(claims.get(name))

    extract.__name__ = f"claim:{name}"
    return extract


class RoleResolver:
    """Ordered claim extractors, first match wins, then the default role."""

    def __init__(self, claim_names: Optional[Sequence[str]] = None, default_role: Optional[str] = None):
        names = claim_names if claim_names is not None else config.ROLE_CLAIM_PRECEDENCE
        self.extractors: List[ClaimExtractor] = [claim_extractor(n) for n in names]
        self.default_role = normalise_role(default_role or config.DEFAULT_ROLE)

    def resolve(self, claims: Dict[str, Any]) -> str:
        for extract in self.extractors:
            role = extract(claims)
            if role:
                return role
        return self.default_role


def subject_id(claims: Dict[str, Any], names: Optional[Sequence[str]] = None) -> Optional[Any]:
    for name in names if names is not None else config.SUBJECT_CLAIM_PRECEDENCE:
        value = claims.get(name)
        if value not in (None, ""):
            return value
    return None


def resolve_session(token: Optional[str], resolver: Optional[RoleResolver] = None) -> Optional[Session]:
    claims = decode_claims(token)
    if claims is None:
        return None
    role = (resolver or RoleResolver()).resolve(claims)
    sub = claims.get("sub")
    return Session(
        role=role,
        display_name=str(sub) if sub is not None else None,
        subject_id=subject_id(claims),
        token=token.strip(),
    )


def resolve_role(token: Optional[str], resolver: Optional[RoleResolver] = None) -> Optional[str]:
    session = resolve_session(token, resolver)
    return session.role if session else None
