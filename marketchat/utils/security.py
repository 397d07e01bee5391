import time
from typing import Any, Dict

import jwt

from marketchat.config import get_settings


class InvalidTokenError(Exception):
    pass


def decode_access_token(token: str) -> Dict[str, Any]:
    """Verify a token issued by the identity provider and return its claims."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError as exc:
        raise InvalidTokenError(str(exc)) from exc
    if not payload.get("sub"):
        raise InvalidTokenError("token has no subject")
    return payload


def create_access_token(actor_id: str, ttl_seconds: int = 60 * 60) -> str:
    # tokens normally come from the identity provider; used by tests and tooling
    settings = get_settings()
    now = int(time.time())
    payload = {"sub": actor_id, "iat": now, "exp": now + ttl_seconds}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
