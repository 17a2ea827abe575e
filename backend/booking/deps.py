from __future__ import annotations

import hmac
from typing import Awaitable, Callable

from fastapi import Depends, Header

from .config import get_settings
from .errors import Forbidden, Unauthorized
from .services.identity import Identity, identity_verifier


def _bearer(authorization: str | None) -> str | None:
    # FastAPI injects Header objects when dependencies are called directly
    # in tests; normalize to str.
    if not isinstance(authorization, str):
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_caller(
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Identity:
    """Resolve the verified caller from ``Authorization: Bearer <token>``."""
    token = _bearer(authorization)
    if token is None:
        raise Unauthorized("Missing Bearer token")
    return await identity_verifier.verify(token)


def require_role(*roles: str) -> Callable[..., Awaitable[Identity]]:
    """Dependency factory that only lets the given roles through."""

    async def _dep(caller: Identity = Depends(get_caller)) -> Identity:
        if caller.role not in roles:
            raise Forbidden(f"Role {caller.role} is not allowed here")
        return caller

    return _dep


async def require_cron_auth(
    x_cron_secret: str | None = Header(default=None, alias="X-Cron-Secret"),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> None:
    """Guard batch endpoints with CRON_SECRET.

    Accepts either ``X-Cron-Secret: <secret>`` or ``Authorization: Bearer
    <secret>``. When no secret is configured the endpoints stay open.
    """
    secret = get_settings().cron_secret
    if not secret:
        return
    candidates = [
        value
        for value in (
            x_cron_secret if isinstance(x_cron_secret, str) else None,
            _bearer(authorization),
        )
        if value
    ]
    if not candidates:
        raise Unauthorized("Missing cron credentials")
    if not any(hmac.compare_digest(value, secret) for value in candidates):
        raise Unauthorized("Invalid cron credentials")
