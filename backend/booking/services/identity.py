from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict

import httpx

from ..config import get_settings
from ..errors import Forbidden, Unauthorized, UpstreamFailure
from ..models import ROLES
from ..repositories import users_repo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    uid: str
    role: str


class IdentityVerifier:
    """Turns a bearer credential into a verified (uid, role) pair.

    The credential itself is checked by the identity provider; the role
    always comes from the user directory. In stub mode tokens are
    registered up front (tests, local development).
    """

    def __init__(self) -> None:
        self._settings = get_settings().identity
        self._stub_tokens: Dict[str, str] = {}

    def register_token(self, token: str, uid: str) -> None:
        self._stub_tokens[token] = uid

    def clear(self) -> None:
        self._stub_tokens.clear()

    async def verify(self, token: str | None) -> Identity:
        if not token:
            raise Unauthorized("Missing bearer token")
        if self._settings.provider == "remote":
            uid = await self._verify_remote(token)
        else:
            uid = self._stub_tokens.get(token)
        if not uid:
            raise Unauthorized("Invalid or expired token")

        user = users_repo.get(uid)
        if user is None:
            raise Forbidden("User profile not found", uid=uid)
        if user.role not in ROLES:
            raise Forbidden("User has no recognised role", uid=uid)
        return Identity(uid=uid, role=user.role)

    async def _verify_remote(self, token: str) -> str | None:
        url = self._settings.verify_url
        if not url:
            raise UpstreamFailure("Identity verification URL is not configured")
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.timeout_seconds
            ) as client:
                resp = await client.post(url, json={"token": token})
        except httpx.HTTPError as exc:
            logger.warning("identity_verify_failed", exc_info=True)
            raise UpstreamFailure("Identity provider unreachable") from exc
        if resp.status_code in (401, 403):
            return None
        if resp.status_code >= 400:
            raise UpstreamFailure(
                "Identity provider error", upstream_status=resp.status_code
            )
        body = resp.json()
        return body.get("uid") if isinstance(body, dict) else None


identity_verifier = IdentityVerifier()
