from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

import httpx

from ..config import get_settings
from ..errors import UpstreamFailure
from ..metrics import metrics
from .alerting import record_notification_failure


@dataclass
class SentPush:
    topic: str
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)


def user_topic(uid: str) -> str:
    return f"user_{uid}"


class PushService:
    """Topic-based push notifications.

    Defaults to stub mode (recording messages in-memory). With
    PUSH_PROVIDER=fcm and a server key it posts to FCM; delivery failures are
    recorded and swallowed so a notification never fails the caller.
    """

    def __init__(self) -> None:
        self._settings = get_settings().push
        self._sent: List[SentPush] = []

    @property
    def sent_messages(self) -> List[SentPush]:
        # Exposed primarily for tests and debugging.
        return list(self._sent)

    def clear(self) -> None:
        self._sent.clear()

    async def send(
        self,
        topic: str,
        title: str,
        body: str,
        data: Dict[str, Any] | None = None,
    ) -> bool:
        """Send one push; returns False when delivery failed."""
        payload_data = {k: str(v) for k, v in (data or {}).items() if v is not None}
        self._sent.append(SentPush(topic=topic, title=title, body=body, data=payload_data))
        metrics.notification_attempts += 1

        if self._settings.provider != "fcm":
            metrics.push_sent_total += 1
            return True
        try:
            await self._post_fcm(topic, title, body, payload_data)
        except UpstreamFailure as exc:
            record_notification_failure("push", detail=exc.message)
            return False
        metrics.push_sent_total += 1
        return True

    async def notify_user(
        self,
        uid: str | None,
        title: str,
        body: str,
        data: Dict[str, Any] | None = None,
    ) -> bool:
        if not uid:
            return False
        return await self.send(user_topic(uid), title, body, data)

    async def _post_fcm(
        self, topic: str, title: str, body: str, data: Dict[str, str]
    ) -> None:
        key = self._settings.fcm_server_key
        if not key:
            raise UpstreamFailure("FCM server key is not configured")
        message = {
            "to": f"/topics/{topic}",
            "notification": {"title": title, "body": body},
            "data": data,
        }
        headers = {"Authorization": f"key={key}"}
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.timeout_seconds
            ) as client:
                resp = await client.post(
                    self._settings.fcm_endpoint, json=message, headers=headers
                )
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise UpstreamFailure(
                f"FCM request failed: {exc.__class__.__name__}", topic=topic
            ) from exc


push_service = PushService()
