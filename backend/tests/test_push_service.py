import asyncio

import httpx

from booking.config import PushSettings
from booking.metrics import metrics
from booking.services.push import PushService, push_service, user_topic


def _run(coro):
    return asyncio.run(coro)


def test_stub_push_records_message_and_stringifies_data() -> None:
    ok = _run(
        push_service.notify_user(
            "client-1", "Title", "Body", {"jobId": "eng-1", "count": 3, "skip": None}
        )
    )
    assert ok
    (msg,) = push_service.sent_messages
    assert msg.topic == user_topic("client-1") == "user_client-1"
    assert msg.data == {"jobId": "eng-1", "count": "3"}
    assert metrics.push_sent_total == 1


def test_notify_user_without_uid_is_skipped() -> None:
    assert _run(push_service.notify_user(None, "Title", "Body")) is False
    assert push_service.sent_messages == []


def test_fcm_failure_returns_false_and_alerts(monkeypatch) -> None:
    service = PushService()
    monkeypatch.setattr(
        service,
        "_settings",
        PushSettings(provider="fcm", fcm_server_key="key", fcm_endpoint="https://fcm.test/send"),
    )

    class _FailingClient:
        def __init__(self, *args, **kwargs) -> None:
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *exc) -> None:
            return None

        async def post(self, url, json=None, headers=None):
            raise httpx.ConnectError("unreachable")

    monkeypatch.setattr(httpx, "AsyncClient", _FailingClient)
    ok = _run(service.send("user_prov-1", "Title", "Body", {"type": "x"}))
    assert ok is False
    assert metrics.notification_failures == 1
    assert "notification_failure" in metrics.alerts_open


def test_fcm_success_posts_topic_message(monkeypatch) -> None:
    service = PushService()
    monkeypatch.setattr(
        service,
        "_settings",
        PushSettings(provider="fcm", fcm_server_key="key", fcm_endpoint="https://fcm.test/send"),
    )
    captured: dict = {}

    class _Client:
        def __init__(self, *args, **kwargs) -> None:
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *exc) -> None:
            return None

        async def post(self, url, json=None, headers=None):
            captured.update(url=url, json=json, headers=headers)
            return httpx.Response(200, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx, "AsyncClient", _Client)
    assert _run(service.send("user_prov-1", "Title", "Body", {"type": "x"}))
    assert captured["json"]["to"] == "/topics/user_prov-1"
    assert captured["headers"] == {"Authorization": "key=key"}


def test_fcm_without_key_fails_softly(monkeypatch) -> None:
    service = PushService()
    monkeypatch.setattr(service, "_settings", PushSettings(provider="fcm"))
    assert _run(service.send("user_prov-1", "Title", "Body")) is False
