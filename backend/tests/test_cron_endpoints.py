from datetime import UTC, datetime, timedelta

from fastapi.testclient import TestClient

from booking import config
from booking.main import app
from booking.models import BLOCK_HELD, Engagement, RecurrenceDescriptor, TaskLine, TimeBlock
from booking.repositories import engagements_repo, time_blocks_repo
from booking.services.job_queue import job_queue


client = TestClient(app)


def _set_secret(monkeypatch, secret: str | None) -> None:
    if secret is None:
        monkeypatch.delenv("CRON_SECRET", raising=False)
    else:
        monkeypatch.setenv("CRON_SECRET", secret)
    config.get_settings.cache_clear()


def _root() -> Engagement:
    start = datetime.now(UTC) + timedelta(days=3)
    return engagements_repo.create(
        Engagement(
            id="root-cron",
            client_id="client-1",
            category="cleaning",
            tasks=[TaskLine(label="Sweep", duration_minutes=60)],
            scheduled_date=start,
            is_recurring=True,
            recurrence=RecurrenceDescriptor(
                frequency_unit="week", horizon_count=3, start_at=start
            ),
            status="accepted",
            selected_provider_id="prov-1",
        )
    )


def test_cron_open_when_no_secret(monkeypatch) -> None:
    _set_secret(monkeypatch, None)
    _root()
    resp = client.post("/v1/cron/generate-recurring-jobs")
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["generated"] == 2
    assert body["scanned"] == 1


def test_cron_rejects_missing_or_wrong_secret(monkeypatch) -> None:
    _set_secret(monkeypatch, "s3cret")
    resp = client.get("/v1/cron/generate-recurring-jobs")
    assert resp.status_code == 401
    resp = client.get(
        "/v1/cron/generate-recurring-jobs", headers={"X-Cron-Secret": "nope"}
    )
    assert resp.status_code == 401
    resp = client.get(
        "/v1/cron/recurring-reminders", headers={"Authorization": "Bearer nope"}
    )
    assert resp.status_code == 401


def test_cron_accepts_header_or_bearer(monkeypatch) -> None:
    _set_secret(monkeypatch, "s3cret")
    resp = client.get(
        "/v1/cron/generate-recurring-jobs", headers={"X-Cron-Secret": "s3cret"}
    )
    assert resp.status_code == 200
    resp = client.post(
        "/v1/cron/recurring-reminders", headers={"Authorization": "Bearer s3cret"}
    )
    assert resp.status_code == 200
    body = resp.json()
    assert set(body["skipped"]) == {"first_job", "already_sent", "missing_users", "cancelled"}
    assert "window_start" in body


def test_reminder_run_skips_first_occurrence(monkeypatch) -> None:
    _set_secret(monkeypatch, None)
    root = _root()
    resp = client.post("/v1/cron/recurring-reminders")
    body = resp.json()
    assert body["considered"] == 1
    assert body["skipped"]["first_job"] == 1
    assert engagements_repo.get(root.id).reminder_sent is True


def test_background_generation_runs_on_worker(monkeypatch) -> None:
    _set_secret(monkeypatch, None)
    _root()
    resp = client.post("/v1/cron/generate-recurring-jobs", params={"background": True})
    assert resp.json() == {"ok": True, "queued": True}
    job_queue.start()
    job_queue.join()
    assert len(engagements_repo.list_all()) == 3


def test_purge_expired_holds(monkeypatch) -> None:
    _set_secret(monkeypatch, None)
    past = datetime.now(UTC) - timedelta(hours=2)
    with time_blocks_repo.transaction("prov-1") as txn:
        txn.insert(
            TimeBlock(
                id="stale",
                provider_id="prov-1",
                job_id="eng-1",
                status=BLOCK_HELD,
                service_start=past,
                service_end=past + timedelta(hours=1),
                padded_start=past - timedelta(hours=1),
                padded_end=past + timedelta(hours=2),
                hold_expires_at=past,
            )
        )
    resp = client.post("/v1/cron/purge-expired-holds")
    assert resp.json() == {"ok": True, "purged": 1}
    assert time_blocks_repo.list_all() == []
