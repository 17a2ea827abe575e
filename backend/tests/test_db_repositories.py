import threading
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from booking.db import init_db
from booking.errors import Conflict, DuplicateSeriesMember
from booking.models import (
    BLOCK_BOOKED,
    Engagement,
    Location,
    RecurrenceDescriptor,
    TaskLine,
)
from booking.repositories import DbEngagementRepository, DbTimeBlockRepository
from booking.services.holds import DECISION_ACCEPTED, HoldManager
from booking.services.intervals import build_windows


@pytest.fixture(scope="module", autouse=True)
def _schema():
    init_db()


START = datetime(2031, 5, 5, 9, 0, tzinfo=UTC)


def _engagement(**overrides) -> Engagement:
    defaults = dict(
        id=str(uuid4()),
        client_id="client-db",
        category="cleaning",
        tasks=[TaskLine(label="Sweep", quantity=2, duration_minutes=30)],
        location=Location(latitude=1.5, longitude=2.5, text="Somewhere"),
        scheduled_date=START,
        is_recurring=True,
        recurrence=RecurrenceDescriptor(
            frequency_unit="month", preferred_weekday=1, horizon_count=4, start_at=START
        ),
        status="accepted",
    )
    defaults.update(overrides)
    return Engagement(**defaults)


def test_db_engagement_round_trip_keeps_nested_fields() -> None:
    repo = DbEngagementRepository()
    created = repo.create(_engagement())

    fetched = repo.get(created.id)
    assert fetched is not None
    assert fetched.tasks[0].quantity == 2
    assert fetched.location.text == "Somewhere"
    assert fetched.recurrence.frequency_unit == "month"
    assert fetched.recurrence.preferred_weekday == 1
    assert fetched.recurrence.start_at == START
    assert fetched.scheduled_date == START
    assert fetched.scheduled_date.tzinfo is not None

    fetched.status = "rematch"
    saved = repo.save(fetched)
    assert repo.get(saved.id).status == "rematch"
    assert repo.get("missing") is None


def test_db_series_unique_constraint() -> None:
    repo = DbEngagementRepository()
    series_id = str(uuid4())
    repo.create(_engagement(recurrence_series_id=series_id, recurrence_index=2))
    with pytest.raises(DuplicateSeriesMember) as excinfo:
        repo.create(_engagement(recurrence_series_id=series_id, recurrence_index=2))
    assert excinfo.value.recurrence_index == 2
    assert repo.series_indices(series_id) == {2}


def test_db_mark_reminder_sent_claims_once() -> None:
    repo = DbEngagementRepository()
    created = repo.create(_engagement())
    sent_at = START - timedelta(days=2)
    assert repo.mark_reminder_sent(created.id, sent_at) is True
    assert repo.mark_reminder_sent(created.id, sent_at) is False
    stored = repo.get(created.id)
    assert stored.reminder_sent is True
    assert stored.reminder_sent_at == sent_at


def test_db_list_recurring_between_and_roots() -> None:
    repo = DbEngagementRepository()
    marker = START + timedelta(days=400)
    inside = repo.create(_engagement(scheduled_date=marker))
    repo.create(_engagement(scheduled_date=marker + timedelta(days=1)))
    repo.create(_engagement(scheduled_date=marker, is_recurring=False, recurrence=None))

    found = repo.list_recurring_between(marker, marker + timedelta(hours=1))
    assert [e.id for e in found] == [inside.id]
    assert inside.id in {e.id for e in repo.list_recurring_roots()}


def test_db_time_block_holds_and_conflicts() -> None:
    manager = HoldManager(repo=DbTimeBlockRepository())
    provider_id = f"prov-{uuid4()}"
    now = START - timedelta(days=1)
    slot = START + timedelta(days=900)
    windows = build_windows([slot], 60, buffer_before_minutes=60, buffer_after_minutes=60)

    first = _engagement()
    manager.create_holds(first, provider_id, windows, now)
    with pytest.raises(Conflict):
        manager.create_holds(_engagement(), provider_id, windows, now)

    assert manager.resolve_holds(provider_id, first.id, DECISION_ACCEPTED, now) == 1
    (block,) = manager.repo.list_for_job(provider_id, first.id)
    assert block.status == BLOCK_BOOKED
    assert block.service_start == slot

    assert manager.release_hold(provider_id, first.id) == 1
    assert manager.repo.list_for_job(provider_id, first.id) == []


def test_db_delete_expired_holds() -> None:
    repo = DbTimeBlockRepository()
    manager = HoldManager(repo=repo)
    provider_id = f"prov-{uuid4()}"
    now = START - timedelta(days=1)
    slot = START + timedelta(days=950)
    windows = build_windows([slot], 60, buffer_before_minutes=0, buffer_after_minutes=0)
    engagement = _engagement()
    manager.create_holds(engagement, provider_id, windows, now)

    assert repo.delete_expired_holds(now + timedelta(days=1)) >= 1
    assert repo.list_for_job(provider_id, engagement.id) == []


def test_db_concurrent_holds_for_same_slot_only_one_wins() -> None:
    manager = HoldManager(repo=DbTimeBlockRepository())
    provider_id = f"prov-{uuid4()}"
    now = START - timedelta(days=1)
    slot = START + timedelta(days=1000)
    windows = build_windows([slot], 60, buffer_before_minutes=60, buffer_after_minutes=60)
    barrier = threading.Barrier(2)
    outcomes: dict[str, str] = {}

    def _attempt(engagement: Engagement) -> None:
        barrier.wait()
        try:
            manager.create_holds(engagement, provider_id, windows, now)
            outcomes[engagement.id] = "held"
        except Conflict:
            outcomes[engagement.id] = "conflict"

    threads = [
        threading.Thread(target=_attempt, args=(_engagement(client_id=f"client-{i}"),))
        for i in range(2)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert sorted(outcomes.values()) == ["conflict", "held"]
    stored = manager.repo.list_starting_before(provider_id, slot + timedelta(days=1))
    assert len(stored) == 1


def test_db_release_waits_for_in_flight_accept() -> None:
    repo = DbTimeBlockRepository()
    manager = HoldManager(repo=repo)
    provider_id = f"prov-{uuid4()}"
    now = START - timedelta(days=1)
    slot = START + timedelta(days=1050)
    windows = build_windows([slot], 60, buffer_before_minutes=0, buffer_after_minutes=0)
    engagement = _engagement()
    manager.create_holds(engagement, provider_id, windows, now)
    released: list[int] = []

    releaser = threading.Thread(
        target=lambda: released.append(manager.release_hold(provider_id, engagement.id))
    )
    with repo.transaction(provider_id) as txn:
        (block,) = txn.blocks_for_job(engagement.id)
        releaser.start()
        releaser.join(timeout=0.2)
        assert releaser.is_alive()
        block.status = BLOCK_BOOKED
        block.hold_expires_at = None
        txn.update(block)
    releaser.join(timeout=10)

    assert released == [1]
    assert repo.list_for_job(provider_id, engagement.id) == []
