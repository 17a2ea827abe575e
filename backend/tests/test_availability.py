from datetime import UTC, datetime, timedelta

import pytest

from booking.config import SchedulingSettings
from booking.errors import InvalidInput
from booking.models import (
    BLOCK_BOOKED,
    BLOCK_HELD,
    Engagement,
    Location,
    Provider,
    RecurrenceDescriptor,
    ServiceTask,
    TaskLine,
    TimeBlock,
)
from booking.repositories import providers_repo, service_tasks_repo, time_blocks_repo
from booking.services import availability
from booking.services.intervals import build_window


NOW = datetime(2025, 1, 1, 8, 0, tzinfo=UTC)


def _seed_block(provider_id: str, start: datetime, minutes: int, **overrides) -> TimeBlock:
    window = build_window(start, minutes, buffer_before_minutes=60, buffer_after_minutes=60)
    block = TimeBlock(
        id=overrides.pop("id", f"blk-{provider_id}-{start.isoformat()}"),
        provider_id=provider_id,
        job_id=overrides.pop("job_id", "other-job"),
        status=overrides.pop("status", BLOCK_BOOKED),
        service_start=window.service_start,
        service_end=window.service_end,
        padded_start=window.padded_start,
        padded_end=window.padded_end,
        **overrides,
    )
    with time_blocks_repo.transaction(provider_id) as txn:
        txn.insert(block)
    return block


def _engagement(start: datetime, **kwargs) -> Engagement:
    defaults = dict(
        id="eng-a",
        client_id="client-1",
        category="cleaning",
        tasks=[TaskLine(label="Deep clean", quantity=1)],
        location=Location(latitude=40.0, longitude=-74.0),
        scheduled_date=start,
    )
    defaults.update(kwargs)
    return Engagement(**defaults)


def test_padded_overlap_makes_provider_unavailable() -> None:
    # booked 10:00-11:00 (padded 09:00-12:00) vs request 11:30-12:30 (padded 10:30-13:30)
    _seed_block("prov-1", datetime(2025, 1, 6, 10, 0, tzinfo=UTC), 60)
    request = build_window(
        datetime(2025, 1, 6, 11, 30, tzinfo=UTC),
        60,
        buffer_before_minutes=60,
        buffer_after_minutes=60,
    )
    assert availability.has_conflict("prov-1", request, NOW)
    assert not availability.is_available("prov-1", request, NOW)
    assert availability.is_available("prov-2", request, NOW)


def test_expired_holds_and_other_jobs_filter() -> None:
    start = datetime(2025, 1, 6, 10, 0, tzinfo=UTC)
    _seed_block(
        "prov-1",
        start,
        60,
        id="expired",
        status=BLOCK_HELD,
        hold_expires_at=NOW - timedelta(minutes=1),
    )
    request = build_window(start, 60, buffer_before_minutes=60, buffer_after_minutes=60)
    assert availability.is_available("prov-1", request, NOW)

    _seed_block(
        "prov-1",
        start,
        60,
        id="live",
        job_id="eng-a",
        status=BLOCK_HELD,
        hold_expires_at=NOW + timedelta(minutes=5),
    )
    assert availability.has_conflict("prov-1", request, NOW)
    assert availability.is_available("prov-1", request, NOW, exclude_job_id="eng-a")


def test_plan_engagement_uses_catalog_durations_and_buffers() -> None:
    service_tasks_repo.upsert(ServiceTask(task_name="Deep clean", duration_hours=2))
    engagement = _engagement(datetime(2025, 1, 6, 10, 0, tzinfo=UTC))
    settings = SchedulingSettings(buffer_before_minutes=30, buffer_after_minutes=45)
    plan = availability.plan_engagement(engagement, settings)
    assert plan.duration_minutes == 120
    assert len(plan.windows) == 1
    window = plan.windows[0]
    assert window.service_end - window.service_start == timedelta(hours=2)
    assert window.service_start - window.padded_start == timedelta(minutes=30)
    assert window.padded_end - window.service_end == timedelta(minutes=45)


def test_plan_engagement_rejects_zero_duration() -> None:
    engagement = _engagement(datetime(2025, 1, 6, 10, 0, tzinfo=UTC))
    with pytest.raises(InvalidInput):
        availability.plan_engagement(engagement, SchedulingSettings())


def test_match_providers_requires_every_occurrence_free() -> None:
    service_tasks_repo.upsert(ServiceTask(task_name="Deep clean", duration_minutes=90))
    providers_repo.upsert(Provider(uid="free", first_name="Fay", categories=["Cleaning"]))
    providers_repo.upsert(Provider(uid="busy", first_name="Bo", categories=["cleaning"]))
    providers_repo.upsert(Provider(uid="plumber", categories=["plumbing"]))

    start = datetime(2025, 1, 6, 10, 0, tzinfo=UTC)
    engagement = _engagement(
        start,
        is_recurring=True,
        recurrence=RecurrenceDescriptor(
            frequency_unit="week", horizon_count=3, start_at=start
        ),
    )
    # Only the third weekly occurrence collides.
    _seed_block("busy", start + timedelta(days=14), 60)

    result = availability.match_providers(engagement, NOW, SchedulingSettings())
    assert [p.uid for p in result.providers] == ["free"]
    assert len(result.plan.windows) == 3
    assert (
        availability.first_conflict("busy", result.plan.windows, NOW) == 2
    )


def test_match_providers_requires_location() -> None:
    engagement = _engagement(datetime(2025, 1, 6, 10, 0, tzinfo=UTC), location=None)
    with pytest.raises(InvalidInput):
        availability.match_providers(engagement, NOW)
