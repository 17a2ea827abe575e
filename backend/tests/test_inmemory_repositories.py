from datetime import UTC, datetime, timedelta

import pytest

from booking.errors import DuplicateSeriesMember
from booking.models import BLOCK_HELD, Engagement, Provider, TimeBlock
from booking.repositories import (
    InMemoryEngagementRepository,
    InMemoryProviderRepository,
    InMemoryTimeBlockRepository,
)


START = datetime(2030, 1, 7, 9, 0, tzinfo=UTC)


def _block(block_id: str, provider_id: str = "prov-1") -> TimeBlock:
    return TimeBlock(
        id=block_id,
        provider_id=provider_id,
        job_id="eng-1",
        status=BLOCK_HELD,
        service_start=START,
        service_end=START + timedelta(hours=1),
        padded_start=START - timedelta(hours=1),
        padded_end=START + timedelta(hours=2),
        hold_expires_at=START,
    )


def test_engagement_repo_hands_out_copies() -> None:
    repo = InMemoryEngagementRepository()
    created = repo.create(Engagement(id="e1", client_id="c", category="cleaning"))
    created.status = "accepted"
    assert repo.get("e1").status == "requested"

    saved = repo.save(created)
    assert saved.status == "accepted"
    assert repo.get("e1").status == "accepted"


def test_engagement_repo_enforces_series_uniqueness() -> None:
    repo = InMemoryEngagementRepository()
    repo.create(
        Engagement(
            id="a", client_id="c", category="x", recurrence_series_id="s", recurrence_index=1
        )
    )
    with pytest.raises(DuplicateSeriesMember):
        repo.create(
            Engagement(
                id="b", client_id="c", category="x", recurrence_series_id="s", recurrence_index=1
            )
        )
    assert repo.series_indices("s") == {1}


def test_mark_reminder_sent_is_a_single_claim() -> None:
    repo = InMemoryEngagementRepository()
    repo.create(Engagement(id="e1", client_id="c", category="x"))
    assert repo.mark_reminder_sent("e1", START)
    assert not repo.mark_reminder_sent("e1", START)
    assert not repo.mark_reminder_sent("missing", START)


def test_transaction_discards_writes_on_error() -> None:
    repo = InMemoryTimeBlockRepository()
    with pytest.raises(RuntimeError):
        with repo.transaction("prov-1") as txn:
            txn.insert(_block("b1"))
            raise RuntimeError("abort")
    assert repo.list_all() == []

    with repo.transaction("prov-1") as txn:
        txn.insert(_block("b1"))
        # Buffered writes are invisible until the transaction exits.
        assert txn.blocks_for_job("eng-1") == []
    assert [b.id for b in repo.list_all()] == ["b1"]


def test_delete_helpers_scope_by_provider() -> None:
    repo = InMemoryTimeBlockRepository()
    with repo.transaction("prov-1") as txn:
        txn.insert(_block("b1"))
    with repo.transaction("prov-2") as txn:
        txn.insert(_block("b2", provider_id="prov-2"))
    assert repo.delete_for_job("prov-1", "eng-1") == 1
    assert [b.id for b in repo.list_all()] == ["b2"]
    assert repo.delete_expired_holds(START + timedelta(minutes=1)) == 1
    assert repo.list_all() == []


def test_provider_category_lookup_is_case_insensitive() -> None:
    repo = InMemoryProviderRepository()
    repo.upsert(Provider(uid="p1", categories=[" Cleaning "]))
    repo.upsert(Provider(uid="p2", categories=["plumbing"]))
    assert [p.uid for p in repo.list_for_category("CLEANING")] == ["p1"]
