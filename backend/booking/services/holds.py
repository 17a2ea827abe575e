from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Sequence

from ..config import get_settings
from ..errors import Conflict, InvalidInput
from ..metrics import metrics
from ..models import (
    BLOCK_BOOKED,
    BLOCK_HELD,
    Engagement,
    OccurrenceWindow,
    TimeBlock,
    new_time_block_id,
)
from ..repositories import active_blocks, time_blocks_repo
from .alerting import record_cleanup_failure
from .intervals import overlaps

logger = logging.getLogger(__name__)

DECISION_ACCEPTED = "accepted"
DECISION_DECLINED = "declined"


@dataclass
class HoldResult:
    hold_id: str
    expires_at: datetime
    blocks: List[TimeBlock] = field(default_factory=list)


class HoldManager:
    """Owns every TimeBlock write.

    Creation and resolution run inside the repository's per-provider
    transaction, so two clients racing for the same slot cannot both win.
    Releases are best effort: they never raise.
    """

    def __init__(self, repo=None) -> None:
        self._repo = repo

    @property
    def repo(self):
        return self._repo or time_blocks_repo

    def create_holds(
        self,
        engagement: Engagement,
        provider_id: str,
        windows: Sequence[OccurrenceWindow],
        now: datetime,
    ) -> HoldResult:
        if not windows:
            raise InvalidInput("At least one occurrence window is required")
        expires_at = now + timedelta(minutes=get_settings().scheduling.hold_minutes)
        latest_end = max(w.padded_end for w in windows)

        with self.repo.transaction(provider_id) as txn:
            own = txn.blocks_for_job(engagement.id)
            own_ids = {b.id for b in own}
            existing = [
                b
                for b in active_blocks(txn.blocks_starting_before(latest_end), now)
                if b.id not in own_ids
            ]
            for index, window in enumerate(windows):
                if any(overlaps(block, window) for block in existing):
                    metrics.hold_conflicts += 1
                    logger.info(
                        "hold_conflict",
                        extra={
                            "provider_id": provider_id,
                            "engagement_id": engagement.id,
                            "occurrence_index": index,
                        },
                    )
                    raise Conflict(
                        "Provider is not available for this occurrence",
                        occurrence_index=index,
                        occurrence_start=window.service_start,
                        provider_id=provider_id,
                    )

            for block in own:
                txn.delete(block.id)
            created: List[TimeBlock] = []
            for index, window in enumerate(windows):
                block = TimeBlock(
                    id=new_time_block_id(),
                    provider_id=provider_id,
                    job_id=engagement.id,
                    client_id=engagement.client_id,
                    status=BLOCK_HELD,
                    service_start=window.service_start,
                    service_end=window.service_end,
                    padded_start=window.padded_start,
                    padded_end=window.padded_end,
                    hold_expires_at=expires_at,
                    occurrence_index=index,
                    is_recurring=engagement.is_recurring,
                    created_at=now,
                )
                txn.insert(block)
                created.append(block)

        metrics.holds_created += len(created)
        logger.info(
            "holds_created",
            extra={
                "provider_id": provider_id,
                "engagement_id": engagement.id,
                "count": len(created),
                "replaced": len(own),
            },
        )
        return HoldResult(hold_id=created[0].id, expires_at=expires_at, blocks=created)

    def resolve_holds(
        self, provider_id: str, engagement_id: str, decision: str, now: datetime
    ) -> int:
        """Promote held blocks to booked, or drop them all on decline."""
        if decision not in (DECISION_ACCEPTED, DECISION_DECLINED):
            raise InvalidInput(f"Unknown hold decision: {decision!r}")

        with self.repo.transaction(provider_id) as txn:
            blocks = txn.blocks_for_job(engagement_id)
            if decision == DECISION_DECLINED:
                for block in blocks:
                    txn.delete(block.id)
                resolved = len(blocks)
            else:
                resolved = 0
                for block in blocks:
                    if block.status != BLOCK_HELD:
                        continue
                    if block.is_expired_hold(now):
                        self._recheck_expired(txn, block, engagement_id, now)
                    block.status = BLOCK_BOOKED
                    block.hold_expires_at = None
                    txn.update(block)
                    resolved += 1

        if decision == DECISION_ACCEPTED:
            metrics.holds_booked += resolved
        else:
            metrics.holds_released += resolved
        logger.info(
            "holds_resolved",
            extra={
                "provider_id": provider_id,
                "engagement_id": engagement_id,
                "decision": decision,
                "count": resolved,
            },
        )
        return resolved

    @staticmethod
    def _recheck_expired(txn, block: TimeBlock, engagement_id: str, now: datetime) -> None:
        others = [
            b
            for b in active_blocks(txn.blocks_starting_before(block.padded_end), now)
            if b.job_id != engagement_id
        ]
        if any(overlaps(other, block) for other in others):
            metrics.hold_conflicts += 1
            raise Conflict(
                "Hold expired and the slot has been taken",
                occurrence_index=block.occurrence_index,
                occurrence_start=block.service_start,
            )

    def release_hold(self, provider_id: str | None, engagement_id: str) -> int:
        return self._release(provider_id, engagement_id, None)

    def release_occurrence(
        self, provider_id: str | None, engagement_id: str, service_start: datetime
    ) -> int:
        return self._release(provider_id, engagement_id, service_start)

    def _release(
        self,
        provider_id: str | None,
        engagement_id: str,
        service_start: datetime | None,
    ) -> int:
        if not provider_id:
            return 0
        try:
            deleted = self.repo.delete_for_job(
                provider_id, engagement_id, service_start=service_start
            )
        except Exception as exc:
            metrics.hold_release_failures += 1
            logger.warning(
                "hold_release_failed",
                exc_info=True,
                extra={"provider_id": provider_id, "engagement_id": engagement_id},
            )
            record_cleanup_failure("time_blocks", detail=exc.__class__.__name__)
            return 0
        metrics.holds_released += deleted
        return deleted

    def purge_expired(self, now: datetime) -> int:
        purged = self.repo.delete_expired_holds(now)
        metrics.expired_holds_purged += purged
        logger.info("expired_holds_purged", extra={"count": purged})
        return purged


hold_manager = HoldManager()
