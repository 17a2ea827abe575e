"""Materializes follow-on occurrences of accepted recurring engagements.

Safe to run repeatedly and concurrently: missing indices are computed from
what is stored, and a duplicate caught at insert time counts as skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, List

from ..config import get_settings
from ..errors import DuplicateSeriesMember
from ..metrics import metrics
from ..models import Engagement, new_engagement_id
from ..repositories import engagements_repo
from . import lifecycle
from .alerting import record_series_failure
from .recurrence import project_engagement, series_start

logger = logging.getLogger(__name__)


@dataclass
class SeriesRunSummary:
    scanned: int = 0
    generated: int = 0
    skipped_duplicates: int = 0
    series: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "scanned": self.scanned,
            "generated": self.generated,
            "skipped_duplicates": self.skipped_duplicates,
            "series": list(self.series),
            "errors": list(self.errors),
        }


def _backfill_root(root: Engagement) -> Engagement:
    series_id = root.recurrence_series_id or root.id
    start = series_start(root)
    changed = False
    if root.recurrence_series_id != series_id:
        root.recurrence_series_id = series_id
        changed = True
    if root.recurrence_index is None:
        root.recurrence_index = 0
        changed = True
    if root.recurrence is not None and root.recurrence.start_at is None and start:
        root.recurrence.start_at = start
        changed = True
    if changed:
        root = engagements_repo.save(root)
    return root


def _clone(root: Engagement, index: int, scheduled_date: datetime) -> Engagement:
    return Engagement(
        id=new_engagement_id(),
        client_id=root.client_id,
        category=root.category,
        tasks=list(root.tasks),
        location=root.location,
        scheduled_date=scheduled_date,
        is_recurring=True,
        recurrence=root.recurrence,
        status=lifecycle.SCHEDULED,
        selected_provider_id=root.selected_provider_id,
        provider_name=root.provider_name,
        contractor_id=root.contractor_id,
        recurrence_series_id=root.recurrence_series_id,
        recurrence_index=index,
    )


def generate_for_root(root: Engagement) -> tuple[int, int]:
    """Create the missing occurrences of one series.

    Returns ``(created, skipped)``; skipped counts indices another run
    inserted between our read and our write.
    """
    root = _backfill_root(root)
    series_id = root.recurrence_series_id or root.id
    dates = project_engagement(root)
    existing = engagements_repo.series_indices(series_id)
    created = skipped = 0
    for index in range(1, len(dates)):
        if index in existing:
            continue
        try:
            engagements_repo.create(_clone(root, index, dates[index]))
        except DuplicateSeriesMember:
            logger.info(
                "series_member_exists",
                extra={"series_id": series_id, "recurrence_index": index},
            )
            skipped += 1
            continue
        created += 1
    return created, skipped


def generate_recurring_jobs(now: datetime | None = None) -> SeriesRunSummary:
    now = now or datetime.now(UTC)
    statuses = set(get_settings().generate_when_root_status_in)
    summary = SeriesRunSummary()
    metrics.series_runs += 1

    for root in engagements_repo.list_recurring_roots():
        summary.scanned += 1
        if (root.status or "").lower() not in statuses:
            continue
        series_id = root.recurrence_series_id or root.id
        try:
            created, skipped = generate_for_root(root)
        except Exception as exc:
            metrics.series_errors += 1
            summary.errors.append(
                {"series_id": series_id, "error": exc.__class__.__name__, "message": str(exc)}
            )
            logger.exception("series_generation_failed", extra={"series_id": series_id})
            record_series_failure(series_id, detail=exc.__class__.__name__)
            continue
        summary.skipped_duplicates += skipped
        if created:
            summary.generated += created
            summary.series.append({"series_id": series_id, "created": created})

    metrics.series_occurrences_generated += summary.generated
    logger.info(
        "series_generation_completed",
        extra={
            "scanned": summary.scanned,
            "generated": summary.generated,
            "errors": len(summary.errors),
            "run_at": now.isoformat(),
        },
    )
    return summary

