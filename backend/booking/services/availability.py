from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from ..config import SchedulingSettings, get_settings
from ..errors import InvalidInput
from ..models import Engagement, OccurrenceWindow, Provider
from ..repositories import (
    active_blocks,
    providers_repo,
    service_tasks_repo,
    time_blocks_repo,
)
from .durations import total_minutes
from .intervals import build_windows, overlaps
from .recurrence import project_engagement

logger = logging.getLogger(__name__)


@dataclass
class EngagementPlan:
    """Every occurrence window of an engagement plus the numbers behind them."""

    duration_minutes: int
    buffer_before_minutes: int
    buffer_after_minutes: int
    windows: List[OccurrenceWindow] = field(default_factory=list)


@dataclass
class MatchResult:
    plan: EngagementPlan
    providers: List[Provider] = field(default_factory=list)


def plan_engagement(
    engagement: Engagement, settings: SchedulingSettings | None = None
) -> EngagementPlan:
    settings = settings or get_settings().scheduling
    duration = total_minutes(engagement.tasks, service_tasks_repo.get_by_name)
    if duration <= 0:
        raise InvalidInput(
            "Engagement tasks add up to zero minutes", engagement_id=engagement.id
        )
    starts = project_engagement(engagement, settings)
    return EngagementPlan(
        duration_minutes=duration,
        buffer_before_minutes=settings.buffer_before_minutes,
        buffer_after_minutes=settings.buffer_after_minutes,
        windows=build_windows(
            starts,
            duration,
            buffer_before_minutes=settings.buffer_before_minutes,
            buffer_after_minutes=settings.buffer_after_minutes,
        ),
    )


def has_conflict(
    provider_id: str,
    window: OccurrenceWindow,
    now: datetime,
    *,
    exclude_job_id: str | None = None,
) -> bool:
    blocks = active_blocks(
        time_blocks_repo.list_starting_before(provider_id, window.padded_end), now
    )
    return any(
        overlaps(block, window)
        for block in blocks
        if exclude_job_id is None or block.job_id != exclude_job_id
    )


def is_available(
    provider_id: str,
    window: OccurrenceWindow,
    now: datetime,
    *,
    exclude_job_id: str | None = None,
) -> bool:
    return not has_conflict(provider_id, window, now, exclude_job_id=exclude_job_id)


def first_conflict(
    provider_id: str,
    windows: Sequence[OccurrenceWindow],
    now: datetime,
    *,
    exclude_job_id: str | None = None,
) -> Optional[int]:
    """Index of the first window the provider cannot take, or None."""
    for index, window in enumerate(windows):
        if has_conflict(provider_id, window, now, exclude_job_id=exclude_job_id):
            return index
    return None


def match_providers(
    engagement: Engagement,
    now: datetime,
    settings: SchedulingSettings | None = None,
) -> MatchResult:
    """Providers in the engagement's category that are free for every occurrence."""
    if engagement.location is None:
        raise InvalidInput("Engagement location is required for matching")
    plan = plan_engagement(engagement, settings)
    candidates = providers_repo.list_for_category(engagement.category)
    available: List[Provider] = []
    for provider in candidates:
        blocked_at = first_conflict(
            provider.uid, plan.windows, now, exclude_job_id=engagement.id
        )
        if blocked_at is None:
            available.append(provider)
        else:
            logger.debug(
                "provider_unavailable",
                extra={
                    "provider_id": provider.uid,
                    "engagement_id": engagement.id,
                    "occurrence_index": blocked_at,
                },
            )
    logger.info(
        "match_providers_completed",
        extra={
            "engagement_id": engagement.id,
            "candidates": len(candidates),
            "available": len(available),
            "occurrences": len(plan.windows),
        },
    )
    return MatchResult(plan=plan, providers=available)
