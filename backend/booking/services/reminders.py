"""Reminders ahead of recurring occurrences.

The daily scheduler that calls this is imprecise, so the nominal 48h lead
time is matched against a widened 48h-72h window with a drift buffer on
both sides. Every reminder is claimed (``reminder_sent``) before any push
goes out, which keeps overlapping runs from notifying twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Dict

from ..config import ReminderSettings, get_settings
from ..metrics import metrics
from ..models import Engagement
from ..repositories import engagements_repo
from . import lifecycle
from .push import push_service
from .recurrence import first_occurrence

logger = logging.getLogger(__name__)

SKIP_FIRST_JOB = "first_job_of_recurrence"
REMINDER_TYPE = "recurring_job_reminder_48h"
REMINDER_TITLE = "Upcoming Scheduled Service"


@dataclass
class ReminderRunSummary:
    window_start: datetime
    window_end: datetime
    considered: int = 0
    sent: int = 0
    errors: int = 0
    skipped: Dict[str, int] = field(
        default_factory=lambda: {
            "first_job": 0,
            "already_sent": 0,
            "missing_users": 0,
            "cancelled": 0,
        }
    )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "considered": self.considered,
            "sent": self.sent,
            "skipped": dict(self.skipped),
            "errors": self.errors,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
        }


def reminder_window(
    now: datetime, settings: ReminderSettings | None = None
) -> tuple[datetime, datetime]:
    settings = settings or get_settings().reminders
    drift = timedelta(minutes=settings.drift_buffer_minutes)
    return (
        now + timedelta(hours=settings.window_start_hours) - drift,
        now + timedelta(hours=settings.window_end_hours) + drift,
    )


def is_first_occurrence(engagement: Engagement) -> bool:
    """True for the occurrence that opens its series."""
    recurrence = engagement.recurrence
    if recurrence is None or recurrence.start_at is None:
        return False
    scheduled = engagement.scheduled_date
    if scheduled is None:
        return False
    return scheduled == recurrence.start_at or scheduled == first_occurrence(engagement)


async def _send_pair(engagement: Engagement) -> int:
    """Notify client and provider; returns the number of failed deliveries."""
    failures = 0
    for uid, body, route in (
        (
            engagement.client_id,
            "Reminder: Your scheduled service is in 2 days. Tap to view details.",
            "/dashboards/client/job_details",
        ),
        (
            engagement.selected_provider_id,
            "Reminder: You have a scheduled job in 2 days. Tap to view details.",
            "/provider/job_details",
        ),
    ):
        try:
            ok = await push_service.notify_user(
                uid,
                REMINDER_TITLE,
                body,
                {
                    "type": REMINDER_TYPE,
                    "route": route,
                    "jobId": engagement.id,
                    "click_action": "FLUTTER_NOTIFICATION_CLICK",
                },
            )
        except Exception:
            logger.warning(
                "reminder_push_failed",
                exc_info=True,
                extra={"engagement_id": engagement.id, "uid": uid},
            )
            ok = False
        if not ok:
            failures += 1
    return failures


async def send_recurring_reminders(now: datetime | None = None) -> ReminderRunSummary:
    now = now or datetime.now(UTC)
    start, end = reminder_window(now)
    summary = ReminderRunSummary(window_start=start, window_end=end)
    metrics.reminder_runs += 1

    for engagement in engagements_repo.list_recurring_between(start, end):
        summary.considered += 1
        if engagement.reminder_sent:
            summary.skipped["already_sent"] += 1
            continue
        if engagement.status in lifecycle.NO_REMINDER:
            summary.skipped["cancelled"] += 1
            continue
        if is_first_occurrence(engagement):
            if engagements_repo.mark_reminder_sent(
                engagement.id, now, skip_reason=SKIP_FIRST_JOB
            ):
                summary.skipped["first_job"] += 1
                metrics.reminders_skipped_first += 1
            else:
                summary.skipped["already_sent"] += 1
            continue
        if not engagement.client_id or not engagement.selected_provider_id:
            summary.skipped["missing_users"] += 1
            continue
        if not engagements_repo.mark_reminder_sent(engagement.id, now):
            summary.skipped["already_sent"] += 1
            continue

        summary.errors += await _send_pair(engagement)
        summary.sent += 1
        metrics.reminders_sent += 1

    logger.info(
        "recurring_reminders_completed",
        extra={
            "considered": summary.considered,
            "sent": summary.sent,
            "errors": summary.errors,
            "window_start": start.isoformat(),
            "window_end": end.isoformat(),
        },
    )
    return summary
