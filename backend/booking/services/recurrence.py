"""Recurrence projection: start instant + weekday + frequency -> occurrences.

Weekdays follow the marketplace convention 0=Sunday .. 6=Saturday. Calendar
steps are taken in the configured scheduling timezone so "same time of day"
means wall-clock time there; results are returned in UTC.
"""

from __future__ import annotations

import calendar
import re
from datetime import UTC, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from ..config import SchedulingSettings, get_settings
from ..errors import InvalidInput
from ..models import (
    FREQUENCY_MONTH,
    FREQUENCY_WEEK,
    Engagement,
    RecurrenceDescriptor,
)

_WEEKDAY_NAMES = {
    "sunday": 0,
    "sun": 0,
    "monday": 1,
    "mon": 1,
    "tuesday": 2,
    "tue": 2,
    "tues": 2,
    "wednesday": 3,
    "wed": 3,
    "thursday": 4,
    "thu": 4,
    "thur": 4,
    "thurs": 4,
    "friday": 5,
    "fri": 5,
    "saturday": 6,
    "sat": 6,
}

_FREQUENCY_ALIASES = {
    "weekly": (FREQUENCY_WEEK, 1),
    "biweekly": (FREQUENCY_WEEK, 2),
    "monthly": (FREQUENCY_MONTH, 1),
}

_FREQUENCY_RE = re.compile(r"^(?:every\s+)?(\d+)\s*(week|weeks|month|months)$")


def weekday_index(value: datetime) -> int:
    """Return the weekday with Sunday=0 (``datetime.weekday`` uses Monday=0)."""
    return (value.weekday() + 1) % 7


def parse_weekday(raw: Any) -> int | None:
    if raw is None:
        return None
    if isinstance(raw, bool):
        raise InvalidInput("preferred_weekday must be 0-6 or a weekday name")
    if isinstance(raw, int):
        if 0 <= raw <= 6:
            return raw
        raise InvalidInput("preferred_weekday must be between 0 (Sunday) and 6")
    text = str(raw).strip().lower()
    if not text:
        return None
    if text.isdigit():
        return parse_weekday(int(text))
    if text in _WEEKDAY_NAMES:
        return _WEEKDAY_NAMES[text]
    raise InvalidInput(f"Unknown preferred weekday: {raw!r}")


def parse_frequency(raw: Any) -> tuple[str, int]:
    """Parse ``{"unit": "week", "interval": 2}`` or text like ``"every 2 weeks"``."""
    if isinstance(raw, dict):
        unit = str(raw.get("unit") or "").strip().lower().rstrip("s")
        interval = raw.get("interval", 1)
        if unit not in (FREQUENCY_WEEK, FREQUENCY_MONTH):
            raise InvalidInput("frequency unit must be 'week' or 'month'")
        try:
            interval_value = int(interval)
        except (TypeError, ValueError):
            raise InvalidInput("frequency interval must be an integer")
        if interval_value < 1:
            raise InvalidInput("frequency interval must be at least 1")
        return unit, interval_value

    text = str(raw or "").strip().lower()
    if text in _FREQUENCY_ALIASES:
        return _FREQUENCY_ALIASES[text]
    match = _FREQUENCY_RE.match(text)
    if not match:
        raise InvalidInput(f"Invalid recurrence frequency: {raw!r}")
    interval_value = int(match.group(1))
    if interval_value < 1:
        raise InvalidInput("frequency interval must be at least 1")
    unit = FREQUENCY_MONTH if match.group(2).startswith("month") else FREQUENCY_WEEK
    return unit, interval_value


def clamp_horizon(raw: int | None, settings: SchedulingSettings | None = None) -> int:
    settings = settings or get_settings().scheduling
    if raw is None:
        return settings.default_horizon_count
    return min(max(int(raw), settings.min_horizon_count), settings.max_horizon_count)


def add_months(value: datetime, months: int) -> datetime:
    """Move ``value`` forward by calendar months, clamping the day-of-month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(value.day, last_day))


def align_to_weekday(value: datetime, preferred_weekday: int | None) -> datetime:
    """Advance day by day (never backward) until the weekday matches."""
    if preferred_weekday is None:
        return value
    aligned = value
    while weekday_index(aligned) != preferred_weekday:
        aligned = aligned + timedelta(days=1)
    return aligned


def next_occurrence_after(value: datetime, unit: str, interval: int) -> datetime:
    if unit == FREQUENCY_WEEK:
        return value + timedelta(days=7 * interval)
    if unit == FREQUENCY_MONTH:
        return add_months(value, interval)
    raise InvalidInput(f"Unsupported frequency unit: {unit!r}")


def project_occurrences(
    start: datetime,
    *,
    preferred_weekday: int | None,
    unit: str,
    interval: int,
    count: int,
) -> list[datetime]:
    """Return ``count`` strictly increasing occurrence instants.

    Weekly steps add ``interval * 7`` days to the previous occurrence.
    Monthly steps move the previous occurrence ``interval`` months ahead
    and then either realign to the first ``preferred_weekday`` of that
    month or keep the (clamped) day-of-month; the time of day is reset to
    ``start``'s hour and minute.
    """
    if unit not in (FREQUENCY_WEEK, FREQUENCY_MONTH):
        raise InvalidInput(f"Unsupported frequency unit: {unit!r}")
    if interval < 1:
        raise InvalidInput("frequency interval must be at least 1")
    if count < 1:
        raise InvalidInput("occurrence count must be at least 1")

    current = align_to_weekday(start, preferred_weekday)
    out: list[datetime] = []
    for _ in range(count):
        out.append(current)
        if unit == FREQUENCY_WEEK:
            current = current + timedelta(days=7 * interval)
            continue
        moved = add_months(current, interval)
        if preferred_weekday is not None:
            moved = align_to_weekday(moved.replace(day=1), preferred_weekday)
        current = moved.replace(
            hour=start.hour, minute=start.minute, second=0, microsecond=0
        )
    return out


def _local_zone(settings: SchedulingSettings) -> ZoneInfo:
    try:
        return ZoneInfo(settings.timezone)
    except Exception:
        raise InvalidInput(f"Unknown scheduling timezone: {settings.timezone!r}")


def series_start(engagement: Engagement) -> datetime | None:
    recurrence = engagement.recurrence
    if recurrence is not None and recurrence.start_at is not None:
        return recurrence.start_at
    return engagement.scheduled_date


def project_engagement(
    engagement: Engagement,
    settings: SchedulingSettings | None = None,
    *,
    start: datetime | None = None,
) -> list[datetime]:
    """Occurrence instants (UTC) for an engagement: one for one-off jobs."""
    settings = settings or get_settings().scheduling
    base = start or (
        series_start(engagement) if engagement.is_recurring else engagement.scheduled_date
    )
    if base is None:
        raise InvalidInput("Engagement has no scheduled date", engagement_id=engagement.id)
    if base.tzinfo is None:
        base = base.replace(tzinfo=UTC)
    if not engagement.is_recurring:
        return [base.astimezone(UTC)]

    recurrence = engagement.recurrence or RecurrenceDescriptor()
    zone = _local_zone(settings)
    local_starts = project_occurrences(
        base.astimezone(zone),
        preferred_weekday=recurrence.preferred_weekday,
        unit=recurrence.frequency_unit,
        interval=recurrence.frequency_interval,
        count=clamp_horizon(recurrence.horizon_count, settings),
    )
    return [value.astimezone(UTC) for value in local_starts]


def advance_engagement(
    engagement: Engagement, settings: SchedulingSettings | None = None
) -> datetime:
    """The engagement's scheduled date moved forward by one recurrence period."""
    settings = settings or get_settings().scheduling
    if engagement.scheduled_date is None:
        raise InvalidInput("Engagement has no scheduled date", engagement_id=engagement.id)
    recurrence = engagement.recurrence or RecurrenceDescriptor()
    zone = _local_zone(settings)
    current = engagement.scheduled_date
    if current.tzinfo is None:
        current = current.replace(tzinfo=UTC)
    moved = next_occurrence_after(
        current.astimezone(zone),
        recurrence.frequency_unit,
        recurrence.frequency_interval,
    )
    return moved.astimezone(UTC)


def first_occurrence(
    engagement: Engagement, settings: SchedulingSettings | None = None
) -> datetime | None:
    """Weekday-aligned first occurrence of the engagement's series, if known."""
    settings = settings or get_settings().scheduling
    base = series_start(engagement)
    if base is None:
        return None
    if base.tzinfo is None:
        base = base.replace(tzinfo=UTC)
    preferred = engagement.recurrence.preferred_weekday if engagement.recurrence else None
    zone = _local_zone(settings)
    return align_to_weekday(base.astimezone(zone), preferred).astimezone(UTC)
