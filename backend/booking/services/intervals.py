"""Padded service windows and their overlap rule.

Every entry point (matching, hold creation, series generation) builds its
windows here so the buffer arithmetic lives in one place.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Protocol

from ..models import OccurrenceWindow


class PaddedInterval(Protocol):
    padded_start: datetime
    padded_end: datetime


def overlaps(a: PaddedInterval, b: PaddedInterval) -> bool:
    """Half-open overlap of two padded windows; touching endpoints do not conflict."""
    return a.padded_start < b.padded_end and a.padded_end > b.padded_start


def build_window(
    service_start: datetime,
    duration_minutes: int,
    *,
    buffer_before_minutes: int,
    buffer_after_minutes: int,
) -> OccurrenceWindow:
    service_end = service_start + timedelta(minutes=duration_minutes)
    return OccurrenceWindow(
        service_start=service_start,
        service_end=service_end,
        padded_start=service_start - timedelta(minutes=buffer_before_minutes),
        padded_end=service_end + timedelta(minutes=buffer_after_minutes),
    )


def build_windows(
    starts: list[datetime],
    duration_minutes: int,
    *,
    buffer_before_minutes: int,
    buffer_after_minutes: int,
) -> list[OccurrenceWindow]:
    return [
        build_window(
            start,
            duration_minutes,
            buffer_before_minutes=buffer_before_minutes,
            buffer_after_minutes=buffer_after_minutes,
        )
        for start in starts
    ]
