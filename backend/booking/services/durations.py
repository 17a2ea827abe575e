from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional

from ..models import ServiceTask, TaskLine

logger = logging.getLogger(__name__)

TaskLookup = Callable[[str], Optional[ServiceTask]]


def line_minutes(line: TaskLine, lookup: TaskLookup | None = None) -> int:
    """Minutes for one task line: explicit duration, else the catalog entry."""
    quantity = max(1, int(line.quantity or 1))
    if line.duration_minutes is not None:
        return max(0, int(line.duration_minutes)) * quantity
    task = lookup(line.label) if lookup is not None else None
    if task is None:
        logger.warning("task_duration_unknown", extra={"label": line.label})
        return 0
    return task.minutes_per_unit * quantity


def total_minutes(lines: Iterable[TaskLine], lookup: TaskLookup | None = None) -> int:
    return sum(line_minutes(line, lookup) for line in lines)
