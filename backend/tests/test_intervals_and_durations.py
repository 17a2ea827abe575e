from datetime import UTC, datetime

from booking.models import ServiceTask, TaskLine
from booking.services.durations import line_minutes, total_minutes
from booking.services.intervals import build_window, build_windows, overlaps


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2025, 1, 6, hour, minute, tzinfo=UTC)


def test_build_window_applies_buffers_on_both_sides() -> None:
    window = build_window(
        _at(10), 120, buffer_before_minutes=60, buffer_after_minutes=30
    )
    assert window.service_start == _at(10)
    assert window.service_end == _at(12)
    assert window.padded_start == _at(9)
    assert window.padded_end == _at(12, 30)


def test_touching_padded_windows_do_not_overlap() -> None:
    first = build_window(_at(8), 60, buffer_before_minutes=60, buffer_after_minutes=60)
    # first is padded 07:00-10:00; second starts its padding at 10:00.
    second = build_window(
        _at(11), 60, buffer_before_minutes=60, buffer_after_minutes=60
    )
    assert first.padded_end == second.padded_start
    assert not overlaps(first, second)
    assert not overlaps(second, first)


def test_overlap_is_symmetric_and_catches_containment() -> None:
    outer = build_window(_at(8), 240, buffer_before_minutes=0, buffer_after_minutes=0)
    inner = build_window(_at(9), 30, buffer_before_minutes=0, buffer_after_minutes=0)
    assert overlaps(outer, inner)
    assert overlaps(inner, outer)


def test_build_windows_keeps_order() -> None:
    windows = build_windows(
        [_at(8), _at(14)], 60, buffer_before_minutes=15, buffer_after_minutes=15
    )
    assert [w.service_start for w in windows] == [_at(8), _at(14)]


def test_line_minutes_prefers_explicit_duration() -> None:
    catalog = {"mow lawn": ServiceTask(task_name="Mow lawn", duration_hours=2)}
    line = TaskLine(label="Mow lawn", quantity=2, duration_minutes=45)
    assert line_minutes(line, lambda name: catalog.get(name.lower())) == 90


def test_line_minutes_uses_catalog_and_quantity() -> None:
    catalog = {
        "clean windows": ServiceTask(
            task_name="Clean windows", duration_hours=1, duration_minutes=30
        )
    }
    line = TaskLine(label="Clean windows", quantity=3)
    assert line_minutes(line, lambda name: catalog.get(name.lower())) == 270


def test_unknown_task_counts_as_zero() -> None:
    lines = [
        TaskLine(label="Mystery", quantity=1),
        TaskLine(label="Sweep", quantity=0, duration_minutes=20),
    ]
    # Quantity below one is treated as a single unit.
    assert total_minutes(lines, lambda name: None) == 20
