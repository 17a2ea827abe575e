from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict


@dataclass
class RouteMetrics:
    request_count: int = 0
    error_count: int = 0
    total_latency_ms: float = 0.0
    max_latency_ms: float = 0.0


@dataclass
class Metrics:
    total_requests: int = 0
    total_errors: int = 0
    alert_events_total: int = 0
    alerts_open: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    alert_last_fired: Dict[str, str] = field(default_factory=dict)
    engagements_created: int = 0
    match_requests: int = 0
    holds_created: int = 0
    hold_conflicts: int = 0
    holds_booked: int = 0
    holds_released: int = 0
    hold_release_failures: int = 0
    expired_holds_purged: int = 0
    series_runs: int = 0
    series_occurrences_generated: int = 0
    series_errors: int = 0
    reminder_runs: int = 0
    reminders_sent: int = 0
    reminders_skipped_first: int = 0
    push_sent_total: int = 0
    notification_attempts: int = 0
    notification_failures: int = 0
    background_job_errors: int = 0
    route_metrics: Dict[str, RouteMetrics] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


metrics = Metrics()
