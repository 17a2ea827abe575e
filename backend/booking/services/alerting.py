from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Dict

import httpx

from ..metrics import metrics

logger = logging.getLogger(__name__)

# Runbook anchors, resolved against RUNBOOK_BASE_URL when it is set.
RUNBOOK_ANCHORS: Dict[str, str] = {
    "notification_failure": "push-notifications",
    "cleanup_failure": "time-block-cleanup",
    "series_generation_failure": "recurring-series",
    "request_failure": "api-5xx",
}


def _runbook_for(key: str) -> str:
    base = (os.getenv("RUNBOOK_BASE_URL") or "").rstrip("/")
    anchor = RUNBOOK_ANCHORS.get(key)
    if not base or not anchor:
        return ""
    return f"{base}#{anchor}"


def _should_fire(key: str, cooldown_seconds: int) -> bool:
    last = metrics.alert_last_fired.get(key)
    if not last:
        return True
    try:
        last_dt = datetime.fromisoformat(last)
    except ValueError:
        return True
    return datetime.now(timezone.utc) - last_dt >= timedelta(seconds=cooldown_seconds)


def _record_alert(key: str, detail: str, severity: str, runbook: str) -> None:
    now = datetime.now(timezone.utc)
    existing = metrics.alerts_open.get(key) or {}
    occurrences = existing.get("occurrences", 0) + 1
    metrics.alerts_open[key] = {
        "key": key,
        "severity": severity,
        "detail": detail,
        "runbook": runbook,
        "first_triggered": existing.get("first_triggered", now.isoformat()),
        "last_triggered": now.isoformat(),
        "occurrences": occurrences,
    }
    metrics.alert_events_total += 1
    metrics.alert_last_fired[key] = now.isoformat()
    webhook = os.getenv("ONCALL_WEBHOOK_URL")
    if webhook:
        payload = {"text": f"[{severity}] {key}: {detail} | runbook={runbook or 'n/a'}"}
        try:
            httpx.post(webhook, json=payload, timeout=3.0)
        except httpx.HTTPError:
            logger.warning(
                "oncall_webhook_failed",
                exc_info=True,
                extra={"key": key, "severity": severity},
            )
    logger.warning(
        "alert_triggered",
        extra={
            "key": key,
            "severity": severity,
            "runbook": runbook,
            "detail": detail,
            "occurrences": occurrences,
        },
    )


def maybe_trigger_alert(
    key: str,
    *,
    detail: str,
    severity: str = "P1",
    cooldown_seconds: int = 300,
) -> bool:
    """Trigger an alert unless the same key fired within the cooldown."""

    if not _should_fire(key, cooldown_seconds=cooldown_seconds):
        return False
    _record_alert(key, detail=detail, severity=severity, runbook=_runbook_for(key))
    return True


def record_notification_failure(channel: str, detail: str) -> None:
    metrics.notification_failures += 1
    maybe_trigger_alert(
        "notification_failure",
        detail=f"{channel} notification failure: {detail}",
        cooldown_seconds=120,
    )


def record_cleanup_failure(resource: str, detail: str) -> None:
    """Best-effort cleanup failed; the primary change was kept."""
    maybe_trigger_alert(
        "cleanup_failure",
        detail=f"{resource} cleanup failure: {detail}",
        cooldown_seconds=300,
    )


def record_series_failure(series_id: str, detail: str) -> None:
    maybe_trigger_alert(
        "series_generation_failure",
        detail=f"series {series_id}: {detail}",
        cooldown_seconds=600,
    )
