from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..deps import require_cron_auth
from ..services.holds import hold_manager
from ..services.job_queue import job_queue
from ..services.reminders import send_recurring_reminders
from ..services.series import generate_recurring_jobs


router = APIRouter(dependencies=[Depends(require_cron_auth)])


@router.api_route("/generate-recurring-jobs", methods=["GET", "POST"])
async def generate_recurring(background: bool = False) -> Dict[str, Any]:
    """Materialize missing occurrences of accepted recurring engagements.

    Intended to be called by a daily scheduler; safe to call repeatedly.
    """
    if background:
        job_queue.enqueue("generate_recurring_jobs", generate_recurring_jobs)
        return {"ok": True, "queued": True}
    summary = generate_recurring_jobs()
    return {"ok": True, **summary.as_dict()}


@router.api_route("/recurring-reminders", methods=["GET", "POST"])
async def recurring_reminders(background: bool = False) -> Dict[str, Any]:
    """Remind both parties ahead of every non-first recurring occurrence."""
    if background:
        job_queue.enqueue("recurring_reminders", send_recurring_reminders)
        return {"ok": True, "queued": True}
    summary = await send_recurring_reminders()
    return {"ok": True, **summary.as_dict()}


@router.post("/purge-expired-holds")
async def purge_expired_holds() -> Dict[str, Any]:
    purged = hold_manager.purge_expired(datetime.now(UTC))
    return {"ok": True, "purged": purged}
