from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Iterable, List, Optional

from ..config import get_settings
from ..errors import Forbidden, InvalidInput, NotFound
from ..metrics import metrics
from ..models import (
    ROLE_ADMIN,
    ROLE_CLIENT,
    ROLE_CONTRACTOR,
    ROLE_PROVIDER,
    Engagement,
    Location,
    RecurrenceDescriptor,
    TaskLine,
    new_engagement_id,
    new_quotation_id,
)
from ..repositories import engagements_repo, providers_repo
from . import lifecycle
from .availability import MatchResult, match_providers, plan_engagement
from .holds import DECISION_ACCEPTED, DECISION_DECLINED, hold_manager
from .identity import Identity
from .push import push_service
from .recurrence import advance_engagement

logger = logging.getLogger(__name__)

CLICK_ACTION = "FLUTTER_NOTIFICATION_CLICK"


@dataclass
class ActionResult:
    engagement: Engagement
    detail: dict[str, Any] = field(default_factory=dict)


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(UTC)


def _load(engagement_id: str) -> Engagement:
    engagement = engagements_repo.get(engagement_id)
    if engagement is None:
        raise NotFound("Engagement not found", engagement_id=engagement_id)
    return engagement


def _require_role(caller: Identity, roles: Iterable[str], action: str) -> None:
    if caller.role not in roles:
        raise Forbidden(f"Role {caller.role} cannot {action}")


def _require_owner(caller: Identity, engagement: Engagement, action: str) -> None:
    _require_role(caller, (ROLE_CLIENT,), action)
    if engagement.client_id != caller.uid:
        raise Forbidden("You do not own this engagement", engagement_id=engagement.id)


def _require_assigned_provider(
    caller: Identity, engagement: Engagement, action: str
) -> None:
    _require_role(caller, (ROLE_PROVIDER,), action)
    if not engagement.selected_provider_id or engagement.selected_provider_id != caller.uid:
        raise Forbidden(
            "Not the provider assigned to this engagement", engagement_id=engagement.id
        )


def _require_recurring(engagement: Engagement) -> None:
    if not engagement.is_recurring:
        raise InvalidInput("Not a recurring engagement", engagement_id=engagement.id)


def _series_job_id(engagement: Engagement) -> str:
    # Holds for a whole series are filed under the root engagement's id.
    return engagement.recurrence_series_id or engagement.id


def _move(engagement: Engagement, target: str) -> None:
    lifecycle.assert_transition(engagement.status, target)
    engagement.status = target


def _clear_selection(engagement: Engagement) -> None:
    engagement.selected_provider_id = None
    engagement.provider_name = None
    engagement.hold_id = None
    engagement.hold_expires_at = None


async def _notify(
    uid: str | None,
    *,
    title: str,
    body: str,
    kind: str,
    engagement_id: str,
    route: str | None = None,
) -> None:
    """Best-effort push; a delivery problem never fails the action."""
    if not uid:
        return
    data = {"type": kind, "jobId": engagement_id, "click_action": CLICK_ACTION}
    if route:
        data["route"] = route
    try:
        await push_service.notify_user(uid, title, body, data)
    except Exception:
        logger.warning(
            "push_notify_failed",
            exc_info=True,
            extra={"uid": uid, "engagement_id": engagement_id, "kind": kind},
        )


def _provider_name(engagement: Engagement) -> str:
    return engagement.provider_name or "Your service provider"


async def create_engagement(
    caller: Identity,
    *,
    category: str,
    tasks: List[TaskLine],
    location: Optional[Location],
    scheduled_date: Optional[datetime],
    is_recurring: bool = False,
    recurrence: Optional[RecurrenceDescriptor] = None,
) -> ActionResult:
    _require_role(caller, (ROLE_CLIENT,), "create engagements")
    category = (category or "").strip().lower()
    if not category:
        raise InvalidInput("category is required")
    if not tasks:
        raise InvalidInput("At least one task is required")
    if scheduled_date is None:
        raise InvalidInput("scheduled_date is required")
    if scheduled_date.tzinfo is None:
        raise InvalidInput("scheduled_date must include a timezone offset")
    if is_recurring and recurrence is None:
        recurrence = RecurrenceDescriptor()
    if is_recurring and recurrence.start_at is None:
        # Pinned so the series start survives later moves of scheduled_date.
        recurrence.start_at = scheduled_date.astimezone(UTC)

    engagement = Engagement(
        id=new_engagement_id(),
        client_id=caller.uid,
        category=category,
        tasks=list(tasks),
        location=location,
        scheduled_date=scheduled_date.astimezone(UTC),
        is_recurring=is_recurring,
        recurrence=recurrence if is_recurring else None,
        status=lifecycle.REQUESTED,
    )
    # Validates durations, recurrence and timezone before anything is stored.
    plan_engagement(engagement)
    stored = engagements_repo.create(engagement)
    metrics.engagements_created += 1
    logger.info(
        "engagement_created",
        extra={
            "engagement_id": stored.id,
            "client_id": caller.uid,
            "is_recurring": is_recurring,
        },
    )
    return ActionResult(engagement=stored)


def get_engagement(caller: Identity, engagement_id: str) -> Engagement:
    engagement = _load(engagement_id)
    allowed = caller.role == ROLE_ADMIN or caller.uid in (
        engagement.client_id,
        engagement.selected_provider_id,
        engagement.contractor_id,
    )
    if not allowed:
        raise Forbidden("Not a party to this engagement", engagement_id=engagement_id)
    return engagement


async def match(
    caller: Identity, engagement_id: str, now: datetime | None = None
) -> MatchResult:
    engagement = _load(engagement_id)
    _require_owner(caller, engagement, "match providers")
    metrics.match_requests += 1
    return match_providers(engagement, _now(now))


async def hold_provider(
    caller: Identity,
    engagement_id: str,
    provider_id: str,
    now: datetime | None = None,
) -> ActionResult:
    now = _now(now)
    engagement = _load(engagement_id)
    _require_owner(caller, engagement, "hold providers")
    if not lifecycle.is_holdable(engagement.status):
        raise InvalidInput(
            f"Cannot hold a provider while engagement is {engagement.status}",
            engagement_id=engagement_id,
        )
    provider = providers_repo.get(provider_id)
    if provider is None:
        raise NotFound("Provider not found", provider_id=provider_id)

    plan = plan_engagement(engagement)
    previous_provider = engagement.selected_provider_id
    result = hold_manager.create_holds(engagement, provider.uid, plan.windows, now)
    if previous_provider and previous_provider != provider.uid:
        hold_manager.release_hold(previous_provider, engagement.id)

    _move(engagement, lifecycle.REQUESTED)
    engagement.selected_provider_id = provider.uid
    engagement.provider_name = provider.display_name
    engagement.contractor_id = provider.contractor_id
    engagement.hold_id = result.hold_id
    engagement.hold_expires_at = result.expires_at
    engagement = engagements_repo.save(engagement)

    await _notify(
        provider.uid,
        title="New Job Request",
        body="A client selected you for a job. Please respond before the hold expires.",
        kind="provider_job_requested",
        engagement_id=engagement.id,
    )
    return ActionResult(
        engagement=engagement,
        detail={
            "holds": [
                {"hold_id": b.id, "start_at": b.service_start.isoformat()}
                for b in result.blocks
            ],
            "hold_expires_at": result.expires_at.isoformat(),
            "hold_minutes": get_settings().scheduling.hold_minutes,
        },
    )


async def cancel_hold(caller: Identity, engagement_id: str) -> ActionResult:
    engagement = _load(engagement_id)
    _require_owner(caller, engagement, "cancel holds")
    _move(engagement, lifecycle.CANCELLED_BY_CLIENT)
    released = hold_manager.release_hold(engagement.selected_provider_id, engagement.id)
    _clear_selection(engagement)
    engagement = engagements_repo.save(engagement)
    return ActionResult(engagement=engagement, detail={"released": released})


async def respond(
    caller: Identity,
    engagement_id: str,
    decision: str,
    now: datetime | None = None,
) -> ActionResult:
    now = _now(now)
    decision = (decision or "").strip().lower()
    if decision not in (DECISION_ACCEPTED, DECISION_DECLINED):
        raise InvalidInput("status must be accepted or declined")
    engagement = _load(engagement_id)
    _require_assigned_provider(caller, engagement, "respond to engagements")
    if not engagement.client_id:
        raise InvalidInput("Engagement has no client", engagement_id=engagement_id)
    target = lifecycle.ACCEPTED if decision == DECISION_ACCEPTED else lifecycle.DECLINED
    lifecycle.assert_transition(engagement.status, target)

    provider_id = engagement.selected_provider_id or caller.uid
    if decision == DECISION_ACCEPTED:
        # A taken slot behind an expired hold surfaces as Conflict here.
        hold_manager.resolve_holds(provider_id, engagement.id, decision, now)
    else:
        try:
            hold_manager.resolve_holds(provider_id, engagement.id, decision, now)
        except Exception:
            logger.warning(
                "decline_hold_cleanup_failed",
                exc_info=True,
                extra={"engagement_id": engagement.id, "provider_id": provider_id},
            )

    engagement.status = target
    engagement.provider_response_at = now
    if decision == DECISION_ACCEPTED:
        engagement.hold_expires_at = None
    engagement = engagements_repo.save(engagement)

    name = _provider_name(engagement)
    if decision == DECISION_ACCEPTED:
        await _notify(
            engagement.client_id,
            title="Job Accepted",
            body=f"{name} accepted your job request.",
            kind="client_job_accepted",
            engagement_id=engagement.id,
            route="/dashboards/client/client_jobs",
        )
    else:
        await _notify(
            engagement.client_id,
            title="Job Declined",
            body=f"{name} declined your job request.",
            kind="client_job_declined",
            engagement_id=engagement.id,
            route="/dashboards/client/client_job_requests",
        )
    return ActionResult(engagement=engagement)


async def create_quotation(
    caller: Identity, engagement_id: str, quotation_id: str | None = None
) -> ActionResult:
    engagement = _load(engagement_id)
    _require_role(caller, (ROLE_PROVIDER, ROLE_CONTRACTOR), "create quotations")
    if caller.uid not in (engagement.selected_provider_id, engagement.contractor_id):
        raise Forbidden(
            "Not the provider assigned to this engagement", engagement_id=engagement_id
        )
    _move(engagement, lifecycle.QUOTATION_CREATED)
    engagement.quotation_id = quotation_id or new_quotation_id()
    engagement = engagements_repo.save(engagement)
    await _notify(
        engagement.client_id,
        title="Quotation Ready",
        body=f"{_provider_name(engagement)} sent you a quotation.",
        kind="client_quotation_created",
        engagement_id=engagement.id,
    )
    return ActionResult(
        engagement=engagement, detail={"quotation_id": engagement.quotation_id}
    )


async def quotation_decision(
    caller: Identity, engagement_id: str, decision: str
) -> ActionResult:
    decision = (decision or "").strip().lower()
    if decision not in (DECISION_ACCEPTED, DECISION_DECLINED):
        raise InvalidInput("decision must be accepted or declined")
    engagement = _load(engagement_id)
    _require_owner(caller, engagement, "decide on quotations")
    target = (
        lifecycle.QUOTATION_ACCEPTED
        if decision == DECISION_ACCEPTED
        else lifecycle.QUOTATION_DECLINED_PENDING_VISITATION
    )
    _move(engagement, target)
    engagement = engagements_repo.save(engagement)
    await _notify(
        engagement.selected_provider_id,
        title="Quotation " + ("Accepted" if decision == DECISION_ACCEPTED else "Declined"),
        body=(
            "The client accepted your quotation."
            if decision == DECISION_ACCEPTED
            else "The client declined your quotation. Please confirm the visitation fee."
        ),
        kind=f"provider_quotation_{decision}",
        engagement_id=engagement.id,
    )
    return ActionResult(engagement=engagement)


async def confirm_visitation_fee(caller: Identity, engagement_id: str) -> ActionResult:
    engagement = _load(engagement_id)
    _require_assigned_provider(caller, engagement, "confirm visitation fees")
    _move(engagement, lifecycle.TERMINATED_AFTER_QUOTATION_DECLINE)
    hold_manager.release_hold(engagement.selected_provider_id, engagement.id)
    engagement = engagements_repo.save(engagement)
    await _notify(
        engagement.client_id,
        title="Visitation Fee Confirmed",
        body=f"{_provider_name(engagement)} confirmed the visitation fee.",
        kind="client_visitation_fee_confirmed",
        engagement_id=engagement.id,
    )
    return ActionResult(engagement=engagement)


async def mark_invoice_paid(caller: Identity, engagement_id: str) -> ActionResult:
    engagement = _load(engagement_id)
    _require_owner(caller, engagement, "mark invoices paid")
    _move(engagement, lifecycle.COMPLETED_PENDING_PAYMENT)
    engagement = engagements_repo.save(engagement)
    await _notify(
        engagement.selected_provider_id,
        title="Invoice Paid",
        body="The client marked the invoice as paid. Please confirm the payment.",
        kind="provider_invoice_paid",
        engagement_id=engagement.id,
    )
    return ActionResult(engagement=engagement)


async def confirm_final_payment(caller: Identity, engagement_id: str) -> ActionResult:
    engagement = _load(engagement_id)
    _require_assigned_provider(caller, engagement, "confirm payments")
    _move(engagement, lifecycle.COMPLETED)
    engagement = engagements_repo.save(engagement)
    await _notify(
        engagement.client_id,
        title="Payment Confirmed",
        body=f"{_provider_name(engagement)} confirmed your payment.",
        kind="client_payment_confirmed",
        engagement_id=engagement.id,
    )
    return ActionResult(engagement=engagement)


async def end_recurring_by_client(
    caller: Identity, engagement_id: str, now: datetime | None = None
) -> ActionResult:
    engagement = _load(engagement_id)
    _require_owner(caller, engagement, "end recurring service")
    _require_recurring(engagement)
    _move(engagement, lifecycle.RECURRING_ENDED)
    hold_manager.release_hold(engagement.selected_provider_id, _series_job_id(engagement))
    engagement.ended_by = ROLE_CLIENT
    engagement.ended_at = _now(now)
    engagement = engagements_repo.save(engagement)
    await _notify(
        engagement.selected_provider_id,
        title="Recurring Service Ended",
        body="The client ended this recurring service.",
        kind="provider_recurring_ended_by_client",
        engagement_id=engagement.id,
        route="/provider/recurring_job_details",
    )
    return ActionResult(engagement=engagement)


async def end_recurring_by_provider(
    caller: Identity, engagement_id: str, now: datetime | None = None
) -> ActionResult:
    engagement = _load(engagement_id)
    _require_assigned_provider(caller, engagement, "end recurring service")
    _require_recurring(engagement)
    _move(engagement, lifecycle.PROVIDER_ENDED_RECURRING)
    hold_manager.release_hold(engagement.selected_provider_id, _series_job_id(engagement))
    engagement.ended_by = ROLE_PROVIDER
    engagement.ended_at = _now(now)
    engagement = engagements_repo.save(engagement)
    await _notify(
        engagement.client_id,
        title="Recurring Service Ended",
        body=f"{_provider_name(engagement)} ended this recurring service.",
        kind="client_recurring_ended_by_provider",
        engagement_id=engagement.id,
    )
    return ActionResult(engagement=engagement)


async def rematch(caller: Identity, engagement_id: str) -> ActionResult:
    engagement = _load(engagement_id)
    _require_owner(caller, engagement, "rematch")
    previous_provider = engagement.selected_provider_id
    _move(engagement, lifecycle.REMATCH)
    hold_manager.release_hold(previous_provider, engagement.id)
    _clear_selection(engagement)
    engagement = engagements_repo.save(engagement)
    await _notify(
        previous_provider,
        title="Client Rematched",
        body="The client chose to rematch with another provider.",
        kind="provider_recurring_rematched",
        engagement_id=engagement.id,
        route="/updated_job_details_provider",
    )
    return ActionResult(engagement=engagement)


async def cancel_next_by_client(caller: Identity, engagement_id: str) -> ActionResult:
    engagement = _load(engagement_id)
    _require_owner(caller, engagement, "cancel the next occurrence")
    _require_recurring(engagement)
    if engagement.scheduled_date is None:
        raise InvalidInput("Missing scheduled date", engagement_id=engagement_id)
    lifecycle.assert_transition(engagement.status, lifecycle.ACCEPTED)

    next_at = advance_engagement(engagement)
    hold_manager.release_occurrence(
        engagement.selected_provider_id,
        _series_job_id(engagement),
        engagement.scheduled_date,
    )
    engagement.status = lifecycle.ACCEPTED
    engagement.scheduled_date = next_at
    # The moved occurrence gets its own reminder.
    engagement.reminder_sent = False
    engagement.reminder_sent_at = None
    engagement.reminder_skip_reason = None
    engagement = engagements_repo.save(engagement)
    await _notify(
        engagement.selected_provider_id,
        title="Next Visit Cancelled",
        body="The client cancelled the next visit of this recurring service.",
        kind="provider_recurring_next_cancelled_by_client",
        engagement_id=engagement.id,
        route="/provider/recurring_job_details",
    )
    return ActionResult(
        engagement=engagement, detail={"next_scheduled_at": next_at.isoformat()}
    )


async def cancel_next_by_provider(caller: Identity, engagement_id: str) -> ActionResult:
    engagement = _load(engagement_id)
    _require_assigned_provider(caller, engagement, "cancel the next occurrence")
    _require_recurring(engagement)
    if engagement.scheduled_date is None:
        raise InvalidInput("Missing scheduled date", engagement_id=engagement_id)
    _move(engagement, lifecycle.NEXT_CANCELLED_BY_PROVIDER)
    hold_manager.release_occurrence(
        engagement.selected_provider_id,
        _series_job_id(engagement),
        engagement.scheduled_date,
    )
    engagement = engagements_repo.save(engagement)
    await _notify(
        engagement.client_id,
        title="Next Visit Cancelled",
        body=f"{_provider_name(engagement)} cancelled the next visit.",
        kind="client_recurring_next_cancelled_by_provider",
        engagement_id=engagement.id,
    )
    return ActionResult(engagement=engagement)
