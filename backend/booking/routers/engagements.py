from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..deps import get_caller, require_role
from ..errors import InvalidInput
from ..models import (
    ROLE_CLIENT,
    Engagement,
    Location,
    RecurrenceDescriptor,
    TaskLine,
)
from ..services import engagement_actions as actions
from ..services.identity import Identity
from ..services.recurrence import parse_frequency, parse_weekday


router = APIRouter()


class TaskLineModel(BaseModel):
    label: str
    quantity: int = Field(default=1, ge=1)
    duration_minutes: int | None = Field(default=None, ge=0)


class LocationModel(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    text: str | None = None


class RecurrenceModel(BaseModel):
    # Either structured unit/interval or the legacy text ("2 weeks").
    frequency: str | None = None
    frequency_unit: str | None = None
    frequency_interval: int | None = None
    preferred_weekday: int | str | None = None
    horizon_count: int | None = None
    start_at: datetime | None = None

    def to_descriptor(self) -> RecurrenceDescriptor:
        if self.frequency_unit:
            interval = 1 if self.frequency_interval is None else self.frequency_interval
            unit, interval = parse_frequency(
                {"unit": self.frequency_unit, "interval": interval}
            )
        elif self.frequency_interval is not None:
            raise InvalidInput("recurrence.frequency_interval requires frequency_unit")
        elif self.frequency:
            unit, interval = parse_frequency(self.frequency)
        else:
            unit, interval = parse_frequency({"unit": "week", "interval": 1})
        if self.start_at is not None and self.start_at.tzinfo is None:
            raise InvalidInput("recurrence.start_at must include a timezone offset")
        return RecurrenceDescriptor(
            frequency_unit=unit,
            frequency_interval=interval,
            preferred_weekday=parse_weekday(self.preferred_weekday),
            horizon_count=self.horizon_count,
            start_at=self.start_at,
        )


class EngagementCreateRequest(BaseModel):
    category: str
    tasks: List[TaskLineModel]
    location: LocationModel | None = None
    scheduled_date: datetime
    is_recurring: bool = False
    recurrence: RecurrenceModel | None = None


class RecurrenceResponse(BaseModel):
    frequency_unit: str
    frequency_interval: int
    preferred_weekday: int | None = None
    horizon_count: int | None = None
    start_at: datetime | None = None


class EngagementResponse(BaseModel):
    id: str
    client_id: str
    category: str
    tasks: List[TaskLineModel] = []
    location: LocationModel | None = None
    scheduled_date: datetime | None = None
    is_recurring: bool
    recurrence: RecurrenceResponse | None = None
    status: str
    selected_provider_id: str | None = None
    provider_name: str | None = None
    hold_id: str | None = None
    hold_expires_at: datetime | None = None
    recurrence_series_id: str | None = None
    recurrence_index: int | None = None
    reminder_sent: bool = False
    quotation_id: str | None = None
    ended_by: str | None = None
    ended_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class HoldRequest(BaseModel):
    provider_id: str = Field(min_length=1)


class RespondRequest(BaseModel):
    status: str


class QuotationRequest(BaseModel):
    quotation_id: str | None = None


class DecisionRequest(BaseModel):
    decision: str


def engagement_payload(engagement: Engagement) -> Dict[str, Any]:
    recurrence = engagement.recurrence
    response = EngagementResponse(
        id=engagement.id,
        client_id=engagement.client_id,
        category=engagement.category,
        tasks=[
            TaskLineModel(
                label=t.label, quantity=t.quantity, duration_minutes=t.duration_minutes
            )
            for t in engagement.tasks
        ],
        location=(
            LocationModel(
                latitude=engagement.location.latitude,
                longitude=engagement.location.longitude,
                text=engagement.location.text,
            )
            if engagement.location
            else None
        ),
        scheduled_date=engagement.scheduled_date,
        is_recurring=engagement.is_recurring,
        recurrence=(
            RecurrenceResponse(
                frequency_unit=recurrence.frequency_unit,
                frequency_interval=recurrence.frequency_interval,
                preferred_weekday=recurrence.preferred_weekday,
                horizon_count=recurrence.horizon_count,
                start_at=recurrence.start_at,
            )
            if recurrence
            else None
        ),
        status=engagement.status,
        selected_provider_id=engagement.selected_provider_id,
        provider_name=engagement.provider_name,
        hold_id=engagement.hold_id,
        hold_expires_at=engagement.hold_expires_at,
        recurrence_series_id=engagement.recurrence_series_id,
        recurrence_index=engagement.recurrence_index,
        reminder_sent=engagement.reminder_sent,
        quotation_id=engagement.quotation_id,
        ended_by=engagement.ended_by,
        ended_at=engagement.ended_at,
        created_at=engagement.created_at,
        updated_at=engagement.updated_at,
    )
    return response.model_dump(mode="json")


def action_payload(result: actions.ActionResult) -> Dict[str, Any]:
    return {"ok": True, "engagement": engagement_payload(result.engagement), **result.detail}


@router.post("")
async def create_engagement(
    payload: EngagementCreateRequest,
    caller: Identity = Depends(require_role(ROLE_CLIENT)),
) -> Dict[str, Any]:
    location = (
        Location(
            latitude=payload.location.latitude,
            longitude=payload.location.longitude,
            text=payload.location.text,
        )
        if payload.location
        else None
    )
    recurrence = payload.recurrence.to_descriptor() if payload.recurrence else None
    result = await actions.create_engagement(
        caller,
        category=payload.category,
        tasks=[
            TaskLine(label=t.label, quantity=t.quantity, duration_minutes=t.duration_minutes)
            for t in payload.tasks
        ],
        location=location,
        scheduled_date=payload.scheduled_date,
        is_recurring=payload.is_recurring,
        recurrence=recurrence,
    )
    return action_payload(result)


@router.get("/{engagement_id}")
async def get_engagement(
    engagement_id: str, caller: Identity = Depends(get_caller)
) -> Dict[str, Any]:
    return engagement_payload(actions.get_engagement(caller, engagement_id))


@router.post("/{engagement_id}/match")
async def match_providers(
    engagement_id: str, caller: Identity = Depends(get_caller)
) -> Dict[str, Any]:
    result = await actions.match(caller, engagement_id)
    plan = result.plan
    return {
        "ok": True,
        "engagement_id": engagement_id,
        "duration_minutes": plan.duration_minutes,
        "buffer_before_minutes": plan.buffer_before_minutes,
        "buffer_after_minutes": plan.buffer_after_minutes,
        "occurrences": [
            {
                "service_start": w.service_start.isoformat(),
                "service_end": w.service_end.isoformat(),
                "padded_start": w.padded_start.isoformat(),
                "padded_end": w.padded_end.isoformat(),
            }
            for w in plan.windows
        ],
        "providers": [
            {
                "uid": p.uid,
                "name": p.display_name,
                "categories": list(p.categories),
                "languages": list(p.languages),
            }
            for p in result.providers
        ],
    }


@router.post("/{engagement_id}/hold")
async def hold_provider(
    engagement_id: str,
    payload: HoldRequest,
    caller: Identity = Depends(get_caller),
) -> Dict[str, Any]:
    result = await actions.hold_provider(caller, engagement_id, payload.provider_id.strip())
    return action_payload(result)


@router.post("/{engagement_id}/cancel-hold")
async def cancel_hold(
    engagement_id: str, caller: Identity = Depends(get_caller)
) -> Dict[str, Any]:
    return action_payload(await actions.cancel_hold(caller, engagement_id))


@router.post("/{engagement_id}/respond")
async def respond(
    engagement_id: str,
    payload: RespondRequest,
    caller: Identity = Depends(get_caller),
) -> Dict[str, Any]:
    return action_payload(await actions.respond(caller, engagement_id, payload.status))


@router.post("/{engagement_id}/quotation")
async def create_quotation(
    engagement_id: str,
    payload: QuotationRequest | None = None,
    caller: Identity = Depends(get_caller),
) -> Dict[str, Any]:
    quotation_id = payload.quotation_id if payload else None
    return action_payload(
        await actions.create_quotation(caller, engagement_id, quotation_id)
    )


@router.post("/{engagement_id}/quotation-decision")
async def quotation_decision(
    engagement_id: str,
    payload: DecisionRequest,
    caller: Identity = Depends(get_caller),
) -> Dict[str, Any]:
    return action_payload(
        await actions.quotation_decision(caller, engagement_id, payload.decision)
    )


@router.post("/{engagement_id}/visitation-fee")
async def confirm_visitation_fee(
    engagement_id: str, caller: Identity = Depends(get_caller)
) -> Dict[str, Any]:
    return action_payload(await actions.confirm_visitation_fee(caller, engagement_id))


@router.post("/{engagement_id}/invoice-paid")
async def mark_invoice_paid(
    engagement_id: str, caller: Identity = Depends(get_caller)
) -> Dict[str, Any]:
    return action_payload(await actions.mark_invoice_paid(caller, engagement_id))


@router.post("/{engagement_id}/final-payment")
async def confirm_final_payment(
    engagement_id: str, caller: Identity = Depends(get_caller)
) -> Dict[str, Any]:
    return action_payload(await actions.confirm_final_payment(caller, engagement_id))
