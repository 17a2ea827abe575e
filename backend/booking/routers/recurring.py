from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..deps import get_caller
from ..services import engagement_actions as actions
from ..services.identity import Identity
from .engagements import action_payload


router = APIRouter()


@router.post("/{engagement_id}/client-end")
async def client_end(
    engagement_id: str, caller: Identity = Depends(get_caller)
) -> Dict[str, Any]:
    """Client stops the recurring service; the provider is notified."""
    return action_payload(await actions.end_recurring_by_client(caller, engagement_id))


@router.post("/{engagement_id}/provider-end")
async def provider_end(
    engagement_id: str, caller: Identity = Depends(get_caller)
) -> Dict[str, Any]:
    return action_payload(await actions.end_recurring_by_provider(caller, engagement_id))


@router.post("/{engagement_id}/rematch")
async def client_rematch(
    engagement_id: str, caller: Identity = Depends(get_caller)
) -> Dict[str, Any]:
    """Drop the current provider so the client can hold another one."""
    return action_payload(await actions.rematch(caller, engagement_id))


@router.post("/{engagement_id}/client-cancel-next")
async def client_cancel_next(
    engagement_id: str, caller: Identity = Depends(get_caller)
) -> Dict[str, Any]:
    return action_payload(await actions.cancel_next_by_client(caller, engagement_id))


@router.post("/{engagement_id}/provider-cancel-next")
async def provider_cancel_next(
    engagement_id: str, caller: Identity = Depends(get_caller)
) -> Dict[str, Any]:
    return action_payload(await actions.cancel_next_by_provider(caller, engagement_id))
