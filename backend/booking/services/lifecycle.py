"""Engagement status vocabulary and the transitions between statuses."""

from __future__ import annotations

from typing import Dict, FrozenSet

from ..errors import InvalidInput

REQUESTED = "requested"
ACCEPTED = "accepted"
DECLINED = "declined"
QUOTATION_CREATED = "quotation_created"
QUOTATION_ACCEPTED = "quotation_accepted"
QUOTATION_DECLINED_PENDING_VISITATION = "quotation_declined_pending_visitation"
TERMINATED_AFTER_QUOTATION_DECLINE = "terminated_after_quotation_decline"
COMPLETED_PENDING_PAYMENT = "completed_pending_payment"
COMPLETED = "completed"
SCHEDULED = "scheduled"
RECURRING_ENDED = "recurring_ended"
PROVIDER_ENDED_RECURRING = "provider_ended_recurring"
REMATCH = "rematch"
CANCELLED_BY_CLIENT = "cancelled_by_client"
NEXT_CANCELLED_BY_PROVIDER = "next_cancelled_by_provider"

STATUSES: FrozenSet[str] = frozenset(
    {
        REQUESTED,
        ACCEPTED,
        DECLINED,
        QUOTATION_CREATED,
        QUOTATION_ACCEPTED,
        QUOTATION_DECLINED_PENDING_VISITATION,
        TERMINATED_AFTER_QUOTATION_DECLINE,
        COMPLETED_PENDING_PAYMENT,
        COMPLETED,
        SCHEDULED,
        RECURRING_ENDED,
        PROVIDER_ENDED_RECURRING,
        REMATCH,
        CANCELLED_BY_CLIENT,
        NEXT_CANCELLED_BY_PROVIDER,
    }
)

TERMINAL: FrozenSet[str] = frozenset(
    {
        TERMINATED_AFTER_QUOTATION_DECLINE,
        COMPLETED,
        RECURRING_ENDED,
        PROVIDER_ENDED_RECURRING,
    }
)

# A (re)hold may be placed from these; the engagement goes back to requested.
HOLDABLE: FrozenSet[str] = frozenset({REQUESTED, DECLINED, REMATCH, CANCELLED_BY_CLIENT})

SIDE_CHANNELS: FrozenSet[str] = frozenset(
    {RECURRING_ENDED, PROVIDER_ENDED_RECURRING, REMATCH, CANCELLED_BY_CLIENT}
)

# Statuses the reminder scanner never notifies about.
NO_REMINDER: FrozenSet[str] = TERMINAL | frozenset(
    {DECLINED, REMATCH, CANCELLED_BY_CLIENT, NEXT_CANCELLED_BY_PROVIDER}
)

_MAIN_PATH: Dict[str, FrozenSet[str]] = {
    REQUESTED: frozenset({ACCEPTED, DECLINED}),
    ACCEPTED: frozenset({QUOTATION_CREATED, NEXT_CANCELLED_BY_PROVIDER, ACCEPTED}),
    SCHEDULED: frozenset({QUOTATION_CREATED, NEXT_CANCELLED_BY_PROVIDER, ACCEPTED}),
    NEXT_CANCELLED_BY_PROVIDER: frozenset({ACCEPTED}),
    QUOTATION_CREATED: frozenset(
        {QUOTATION_ACCEPTED, QUOTATION_DECLINED_PENDING_VISITATION}
    ),
    QUOTATION_DECLINED_PENDING_VISITATION: frozenset(
        {TERMINATED_AFTER_QUOTATION_DECLINE}
    ),
    QUOTATION_ACCEPTED: frozenset({COMPLETED_PENDING_PAYMENT}),
    COMPLETED_PENDING_PAYMENT: frozenset({COMPLETED}),
}


def can_transition(current: str, target: str) -> bool:
    if current in TERMINAL or target not in STATUSES:
        return False
    if target in SIDE_CHANNELS:
        return True
    if target == REQUESTED:
        return current in HOLDABLE
    return target in _MAIN_PATH.get(current, frozenset())


def assert_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidInput(
            f"Cannot move engagement from {current} to {target}",
            current_status=current,
            target_status=target,
        )


def is_holdable(status: str) -> bool:
    return status in HOLDABLE
