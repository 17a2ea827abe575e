from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import List, Optional
from uuid import uuid4


def _utcnow() -> datetime:
    return datetime.now(UTC)


# TimeBlock statuses.
BLOCK_HELD = "held"
BLOCK_BOOKED = "booked"
ACTIVE_BLOCK_STATUSES = frozenset({BLOCK_HELD, BLOCK_BOOKED})

ROLE_CLIENT = "client"
ROLE_PROVIDER = "provider"
ROLE_CONTRACTOR = "contractor"
ROLE_ADMIN = "admin"
ROLES = frozenset({ROLE_CLIENT, ROLE_PROVIDER, ROLE_CONTRACTOR, ROLE_ADMIN})

FREQUENCY_WEEK = "week"
FREQUENCY_MONTH = "month"


@dataclass
class User:
    uid: str
    role: str
    display_name: Optional[str] = None


@dataclass
class Location:
    latitude: float
    longitude: float
    text: Optional[str] = None


@dataclass
class Provider:
    uid: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    categories: List[str] = field(default_factory=list)
    languages: List[str] = field(default_factory=list)
    location: Optional[Location] = None
    contractor_id: Optional[str] = None

    @property
    def display_name(self) -> str:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or "Your service provider"


@dataclass
class ServiceTask:
    task_name: str
    duration_hours: int = 0
    duration_minutes: int = 0

    @property
    def minutes_per_unit(self) -> int:
        return self.duration_hours * 60 + self.duration_minutes


@dataclass
class TaskLine:
    label: str
    quantity: int = 1
    duration_minutes: Optional[int] = None


@dataclass
class RecurrenceDescriptor:
    frequency_unit: str = FREQUENCY_WEEK
    frequency_interval: int = 1
    preferred_weekday: Optional[int] = None  # 0=Sunday .. 6=Saturday
    horizon_count: Optional[int] = None
    start_at: Optional[datetime] = None


@dataclass
class OccurrenceWindow:
    service_start: datetime
    service_end: datetime
    padded_start: datetime
    padded_end: datetime


@dataclass
class Engagement:
    id: str
    client_id: str
    category: str
    tasks: List[TaskLine] = field(default_factory=list)
    location: Optional[Location] = None
    scheduled_date: Optional[datetime] = None
    is_recurring: bool = False
    recurrence: Optional[RecurrenceDescriptor] = None
    status: str = "requested"
    selected_provider_id: Optional[str] = None
    provider_name: Optional[str] = None
    hold_id: Optional[str] = None
    hold_expires_at: Optional[datetime] = None
    recurrence_series_id: Optional[str] = None
    recurrence_index: Optional[int] = None
    reminder_sent: bool = False
    reminder_sent_at: Optional[datetime] = None
    reminder_skip_reason: Optional[str] = None
    quotation_id: Optional[str] = None
    contractor_id: Optional[str] = None
    ended_by: Optional[str] = None
    ended_at: Optional[datetime] = None
    provider_response_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_series_root(self) -> bool:
        return self.recurrence_index in (None, 0)


@dataclass
class TimeBlock:
    id: str
    provider_id: str
    job_id: str
    status: str
    service_start: datetime
    service_end: datetime
    padded_start: datetime
    padded_end: datetime
    hold_expires_at: Optional[datetime] = None
    occurrence_index: int = 0
    is_recurring: bool = False
    client_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    def is_expired_hold(self, now: datetime) -> bool:
        return (
            self.status == BLOCK_HELD
            and self.hold_expires_at is not None
            and self.hold_expires_at < now
        )


def new_engagement_id() -> str:
    return str(uuid4())


def new_time_block_id() -> str:
    return str(uuid4())


def new_quotation_id() -> str:
    return str(uuid4())
