from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    TypeDecorator,
    UniqueConstraint,
)

from .db import Base


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Store instants as naive UTC and hand them back timezone-aware.

    SQLite drops tzinfo on the way out; the scheduling code compares aware
    datetimes only.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class EngagementDB(Base):
    __tablename__ = "engagements"
    __table_args__ = (
        UniqueConstraint(
            "recurrence_series_id",
            "recurrence_index",
            name="uq_engagements_series_index",
        ),
    )

    id = Column(String, primary_key=True)
    client_id = Column(String, nullable=False, index=True)
    category = Column(String, nullable=False)
    tasks = Column(JSON, nullable=False, default=list)
    location = Column(JSON, nullable=True)
    scheduled_date = Column(UTCDateTime, nullable=True, index=True)
    is_recurring = Column(Boolean, nullable=False, default=False, index=True)
    recurrence = Column(JSON, nullable=True)
    status = Column(String, nullable=False, default="requested", index=True)
    selected_provider_id = Column(String, nullable=True, index=True)
    provider_name = Column(String, nullable=True)
    hold_id = Column(String, nullable=True)
    hold_expires_at = Column(UTCDateTime, nullable=True)
    recurrence_series_id = Column(String, nullable=True, index=True)
    recurrence_index = Column(Integer, nullable=True)
    reminder_sent = Column(Boolean, nullable=False, default=False)
    reminder_sent_at = Column(UTCDateTime, nullable=True)
    reminder_skip_reason = Column(String, nullable=True)
    quotation_id = Column(String, nullable=True)
    contractor_id = Column(String, nullable=True)
    ended_by = Column(String, nullable=True)
    ended_at = Column(UTCDateTime, nullable=True)
    provider_response_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow, index=True)
    updated_at = Column(UTCDateTime, nullable=False, default=_utcnow)


class TimeBlockDB(Base):
    __tablename__ = "time_blocks"

    id = Column(String, primary_key=True)
    provider_id = Column(String, nullable=False, index=True)
    job_id = Column(String, nullable=False, index=True)
    client_id = Column(String, nullable=True)
    status = Column(String, nullable=False, index=True)
    service_start = Column(UTCDateTime, nullable=False)
    service_end = Column(UTCDateTime, nullable=False)
    padded_start = Column(UTCDateTime, nullable=False, index=True)
    padded_end = Column(UTCDateTime, nullable=False)
    hold_expires_at = Column(UTCDateTime, nullable=True)
    occurrence_index = Column(Integer, nullable=False, default=0)
    is_recurring = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False, default=_utcnow)


class ProviderLockDB(Base):
    """One row per provider; hold transactions lock it with SELECT ... FOR UPDATE."""

    __tablename__ = "provider_locks"

    provider_id = Column(String, primary_key=True)
    updated_at = Column(UTCDateTime, nullable=False, default=_utcnow)
