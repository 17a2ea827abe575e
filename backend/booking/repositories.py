from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Dict, Iterator, List, Optional, Protocol, Set

from sqlalchemy.exc import IntegrityError

from .config import get_settings
from .db import SessionLocal
from .db_models import EngagementDB, ProviderLockDB, TimeBlockDB
from .errors import DuplicateSeriesMember
from .models import (
    ACTIVE_BLOCK_STATUSES,
    BLOCK_HELD,
    Engagement,
    Location,
    Provider,
    RecurrenceDescriptor,
    ServiceTask,
    TaskLine,
    TimeBlock,
    User,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ProviderTransaction(Protocol):
    """Read-modify-write view over one provider's TimeBlocks."""

    def blocks_starting_before(self, padded_end: datetime) -> List[TimeBlock]: ...

    def blocks_for_job(self, job_id: str) -> List[TimeBlock]: ...

    def insert(self, block: TimeBlock) -> None: ...

    def update(self, block: TimeBlock) -> None: ...

    def delete(self, block_id: str) -> None: ...


# --------------------------------------------------------------------------
# Directory (owned by onboarding CRUD; the booking core only reads it)
# --------------------------------------------------------------------------


class InMemoryUserRepository:
    def __init__(self) -> None:
        self._by_uid: Dict[str, User] = {}

    def upsert(self, user: User) -> User:
        self._by_uid[user.uid] = user
        return user

    def get(self, uid: str) -> Optional[User]:
        return self._by_uid.get(uid)

    def clear(self) -> None:
        self._by_uid.clear()


class InMemoryProviderRepository:
    def __init__(self) -> None:
        self._by_uid: Dict[str, Provider] = {}

    def upsert(self, provider: Provider) -> Provider:
        self._by_uid[provider.uid] = provider
        return provider

    def get(self, uid: str) -> Optional[Provider]:
        return self._by_uid.get(uid)

    def list_for_category(self, category: str) -> List[Provider]:
        wanted = category.strip().lower()
        return [
            p
            for p in self._by_uid.values()
            if wanted in {c.strip().lower() for c in p.categories}
        ]

    def clear(self) -> None:
        self._by_uid.clear()


class InMemoryServiceTaskRepository:
    def __init__(self) -> None:
        self._by_name: Dict[str, ServiceTask] = {}

    def upsert(self, task: ServiceTask) -> ServiceTask:
        self._by_name[task.task_name.strip().lower()] = task
        return task

    def get_by_name(self, name: str) -> Optional[ServiceTask]:
        return self._by_name.get((name or "").strip().lower())

    def clear(self) -> None:
        self._by_name.clear()


# --------------------------------------------------------------------------
# Engagements
# --------------------------------------------------------------------------


class InMemoryEngagementRepository:
    """Document-store stand-in; callers get copies, never shared references."""

    def __init__(self) -> None:
        self._by_id: Dict[str, Engagement] = {}
        self._series_index: Dict[tuple[str, int], str] = {}
        self._lock = threading.RLock()

    def create(self, engagement: Engagement) -> Engagement:
        with self._lock:
            key = self._series_key(engagement)
            if key is not None and key in self._series_index:
                raise DuplicateSeriesMember(*key)
            stored = copy.deepcopy(engagement)
            self._by_id[stored.id] = stored
            if key is not None:
                self._series_index[key] = stored.id
            return copy.deepcopy(stored)

    def get(self, engagement_id: str) -> Optional[Engagement]:
        with self._lock:
            found = self._by_id.get(engagement_id)
            return copy.deepcopy(found) if found else None

    def save(self, engagement: Engagement) -> Engagement:
        with self._lock:
            previous = self._by_id.get(engagement.id)
            key = self._series_key(engagement)
            if key is not None:
                owner = self._series_index.get(key)
                if owner is not None and owner != engagement.id:
                    raise DuplicateSeriesMember(*key)
            if previous is not None:
                old_key = self._series_key(previous)
                if old_key is not None and old_key != key:
                    self._series_index.pop(old_key, None)
            engagement.updated_at = _utcnow()
            stored = copy.deepcopy(engagement)
            self._by_id[stored.id] = stored
            if key is not None:
                self._series_index[key] = stored.id
            return copy.deepcopy(stored)

    def list_recurring_roots(self) -> List[Engagement]:
        with self._lock:
            return [
                copy.deepcopy(e)
                for e in self._by_id.values()
                if e.is_recurring and e.is_series_root
            ]

    def series_indices(self, series_id: str) -> Set[int]:
        with self._lock:
            return {idx for (sid, idx) in self._series_index if sid == series_id}

    def list_recurring_between(
        self, start: datetime, end: datetime
    ) -> List[Engagement]:
        """Recurring engagements with start <= scheduled_date < end."""
        with self._lock:
            return [
                copy.deepcopy(e)
                for e in self._by_id.values()
                if e.is_recurring
                and e.scheduled_date is not None
                and start <= e.scheduled_date < end
            ]

    def mark_reminder_sent(
        self, engagement_id: str, sent_at: datetime, skip_reason: str | None = None
    ) -> bool:
        """Claim the reminder; False when another run already claimed it."""
        with self._lock:
            stored = self._by_id.get(engagement_id)
            if stored is None or stored.reminder_sent:
                return False
            stored.reminder_sent = True
            stored.reminder_sent_at = sent_at
            stored.reminder_skip_reason = skip_reason
            stored.updated_at = _utcnow()
            return True

    def list_all(self) -> List[Engagement]:
        with self._lock:
            return [copy.deepcopy(e) for e in self._by_id.values()]

    def clear(self) -> None:
        with self._lock:
            self._by_id.clear()
            self._series_index.clear()

    @staticmethod
    def _series_key(engagement: Engagement) -> tuple[str, int] | None:
        if engagement.recurrence_series_id is None or engagement.recurrence_index is None:
            return None
        return (engagement.recurrence_series_id, engagement.recurrence_index)


def _location_to_json(location: Location | None) -> dict | None:
    if location is None:
        return None
    return {
        "latitude": location.latitude,
        "longitude": location.longitude,
        "text": location.text,
    }


def _recurrence_to_json(recurrence: RecurrenceDescriptor | None) -> dict | None:
    if recurrence is None:
        return None
    return {
        "frequency_unit": recurrence.frequency_unit,
        "frequency_interval": recurrence.frequency_interval,
        "preferred_weekday": recurrence.preferred_weekday,
        "horizon_count": recurrence.horizon_count,
        "start_at": recurrence.start_at.isoformat() if recurrence.start_at else None,
    }


def _recurrence_from_json(raw: dict | None) -> RecurrenceDescriptor | None:
    if not raw:
        return None
    start_at = raw.get("start_at")
    return RecurrenceDescriptor(
        frequency_unit=raw.get("frequency_unit") or "week",
        frequency_interval=int(raw.get("frequency_interval") or 1),
        preferred_weekday=raw.get("preferred_weekday"),
        horizon_count=raw.get("horizon_count"),
        start_at=datetime.fromisoformat(start_at) if start_at else None,
    )


class DbEngagementRepository:
    """Engagement repository backed by the SQLAlchemy database.

    Opt-in via USE_DB_REPOSITORIES. The (recurrence_series_id,
    recurrence_index) unique constraint turns concurrent generator inserts
    into DuplicateSeriesMember.
    """

    _COLUMNS = (
        "client_id",
        "category",
        "scheduled_date",
        "is_recurring",
        "status",
        "selected_provider_id",
        "provider_name",
        "hold_id",
        "hold_expires_at",
        "recurrence_series_id",
        "recurrence_index",
        "reminder_sent",
        "reminder_sent_at",
        "reminder_skip_reason",
        "quotation_id",
        "contractor_id",
        "ended_by",
        "ended_at",
        "provider_response_at",
        "created_at",
        "updated_at",
    )

    def _to_model(self, row: EngagementDB) -> Engagement:
        location = row.location or None
        return Engagement(
            id=row.id,
            tasks=[
                TaskLine(
                    label=t.get("label", ""),
                    quantity=int(t.get("quantity") or 1),
                    duration_minutes=t.get("duration_minutes"),
                )
                for t in (row.tasks or [])
            ],
            location=Location(**location) if location else None,
            recurrence=_recurrence_from_json(row.recurrence),
            **{name: getattr(row, name) for name in self._COLUMNS},
        )

    def _apply(self, row: EngagementDB, engagement: Engagement) -> None:
        for name in self._COLUMNS:
            setattr(row, name, getattr(engagement, name))
        row.tasks = [
            {
                "label": t.label,
                "quantity": t.quantity,
                "duration_minutes": t.duration_minutes,
            }
            for t in engagement.tasks
        ]
        row.location = _location_to_json(engagement.location)
        row.recurrence = _recurrence_to_json(engagement.recurrence)

    def create(self, engagement: Engagement) -> Engagement:
        session = SessionLocal()
        try:
            row = EngagementDB(id=engagement.id)
            self._apply(row, engagement)
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_model(row)
        except IntegrityError:
            session.rollback()
            if engagement.recurrence_series_id and engagement.recurrence_index is not None:
                raise DuplicateSeriesMember(
                    engagement.recurrence_series_id, engagement.recurrence_index
                )
            raise
        finally:
            session.close()

    def get(self, engagement_id: str) -> Optional[Engagement]:
        session = SessionLocal()
        try:
            row = session.get(EngagementDB, engagement_id)
            if not row:
                return None
            return self._to_model(row)
        finally:
            session.close()

    def save(self, engagement: Engagement) -> Engagement:
        session = SessionLocal()
        try:
            row = session.get(EngagementDB, engagement.id)
            if row is None:
                row = EngagementDB(id=engagement.id)
            engagement.updated_at = _utcnow()
            self._apply(row, engagement)
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_model(row)
        except IntegrityError:
            session.rollback()
            raise DuplicateSeriesMember(
                engagement.recurrence_series_id or "", engagement.recurrence_index or 0
            )
        finally:
            session.close()

    def list_recurring_roots(self) -> List[Engagement]:
        session = SessionLocal()
        try:
            rows = (
                session.query(EngagementDB)
                .filter(EngagementDB.is_recurring.is_(True))
                .all()
            )
            return [
                self._to_model(r) for r in rows if r.recurrence_index in (None, 0)
            ]
        finally:
            session.close()

    def series_indices(self, series_id: str) -> Set[int]:
        session = SessionLocal()
        try:
            rows = (
                session.query(EngagementDB.recurrence_index)
                .filter(EngagementDB.recurrence_series_id == series_id)
                .all()
            )
            return {r[0] for r in rows if r[0] is not None}
        finally:
            session.close()

    def list_recurring_between(
        self, start: datetime, end: datetime
    ) -> List[Engagement]:
        session = SessionLocal()
        try:
            rows = (
                session.query(EngagementDB)
                .filter(
                    EngagementDB.scheduled_date >= start,
                    EngagementDB.scheduled_date < end,
                )
                .all()
            )
            # Range filter only; the rest is applied in memory.
            return [self._to_model(r) for r in rows if r.is_recurring]
        finally:
            session.close()

    def mark_reminder_sent(
        self, engagement_id: str, sent_at: datetime, skip_reason: str | None = None
    ) -> bool:
        session = SessionLocal()
        try:
            updated = (
                session.query(EngagementDB)
                .filter(
                    EngagementDB.id == engagement_id,
                    EngagementDB.reminder_sent.is_(False),
                )
                .update(
                    {
                        EngagementDB.reminder_sent: True,
                        EngagementDB.reminder_sent_at: sent_at,
                        EngagementDB.reminder_skip_reason: skip_reason,
                        EngagementDB.updated_at: _utcnow(),
                    },
                    synchronize_session=False,
                )
            )
            session.commit()
            return updated == 1
        finally:
            session.close()

    def list_all(self) -> List[Engagement]:
        session = SessionLocal()
        try:
            return [self._to_model(r) for r in session.query(EngagementDB).all()]
        finally:
            session.close()


# --------------------------------------------------------------------------
# TimeBlocks
# --------------------------------------------------------------------------


def _matching_ids(
    blocks: List[TimeBlock], service_start: datetime | None
) -> List[str]:
    return [
        b.id for b in blocks if service_start is None or b.service_start == service_start
    ]


class _BufferedTransaction:
    """Reads committed state; writes are applied only when the block exits cleanly."""

    def __init__(self, store: "InMemoryTimeBlockRepository", provider_id: str) -> None:
        self._store = store
        self._provider_id = provider_id
        self.pending: List[tuple[str, object]] = []

    def blocks_starting_before(self, padded_end: datetime) -> List[TimeBlock]:
        return self._store.list_starting_before(self._provider_id, padded_end)

    def blocks_for_job(self, job_id: str) -> List[TimeBlock]:
        return self._store.list_for_job(self._provider_id, job_id)

    def insert(self, block: TimeBlock) -> None:
        self.pending.append(("put", copy.deepcopy(block)))

    def update(self, block: TimeBlock) -> None:
        self.pending.append(("put", copy.deepcopy(block)))

    def delete(self, block_id: str) -> None:
        self.pending.append(("delete", block_id))


class InMemoryTimeBlockRepository:
    def __init__(self) -> None:
        self._by_id: Dict[str, TimeBlock] = {}
        self._lock = threading.RLock()
        self._provider_locks: Dict[str, threading.Lock] = {}

    def _provider_lock(self, provider_id: str) -> threading.Lock:
        with self._lock:
            return self._provider_locks.setdefault(provider_id, threading.Lock())

    @contextmanager
    def transaction(self, provider_id: str) -> Iterator[_BufferedTransaction]:
        with self._provider_lock(provider_id):
            txn = _BufferedTransaction(self, provider_id)
            yield txn
            with self._lock:
                for op, payload in txn.pending:
                    if op == "put":
                        self._by_id[payload.id] = payload  # type: ignore[attr-defined]
                    else:
                        self._by_id.pop(payload, None)  # type: ignore[arg-type]

    def list_starting_before(
        self, provider_id: str, padded_end: datetime
    ) -> List[TimeBlock]:
        with self._lock:
            return [
                copy.deepcopy(b)
                for b in self._by_id.values()
                if b.provider_id == provider_id and b.padded_start < padded_end
            ]

    def list_for_job(self, provider_id: str, job_id: str) -> List[TimeBlock]:
        with self._lock:
            return [
                copy.deepcopy(b)
                for b in self._by_id.values()
                if b.provider_id == provider_id and b.job_id == job_id
            ]

    def delete_for_job(
        self, provider_id: str, job_id: str, service_start: datetime | None = None
    ) -> int:
        # Serialized with hold transactions so an in-flight accept cannot
        # write the deleted blocks back.
        with self.transaction(provider_id) as txn:
            doomed = _matching_ids(txn.blocks_for_job(job_id), service_start)
            for block_id in doomed:
                txn.delete(block_id)
        return len(doomed)

    def delete_expired_holds(self, now: datetime) -> int:
        with self._lock:
            doomed = [b.id for b in self._by_id.values() if b.is_expired_hold(now)]
            for block_id in doomed:
                del self._by_id[block_id]
            return len(doomed)

    def list_all(self) -> List[TimeBlock]:
        with self._lock:
            return [copy.deepcopy(b) for b in self._by_id.values()]

    def clear(self) -> None:
        with self._lock:
            self._by_id.clear()


class _SessionTransaction:
    def __init__(self, session, provider_id: str, to_model) -> None:
        self._session = session
        self._provider_id = provider_id
        self._to_model = to_model

    def blocks_starting_before(self, padded_end: datetime) -> List[TimeBlock]:
        rows = (
            self._session.query(TimeBlockDB)
            .filter(
                TimeBlockDB.provider_id == self._provider_id,
                TimeBlockDB.padded_start < padded_end,
            )
            .all()
        )
        return [self._to_model(r) for r in rows]

    def blocks_for_job(self, job_id: str) -> List[TimeBlock]:
        rows = (
            self._session.query(TimeBlockDB)
            .filter(
                TimeBlockDB.provider_id == self._provider_id,
                TimeBlockDB.job_id == job_id,
            )
            .all()
        )
        return [self._to_model(r) for r in rows]

    def insert(self, block: TimeBlock) -> None:
        self._session.add(DbTimeBlockRepository.to_row(block))

    def update(self, block: TimeBlock) -> None:
        self._session.merge(DbTimeBlockRepository.to_row(block))

    def delete(self, block_id: str) -> None:
        self._session.query(TimeBlockDB).filter(TimeBlockDB.id == block_id).delete(
            synchronize_session=False
        )


class DbTimeBlockRepository:
    """TimeBlocks in SQL; hold transactions serialize on a provider lock row."""

    _FIELDS = (
        "id",
        "provider_id",
        "job_id",
        "client_id",
        "status",
        "service_start",
        "service_end",
        "padded_start",
        "padded_end",
        "hold_expires_at",
        "occurrence_index",
        "is_recurring",
        "created_at",
    )

    def __init__(self) -> None:
        # SQLite ignores FOR UPDATE, so keep a process-level lock as well.
        self._process_locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    @classmethod
    def to_row(cls, block: TimeBlock) -> TimeBlockDB:
        return TimeBlockDB(**{name: getattr(block, name) for name in cls._FIELDS})

    def _to_model(self, row: TimeBlockDB) -> TimeBlock:
        return TimeBlock(**{name: getattr(row, name) for name in self._FIELDS})

    def _lock_row(self, session, provider_id: str) -> None:
        if session.get(ProviderLockDB, provider_id) is None:
            session.add(ProviderLockDB(provider_id=provider_id))
            try:
                session.commit()
            except IntegrityError:
                # Another worker created it first.
                session.rollback()
        (
            session.query(ProviderLockDB)
            .filter(ProviderLockDB.provider_id == provider_id)
            .with_for_update()
            .one()
        )

    @contextmanager
    def transaction(self, provider_id: str) -> Iterator[_SessionTransaction]:
        with self._guard:
            process_lock = self._process_locks.setdefault(provider_id, threading.Lock())
        with process_lock:
            session = SessionLocal()
            try:
                self._lock_row(session, provider_id)
                yield _SessionTransaction(session, provider_id, self._to_model)
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def list_starting_before(
        self, provider_id: str, padded_end: datetime
    ) -> List[TimeBlock]:
        session = SessionLocal()
        try:
            return _SessionTransaction(
                session, provider_id, self._to_model
            ).blocks_starting_before(padded_end)
        finally:
            session.close()

    def list_for_job(self, provider_id: str, job_id: str) -> List[TimeBlock]:
        session = SessionLocal()
        try:
            return _SessionTransaction(session, provider_id, self._to_model).blocks_for_job(
                job_id
            )
        finally:
            session.close()

    def delete_for_job(
        self, provider_id: str, job_id: str, service_start: datetime | None = None
    ) -> int:
        with self.transaction(provider_id) as txn:
            doomed = _matching_ids(txn.blocks_for_job(job_id), service_start)
            for block_id in doomed:
                txn.delete(block_id)
        return len(doomed)

    def delete_expired_holds(self, now: datetime) -> int:
        session = SessionLocal()
        try:
            deleted = (
                session.query(TimeBlockDB)
                .filter(
                    TimeBlockDB.status == BLOCK_HELD,
                    TimeBlockDB.hold_expires_at.is_not(None),
                    TimeBlockDB.hold_expires_at < now,
                )
                .delete(synchronize_session=False)
            )
            session.commit()
            return int(deleted or 0)
        finally:
            session.close()

    def list_all(self) -> List[TimeBlock]:
        session = SessionLocal()
        try:
            return [self._to_model(r) for r in session.query(TimeBlockDB).all()]
        finally:
            session.close()


def active_blocks(blocks: List[TimeBlock], now: datetime) -> List[TimeBlock]:
    """Drop statuses outside held/booked and holds that have already expired."""
    return [
        b
        for b in blocks
        if b.status in ACTIVE_BLOCK_STATUSES and not b.is_expired_hold(now)
    ]


users_repo = InMemoryUserRepository()
providers_repo = InMemoryProviderRepository()
service_tasks_repo = InMemoryServiceTaskRepository()

USE_DB_REPOSITORIES = get_settings().use_db_repositories

if USE_DB_REPOSITORIES:
    engagements_repo = DbEngagementRepository()
    time_blocks_repo = DbTimeBlockRepository()
else:
    engagements_repo = InMemoryEngagementRepository()
    time_blocks_repo = InMemoryTimeBlockRepository()
