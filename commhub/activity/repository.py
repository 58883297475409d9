"""Persistence for activity log entries."""

from __future__ import annotations

import copy
import itertools
import threading
from datetime import datetime
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..core.clock import as_utc
from ..models import ActivityLogRecord
from ..models.session import session_scope
from .models import ActivityKind, ActivityLogEntry, DeliveryState


class ActivityLogRepository(Protocol):
    def create_if_absent(self, entry: ActivityLogEntry) -> tuple[ActivityLogEntry, bool]:
        """Insert ``entry`` unless one exists for its subject and kind.

        Returns the stored entry and whether it was created by this call.
        """
        ...

    def get(self, interaction_id: str, kind: ActivityKind) -> ActivityLogEntry | None: ...

    def update(self, entry: ActivityLogEntry) -> None: ...

    def due(self, now: datetime, limit: int = 100) -> list[ActivityLogEntry]: ...

    def list(
        self,
        *,
        state: DeliveryState | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ActivityLogEntry]: ...


class InMemoryActivityLogRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._entries: dict[tuple[str, ActivityKind], ActivityLogEntry] = {}

    def create_if_absent(self, entry: ActivityLogEntry) -> tuple[ActivityLogEntry, bool]:
        key = (entry.interaction_id, entry.kind)
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None:
                return copy.deepcopy(existing), False
            stored = copy.deepcopy(entry)
            stored.id = next(self._ids)
            self._entries[key] = stored
            return copy.deepcopy(stored), True

    def get(self, interaction_id: str, kind: ActivityKind) -> ActivityLogEntry | None:
        with self._lock:
            entry = self._entries.get((interaction_id, kind))
            return copy.deepcopy(entry) if entry else None

    def update(self, entry: ActivityLogEntry) -> None:
        with self._lock:
            self._entries[(entry.interaction_id, entry.kind)] = copy.deepcopy(entry)

    def due(self, now: datetime, limit: int = 100) -> list[ActivityLogEntry]:
        with self._lock:
            entries = [
                entry
                for entry in self._entries.values()
                if entry.delivery_state is DeliveryState.PENDING
                and (entry.next_attempt_at is None or entry.next_attempt_at <= now)
            ]
            entries.sort(key=lambda entry: (entry.next_attempt_at or entry.logged_at, entry.id))
            return [copy.deepcopy(entry) for entry in entries[:limit]]

    def list(
        self,
        *,
        state: DeliveryState | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ActivityLogEntry]:
        with self._lock:
            entries = [
                entry
                for entry in self._entries.values()
                if state is None or entry.delivery_state is state
            ]
            entries.sort(key=lambda entry: entry.id or 0, reverse=True)
            return [copy.deepcopy(entry) for entry in entries[offset : offset + limit]]


class SqlAlchemyActivityLogRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def create_if_absent(self, entry: ActivityLogEntry) -> tuple[ActivityLogEntry, bool]:
        try:
            with session_scope(self._session_factory) as session:
                record = ActivityLogRecord()
                _copy_to_record(entry, record)
                session.add(record)
                session.flush()
                created = _to_domain(record)
        except IntegrityError:
            existing = self.get(entry.interaction_id, entry.kind)
            if existing is None:
                raise
            return existing, False
        return created, True

    def get(self, interaction_id: str, kind: ActivityKind) -> ActivityLogEntry | None:
        stmt = select(ActivityLogRecord).where(
            ActivityLogRecord.interaction_id == interaction_id,
            ActivityLogRecord.kind == kind.value,
        )
        with session_scope(self._session_factory) as session:
            record = session.scalars(stmt).first()
            return _to_domain(record) if record else None

    def update(self, entry: ActivityLogEntry) -> None:
        with session_scope(self._session_factory) as session:
            record = session.get(ActivityLogRecord, entry.id)
            if record is None:
                raise LookupError(f"Activity log entry {entry.id} does not exist")
            _copy_to_record(entry, record)

    def due(self, now: datetime, limit: int = 100) -> list[ActivityLogEntry]:
        stmt = (
            select(ActivityLogRecord)
            .where(
                ActivityLogRecord.delivery_state == DeliveryState.PENDING.value,
                (ActivityLogRecord.next_attempt_at.is_(None))
                | (ActivityLogRecord.next_attempt_at <= now),
            )
            .order_by(ActivityLogRecord.next_attempt_at, ActivityLogRecord.id)
            .limit(limit)
        )
        with session_scope(self._session_factory) as session:
            return [_to_domain(record) for record in session.scalars(stmt)]

    def list(
        self,
        *,
        state: DeliveryState | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ActivityLogEntry]:
        stmt = select(ActivityLogRecord).order_by(ActivityLogRecord.id.desc())
        if state is not None:
            stmt = stmt.where(ActivityLogRecord.delivery_state == state.value)
        stmt = stmt.limit(limit).offset(offset)
        with session_scope(self._session_factory) as session:
            return [_to_domain(record) for record in session.scalars(stmt)]


def _copy_to_record(entry: ActivityLogEntry, record: ActivityLogRecord) -> None:
    record.interaction_id = entry.interaction_id
    record.parent_id = entry.parent_id
    record.kind = entry.kind.value
    record.outcome = entry.outcome
    record.contact_external_id = entry.contact_external_id
    record.delivery_state = entry.delivery_state.value
    record.attempts = entry.attempts
    record.next_attempt_at = entry.next_attempt_at
    record.last_error = entry.last_error
    record.logged_at = entry.logged_at
    record.delivered_at = entry.delivered_at


def _to_domain(record: ActivityLogRecord) -> ActivityLogEntry:
    return ActivityLogEntry(
        id=record.id,
        interaction_id=record.interaction_id,
        parent_id=record.parent_id,
        kind=ActivityKind(record.kind),
        outcome=record.outcome,
        contact_external_id=record.contact_external_id,
        delivery_state=DeliveryState(record.delivery_state),
        attempts=record.attempts,
        next_attempt_at=as_utc(record.next_attempt_at),
        last_error=record.last_error,
        logged_at=as_utc(record.logged_at),
        delivered_at=as_utc(record.delivered_at),
    )
