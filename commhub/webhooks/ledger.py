"""Idempotency ledger for webhook deliveries."""

from __future__ import annotations

import hashlib
import json
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..core.clock import Clock, utcnow
from ..models import WebhookLedgerRecord
from ..models.session import session_scope


def fingerprint(payload: dict[str, Any]) -> str:
    """Stable digest of a parsed webhook payload."""

    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class LedgerKey:
    interaction_id: str
    kind: str
    fingerprint: str


@dataclass
class LedgerEntry:
    key: LedgerKey
    status: str
    outcome: str | None
    received_at: datetime
    committed_at: datetime | None = None


class IdempotencyLedger(Protocol):
    """Records which deliveries have been seen.

    ``claim`` is the single atomic check-and-set: it returns ``True`` for the
    first caller with a key and ``False`` for everyone after. A claim is
    either committed once processing succeeded or released so a provider
    retry can process the delivery again.
    """

    def claim(self, key: LedgerKey) -> bool: ...

    def commit(self, key: LedgerKey, outcome: str) -> None: ...

    def release(self, key: LedgerKey) -> None: ...

    def get(self, key: LedgerKey) -> LedgerEntry | None: ...


class InMemoryLedger:
    def __init__(self, *, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[LedgerKey, LedgerEntry] = {}

    def claim(self, key: LedgerKey) -> bool:
        with self._lock:
            if key in self._entries:
                return False
            self._entries[key] = LedgerEntry(
                key=key, status="processing", outcome=None, received_at=self._clock()
            )
            return True

    def commit(self, key: LedgerKey, outcome: str) -> None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                entry.status = "committed"
                entry.outcome = outcome
                entry.committed_at = self._clock()

    def release(self, key: LedgerKey) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def get(self, key: LedgerKey) -> LedgerEntry | None:
        with self._lock:
            return self._entries.get(key)


class SqlAlchemyLedger:
    def __init__(self, session_factory: sessionmaker[Session], *, clock: Clock = utcnow) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def claim(self, key: LedgerKey) -> bool:
        try:
            with session_scope(self._session_factory) as session:
                session.add(
                    WebhookLedgerRecord(
                        interaction_id=key.interaction_id,
                        kind=key.kind,
                        fingerprint=key.fingerprint,
                        status="processing",
                        received_at=self._clock(),
                    )
                )
        except IntegrityError:
            return False
        return True

    def commit(self, key: LedgerKey, outcome: str) -> None:
        with session_scope(self._session_factory) as session:
            record = session.scalars(_match(key)).first()
            if record is not None:
                record.status = "committed"
                record.outcome = outcome
                record.committed_at = self._clock()

    def release(self, key: LedgerKey) -> None:
        with session_scope(self._session_factory) as session:
            session.execute(
                delete(WebhookLedgerRecord).where(
                    WebhookLedgerRecord.interaction_id == key.interaction_id,
                    WebhookLedgerRecord.kind == key.kind,
                    WebhookLedgerRecord.fingerprint == key.fingerprint,
                )
            )

    def get(self, key: LedgerKey) -> LedgerEntry | None:
        with session_scope(self._session_factory) as session:
            record = session.scalars(_match(key)).first()
            if record is None:
                return None
            return LedgerEntry(
                key=key,
                status=record.status,
                outcome=record.outcome,
                received_at=record.received_at,
                committed_at=record.committed_at,
            )


def _match(key: LedgerKey):
    return select(WebhookLedgerRecord).where(
        WebhookLedgerRecord.interaction_id == key.interaction_id,
        WebhookLedgerRecord.kind == key.kind,
        WebhookLedgerRecord.fingerprint == key.fingerprint,
    )
