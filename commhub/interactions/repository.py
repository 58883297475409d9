"""Storage for interactions and the message sid index."""

from __future__ import annotations

import copy
import threading
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ..core.clock import as_utc
from ..models import InteractionRecord, MessageIndexRecord
from ..models.session import session_scope
from .models import Interaction, MessageThread

_COLUMNS = (
    "id",
    "type",
    "direction",
    "from_address",
    "to_address",
    "state",
    "contact_id",
    "assigned_worker_id",
    "queue",
    "created_at",
    "updated_at",
)


class InteractionRepository(Protocol):
    """Abstraction for persisting interaction snapshots.

    Implementations return copies; callers mutate them and hand them back to
    :meth:`save`.
    """

    def get(self, interaction_id: str) -> Interaction | None: ...

    def save(self, interaction: Interaction) -> None: ...

    def list(
        self,
        *,
        type: str | None = None,
        state: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Interaction]: ...

    def thread_for_message(self, message_sid: str) -> str | None: ...


class InMemoryInteractionRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[str, Interaction] = {}
        self._message_index: dict[str, str] = {}

    def get(self, interaction_id: str) -> Interaction | None:
        with self._lock:
            item = self._items.get(interaction_id)
            return copy.deepcopy(item) if item is not None else None

    def save(self, interaction: Interaction) -> None:
        with self._lock:
            self._items[interaction.id] = copy.deepcopy(interaction)
            if isinstance(interaction, MessageThread):
                for message in interaction.messages:
                    self._message_index[message.sid] = interaction.id

    def list(
        self,
        *,
        type: str | None = None,
        state: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Interaction]:
        with self._lock:
            items = [
                item
                for item in self._items.values()
                if (type is None or item.type.value == type)
                and (state is None or item.state == state)
            ]
            items.sort(key=lambda item: item.updated_at, reverse=True)
            return [copy.deepcopy(item) for item in items[offset : offset + limit]]

    def thread_for_message(self, message_sid: str) -> str | None:
        with self._lock:
            return self._message_index.get(message_sid)


class SqlAlchemyInteractionRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get(self, interaction_id: str) -> Interaction | None:
        with session_scope(self._session_factory) as session:
            record = session.get(InteractionRecord, interaction_id)
            return _to_domain(record) if record is not None else None

    def save(self, interaction: Interaction) -> None:
        data = interaction.to_dict()
        with session_scope(self._session_factory) as session:
            record = session.get(InteractionRecord, interaction.id)
            if record is None:
                record = InteractionRecord(id=interaction.id)
                session.add(record)
            record.type = interaction.type.value
            record.direction = interaction.direction.value
            record.from_address = interaction.from_address
            record.to_address = interaction.to_address
            record.state = interaction.state
            record.contact_id = interaction.contact_id
            record.assigned_worker_id = interaction.assigned_worker_id
            record.queue = interaction.queue
            record.created_at = interaction.created_at
            record.updated_at = interaction.updated_at
            record.data = {key: value for key, value in data.items() if key not in _COLUMNS}
            if isinstance(interaction, MessageThread):
                # The thread row must exist before index rows reference it.
                session.flush()
                for message in interaction.messages:
                    if session.get(MessageIndexRecord, message.sid) is None:
                        session.add(
                            MessageIndexRecord(
                                message_sid=message.sid, thread_id=interaction.id
                            )
                        )

    def list(
        self,
        *,
        type: str | None = None,
        state: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Interaction]:
        stmt = select(InteractionRecord).order_by(InteractionRecord.updated_at.desc())
        if type is not None:
            stmt = stmt.where(InteractionRecord.type == type)
        if state is not None:
            stmt = stmt.where(InteractionRecord.state == state)
        stmt = stmt.limit(limit).offset(offset)
        with session_scope(self._session_factory) as session:
            return [_to_domain(record) for record in session.scalars(stmt)]

    def thread_for_message(self, message_sid: str) -> str | None:
        with session_scope(self._session_factory) as session:
            record = session.get(MessageIndexRecord, message_sid)
            return record.thread_id if record is not None else None


def _to_domain(record: InteractionRecord) -> Interaction:
    data = dict(record.data or {})
    data.update(
        id=record.id,
        type=record.type,
        direction=record.direction,
        from_address=record.from_address,
        to_address=record.to_address,
        state=record.state,
        contact_id=record.contact_id,
        assigned_worker_id=record.assigned_worker_id,
        queue=record.queue,
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
    )
    return Interaction.from_dict(data)
