"""Tables backing the event processing core.

Every store in the package has an in-memory implementation; these models are
only used by the SQLAlchemy implementations selected when ``DATABASE_URL``
is configured. Variable shaped attributes (interaction details, skills,
predicate arguments) are kept in JSON columns, stored as ``JSONB`` on
PostgreSQL.
"""

from __future__ import annotations

import datetime as dt
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from . import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> dt.datetime:
    """Return the current UTC timestamp with timezone awareness."""

    return dt.datetime.now(dt.timezone.utc)


class WebhookLedgerRecord(Base):
    """One row per distinct webhook delivery.

    The unique constraint on ``(interaction_id, kind, fingerprint)`` is what
    makes the claim atomic: the second insert of the same delivery fails.
    """

    __tablename__ = "webhook_ledger"
    __table_args__ = (
        UniqueConstraint(
            "interaction_id", "kind", "fingerprint", name="uq_webhook_ledger_event"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    interaction_id: Mapped[str] = mapped_column(String(length=255), nullable=False)
    kind: Mapped[str] = mapped_column(String(length=32), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(length=64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(length=16),
        nullable=False,
        default="processing",
        server_default=text("'processing'"),
    )
    outcome: Mapped[str | None] = mapped_column(String(length=32), nullable=True)
    received_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    committed_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class InteractionRecord(Base):
    """Calls, message threads and voicemails.

    Common columns are queryable; the type specific attributes and the
    message list of a thread live in ``data``.
    """

    __tablename__ = "interactions"
    __table_args__ = (
        Index("ix_interactions_type_state", "type", "state"),
        Index("ix_interactions_updated_at", "updated_at"),
    )

    id: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    type: Mapped[str] = mapped_column(String(length=32), nullable=False)
    direction: Mapped[str] = mapped_column(String(length=16), nullable=False)
    from_address: Mapped[str] = mapped_column(String(length=64), nullable=False)
    to_address: Mapped[str] = mapped_column(String(length=64), nullable=False)
    state: Mapped[str] = mapped_column(String(length=32), nullable=False)
    contact_id: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    assigned_worker_id: Mapped[str | None] = mapped_column(
        String(length=255), nullable=True
    )
    queue: Mapped[str | None] = mapped_column(String(length=128), nullable=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class MessageIndexRecord(Base):
    """Maps a provider message sid to the thread that holds it."""

    __tablename__ = "message_index"

    message_sid: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    thread_id: Mapped[str] = mapped_column(
        String(length=255),
        ForeignKey("interactions.id", ondelete="CASCADE"),
        nullable=False,
    )


class ContactRecord(Base):
    """Cached copy of a customer record from the external system."""

    __tablename__ = "contacts"

    external_id: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    addresses: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    assigned_coordinator_id: Mapped[str | None] = mapped_column(
        String(length=255), nullable=True
    )
    priority_tier: Mapped[str] = mapped_column(
        String(length=16),
        nullable=False,
        default="standard",
        server_default=text("'standard'"),
    )
    refreshed_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class ContactAddressRecord(Base):
    """Address lookup index for :class:`ContactRecord`."""

    __tablename__ = "contact_addresses"

    address: Mapped[str] = mapped_column(String(length=64), primary_key=True)
    external_id: Mapped[str] = mapped_column(
        String(length=255),
        ForeignKey("contacts.external_id", ondelete="CASCADE"),
        nullable=False,
    )


class RoutingRuleRecord(Base):
    __tablename__ = "routing_rules"
    __table_args__ = (Index("ix_routing_rules_order", "priority", "created_seq"),)

    id: Mapped[str] = mapped_column(String(length=64), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    created_seq: Mapped[int] = mapped_column(Integer, nullable=False)
    predicate_kind: Mapped[str] = mapped_column(String(length=32), nullable=False)
    predicate_args: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    target_queue: Mapped[str] = mapped_column(String(length=128), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class WorkerRecord(Base):
    __tablename__ = "workers"

    id: Mapped[str] = mapped_column(String(length=255), primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    skills: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(length=16), nullable=False)
    active_task_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_concurrent_tasks: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    idle_since: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class TaskRecord(Base):
    __tablename__ = "tasks"
    __table_args__ = (
        Index("ix_tasks_state_queue", "state", "queue"),
        Index("ix_tasks_interaction_id", "interaction_id"),
    )

    id: Mapped[str] = mapped_column(String(length=64), primary_key=True)
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    interaction_id: Mapped[str] = mapped_column(String(length=255), nullable=False)
    queue: Mapped[str] = mapped_column(String(length=128), nullable=False)
    required_skills: Mapped[list[str]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    state: Mapped[str] = mapped_column(String(length=16), nullable=False)
    worker_id: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    rejected_by: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    reserved_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    reservation_deadline: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class ActivityLogRecord(Base):
    """Delivery state of one activity log entry.

    Unique on ``(interaction_id, kind)`` so concurrent attempts to create the
    same entry collapse into one row.
    """

    __tablename__ = "activity_log"
    __table_args__ = (
        UniqueConstraint("interaction_id", "kind", name="uq_activity_log_subject"),
        Index("ix_activity_log_due", "delivery_state", "next_attempt_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    interaction_id: Mapped[str] = mapped_column(String(length=255), nullable=False)
    parent_id: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    kind: Mapped[str] = mapped_column(String(length=16), nullable=False)
    outcome: Mapped[str] = mapped_column(String(length=32), nullable=False)
    contact_external_id: Mapped[str | None] = mapped_column(
        String(length=255), nullable=True
    )
    delivery_state: Mapped[str] = mapped_column(
        String(length=16),
        nullable=False,
        default="pending",
        server_default=text("'pending'"),
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(Text(), nullable=True)
    logged_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    delivered_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
