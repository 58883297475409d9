"""SQLAlchemy declarative base and persistence models.

This package hosts the SQLAlchemy models used when the core runs against a
relational store (``DATABASE_URL`` set). It exposes a single declarative
``Base`` class; the tables themselves live in :mod:`.communication`.
"""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""


# Re-export the table models so callers can import them via
# ``from commhub.models import TaskRecord`` instead of touching private modules.
from .communication import (  # noqa: E402
    ActivityLogRecord,
    ContactAddressRecord,
    ContactRecord,
    InteractionRecord,
    MessageIndexRecord,
    RoutingRuleRecord,
    TaskRecord,
    WebhookLedgerRecord,
    WorkerRecord,
)


__all__ = [
    "ActivityLogRecord",
    "Base",
    "ContactAddressRecord",
    "ContactRecord",
    "InteractionRecord",
    "MessageIndexRecord",
    "RoutingRuleRecord",
    "TaskRecord",
    "WebhookLedgerRecord",
    "WorkerRecord",
]
