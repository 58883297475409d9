"""Pydantic schemas for the activity log API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from .models import ActivityLogEntry


class ActivityLogOut(BaseModel):
    id: int | None = None
    interaction_id: str
    parent_id: str | None = None
    kind: str
    outcome: str
    contact_external_id: str | None = None
    delivery_state: str
    attempts: int
    next_attempt_at: datetime | None = None
    last_error: str | None = None
    logged_at: datetime
    delivered_at: datetime | None = None

    @classmethod
    def from_domain(cls, entry: ActivityLogEntry) -> "ActivityLogOut":
        return cls.model_validate(entry.to_dict())


class ActivityLogList(BaseModel):
    items: list[ActivityLogOut]
    total: int
