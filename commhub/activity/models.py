"""Activity log entries and their delivery state."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class ActivityKind(str, Enum):
    CALL = "call"
    SMS = "sms"
    VOICEMAIL = "voicemail"


class DeliveryState(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass
class ActivityLogEntry:
    """One communication to record in the customer-record system.

    ``interaction_id`` is the subject of the entry: the call or voicemail id,
    or the message sid for SMS, whose thread is kept in ``parent_id``.
    Retry bookkeeping lives on the entry itself.
    """

    interaction_id: str
    kind: ActivityKind
    outcome: str
    logged_at: datetime
    parent_id: str | None = None
    contact_external_id: str | None = None
    delivery_state: DeliveryState = DeliveryState.PENDING
    attempts: int = 0
    next_attempt_at: datetime | None = None
    last_error: str | None = None
    delivered_at: datetime | None = None
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["delivery_state"] = self.delivery_state.value
        return data
