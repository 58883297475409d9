"""Contact cache entries and resolution results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

VIP_CUSTOMER_TYPES = frozenset({"vip", "premium"})


class PriorityTier(str, Enum):
    STANDARD = "standard"
    VIP = "vip"


@dataclass
class Contact:
    external_id: str
    display_name: str | None
    addresses: list[str] = field(default_factory=list)
    assigned_coordinator_id: str | None = None
    priority_tier: PriorityTier = PriorityTier.STANDARD
    refreshed_at: datetime | None = None


class ResolutionStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class Resolution:
    """Outcome of a lookup; ``contact`` is only set when ``FOUND``."""

    status: ResolutionStatus
    contact: Contact | None = None
    cached: bool = False

    @classmethod
    def found(cls, contact: Contact, *, cached: bool = False) -> "Resolution":
        return cls(ResolutionStatus.FOUND, contact, cached)

    @classmethod
    def not_found(cls) -> "Resolution":
        return cls(ResolutionStatus.NOT_FOUND)

    @classmethod
    def degraded(cls) -> "Resolution":
        return cls(ResolutionStatus.DEGRADED)
