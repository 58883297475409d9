"""Counterparty lookup with a TTL cache and graceful degradation."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Protocol

from ..core.clock import Clock, utcnow
from ..core.metrics import CONTACT_LOOKUPS
from .models import Contact, Resolution
from .repository import ContactRepository

logger = logging.getLogger(__name__)


class CustomerLookup(Protocol):
    def find_by_phone(self, phone: str) -> Contact | None: ...


class ContactResolver:
    """Resolve an address to a contact.

    A cached entry younger than the TTL answers directly. Anything else goes
    to the customer-record system; hits are written back to the cache with a
    fresh ``refreshed_at``. Failures of the remote system never raise: the
    caller gets a degraded result and carries on without contact data.
    """

    def __init__(
        self,
        repository: ContactRepository,
        lookup: CustomerLookup | None,
        *,
        ttl_seconds: int = 3600,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._lookup = lookup
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def get(self, external_id: str) -> Contact | None:
        return self._repository.get(external_id)

    def resolve(self, address: str) -> Resolution:
        now = self._clock()
        cached = self._repository.find_by_address(address)
        if cached is not None and cached.refreshed_at and now - cached.refreshed_at < self._ttl:
            CONTACT_LOOKUPS.labels(result="cached").inc()
            return Resolution.found(cached, cached=True)

        if self._lookup is None:
            CONTACT_LOOKUPS.labels(result="degraded").inc()
            return Resolution.degraded()

        try:
            contact = self._lookup.find_by_phone(address)
        except Exception as exc:
            logger.warning("Customer lookup for %s degraded: %s", address, exc)
            CONTACT_LOOKUPS.labels(result="degraded").inc()
            return Resolution.degraded()

        if contact is None:
            CONTACT_LOOKUPS.labels(result="not_found").inc()
            return Resolution.not_found()

        if address not in contact.addresses:
            contact.addresses.append(address)
        contact.refreshed_at = now
        self._repository.upsert(contact)
        CONTACT_LOOKUPS.labels(result="found").inc()
        return Resolution.found(contact)
