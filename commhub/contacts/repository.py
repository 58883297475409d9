"""Local cache of customer records."""

from __future__ import annotations

import copy
import threading
from typing import Protocol

from sqlalchemy import delete
from sqlalchemy.orm import Session, sessionmaker

from ..core.clock import as_utc
from ..models import ContactAddressRecord, ContactRecord
from ..models.session import session_scope
from .models import Contact, PriorityTier


class ContactRepository(Protocol):
    """Cache keyed by external id with an address index. Never authoritative."""

    def get(self, external_id: str) -> Contact | None: ...

    def find_by_address(self, address: str) -> Contact | None: ...

    def upsert(self, contact: Contact) -> None: ...


class InMemoryContactRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._contacts: dict[str, Contact] = {}
        self._by_address: dict[str, str] = {}

    def get(self, external_id: str) -> Contact | None:
        with self._lock:
            contact = self._contacts.get(external_id)
            return copy.deepcopy(contact) if contact else None

    def find_by_address(self, address: str) -> Contact | None:
        with self._lock:
            external_id = self._by_address.get(address)
            contact = self._contacts.get(external_id) if external_id else None
            return copy.deepcopy(contact) if contact else None

    def upsert(self, contact: Contact) -> None:
        with self._lock:
            previous = self._contacts.get(contact.external_id)
            if previous is not None:
                for address in previous.addresses:
                    if self._by_address.get(address) == contact.external_id:
                        del self._by_address[address]
            self._contacts[contact.external_id] = copy.deepcopy(contact)
            for address in contact.addresses:
                self._by_address[address] = contact.external_id


class SqlAlchemyContactRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def get(self, external_id: str) -> Contact | None:
        with session_scope(self._session_factory) as session:
            record = session.get(ContactRecord, external_id)
            return _to_domain(record) if record else None

    def find_by_address(self, address: str) -> Contact | None:
        with session_scope(self._session_factory) as session:
            link = session.get(ContactAddressRecord, address)
            if link is None:
                return None
            record = session.get(ContactRecord, link.external_id)
            return _to_domain(record) if record else None

    def upsert(self, contact: Contact) -> None:
        with session_scope(self._session_factory) as session:
            record = session.get(ContactRecord, contact.external_id)
            if record is None:
                record = ContactRecord(external_id=contact.external_id)
                session.add(record)
            record.display_name = contact.display_name
            record.addresses = list(contact.addresses)
            record.assigned_coordinator_id = contact.assigned_coordinator_id
            record.priority_tier = contact.priority_tier.value
            record.refreshed_at = contact.refreshed_at
            session.flush()
            session.execute(
                delete(ContactAddressRecord).where(
                    ContactAddressRecord.external_id == contact.external_id
                )
            )
            for address in dict.fromkeys(contact.addresses):
                session.merge(
                    ContactAddressRecord(address=address, external_id=contact.external_id)
                )


def _to_domain(record: ContactRecord) -> Contact:
    return Contact(
        external_id=record.external_id,
        display_name=record.display_name,
        addresses=list(record.addresses or []),
        assigned_coordinator_id=record.assigned_coordinator_id,
        priority_tier=PriorityTier(record.priority_tier),
        refreshed_at=as_utc(record.refreshed_at),
    )
