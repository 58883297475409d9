from __future__ import annotations

from typing import Any, Dict, List

import pytest
import requests

from commhub.contacts.client import CustomerRecordClient, CustomerRecordError
from commhub.contacts.models import PriorityTier, ResolutionStatus
from commhub.contacts.repository import InMemoryContactRepository
from commhub.contacts.resolver import ContactResolver

PHONE = "+15551230000"


class _FakeResponse:
    def __init__(self, payload: Any = None, status_code: int = 200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


class _FakeSession:
    def __init__(self, responses: List[_FakeResponse | Exception]):
        self._responses = responses
        self.requests: List[Dict[str, Any]] = []

    def request(self, method: str, url: str, **kwargs: Any) -> _FakeResponse:
        self.requests.append({"method": method, "url": url, **kwargs})
        if not self._responses:
            raise AssertionError("no more responses queued")
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(*responses) -> tuple[CustomerRecordClient, _FakeSession]:
    session = _FakeSession(list(responses))
    client = CustomerRecordClient(
        "https://crm.example.com/api/", api_token="tkn", timeout=2.5, session=session
    )
    return client, session


def test_find_by_phone_maps_customer_record():
    client, session = _client(
        _FakeResponse(
            {
                "customers": [
                    {
                        "id": 42,
                        "name": "Ada",
                        "phone": PHONE,
                        "customerType": "Premium",
                        "coordinatorId": 7,
                    }
                ]
            }
        )
    )

    contact = client.find_by_phone(PHONE)

    assert contact.external_id == "42"
    assert contact.display_name == "Ada"
    assert contact.addresses == [PHONE]
    assert contact.assigned_coordinator_id == "7"
    assert contact.priority_tier is PriorityTier.VIP

    request = session.requests[0]
    assert request["method"] == "GET"
    assert request["url"] == "https://crm.example.com/api/customers"
    assert request["params"] == {"phone": PHONE}
    assert request["timeout"] == 2.5
    assert request["headers"]["Authorization"] == "Bearer tkn"


@pytest.mark.parametrize(
    "response", [_FakeResponse({"customers": []}), _FakeResponse([], 200), _FakeResponse(None, 404)]
)
def test_find_by_phone_returns_none_when_unknown(response):
    client, _ = _client(response)
    assert client.find_by_phone(PHONE) is None


@pytest.mark.parametrize(
    "response",
    [
        _FakeResponse({"error": "boom"}, 500),
        _FakeResponse(None, 200),
        requests.ConnectionError("refused"),
    ],
)
def test_find_by_phone_surfaces_failures(response):
    client, _ = _client(response)
    with pytest.raises(CustomerRecordError):
        client.find_by_phone(PHONE)


def test_log_communication_posts_json():
    client, session = _client(_FakeResponse({}, 201))
    client.log_communication({"id": "CA1", "type": "call"})

    request = session.requests[0]
    assert request["method"] == "POST"
    assert request["url"] == "https://crm.example.com/api/communications"
    assert request["json"] == {"id": "CA1", "type": "call"}


def test_log_communication_rejects_error_status():
    client, _ = _client(_FakeResponse({}, 422))
    with pytest.raises(CustomerRecordError):
        client.log_communication({"id": "CA1"})


@pytest.fixture
def resolver(crm, clock):
    return ContactResolver(InMemoryContactRepository(), crm, ttl_seconds=60, clock=clock)


def test_resolve_caches_until_ttl(resolver, crm, clock):
    crm.add_customer(PHONE, "cust-1")

    first = resolver.resolve(PHONE)
    assert first.status is ResolutionStatus.FOUND
    assert not first.cached
    assert first.contact.refreshed_at == clock.now

    second = resolver.resolve(PHONE)
    assert second.cached
    assert crm.lookups == [PHONE]

    clock.advance(61)
    third = resolver.resolve(PHONE)
    assert not third.cached
    assert crm.lookups == [PHONE, PHONE]


def test_resolve_not_found(resolver):
    assert resolver.resolve(PHONE).status is ResolutionStatus.NOT_FOUND


def test_resolve_degrades_instead_of_raising(resolver, crm):
    crm.lookup_error = TimeoutError("slow")
    resolution = resolver.resolve(PHONE)
    assert resolution.status is ResolutionStatus.DEGRADED
    assert resolution.contact is None


def test_stale_cache_is_not_used_when_lookup_fails(resolver, crm, clock):
    crm.add_customer(PHONE, "cust-1")
    resolver.resolve(PHONE)
    clock.advance(61)
    crm.lookup_error = TimeoutError("slow")

    assert resolver.resolve(PHONE).status is ResolutionStatus.DEGRADED


def test_resolve_without_customer_system_is_degraded(clock):
    resolver = ContactResolver(InMemoryContactRepository(), None, clock=clock)
    assert resolver.resolve(PHONE).status is ResolutionStatus.DEGRADED
