import threading

import pytest

from commhub.models.session import create_schema, get_engine, get_sessionmaker
from commhub.webhooks.ledger import InMemoryLedger, LedgerKey, SqlAlchemyLedger, fingerprint


@pytest.fixture(params=["memory", "sql"])
def ledger(request, clock):
    if request.param == "memory":
        return InMemoryLedger(clock=clock)
    engine = get_engine("sqlite://")
    create_schema(engine)
    return SqlAlchemyLedger(get_sessionmaker(engine=engine), clock=clock)


def _key(payload=None) -> LedgerKey:
    return LedgerKey("CA1", "completed", fingerprint(payload or {"call_status": "completed"}))


def test_fingerprint_ignores_key_order():
    assert fingerprint({"a": 1, "b": 2}) == fingerprint({"b": 2, "a": 1})
    assert fingerprint({"a": 1}) != fingerprint({"a": 2})


def test_first_claim_wins(ledger):
    key = _key()
    assert ledger.claim(key) is True
    assert ledger.claim(key) is False
    assert ledger.get(key).status == "processing"


def test_commit_records_outcome(ledger):
    key = _key()
    ledger.claim(key)
    ledger.commit(key, "transitioned")

    entry = ledger.get(key)
    assert entry.status == "committed"
    assert entry.outcome == "transitioned"
    assert entry.committed_at is not None
    assert ledger.claim(key) is False


def test_release_allows_retry(ledger):
    key = _key()
    ledger.claim(key)
    ledger.release(key)

    assert ledger.get(key) is None
    assert ledger.claim(key) is True


def test_different_payloads_are_different_deliveries(ledger):
    assert ledger.claim(_key({"call_status": "completed"}))
    assert ledger.claim(_key({"call_status": "completed", "duration_seconds": 4}))


def test_concurrent_claims_admit_exactly_one(clock):
    ledger = InMemoryLedger(clock=clock)
    key = _key()
    barrier = threading.Barrier(8)
    results = []

    def _claim():
        barrier.wait()
        results.append(ledger.claim(key))

    threads = [threading.Thread(target=_claim) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
