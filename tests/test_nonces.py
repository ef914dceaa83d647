from datetime import UTC, datetime, timedelta

import pytest

from policykit.services.nonces import InMemoryNonceStore, SqlNonceStore


class DateClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 10, 14, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


def test_in_memory_claim_is_single_use():
    store = InMemoryNonceStore()
    assert store.claim("n1")
    assert not store.claim("n1")
    assert store.is_used("n1")
    assert not store.is_used("n2")


def test_in_memory_nonce_reclaimable_after_ttl():
    clock = DateClock()
    store = InMemoryNonceStore(clock=clock)
    assert store.claim("n1", ttl_seconds=60)
    clock.now += timedelta(seconds=61)
    assert not store.is_used("n1")
    assert store.purge_expired() == 1
    assert store.claim("n1", ttl_seconds=60)


@pytest.fixture
def sql_store():
    return SqlNonceStore()


def test_sql_claim_is_single_use(sql_store):
    assert sql_store.claim("nonce_a")
    assert not sql_store.claim("nonce_a")
    assert sql_store.is_used("nonce_a")
    assert not sql_store.is_used("nonce_b")


def test_sql_claim_with_caller_session(db_session):
    store = SqlNonceStore(db_session)
    assert store.claim("nonce_scoped")
    assert not SqlNonceStore().claim("nonce_scoped")


def test_sql_expired_nonce_can_be_reclaimed_and_purged(sql_store):
    assert sql_store.claim("nonce_old", ttl_seconds=-1)
    assert not sql_store.is_used("nonce_old")
    assert sql_store.claim("nonce_old", ttl_seconds=60)
    assert not sql_store.claim("nonce_old", ttl_seconds=60)

    assert sql_store.claim("nonce_stale", ttl_seconds=-1)
    assert sql_store.purge_expired() == 1
