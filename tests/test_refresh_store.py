"""Unit tests for auth/refresh.py -- single-use refresh-token stores.

Covers:
- issue() returns distinct, URL-safe tokens
- redeem() returns the username once and None on every later call
- concurrent redemption of one token has exactly one winner (both stores)
- expired tokens redeem to None and are dropped by purge_expired()
- unknown and empty tokens redeem to None
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from auth.models import RefreshTokenEntry
from auth.refresh import InMemoryRefreshTokenStore, SqlRefreshTokenStore, _refresh_tokens


@pytest.fixture
def sql_store(tmp_path):
    """File-backed store: shared-cache memory DBs return SQLITE_LOCKED under write contention."""
    s = SqlRefreshTokenStore(f"sqlite:///{tmp_path / 'refresh.db'}")
    yield s
    s.close()


@pytest.fixture(params=["memory", "sql"])
def any_store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryRefreshTokenStore()
        return
    s = SqlRefreshTokenStore(f"sqlite:///{tmp_path / 'refresh.db'}")
    yield s
    s.close()


def _race(store, token: str, workers: int = 16) -> list:
    """Redeem the same token from many threads released at the same moment."""
    barrier = threading.Barrier(workers)

    def attempt(_):
        barrier.wait()
        return store.redeem(token)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(attempt, range(workers)))


class TestIssueRedeem:
    def test_tokens_are_unique_and_url_safe(self, any_store) -> None:
        tokens = {any_store.issue("alice") for _ in range(50)}
        assert len(tokens) == 50
        for token in tokens:
            assert len(token) >= 43, "32 random bytes encode to at least 43 characters"
            assert all(c.isalnum() or c in "-_" for c in token)

    def test_redeem_returns_username_once(self, any_store) -> None:
        token = any_store.issue("alice")
        assert any_store.redeem(token) == "alice"
        assert any_store.redeem(token) is None
        assert any_store.redeem(token) is None

    def test_tokens_are_independent(self, any_store) -> None:
        first = any_store.issue("alice")
        second = any_store.issue("alice")
        assert any_store.redeem(first) == "alice"
        assert any_store.redeem(second) == "alice"

    def test_unknown_token(self, any_store) -> None:
        assert any_store.redeem("never-issued") is None

    def test_empty_token(self, any_store) -> None:
        assert any_store.redeem("") is None


class TestConcurrentRedemption:
    """A token redeemed from many threads at once has exactly one winner."""

    def test_memory_store_single_winner(self) -> None:
        store = InMemoryRefreshTokenStore()
        for _ in range(20):
            token = store.issue("alice")
            results = _race(store, token)
            assert results.count("alice") == 1, f"Expected one winner, got {results}"
            assert results.count(None) == len(results) - 1
        assert len(store) == 0

    def test_sql_store_single_winner(self, sql_store) -> None:
        token = sql_store.issue("alice")
        results = _race(sql_store, token, workers=8)
        assert results.count("alice") == 1, f"Expected one winner, got {results}"


class TestExpiry:
    def test_entry_without_expiry_never_expires(self) -> None:
        now = datetime.now(timezone.utc)
        entry = RefreshTokenEntry(token="t", username="alice", issued_at=now)
        assert not entry.is_expired(now + timedelta(days=3650))

    def test_expired_memory_token_is_rejected(self) -> None:
        store = InMemoryRefreshTokenStore(ttl_seconds=60)
        token = store.issue("alice")
        past = datetime.now(timezone.utc) - timedelta(seconds=1)
        store._entries[token] = RefreshTokenEntry(token=token, username="alice", issued_at=past, expires_at=past)
        assert store.redeem(token) is None
        assert len(store) == 0, "Expired token must still be consumed"

    def test_purge_expired_memory(self) -> None:
        store = InMemoryRefreshTokenStore(ttl_seconds=60)
        keep = store.issue("alice")
        gone = store.issue("bob")
        past = datetime.now(timezone.utc) - timedelta(seconds=1)
        store._entries[gone] = RefreshTokenEntry(token=gone, username="bob", issued_at=past, expires_at=past)

        assert store.purge_expired() == 1
        assert store.redeem(gone) is None
        assert store.redeem(keep) == "alice"

    def test_zero_ttl_keeps_tokens_through_purge(self) -> None:
        store = InMemoryRefreshTokenStore(ttl_seconds=0)
        token = store.issue("alice")
        assert store.purge_expired() == 0
        assert store.redeem(token) == "alice"

    def test_purge_expired_sql(self, tmp_path) -> None:
        store = SqlRefreshTokenStore(f"sqlite:///{tmp_path / 'ttl.db'}", ttl_seconds=1)
        try:
            token = store.issue("alice")
            with store.engine.begin() as conn:
                conn.execute(
                    _refresh_tokens.update().values(expires_at=datetime.now(timezone.utc) - timedelta(seconds=5))
                )
            assert store.purge_expired() == 1
            assert store.redeem(token) is None
        finally:
            store.close()

    def test_expired_sql_token_is_rejected(self, tmp_path) -> None:
        store = SqlRefreshTokenStore(f"sqlite:///{tmp_path / 'ttl.db'}", ttl_seconds=3600)
        try:
            token = store.issue("alice")
            with store.engine.begin() as conn:
                conn.execute(
                    _refresh_tokens.update().values(expires_at=datetime.now(timezone.utc) - timedelta(seconds=5))
                )
            assert store.redeem(token) is None
        finally:
            store.close()
