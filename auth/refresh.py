"""
auth/refresh.py -- Single-use refresh-token stores.

Contract (RefreshTokenStore):
  issue(username)  -> new opaque token, mapped to username
  redeem(token)    -> username, or None if unknown / already redeemed / expired
  purge_expired()  -> number of expired entries dropped

The central invariant is that redeem() is an atomic check-and-remove: when
several requests race to redeem the same token, exactly one gets the username
and every other caller (and every later caller) gets None. A read followed by
a separate delete would let two requests both spend one token.

Two implementations share the contract:
  InMemoryRefreshTokenStore -- dict guarded by a lock. Volatile: every
      outstanding token is lost on restart. Default, and used in tests.
  SqlRefreshTokenStore -- SQLAlchemy Core table. Redemption is a conditional
      DELETE whose rowcount decides the winner.

Tokens come from secrets.token_urlsafe(32): 256 bits, unguessable.

There is no per-user index and no revoke-all operation. Whether tokens should
be scoped per device or per user is an open question (see DESIGN.md).
"""

from __future__ import annotations

import logging
import secrets
import threading
from datetime import datetime, timedelta, timezone
from typing import Protocol

from sqlalchemy import Column, DateTime, MetaData, String, Table, create_engine, event
from sqlalchemy.engine import Engine

from auth.models import RefreshTokenEntry

logger = logging.getLogger("keyfob.auth.refresh")

_TOKEN_BYTES = 32


class RefreshTokenStore(Protocol):
    def issue(self, username: str) -> str: ...

    def redeem(self, token: str) -> str | None: ...

    def purge_expired(self) -> int: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_token() -> str:
    return secrets.token_urlsafe(_TOKEN_BYTES)


def _expiry(issued_at: datetime, ttl_seconds: int) -> datetime | None:
    return issued_at + timedelta(seconds=ttl_seconds) if ttl_seconds > 0 else None


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryRefreshTokenStore:
    """Process-local store. ttl_seconds=0 disables expiry."""

    def __init__(self, ttl_seconds: int = 0) -> None:
        self.ttl_seconds = ttl_seconds
        self._entries: dict[str, RefreshTokenEntry] = {}
        self._lock = threading.Lock()

    def issue(self, username: str) -> str:
        issued_at = _now()
        token = _new_token()
        entry = RefreshTokenEntry(
            token=token,
            username=username,
            issued_at=issued_at,
            expires_at=_expiry(issued_at, self.ttl_seconds),
        )
        with self._lock:
            self._entries[token] = entry
        return token

    def redeem(self, token: str) -> str | None:
        with self._lock:
            entry = self._entries.pop(token, None)
        if entry is None:
            return None
        if entry.is_expired(_now()):
            logger.info("Refresh token for %s expired before redemption", entry.username)
            return None
        return entry.username

    def purge_expired(self) -> int:
        now = _now()
        with self._lock:
            expired = [t for t, e in self._entries.items() if e.is_expired(now)]
            for token in expired:
                del self._entries[token]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# SQL (durable)
# ---------------------------------------------------------------------------

_metadata = MetaData()

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("token", String(64), primary_key=True),
    Column("username", String(255), nullable=False),
    Column("issued_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True)),  # NULL = no expiry
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


class SqlRefreshTokenStore:
    """Durable store over SQLAlchemy Core.

    Usage:
        store = SqlRefreshTokenStore("sqlite:///keyfob_auth.db", ttl_seconds=14 * 86400)
        token = store.issue("alice")
        store.redeem(token)   # "alice"
        store.redeem(token)   # None
        store.close()
    """

    def __init__(self, db_url: str, ttl_seconds: int = 0) -> None:
        self.ttl_seconds = ttl_seconds
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def issue(self, username: str) -> str:
        issued_at = _now()
        token = _new_token()
        with self.engine.begin() as conn:
            conn.execute(
                _refresh_tokens.insert().values(
                    token=token,
                    username=username,
                    issued_at=issued_at,
                    expires_at=_expiry(issued_at, self.ttl_seconds),
                )
            )
        return token

    def redeem(self, token: str) -> str | None:
        """Read the row, then delete it conditionally in the same transaction.

        Only the caller whose DELETE removes the row wins; a concurrent caller
        that read the same row sees rowcount == 0 and gets None.
        """
        with self.engine.begin() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token == token)).fetchone()
            if row is None:
                return None
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.token == token))
            if result.rowcount != 1:
                return None
        expires_at = _as_utc(row.expires_at)
        if expires_at is not None and expires_at <= _now():
            logger.info("Refresh token for %s expired before redemption", row.username)
            return None
        return row.username

    def purge_expired(self) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    _refresh_tokens.c.expires_at.is_not(None) & (_refresh_tokens.c.expires_at <= _now())
                )
            )
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone=True columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
