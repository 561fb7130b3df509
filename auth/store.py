"""
auth/store.py -- SQLAlchemy Core persistence for users, roles and claims.

Pattern: Repository + Data Mapper. IdentityStore is the repository;
_row_to_identity is the mapper. Services never touch SQL directly.

IdentityStore satisfies all three capability interfaces the token pipeline
consumes:
  CredentialVerifier  (auth/authenticator.py) -- lookup, password, lockout
  RoleStore           (auth/provisioning.py)  -- roles and membership
  IdentityReader      (auth/issuance.py)      -- identity + roles + claims

Lockout policy lives here, not in the authenticator: check_password() counts
consecutive failures and opens a lockout window after max_failed_attempts.
A successful check resets the counter. Admin disable/enable reuses the same
lockout_end column with a far-future end.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import ClaimRecord, UserIdentity
from auth.tokens import verify_password

logger = logging.getLogger("keyfob.auth.store")

# "Disabled" is a lockout that outlives any real session.
DISABLED_FOR = timedelta(days=365 * 100)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255)),
    Column("hashed_password", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("access_failed_count", Integer, nullable=False, server_default="0"),
    Column("lockout_end", DateTime(timezone=True)),  # NULL = not locked
    Column("last_login", DateTime(timezone=True)),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(64), nullable=False, unique=True),  # canonical lower-case
)

# id gives membership its insertion order; role claims are emitted in it.
_user_roles = Table(
    "user_roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    UniqueConstraint("user_id", "role_id"),
)

_user_claims = Table(
    "user_claims",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("claim_type", String(64), nullable=False),
    Column("claim_value", Text, nullable=False),
)


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """WAL for concurrent readers; foreign keys so deletes cascade.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite returns naive datetimes even for timezone=True columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for users, roles, memberships and claims.

    Usage:
        store = IdentityStore("sqlite:///:memory:")
        alice = store.create_user("alice", hash_password("secret"), email="alice@example.com")
        store.ensure_role("driver")
        store.replace_roles(alice.user_id, remove=[], add=["driver"])
        store.close()
    """

    def __init__(self, db_url: str, max_failed_attempts: int = 5, lockout_seconds: int = 900) -> None:
        self.max_failed_attempts = max_failed_attempts
        self.lockout_seconds = lockout_seconds
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, username: str, hashed_password: str, email: str | None = None) -> UserIdentity:
        """Insert a user and return its identity.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        Callers translate that into a conflict.
        """
        user_id = str(uuid.uuid4())
        with self.engine.begin() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    username=username,
                    email=email,
                    hashed_password=hashed_password,
                    created_at=_now(),
                    access_failed_count=0,
                )
            )
        return UserIdentity(user_id=user_id, username=username, email=email)

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def get_by_username(self, username: str) -> UserIdentity | None:
        """Case-insensitive username lookup. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(func.lower(_users.c.username) == username.lower())).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_by_id(self, user_id: str) -> UserIdentity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_by_email(self, email: str) -> UserIdentity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(func.lower(_users.c.email) == email.lower())).fetchone()
        return _row_to_identity(row) if row is not None else None

    def list_users(self, take: int = 50, skip: int = 0) -> list[UserIdentity]:
        """Page through users ordered by email, falling back to username."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _users.select()
                .order_by(func.coalesce(_users.c.email, _users.c.username), _users.c.username)
                .offset(skip)
                .limit(take)
            ).fetchall()
        return [_row_to_identity(r) for r in rows]

    def delete_user(self, user_id: str) -> bool:
        """Delete a user with its memberships and claims. False if not found."""
        with self.engine.begin() as conn:
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            conn.execute(_user_claims.delete().where(_user_claims.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def update_last_login(self, user_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now()))

    # ------------------------------------------------------------------
    # Credentials and lockout
    # ------------------------------------------------------------------

    def check_password(self, identity: UserIdentity, password: str) -> bool:
        """Verify a password and maintain the failed-attempt counter.

        After max_failed_attempts consecutive failures the account is locked
        for lockout_seconds and the counter starts over. Failures while a
        lockout or disable is already open are not counted. max_failed_attempts=0
        disables automatic lockout.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_users.c.hashed_password).where(_users.c.id == identity.user_id)
            ).fetchone()
        if row is None:
            return False
        ok = verify_password(password, row.hashed_password)
        if ok:
            self._reset_failures(identity.user_id)
        else:
            self._record_failure(identity.user_id)
        return ok

    def is_locked_out(self, identity: UserIdentity) -> bool:
        with self.engine.connect() as conn:
            lockout_end = conn.execute(
                select(_users.c.lockout_end).where(_users.c.id == identity.user_id)
            ).scalar()
        lockout_end = _as_utc(lockout_end)
        return lockout_end is not None and lockout_end > _now()

    def set_lockout(self, user_id: str, until: datetime | None) -> bool:
        """Open (until=datetime) or clear (until=None) a lockout window."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(lockout_end=until, access_failed_count=0)
            )
        return result.rowcount > 0

    def disable(self, user_id: str) -> bool:
        return self.set_lockout(user_id, _now() + DISABLED_FOR)

    def enable(self, user_id: str) -> bool:
        return self.set_lockout(user_id, None)

    def _record_failure(self, user_id: str) -> None:
        if self.max_failed_attempts <= 0:
            return
        with self.engine.begin() as conn:
            row = conn.execute(
                select(_users.c.access_failed_count, _users.c.lockout_end).where(_users.c.id == user_id)
            ).first()
            if row is None:
                return
            current_end = _as_utc(row.lockout_end)
            # An open window (lockout or disable) is never shortened by more failures.
            if current_end is not None and current_end > _now():
                return
            count = (row.access_failed_count or 0) + 1
            values: dict = {"access_failed_count": count}
            if count >= self.max_failed_attempts:
                values = {
                    "access_failed_count": 0,
                    "lockout_end": _now() + timedelta(seconds=self.lockout_seconds),
                }
                logger.warning("Locking user %s after %d failed attempts", user_id, count)
            conn.execute(_users.update().where(_users.c.id == user_id).values(**values))

    def _reset_failures(self, user_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(access_failed_count=0))

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def role_exists(self, name: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name.lower())).fetchone()
        return row is not None

    def create_role(self, name: str) -> None:
        """Insert a role. A role that already exists (even one created
        concurrently between a check and this insert) is left as is."""
        try:
            with self.engine.begin() as conn:
                conn.execute(_roles.insert().values(name=name.lower()))
        except IntegrityError:
            if not self.role_exists(name):
                raise

    def ensure_role(self, name: str) -> None:
        if not self.role_exists(name):
            self.create_role(name)

    def list_roles(self) -> list[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.id)).fetchall()
        return [r.name for r in rows]

    def get_roles(self, user_id: str) -> list[str]:
        """Role names held by the user, in the order they were assigned."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_roles.c.name)
                .join_from(_roles, _user_roles, _user_roles.c.role_id == _roles.c.id)
                .where(_user_roles.c.user_id == user_id)
                .order_by(_user_roles.c.id)
            ).fetchall()
        return [r.name for r in rows]

    def replace_roles(self, user_id: str, remove: list[str], add: list[str]) -> None:
        """Apply a membership diff in one transaction.

        Either every removal and addition lands or none does. Roles named in
        add must already exist (see ensure_role). Raises LookupError if one
        does not; the transaction is rolled back.
        """
        with self.engine.begin() as conn:
            if remove:
                role_ids = conn.execute(select(_roles.c.id).where(_roles.c.name.in_(remove))).scalars().all()
                conn.execute(
                    _user_roles.delete().where(
                        (_user_roles.c.user_id == user_id) & (_user_roles.c.role_id.in_(role_ids))
                    )
                )
            for name in add:
                role_id = conn.execute(select(_roles.c.id).where(_roles.c.name == name)).scalar()
                if role_id is None:
                    raise LookupError(f"Role {name!r} does not exist")
                conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id))

    def users_in_role(self, name: str) -> list[UserIdentity]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_users)
                .join_from(_users, _user_roles, _user_roles.c.user_id == _users.c.id)
                .join(_roles, _roles.c.id == _user_roles.c.role_id)
                .where(_roles.c.name == name.lower())
                .order_by(_users.c.username)
            ).fetchall()
        return [_row_to_identity(r) for r in rows]

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def get_claims(self, user_id: str) -> list[ClaimRecord]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _user_claims.select().where(_user_claims.c.user_id == user_id).order_by(_user_claims.c.id)
            ).fetchall()
        return [ClaimRecord(r.claim_type, r.claim_value) for r in rows]

    def add_claim(self, user_id: str, claim: ClaimRecord) -> None:
        with self.engine.begin() as conn:
            conn.execute(_user_claims.insert().values(user_id=user_id, claim_type=claim.type, claim_value=claim.value))

    def remove_claim(self, user_id: str, claim: ClaimRecord) -> int:
        """Remove every record matching type and value. Returns rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _user_claims.delete().where(
                    (_user_claims.c.user_id == user_id)
                    & (_user_claims.c.claim_type == claim.type)
                    & (_user_claims.c.claim_value == claim.value)
                )
            )
        return result.rowcount

    def find_user_ids_by_claim(self, claim_type: str, value: str) -> list[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_user_claims.c.user_id)
                .where((_user_claims.c.claim_type == claim_type) & (_user_claims.c.claim_value == value))
                .distinct()
            ).fetchall()
        return [r.user_id for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> UserIdentity:
    return UserIdentity(user_id=row.id, username=row.username, email=row.email or None)
