"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; these types only carry shape between them.

Ownership:
  UserIdentity, ClaimRecord and role names belong to the identity store. The
  token pipeline only reads them. TokenClaimSet, AccessToken and TokenPair are
  built per request and discarded. RefreshTokenEntry lives in a
  RefreshTokenStore between issue() and redeem().

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ClaimType(str, Enum):
    """Claim kinds the token pipeline recognises.

    Override precedence (first available source wins):

        sub     identity.username                        not overridable
        uid     stored "uid" claim, then identity id     overridable
        userId  identity id                              not overridable
        role    role store membership                    not overridable
        email   stored "email" claim, then identity      overridable
        scope   requested scope, then default scope      set at issuance
    """

    SUB = "sub"
    UID = "uid"
    USER_ID = "userId"
    ROLE = "role"
    EMAIL = "email"
    SCOPE = "scope"


@dataclass(frozen=True)
class UserIdentity:
    """A user as the identity store knows it. user_id is opaque and stable."""

    user_id: str
    username: str
    email: str | None = None


@dataclass(frozen=True)
class ClaimRecord:
    """One key/value fact about a user. Several records may share a type."""

    type: str
    value: str


@dataclass
class TokenClaimSet:
    """Ordered claims for a single minting call. Never persisted."""

    claims: list[ClaimRecord] = field(default_factory=list)

    def add(self, claim_type: ClaimType | str, value: str) -> None:
        self.claims.append(ClaimRecord(_type_name(claim_type), value))

    def replace(self, claim_type: ClaimType | str, value: str) -> bool:
        """Swap the value of the first claim of this type in place.

        Returns False when no claim of the type exists.
        """
        name = _type_name(claim_type)
        for i, claim in enumerate(self.claims):
            if claim.type == name:
                self.claims[i] = ClaimRecord(name, value)
                return True
        return False

    def values(self, claim_type: ClaimType | str) -> list[str]:
        name = _type_name(claim_type)
        return [c.value for c in self.claims if c.type == name]

    def first(self, claim_type: ClaimType | str) -> str | None:
        found = self.values(claim_type)
        return found[0] if found else None

    def to_payload(self) -> dict:
        """Fold the ordered claims into a JWT payload.

        A type seen once becomes a string; a type seen several times becomes a
        list in claim order (so two roles -> "role": ["admin", "driver"]).
        """
        grouped: dict[str, list[str]] = {}
        for claim in self.claims:
            grouped.setdefault(claim.type, []).append(claim.value)
        return {k: v[0] if len(v) == 1 else v for k, v in grouped.items()}

    def __iter__(self):
        return iter(self.claims)

    def __len__(self) -> int:
        return len(self.claims)


def _type_name(claim_type: ClaimType | str) -> str:
    return claim_type.value if isinstance(claim_type, ClaimType) else claim_type


@dataclass
class AccessToken:
    """A signed, self-contained bearer token and the claims it carries."""

    token: str
    expires_at: datetime
    claims: TokenClaimSet
    ttl_seconds: int


@dataclass
class RefreshTokenEntry:
    """An outstanding refresh token. expires_at=None means no TTL."""

    token: str
    username: str
    issued_at: datetime
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass
class TokenPair:
    """What a successful grant hands back to the caller."""

    access_token: AccessToken
    refresh_token: str
    scope: str
    token_type: str = "Bearer"

    @property
    def expires_in(self) -> int:
        return self.access_token.ttl_seconds


@dataclass
class RoleChange:
    """Result of a role provisioning call.

    changed=False means the request matched the current state and the store
    was not written.
    """

    user_id: str
    previous_roles: list[str]
    current_roles: list[str]
    changed: bool


@dataclass
class UserSummary:
    """Admin-facing view of a user."""

    user_id: str
    username: str
    email: str | None
    roles: list[str]
    is_disabled: bool
    uid: str | None = None
