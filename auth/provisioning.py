"""
auth/provisioning.py -- Admin-driven role and user management.

RoleProvisioningService
  set_role(user_id, role)      mutually-exclusive model: the user ends up with
                               exactly {role}
  update_roles(user_id, roles) multi-role model: the user ends up with exactly
                               the requested set (empty = no roles)

  Both validate every name against the allow-list before touching the store,
  short-circuit without a write when the user already holds exactly the
  target set, create missing (allow-listed) roles, and then apply the change
  as one diff through RoleStore.replace_roles. The SQL store applies that diff
  in a single transaction. If the store still fails, the user's roles are
  re-read and ProvisioningPartialFailure reports what is actually there --
  a store without transactions may have left the user with no roles.

UserProvisioningService
  Account lifecycle around the role model: create, list, disable/enable,
  external uid claim, lookup by uid, delete.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol

from sqlalchemy.exc import IntegrityError

from auth.errors import InvalidRole, ProvisioningPartialFailure, UserConflict, UserNotFound
from auth.models import ClaimRecord, ClaimType, RoleChange, UserIdentity, UserSummary
from auth.tokens import hash_password

logger = logging.getLogger("keyfob.provisioning")


class RoleStore(Protocol):
    def get_by_id(self, user_id: str) -> UserIdentity | None: ...

    def role_exists(self, name: str) -> bool: ...

    def create_role(self, name: str) -> None: ...

    def get_roles(self, user_id: str) -> list[str]: ...

    def replace_roles(self, user_id: str, remove: list[str], add: list[str]) -> None: ...


def normalize_roles(roles: Iterable[str] | None) -> list[str]:
    """Trim, lower-case, drop blanks and de-duplicate, keeping first-seen order."""
    result: list[str] = []
    for role in roles or ():
        if role is None:
            continue
        canonical = role.strip().lower()
        if canonical and canonical not in result:
            result.append(canonical)
    return result


class RoleProvisioningService:
    def __init__(self, store: RoleStore, allowed_roles: Iterable[str]) -> None:
        self.store = store
        self.allowed_roles = frozenset(normalize_roles(allowed_roles))

    def set_role(self, user_id: str, role: str) -> RoleChange:
        """Make role the user's only role."""
        target = self._validate([role])
        if not target:
            raise InvalidRole([role])
        return self._apply(user_id, target)

    def update_roles(self, user_id: str, roles: Iterable[str] | None) -> RoleChange:
        """Replace the user's roles with exactly roles."""
        target = self._validate(roles)
        return self._apply(user_id, target)

    def validate(self, roles: Iterable[str] | None) -> list[str]:
        """Normalize and allow-list check without touching the store."""
        return self._validate(roles)

    def ensure_roles(self, roles: Iterable[str]) -> None:
        """Create any allow-listed role the store does not know yet. Idempotent."""
        for role in roles:
            if not self.store.role_exists(role):
                logger.info("Creating role %r", role)
                self.store.create_role(role)

    def _validate(self, roles: Iterable[str] | None) -> list[str]:
        normalized = normalize_roles(roles)
        invalid = [r for r in normalized if r not in self.allowed_roles]
        if invalid:
            raise InvalidRole(invalid)
        return normalized

    def _apply(self, user_id: str, target: list[str]) -> RoleChange:
        if self.store.get_by_id(user_id) is None:
            raise UserNotFound()

        current = [r.lower() for r in self.store.get_roles(user_id)]
        if set(current) == set(target):
            return RoleChange(user_id=user_id, previous_roles=current, current_roles=current, changed=False)

        self.ensure_roles(target)
        remove = [r for r in current if r not in target]
        add = [r for r in target if r not in current]
        try:
            self.store.replace_roles(user_id, remove=remove, add=add)
        except Exception as exc:
            actual = self.store.get_roles(user_id)
            logger.error(
                "Role change for user %s failed (previous=%s, now=%s): %s",
                user_id,
                current,
                actual,
                exc,
            )
            raise ProvisioningPartialFailure(user_id, current, actual) from exc

        updated = self.store.get_roles(user_id)
        logger.info("Roles for user %s changed from %s to %s", user_id, current, updated)
        return RoleChange(user_id=user_id, previous_roles=current, current_roles=updated, changed=True)


# ---------------------------------------------------------------------------
# User lifecycle
# ---------------------------------------------------------------------------


class UserProvisioningService:
    """Admin operations on accounts. The store is an IdentityStore."""

    DEFAULT_TAKE = 50

    def __init__(self, store, roles: RoleProvisioningService) -> None:
        self.store = store
        self.roles = roles

    def create_user(self, email: str, temp_password: str, roles: Iterable[str] | None = None) -> UserSummary:
        """Create a user whose username is their email, then assign roles.

        Roles are validated before the account is created so a bad role name
        never leaves a half-provisioned user behind.
        """
        requested = self.roles.validate(roles)
        if self.store.get_by_email(email) is not None:
            raise UserConflict("Email already exists.")
        if self.store.get_by_username(email) is not None:
            raise UserConflict("Username already exists.")

        identity = self._create(email, temp_password, email=email)
        self.store.add_claim(identity.user_id, ClaimRecord(ClaimType.EMAIL.value, email))
        if requested:
            self.roles.update_roles(identity.user_id, requested)
        logger.info("Created user %s with roles %s", identity.user_id, requested)
        return self.summary(identity)

    def create_driver(self, username: str, password: str, uid: str) -> UserSummary:
        """Create a driver account linked to an external record by uid."""
        if self.store.get_by_username(username) is not None:
            raise UserConflict(f"Username {username!r} already exists.")
        if self.store.find_user_ids_by_claim(ClaimType.UID.value, uid):
            raise UserConflict(f"UserUid {uid!r} is already assigned to another user.")

        identity = self._create(username, password)
        self.roles.set_role(identity.user_id, "driver")
        self.store.add_claim(identity.user_id, ClaimRecord(ClaimType.UID.value, uid))
        logger.info("Created driver %s linked to uid %s", identity.user_id, uid)
        return self.summary(identity)

    def set_uid(self, user_id: str, uid: str) -> UserSummary:
        """Point the user's uid claim at a new external id."""
        identity = self._require(user_id)
        owners = [o for o in self.store.find_user_ids_by_claim(ClaimType.UID.value, uid) if o != user_id]
        if owners:
            raise UserConflict(f"UserUid {uid!r} is already assigned to another user.")
        for claim in self.store.get_claims(user_id):
            if claim.type == ClaimType.UID.value:
                self.store.remove_claim(user_id, claim)
        self.store.add_claim(user_id, ClaimRecord(ClaimType.UID.value, uid))
        return self.summary(identity)

    def find_by_uid(self, uid: str) -> UserSummary:
        owners = self.store.find_user_ids_by_claim(ClaimType.UID.value, uid)
        if not owners:
            raise UserNotFound(f"No user found with uid {uid!r}.")
        return self.summary(self._require(owners[0]))

    def list_users(self, take: int = DEFAULT_TAKE, skip: int = 0) -> list[UserSummary]:
        take = take if take > 0 else self.DEFAULT_TAKE
        skip = max(skip, 0)
        return [self.summary(u) for u in self.store.list_users(take=take, skip=skip)]

    def list_drivers(self) -> list[UserSummary]:
        return [self.summary(u) for u in self.store.users_in_role("driver")]

    def get(self, user_id: str) -> UserSummary:
        return self.summary(self._require(user_id))

    def disable(self, user_id: str) -> UserSummary:
        identity = self._require(user_id)
        self.store.disable(user_id)
        logger.info("Disabled user %s", user_id)
        return self.summary(identity)

    def enable(self, user_id: str) -> UserSummary:
        identity = self._require(user_id)
        self.store.enable(user_id)
        logger.info("Enabled user %s", user_id)
        return self.summary(identity)

    def delete(self, user_id: str) -> None:
        if not self.store.delete_user(user_id):
            raise UserNotFound()
        logger.info("Deleted user %s", user_id)

    def summary(self, identity: UserIdentity) -> UserSummary:
        uid = next(
            (c.value for c in self.store.get_claims(identity.user_id) if c.type == ClaimType.UID.value),
            None,
        )
        return UserSummary(
            user_id=identity.user_id,
            username=identity.username,
            email=identity.email,
            roles=[r.lower() for r in self.store.get_roles(identity.user_id)],
            is_disabled=self.store.is_locked_out(identity),
            uid=uid,
        )

    def _create(self, username: str, password: str, email: str | None = None) -> UserIdentity:
        try:
            return self.store.create_user(username, hash_password(password), email=email)
        except IntegrityError as exc:
            raise UserConflict(f"Username {username!r} already exists.") from exc

    def _require(self, user_id: str) -> UserIdentity:
        identity = self.store.get_by_id(user_id)
        if identity is None:
            raise UserNotFound()
        return identity
