"""
auth/authenticator.py -- Username/password verification with timing equalization.

authenticate() returns Verified(identity) or Failed(reason). It never raises
for a bad login; the issuance service decides how to surface a failure.

Rules [C1]:
  - Unknown username and wrong password both produce INVALID_CREDENTIALS.
  - bcrypt always runs, against DUMMY_HASH when the user does not exist, so
    response time does not reveal whether the username is registered.
  - Lockout is read only after the password matches. ACCOUNT_DISABLED can be
    disclosed -- it is operational state -- but only to someone who already
    holds the password.

Lockout policy (counting failures, opening windows) belongs to the
CredentialVerifier. This module only reads it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from auth.models import UserIdentity
from auth.tokens import DUMMY_HASH, verify_password

logger = logging.getLogger("keyfob.auth")


class CredentialVerifier(Protocol):
    def get_by_username(self, username: str) -> UserIdentity | None: ...

    def check_password(self, identity: UserIdentity, password: str) -> bool: ...

    def is_locked_out(self, identity: UserIdentity) -> bool: ...


class FailureReason(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_DISABLED = "account_disabled"


@dataclass(frozen=True)
class Verified:
    identity: UserIdentity

    ok = True


@dataclass(frozen=True)
class Failed:
    reason: FailureReason

    ok = False


AuthResult = Verified | Failed


class CredentialAuthenticator:
    def __init__(self, verifier: CredentialVerifier) -> None:
        self.verifier = verifier

    def authenticate(self, username: str, password: str) -> AuthResult:
        identity = self.verifier.get_by_username(username) if username else None
        if identity is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            verify_password(password, DUMMY_HASH)
            logger.info("Login failed: invalid credentials")
            return Failed(FailureReason.INVALID_CREDENTIALS)

        if not self.verifier.check_password(identity, password):
            logger.info("Login failed for user %s: invalid credentials", identity.user_id)
            return Failed(FailureReason.INVALID_CREDENTIALS)

        if self.verifier.is_locked_out(identity):
            logger.info("Login refused for user %s: account disabled", identity.user_id)
            return Failed(FailureReason.ACCOUNT_DISABLED)

        return Verified(identity)
