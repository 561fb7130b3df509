"""
auth/issuance.py -- Password and refresh grants.

Both grants are single-step and terminal:

  password:       authenticate -> load roles/claims -> assemble -> mint
                  -> issue refresh token
  refresh_token:  redeem -> load identity/roles/claims -> assemble -> mint
                  -> issue a NEW refresh token

Rotation is mandatory: a refresh grant always consumes the presented token
(even when the rest of the grant then fails) and always issues a fresh one.

Failures are raised as auth.errors exceptions and never retried -- each is a
deterministic outcome of the request.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol

from auth.authenticator import CredentialAuthenticator, FailureReason, Verified
from auth.claims import ClaimAssembler
from auth.errors import (
    AccountDisabled,
    InvalidClient,
    InvalidCredentials,
    InvalidRefreshToken,
    UnsupportedGrantType,
)
from auth.models import ClaimRecord, ClaimType, TokenPair, UserIdentity
from auth.refresh import RefreshTokenStore
from auth.tokens import TokenMinter

logger = logging.getLogger("keyfob.issuance")

GRANT_PASSWORD = "password"
GRANT_REFRESH_TOKEN = "refresh_token"


class IdentityReader(Protocol):
    def get_by_username(self, username: str) -> UserIdentity | None: ...

    def get_roles(self, user_id: str) -> list[str]: ...

    def get_claims(self, user_id: str) -> list[ClaimRecord]: ...

    def is_locked_out(self, identity: UserIdentity) -> bool: ...


class TokenIssuanceService:
    """Orchestrates authenticator, assembler, minter and refresh store.

    access_ttl is fixed per deployment (3600 s by default); default_scope is
    used when a request does not name one. allowed_client_ids, when non-empty,
    restricts which client_id values the token endpoint accepts.
    """

    def __init__(
        self,
        authenticator: CredentialAuthenticator,
        identities: IdentityReader,
        assembler: ClaimAssembler,
        minter: TokenMinter,
        refresh_tokens: RefreshTokenStore,
        *,
        access_ttl: int = 3600,
        default_scope: str = "api offline_access",
        allowed_client_ids: Iterable[str] = (),
    ) -> None:
        self.authenticator = authenticator
        self.identities = identities
        self.assembler = assembler
        self.minter = minter
        self.refresh_tokens = refresh_tokens
        self.access_ttl = access_ttl
        self.default_scope = default_scope
        self.allowed_client_ids = frozenset(allowed_client_ids)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def exchange(
        self,
        grant_type: str | None,
        *,
        username: str | None = None,
        password: str | None = None,
        refresh_token: str | None = None,
        scope: str | None = None,
        client_id: str | None = None,
    ) -> TokenPair:
        """Route a token request to the grant it names.

        Unknown grant types raise UnsupportedGrantType before anything else
        is looked at.
        """
        grant = (grant_type or "").strip().lower()
        if grant not in (GRANT_PASSWORD, GRANT_REFRESH_TOKEN):
            raise UnsupportedGrantType(grant_type)
        self._check_client(client_id)
        if grant == GRANT_PASSWORD:
            return self.password_grant(username or "", password or "", scope=scope)
        return self.refresh_grant(refresh_token or "", scope=scope)

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def password_grant(self, username: str, password: str, scope: str | None = None) -> TokenPair:
        result = self.authenticator.authenticate(username, password)
        if not isinstance(result, Verified):
            if result.reason is FailureReason.ACCOUNT_DISABLED:
                raise AccountDisabled()
            raise InvalidCredentials()
        pair = self._issue(result.identity, scope)
        logger.info("Issued tokens for user %s (password grant)", result.identity.user_id)
        return pair

    def refresh_grant(self, refresh_token: str, scope: str | None = None) -> TokenPair:
        username = self.refresh_tokens.redeem(refresh_token) if refresh_token else None
        if username is None:
            logger.info("Refresh grant rejected: unknown or spent refresh token")
            raise InvalidRefreshToken()

        identity = self.identities.get_by_username(username)
        if identity is None:
            logger.info("Refresh grant rejected: user %r no longer exists", username)
            raise InvalidRefreshToken()
        if self.identities.is_locked_out(identity):
            logger.info("Refresh grant refused for user %s: account disabled", identity.user_id)
            raise AccountDisabled()

        pair = self._issue(identity, scope)
        logger.info("Issued tokens for user %s (refresh grant)", identity.user_id)
        return pair

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _issue(self, identity: UserIdentity, scope: str | None) -> TokenPair:
        granted_scope = (scope or "").strip() or self.default_scope
        roles = self.identities.get_roles(identity.user_id)
        stored = self.identities.get_claims(identity.user_id)
        claims = self.assembler.assemble(identity, roles, stored)
        claims.add(ClaimType.SCOPE, granted_scope)
        access = self.minter.mint(claims, self.access_ttl)
        refresh = self.refresh_tokens.issue(identity.username)
        return TokenPair(access_token=access, refresh_token=refresh, scope=granted_scope)

    def _check_client(self, client_id: str | None) -> None:
        if client_id and self.allowed_client_ids and client_id not in self.allowed_client_ids:
            logger.info("Token request rejected: unknown client_id %r", client_id)
            raise InvalidClient()
