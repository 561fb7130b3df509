"""
auth/errors.py -- Structured errors raised by the token pipeline and provisioning.

Every error is a deterministic outcome (bad input, failed authentication,
invalid state) -- none of them is retried. They carry a machine-readable code
and the HTTP status the API layer should use, so api/main.py can render all
of them through one exception handler.

Disclosure rules:
  InvalidCredentials never says whether the username exists.
  AccountDisabled is allowed to be specific -- it is operational state, not a
  credential fact.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class. code is stable and safe to show to clients."""

    code = "auth_error"
    status_code = 400
    message = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)
        self.message = message or self.message

    def detail(self) -> dict | None:
        """Extra structured context for the response body, if any."""
        return None


class InvalidCredentials(AuthError):
    code = "bad_credentials"
    status_code = 401
    message = "Invalid username or password."


class AccountDisabled(AuthError):
    code = "account_disabled"
    status_code = 403
    message = "This account is disabled."


class InvalidRefreshToken(AuthError):
    code = "invalid_refresh_token"
    status_code = 400
    message = "Refresh token is invalid or has already been used."


class UnsupportedGrantType(AuthError):
    code = "unsupported_grant_type"
    status_code = 400
    message = "Unsupported grant_type."

    def __init__(self, grant_type: str | None) -> None:
        super().__init__(f"Unsupported grant_type: {grant_type!r}.")
        self.grant_type = grant_type


class InvalidClient(AuthError):
    code = "invalid_client"
    status_code = 401
    message = "Unknown client_id."


class InvalidRole(AuthError):
    code = "invalid_role"
    status_code = 400
    message = "Invalid roles requested."

    def __init__(self, roles: list[str]) -> None:
        super().__init__(f"Invalid roles requested: {', '.join(roles)}.")
        self.roles = roles

    def detail(self) -> dict:
        return {"roles": self.roles}


class ProvisioningPartialFailure(AuthError):
    """The role store failed mid-change.

    current_roles is re-read from the store after the failure, so the caller
    sees the user's real state -- possibly no roles at all.
    """

    code = "provisioning_partial_failure"
    status_code = 500
    message = "Role change failed; the user's roles may be incomplete."

    def __init__(self, user_id: str, previous_roles: list[str], current_roles: list[str]) -> None:
        super().__init__()
        self.user_id = user_id
        self.previous_roles = previous_roles
        self.current_roles = current_roles

    def detail(self) -> dict:
        return {
            "user_id": self.user_id,
            "previous_roles": self.previous_roles,
            "current_roles": self.current_roles,
        }


class UserNotFound(AuthError):
    code = "not_found"
    status_code = 404
    message = "User not found."


class UserConflict(AuthError):
    code = "conflict"
    status_code = 409
    message = "A user with that identity already exists."


class SigningError(Exception):
    """The signing secret is missing or malformed.

    Not an AuthError: this is a startup-time configuration failure, raised when
    a TokenMinter is constructed, never per request.
    """
