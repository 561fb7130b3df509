"""
API request and response models for keyfob REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Interop: several clients predate this service and send or expect camelCase
keys. Request models accept both spellings (populate_by_name + alias); the
login response carries both.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import RoleChange, TokenPair, UserSummary
from auth.tokens import MAX_PASSWORD_BYTES, password_too_long

# ---------------------------------------------------------------------------
# Token / login
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class TokenResponse(BaseModel):
    """Successful response from POST /connect/token (RFC 6749 section 5.1)."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    scope: str
    refresh_token: str

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token.token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            scope=pair.scope,
            refresh_token=pair.refresh_token,
        )


class LoginResponse(TokenResponse):
    """TokenResponse plus camelCase copies of the two tokens."""

    accessToken: str
    refreshToken: str
    username: str

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "LoginResponse":
        return cls(
            access_token=pair.access_token.token,
            accessToken=pair.access_token.token,
            refresh_token=pair.refresh_token,
            refreshToken=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            scope=pair.scope,
            username=pair.access_token.claims.first("sub") or "",
        )


class OAuthErrorResponse(BaseModel):
    """Error body for the token endpoint (RFC 6749 section 5.2)."""

    model_config = ConfigDict(frozen=True)

    error: str
    error_description: Optional[str] = None


class ClaimOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    value: str


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me -- the caller's verified claims."""

    user: str
    claims: list[ClaimOut]


# ---------------------------------------------------------------------------
# Admin: roles
# ---------------------------------------------------------------------------


class SetRoleRequest(BaseModel):
    """Body for PUT /api/v1/admin/users/{id}/role (mutually exclusive model)."""

    role: str = Field(min_length=1, max_length=64)


class UpdateRolesRequest(BaseModel):
    """Body for PUT /api/v1/admin/users/{id}/roles. An empty list removes all roles."""

    roles: list[str] = Field(default_factory=list, max_length=20)


class RoleChangeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    previous_roles: list[str]
    roles: list[str]
    changed: bool

    @classmethod
    def from_change(cls, change: RoleChange) -> "RoleChangeResponse":
        return cls(
            user_id=change.user_id,
            previous_roles=change.previous_roles,
            roles=change.current_roles,
            changed=change.changed,
        )


# ---------------------------------------------------------------------------
# Admin: users
# ---------------------------------------------------------------------------


def _check_password_bytes(value: str) -> str:
    """bcrypt cannot hash past MAX_PASSWORD_BYTES; reject here so it is a 400."""
    if password_too_long(value):
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes (UTF-8).")
    return value


class CreateUserRequest(BaseModel):
    """Body for POST /api/v1/admin/users. The email doubles as the username."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    temp_password: str = Field(alias="tempPassword", min_length=1, max_length=255)
    roles: list[str] = Field(default_factory=list, max_length=20)

    @field_validator("temp_password")
    @classmethod
    def check_password_bytes(cls, value: str) -> str:
        return _check_password_bytes(value)


class CreateDriverRequest(BaseModel):
    """Body for POST /api/v1/admin/users/drivers."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    user_uid: str = Field(alias="userUid", min_length=1, max_length=255)

    @field_validator("password")
    @classmethod
    def check_password_bytes(cls, value: str) -> str:
        return _check_password_bytes(value)


class UpdateUidRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    user_uid: str = Field(alias="userUid", min_length=1, max_length=255)


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    username: str
    email: Optional[str]
    roles: list[str]
    is_disabled: bool
    uid: Optional[str] = None

    @classmethod
    def from_summary(cls, summary: UserSummary) -> "UserResponse":
        return cls(
            user_id=summary.user_id,
            username=summary.username,
            email=summary.email,
            roles=summary.roles,
            is_disabled=summary.is_disabled,
            uid=summary.uid,
        )


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
