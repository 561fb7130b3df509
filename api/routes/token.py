"""
api/routes/token.py -- OAuth2-style token endpoint.

Routes:
  POST /connect/token   -- form-encoded; grant_type=password | refresh_token

Request (application/x-www-form-urlencoded):
  grant_type=password&username=alice&password=...&scope=api offline_access
  grant_type=refresh_token&refresh_token=...

Responses follow RFC 6749 section 5: a TokenResponse on success, and
{"error": ..., "error_description": ...} on failure:
  invalid_request         400  required field missing for the grant
  invalid_grant           401  bad username/password
  invalid_grant           400  unknown, expired or already-used refresh token
  account_disabled        403  correct password, account locked or disabled
  unsupported_grant_type  400
  invalid_client          401  client_id not in ALLOWED_CLIENT_IDS

Security:
  [H2] Rate-limited like the login endpoint -- it accepts passwords too.
  [M5] Cache-Control: no-store on every response that could carry a token.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Form, Request
from fastapi.responses import JSONResponse

from api.limiter import CREDENTIAL_RATE_LIMIT, limiter
from api.models import OAuthErrorResponse, TokenResponse
from auth.errors import (
    AccountDisabled,
    AuthError,
    InvalidClient,
    InvalidCredentials,
    InvalidRefreshToken,
    UnsupportedGrantType,
)
from auth.issuance import GRANT_PASSWORD, GRANT_REFRESH_TOKEN, TokenIssuanceService

router = APIRouter()

# (oauth error code, status) per domain error. Anything else is a bug and
# falls through to the generic 500 handler.
_OAUTH_ERRORS: dict[type[AuthError], tuple[str, int]] = {
    InvalidCredentials: ("invalid_grant", 401),
    InvalidRefreshToken: ("invalid_grant", 400),
    AccountDisabled: ("account_disabled", 403),
    UnsupportedGrantType: ("unsupported_grant_type", 400),
    InvalidClient: ("invalid_client", 401),
}


@limiter.limit(CREDENTIAL_RATE_LIMIT)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/connect/token", response_model=TokenResponse, responses={400: {"model": OAuthErrorResponse}})
def token(
    request: Request,
    grant_type: Optional[str] = Form(default=None),
    username: Optional[str] = Form(default=None),
    password: Optional[str] = Form(default=None),
    refresh_token: Optional[str] = Form(default=None),
    scope: Optional[str] = Form(default=None),
    client_id: Optional[str] = Form(default=None),
) -> JSONResponse:
    """Exchange credentials or a refresh token for a new token pair."""
    issuance: TokenIssuanceService = request.app.state.issuance

    grant = (grant_type or "").strip().lower()
    if grant == GRANT_PASSWORD and (not username or not password):
        return _oauth_error("invalid_request", 400, "username and password are required.")
    if grant == GRANT_REFRESH_TOKEN and not refresh_token:
        return _oauth_error("invalid_request", 400, "refresh_token is required.")

    try:
        pair = issuance.exchange(
            grant_type,
            username=username,
            password=password,
            refresh_token=refresh_token,
            scope=scope,
            client_id=client_id,
        )
    except tuple(_OAUTH_ERRORS) as exc:
        code, status = _OAUTH_ERRORS[type(exc)]
        return _oauth_error(code, status, exc.message)

    resp = JSONResponse(status_code=200, content=TokenResponse.from_pair(pair).model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    resp.headers["Pragma"] = "no-cache"
    return resp


def _oauth_error(code: str, status: int, description: str) -> JSONResponse:
    resp = JSONResponse(
        status_code=status,
        content=OAuthErrorResponse(error=code, error_description=description).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
