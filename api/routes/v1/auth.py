"""
api/routes/v1/auth.py -- JSON login and caller introspection.

Routes:
  POST /api/v1/auth/login   -- password login; returns access + refresh tokens
  GET  /api/v1/auth/me      -- the caller's verified claims (requires bearer)

Status codes for /login:
  200  tokens (both snake_case and camelCase keys)
  400  malformed body (validation_error, from the app-level handler)
  401  bad_credentials -- same body for unknown user and wrong password
  403  account_disabled -- distinct body; only reachable with the right password

Security:
  [H2] POST /login is rate-limited to 10 requests/minute per IP.
  [C1] Credential checks go through TokenIssuanceService -> authenticator,
       which equalizes timing. Never inline a store lookup here.
  [M5] Cache-Control: no-store on login responses.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import CREDENTIAL_RATE_LIMIT, limiter
from api.models import ClaimOut, ErrorDetail, ErrorResponse, LoginRequest, LoginResponse, MeResponse
from auth.dependencies import AuthContext, get_current_context
from auth.errors import AccountDisabled, InvalidCredentials
from auth.issuance import TokenIssuanceService
from auth.models import ClaimType

# Auth policy:
# - POST /api/v1/auth/login:  public -- login endpoint must be unauthenticated
# - GET  /api/v1/auth/me:     requires bearer token (get_current_context)
router = APIRouter()


@limiter.limit(CREDENTIAL_RATE_LIMIT)  # [H2] brute-force mitigation -- must be ABOVE @router
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; return a token pair."""
    issuance: TokenIssuanceService = request.app.state.issuance
    try:
        pair = issuance.password_grant(body.username, body.password)
    except (InvalidCredentials, AccountDisabled) as exc:
        resp = JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    user_id = pair.access_token.claims.first(ClaimType.USER_ID)
    if user_id:
        request.app.state.identity_store.update_last_login(user_id)

    resp = JSONResponse(status_code=200, content=LoginResponse.from_pair(pair).model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(ctx: AuthContext = Depends(get_current_context)) -> MeResponse:
    """Return the subject and every claim in the caller's token."""
    claims: list[ClaimOut] = []
    for claim_type, value in ctx.claims.items():
        values = value if isinstance(value, list) else [value]
        claims.extend(ClaimOut(type=claim_type, value=str(v)) for v in values)
    return MeResponse(user=ctx.subject, claims=claims)
