"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer-token authorization.

Access tokens are self-contained: authorization is decided from the verified
claims alone (signature + expiry), with no store round trip. A token minted
before a role change keeps its old roles until it expires -- at most one hour.

try_get_current_context() is the soft variant (returns None on failure).
get_current_context() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_context() and raises HTTP 403 unless the
token carries an "admin" role claim.

Layer rule: may import from fastapi (Depends/HTTPException/Request) because
this module is part of the FastAPI dependency injection system. No imports
from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from fastapi import HTTPException, Request

from auth.models import ClaimType
from auth.tokens import TokenMinter

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class AuthContext:
    """Who is calling, as asserted by a verified access token."""

    subject: str
    uid: str | None
    user_id: str | None
    roles: tuple[str, ...]
    claims: dict = field(default_factory=dict)

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


def context_from_payload(payload: dict) -> AuthContext:
    roles = payload.get(ClaimType.ROLE.value) or []
    if isinstance(roles, str):
        roles = [roles]
    return AuthContext(
        subject=payload[ClaimType.SUB.value],
        uid=payload.get(ClaimType.UID.value),
        user_id=payload.get(ClaimType.USER_ID.value),
        roles=tuple(r.lower() for r in roles),
        claims=payload,
    )


def try_get_current_context(request: Request) -> AuthContext | None:
    """Authenticate the request via its Authorization: Bearer header.

    Returns None on any failure. Never raises.
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    minter: TokenMinter = request.app.state.minter
    payload = minter.decode(auth_header[7:])
    if payload is None:
        return None
    return context_from_payload(payload)


def get_current_context(request: Request) -> AuthContext:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(ctx: AuthContext = Depends(get_current_context)): ...
    """
    ctx = try_get_current_context(request)
    if ctx is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return ctx


def require_admin(request: Request) -> AuthContext:
    """Require the admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    ctx = get_current_context(request)
    if not ctx.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return ctx
