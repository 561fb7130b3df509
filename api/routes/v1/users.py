"""
api/routes/v1/users.py -- Admin user and role provisioning.

Routes (all require a bearer token with the admin role):
  GET    /api/v1/admin/users                   -- page through users (take/skip)
  POST   /api/v1/admin/users                   -- create user (email + temp password + roles)
  GET    /api/v1/admin/users/drivers           -- users holding the driver role
  POST   /api/v1/admin/users/drivers           -- create driver linked to an external uid
  GET    /api/v1/admin/users/by-uid/{uid}      -- look up by external uid claim
  GET    /api/v1/admin/users/{id}              -- single user
  PUT    /api/v1/admin/users/{id}/role         -- set the user's single role
  PUT    /api/v1/admin/users/{id}/roles        -- replace the user's role set
  PUT    /api/v1/admin/users/{id}/uid          -- replace the external uid claim
  PUT    /api/v1/admin/users/{id}/disable      -- lock the account
  PUT    /api/v1/admin/users/{id}/enable       -- unlock the account
  DELETE /api/v1/admin/users/{id}              -- delete

Domain errors (InvalidRole, UserNotFound, UserConflict,
ProvisioningPartialFailure) propagate to the AuthError handler in api/main.py,
which renders the standard error envelope.

Role changes take effect on the user's next token issuance; tokens already
issued keep their old role claims until they expire.

Static segments (drivers, by-uid) are registered before /{user_id} so they
are not captured as ids.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import (
    CreateDriverRequest,
    CreateUserRequest,
    RoleChangeResponse,
    SetRoleRequest,
    UpdateRolesRequest,
    UpdateUidRequest,
    UserResponse,
)
from auth.dependencies import AuthContext, require_admin
from auth.provisioning import RoleProvisioningService, UserProvisioningService

logger = logging.getLogger("keyfob.api.users")

router = APIRouter()


def _users(request: Request) -> UserProvisioningService:
    return request.app.state.user_provisioning


def _roles(request: Request) -> RoleProvisioningService:
    return request.app.state.role_provisioning


# ---------------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------------


@router.get("/admin/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    take: int = 50,
    skip: int = 0,
    admin: AuthContext = Depends(require_admin),
) -> list[UserResponse]:
    """Page through users ordered by email. take<=0 means 50; skip<0 means 0."""
    return [UserResponse.from_summary(s) for s in _users(request).list_users(take=take, skip=skip)]


@router.post("/admin/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: CreateUserRequest,
    admin: AuthContext = Depends(require_admin),
) -> UserResponse:
    summary = _users(request).create_user(body.email, body.temp_password, body.roles)
    logger.info("Admin %s created user %s", admin.subject, summary.user_id)
    return UserResponse.from_summary(summary)


@router.get("/admin/users/drivers", response_model=list[UserResponse])
def list_drivers(request: Request, admin: AuthContext = Depends(require_admin)) -> list[UserResponse]:
    return [UserResponse.from_summary(s) for s in _users(request).list_drivers()]


@router.post("/admin/users/drivers", response_model=UserResponse, status_code=201)
def create_driver(
    request: Request,
    body: CreateDriverRequest,
    admin: AuthContext = Depends(require_admin),
) -> UserResponse:
    summary = _users(request).create_driver(body.username, body.password, body.user_uid)
    logger.info("Admin %s created driver %s", admin.subject, summary.user_id)
    return UserResponse.from_summary(summary)


@router.get("/admin/users/by-uid/{uid}", response_model=UserResponse)
def get_by_uid(request: Request, uid: str, admin: AuthContext = Depends(require_admin)) -> UserResponse:
    return UserResponse.from_summary(_users(request).find_by_uid(uid))


# ---------------------------------------------------------------------------
# Single user
# ---------------------------------------------------------------------------


@router.get("/admin/users/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: str, admin: AuthContext = Depends(require_admin)) -> UserResponse:
    return UserResponse.from_summary(_users(request).get(user_id))


@router.put("/admin/users/{user_id}/role", response_model=RoleChangeResponse)
def set_role(
    request: Request,
    user_id: str,
    body: SetRoleRequest,
    admin: AuthContext = Depends(require_admin),
) -> RoleChangeResponse:
    """Give the user exactly one role. Repeating the same call is a no-op (changed=false)."""
    change = _roles(request).set_role(user_id, body.role)
    if change.changed:
        logger.info("Admin %s set role of %s to %s", admin.subject, user_id, change.current_roles)
    return RoleChangeResponse.from_change(change)


@router.put("/admin/users/{user_id}/roles", response_model=RoleChangeResponse)
def update_roles(
    request: Request,
    user_id: str,
    body: UpdateRolesRequest,
    admin: AuthContext = Depends(require_admin),
) -> RoleChangeResponse:
    """Replace the user's role set. An empty list leaves the user with no roles."""
    change = _roles(request).update_roles(user_id, body.roles)
    if change.changed:
        logger.info("Admin %s replaced roles of %s with %s", admin.subject, user_id, change.current_roles)
    return RoleChangeResponse.from_change(change)


@router.put("/admin/users/{user_id}/uid", response_model=UserResponse)
def update_uid(
    request: Request,
    user_id: str,
    body: UpdateUidRequest,
    admin: AuthContext = Depends(require_admin),
) -> UserResponse:
    return UserResponse.from_summary(_users(request).set_uid(user_id, body.user_uid))


@router.put("/admin/users/{user_id}/disable", response_model=UserResponse)
def disable_user(request: Request, user_id: str, admin: AuthContext = Depends(require_admin)) -> UserResponse:
    """Lock the account. [M4] An admin cannot disable their own account."""
    if admin.user_id == user_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot disable your own account."},
        )
    return UserResponse.from_summary(_users(request).disable(user_id))


@router.put("/admin/users/{user_id}/enable", response_model=UserResponse)
def enable_user(request: Request, user_id: str, admin: AuthContext = Depends(require_admin)) -> UserResponse:
    return UserResponse.from_summary(_users(request).enable(user_id))


@router.delete("/admin/users/{user_id}", status_code=204)
def delete_user(request: Request, user_id: str, admin: AuthContext = Depends(require_admin)) -> Response:
    _users(request).delete(user_id)
    logger.info("Admin %s deleted user %s", admin.subject, user_id)
    return Response(status_code=204)
