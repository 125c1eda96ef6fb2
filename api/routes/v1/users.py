"""
api/routes/v1/users.py -- Admin user management REST endpoints.

Routes (admin or superadmin only):
  GET    /api/v1/users            -- list users (role / verified / search filters, paginated)
  POST   /api/v1/users            -- create a user (role user or admin)
  PATCH  /api/v1/users/batch      -- apply the same update to many users
  GET    /api/v1/users/{user_id}  -- one user
  PATCH  /api/v1/users/{user_id}  -- update username / role / verified / locked
  DELETE /api/v1/users/{user_id}  -- delete a user

Rules:
  Superadmin accounts cannot be modified or deleted through the API.
  Batch updates skip superadmin rows and report how many were skipped.
  Admins cannot delete themselves.
  Setting isLocked=false unlocks the account and resets the attempt counter;
  setting isLocked=true locks it for the standard lockout window.

Mutating routes use AuditedRoute and write USER_* events on success.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.exc import IntegrityError

from api.audit_route import AuditedRoute, audit_action, set_audit_target
from api.models import (
    AssignableRole,
    BatchUpdateRequest,
    BatchUpdateResponse,
    MessageResponse,
    Pagination,
    UserCreateRequest,
    UserListResponse,
    UserPatchRequest,
    UserResponse,
)
from api.routes.v1.auth import user_to_response
from audit.models import AuditAction
from audit.trail import AuditTrail
from auth.dependencies import request_context, require_admin
from auth.models import Role, User
from auth.store import UserStore
from auth.tokens import hash_password
from core.errors import Conflict, Forbidden, NotFound

# All routes on this router require admin.
router = APIRouter(dependencies=[Depends(require_admin)], route_class=AuditedRoute)


def _lock_until(request: Request) -> datetime:
    settings = request.app.state.settings
    return request.app.state.clock() + timedelta(minutes=settings.lockout_minutes)


def _load_mutable(users: UserStore, user_id: int) -> User:
    user = users.get_by_id(user_id)
    if user is None:
        raise NotFound("User not found.")
    if user.role is Role.superadmin:
        raise Forbidden("Superadmin accounts cannot be modified.")
    return user


# ---------------------------------------------------------------------------
# GET /users
# ---------------------------------------------------------------------------


@router.get("/users", response_model=UserListResponse)
def list_users(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    role: Optional[str] = Query(default=None, pattern="^(user|admin|superadmin)$"),
    is_verified: Optional[bool] = Query(default=None, alias="isVerified"),
    search: Optional[str] = Query(default=None, max_length=100),
) -> UserListResponse:
    users: UserStore = request.app.state.user_store
    rows, total = users.list_users(
        role=role,
        is_verified=is_verified,
        search=search,
        offset=(page - 1) * limit,
        limit=limit,
    )
    return UserListResponse(
        count=len(rows),
        pagination=Pagination(total=total, total_pages=-(-total // limit), current_page=page, limit=limit),
        users=[user_to_response(u) for u in rows],
    )


# ---------------------------------------------------------------------------
# POST /users
# ---------------------------------------------------------------------------


@router.post(
    "/users",
    response_model=UserResponse,
    status_code=201,
    dependencies=[Depends(audit_action(AuditAction.USER_CREATE))],
)
def create_user(request: Request, body: UserCreateRequest) -> UserResponse:
    """Create a user directly (verified by default, no email code)."""
    users: UserStore = request.app.state.user_store
    if users.exists(email=body.email, username=body.username):
        raise Conflict("Username or email is already registered.")
    try:
        user_id = users.create_user(
            User(
                username=body.username,
                email=body.email,
                hashed_password=hash_password(body.password),
                role=Role(body.role.value),
                is_verified=body.is_verified,
            )
        )
    except IntegrityError:
        raise Conflict("Username or email is already registered.") from None
    created = users.get_by_id(user_id)
    set_audit_target(request, created.id, created.username)
    return user_to_response(created)


# ---------------------------------------------------------------------------
# PATCH /users/batch -- registered before /users/{user_id}
# ---------------------------------------------------------------------------


@router.patch(
    "/users/batch",
    response_model=BatchUpdateResponse,
    dependencies=[Depends(audit_action(AuditAction.USER_BATCH_UPDATE))],
)
def batch_update(request: Request, body: BatchUpdateRequest) -> BatchUpdateResponse:
    users: UserStore = request.app.state.user_store
    fields = body.updates.model_dump(exclude_none=True)
    if not fields:
        return BatchUpdateResponse(updated=0, skipped_superadmins=0)
    if "role" in fields:
        fields["role"] = AssignableRole(fields["role"]).value
    if fields.get("is_locked"):
        fields["lock_until"] = _lock_until(request)
    updated, skipped = users.batch_update(sorted(set(body.user_ids)), **fields)
    return BatchUpdateResponse(updated=updated, skipped_superadmins=skipped)


# ---------------------------------------------------------------------------
# /users/{user_id}
# ---------------------------------------------------------------------------


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: int) -> UserResponse:
    users: UserStore = request.app.state.user_store
    user = users.get_by_id(user_id)
    if user is None:
        raise NotFound("User not found.")
    return user_to_response(user)


@router.patch(
    "/users/{user_id}",
    response_model=UserResponse,
    dependencies=[Depends(audit_action(AuditAction.USER_UPDATE))],
)
def update_user(request: Request, user_id: int, body: UserPatchRequest) -> UserResponse:
    users: UserStore = request.app.state.user_store
    user = _load_mutable(users, user_id)
    fields = body.model_dump(exclude_none=True)

    if "username" in fields and fields["username"] != user.username:
        existing = users.get_by_username(fields["username"])
        if existing is not None:
            raise Conflict("Username is already taken.")
    if "role" in fields:
        fields["role"] = AssignableRole(fields["role"]).value

    unlocking = fields.pop("is_locked", None) is False and user.is_locked
    locking = body.is_locked is True and not user.is_locked
    if locking:
        fields["is_locked"] = True
        fields["lock_until"] = _lock_until(request)

    try:
        users.update_user(user.id, **fields)
    except IntegrityError:
        raise Conflict("Username is already taken.") from None

    if unlocking or body.is_locked is False:
        users.reset_login_attempts(user.id)
    if unlocking or locking:
        actor: User = request.state.user
        ctx = request_context(request)
        trail: AuditTrail = request.app.state.audit_trail
        trail.record(
            AuditAction.ACCOUNT_UNLOCK if unlocking else AuditAction.ACCOUNT_LOCK,
            actor_user_id=actor.id,
            actor_username=actor.username,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            target_id=user.id,
            target_username=user.username,
            details={"reason": "admin_action"},
        )

    updated = users.get_by_id(user.id)
    set_audit_target(request, updated.id, updated.username)
    return user_to_response(updated)


@router.delete(
    "/users/{user_id}",
    response_model=MessageResponse,
    dependencies=[Depends(audit_action(AuditAction.USER_DELETE))],
)
def delete_user(request: Request, user_id: int) -> MessageResponse:
    users: UserStore = request.app.state.user_store
    actor: User = request.state.user
    if actor.id == user_id:
        raise Forbidden("You cannot delete your own account.")
    user = _load_mutable(users, user_id)
    if not users.delete_user(user.id):
        raise NotFound("User not found.")
    set_audit_target(request, user.id, user.username)
    return MessageResponse(message="User deleted.")
