"""
api/routes/v1/auth.py -- Authentication and account self-service REST endpoints.

Routes:
  POST /api/v1/auth/register              -- create an unverified account, email a code
  POST /api/v1/auth/verify-email          -- confirm the emailed verification code
  POST /api/v1/auth/login                 -- password login; tokens, or an MFA continuation
  POST /api/v1/auth/verify-mfa            -- exchange the emailed MFA code for tokens
  POST /api/v1/auth/refresh-token         -- new access token for the live refresh token
  POST /api/v1/auth/logout                -- drop the refresh token, clear cookie (requires auth)
  POST /api/v1/auth/password-reset        -- email a reset code (always 200)
  POST /api/v1/auth/password-reset/verify -- set a new password with the reset code
  POST /api/v1/auth/toggle-mfa            -- enable/disable MFA (requires auth)
  GET  /api/v1/auth/me                    -- current user (requires auth)
  PATCH /api/v1/auth/me                   -- edit own username/avatar/bio (requires auth, audited)
  PUT  /api/v1/auth/password              -- change password (requires auth)

Security:
  Login, MFA verification and password-reset endpoints are rate-limited per IP
  (Settings.login_rate_limit).
  Login failures for unknown emails and wrong passwords are the same 401
  with the same message.
  Cache-Control: no-store on every response that carries tokens.

Errors raised by AuthSessionEngine (core.errors.AuthGuardError subclasses)
are rendered by the exception handler in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.audit_route import AuditedRoute, audit_action, set_audit_target
from api.limiter import limiter, login_rate_limit
from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    MfaRequiredResponse,
    PasswordResetRequest,
    PasswordResetVerifyRequest,
    ProfileUpdateRequest,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    ToggleMfaRequest,
    UserResponse,
    VerifyEmailRequest,
    VerifyMfaRequest,
)
from audit.models import AuditAction
from auth.dependencies import get_current_user, request_context
from auth.engine import AuthSessionEngine
from auth.models import LoginOutcome, LoginState, User
from auth.tokens import set_auth_cookie

# Auth policy:
# - register, verify-email, login, verify-mfa, refresh-token,
#   password-reset, password-reset/verify: public
# - logout, toggle-mfa, me, password:       requires auth (get_current_user)
# - PATCH me: requires auth, and goes through AuditedRoute as USER_UPDATE
router = APIRouter()
_profile_router = APIRouter(route_class=AuditedRoute)


def user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        role=user.role.value,
        is_verified=user.is_verified,
        is_locked=user.is_locked,
        lock_until=user.lock_until,
        login_attempts=user.login_attempts,
        mfa_enabled=user.mfa_enabled,
        last_login=user.last_login,
        created_at=user.created_at,
        avatar=user.avatar,
        bio=user.bio,
    )


def _outcome_response(outcome: LoginOutcome) -> JSONResponse:
    if outcome.state is LoginState.MFA_REQUIRED:
        resp = JSONResponse(
            status_code=200,
            content=MfaRequiredResponse(user_id=outcome.user_id).model_dump(by_alias=True, mode="json"),
        )
    else:
        pair = outcome.tokens
        resp = JSONResponse(
            status_code=200,
            content=LoginResponse(
                access_token=pair.access_token,
                refresh_token=pair.refresh_token,
                expires_in=pair.expires_in,
                user=user_to_response(outcome.user),
                device_id=outcome.device_id,
            ).model_dump(by_alias=True, mode="json"),
        )
        set_auth_cookie(resp, pair.access_token, pair.expires_in)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create an unverified account and email a 6-digit verification code.

    Returns 409 if the username or email is taken. A failed email does not
    fail registration.
    """
    engine: AuthSessionEngine = request.app.state.engine
    user = engine.register(body.username, body.email, body.password, request_context(request))
    return user_to_response(user)


@router.post("/auth/verify-email", response_model=UserResponse)
def verify_email(request: Request, body: VerifyEmailRequest) -> UserResponse:
    engine: AuthSessionEngine = request.app.state.engine
    return user_to_response(engine.verify_email(body.email, body.verification_code))


# ---------------------------------------------------------------------------
# Login and MFA
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # brute-force mitigation -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login")
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    200 with tokens, or 200 with {"requireMfa": true, "userId": ...} when the
    account has MFA enabled. 401 invalid credentials, 423 locked, 403 email
    not verified.
    """
    engine: AuthSessionEngine = request.app.state.engine
    outcome = engine.login(body.email, body.password, request_context(request))
    return _outcome_response(outcome)


@limiter.limit(login_rate_limit)
@router.post("/auth/verify-mfa")
def verify_mfa(request: Request, body: VerifyMfaRequest) -> JSONResponse:
    """Complete an MFA login. The code is single-use."""
    engine: AuthSessionEngine = request.app.state.engine
    outcome = engine.verify_mfa(body.user_id, body.mfa_code, request_context(request))
    return _outcome_response(outcome)


@router.post("/auth/refresh-token", response_model=RefreshResponse)
def refresh_token(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange the current refresh token for a new access token.

    The refresh token is not rotated. A token superseded by a newer login,
    cleared by logout or issued before a password change is rejected with 401.
    """
    engine: AuthSessionEngine = request.app.state.engine
    access_token = engine.refresh(body.refresh_token)
    expires_in = engine.settings.access_token_expire_seconds
    resp = JSONResponse(
        content=RefreshResponse(access_token=access_token, expires_in=expires_in).model_dump(
            by_alias=True, mode="json"
        )
    )
    set_auth_cookie(resp, access_token, expires_in)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, current_user: User = Depends(get_current_user)) -> JSONResponse:
    """Invalidate the refresh token and clear the cookie. Idempotent."""
    engine: AuthSessionEngine = request.app.state.engine
    engine.logout(current_user.id)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump(by_alias=True))
    resp.delete_cookie("access_token")
    return resp


# ---------------------------------------------------------------------------
# Password reset (public)
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)
@router.post("/auth/password-reset", response_model=MessageResponse)
def request_password_reset(request: Request, body: PasswordResetRequest) -> MessageResponse:
    """Email a reset code. Same response whether or not the email is registered."""
    engine: AuthSessionEngine = request.app.state.engine
    engine.request_password_reset(body.email, request_context(request))
    return MessageResponse(message="If that email is registered, a reset code has been sent.")


@limiter.limit(login_rate_limit)
@router.post("/auth/password-reset/verify", response_model=MessageResponse)
def reset_password(request: Request, body: PasswordResetVerifyRequest) -> MessageResponse:
    engine: AuthSessionEngine = request.app.state.engine
    engine.reset_password(body.email, body.reset_code, body.new_password, request_context(request))
    return MessageResponse(message="Password has been reset. Please log in again.")


# ---------------------------------------------------------------------------
# Authenticated self-service
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the currently authenticated user."""
    return user_to_response(current_user)


@router.post("/auth/toggle-mfa", response_model=UserResponse)
def toggle_mfa(
    request: Request,
    body: ToggleMfaRequest,
    current_user: User = Depends(get_current_user),
) -> UserResponse:
    engine: AuthSessionEngine = request.app.state.engine
    ctx = request_context(request)
    if body.enabled is None:
        user = engine.toggle_mfa(current_user.id, ctx)
    else:
        user = engine.set_mfa(current_user.id, body.enabled, ctx)
    return user_to_response(user)


@router.put("/auth/password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
) -> JSONResponse:
    """Change password. Every existing access and refresh token stops working."""
    engine: AuthSessionEngine = request.app.state.engine
    engine.change_password(current_user.id, body.current_password, body.new_password, request_context(request))
    resp = JSONResponse(
        content=MessageResponse(message="Password changed. Please log in again.").model_dump(by_alias=True)
    )
    resp.delete_cookie("access_token")
    return resp


@_profile_router.patch(
    "/auth/me",
    response_model=UserResponse,
    dependencies=[Depends(audit_action(AuditAction.USER_UPDATE))],
)
def update_me(
    request: Request,
    body: ProfileUpdateRequest,
    current_user: User = Depends(get_current_user),
) -> UserResponse:
    """Edit the caller's own username, avatar or bio. 409 if the username is taken."""
    engine: AuthSessionEngine = request.app.state.engine
    user = engine.update_profile(current_user.id, username=body.username, avatar=body.avatar, bio=body.bio)
    set_audit_target(request, user.id, user.username)
    return user_to_response(user)


router.include_router(_profile_router)
