"""
auth/engine.py -- AuthSessionEngine: the login state machine and account flows.

Per login attempt:

  CREDENTIALS_PENDING
    |-- email unknown or wrong password ---------------------> REJECTED  (InvalidCredentials)
    |-- lock active (lock_until > now) ----------------------> LOCKED    (AccountLocked)
    |-- lock expired -> unlock lazily, continue
    |-- email not verified ----------------------------------> REJECTED  (EmailUnverified)
    |-- score device, record device
    |-- mfa_enabled -> issue MfaPending, send code ----------> MFA_REQUIRED (LoginOutcome)
    '-- reset attempts, issue tokens, LOGIN_SUCCESS ---------> AUTHENTICATED (LoginOutcome)

  MFA_REQUIRED
    |-- no pending code, or past expiry ---------------------> MFA_EXPIRED  (MfaExpired)
    |-- wrong code ------------------------------------------> MFA_MISMATCH (MfaMismatch)
    '-- consume code (compare-and-clear), same as success ---> AUTHENTICATED

The lock check runs after the bcrypt comparison but before its result is
used, so once an account is locked every attempt is refused with the
remaining time, whatever the password, and without counting another failure.
Unknown emails and wrong passwords raise the same InvalidCredentials with the
same message; the bcrypt comparison runs in both cases. Both write LOGIN_FAILED;
for an unknown email the actor is "anonymous" and the address is masked.

MFA codes have no attempt counter; expiry is the only throttle (the HTTP
layer adds rate limiting).

Side effects that must not fail the login (audit writes, device tracking,
notifications) are logged on failure and never raised.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError

from audit.models import AuditAction
from audit.trail import AuditTrail
from auth import tokens
from auth.credentials import CredentialStore, issued_before_password_change
from auth.models import (
    LoginOutcome,
    LoginState,
    MfaPending,
    RequestContext,
    ResetPending,
    Role,
    User,
    VerificationPending,
)
from core.clock import Clock, to_iso, utcnow
from core.config import Settings, get_settings
from core.errors import (
    AccountLocked,
    Conflict,
    EmailUnverified,
    InvalidCode,
    InvalidCredentials,
    MfaExpired,
    MfaMismatch,
    NotFound,
    NotificationFailed,
)
from devices.fingerprint import mask_ip
from devices.tracker import DeviceTracker
from notify.sender import NotificationSender, TemplateKind, redact_email

logger = logging.getLogger("authguard.auth")

# Actor id on LOGIN_FAILED events for emails with no account.
ANONYMOUS_ACTOR = "anonymous"


def _codes_match(expected: str, given: object) -> bool:
    """Constant-time compare of one-time codes; non-ASCII input never matches."""
    return secrets.compare_digest(expected.encode("utf-8"), str(given).encode("utf-8"))


class AuthSessionEngine:
    """Orchestrates CredentialStore, DeviceTracker, AuditTrail and the notification sender.

    Usage:
        engine = AuthSessionEngine(credentials, devices, audit, sender)
        outcome = engine.login("ada@example.com", "s3cret", RequestContext("203.0.113.7", ua))
        if outcome.state is LoginState.MFA_REQUIRED:
            outcome = engine.verify_mfa(outcome.user_id, code, ctx)
    """

    def __init__(
        self,
        credentials: CredentialStore,
        devices: DeviceTracker,
        audit: AuditTrail,
        notifier: NotificationSender,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.credentials = credentials
        self.users = credentials.users
        self.devices = devices
        self.audit = audit
        self.notifier = notifier
        self.settings = settings or get_settings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, ctx: RequestContext) -> LoginOutcome:
        check = self.credentials.verify_credentials(email, password)
        user = check.user

        if user is not None:
            remaining = self.credentials.lock_remaining_minutes(user)
            if remaining is not None:
                self._emit(AuditAction.LOGIN_FAILED, user, ctx, {"reason": "account_locked"})
                raise AccountLocked(remaining)

        if not check.matched:
            if user is not None:
                updated, locked_now = self.credentials.record_failed_attempt(user)
                self._emit(
                    AuditAction.LOGIN_FAILED,
                    user,
                    ctx,
                    {"reason": "invalid_password", "attempts": updated.login_attempts},
                )
                if locked_now:
                    self._emit(
                        AuditAction.ACCOUNT_LOCK,
                        user,
                        ctx,
                        {
                            "reason": "too_many_failed_attempts",
                            "attempts": updated.login_attempts,
                            "lockUntil": to_iso(updated.lock_until) if updated.lock_until else None,
                        },
                    )
            else:
                masked = redact_email(email)
                logger.info("Login failed for unknown email %s", masked)
                self.audit.record(
                    AuditAction.LOGIN_FAILED,
                    actor_user_id=ANONYMOUS_ACTOR,
                    actor_username=masked,
                    ip_address=ctx.ip_address,
                    user_agent=ctx.user_agent,
                    details={"reason": "unknown_email"},
                )
            raise InvalidCredentials()

        if self.credentials.unlock_if_expired(user):
            self._emit(AuditAction.ACCOUNT_UNLOCK, user, ctx, {"reason": "lock_expired"})
            user = self.users.get_by_id(user.id) or user

        if not user.is_verified:
            raise EmailUnverified()

        verdict = self.devices.score_suspicion(user.id, ctx.ip_address, ctx.user_agent)
        if verdict.error:
            logger.warning("Suspicion scoring failed open for user %s: %s", user.id, verdict.error)
        suspicion = verdict.as_dict()
        device_id = self._record_device(user, ctx)

        if user.mfa_enabled:
            return self._start_mfa(user, device_id, suspicion)
        return self._complete_login(user, ctx, device_id, suspicion)

    def verify_mfa(self, user_id: int, code: str, ctx: RequestContext) -> LoginOutcome:
        user = self.users.get_by_id(user_id)
        pending = user.challenge if user is not None else None
        if not isinstance(pending, MfaPending) or pending.expires_at <= self._clock():
            raise MfaExpired()
        if not _codes_match(pending.code, code):
            raise MfaMismatch()
        if not self.users.consume_challenge(user.id, pending):
            # Another request consumed it first.
            raise MfaExpired()
        return self._complete_login(user, ctx, pending.device_id, dict(pending.suspicion or {}), via_mfa=True)

    def _start_mfa(self, user: User, device_id: Optional[int], suspicion: dict) -> LoginOutcome:
        ttl = self.settings.mfa_code_ttl_seconds
        code = tokens.generate_code()
        challenge = MfaPending(
            code=code,
            expires_at=self._clock() + timedelta(seconds=ttl),
            device_id=device_id,
            suspicion=suspicion,
        )
        self.users.set_challenge(user.id, challenge)
        self._notify(
            user,
            TemplateKind.mfa_code,
            {"username": user.username, "code": code, "expires_minutes": ttl // 60},
        )
        logger.info("MFA challenge issued for user %s", user.id)
        return LoginOutcome(
            state=LoginState.MFA_REQUIRED,
            user_id=user.id,
            device_id=device_id,
            suspicion=suspicion,
        )

    def _complete_login(
        self,
        user: User,
        ctx: RequestContext,
        device_id: Optional[int],
        suspicion: dict,
        via_mfa: bool = False,
    ) -> LoginOutcome:
        self.credentials.reset_attempts(user)
        pair = self.credentials.issue_tokens(user)
        self.users.update_user(user.id, last_login=self._clock())
        self._emit(
            AuditAction.LOGIN_SUCCESS,
            user,
            ctx,
            {"deviceId": device_id, "suspicion": suspicion, "mfa": via_mfa},
        )
        if suspicion.get("isSuspicious"):
            self._alert_suspicious(user, ctx, device_id, suspicion)
        logger.info("User %s authenticated (mfa=%s)", user.id, via_mfa)
        return LoginOutcome(
            state=LoginState.AUTHENTICATED,
            user_id=user.id,
            user=self.users.get_by_id(user.id) or user,
            tokens=pair,
            device_id=device_id,
            suspicion=suspicion,
        )

    def _record_device(self, user: User, ctx: RequestContext) -> Optional[int]:
        try:
            return self.devices.record_login(user.id, ctx.user_agent, ctx.ip_address).id
        except Exception:
            logger.exception("Device tracking failed for user %s", user.id)
            return None

    def _alert_suspicious(self, user: User, ctx: RequestContext, device_id: Optional[int], suspicion: dict) -> None:
        device = None
        if device_id is not None:
            try:
                device = self.devices.get_device(user.id, device_id)
            except NotFound:
                device = None
        self._notify(
            user,
            TemplateKind.suspicious_login,
            {
                "username": user.username,
                "login_time": to_iso(self._clock()),
                "ip_address": mask_ip(ctx.ip_address),
                "device_name": device.device_name if device else "Unknown device",
                "browser": device.browser if device else "Unknown browser",
                "operating_system": device.operating_system if device else "Unknown OS",
                "is_new_device": bool(suspicion.get("isNewDevice")),
            },
        )

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> str:
        """New access token for a live refresh token. Raises InvalidRefreshToken."""
        return self.credentials.rotate_on_refresh(refresh_token)

    def logout(self, user_id: int) -> None:
        self.credentials.invalidate_session(user_id)
        logger.info("User %s logged out", user_id)

    def authenticate(self, access_token: str) -> Optional[User]:
        """Resolve an access token to its user, or None.

        Rejects tokens whose iat predates the user's last password change.
        """
        payload = tokens.decode_token(access_token, expected_type=tokens.ACCESS)
        if payload is None:
            return None
        user = self.users.get_by_id(payload["user_id"])
        if user is None or issued_before_password_change(payload, user):
            return None
        return user

    # ------------------------------------------------------------------
    # Registration and email verification
    # ------------------------------------------------------------------

    def register(self, username: str, email: str, password: str, ctx: RequestContext) -> User:
        if self.users.exists(email=email, username=username):
            raise Conflict("Username or email is already registered.")
        ttl = self.settings.verification_code_ttl_seconds
        code = tokens.generate_code()
        try:
            user_id = self.users.create_user(
                User(
                    username=username,
                    email=email,
                    hashed_password=tokens.hash_password(password),
                    challenge=VerificationPending(code=code, expires_at=self._clock() + timedelta(seconds=ttl)),
                )
            )
        except IntegrityError:
            raise Conflict("Username or email is already registered.") from None
        user = self.users.get_by_id(user_id)
        self._notify(
            user,
            TemplateKind.verification,
            {"username": user.username, "code": code, "expires_minutes": ttl // 60},
        )
        self._emit(
            AuditAction.USER_CREATE,
            user,
            ctx,
            {"source": "registration", "username": user.username, "email": user.email},
        )
        logger.info("Registered user %s (%s)", user.id, redact_email(user.email))
        return user

    def verify_email(self, email: str, code: str) -> User:
        user = self.users.get_by_email(email)
        pending = user.challenge if user is not None else None
        if (
            not isinstance(pending, VerificationPending)
            or pending.expires_at <= self._clock()
            or not _codes_match(pending.code, code)
        ):
            raise InvalidCode()
        if not self.users.consume_challenge(user.id, pending, is_verified=True):
            raise InvalidCode()
        logger.info("Email verified for user %s", user.id)
        return self.users.get_by_id(user.id)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def update_profile(
        self,
        user_id: int,
        *,
        username: Optional[str] = None,
        avatar: Optional[str] = None,
        bio: Optional[str] = None,
    ) -> User:
        """Change the caller's own username, avatar or bio. None leaves a field as is.

        The HTTP layer audits the change as USER_UPDATE.
        """
        user = self._require_user(user_id)
        fields = {k: v for k, v in {"username": username, "avatar": avatar, "bio": bio}.items() if v is not None}
        if fields.get("username") == user.username:
            del fields["username"]
        if "username" in fields:
            taken = self.users.get_by_username(fields["username"])
            if taken is not None and taken.id != user.id:
                raise Conflict("Username is already taken.")
        if not fields:
            return user
        try:
            self.users.update_user(user.id, **fields)
        except IntegrityError:
            raise Conflict("Username is already taken.") from None
        logger.info("User %s updated profile fields %s", user.id, sorted(fields))
        return self.users.get_by_id(user.id)

    # ------------------------------------------------------------------
    # MFA settings
    # ------------------------------------------------------------------

    def set_mfa(self, user_id: int, enabled: bool, ctx: RequestContext) -> User:
        user = self._require_user(user_id)
        self.users.update_user(user.id, mfa_enabled=enabled)
        action = AuditAction.MFA_ENABLE if enabled else AuditAction.MFA_DISABLE
        self._emit(action, user, ctx, {"mfaEnabled": enabled})
        return self.users.get_by_id(user.id)

    def toggle_mfa(self, user_id: int, ctx: RequestContext) -> User:
        user = self._require_user(user_id)
        return self.set_mfa(user.id, not user.mfa_enabled, ctx)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str, ctx: RequestContext) -> None:
        """Issue and send a reset code. Unknown emails return silently.

        If the code cannot be delivered it is withdrawn and NotificationFailed
        is raised: an unreachable user must not hold a live reset code.
        """
        user = self.users.get_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown email %s", redact_email(email))
            return
        ttl = self.settings.reset_code_ttl_seconds
        challenge = ResetPending(code=tokens.generate_code(), expires_at=self._clock() + timedelta(seconds=ttl))
        self.users.set_challenge(user.id, challenge)
        result = self.notifier.send(
            user.email,
            TemplateKind.password_reset,
            {"username": user.username, "code": challenge.code, "expires_minutes": ttl // 60},
        )
        if not result.success:
            self.users.consume_challenge(user.id, challenge)
            logger.error("Reset code for user %s withdrawn, delivery failed: %s", user.id, result.error)
            raise NotificationFailed()
        logger.info("Password reset code issued for user %s", user.id)

    def reset_password(self, email: str, code: str, new_password: str, ctx: RequestContext) -> None:
        user = self.users.get_by_email(email)
        pending = user.challenge if user is not None else None
        if (
            not isinstance(pending, ResetPending)
            or pending.expires_at <= self._clock()
            or not _codes_match(pending.code, code)
        ):
            raise InvalidCode()
        if not self.users.consume_challenge(user.id, pending):
            raise InvalidCode()
        self.credentials.set_password(user, new_password)
        self._emit(AuditAction.PASSWORD_RESET, user, ctx, {"method": "reset_code"})
        logger.info("Password reset completed for user %s", user.id)

    def change_password(self, user_id: int, current_password: str, new_password: str, ctx: RequestContext) -> None:
        user = self._require_user(user_id)
        if not tokens.verify_password(current_password, user.hashed_password):
            raise InvalidCredentials("Current password is incorrect.")
        self.credentials.set_password(user, new_password)
        self._emit(AuditAction.PASSWORD_CHANGE, user, ctx, {})
        logger.info("Password changed for user %s", user.id)

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    def bootstrap_superadmin(self) -> Optional[User]:
        """Create a verified superadmin from settings when the user table is empty."""
        s = self.settings
        if not s.bootstrap_enabled or self.users.has_users():
            return None
        user_id = self.users.create_user(
            User(
                username=s.bootstrap_superadmin_username,
                email=s.bootstrap_superadmin_email,
                hashed_password=tokens.hash_password(s.bootstrap_superadmin_password),
                role=Role.superadmin,
                is_verified=True,
            )
        )
        logger.warning("Bootstrapped superadmin account %s (%s)", user_id, redact_email(s.bootstrap_superadmin_email))
        return self.users.get_by_id(user_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_user(self, user_id: int) -> User:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        return user

    def _emit(self, action: AuditAction, user: User, ctx: RequestContext, details: dict) -> None:
        self.audit.record(
            action,
            actor_user_id=user.id,
            actor_username=user.username,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            target_id=user.id,
            target_username=user.username,
            details=details,
        )

    def _notify(self, user: User, kind: TemplateKind, params: dict) -> None:
        result = self.notifier.send(user.email, kind, params)
        if not result.success:
            logger.warning("Could not send %s to user %s: %s", kind.value, user.id, result.error)
