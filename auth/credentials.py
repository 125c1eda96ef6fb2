"""
auth/credentials.py -- Password checks, lockout bookkeeping, and token lifecycle.

CredentialStore is the only component that mutates credential state on a
User: failed-attempt counting, lock/unlock, refresh token persistence and
password changes. Persistence goes through UserStore; token primitives come
from auth/tokens.py.

Lockout rules:
  A failed attempt increments login_attempts. Reaching lockout_threshold
  locks the account until now + lockout_minutes. Expired locks are
  reconciled lazily, only when the user is next touched:
    failure path -- attempts restart at 1 and the lock fields are cleared
    success path -- unlock_if_expired() zeroes attempts and clears the lock
  There is no background sweep.

Refresh tokens:
  At most one per user. issue_refresh_token() overwrites the stored value, so
  a new login invalidates every earlier session's refresh ability. Access
  tokens already issued stay valid until they expire.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from auth import tokens
from auth.models import CredentialCheck, TokenPair, User
from auth.store import UserStore
from core.clock import Clock, utcnow
from core.config import Settings, get_settings
from core.errors import InvalidRefreshToken

logger = logging.getLogger("authguard.auth")


class CredentialStore:
    """Credential state transitions for one user at a time.

    Usage:
        creds = CredentialStore(user_store)
        check = creds.verify_credentials("ada@example.com", "s3cret")
        if not check.matched and check.user:
            creds.record_failed_attempt(check.user)
    """

    def __init__(self, users: UserStore, settings: Optional[Settings] = None, clock: Clock = utcnow) -> None:
        self.users = users
        self.settings = settings or get_settings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Password check
    # ------------------------------------------------------------------

    def verify_credentials(self, email: str, password: str) -> CredentialCheck:
        """Look up a user by email and compare the password hash.

        Never raises for an unknown email. A bcrypt comparison against a dummy
        hash is always performed so response time does not reveal whether the
        email is registered.
        """
        user = self.users.get_by_email(email)
        if user is None:
            tokens.verify_password(password, tokens.DUMMY_HASH)
            return CredentialCheck(user=None, matched=False)
        return CredentialCheck(user=user, matched=tokens.verify_password(password, user.hashed_password))

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    def lock_remaining_minutes(self, user: User) -> Optional[int]:
        """Return whole minutes left on an active lock (rounded up), or None."""
        now = self._clock()
        if not user.is_locked or user.lock_until is None or user.lock_until <= now:
            return None
        return max(1, math.ceil((user.lock_until - now).total_seconds() / 60))

    def lock_expired(self, user: User) -> bool:
        return user.is_locked and (user.lock_until is None or user.lock_until <= self._clock())

    def record_failed_attempt(self, user: User) -> tuple[User, bool]:
        """Count one failed password attempt.

        Returns (updated user, locked_now). locked_now is True only for the
        attempt that moved the account into the locked state.
        """
        if self.lock_expired(user):
            # Lazy expiry on the failure path restarts the count at 1, not 0.
            self.users.reset_login_attempts(user.id, attempts=1)
            updated = self.users.get_by_id(user.id) or user
            return updated, False

        lock_until = self._clock() + timedelta(minutes=self.settings.lockout_minutes)
        updated = self.users.increment_login_attempts(user.id, self.settings.lockout_threshold, lock_until)
        if updated is None:
            return user, False
        locked_now = updated.is_locked and not user.is_locked
        if locked_now:
            logger.warning(
                "Account %s locked after %d failed attempts (until %s)",
                user.id,
                updated.login_attempts,
                updated.lock_until,
            )
        return updated, locked_now

    def unlock_if_expired(self, user: User) -> bool:
        """Clear an expired lock. Returns True if a lock was cleared."""
        if not self.lock_expired(user):
            return False
        self.users.reset_login_attempts(user.id)
        logger.info("Account %s lock expired and was cleared", user.id)
        return True

    def reset_attempts(self, user: User) -> None:
        """Zero the attempt counter and clear lock fields after full authentication."""
        if user.login_attempts or user.is_locked or user.lock_until is not None:
            self.users.reset_login_attempts(user.id)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def issue_access_token(self, user: User) -> str:
        return tokens.create_access_token(
            user.id,
            user.role.value,
            issued_at=self._clock(),
            expire_seconds=self.settings.access_token_expire_seconds,
        )

    def issue_refresh_token(self, user: User) -> str:
        """Mint a refresh token and persist it, replacing any previous one."""
        token = tokens.create_refresh_token(
            user.id,
            issued_at=self._clock(),
            expire_seconds=self.settings.refresh_token_expire_seconds,
        )
        self.users.set_refresh_token(user.id, token)
        return token

    def issue_tokens(self, user: User) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access_token(user),
            refresh_token=self.issue_refresh_token(user),
            expires_in=self.settings.access_token_expire_seconds,
        )

    def rotate_on_refresh(self, refresh_token: str) -> str:
        """Exchange a live refresh token for a new access token.

        The refresh token itself is not rotated. Raises InvalidRefreshToken if
        the signature or expiry is bad, the user is gone, the token is not the
        one currently stored, or it predates the last password change.
        """
        payload = tokens.decode_token(refresh_token, expected_type=tokens.REFRESH)
        if payload is None:
            raise InvalidRefreshToken()
        user = self.users.get_by_id(payload["user_id"])
        if user is None or not user.refresh_token or user.refresh_token != refresh_token:
            raise InvalidRefreshToken()
        if issued_before_password_change(payload, user):
            raise InvalidRefreshToken()
        return self.issue_access_token(user)

    def invalidate_session(self, user_id: int) -> None:
        """Drop the stored refresh token. Idempotent."""
        self.users.set_refresh_token(user_id, None)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def set_password(self, user: User, new_password: str) -> datetime:
        """Store a new hash, stamp password_changed_at and drop the refresh token."""
        changed_at = self._clock()
        self.users.set_password(user.id, tokens.hash_password(new_password), changed_at)
        return changed_at


def issued_before_password_change(payload: dict, user: User) -> bool:
    """True if a decoded token's iat predates the user's last password change."""
    if user.password_changed_at is None:
        return False
    return int(payload.get("iat", 0)) < int(user.password_changed_at.timestamp())
