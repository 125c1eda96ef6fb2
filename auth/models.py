"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Mirrors the approach
in devices/models.py and audit/models.py -- dataclasses own domain shape;
stores and services do the work.

PendingChallenge is an explicit sum type instead of a bag of optional
code/expiry fields on the user. Exactly one challenge can be outstanding at a
time; issuing a new one replaces the old one. None means "nothing pending".

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union


class Role(str, Enum):
    user = "user"
    admin = "admin"
    superadmin = "superadmin"


ADMIN_ROLES = frozenset({Role.admin, Role.superadmin})


@dataclass(frozen=True)
class MfaPending:
    """A login is parked waiting for an out-of-band MFA code.

    device_id and suspicion capture the device verdict computed when the
    password check succeeded, so the LOGIN_SUCCESS event written after MFA
    describes the device that actually presented the password.
    """

    code: str
    expires_at: datetime
    device_id: Optional[int] = None
    suspicion: Optional[dict] = None


@dataclass(frozen=True)
class ResetPending:
    code: str
    expires_at: datetime


@dataclass(frozen=True)
class VerificationPending:
    code: str
    expires_at: datetime


PendingChallenge = Union[MfaPending, ResetPending, VerificationPending, None]


@dataclass
class User:
    """Represents a registered identity.

    hashed_password is a bcrypt hash and never leaves the auth package.
    refresh_token holds the single live refresh token; a new login overwrites
    it, which invalidates refresh for every earlier session.
    password_changed_at invalidates every access token issued before it.
    """

    username: str
    email: str
    hashed_password: str
    role: Role = Role.user
    id: Optional[int] = None
    is_verified: bool = False
    login_attempts: int = 0
    is_locked: bool = False
    lock_until: Optional[datetime] = None
    mfa_enabled: bool = False
    challenge: PendingChallenge = None
    refresh_token: Optional[str] = None
    password_changed_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None
    avatar: str = ""
    bio: Optional[str] = None


@dataclass(frozen=True)
class RequestContext:
    """Where a request came from. Carried into device tracking and audit events."""

    ip_address: str
    user_agent: str = ""


@dataclass(frozen=True)
class CredentialCheck:
    """Result of a password check. user is None when the email is unknown."""

    user: Optional[User]
    matched: bool


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
    expires_in: int = 0


class LoginState(str, Enum):
    CREDENTIALS_PENDING = "CREDENTIALS_PENDING"
    REJECTED = "REJECTED"
    LOCKED = "LOCKED"
    MFA_REQUIRED = "MFA_REQUIRED"
    MFA_EXPIRED = "MFA_EXPIRED"
    MFA_MISMATCH = "MFA_MISMATCH"
    AUTHENTICATED = "AUTHENTICATED"


@dataclass
class LoginOutcome:
    """Non-error result of a login or MFA step.

    state is MFA_REQUIRED (no tokens, user_id set) or AUTHENTICATED (tokens
    set). Every other terminal state is raised as an exception from
    core.errors so it cannot be mistaken for success.
    """

    state: LoginState
    user_id: int
    user: Optional[User] = None
    tokens: Optional[TokenPair] = None
    device_id: Optional[int] = None
    suspicion: dict = field(default_factory=dict)
