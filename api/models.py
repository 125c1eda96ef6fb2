"""
API request and response models for authguard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/, devices/ and
audit/, which own the internal domain representation. Route handlers map
between the two.

JSON field names are camelCase (alias_generator=to_camel). This matters
beyond style: the audit redaction denylist (password, newPassword, mfaCode,
...) matches the wire names of request bodies exactly. populate_by_name lets
handlers construct models with the snake_case Python names.

Separation of concerns: domain dataclasses = domain truth; api/ models = API contract.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[A-Za-z0-9_.-]+$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
CODE_PATTERN = r"^[0-9]{6}$"

# Passwords are used verbatim; the str_strip_whitespace default does not apply.
_Secret = Annotated[str, StringConstraints(strip_whitespace=False)]

# bcrypt ignores input beyond 72 bytes; cap well below that.
_Password = Annotated[_Secret, Field(min_length=8, max_length=64)]


class _Request(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class _Response(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class AssignableRole(str, Enum):
    """Roles an admin may grant. superadmin is only created by bootstrap."""

    user = "user"
    admin = "admin"


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class RegisterRequest(_Request):
    username: str = Field(min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: _Password

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.lower()


class VerifyEmailRequest(_Request):
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    verification_code: str = Field(pattern=CODE_PATTERN)


class LoginRequest(_Request):
    email: str = Field(min_length=1, max_length=255)
    # No min_length here: a short wrong password must still count as a failure.
    password: _Secret = Field(min_length=1, max_length=128)


class VerifyMfaRequest(_Request):
    user_id: int = Field(gt=0)
    mfa_code: str = Field(pattern=CODE_PATTERN)


class RefreshRequest(_Request):
    refresh_token: str = Field(min_length=1, max_length=2048)


class PasswordResetRequest(_Request):
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)


class PasswordResetVerifyRequest(_Request):
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    reset_code: str = Field(pattern=CODE_PATTERN)
    new_password: _Password


class ChangePasswordRequest(_Request):
    current_password: _Secret = Field(min_length=1, max_length=128)
    new_password: _Password


class ToggleMfaRequest(_Request):
    """enabled=None flips the current setting."""

    enabled: Optional[bool] = None


class ProfileUpdateRequest(_Request):
    """Self-service profile edit. Omitted fields are left unchanged; "" clears avatar or bio."""

    username: Optional[str] = Field(default=None, min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    avatar: Optional[str] = Field(default=None, max_length=500)
    bio: Optional[str] = Field(default=None, max_length=200)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class UserResponse(_Response):
    id: int
    username: str
    email: str
    role: str
    is_verified: bool
    is_locked: bool
    lock_until: Optional[datetime] = None
    login_attempts: int = 0
    mfa_enabled: bool
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None
    avatar: str = ""
    bio: Optional[str] = None


class LoginResponse(_Response):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
    expires_in: int
    user: UserResponse
    device_id: Optional[int] = None


class MfaRequiredResponse(_Response):
    require_mfa: bool = True
    user_id: int
    message: str = "A verification code has been sent to your email."


class RefreshResponse(_Response):
    access_token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
    expires_in: int


class MessageResponse(_Response):
    message: str


# ---------------------------------------------------------------------------
# Admin user management
# ---------------------------------------------------------------------------


class UserCreateRequest(_Request):
    username: str = Field(min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: _Password
    role: AssignableRole = AssignableRole.user
    is_verified: bool = True


class UserPatchRequest(_Request):
    username: Optional[str] = Field(default=None, min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    role: Optional[AssignableRole] = None
    is_verified: Optional[bool] = None
    is_locked: Optional[bool] = None


class BatchUpdateFields(_Request):
    role: Optional[AssignableRole] = None
    is_verified: Optional[bool] = None
    is_locked: Optional[bool] = None


class BatchUpdateRequest(_Request):
    user_ids: list[int] = Field(min_length=1, max_length=100)
    updates: BatchUpdateFields


class BatchUpdateResponse(_Response):
    updated: int
    skipped_superadmins: int


class Pagination(_Response):
    total: int
    total_pages: int
    current_page: int
    limit: int


class UserListResponse(_Response):
    count: int
    pagination: Pagination
    users: list[UserResponse]


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


class DevicePatchRequest(_Request):
    device_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    is_trusted: Optional[bool] = None


class DeviceResponse(_Response):
    """ip_address is always masked (203.0.*.*)."""

    id: int
    device_name: str
    device_type: str
    browser: str
    operating_system: str
    ip_address: str
    is_active: bool
    is_trusted: bool
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class DeviceListResponse(_Response):
    count: int
    devices: list[DeviceResponse]


# ---------------------------------------------------------------------------
# Audit logs
# ---------------------------------------------------------------------------


class AuditEventResponse(_Response):
    id: int
    actor_user_id: str
    actor_username: str
    action: str
    target_id: Optional[str] = None
    target_username: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    ip_address: str
    user_agent: str = ""
    created_at: Optional[datetime] = None


class AuditListResponse(_Response):
    count: int
    pagination: Pagination
    logs: list[AuditEventResponse]


class AuditHistoryResponse(_Response):
    count: int
    logs: list[AuditEventResponse]


class ActionCount(_Response):
    action: str
    count: int


class ActivityStatsResponse(_Response):
    total_activities: int
    unique_users: int
    action_breakdown: list[ActionCount]


class AuditSummaryResponse(_Response):
    recent_activities: ActivityStatsResponse
    action_distribution: list[ActionCount]
    recent_logs: list[AuditEventResponse]


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
