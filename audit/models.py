"""
audit/models.py -- Domain dataclasses and the action vocabulary for audit events.

Pure data containers. Actor and target identifiers are denormalized strings
with no foreign key: an event must stay readable after the user it names has
been deleted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class AuditAction(str, Enum):
    """Closed action vocabulary. Values are persisted and exported verbatim."""

    USER_CREATE = "USER_CREATE"
    USER_UPDATE = "USER_UPDATE"
    USER_DELETE = "USER_DELETE"
    USER_BATCH_UPDATE = "USER_BATCH_UPDATE"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    PASSWORD_RESET = "PASSWORD_RESET"
    MFA_ENABLE = "MFA_ENABLE"
    MFA_DISABLE = "MFA_DISABLE"
    ACCOUNT_LOCK = "ACCOUNT_LOCK"
    ACCOUNT_UNLOCK = "ACCOUNT_UNLOCK"
    DEVICE_TRUST = "DEVICE_TRUST"
    DEVICE_UPDATE = "DEVICE_UPDATE"
    DEVICE_REMOVE = "DEVICE_REMOVE"


@dataclass
class AuditEvent:
    """One security-relevant action.

    Required: actor_user_id, actor_username, action, ip_address.
    details is a free-form map; it is redacted before it is persisted.
    created_at and id are set by the store on insert.
    """

    actor_user_id: str
    actor_username: str
    action: AuditAction
    ip_address: str
    user_agent: str = ""
    target_id: Optional[str] = None
    target_username: Optional[str] = None
    details: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class AuditFilters:
    """Conjunctive filters shared by query and export. None means "any".

    from_date and to_date are inclusive bounds on created_at.
    """

    actor_user_id: Optional[str] = None
    action: Optional[AuditAction] = None
    target_id: Optional[str] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None


@dataclass
class AuditPage:
    events: list[AuditEvent]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return -(-self.total // self.page_size)


@dataclass
class ActivityStats:
    total_count: int
    unique_actor_count: int
    counts_by_action: list[tuple[str, int]]  # (action, count), descending by count


@dataclass
class AuditSummary:
    recent_activity: ActivityStats
    action_distribution: list[tuple[str, int]]
    recent_events: list[AuditEvent]
