"""
devices/models.py -- Domain dataclasses for device tracking.

Pure data containers with zero logic. Parsing and fingerprinting live in
devices/fingerprint.py; scoring lives in devices/tracker.py.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

DEVICE_TYPES = ("mobile", "tablet", "desktop", "other")


@dataclass
class DeviceRecord:
    """One (user, fingerprint) pair the user has logged in from.

    ip_address is stored raw for scoring and masked only when presented.
    Removal sets is_active=False; rows are never deleted so scoring keeps
    the full history.

    id is None before the record is written to the database.
    """

    user_id: int
    fingerprint: str
    ip_address: str
    device_type: str = "desktop"  # "mobile" | "tablet" | "desktop" | "other"
    device_name: str = "Unknown device"
    browser: str = "Unknown browser"
    operating_system: str = "Unknown OS"
    is_active: bool = True
    is_trusted: bool = False
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class ParsedUserAgent:
    device_type: str
    device_name: str
    browser: str
    operating_system: str


@dataclass(frozen=True)
class SuspicionVerdict:
    """Result of scoring a login against the user's recent devices.

    error is set when scoring failed; the verdict is then all-False with
    score 0 (fail open).
    """

    is_new_device: bool = False
    is_unusual_ip: bool = False
    is_unusual_browser: bool = False
    score: int = 0
    is_suspicious: bool = False
    error: Optional[str] = None

    def as_dict(self) -> dict:
        data = {
            "isNewDevice": self.is_new_device,
            "isUnusualIP": self.is_unusual_ip,
            "isUnusualBrowser": self.is_unusual_browser,
            "score": self.score,
            "isSuspicious": self.is_suspicious,
        }
        if self.error:
            data["error"] = self.error
        return data
