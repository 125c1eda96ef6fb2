"""
devices/tracker.py -- Device history and suspicious-login scoring.

DeviceTracker is what the auth engine talks to. It turns (user, user agent,
IP) into a fingerprinted DeviceRecord and scores a login against the user's
recent history.

Scoring (against the `suspicion_window` most recently used records, active
or not):
  +40  fingerprint not in the window           (is_new_device)
  +30  IP address not in the window            (is_unusual_ip)
  +20  browser label not in the window         (is_unusual_browser)
  +10  at least one prior record, none trusted
  suspicious when score > suspicion_threshold (default 50)

The score is a heuristic that gates notifications. It never blocks a login:
any internal error fails open with is_suspicious=False and the error text on
the verdict for the caller to log.

Management operations (get/update/deactivate) are scoped to the owning user;
a device id belonging to someone else is reported as NotFound.
"""

from __future__ import annotations

import logging
from typing import Optional

from core.config import Settings, get_settings
from core.errors import NotFound
from devices.fingerprint import compute_fingerprint, parse_user_agent
from devices.models import DeviceRecord, SuspicionVerdict
from devices.store import DeviceStore

logger = logging.getLogger("authguard.devices")

_NEW_DEVICE_WEIGHT = 40
_UNUSUAL_IP_WEIGHT = 30
_UNUSUAL_BROWSER_WEIGHT = 20
_NO_TRUSTED_DEVICE_WEIGHT = 10


class DeviceTracker:
    def __init__(self, store: DeviceStore, settings: Optional[Settings] = None) -> None:
        self.store = store
        self.settings = settings or get_settings()

    @staticmethod
    def fingerprint(user_id: int, user_agent: str, ip_address: str) -> str:
        return compute_fingerprint(user_id, user_agent, ip_address)

    def record_login(self, user_id: int, user_agent: str, ip_address: str) -> DeviceRecord:
        """Upsert the device for this login and mark it active and recently used."""
        parsed = parse_user_agent(user_agent)
        record = DeviceRecord(
            user_id=user_id,
            fingerprint=self.fingerprint(user_id, user_agent, ip_address),
            ip_address=ip_address,
            device_type=parsed.device_type,
            device_name=parsed.device_name,
            browser=parsed.browser,
            operating_system=parsed.operating_system,
        )
        return self.store.upsert(record)

    def score_suspicion(self, user_id: int, ip_address: str, user_agent: str) -> SuspicionVerdict:
        """Score a login against recent history. Never raises."""
        try:
            recent = self.store.recent(user_id, self.settings.suspicion_window)
            fingerprint = self.fingerprint(user_id, user_agent, ip_address)
            browser = parse_user_agent(user_agent).browser

            is_new_device = not any(d.fingerprint == fingerprint for d in recent)
            is_unusual_ip = not any(d.ip_address == ip_address for d in recent)
            is_unusual_browser = not any(d.browser == browser for d in recent)

            score = 0
            if is_new_device:
                score += _NEW_DEVICE_WEIGHT
            if is_unusual_ip:
                score += _UNUSUAL_IP_WEIGHT
            if is_unusual_browser:
                score += _UNUSUAL_BROWSER_WEIGHT
            if recent and not any(d.is_trusted for d in recent):
                score += _NO_TRUSTED_DEVICE_WEIGHT

            return SuspicionVerdict(
                is_new_device=is_new_device,
                is_unusual_ip=is_unusual_ip,
                is_unusual_browser=is_unusual_browser,
                score=score,
                is_suspicious=score > self.settings.suspicion_threshold,
            )
        except Exception as exc:
            logger.exception("Suspicion scoring failed for user %s", user_id)
            return SuspicionVerdict(error=str(exc) or exc.__class__.__name__)

    # ------------------------------------------------------------------
    # Management (owner-scoped)
    # ------------------------------------------------------------------

    def list_devices(self, user_id: int) -> list[DeviceRecord]:
        return self.store.list_for_user(user_id)

    def get_device(self, user_id: int, device_id: int) -> DeviceRecord:
        device = self.store.get(user_id, device_id)
        if device is None:
            raise NotFound("Device not found.")
        return device

    def update_device(
        self,
        user_id: int,
        device_id: int,
        *,
        device_name: Optional[str] = None,
        is_trusted: Optional[bool] = None,
    ) -> DeviceRecord:
        device = self.store.update(user_id, device_id, device_name=device_name, is_trusted=is_trusted)
        if device is None:
            raise NotFound("Device not found.")
        return device

    def set_trust(self, user_id: int, device_id: int, trusted: bool) -> DeviceRecord:
        return self.update_device(user_id, device_id, is_trusted=trusted)

    def deactivate(self, user_id: int, device_id: int) -> DeviceRecord:
        """Mark a device inactive. Deactivating an inactive device is a no-op."""
        if not self.store.deactivate(user_id, device_id):
            raise NotFound("Device not found.")
        return self.get_device(user_id, device_id)
