"""Unit tests for devices/ -- fingerprinting, user-agent parsing, scoring, management.

Covers:
- compute_fingerprint() is deterministic and sensitive to every input
- parse_user_agent() device types and labels, fail-open on garbage
- mask_ip() for IPv4 and IPv6
- DeviceTracker.record_login() upserts on (user, fingerprint)
- score_suspicion() weights, window size and fail-open behavior
- owner-scoped management: list/get/update/deactivate
"""

import pytest

from core.errors import NotFound
from devices.fingerprint import compute_fingerprint, mask_ip, parse_user_agent
from tests.helpers import CHROME_UA, FIREFOX_UA, IPHONE_UA

IP = "203.0.113.7"
OTHER_IP = "198.51.100.20"


class TestFingerprint:
    def test_deterministic(self) -> None:
        assert compute_fingerprint(1, CHROME_UA, IP) == compute_fingerprint(1, CHROME_UA, IP)

    def test_every_input_matters(self) -> None:
        base = compute_fingerprint(1, CHROME_UA, IP)
        assert compute_fingerprint(2, CHROME_UA, IP) != base
        assert compute_fingerprint(1, FIREFOX_UA, IP) != base
        assert compute_fingerprint(1, CHROME_UA, OTHER_IP) != base

    def test_is_hex_sha256(self) -> None:
        fp = compute_fingerprint(1, CHROME_UA, IP)
        assert len(fp) == 64
        int(fp, 16)


class TestParseUserAgent:
    def test_desktop_chrome(self) -> None:
        parsed = parse_user_agent(CHROME_UA)
        assert parsed.device_type == "desktop"
        assert parsed.browser == "Chrome 120"
        assert parsed.operating_system.startswith("Windows")

    def test_iphone_is_mobile(self) -> None:
        parsed = parse_user_agent(IPHONE_UA)
        assert parsed.device_type == "mobile"
        assert parsed.operating_system.startswith("iOS")

    def test_empty_defaults_to_desktop(self) -> None:
        parsed = parse_user_agent("")
        assert parsed.device_type == "desktop"
        assert parsed.browser == "Unknown browser"
        assert parsed.operating_system == "Unknown OS"

    def test_garbage_does_not_raise(self) -> None:
        parsed = parse_user_agent("\x00\x01 not a browser ;;;")
        assert parsed.device_type in ("mobile", "tablet", "desktop", "other")


class TestMaskIp:
    @pytest.mark.parametrize(
        "raw, masked",
        [
            ("203.0.113.7", "203.0.*.*"),
            ("10.1.2.3", "10.1.*.*"),
            ("2001:db8:85a3::8a2e:370:7334", "2001:db8:*:*"),
            ("", ""),
            ("testclient", "*"),
        ],
    )
    def test_mask(self, raw: str, masked: str) -> None:
        assert mask_ip(raw) == masked


class TestRecordLogin:
    def test_repeat_login_coalesces(self, tracker) -> None:
        first = tracker.record_login(1, CHROME_UA, IP)
        second = tracker.record_login(1, CHROME_UA, IP)
        assert first.id == second.id
        assert len(tracker.list_devices(1)) == 1

    def test_new_user_agent_is_new_device(self, tracker) -> None:
        tracker.record_login(1, CHROME_UA, IP)
        tracker.record_login(1, FIREFOX_UA, IP)
        assert len(tracker.list_devices(1)) == 2

    def test_record_reactivates_removed_device(self, tracker) -> None:
        device = tracker.record_login(1, CHROME_UA, IP)
        tracker.deactivate(1, device.id)
        again = tracker.record_login(1, CHROME_UA, IP)
        assert again.id == device.id
        assert again.is_active is True

    def test_labels_come_from_user_agent(self, tracker) -> None:
        device = tracker.record_login(1, IPHONE_UA, IP)
        assert device.device_type == "mobile"
        assert device.ip_address == IP
        assert device.is_trusted is False
        assert device.last_used_at is not None


class TestScoreSuspicion:
    def test_first_login_scores_every_novelty_signal(self, tracker) -> None:
        verdict = tracker.score_suspicion(1, IP, CHROME_UA)
        assert verdict.is_new_device and verdict.is_unusual_ip and verdict.is_unusual_browser
        assert verdict.score == 90
        assert verdict.is_suspicious is True

    def test_known_trusted_device_scores_zero(self, tracker) -> None:
        device = tracker.record_login(1, CHROME_UA, IP)
        tracker.set_trust(1, device.id, True)
        verdict = tracker.score_suspicion(1, IP, CHROME_UA)
        assert verdict.score == 0
        assert verdict.is_suspicious is False

    def test_known_untrusted_device_scores_ten(self, tracker) -> None:
        tracker.record_login(1, CHROME_UA, IP)
        verdict = tracker.score_suspicion(1, IP, CHROME_UA)
        assert verdict.score == 10
        assert verdict.is_new_device is False

    def test_new_device_scores_at_least_forty(self, tracker) -> None:
        device = tracker.record_login(1, CHROME_UA, IP)
        tracker.set_trust(1, device.id, True)
        verdict = tracker.score_suspicion(1, OTHER_IP, CHROME_UA)
        assert verdict.is_new_device is True
        assert verdict.is_unusual_ip is True
        assert verdict.is_unusual_browser is False
        assert verdict.score == 70
        assert verdict.is_suspicious is True

    def test_threshold_is_exclusive(self, tracker) -> None:
        tracker.record_login(1, CHROME_UA, IP)
        # New fingerprint on a known IP with the same browser label, no trusted
        # device: 40 + 10 = 50, which is not above the threshold.
        verdict = tracker.score_suspicion(1, IP, CHROME_UA + " extra")
        assert verdict.is_new_device is True
        assert verdict.is_unusual_browser is False
        assert verdict.score == 50
        assert verdict.is_suspicious is False

    def test_new_browser_version_counts_as_unusual(self, tracker) -> None:
        device = tracker.record_login(1, CHROME_UA, IP)
        tracker.set_trust(1, device.id, True)
        verdict = tracker.score_suspicion(1, IP, CHROME_UA.replace("Chrome/120", "Chrome/121"))
        assert verdict.score == 60
        assert verdict.is_suspicious is True

    def test_only_recent_window_counts(self, tracker, clock) -> None:
        tracker.record_login(1, CHROME_UA, IP)
        for n in range(5):
            clock.advance(minutes=1)
            tracker.record_login(1, FIREFOX_UA, f"198.51.100.{n}")
        verdict = tracker.score_suspicion(1, IP, CHROME_UA)
        # The Chrome device fell out of the five most recent records.
        assert verdict.is_new_device is True
        assert verdict.is_unusual_ip is True

    def test_fails_open(self, tracker, monkeypatch) -> None:
        def boom(*args, **kwargs):
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(tracker.store, "recent", boom)
        verdict = tracker.score_suspicion(1, IP, CHROME_UA)
        assert verdict.is_suspicious is False
        assert verdict.score == 0
        assert verdict.error == "store unavailable"
        assert verdict.as_dict()["error"] == "store unavailable"


class TestManagement:
    def test_scoped_to_owner(self, tracker) -> None:
        device = tracker.record_login(1, CHROME_UA, IP)
        with pytest.raises(NotFound):
            tracker.get_device(2, device.id)
        with pytest.raises(NotFound):
            tracker.set_trust(2, device.id, True)
        with pytest.raises(NotFound):
            tracker.deactivate(2, device.id)
        assert tracker.list_devices(2) == []

    def test_rename_and_trust(self, tracker) -> None:
        device = tracker.record_login(1, CHROME_UA, IP)
        updated = tracker.update_device(1, device.id, device_name="Work laptop", is_trusted=True)
        assert updated.device_name == "Work laptop"
        assert updated.is_trusted is True
        assert tracker.set_trust(1, device.id, True).is_trusted is True

    def test_deactivate_is_idempotent_and_keeps_row(self, tracker) -> None:
        device = tracker.record_login(1, CHROME_UA, IP)
        assert tracker.deactivate(1, device.id).is_active is False
        assert tracker.deactivate(1, device.id).is_active is False
        assert len(tracker.list_devices(1)) == 1
        assert tracker.store.list_for_user(1, active_only=True) == []
