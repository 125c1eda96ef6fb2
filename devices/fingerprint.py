"""
devices/fingerprint.py -- User-agent parsing, device fingerprints, IP masking.

parse_user_agent() uses the user-agents library and fails open: an empty or
unparseable string yields the "unknown" labels with device_type "desktop"
rather than an exception, because device tracking must never block a login.
"""

from __future__ import annotations

import hashlib
import logging

from user_agents import parse as _parse_ua

from devices.models import ParsedUserAgent

logger = logging.getLogger("authguard.devices")

UNKNOWN_DEVICE = "Unknown device"
UNKNOWN_BROWSER = "Unknown browser"
UNKNOWN_OS = "Unknown OS"


def compute_fingerprint(user_id: int, user_agent: str, ip_address: str) -> str:
    """Deterministic one-way hash of (user id, user agent, IP address)."""
    data = f"{user_id}|{user_agent or ''}|{ip_address or ''}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def parse_user_agent(user_agent: str) -> ParsedUserAgent:
    """Derive device type and display labels from a raw User-Agent header.

    device_type is one of mobile, tablet, desktop, other. Bots map to
    "other"; anything ambiguous defaults to "desktop".
    Browser labels carry only the major version ("Chrome 120") so minor
    browser updates do not look like a new browser to the scorer.
    """
    if not user_agent:
        return ParsedUserAgent("desktop", UNKNOWN_DEVICE, UNKNOWN_BROWSER, UNKNOWN_OS)
    try:
        ua = _parse_ua(user_agent)
    except Exception as exc:
        logger.warning("Could not parse user agent %r: %s", user_agent[:100], exc)
        return ParsedUserAgent("desktop", UNKNOWN_DEVICE, UNKNOWN_BROWSER, UNKNOWN_OS)

    return ParsedUserAgent(
        device_type=_device_type(ua),
        device_name=_device_name(ua),
        browser=_browser_label(ua),
        operating_system=_os_label(ua),
    )


def _device_type(ua) -> str:
    if ua.is_mobile:
        return "mobile"
    if ua.is_tablet:
        return "tablet"
    if ua.is_pc:
        return "desktop"
    if ua.is_bot:
        return "other"
    return "desktop"


def _device_name(ua) -> str:
    brand = ua.device.brand
    if brand and brand != "Other":
        return f"{brand} {ua.device.model}" if ua.device.model else brand
    if ua.os.family and ua.os.family != "Other":
        return ua.os.family
    return UNKNOWN_DEVICE


def _browser_label(ua) -> str:
    family = ua.browser.family
    if not family or family == "Other":
        return UNKNOWN_BROWSER
    if ua.browser.version:
        return f"{family} {ua.browser.version[0]}"
    return family


def _os_label(ua) -> str:
    family = ua.os.family
    if not family or family == "Other":
        return UNKNOWN_OS
    if ua.os.version_string:
        return f"{family} {ua.os.version_string}"
    return family


def mask_ip(ip_address: str) -> str:
    """Hide the host part of an address for display: 203.0.113.7 -> 203.0.*.*"""
    if not ip_address:
        return ""
    if "." in ip_address:
        parts = ip_address.split(".")
        return ".".join(parts[:2]) + ".*.*"
    if ":" in ip_address:
        groups = ip_address.split(":")
        return ":".join(groups[:2]) + ":*:*"
    return "*"
