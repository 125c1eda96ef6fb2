"""
tests/helpers.py -- Test doubles and constants shared by the test modules.

Kept out of conftest.py so test modules can import them directly.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from notify.sender import NotificationResult, TemplateKind

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
FIREFOX_UA = "Mozilla/5.0 (X11; Ubuntu; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"
IPHONE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_1 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.1 Mobile/15E148 Safari/604.1"
)

PASSWORD = "correct-horse-1"
# Six Arabic-Indic digits: str.isdigit() and regex \d accept them.
ARABIC_INDIC_CODE = "\u0661\u0662\u0663\u0664\u0665\u0666"


class FakeClock:
    """Callable clock. Starts at the real current time so JWT exp checks,
    which python-jose makes against the wall clock, still pass."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingSender:
    """NotificationSender that keeps every message. Kinds in fail_kinds report failure."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, TemplateKind, dict]] = []
        self.fail_kinds: set[TemplateKind] = set()

    def send(self, to_address: str, kind: TemplateKind, params: dict) -> NotificationResult:
        kind = TemplateKind(kind)
        self.sent.append((to_address, kind, dict(params)))
        if kind in self.fail_kinds:
            return NotificationResult(success=False, error="smtp unavailable")
        return NotificationResult(success=True, message_id="<test@authguard>")

    def of_kind(self, kind: TemplateKind) -> list[tuple[str, TemplateKind, dict]]:
        return [m for m in self.sent if m[1] is kind]

    def last_code(self, kind: TemplateKind) -> str:
        return self.of_kind(kind)[-1][2]["code"]
