"""
audit/redaction.py -- Denylist redaction for audit event details.

redact() is a pure function: it returns a new structure and never mutates
its input. Keys are matched exactly ("password" is redacted, "passwordHint"
is not). Dicts are walked at any depth, including dicts nested inside lists.
"""

from __future__ import annotations

from typing import Any

REDACTED = "[REDACTED]"

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "newPassword",
        "currentPassword",
        "token",
        "refreshToken",
        "verificationCode",
        "resetCode",
        "mfaCode",
        "secret",
    }
)


def redact(value: Any) -> Any:
    """Return a copy of value with every denylisted key's value replaced by REDACTED."""
    if isinstance(value, dict):
        return {key: REDACTED if key in SENSITIVE_KEYS else redact(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value
