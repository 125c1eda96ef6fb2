"""
audit/export.py -- CSV rendering for audit log exports.

Format: fixed unquoted header row, every data field double-quoted
(csv.QUOTE_ALL), LF row terminator, UTF-8 bytes. Missing optional fields
render as "".
Output depends only on the event list, so identical input gives
byte-identical output.

Cells that a spreadsheet would read as a formula (leading =, +, -, @) are
prefixed with a tab (CWE-1236). User agents and usernames are
client-controlled, so every cell goes through _sanitize_csv_cell().
"""

from __future__ import annotations

import csv
import io

from audit.models import AuditEvent
from core.clock import to_iso

MAX_EXPORT_ROWS = 1000

CSV_HEADER = [
    "Timestamp",
    "ActorUserId",
    "ActorUsername",
    "Action",
    "TargetId",
    "TargetUsername",
    "IpAddress",
    "UserAgent",
]

_FORMULA_PREFIXES = ("=", "+", "-", "@")


def _sanitize_csv_cell(value) -> str:
    text = "" if value is None else str(value)
    if text.startswith(_FORMULA_PREFIXES):
        return "\t" + text
    return text


def events_to_csv(events: list[AuditEvent]) -> bytes:
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    buf.write(",".join(CSV_HEADER) + "\n")
    for e in events:
        writer.writerow(
            [
                _sanitize_csv_cell(to_iso(e.created_at) if e.created_at else ""),
                _sanitize_csv_cell(e.actor_user_id),
                _sanitize_csv_cell(e.actor_username),
                _sanitize_csv_cell(e.action.value if hasattr(e.action, "value") else e.action),
                _sanitize_csv_cell(e.target_id),
                _sanitize_csv_cell(e.target_username),
                _sanitize_csv_cell(e.ip_address),
                _sanitize_csv_cell(e.user_agent),
            ]
        )
    return buf.getvalue().encode("utf-8")
