"""
audit/store.py -- SQLAlchemy Core persistence for audit events.

Pattern: Repository + Data Mapper. AuditStore is the repository;
_row_to_event is the mapper.

The table is append-only from the application's point of view: this module
exposes no update or delete. Ordering is always created_at DESC, id DESC so
events written in the same microsecond still come back in a stable order,
which keeps exports byte-identical across repeated calls.

Security: all queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, distinct, func, or_, select
from sqlalchemy.engine import Engine

from audit.models import ActivityStats, AuditAction, AuditEvent, AuditFilters
from core.clock import Clock, from_iso, to_iso, utcnow
from core.db import make_engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actor_user_id", String(64), nullable=False),
    Column("actor_username", String(255), nullable=False),
    Column("action", String(32), nullable=False),
    Column("target_id", String(64)),
    Column("target_username", String(255)),
    Column("details", Text),  # JSON object, already redacted
    Column("ip_address", String(45), nullable=False),
    Column("user_agent", Text),
    Column("created_at", String(40), nullable=False),
    Index("ix_audit_logs_actor", "actor_user_id"),
    Index("ix_audit_logs_action", "action"),
    Index("ix_audit_logs_target", "target_id"),
    Index("ix_audit_logs_created_at", "created_at"),
)

_NEWEST_FIRST = (_audit_logs.c.created_at.desc(), _audit_logs.c.id.desc())


class AuditStore:
    """Repository for AuditEvent entities.

    Usage:
        store = AuditStore("sqlite:///authguard.db")
        event_id = store.append(event)
        events, total = store.query(AuditFilters(action=AuditAction.LOGIN_FAILED), offset=0, limit=20)
        store.close()
    """

    def __init__(self, db_url: str, clock: Clock = utcnow) -> None:
        self.engine: Engine = make_engine(db_url)
        self._clock = clock
        _metadata.create_all(self.engine)

    def append(self, event: AuditEvent) -> int:
        """Insert one event and return its ID. Sets created_at when unset."""
        created_at = event.created_at or self._clock()
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_logs.insert().values(
                    actor_user_id=str(event.actor_user_id),
                    actor_username=event.actor_username,
                    action=AuditAction(event.action).value,
                    target_id=str(event.target_id) if event.target_id is not None else None,
                    target_username=event.target_username,
                    details=json.dumps(event.details or {}, default=str),
                    ip_address=event.ip_address,
                    user_agent=event.user_agent or "",
                    created_at=to_iso(created_at),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, event_id: int) -> Optional[AuditEvent]:
        with self.engine.connect() as conn:
            row = conn.execute(_audit_logs.select().where(_audit_logs.c.id == event_id)).fetchone()
        return _row_to_event(row) if row is not None else None

    def query(self, filters: AuditFilters, *, offset: int = 0, limit: int = 20) -> tuple[list[AuditEvent], int]:
        """Return one page of matching events (newest first) and the total match count."""
        conditions = _filter_conditions(filters)
        stmt = _audit_logs.select().where(*conditions).order_by(*_NEWEST_FIRST).offset(offset).limit(limit)
        count_stmt = select(func.count()).select_from(_audit_logs).where(*conditions)
        with self.engine.connect() as conn:
            total = conn.execute(count_stmt).scalar() or 0
            rows = conn.execute(stmt).fetchall()
        return [_row_to_event(r) for r in rows], total

    def user_history(self, user_id: str, limit: int = 20) -> list[AuditEvent]:
        """Events where the user is either the actor or the target, newest first."""
        uid = str(user_id)
        stmt = (
            _audit_logs.select()
            .where(or_(_audit_logs.c.actor_user_id == uid, _audit_logs.c.target_id == uid))
            .order_by(*_NEWEST_FIRST)
            .limit(limit)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_event(r) for r in rows]

    def activity_since(self, since: datetime) -> ActivityStats:
        cutoff = _audit_logs.c.created_at >= to_iso(since)
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_audit_logs).where(cutoff)).scalar() or 0
            actors = (
                conn.execute(select(func.count(distinct(_audit_logs.c.actor_user_id))).where(cutoff)).scalar() or 0
            )
            rows = conn.execute(_count_by_action().where(cutoff)).fetchall()
        return ActivityStats(
            total_count=total,
            unique_actor_count=actors,
            counts_by_action=[(r.action, r.count) for r in rows],
        )

    def action_distribution(self) -> list[tuple[str, int]]:
        """All-time (action, count) pairs, descending by count."""
        with self.engine.connect() as conn:
            rows = conn.execute(_count_by_action()).fetchall()
        return [(r.action, r.count) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Helpers and row mapper
# ---------------------------------------------------------------------------


def _count_by_action():
    count = func.count().label("count")
    return (
        select(_audit_logs.c.action, count)
        .group_by(_audit_logs.c.action)
        .order_by(count.desc(), _audit_logs.c.action)
    )


def _filter_conditions(filters: AuditFilters) -> list:
    conditions = []
    if filters.actor_user_id is not None:
        conditions.append(_audit_logs.c.actor_user_id == str(filters.actor_user_id))
    if filters.action is not None:
        conditions.append(_audit_logs.c.action == AuditAction(filters.action).value)
    if filters.target_id is not None:
        conditions.append(_audit_logs.c.target_id == str(filters.target_id))
    if filters.from_date is not None:
        conditions.append(_audit_logs.c.created_at >= to_iso(filters.from_date))
    if filters.to_date is not None:
        conditions.append(_audit_logs.c.created_at <= to_iso(filters.to_date))
    return conditions


def _row_to_event(row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        actor_user_id=row.actor_user_id,
        actor_username=row.actor_username,
        action=AuditAction(row.action),
        target_id=row.target_id,
        target_username=row.target_username,
        details=json.loads(row.details) if row.details else {},
        ip_address=row.ip_address,
        user_agent=row.user_agent or "",
        created_at=from_iso(row.created_at),
    )
