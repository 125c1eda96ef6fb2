"""
audit/trail.py -- The audit log service: append, query, aggregate, export.

Write paths never raise to the caller. An audit write failing must not abort
the security operation that triggered it, so:
  append()  validates, redacts and writes synchronously; failures are logged
            and None is returned.
  submit()  validates and redacts on the caller's thread, then hands the
            event to the AuditDispatcher. With no dispatcher configured it
            falls back to append().

Events are stamped with created_at at submission time, so queued events keep
the time of the action rather than the time of the write.

Read paths (query, get, export, ...) propagate storage errors; the API layer
renders them.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from audit.dispatcher import AuditDispatcher
from audit.export import MAX_EXPORT_ROWS, events_to_csv
from audit.models import AuditAction, AuditEvent, AuditFilters, AuditPage, AuditSummary
from audit.redaction import redact
from audit.store import AuditStore
from core.clock import Clock, utcnow
from core.errors import NothingToExport, NotFound

logger = logging.getLogger("authguard.audit")

_SUMMARY_WINDOW = timedelta(hours=24)
_SUMMARY_RECENT = 10


class AuditTrail:
    """Usage:
    trail = AuditTrail(AuditStore(url), dispatcher)
    trail.record(AuditAction.LOGIN_FAILED, actor_user_id=7, actor_username="ada", ip_address="203.0.113.7")
    page = trail.query(AuditFilters(actor_user_id="7"), page=1, page_size=20)
    """

    def __init__(
        self,
        store: AuditStore,
        dispatcher: Optional[AuditDispatcher] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self._clock = clock

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(self, event: AuditEvent) -> Optional[int]:
        """Validate, redact and persist synchronously. Returns the event ID or None."""
        prepared = self._prepare(event)
        if prepared is None:
            return None
        try:
            return self.store.append(prepared)
        except Exception:
            logger.exception("Audit write failed for %s event (actor %s)", prepared.action, prepared.actor_user_id)
            return None

    def submit(self, event: AuditEvent) -> bool:
        """Hand an event off for asynchronous persistence. Returns False if it was rejected or dropped."""
        prepared = self._prepare(event)
        if prepared is None:
            return False
        if self.dispatcher is None or not self.dispatcher.running:
            try:
                self.store.append(prepared)
            except Exception:
                logger.exception("Audit write failed for %s event (actor %s)", prepared.action, prepared.actor_user_id)
                return False
            return True
        return self.dispatcher.submit(prepared)

    def record(
        self,
        action: AuditAction,
        *,
        actor_user_id,
        actor_username: str,
        ip_address: str,
        user_agent: str = "",
        target_id=None,
        target_username: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> bool:
        """Build an event from keyword arguments and submit() it."""
        return self.submit(
            AuditEvent(
                actor_user_id=str(actor_user_id) if actor_user_id is not None else "",
                actor_username=actor_username,
                action=action,
                ip_address=ip_address,
                user_agent=user_agent or "",
                target_id=str(target_id) if target_id is not None else None,
                target_username=target_username,
                details=details or {},
            )
        )

    def _prepare(self, event: AuditEvent) -> Optional[AuditEvent]:
        missing = [
            name
            for name, value in (
                ("actor_user_id", event.actor_user_id),
                ("actor_username", event.actor_username),
                ("action", event.action),
                ("ip_address", event.ip_address),
            )
            if not value
        ]
        if missing:
            logger.error("Rejected audit event missing %s", ", ".join(missing))
            return None
        try:
            action = AuditAction(event.action)
        except ValueError:
            logger.error("Rejected audit event with unknown action %r", event.action)
            return None
        return AuditEvent(
            actor_user_id=str(event.actor_user_id),
            actor_username=event.actor_username,
            action=action,
            ip_address=event.ip_address,
            user_agent=event.user_agent or "",
            target_id=str(event.target_id) if event.target_id is not None else None,
            target_username=event.target_username,
            details=redact(event.details or {}),
            created_at=event.created_at or self._clock(),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def query(self, filters: AuditFilters, page: int = 1, page_size: int = 20) -> AuditPage:
        page = max(1, page)
        page_size = max(1, page_size)
        events, total = self.store.query(filters, offset=(page - 1) * page_size, limit=page_size)
        return AuditPage(events=events, total=total, page=page, page_size=page_size)

    def get(self, event_id: int) -> AuditEvent:
        event = self.store.get(event_id)
        if event is None:
            raise NotFound("Audit log not found.")
        return event

    def user_history(self, user_id, limit: int = 20) -> list[AuditEvent]:
        return self.store.user_history(str(user_id), limit=max(1, limit))

    def activity_since(self, since: datetime):
        return self.store.activity_since(since)

    def action_distribution(self) -> list[tuple[str, int]]:
        return self.store.action_distribution()

    def summary(self, now: Optional[datetime] = None) -> AuditSummary:
        """Last-24h activity, all-time action distribution and the 10 newest events."""
        now = now or self._clock()
        events, _ = self.store.query(AuditFilters(), offset=0, limit=_SUMMARY_RECENT)
        return AuditSummary(
            recent_activity=self.store.activity_since(now - _SUMMARY_WINDOW),
            action_distribution=self.store.action_distribution(),
            recent_events=events,
        )

    def export(self, filters: AuditFilters) -> bytes:
        """CSV of up to MAX_EXPORT_ROWS matching events. Raises NothingToExport when empty."""
        events, _ = self.store.query(filters, offset=0, limit=MAX_EXPORT_ROWS)
        if not events:
            raise NothingToExport()
        return events_to_csv(events)
