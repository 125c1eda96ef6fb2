"""
api/routes/v1/audit.py -- Read-only audit log endpoints.

Routes (admin or superadmin only):
  GET /api/v1/audit-logs                 -- filtered, paginated, newest first
  GET /api/v1/audit-logs/summary         -- last 24h activity, action distribution, 10 newest
  GET /api/v1/audit-logs/export          -- CSV attachment (max 1000 rows, same filters)
  GET /api/v1/audit-logs/user/{user_id}  -- events where the user is actor or target
  GET /api/v1/audit-logs/{event_id}      -- one event

Filters (query string, all optional, combined with AND):
  actorUserId, action, targetId, fromDate, toDate (inclusive ISO-8601 bounds)

The fixed paths (/summary, /export, /user/...) are registered before
/{event_id} so they are not captured by it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from api.models import (
    ActionCount,
    ActivityStatsResponse,
    AuditEventResponse,
    AuditHistoryResponse,
    AuditListResponse,
    AuditSummaryResponse,
    Pagination,
)
from audit.models import AuditAction, AuditEvent, AuditFilters
from audit.trail import AuditTrail
from auth.dependencies import require_admin
from core.clock import to_iso
from core.errors import ValidationError

router = APIRouter(dependencies=[Depends(require_admin)])


def _event_to_response(event: AuditEvent) -> AuditEventResponse:
    return AuditEventResponse(
        id=event.id,
        actor_user_id=event.actor_user_id,
        actor_username=event.actor_username,
        action=AuditAction(event.action).value,
        target_id=event.target_id,
        target_username=event.target_username,
        details=event.details,
        ip_address=event.ip_address,
        user_agent=event.user_agent,
        created_at=event.created_at,
    )


def _counts(pairs: list[tuple[str, int]]) -> list[ActionCount]:
    return [ActionCount(action=action, count=count) for action, count in pairs]


def audit_filters(
    actor_user_id: Optional[str] = Query(default=None, alias="actorUserId", max_length=64),
    action: Optional[AuditAction] = Query(default=None),
    target_id: Optional[str] = Query(default=None, alias="targetId", max_length=64),
    from_date: Optional[datetime] = Query(default=None, alias="fromDate"),
    to_date: Optional[datetime] = Query(default=None, alias="toDate"),
) -> AuditFilters:
    """Query-string dependency shared by the list and export routes."""
    if from_date and to_date and to_iso(from_date) > to_iso(to_date):
        raise ValidationError("fromDate must not be after toDate.")
    return AuditFilters(
        actor_user_id=actor_user_id,
        action=action,
        target_id=target_id,
        from_date=from_date,
        to_date=to_date,
    )


@router.get("/audit-logs", response_model=AuditListResponse)
def list_audit_logs(
    request: Request,
    filters: AuditFilters = Depends(audit_filters),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> AuditListResponse:
    trail: AuditTrail = request.app.state.audit_trail
    result = trail.query(filters, page=page, page_size=limit)
    return AuditListResponse(
        count=len(result.events),
        pagination=Pagination(
            total=result.total,
            total_pages=result.total_pages,
            current_page=result.page,
            limit=result.page_size,
        ),
        logs=[_event_to_response(e) for e in result.events],
    )


@router.get("/audit-logs/summary", response_model=AuditSummaryResponse)
def audit_summary(request: Request) -> AuditSummaryResponse:
    trail: AuditTrail = request.app.state.audit_trail
    summary = trail.summary(request.app.state.clock())
    stats = summary.recent_activity
    return AuditSummaryResponse(
        recent_activities=ActivityStatsResponse(
            total_activities=stats.total_count,
            unique_users=stats.unique_actor_count,
            action_breakdown=_counts(stats.counts_by_action),
        ),
        action_distribution=_counts(summary.action_distribution),
        recent_logs=[_event_to_response(e) for e in summary.recent_events],
    )


@router.get("/audit-logs/export")
def export_audit_logs(request: Request, filters: AuditFilters = Depends(audit_filters)) -> Response:
    """CSV download. 404 nothing_to_export when no event matches."""
    trail: AuditTrail = request.app.state.audit_trail
    content = trail.export(filters)
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": 'attachment; filename="audit_logs.csv"',
            "Cache-Control": "no-store",
        },
    )


@router.get("/audit-logs/user/{user_id}", response_model=AuditHistoryResponse)
def user_audit_history(
    request: Request,
    user_id: int,
    limit: int = Query(default=20, ge=1, le=100),
) -> AuditHistoryResponse:
    trail: AuditTrail = request.app.state.audit_trail
    events = trail.user_history(user_id, limit=limit)
    return AuditHistoryResponse(count=len(events), logs=[_event_to_response(e) for e in events])


@router.get("/audit-logs/{event_id}", response_model=AuditEventResponse)
def get_audit_log(request: Request, event_id: int) -> AuditEventResponse:
    trail: AuditTrail = request.app.state.audit_trail
    return _event_to_response(trail.get(event_id))
