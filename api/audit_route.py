"""
api/audit_route.py -- Request-completion audit observer for mutating routes.

AuditedRoute is an APIRoute subclass. Routes opt in by declaring the
audit_action() dependency, which stores the AuditAction on request.state.
After the handler returns, if

  - the response status is 2xx,
  - get_current_user() identified an actor (request.state.user), and
  - an audit action is set (handlers may override it, e.g. DEVICE_TRUST
    vs DEVICE_UPDATE depending on the body),

one event is submitted whose details hold the method, path, redacted
request body, path params, query params and response status. Failed
requests write nothing here; the engine records its own failure events.

Submission goes through AuditTrail.submit(), so the response is never held
up by the audit write.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable

from fastapi import Request, Response
from fastapi.routing import APIRoute

from audit.models import AuditAction
from audit.redaction import redact

logger = logging.getLogger("authguard.api")


def audit_action(action: AuditAction) -> Callable[[Request], None]:
    """Dependency factory: mark the request as auditable under `action`."""

    def _mark(request: Request) -> None:
        request.state.audit_action = action

    return _mark


def set_audit_target(request: Request, target_id, target_username: str | None = None) -> None:
    """Record the entity a handler acted on, for the completion event."""
    request.state.audit_target = (str(target_id) if target_id is not None else None, target_username)


async def _json_body(request: Request):
    raw = await request.body()
    if not raw or "json" not in request.headers.get("content-type", ""):
        return {}
    try:
        return json.loads(raw)
    except ValueError:
        return {}


class AuditedRoute(APIRoute):
    def get_route_handler(self) -> Callable:
        original_handler = super().get_route_handler()

        async def audited_handler(request: Request) -> Response:
            # Read before the handler: Request caches the body, so the handler
            # still sees it.
            body = await _json_body(request)
            response = await original_handler(request)
            if 200 <= response.status_code < 300:
                _submit(request, body, response.status_code)
            return response

        return audited_handler


def _submit(request: Request, body, status_code: int) -> None:
    action = getattr(request.state, "audit_action", None)
    user = getattr(request.state, "user", None)
    if action is None or user is None:
        return
    target_id, target_username = getattr(request.state, "audit_target", (None, None))
    if target_id is None:
        params = request.path_params
        raw_target = params.get("user_id", params.get("device_id"))
        target_id = str(raw_target) if raw_target is not None else None
    request.app.state.audit_trail.record(
        action,
        actor_user_id=user.id,
        actor_username=user.username,
        ip_address=request.client.host if request.client else "unknown",
        user_agent=request.headers.get("user-agent", ""),
        target_id=target_id,
        target_username=target_username,
        details={
            "method": request.method,
            "url": str(request.url.path) + (f"?{request.url.query}" if request.url.query else ""),
            "body": redact(body),
            "params": dict(request.path_params),
            "query": dict(request.query_params),
            "response": {"statusCode": status_code},
        },
    )
