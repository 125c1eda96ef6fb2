"""
api/main.py -- FastAPI application entry point for authguard.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every service once and hangs it on app.state:
  user_store, device_store, audit_store  -- SQLAlchemy Core repositories
  audit_dispatcher                       -- background audit writer (started here)
  audit_trail, notifier, credentials, device_tracker, engine, clock, settings

Shutdown drains the audit queue before the stores are closed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.devices import router as devices_router
from api.routes.v1.users import router as users_router
from audit.dispatcher import AuditDispatcher
from audit.store import AuditStore
from audit.trail import AuditTrail
from auth.credentials import CredentialStore
from auth.engine import AuthSessionEngine
from auth.store import UserStore
from core.clock import Clock, utcnow
from core.config import Settings, get_settings
from core.errors import AuthGuardError, StorageUnavailable
from devices.store import DeviceStore
from devices.tracker import DeviceTracker
from notify import NotificationSender, SmtpNotificationSender

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authguard.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(
    app: FastAPI,
    *,
    user_store: UserStore,
    device_store: DeviceStore,
    audit_store: AuditStore,
    notifier: NotificationSender,
    settings: Settings,
    dispatcher: Optional[AuditDispatcher] = None,
    clock: Clock = utcnow,
) -> AuthSessionEngine:
    """Build the service graph over the given stores and attach it to app.state.

    Shared by the real lifespan and the test suite, which passes in-memory
    stores, a recording notifier and a controllable clock.
    """
    trail = AuditTrail(audit_store, dispatcher, clock=clock)
    credentials = CredentialStore(user_store, settings, clock=clock)
    tracker = DeviceTracker(device_store, settings)
    engine = AuthSessionEngine(credentials, tracker, trail, notifier, settings, clock=clock)

    app.state.settings = settings
    app.state.clock = clock
    app.state.user_store = user_store
    app.state.device_store = device_store
    app.state.audit_store = audit_store
    app.state.audit_dispatcher = dispatcher
    app.state.audit_trail = trail
    app.state.notifier = notifier
    app.state.credentials = credentials
    app.state.device_tracker = tracker
    app.state.engine = engine
    return engine


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the stores, start the audit writer, bootstrap the first superadmin.

    Startup order matters: the dispatcher writes through the audit store, so
    the store must exist first; on shutdown the dispatcher is drained before
    the store is closed.
    """
    logger.info("authguard API starting up")
    user_store = UserStore(settings.database_url)
    device_store = DeviceStore(settings.database_url)
    audit_store = AuditStore(settings.database_url)
    dispatcher = AuditDispatcher(
        audit_store.append,
        maxsize=settings.audit_queue_size,
        max_retries=settings.audit_max_retries,
        backoff_seconds=settings.audit_retry_backoff_seconds,
    )
    dispatcher.start()
    notifier = SmtpNotificationSender(settings)
    if not notifier.is_configured:
        logger.warning("SMTP_HOST not set -- notifications will be logged, not sent")

    engine = wire_services(
        app,
        user_store=user_store,
        device_store=device_store,
        audit_store=audit_store,
        notifier=notifier,
        settings=settings,
        dispatcher=dispatcher,
    )
    engine.bootstrap_superadmin()
    logger.info("Services initialized (database=%s)", settings.database_url.split("://", 1)[0])

    yield

    dispatcher.close()
    if dispatcher.dropped:
        logger.error("%d audit event(s) were dropped during this run", dispatcher.dropped)
    audit_store.close()
    device_store.close()
    user_store.close()
    logger.info("authguard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="authguard API",
    description="Authentication, session lifecycle, suspicious-login detection and security audit trail.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(devices_router, prefix="/api/v1", tags=["Devices"])
app.include_router(audit_router, prefix="/api/v1", tags=["Audit Logs"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthGuardError)
async def authguard_error_handler(request: Request, exc: AuthGuardError) -> JSONResponse:
    response = _error_response(exc.status_code, exc.code, exc.message, exc.detail)
    if exc.status_code in (401, 423):
        response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(OperationalError)
async def storage_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
    logger.error("Storage unavailable on %s %s: %s", request.method, request.url.path, exc.orig)
    err = StorageUnavailable()
    return _error_response(err.status_code, err.code, err.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    Pydantic echoes rejected input in each error; it is dropped here so a
    malformed password never ends up in a response or a log line.
    """
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")} for e in exc.errors()]
    return _error_response(422, "validation_error", "Request validation failed.", str(errors))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint -- not rate limited
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, current version and a database ping.

    Always 200: a load balancer reads status, not the HTTP code.
    """
    database = "ok"
    try:
        with request.app.state.user_store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except (OperationalError, AttributeError) as exc:
        logger.error("Health check database ping failed: %s", exc)
        database = "error"
    return HealthResponse(
        status="ok" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
