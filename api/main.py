"""
api/main.py -- FastAPI application factory for gatekeeper.

Run with:      uvicorn asgi:app
Tests call:    create_app(Settings(...)) and drive it with TestClient.

Component graph (built once in lifespan, leaves first):

    Database
      -> CredentialStore, TokenIssuer, AuditRecorder, AdmissionController
      -> RefreshTokenLedger(db, issuer)
      -> SessionService(all of the above)

The graph lives on app.state.services. Route handlers and interceptors reach
it through api.interceptors.get_services(); nothing below api/ knows FastAPI
exists.

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects unexpected Host headers
  2. CORSMiddleware        -- CORS headers for allowed browser origins
  3. request_context       -- correlation id, X-Request-ID / X-Timestamp
                              headers, one access log line per request

Rate limiting is not middleware: the app-wide GENERAL budget and the route
class budget are the first two interceptors of each route (see
api/interceptors.py). /health is not counted.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from admission.client import TrustedProxies
from admission.controller import AdmissionController
from api.interceptors import get_services
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from api.supervisor import FatalHandler, Supervisor, request_shutdown
from audit.recorder import AuditRecorder
from auth.credentials import CredentialStore
from auth.ledger import RefreshTokenLedger
from auth.session import SessionService
from auth.tokens import TokenIssuer
from core.config import Settings, get_settings
from core.database import Database, to_iso, utcnow
from core.errors import GatekeeperError, RateLimited, StorageFailure
from core.logging import configure_logging, get_request_id, set_request_id

logger = logging.getLogger("gatekeeper.api")

_CLIENT_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


# ---------------------------------------------------------------------------
# Component graph
# ---------------------------------------------------------------------------


@dataclass
class Services:
    """Every long-lived component, wired once at startup."""

    settings: Settings
    database: Database
    credentials: CredentialStore
    issuer: TokenIssuer
    ledger: RefreshTokenLedger
    audit: AuditRecorder
    admission: AdmissionController
    sessions: SessionService
    trusted_proxies: TrustedProxies


def build_services(settings: Settings, database: Database) -> Services:
    """Construct the component graph over an already opened database."""
    credentials = CredentialStore(database, rounds=settings.bcrypt_rounds, default_role=settings.operator_role)
    issuer = TokenIssuer.from_settings(settings)
    audit = AuditRecorder(database)
    admission = AdmissionController.from_settings(settings)
    ledger = RefreshTokenLedger(database, issuer)
    sessions = SessionService(
        db=database,
        credentials=credentials,
        issuer=issuer,
        ledger=ledger,
        audit=audit,
        reuse_revokes_all=settings.refresh_reuse_revokes_all,
    )
    return Services(
        settings=settings,
        database=database,
        credentials=credentials,
        issuer=issuer,
        ledger=ledger,
        audit=audit,
        admission=admission,
        sessions=sessions,
        trusted_proxies=TrustedProxies(settings.trusted_proxies),
    )


# ---------------------------------------------------------------------------
# Background sweep
# ---------------------------------------------------------------------------


async def _sweep_loop(ledger: RefreshTokenLedger, interval: int) -> None:
    """Delete expired refresh records every ``interval`` seconds.

    The sweep itself is blocking SQL, so it runs in a worker thread. A
    StorageFailure escapes to the Supervisor, which restarts this loop.
    """
    while True:
        await asyncio.to_thread(ledger.sweep_expired)
        await asyncio.sleep(interval)


# ---------------------------------------------------------------------------
# Error rendering
# ---------------------------------------------------------------------------


def _error_response(
    status_code: int,
    code: str,
    message: str,
    *,
    detail: list[str] | None = None,
    retry_after: int | None = None,
) -> JSONResponse:
    """Render the uniform ErrorResponse envelope.

    The body holds only status-determined fields, so two failures of the same
    kind are byte-identical. Correlation id and timestamp travel in headers.
    """
    body = ErrorResponse(
        error=ErrorDetail(code=code, message=message, detail=detail or None, retry_after=retry_after)
    ).model_dump(by_alias=True, exclude_none=True)
    response = JSONResponse(status_code=status_code, content=body)
    response.headers["Cache-Control"] = "no-store"
    if retry_after is not None:
        response.headers["Retry-After"] = str(retry_after)
    return response


async def gatekeeper_error_handler(request: Request, exc: GatekeeperError) -> JSONResponse:
    if isinstance(exc, StorageFailure):
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc.message)
    retry_after = exc.retry_after if isinstance(exc, RateLimited) else None
    return _error_response(
        exc.status_code,
        exc.code,
        exc.public_message,
        detail=exc.detail,
        retry_after=retry_after,
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies and query strings are 400 validation_failed."""
    detail = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        detail.append(f"{location}: {error.get('msg', 'invalid')}" if location else error.get("msg", "invalid"))
    return _error_response(400, "validation_failed", "Request validation failed.", detail=detail)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Unknown routes, wrong methods and any other framework-raised HTTP errors."""
    codes = {404: "not_found", 405: "method_not_allowed"}
    return _error_response(
        exc.status_code,
        codes.get(exc.status_code, f"http_{exc.status_code}"),
        str(exc.detail),
    )


def _stamp_correlation(response: Response, request_id: str | None) -> None:
    response.headers["X-Request-ID"] = request_id or set_request_id()
    response.headers["X-Timestamp"] = to_iso(utcnow())


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only.

    Registered for Exception, so Starlette calls it from ServerErrorMiddleware,
    outside request_context: the correlation headers are stamped here too.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    response = _error_response(500, "internal_error", "An unexpected error occurred.")
    _stamp_correlation(response, get_request_id())
    return response


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(settings: Settings | None = None, *, on_fatal: FatalHandler = request_shutdown) -> FastAPI:
    """Build the FastAPI application.

    ``settings`` defaults to the environment (get_settings()). ``on_fatal``
    is forwarded to the Supervisor; tests replace it to observe escalation
    without signalling the test process.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Startup builds the component graph; shutdown tears it down in reverse."""
        logger.info("gatekeeper %s starting up", settings.version)
        database = Database(settings.database_url, timeout=settings.database_timeout_seconds).open()
        app.state.services = build_services(settings, database)

        supervisor = Supervisor(on_fatal=on_fatal)
        supervisor.install_loop_handler()
        if settings.token_sweep_interval_seconds > 0:
            ledger = app.state.services.ledger
            interval = settings.token_sweep_interval_seconds
            supervisor.spawn("token-sweep", lambda: _sweep_loop(ledger, interval))
        app.state.supervisor = supervisor

        yield

        await supervisor.stop()
        database.close()
        logger.info("gatekeeper shutdown complete")

    app = FastAPI(
        title="gatekeeper",
        description="Operator credential issuance and validation.",
        version=settings.version,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
    )
    app.state.settings = settings

    # -----------------------------------------------------------------------
    # Middleware stack. add_middleware() prepends, so the last one added is
    # outermost: request_context is registered first to end up innermost.
    # -----------------------------------------------------------------------

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        client_id = request.headers.get("X-Request-ID", "")
        request_id = set_request_id(client_id if _CLIENT_REQUEST_ID.match(client_id) else None)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            response = await generic_exception_handler(request, exc)
        ms = (time.perf_counter() - start) * 1000
        _stamp_correlation(response, request_id)
        logger.info(
            "%s %s %d %.1fms %s",
            request.method,
            request.url.path,
            response.status_code,
            ms,
            request.client.host if request.client else "unknown",
        )
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-Timestamp", "Retry-After"],
        max_age=3600,
    )
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

    # -----------------------------------------------------------------------
    # Exception handlers: every error leaves as the same ErrorResponse envelope.
    # -----------------------------------------------------------------------

    app.add_exception_handler(GatekeeperError, gatekeeper_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # -----------------------------------------------------------------------
    # Routers
    # -----------------------------------------------------------------------

    app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
    app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])

    @app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
    def health(request: Request) -> HealthResponse:
        """Liveness plus a database round trip. No auth, no admission budget."""
        services = get_services(request)
        database_ok = services.database.ping()
        supervisor: Supervisor = request.app.state.supervisor
        healthy = database_ok and not supervisor.failed
        return HealthResponse(
            status="healthy" if healthy else "degraded",
            version=settings.version,
            components={"app": "ok", "database": "ok" if database_ok else "unavailable"},
        )

    return app
