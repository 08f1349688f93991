"""
api/main.py -- FastAPI application entry point for TenantGuard.

Exposes authentication, two-factor enrollment, tenant administration and the
audit trail over HTTP.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins;
                              allows and exposes X-Device-Token
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the three stores, wires the services onto app.state
(wire_services), starts the purge task, and tears all of it down
symmetrically on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorResponse, HealthResponse
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.tenants import router as tenants_router
from api.routes.v1.two_factor import router as two_factor_router
from audit.logger import AuditLogger
from audit.store import AuditStore
from auth.credentials import CredentialVerifier
from auth.devices import DeviceTrustStore
from auth.login import LoginFlow
from auth.rbac import RBACEvaluator
from auth.second_factor import SecondFactorEngine
from auth.sessions import SessionIssuer
from auth.store import UserStore
from core.config import get_settings
from core.errors import AuthError, SecondFactorFailed, Unauthorized
from tenants.store import TenantStore

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tenantguard.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def build_stores() -> tuple[UserStore, TenantStore, AuditStore]:
    """Open the three stores. DATABASE_URL, when set, points all of them at one DB."""
    if _settings.database_url:
        url = _settings.database_url
        return UserStore(db_url=url), TenantStore(db_url=url), AuditStore(db_url=url)
    return UserStore(), TenantStore(), AuditStore()


def wire_services(app: FastAPI, user_store: UserStore, tenant_store: TenantStore, audit_store: AuditStore) -> None:
    """Attach stores and the services built on them to app.state.

    Shared by the real lifespan and the test lifespan so both run the same
    object graph.
    """
    app.state.user_store = user_store
    app.state.tenant_store = tenant_store
    app.state.audit_store = audit_store
    app.state.audit = AuditLogger(audit_store)
    app.state.verifier = CredentialVerifier(user_store)
    app.state.second_factor = SecondFactorEngine(user_store)
    app.state.devices = DeviceTrustStore(user_store)
    app.state.sessions = SessionIssuer(user_store)
    app.state.rbac = RBACEvaluator()
    app.state.login_flow = LoginFlow(
        verifier=app.state.verifier,
        second_factor=app.state.second_factor,
        devices=app.state.devices,
        sessions=app.state.sessions,
        audit=app.state.audit,
    )


def purge_expired(app: FastAPI) -> dict[str, int]:
    """Drop expired challenges, trusted devices and sessions. Returns counts."""
    counts = {
        "challenges": app.state.second_factor.purge_expired(),
        "devices": app.state.devices.purge_expired(),
        "sessions": app.state.sessions.purge_expired(),
    }
    logger.info(
        "Purged %d challenge(s), %d device token(s), %d session(s)",
        counts["challenges"],
        counts["devices"],
        counts["sessions"],
    )
    return counts


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired auth records every hour.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(60 * 60)
        purge_expired(app)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Stores first, then services, then the purge task that uses them.
    """
    logger.info("TenantGuard API starting up")
    user_store, tenant_store, audit_store = build_stores()
    wire_services(app, user_store, tenant_store, audit_store)
    if not user_store.has_users():
        logger.warning("No users exist yet -- run `python main.py create-user` to bootstrap a super admin")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    user_store.close()
    tenant_store.close()
    audit_store.close()
    logger.info("TenantGuard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="TenantGuard API",
    description="Authentication, two-factor, RBAC and audit for the multi-tenant platform.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Device-Token"],
    expose_headers=["X-Device-Token"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


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
app.include_router(two_factor_router, prefix="/api/v1", tags=["Two-factor"])
app.include_router(tenants_router, prefix="/api/v1", tags=["Tenants"])
app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope (top-level "message")
# so API clients can parse errors uniformly.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Every authentication failure is the same 401 to the caller.

    SecondFactorFailed additionally tells the client it may retry the code
    against the same challenge.
    """
    content = ErrorResponse(code="invalid_credentials", message="Invalid credentials").model_dump()
    if isinstance(exc, SecondFactorFailed) and exc.challenge_id is not None:
        content["requires2FA"] = True
        content["challengeId"] = exc.challenge_id
    response = JSONResponse(status_code=401, content=content)
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(Unauthorized)
async def unauthorized_handler(request: Request, exc: Unauthorized) -> JSONResponse:
    return JSONResponse(
        status_code=403,
        content=ErrorResponse(code="forbidden", message="Access denied").model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            code="rate_limited",
            message="Too many requests.",
            detail=str(exc),
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    Only field locations and messages are echoed; submitted values (which may
    be passwords) are not.
    """
    fields = "; ".join(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors())
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            code="validation_error",
            message="Request validation failed.",
            detail=fields,
        ).model_dump(),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions, routing 404s included.

    Route handlers raise HTTPException with detail={"code": ..., "message": ...}.
    """
    if isinstance(exc.detail, dict):
        content = ErrorResponse(
            code=exc.detail.get("code", f"http_{exc.status_code}"),
            message=exc.detail.get("message", ""),
        ).model_dump()
    else:
        content = ErrorResponse(code=f"http_{exc.status_code}", message=str(exc.detail)).model_dump()
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            code="internal_error",
            message="An unexpected error occurred.",
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable. No rate limit:
# load balancers and monitors must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version and a database round-trip check."""
    components = {"app": "ok"}
    try:
        with request.app.state.user_store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        components["database"] = "ok"
    except Exception:
        logger.exception("Health check database probe failed")
        components["database"] = "error"
    return HealthResponse(version=API_VERSION, components=components)
