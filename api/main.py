"""
api/main.py -- FastAPI application entry point for EduCheck.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan wires stores and services onto app.state at startup and tears them
down symmetrically on shutdown. Route handlers read their collaborators from
request.app.state and never construct them.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.errors import error_body, status_for
from api.limiter import limiter
from api.models import HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.favorites import router as favorites_router
from api.routes.v1.fraud_reports import router as fraud_reports_router
from api.routes.v1.institutes import router as institutes_router
from api.routes.v1.search_history import router as search_history_router
from auth.oauth import GoogleIdentityBridge, PendingAuthorizationStore
from auth.service import AuthService
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import TokenIssuer
from cache.store import UserScopedCache
from core.config import Settings, get_settings
from core.errors import GENERIC_ERROR, ServiceError
from student.quota import FRAUD_REPORTS, QuotaLimiter
from student.services import (
    FavoritesService,
    FraudReportService,
    InstituteService,
    SearchHistoryService,
    purge_principal_data,
)
from student.store import StudentStore

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("educheck.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Purge expired cache entries and long-dead sessions every 6 hours.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(6 * 60 * 60)
        app.state.cache.purge_expired()
        removed = app.state.session_store.purge_expired()
        if removed:
            logger.info("Purged %d expired session records", removed)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def wire_services(app: FastAPI, settings: Settings, user_store: UserStore, cache: UserScopedCache) -> None:
    """Build every service from its stores and attach it to app.state.

    Split out of lifespan so tests can wire the same graph around their own
    in-memory stores.
    """
    session_store = SessionStore(user_store.engine)
    student_store = StudentStore(user_store.engine)
    token_issuer = TokenIssuer(settings)

    quota = QuotaLimiter(
        counters={FRAUD_REPORTS: student_store.count_fraud_reports},
        ceilings={FRAUD_REPORTS: settings.fraud_reports_per_day},
    )
    search_history = SearchHistoryService(student_store, cache)

    app.state.settings = settings
    app.state.user_store = user_store
    app.state.session_store = session_store
    app.state.student_store = student_store
    app.state.cache = cache
    app.state.token_issuer = token_issuer
    app.state.auth_service = AuthService(
        user_store,
        session_store,
        token_issuer,
        settings,
        principal_cleanup=[functools.partial(purge_principal_data, student_store, cache)],
    )
    app.state.google_bridge = GoogleIdentityBridge(
        settings,
        user_store,
        session_store,
        token_issuer,
        PendingAuthorizationStore(settings.oauth_state_ttl_seconds),
    )
    app.state.favorites_service = FavoritesService(student_store, cache)
    app.state.search_history_service = search_history
    app.state.fraud_report_service = FraudReportService(student_store, quota)
    app.state.institute_service = InstituteService(student_store, search_history)


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Stores first -- every service takes one.
      2. Services second -- wire_services() attaches them to app.state.
      3. Purge task last -- references app.state.cache and session_store.
    """
    settings = get_settings()
    logger.info("EduCheck API starting up")
    user_store = UserStore(settings.database_url)
    cache = UserScopedCache(ttl=settings.cache_ttl_seconds)
    wire_services(app, settings, user_store, cache)
    logger.info("Services initialized (google_oauth=%s)", settings.google_enabled)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    # Shutdown
    app.state.purge_task.cancel()
    app.state.cache.close()
    app.state.user_store.close()
    logger.info("EduCheck API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

_settings = get_settings()

app = FastAPI(
    title="EduCheck API",
    description="Institute accreditation lookup for students: accounts, favorites, history and fraud reports.",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if _settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
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
app.include_router(favorites_router, prefix="/api/v1", tags=["Favorites"])
app.include_router(search_history_router, prefix="/api/v1", tags=["Search History"])
app.include_router(fraud_reports_router, prefix="/api/v1", tags=["Fraud Reports"])
app.include_router(institutes_router, prefix="/api/v1", tags=["Institutes"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same {success, message, errors} envelope that
# route handlers produce, so clients parse one shape for every failure.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with the standard envelope when a rate limit is exceeded.

    Plain def, not async: SlowAPIMiddleware calls this handler directly and
    uses its return value as the response.
    """
    retry_after = int(getattr(exc, "retry_after", 60) or 60)
    response = JSONResponse(
        status_code=429,
        content=error_body(
            "Too many requests",
            ["Rate limit exceeded. Please try again later."],
            code="rate_limited",
        ),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with one readable line per failed field."""
    errors = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        errors.append(f"{field}: {err.get('msg', 'invalid value')}" if field else err.get("msg", "invalid value"))
    return JSONResponse(
        status_code=400,
        content=error_body("Validation failed", errors, code="validation_error"),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return the envelope for all FastAPI/Starlette HTTP exceptions.

    The auth dependencies raise HTTPException with a dict detail carrying
    kind, message and errors; anything else is wrapped as-is.
    """
    if isinstance(exc.detail, dict):
        body = error_body(
            exc.detail.get("message", "Request failed"),
            exc.detail.get("errors"),
            code=exc.detail.get("kind"),
        )
    else:
        body = error_body(str(exc.detail), code=f"http_{exc.status_code}")
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Render a ServiceError raised outside a service boundary, e.g. by a role guard."""
    return JSONResponse(
        status_code=status_for(exc.kind),
        content=error_body(exc.message, exc.errors, code=exc.code or exc.kind.value),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_body("Internal server error", [GENERIC_ERROR], code="internal_error"),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=API_VERSION)
