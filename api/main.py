"""
api/main.py -- FastAPI application entry point for SessionGate.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for the web app origin
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every service exactly once from the Settings object and
parks it on app.state: engine -> stores -> TokenService -> controller ->
pairing flow -> janitor. Secrets are handed to constructors here; nothing
under auth/ reads configuration on its own. Shutdown cancels the sweep task
and disposes the engine.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.credentials import router as credentials_router
from api.routes.v1.maintenance import router as maintenance_router
from api.routes.v1.pairing import router as pairing_router
from auth.controller import AuthSessionController
from auth.dependencies import get_current_user
from auth.encryption import EncryptionService
from auth.errors import (
    AuthError,
    InvalidCredentials,
    PairingExpired,
    PairingNotFound,
    PairingPending,
    SessionAlreadyInvalidated,
    SessionNotFound,
    TokenError,
    Unauthenticated,
    UserNotFound,
)
from auth.janitor import SessionJanitor
from auth.models import User
from auth.pairing import DevicePairingFlow, PairingStore
from auth.sessions import SessionStore
from auth.store import CredentialStore, UserStore, create_db_engine
from auth.tokens import TokenService
from core.config import Settings, get_settings

VERSION = "0.3.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sessiongate.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def build_services(app: FastAPI, settings: Settings) -> None:
    """Construct every store and service from `settings` and attach them to app.state.

    Tests call this with an in-memory database URL instead of going through
    the real lifespan.
    """
    engine = create_db_engine(settings.database_url)
    user_store = UserStore(engine)
    sessions = SessionStore(engine)
    tokens = TokenService(settings)
    controller = AuthSessionController(
        tokens,
        sessions,
        user_store,
        rotate_refresh_tokens=settings.rotate_refresh_tokens,
    )
    pairing_store = PairingStore(engine)

    app.state.engine = engine
    app.state.user_store = user_store
    app.state.sessions = sessions
    app.state.tokens = tokens
    app.state.auth = controller
    app.state.pairing_store = pairing_store
    app.state.pairing = DevicePairingFlow(
        pairing_store,
        controller,
        user_store,
        settings.app_base_url,
        ttl=timedelta(seconds=settings.pairing_code_ttl_seconds),
    )
    app.state.janitor = SessionJanitor(sessions, retention=timedelta(days=settings.session_retention_days))
    app.state.credentials = CredentialStore(engine, EncryptionService(settings.encryption_key))


# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval_seconds: int) -> None:
    """Run the session janitor and purge expired pairing requests periodically.

    A failed sweep is logged and retried on the next tick; it must not kill
    the loop. CancelledError from task.cancel() during shutdown propagates out
    of asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(app.state.janitor.sweep)
            removed = await asyncio.to_thread(app.state.pairing_store.purge_expired)
            if removed:
                logger.info("Purged %d expired pairing requests", removed)
        except SQLAlchemyError:
            logger.exception("Background sweep failed")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("SessionGate API starting up")
    build_services(app, _settings)
    logger.info(
        "Auth initialized (access_ttl=%ss, refresh_ttl=%ss, rotation=%s)",
        _settings.access_token_expire_seconds,
        _settings.refresh_token_expire_seconds,
        _settings.rotate_refresh_tokens,
    )
    sweep_task = None
    if _settings.sweep_interval_seconds > 0:
        sweep_task = asyncio.create_task(_sweep_loop(app, _settings.sweep_interval_seconds))

    yield

    if sweep_task is not None:
        sweep_task.cancel()
    app.state.engine.dispose()
    logger.info("SessionGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SessionGate API",
    description="Token issuing, session lifecycle, device pairing and secrets-at-rest for the web app.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by auth-protected routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack -- register in the order a request should meet them.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[_settings.app_base_url],
    allow_credentials=True,  # auth travels in cookies
    allow_methods=["GET", "POST", "DELETE"],
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
app.include_router(pairing_router, prefix="/api/v1", tags=["Device Pairing"])
app.include_router(maintenance_router, prefix="/api/v1", tags=["Maintenance"])
app.include_router(credentials_router, prefix="/api/v1", tags=["Admin"])


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="SessionGate API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="SessionGate API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map the auth error taxonomy onto HTTP.

    Every verification failure gets the same 401 body; the precise kind has
    already been logged where it was raised. Encryption and persistence
    failures are server faults and are reported as a generic 500.
    """
    if isinstance(exc, (TokenError, Unauthenticated, SessionNotFound, SessionAlreadyInvalidated)):
        return _error(401, "unauthenticated", "Authentication required.")
    if isinstance(exc, InvalidCredentials):
        resp = _error(401, "bad_credentials", "Invalid email or password.")
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp
    if isinstance(exc, UserNotFound):
        return _error(404, "user_not_found", "User not found.")
    if isinstance(exc, PairingNotFound):
        return _error(404, "pairing_not_found", "Unknown pairing code.")
    if isinstance(exc, PairingExpired):
        return _error(410, "pairing_expired", "Pairing code has expired or was already used.")
    if isinstance(exc, PairingPending):
        return _error(409, "authorization_pending", "Pairing has not been authorized yet.")
    logger.error("Auth failure on %s %s: %s", request.method, request.url.path, exc.code)
    return _error(500, "internal_error", "An unexpected error occurred.")


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a {"code", "message"} dict as
    detail; use it directly as the error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint -- no auth, no rate limit.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and a database round-trip check."""
    components = {"app": "ok"}
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        components["database"] = "ok"
    except SQLAlchemyError:
        logger.exception("Health check database probe failed")
        components["database"] = "error"
    return HealthResponse(version=VERSION, components=components)
