"""
api/main.py -- FastAPI application entry point for JYDoc accounts.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. log_requests          -- one log line per request with latency
  5. enforce_policy        -- resolves the session once, applies AuthorizationPolicy

Lifespan builds the stores and services on startup, seeds the bootstrap
authorities, starts the expired-session purge task, and tears everything
down symmetrically on shutdown.
"""

from __future__ import annotations

import asyncio
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
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from auth.dependencies import resolve_request_identity
from auth.errors import AuthenticationFailed, AuthError, StoreUnavailable, ValidationError
from auth.hashing import PasswordHasher
from auth.policy import AuthorizationPolicy, Decision, default_rules
from auth.service import AuthenticationService
from auth.store import UserStore
from core.config import get_settings
from sessions.manager import SessionManager
from sessions.store import SessionStore

__version__ = "0.4.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("jydoc.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: int) -> None:
    """Drop expired sessions every `interval` seconds.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly. A store outage only
    skips one round.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(app.state.sessions.purge_expired)
        except StoreUnavailable:
            logger.warning("Session purge skipped: session store unavailable")


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def wire_services(app: FastAPI, user_store: UserStore, session_store: SessionStore, settings=None) -> None:
    """Attach stores, services and the policy to app.state.

    Shared by the real lifespan and the test fixtures so both build the
    object graph the same way.
    """
    settings = settings or get_settings()
    sessions = SessionManager(session_store, user_store, settings)
    app.state.settings = settings
    app.state.user_store = user_store
    app.state.session_store = session_store
    app.state.sessions = sessions
    app.state.auth_service = AuthenticationService(
        user_store,
        sessions,
        PasswordHasher(rounds=settings.bcrypt_rounds),
        settings,
    )
    app.state.policy = AuthorizationPolicy(default_rules(settings.admin_authority_name))


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build stores and services on startup; close them on shutdown.

    Startup order matters:
      1. Stores first -- everything else reads from them.
      2. Bootstrap authorities -- registration needs the default role.
      3. Purge task last -- references app.state.sessions.
    """
    logger.info("JYDoc API starting up")
    settings = get_settings()
    wire_services(app, UserStore(), SessionStore(), settings)
    seeded = app.state.user_store.seed_authorities(settings.bootstrap_authorities)
    logger.info("Auth initialized (%d authorities, %d users)", len(seeded), app.state.user_store.count_identities())
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.session_purge_interval))

    yield

    app.state.purge_task.cancel()
    app.state.session_store.close()
    app.state.user_store.close()
    logger.info("JYDoc API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="JYDoc Accounts API",
    description="Registration, login, sessions and role-based access for JYDoc.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Function middleware registered with @app.middleware runs inside the
# add_middleware() stack; the last one registered is the outermost of them.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def enforce_policy(request: Request, call_next):
    """Resolve the session and apply AuthorizationPolicy before routing.

    The resolved identity is cached on request.state so route dependencies
    reuse it. Unauthenticated access to a protected path is a 401; an
    authenticated principal lacking the role is a 403. Error bodies never
    echo the token.
    """
    policy: AuthorizationPolicy = request.app.state.policy
    rule = policy.rule_for(request.url.path)
    try:
        await run_in_threadpool(resolve_request_identity, request)
    except StoreUnavailable as exc:
        return _error_response(exc.status_code, exc.code, exc.message)

    principal = request.state.principal
    if policy.check(principal, request.url.path) is Decision.DENY:
        if principal is None:
            return _error_response(401, "unauthorized", "Authentication required.")
        logger.warning("Denied %s %s to identity %s (needs %s)", request.method, request.url.path,
                       principal.identity_id, rule.role)
        return _error_response(403, "forbidden", "You do not have access to this resource.")
    return await call_next(request)


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


app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost"],
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, **extra)).model_dump(exclude_none=True),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render service-layer errors.

    Every AuthenticationFailed subclass (wrong password, unknown user,
    disabled, locked, expired) becomes the same generic 401 body; the
    specific cause was already logged by the service.
    """
    if isinstance(exc, AuthenticationFailed):
        response = _error_response(401, AuthenticationFailed.code, AuthenticationFailed.message)
    elif isinstance(exc, ValidationError):
        response = _error_response(exc.status_code, exc.code, exc.message, fields=exc.errors)
    elif exc.field is not None:
        response = _error_response(exc.status_code, exc.code, exc.message, fields={exc.field: exc.message})
    else:
        response = _error_response(exc.status_code, exc.code, exc.message)
    if isinstance(exc, StoreUnavailable):
        response.headers["Retry-After"] = "1"
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", detail=str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 when the request body does not match the expected shape.

    Input values are deliberately left out of the body: they may contain
    passwords.
    """
    fields = {".".join(str(p) for p in err["loc"] if p != "body"): err["msg"] for err in exc.errors()}
    return _error_response(422, "validation_error", "Request validation failed.", fields=fields)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit applied -- health checks from load balancers and monitoring
# systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version and a database reachability check."""
    database = "ok" if request.app.state.user_store.ping() else "error"
    return HealthResponse(version=__version__, components={"app": "ok", "database": database})
