"""
api/main.py -- FastAPI application entry point for AuthGate.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- default limits; per-route limits run in @limiter.limit
  4. SessionMiddleware     -- signed cookie holding the PKCE verifier between
                              /login/oauth/{provider} and /auth/callback

Lifespan builds the store, provider client, session resolver, profile
synchronizer, audit recorder and callback reconciler once and hangs them on
app.state. Shutdown closes the store and the provider's HTTP session.
"""

from __future__ import annotations

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
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.audit import AuditRecorder
from auth.callback import OAuthCallbackReconciler
from auth.profiles import ProfileSynchronizer
from auth.provider import (
    ExchangeFailure,
    NetworkFailure,
    ProviderError,
    SubjectNotFound,
    VerificationFailure,
    get_provider_client,
)
from auth.session import SessionResolver, refreshed_tokens, set_session_cookies
from auth.store import ProfileStore
from core.config import get_settings, validate_provider_config

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authgate.api")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Store first -- the synchronizer and recorder both write through it.
      2. Provider client -- memoized factory, opens no connections yet.
      3. Resolver, synchronizer, recorder, reconciler -- wired from the above.
    """
    cfg = get_settings()
    logger.info("AuthGate API starting up")
    missing = validate_provider_config(cfg)
    if missing:
        logger.warning("Identity provider not fully configured (missing: %s)", ", ".join(missing))

    app.state.store = ProfileStore(cfg.database_url)
    provider = get_provider_client()
    app.state.provider = provider
    app.state.recorder = AuditRecorder(app.state.store)
    app.state.resolver = SessionResolver(provider, cfg.elevated_roles, cfg.provider_jwt_secret)
    app.state.synchronizer = ProfileSynchronizer(app.state.store, provider, app.state.recorder)
    app.state.reconciler = OAuthCallbackReconciler(
        provider,
        app.state.resolver,
        success_redirect=cfg.callback_success_redirect,
        failure_redirect=cfg.callback_failure_redirect,
        success_delay=cfg.callback_success_delay,
        failure_delay=cfg.callback_failure_delay,
    )
    logger.info("Auth initialized (providers=%s)", ",".join(cfg.oauth_providers) or "none")

    yield

    # Shutdown
    app.state.store.close()
    provider.close()
    logger.info("AuthGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AuthGate API",
    description="Sessions, profiles and row-level access rules on top of an external identity provider.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI -> Session.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=get_settings().allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# The PKCE code verifier is created in /login/oauth/{provider} and needed in
# /auth/callback. It rides in this signed cookie; it is popped on first use so
# a replayed callback cannot exchange twice.
app.add_middleware(
    SessionMiddleware,
    secret_key=get_settings().secret_key,
    same_site="lax",
    https_only=get_settings().secure_cookies,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Session cookie refresh
#
# Resolving a request may have traded an expiring access token for a new one.
# Re-issue the cookies on the way out so the browser carries the new tokens.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def refresh_session_cookies(request: Request, call_next):
    response = await call_next(request)
    tokens = refreshed_tokens(request)
    if tokens is not None:
        set_session_cookies(response, tokens)
    return response


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
# Web router (OAuth redirect + callback page) is mounted by asgi.py, not here.
# api/ and web/ are independent layers -- only the top-level asgi.py imports both.


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error leaves as {"error": {"code", "message", "detail"?}}; clients
# branch on error.code, never on the body shape.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


@app.exception_handler(RateLimitExceeded)
def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with Retry-After.

    Must stay synchronous: SlowAPIMiddleware calls the registered handler
    directly and uses its return value as the response.
    """
    logger.warning("Rate limit hit on %s from %s", request.url.path, request.client.host if request.client else "?")
    response = _error(429, "rate_limited", "Too many attempts. Try again later.", str(exc.detail))
    response.headers["Retry-After"] = str(int(getattr(exc, "retry_after", 60)))
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = ", ".join(".".join(str(p) for p in err.get("loc", ())) for err in exc.errors())
    return _error(422, "validation_error", "Request body or query is invalid.", fields or None)


# Residual provider failures that a route did not turn into its own answer.
_PROVIDER_ERROR_STATUS: dict[type[ProviderError], tuple[int, str]] = {
    NetworkFailure: (502, "provider_unavailable"),
    VerificationFailure: (401, "unauthorized"),
    ExchangeFailure: (400, "exchange_failed"),
    SubjectNotFound: (404, "not_found"),
}


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
    """Map identity provider failures onto the error envelope. Network failures are not retried."""
    status, code = _PROVIDER_ERROR_STATUS.get(type(exc), (400, "provider_rejected"))
    logger.warning("Provider error on %s %s: %s", request.method, request.url.path, exc)
    message = "Identity provider unavailable." if status == 502 else exc.message
    return _error(status, code, message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Routes raise HTTPException(detail={"code", "message"}); pass that through as the error.

    Anything else (Starlette's own 404/405) gets a generic http_<status> code.
    """
    if isinstance(exc.detail, dict):
        response = JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    else:
        response = _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Traceback to the log only, never to the client.
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, current version and database reachability.

    The identity provider is not contacted; a provider outage leaves the
    service in load balancer rotation.
    """
    database = "ok" if request.app.state.store.ping() else "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=__version__,
        components={"app": "ok", "database": database},
    )
