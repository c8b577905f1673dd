"""
api/main.py -- FastAPI application entry point for the account service.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- OAuth state + return URL between redirect and callback

Lifespan builds every collaborator explicitly and wires them together:
  identity store -> code cache -> mail dispatcher -> orchestrators
and tears them down symmetrically on shutdown. Nothing is looked up from
ambient globals at request time; routes read app.state.
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
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.accounts import router as accounts_router
from auth.accounts import CredentialOrchestrator
from auth.claims import ClaimSynchronizer
from auth.codes import CodeGenerator
from auth.errors import IdentityStoreError
from auth.mailer import HttpMailDispatcher, LogMailDispatcher
from auth.oauth import oauth as oauth_client
from auth.store import IdentityStore
from auth.tokens import create_access_token
from auth.verification import VerificationOrchestrator
from cache.store import CodeCache
from core.config import Settings, get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("accounts.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI, interval: int) -> None:
    """Sweep expired verification codes every `interval` seconds.

    Reads already treat expired codes as absent; the sweep only bounds
    memory. CancelledError from task.cancel() during shutdown propagates out
    of asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        removed = app.state.code_cache.purge_expired()
        if removed:
            logger.info("Purged %d expired verification codes", removed)


def _build_mailer(settings: Settings):
    if settings.mail_api_key:
        return HttpMailDispatcher(
            api_url=settings.mail_api_url,
            api_key=settings.mail_api_key,
            sender=settings.mail_sender,
            timeout=settings.mail_timeout_seconds,
        )
    if settings.debug:
        logger.warning("MAIL_API_KEY not set -- verification emails are logged, not sent")
        return LogMailDispatcher()
    raise ValueError("MAIL_API_KEY is required in production mode.")


def wire_services(app: FastAPI, store: IdentityStore, cache: CodeCache, mailer, settings: Settings) -> None:
    """Assemble the orchestrators from explicit collaborators onto app.state.

    Shared by the real lifespan and the test lifespan so both wire the same graph.
    """
    verification = VerificationOrchestrator(
        cache=cache,
        mailer=mailer,
        generator=CodeGenerator(),
        code_ttl_seconds=settings.verification_code_ttl_seconds,
        verify_page_url=settings.verification_page_url,
    )
    claims = ClaimSynchronizer(store)
    app.state.identity_store = store
    app.state.code_cache = cache
    app.state.mailer = mailer
    app.state.verification = verification
    app.state.claims = claims
    app.state.accounts = CredentialOrchestrator(
        store=store,
        verification=verification,
        claims=claims,
        issue_token=create_access_token,
        default_role=settings.default_role,
        allow_unconfirmed_sign_in=settings.allow_unconfirmed_sign_in,
        token_expire_seconds=settings.token_expire_seconds,
        persistent_token_expire_seconds=settings.persistent_token_expire_seconds,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Identity store, then seed roles (sign-up assigns the default role).
      2. Code cache and mail dispatcher.
      3. Orchestrators wired from the above.
      4. Purge task last -- references app.state.code_cache.
    """
    settings = get_settings()
    logger.info("Account service starting up")
    store = IdentityStore(db_url=settings.database_url, require_confirmed_email=not settings.allow_unconfirmed_sign_in)
    store.seed(settings.seed_roles, settings.admin_email, settings.admin_password)
    logger.info("Identity store initialized")
    cache = CodeCache(ttl=settings.verification_code_ttl_seconds)
    mailer = _build_mailer(settings)
    wire_services(app, store, cache, mailer, settings)
    app.state.oauth = oauth_client
    app.state.purge_task = asyncio.create_task(_purge_loop(app, settings.code_purge_interval_seconds))

    yield

    # Shutdown
    app.state.purge_task.cancel()
    cache.close()
    mailer.close()
    store.close()
    logger.info("Account service shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Account Service API",
    description="Local and external sign-in, JWT issuance, and email verification codes.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost", "testserver"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    allow_credentials=True,
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SessionMiddleware is required by authlib to store the OAuth state value
# between the authorization redirect and the callback (CSRF protection for the
# authorization code flow). The return URL rides along in the same session.
app.add_middleware(SessionMiddleware, secret_key=_settings.secret_key, https_only=_settings.secure_cookies)

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

app.include_router(accounts_router, prefix="/api/v1", tags=["Accounts"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error leaves the service in one envelope:
#   {"error": {"code": ..., "message": ..., "detail": ...}}
# Orchestrator failures are rendered by the routes; these cover the rest.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with Retry-After. Sign-in and verification routes are the limited ones."""
    logger.warning("Rate limit hit on %s from %s", request.url.path, request.client.host if request.client else "?")
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc.detail))
    response.headers["Retry-After"] = str(int(getattr(exc, "retry_after", 60)))
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """422 for malformed bodies and query params (bad email, short password, non-numeric code)."""
    fields = ", ".join(".".join(str(p) for p in err.get("loc", ())) for err in exc.errors())
    return _error_response(422, "validation_error", "Request validation failed.", fields or None)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured dict details (e.g. the 401 from get_current_identity) pass through as-is."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(IdentityStoreError)
async def identity_store_error_handler(request: Request, exc: IdentityStoreError) -> JSONResponse:
    """Store failures outside an orchestrator (auth dependency, /me) become a 503."""
    logger.error("Identity store failure on %s %s: %s", request.method, request.url.path, exc)
    return _error_response(503, "store_unavailable", "Service temporarily unavailable.")


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # The traceback goes to the log only.
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit -- load balancer checks must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness plus a database round trip."""
    components = {"app": "ok", "database": "ok"}
    try:
        request.app.state.identity_store.has_users()
    except IdentityStoreError:
        components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=__version__, components=components)
