"""
api/main.py -- FastAPI application entry point for the identity service.

Run with:  python main.py serve
           uvicorn api.main:app --reload

Middleware (outermost first; Starlette wraps the last registered outermost):
  1. log_requests        -- one log line per request with latency
  2. internal_api_key    -- optional shared-secret guard for internal callers
  3. SlowAPIMiddleware   -- enforces per-route rate limits from api.limiter
  4. CORSMiddleware      -- adds CORS headers for allowed browser origins

Lifespan opens the IdentityStore, wires the auth components onto app.state,
and starts the refresh-token purge task; shutdown undoes both.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.roles import router as roles_router
from api.routes.v1.users import router as users_router
from auth.credentials import CredentialVerifier
from auth.errors import AuthError
from auth.federated import FederatedVerifier
from auth.permissions import PermissionResolver
from auth.rotation import RefreshRotationManager
from auth.session import SessionOrchestrator
from auth.store import IdentityStore
from auth.tokens import TokenIssuer
from core.config import Settings, get_settings

VERSION = "0.1.0"
HEALTH_PATH = "/api/v1/health"
PURGE_INTERVAL_SECONDS = 6 * 60 * 60

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("identity.api")

# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def attach_components(
    app: FastAPI,
    store: IdentityStore,
    settings: Settings,
    federated: FederatedVerifier | None = None,
) -> None:
    """Build the auth components around `store` and publish them on app.state.

    Routes read app.state.store, app.state.issuer, and app.state.sessions.
    Tests call this with an in-memory store and a local federated verifier.
    """
    issuer = TokenIssuer(
        store,
        secret_key=settings.secret_key,
        access_ttl=settings.access_token_expire_seconds,
        refresh_ttl=settings.refresh_token_expire_seconds,
    )
    resolver = PermissionResolver(store)
    if federated is None:
        federated = FederatedVerifier(
            jwks_url=settings.federated_jwks_url,
            issuers=settings.federated_issuers,
            key_set_ttl=settings.federated_jwks_ttl_seconds,
        )
    rotation = RefreshRotationManager(
        store,
        resolver,
        issuer,
        revoke_all_on_reuse=settings.revoke_sessions_on_reuse,
    )
    app.state.store = store
    app.state.issuer = issuer
    app.state.sessions = SessionOrchestrator(
        store,
        credentials=CredentialVerifier(store),
        federated=federated,
        resolver=resolver,
        issuer=issuer,
        rotation=rotation,
        federated_audience=settings.google_client_id,
    )


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired refresh tokens every 6 hours.

    Expired rows are dead weight: rotation already refuses them. Orphans from
    flows cancelled after issuance end up here too. CancelledError from
    task.cancel() during shutdown propagates out of asyncio.sleep.
    """
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        try:
            purged = await asyncio.to_thread(app.state.store.purge_expired_refresh_tokens)
        except Exception:  # noqa: BLE001 -- the loop must survive a bad cycle
            logger.warning("Refresh token purge failed", exc_info=True)
            continue
        if purged:
            logger.info("Purged %d expired refresh tokens", purged)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store and wire components on startup; tear down on shutdown.

    The purge task starts last because it references app.state.store.
    """
    settings = get_settings()
    logger.info("%s starting up", settings.service_name)
    store = IdentityStore(settings.database_url)
    attach_components(app, store, settings)
    if not settings.google_client_id:
        logger.warning("GOOGLE_CLIENT_ID not set -- federated login will reject every assertion")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.store.close()
    logger.info("%s shutdown complete", settings.service_name)


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Identity Service API",
    description="Local and federated login, JWT access tokens, rotating refresh tokens, and role permissions.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Internal-API-Key"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def internal_api_key(request: Request, call_next):
    """Require X-Internal-API-Key on every route but health when INTERNAL_API_KEY is set.

    The key is compared in constant time. The setting is read per request so
    tests can toggle it through get_settings.cache_clear().
    """
    expected = get_settings().internal_api_key
    if expected and request.url.path != HEALTH_PATH and request.method != "OPTIONS":
        presented = request.headers.get("X-Internal-API-Key", "")
        if not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
            return JSONResponse(
                status_code=403,
                content=ErrorResponse(
                    error=ErrorDetail(code="forbidden", message="Invalid or missing internal API key.")
                ).model_dump(),
            )
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


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(roles_router, prefix="/api/v1", tags=["Roles"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render an auth-core failure with its fixed public code and message [C1].

    The cause (if any) was logged where it happened and is not repeated here.
    """
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation.

    Only field locations and messages are echoed back. The submitted values
    are not, since a login body carries a password.
    """
    fields = ["{}: {}".format(".".join(str(p) for p in e.get("loc", ())), e.get("msg", "")) for e in exc.errors()]
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail="; ".join(fields),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a {"code", "message"} dict as
    detail; that dict becomes the error field as-is.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The traceback goes to the log only; the client gets a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined here rather than in a router, with no rate limit and no internal
# key check, so load balancers can always reach it.
# ---------------------------------------------------------------------------


@app.get(HEALTH_PATH, response_model=HealthResponse, tags=["Health"])
async def health(request: Request) -> JSONResponse:
    """Return liveness and the database status. 503 when the database is unreachable."""
    store: IdentityStore = request.app.state.store
    db_ok = await asyncio.to_thread(store.ping)
    body = HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "unavailable"},
    )
    return JSONResponse(status_code=200 if db_ok else 503, content=body.model_dump())
