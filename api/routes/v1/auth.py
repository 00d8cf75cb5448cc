"""
api/routes/v1/auth.py -- Session endpoints.

Routes:
  POST /api/v1/auth/login    -- username/password -> session; sets refresh cookie
  POST /api/v1/auth/google   -- federated ID token -> session; sets refresh cookie
  POST /api/v1/auth/refresh  -- refresh token (body first, then cookie) -> new session
  POST /api/v1/auth/logout   -- revokes the presented refresh token; clears cookie
  GET  /api/v1/auth/me       -- claims of the bearer access token

Security:
  [H2] Both login endpoints are rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] Failures come from the auth core as AuthError subclasses with fixed
       messages; the app-level handler renders them. Nothing here inspects
       why a login failed.
  [M5] Cache-Control: no-store on every response that carries tokens.

  The refresh token is also set as an httpOnly cookie scoped to /api/v1/auth,
  so browser clients never need to expose it to JavaScript.
"""

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import FederatedLoginRequest, LoginRequest, MeResponse, RefreshRequest, SessionResponse
from auth.dependencies import get_current_claims
from auth.models import AccessTokenClaims, Session
from auth.session import SessionOrchestrator
from core.config import get_settings

REFRESH_COOKIE = "refresh_token"
_COOKIE_PATH = "/api/v1/auth"

router = APIRouter()


# [H2] Route decorator outermost: FastAPI must register the rate-limited wrapper.
_login_limit = limiter.limit(get_settings().login_rate_limit)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=SessionResponse)
@_login_limit
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password.

    Wrong username and wrong password produce the identical 401 body.
    """
    sessions: SessionOrchestrator = request.app.state.sessions
    return _session_response(sessions.login(body.username, body.password))


@router.post("/auth/google", response_model=SessionResponse)
@_login_limit
def login_google(request: Request, body: FederatedLoginRequest) -> JSONResponse:
    """Authenticate with a Google ID token; creates the account on first sign-in."""
    sessions: SessionOrchestrator = request.app.state.sessions
    return _session_response(sessions.login_federated(body.assertion))


@router.post("/auth/refresh", response_model=SessionResponse)
def refresh(request: Request, body: RefreshRequest | None = None) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is consumed."""
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not token:
        raise HTTPException(
            status_code=400,
            detail={"code": "refresh_token_required", "message": "Refresh token required."},
        )
    sessions: SessionOrchestrator = request.app.state.sessions
    return _session_response(sessions.refresh(token))


@router.post("/auth/logout")
def logout(request: Request, body: RefreshRequest | None = None) -> JSONResponse:
    """Revoke the presented refresh token and clear the cookie. Always 200."""
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    sessions: SessionOrchestrator = request.app.state.sessions
    sessions.logout(token or "")
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie(REFRESH_COOKIE, path=_COOKIE_PATH)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(claims: AccessTokenClaims = Depends(get_current_claims)) -> MeResponse:
    """Return the identity and permission snapshot carried by the access token."""
    return MeResponse(
        user_id=claims.user_id,
        username=claims.username,
        permissions=list(claims.permissions),
        expires_at=claims.expires_at,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _session_response(session: Session) -> JSONResponse:
    resp = JSONResponse(status_code=200, content=SessionResponse.from_session(session).model_dump())
    resp.set_cookie(
        REFRESH_COOKIE,
        value=session.tokens.refresh_token,
        httponly=True,
        samesite="lax",
        secure=get_settings().secure_cookies,
        max_age=session.tokens.refresh_expires_in,
        path=_COOKIE_PATH,
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
