"""
auth/dependencies.py -- FastAPI Depends() helpers for access-token checks.

Access tokens are validated statelessly: signature and expiry only, via the
TokenIssuer on app.state. The permission snapshot inside the token is what
authorizes the request -- there is no per-request database lookup.

try_get_current_claims() is the soft variant (returns None on failure).
get_current_claims() raises HTTP 401 if unauthenticated.
require_permission(code) builds a dependency that also raises HTTP 403 when
the token does not carry `code`.

Layer rule: may import fastapi (this module is part of FastAPI's dependency
injection), never api/ or core/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import AccessTokenClaims
from auth.tokens import TokenIssuer


def try_get_current_claims(request: Request) -> AccessTokenClaims | None:
    """Return the claims of the Authorization: Bearer token, or None. Never raises."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    issuer: TokenIssuer = request.app.state.issuer
    return issuer.decode(auth_header[7:])


def get_current_claims(request: Request) -> AccessTokenClaims:
    """Require a valid access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(claims: AccessTokenClaims = Depends(get_current_claims)): ...
    """
    claims = try_get_current_claims(request)
    if claims is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return claims


def require_permission(code: str):
    """Return a dependency that requires an access token carrying permission `code`.

    Use as a FastAPI dependency:
        @router.post("/roles")
        async def route(claims: AccessTokenClaims = Depends(require_permission("roles.manage"))): ...
    """

    def dependency(request: Request) -> AccessTokenClaims:
        claims = get_current_claims(request)
        if not claims.has_permission(code):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"Permission {code!r} required."},
            )
        return claims

    return dependency
