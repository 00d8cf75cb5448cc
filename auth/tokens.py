"""
auth/tokens.py -- Access-token (JWT) and refresh-token issuance.

Security design decisions:
  Access token: python-jose with HS256, signed with the service secret. Claims
       are sub (username), user_id, permissions (sorted snapshot), iat, exp,
       typ="access". Signature and expiry are the only checks on use -- no
       storage lookup -- so a permission change takes effect for a user at
       their next refresh or login, at most access_ttl seconds later.

  Refresh token: secrets.token_urlsafe(48) gives 384 bits of entropy. We store
       HMAC-SHA256(secret, raw_token) so lookup is O(1) by hash and a database
       leak does not hand out usable tokens. bcrypt's slowness is unnecessary
       for a value that cannot be brute-forced.

  The secret is a constructor argument. Nothing in this module reads settings,
  so tests can build an issuer with any key.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Iterable

from jose import JWTError, jwt
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import ResolutionFailure
from auth.models import AccessTokenClaims, IssuedTokens, RefreshToken, User
from auth.store import IdentityStore, to_iso

logger = logging.getLogger("identity.auth.tokens")

_ALGORITHM = "HS256"
_TOKEN_TYPE = "access"


def hash_refresh_token(secret_key: str, raw_token: str) -> str:
    """Return HMAC-SHA256(secret_key, raw_token) as a hex string."""
    return hmac.new(secret_key.encode(), raw_token.encode(), hashlib.sha256).hexdigest()


def generate_refresh_token() -> str:
    return secrets.token_urlsafe(48)


def decode_access_token(token: str, secret_key: str) -> AccessTokenClaims | None:
    """Verify a JWT access token. Returns its claims, or None on any failure.

    Returning None (rather than raising) keeps callers simple: any invalid
    token is treated as unauthenticated.
    """
    try:
        payload = jwt.decode(token, secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("typ") != _TOKEN_TYPE or "user_id" not in payload or "sub" not in payload:
        return None
    permissions = payload.get("permissions") or []
    if not isinstance(permissions, list):
        return None
    return AccessTokenClaims(
        user_id=int(payload["user_id"]),
        username=payload["sub"],
        permissions=tuple(permissions),
        expires_at=int(payload["exp"]),
    )


class TokenIssuer:
    """Mints access/refresh token pairs.

    Args:
        store:       Storage collaborator that persists refresh tokens.
        secret_key:  HS256 signing key and refresh-token HMAC key.
        access_ttl:  Access-token lifetime in seconds.
        refresh_ttl: Refresh-token lifetime in seconds.
    """

    def __init__(self, store: IdentityStore, secret_key: str, access_ttl: int, refresh_ttl: int) -> None:
        self._store = store
        self._secret_key = secret_key
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    def issue(self, user: User, permissions: Iterable[str]) -> IssuedTokens:
        """Mint an access token carrying `permissions` and persist a fresh refresh token.

        Raises ResolutionFailure if the refresh token cannot be stored. That is
        the only step whose failure aborts a login or refresh.
        """
        now = datetime.now(timezone.utc)
        access_token = self.create_access_token(user, permissions, now=now)

        raw = generate_refresh_token()
        record = RefreshToken(
            token_hash=self.hash(raw),
            user_id=user.id,
            expires_at=to_iso(now + timedelta(seconds=self.refresh_ttl)),
        )
        try:
            self._store.create_refresh_token(record)
        except SQLAlchemyError as exc:
            logger.error("Could not persist refresh token for user id=%s: %s", user.id, exc)
            raise ResolutionFailure() from exc

        return IssuedTokens(
            access_token=access_token,
            refresh_token=raw,
            access_expires_in=self.access_ttl,
            refresh_expires_in=self.refresh_ttl,
        )

    def create_access_token(self, user: User, permissions: Iterable[str], now: datetime | None = None) -> str:
        now = now or datetime.now(timezone.utc)
        payload = {
            "sub": user.username,
            "user_id": user.id,
            "permissions": sorted(set(permissions)),
            "typ": _TOKEN_TYPE,
            "iat": now,
            "exp": now + timedelta(seconds=self.access_ttl),
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def decode(self, token: str) -> AccessTokenClaims | None:
        return decode_access_token(token, self._secret_key)

    def hash(self, raw_token: str) -> str:
        return hash_refresh_token(self._secret_key, raw_token)
