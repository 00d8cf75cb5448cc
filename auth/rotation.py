"""
auth/rotation.py -- Single-use refresh-token rotation.

Each refresh token moves through ISSUED -> consumed (by rotation or logout) or
ISSUED -> expired. Both end states are terminal.

rotate() protocol:
  1. Look the token up by hash. Absent or expired -> fail.
  2. Claim it with IdentityStore.consume_refresh_token(), one conditional
     UPDATE that only succeeds while the token is still live. This is the
     only thing that orders concurrent redemptions of the same token.
  3. Lost the claim -> fail. A token that exists but was already consumed is
     a replay: someone holds a copy of a used token. Logged as a reuse signal;
     with revoke_all_on_reuse every live session of the owner is revoked too.
  4. Won the claim -> resolve permissions fresh (never copied from the old
     access token) and issue a new pair.

Every failure raises the same InvalidOrExpiredToken.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import InvalidOrExpiredToken, ResolutionFailure
from auth.models import IssuedTokens, User
from auth.permissions import PermissionResolver
from auth.store import IdentityStore, to_iso
from auth.tokens import TokenIssuer

logger = logging.getLogger("identity.auth.rotation")


class RefreshRotationManager:
    def __init__(
        self,
        store: IdentityStore,
        resolver: PermissionResolver,
        issuer: TokenIssuer,
        revoke_all_on_reuse: bool = False,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._issuer = issuer
        self._revoke_all_on_reuse = revoke_all_on_reuse

    def rotate(self, presented: str) -> tuple[User, IssuedTokens, frozenset[str]]:
        """Exchange a live refresh token for a new pair.

        Returns (owner, new tokens, permission snapshot in the new access token).
        Raises InvalidOrExpiredToken, or ResolutionFailure on storage errors.
        """
        if not presented:
            raise InvalidOrExpiredToken()
        token_hash = self._issuer.hash(presented)
        now = datetime.now(timezone.utc)

        try:
            record = self._store.get_refresh_token(token_hash)
            if record is None or record.expires_at <= to_iso(now):
                raise InvalidOrExpiredToken()
            user_id = self._store.consume_refresh_token(token_hash, now=now)
            if user_id is None:
                self._on_lost_claim(token_hash)
                raise InvalidOrExpiredToken()
            user = self._store.get_user_by_id(user_id)
        except SQLAlchemyError as exc:
            logger.error("Refresh token rotation failed: %s", exc)
            raise ResolutionFailure() from exc

        if user is None or not user.is_active:
            logger.info("Refresh refused: owner id=%s missing or not active", user_id)
            raise InvalidOrExpiredToken()

        permissions = self._resolver.resolve(user.id)
        tokens = self._issuer.issue(user, permissions)
        return user, tokens, permissions

    def _on_lost_claim(self, token_hash: str) -> None:
        record = self._store.get_refresh_token(token_hash)
        if record is None or not record.is_revoked:
            # Expired between lookup and claim; not a replay.
            return
        logger.warning("Refresh token reuse detected for user id=%s", record.user_id)
        if self._revoke_all_on_reuse:
            revoked = self._store.revoke_user_refresh_tokens(record.user_id)
            logger.warning("Revoked %d live refresh tokens of user id=%s after reuse", revoked, record.user_id)
