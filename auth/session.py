"""
auth/session.py -- The externally visible session flows.

  login(username, password)   verify -> resolve -> issue -> side steps
  login_federated(assertion)  verify assertion -> find or create user -> as login
  refresh(token)              rotate -> side steps
  logout(token)               revoke; always succeeds

Token issuance is the durability boundary: once the refresh-token row exists
the session exists. Steps after it (last-login stamp, role-code lookup) run
through _best_effort(), which logs a failure and returns a default instead of
failing a request whose tokens are already minted.

No transaction spans a whole flow. A flow cancelled after issuance leaves an
orphaned refresh token that nobody holds; it expires and is purged.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import replace
from typing import Callable, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.credentials import CredentialVerifier
from auth.errors import InvalidCredentials, ResolutionFailure
from auth.federated import FederatedVerifier
from auth.models import STATUS_ACTIVE, FederatedIdentity, IssuedTokens, Session, SessionUser, User
from auth.permissions import PermissionResolver
from auth.rotation import RefreshRotationManager
from auth.store import IdentityStore
from auth.tokens import TokenIssuer

logger = logging.getLogger("identity.auth.session")

T = TypeVar("T")


def _best_effort(step: str, func: Callable[..., T], *args, default: T = None) -> T:
    """Run a non-critical step. A failure is logged and replaced by `default`."""
    try:
        return func(*args)
    except Exception:  # noqa: BLE001 -- side steps must never fail a minted session
        logger.warning("Best-effort step %r failed", step, exc_info=True)
        return default


class SessionOrchestrator:
    def __init__(
        self,
        store: IdentityStore,
        credentials: CredentialVerifier,
        federated: FederatedVerifier,
        resolver: PermissionResolver,
        issuer: TokenIssuer,
        rotation: RefreshRotationManager,
        federated_audience: str = "",
    ) -> None:
        self._store = store
        self._credentials = credentials
        self._federated = federated
        self._resolver = resolver
        self._issuer = issuer
        self._rotation = rotation
        self._federated_audience = federated_audience

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    def login(self, username: str, password: str) -> Session:
        user = self._credentials.verify_local(username, password)
        return self._open_session(user)

    def login_federated(self, assertion: str) -> Session:
        identity = self._federated.verify_federated(assertion, self._federated_audience)
        user = self._materialize(identity)
        if not user.is_active:
            logger.info("Federated login refused for non-active account id=%s", user.id)
            raise InvalidCredentials()
        return self._open_session(user)

    def refresh(self, token: str) -> Session:
        user, tokens, permissions = self._rotation.rotate(token)
        return self._session(user, tokens, permissions)

    def logout(self, token: str) -> None:
        """Revoke a refresh token. Unknown, revoked, or empty tokens are not an error."""
        if not token:
            return
        revoked = _best_effort("revoke refresh token", self._store.revoke_refresh_token, self._issuer.hash(token))
        if revoked:
            logger.info("Refresh token revoked on logout")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _open_session(self, user: User) -> Session:
        permissions = self._resolver.resolve(user.id)
        tokens = self._issuer.issue(user, permissions)
        _best_effort("update last login", self._store.update_last_login, user.id)
        return self._session(user, tokens, permissions)

    def _session(self, user: User, tokens: IssuedTokens, permissions: frozenset[str]) -> Session:
        return Session(
            tokens=tokens,
            user=SessionUser(
                id=user.id,
                username=user.username,
                full_name=user.full_name,
                avatar=user.avatar,
                email=user.email,
                role=_best_effort("resolve role code", self._role_code, user, default=""),
                permissions=sorted(permissions),
            ),
        )

    def _role_code(self, user: User) -> str:
        if user.role_id is None:
            return ""
        role = self._store.get_role_by_id(user.role_id)
        return role.code if role is not None else ""

    def _materialize(self, identity: FederatedIdentity) -> User:
        """Find the account for a verified email, creating it on first sign-in."""
        try:
            user = self._store.get_user_by_email(identity.email)
            if user is None:
                user = self._create_federated_user(identity)
        except SQLAlchemyError as exc:
            logger.error("Could not resolve federated account: %s", exc)
            raise ResolutionFailure() from exc

        if not user.external_login:
            _best_effort("flag external login", self._store.set_external_login, user.id)
        return user

    def _create_federated_user(self, identity: FederatedIdentity) -> User:
        new_user = User(
            username=identity.email,
            full_name=identity.full_name,
            email=identity.email,
            avatar=identity.avatar,
            status=STATUS_ACTIVE,
            external_login=True,
        )
        try:
            user_id = self._store.create_user(new_user)
        except IntegrityError:
            # A concurrent first sign-in with the same email won the insert.
            existing = self._store.get_user_by_email(identity.email)
            if existing is not None:
                return existing
            # Otherwise the email is already some other account's username.
            new_user = replace(new_user, username=f"{identity.email}-{secrets.token_hex(3)}")
            logger.info("Federated email collides with an existing username; using a suffixed username")
            try:
                user_id = self._store.create_user(new_user)
            except IntegrityError:
                existing = self._store.get_user_by_email(identity.email)
                if existing is None:
                    raise
                return existing
        logger.info("Created federated account id=%s (issuer=%s)", user_id, identity.issuer)
        return self._store.get_user_by_id(user_id)
