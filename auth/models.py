"""
auth/models.py -- Domain dataclasses for identity entities.

Pattern: Data class (pure data container, zero logic). The store maps rows to
these; the auth components and routes do the work.

Optional columns are typed `X | None`. None means "not set" -- there are no
separate validity flags.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field

STATUS_ACTIVE = "ACTIVE"
STATUS_INACTIVE = "INACTIVE"
STATUS_LOCKED = "LOCKED"

USER_STATUSES = (STATUS_ACTIVE, STATUS_INACTIVE, STATUS_LOCKED)

DATA_SCOPE_ALL = "all"
DATA_SCOPE_OWN = "own"


@dataclass
class User:
    """A principal that can hold a session.

    hashed_password is None for federated-only users; they cannot use the
    password login. external_login is True once the account has been created
    or used through a federated identity provider.

    A user holds at most one role (role_id).
    """

    username: str
    full_name: str = ""
    id: int | None = None
    hashed_password: str | None = None  # None = federated-only user
    email: str | None = None
    phone: str | None = None
    avatar: str | None = None
    status: str = STATUS_ACTIVE
    role_id: int | None = None
    external_login: bool = False
    last_login: str | None = None
    created_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE


@dataclass
class Role:
    """A named bundle of permissions.

    level orders roles by privilege: lower is more privileged (SUPER_ADMIN is 0).
    is_system marks built-in roles, which the store refuses to delete.
    """

    code: str
    name: str
    id: int | None = None
    description: str | None = None
    level: int = 100
    is_system: bool = False
    status: str = STATUS_ACTIVE


@dataclass
class Permission:
    """One grantable capability, e.g. code="users.manage" (module="users", action="manage")."""

    code: str
    module: str
    action: str
    name: str
    id: int | None = None


@dataclass
class RolePermission:
    """A permission granted to a role, narrowed by data_scope ("all" or "own")."""

    role_id: int
    permission_id: int
    id: int | None = None
    permission_code: str = ""
    data_scope: str = DATA_SCOPE_ALL


@dataclass
class RefreshToken:
    """Server-side record of an issued refresh token.

    Only the HMAC of the opaque value is stored (token_hash). revoked_at is set
    exactly once -- by rotation or by logout -- and never cleared.
    """

    token_hash: str
    user_id: int
    expires_at: str  # ISO 8601 UTC
    id: int | None = None
    revoked_at: str | None = None
    created_at: str | None = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass(frozen=True)
class AccessTokenClaims:
    """Verified contents of an access token. Derived, never persisted."""

    user_id: int
    username: str
    permissions: tuple[str, ...]
    expires_at: int  # unix seconds

    def has_permission(self, code: str) -> bool:
        return code in self.permissions


@dataclass(frozen=True)
class FederatedIdentity:
    """Subject attributes extracted from a verified identity assertion."""

    subject: str
    email: str
    full_name: str
    issuer: str
    avatar: str | None = None


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    access_expires_in: int
    refresh_expires_in: int


@dataclass
class SessionUser:
    """The user projection returned with every session."""

    id: int
    username: str
    full_name: str
    avatar: str | None
    email: str | None
    role: str
    permissions: list[str] = field(default_factory=list)


@dataclass
class Session:
    """Result of login, federated login, and refresh."""

    tokens: IssuedTokens
    user: SessionUser
