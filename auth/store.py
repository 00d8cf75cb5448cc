"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper. IdentityStore is the repository; the
_row_to_* functions are the mappers. Auth components and routes never touch
SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Refresh tokens are stored as HMAC-SHA256 digests (token_hash). A leaked
  database does not yield usable refresh tokens without the signing secret.

  consume_refresh_token() is the single serialization point for refresh-token
  rotation. It is one conditional UPDATE -- "revoke if still live" -- so two
  concurrent redemptions of the same token cannot both succeed, no matter how
  many service instances share the database. There is no process-local lock.

Timestamps are ISO 8601 UTC strings with fixed microsecond precision, so
string comparison in SQL orders them correctly.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import STATUS_ACTIVE, Permission, RefreshToken, Role, RolePermission, User

logger = logging.getLogger("identity.auth.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'identity.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(50), nullable=False, unique=True),
    Column("name", String(100), nullable=False),
    Column("description", Text),
    Column("level", Integer, nullable=False, server_default="100"),
    Column("is_system", Integer, nullable=False, server_default="0"),
    Column("status", String(20), nullable=False, server_default=STATUS_ACTIVE),
)

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("full_name", String(255), nullable=False, server_default=""),
    Column("hashed_password", Text),  # NULL for federated-only users
    Column("email", String(255), unique=True),
    Column("phone", String(50)),
    Column("avatar", Text),
    Column("status", String(20), nullable=False, server_default=STATUS_ACTIVE),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="SET NULL")),
    Column("external_login", Integer, nullable=False, server_default="0"),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(100), nullable=False, unique=True),
    Column("module", String(50), nullable=False),
    Column("action", String(50), nullable=False),
    Column("name", String(255), nullable=False),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False),
    Column("data_scope", String(20), nullable=False, server_default="all"),
    UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("user_id", Integer, nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

# Columns that update_user / update_role accept. Anything else is a caller bug.
_USER_FIELDS = frozenset({"full_name", "email", "phone", "avatar", "status", "role_id", "hashed_password"})
_ROLE_FIELDS = frozenset({"name", "description", "level", "status"})


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(moment: datetime) -> str:
    """Format a timestamp for storage: UTC, fixed microsecond precision."""
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def _checked_fields(fields: dict, allowed: frozenset) -> dict:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown fields: {sorted(unknown)!r}")
    return fields


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for users, roles, permissions, and refresh tokens.

    Usage:
        store = IdentityStore("sqlite:///identity.db")
        uid = store.create_user(User(username="alice", hashed_password=hash_password("secret")))
        user = store.get_user_by_username("alice")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query, False if it errors."""
        try:
            with self.engine.connect() as conn:
                return conn.execute(text("SELECT 1")).scalar() == 1
        except SQLAlchemyError:
            logger.warning("Database ping failed", exc_info=True)
            return False

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email is taken.
        Federated first login relies on this to detect a concurrent creation.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    full_name=user.full_name,
                    hashed_password=user.hashed_password,
                    email=user.email,
                    phone=user.phone,
                    avatar=user.avatar,
                    status=user.status,
                    role_id=user.role_id,
                    external_login=1 if user.external_login else 0,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_user_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive)."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users in creation order."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.id)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update profile, role, or status fields. Returns False if user_id was not found.

        Accepted fields: full_name, email, phone, avatar, status, role_id,
        hashed_password. Unknown keys raise ValueError.
        """
        _checked_fields(fields, _USER_FIELDS)
        if not fields:
            return self.get_user_by_id(user_id) is not None
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC time as last_login."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()

    def set_external_login(self, user_id: int, external: bool = True) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _users.update().where(_users.c.id == user_id).values(external_login=1 if external else 0)
            )
            conn.commit()

    def delete_user(self, user_id: int) -> bool:
        """Delete a user and every refresh token they hold."""
        with self.engine.begin() as conn:
            conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> int:
        """Insert a role. Raises IntegrityError if the code is taken."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _roles.insert().values(
                    code=role.code,
                    name=role.name,
                    description=role.description,
                    level=role.level,
                    is_system=1 if role.is_system else 0,
                    status=role.status,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_role_by_id(self, role_id: int) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_role_by_code(self, code: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.code == code)).fetchone()
        return _row_to_role(row) if row is not None else None

    def list_roles(self) -> list[Role]:
        """Return all roles, most privileged first."""
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.level, _roles.c.code)).fetchall()
        return [_row_to_role(r) for r in rows]

    def update_role(self, role_id: int, **fields) -> bool:
        """Update name, description, level, or status. Code and is_system are immutable."""
        _checked_fields(fields, _ROLE_FIELDS)
        if not fields:
            return self.get_role_by_id(role_id) is not None
        with self.engine.connect() as conn:
            result = conn.execute(_roles.update().where(_roles.c.id == role_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_role(self, role_id: int) -> bool:
        """Delete a non-system role, its permission grants, and its user assignments.

        Returns False if the role does not exist or is a system role. Users
        holding the role are left with no role, so the permission resolver
        fails closed for them.
        """
        with self.engine.begin() as conn:
            result = conn.execute(_roles.delete().where((_roles.c.id == role_id) & (_roles.c.is_system == 0)))
            if result.rowcount == 0:
                return False
            conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
            conn.execute(_users.update().where(_users.c.role_id == role_id).values(role_id=None))
        return True

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def list_permissions(self) -> list[Permission]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _permissions.select().order_by(_permissions.c.module, _permissions.c.action)
            ).fetchall()
        return [_row_to_permission(r) for r in rows]

    def get_permission_by_id(self, permission_id: int) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.id == permission_id)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def get_permission_by_code(self, code: str) -> Permission | None:
        with self.engine.connect() as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.code == code)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def upsert_permission(self, permission: Permission) -> int:
        """Insert a permission, or refresh the display name of an existing code. Returns its ID.

        Bootstrap-only: permissions are reference data and have no other write path.
        """
        with self.engine.begin() as conn:
            existing = conn.execute(
                select(_permissions.c.id).where(_permissions.c.code == permission.code)
            ).scalar()
            if existing is not None:
                conn.execute(_permissions.update().where(_permissions.c.id == existing).values(name=permission.name))
                return existing
            result = conn.execute(
                _permissions.insert().values(
                    code=permission.code,
                    module=permission.module,
                    action=permission.action,
                    name=permission.name,
                )
            )
            return result.inserted_primary_key[0]

    def list_role_permissions(self, role_id: int) -> list[RolePermission]:
        """Return the role's grants joined with their permission codes."""
        query = (
            select(
                _role_permissions.c.id,
                _role_permissions.c.role_id,
                _role_permissions.c.permission_id,
                _role_permissions.c.data_scope,
                _permissions.c.code.label("permission_code"),
            )
            .select_from(_role_permissions.join(_permissions, _permissions.c.id == _role_permissions.c.permission_id))
            .where(_role_permissions.c.role_id == role_id)
            .order_by(_permissions.c.code)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [
            RolePermission(
                id=r.id,
                role_id=r.role_id,
                permission_id=r.permission_id,
                permission_code=r.permission_code,
                data_scope=r.data_scope,
            )
            for r in rows
        ]

    def assign_permission(self, role_id: int, permission_id: int, data_scope: str = "all") -> int:
        """Grant a permission to a role. Raises IntegrityError if already granted."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _role_permissions.insert().values(role_id=role_id, permission_id=permission_id, data_scope=data_scope)
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def remove_permission(self, role_id: int, permission_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _role_permissions.delete().where(
                    (_role_permissions.c.role_id == role_id) & (_role_permissions.c.permission_id == permission_id)
                )
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(self, token: RefreshToken) -> int:
        """Persist a newly issued refresh token. The token counts as issued once this commits."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.insert().values(
                    token_hash=token.token_hash,
                    user_id=token.user_id,
                    expires_at=token.expires_at,
                    revoked_at=None,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_refresh_token(self, token_hash: str) -> RefreshToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def consume_refresh_token(self, token_hash: str, now: datetime | None = None) -> int | None:
        """Atomically revoke a live token and return its owner's user ID.

        The UPDATE only matches a row that is unrevoked and unexpired at `now`,
        so of any number of concurrent callers presenting the same token at
        most one sees rowcount == 1. Everyone else gets None.
        """
        stamp = to_iso(now or datetime.now(timezone.utc))
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.token_hash == token_hash)
                    & (_refresh_tokens.c.revoked_at.is_(None))
                    & (_refresh_tokens.c.expires_at > stamp)
                )
                .values(revoked_at=stamp)
            )
            if result.rowcount != 1:
                return None
            return conn.execute(
                select(_refresh_tokens.c.user_id).where(_refresh_tokens.c.token_hash == token_hash)
            ).scalar_one()

    def revoke_refresh_token(self, token_hash: str) -> bool:
        """Revoke a token if it is still unrevoked. Returns False for unknown or already-revoked tokens."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token_hash == token_hash) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_user_refresh_tokens(self, user_id: int) -> int:
        """Revoke every unrevoked refresh token of a user. Returns the number revoked."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=_now_iso())
            )
            conn.commit()
        return result.rowcount

    def purge_expired_refresh_tokens(self, now: datetime | None = None) -> int:
        """Delete every refresh token past its expiry. Returns number of rows removed.

        Revoked-but-unexpired rows are kept so a replay is still recognized as
        reuse rather than as an unknown token.
        """
        stamp = to_iso(now or datetime.now(timezone.utc))
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= stamp))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        full_name=row.full_name,
        hashed_password=row.hashed_password,
        email=row.email,
        phone=row.phone,
        avatar=row.avatar,
        status=row.status,
        role_id=row.role_id,
        external_login=bool(row.external_login),
        last_login=row.last_login,
        created_at=row.created_at,
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        code=row.code,
        name=row.name,
        description=row.description,
        level=row.level,
        is_system=bool(row.is_system),
        status=row.status,
    )


def _row_to_permission(row) -> Permission:
    return Permission(id=row.id, code=row.code, module=row.module, action=row.action, name=row.name)


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        token_hash=row.token_hash,
        user_id=row.user_id,
        expires_at=row.expires_at,
        revoked_at=row.revoked_at,
        created_at=row.created_at,
    )
