"""
API request and response models for the identity service REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from auth.credentials import MAX_PASSWORD_BYTES, password_fits
from auth.models import DATA_SCOPE_ALL, USER_STATUSES, Permission, Role, RolePermission, Session, User

_STATUS_PATTERN = "^(" + "|".join(USER_STATUSES) + ")$"


def _reject_null(value: Optional[str]) -> str:
    # Omitting a field leaves it unchanged; an explicit null would reach a NOT NULL column.
    if value is None:
        raise ValueError("may be omitted but not null")
    return value


# ---------------------------------------------------------------------------
# Auth requests
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    # No whitespace stripping: leading/trailing spaces are part of a password.
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class FederatedLoginRequest(BaseModel):
    """Body of POST /auth/google. Clients send the ID token as id_token or token."""

    id_token: Optional[str] = Field(default=None, max_length=8192)
    token: Optional[str] = Field(default=None, max_length=8192)

    @model_validator(mode="after")
    def require_one_token(self) -> "FederatedLoginRequest":
        if not (self.id_token or self.token):
            raise ValueError("id_token is required")
        return self

    @property
    def assertion(self) -> str:
        return self.id_token or self.token or ""


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=512)


# ---------------------------------------------------------------------------
# Auth responses
# ---------------------------------------------------------------------------


class SessionUserResponse(BaseModel):
    id: int
    username: str
    full_name: str
    avatar: Optional[str]
    email: Optional[str]
    role: str
    permissions: list[str]


class SessionResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: SessionUserResponse

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        u = session.user
        return cls(
            access_token=session.tokens.access_token,
            refresh_token=session.tokens.refresh_token,
            expires_in=session.tokens.access_expires_in,
            user=SessionUserResponse(
                id=u.id,
                username=u.username,
                full_name=u.full_name,
                avatar=u.avatar,
                email=u.email,
                role=u.role,
                permissions=u.permissions,
            ),
        )


class MeResponse(BaseModel):
    user_id: int
    username: str
    permissions: list[str]
    expires_at: int


# ---------------------------------------------------------------------------
# Roles and permissions
# ---------------------------------------------------------------------------


class PermissionResponse(BaseModel):
    id: int
    code: str
    module: str
    action: str
    name: str

    @classmethod
    def from_permission(cls, p: Permission) -> "PermissionResponse":
        return cls(id=p.id, code=p.code, module=p.module, action=p.action, name=p.name)


class RolePermissionResponse(BaseModel):
    id: int
    role_id: int
    permission_id: int
    permission_code: str
    data_scope: str

    @classmethod
    def from_grant(cls, g: RolePermission) -> "RolePermissionResponse":
        return cls(
            id=g.id,
            role_id=g.role_id,
            permission_id=g.permission_id,
            permission_code=g.permission_code,
            data_scope=g.data_scope,
        )


class RoleResponse(BaseModel):
    id: int
    code: str
    name: str
    description: Optional[str]
    level: int
    is_system: bool
    status: str
    permissions: list[RolePermissionResponse] = Field(default_factory=list)

    @classmethod
    def from_role(cls, role: Role, grants: list[RolePermission] | None = None) -> "RoleResponse":
        return cls(
            id=role.id,
            code=role.code,
            name=role.name,
            description=role.description,
            level=role.level,
            is_system=role.is_system,
            status=role.status,
            permissions=[RolePermissionResponse.from_grant(g) for g in grants or []],
        )


class RoleCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=1, max_length=50, pattern=r"^[A-Z][A-Z0-9_]*$")
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=1000)
    level: int = Field(default=100, ge=0)
    status: str = Field(default="ACTIVE", pattern=_STATUS_PATTERN)


class RoleUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=1000)
    level: Optional[int] = Field(default=None, ge=0)
    status: Optional[str] = Field(default=None, pattern=_STATUS_PATTERN)

    @field_validator("name", "status")
    @classmethod
    def not_null(cls, value: Optional[str]) -> str:
        return _reject_null(value)


class PermissionAssign(BaseModel):
    permission_id: int
    data_scope: str = Field(default=DATA_SCOPE_ALL, pattern=r"^(all|own)$")


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Body of POST /users. Without a password the account can only sign in federated."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    full_name: str = Field(default="", max_length=255)
    password: Optional[str] = Field(default=None, min_length=8, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=50)
    avatar: Optional[str] = Field(default=None, max_length=2048)
    role_id: Optional[int] = None
    status: str = Field(default="ACTIVE", pattern=_STATUS_PATTERN)

    @field_validator("password")
    @classmethod
    def password_within_bcrypt_limit(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not password_fits(value):
            raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes")
        return value


class UserUpdate(BaseModel):
    """Body of PUT /users/{id}. Only fields present in the request are changed."""

    model_config = ConfigDict(str_strip_whitespace=True)

    full_name: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    phone: Optional[str] = Field(default=None, max_length=50)
    avatar: Optional[str] = Field(default=None, max_length=2048)
    role_id: Optional[int] = None
    status: Optional[str] = Field(default=None, pattern=_STATUS_PATTERN)

    @field_validator("full_name", "status")
    @classmethod
    def not_null(cls, value: Optional[str]) -> str:
        return _reject_null(value)


class UserResponse(BaseModel):
    id: int
    username: str
    full_name: str
    email: Optional[str]
    phone: Optional[str]
    avatar: Optional[str]
    status: str
    role_id: Optional[int]
    role_code: Optional[str]
    role_name: Optional[str]
    external_login: bool
    last_login: Optional[str]
    created_at: str

    @classmethod
    def from_user(cls, user: User, role: Optional[Role] = None) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            full_name=user.full_name,
            email=user.email,
            phone=user.phone,
            avatar=user.avatar,
            status=user.status,
            role_id=user.role_id,
            role_code=role.code if role else None,
            role_name=role.name if role else None,
            external_login=user.external_login,
            last_login=user.last_login,
            created_at=user.created_at or "",
        )


# ---------------------------------------------------------------------------
# Envelope and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
