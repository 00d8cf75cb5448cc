"""
api/routes/v1/users.py -- User administration.

Routes (all require an access token carrying users.manage):
  GET    /api/v1/users        -- list users with role code and name
  POST   /api/v1/users        -- create user (password optional: federated-only without)
  GET    /api/v1/users/{id}   -- one user
  PUT    /api/v1/users/{id}   -- update profile, role, or status (fields present only)
  DELETE /api/v1/users/{id}   -- delete user and their refresh tokens

Setting status to anything but ACTIVE blocks new logins and refreshes at once;
already-issued access tokens stay valid until they expire.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.exc import IntegrityError

from api.models import UserCreate, UserResponse, UserUpdate
from auth.credentials import hash_password
from auth.dependencies import require_permission
from auth.models import AccessTokenClaims, User
from auth.store import IdentityStore

MANAGE_USERS = "users.manage"

router = APIRouter()


@router.get("/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    claims: AccessTokenClaims = Depends(require_permission(MANAGE_USERS)),
) -> list[UserResponse]:
    store: IdentityStore = request.app.state.store
    roles = {r.id: r for r in store.list_roles()}
    return [UserResponse.from_user(u, roles.get(u.role_id)) for u in store.list_users()]


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    claims: AccessTokenClaims = Depends(require_permission(MANAGE_USERS)),
) -> UserResponse:
    store: IdentityStore = request.app.state.store
    _check_role(store, body.role_id)
    new_user = User(
        username=body.username,
        full_name=body.full_name,
        hashed_password=hash_password(body.password) if body.password else None,
        email=body.email,
        phone=body.phone,
        avatar=body.avatar,
        role_id=body.role_id,
        status=body.status,
    )
    try:
        user_id = store.create_user(new_user)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A user with that username or email already exists."},
        ) from exc
    return _user_response(store, user_id)


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(
    request: Request,
    user_id: int,
    claims: AccessTokenClaims = Depends(require_permission(MANAGE_USERS)),
) -> UserResponse:
    return _user_response(request.app.state.store, user_id)


@router.put("/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserUpdate,
    claims: AccessTokenClaims = Depends(require_permission(MANAGE_USERS)),
) -> UserResponse:
    store: IdentityStore = request.app.state.store
    updates = body.model_dump(exclude_unset=True)
    if "role_id" in updates:
        _check_role(store, updates["role_id"])
    try:
        found = store.update_user(user_id, **updates)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "That email is already in use."},
        ) from exc
    if not found:
        raise _not_found()
    return _user_response(store, user_id)


@router.delete("/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: int,
    claims: AccessTokenClaims = Depends(require_permission(MANAGE_USERS)),
) -> Response:
    """Delete a user. An admin cannot delete their own account."""
    if user_id == claims.user_id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deletion", "message": "You cannot delete your own account."},
        )
    store: IdentityStore = request.app.state.store
    if not store.delete_user(user_id):
        raise _not_found()
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})


def _check_role(store: IdentityStore, role_id: int | None) -> None:
    if role_id is not None and store.get_role_by_id(role_id) is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "unknown_role", "message": "Role does not exist."},
        )


def _user_response(store: IdentityStore, user_id: int) -> UserResponse:
    user = store.get_user_by_id(user_id)
    if user is None:
        raise _not_found()
    role = store.get_role_by_id(user.role_id) if user.role_id is not None else None
    return UserResponse.from_user(user, role)
