"""
api/routes/v1/roles.py -- Role and permission administration.

Routes (all require an access token carrying roles.manage):
  GET    /api/v1/roles                                   -- list roles with their grants
  POST   /api/v1/roles                                   -- create role
  GET    /api/v1/roles/{id}                              -- role with grants
  PUT    /api/v1/roles/{id}                              -- update name/description/level/status
  DELETE /api/v1/roles/{id}                              -- delete (system roles: 409)
  GET    /api/v1/permissions                             -- list permission reference data
  POST   /api/v1/roles/{id}/permissions                  -- grant permission with data scope
  DELETE /api/v1/roles/{role_id}/permissions/{perm_id}   -- revoke grant

These are pass-through operations on IdentityStore. A grant change reaches a
user's access token at their next login or refresh.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.exc import IntegrityError

from api.models import PermissionAssign, PermissionResponse, RoleCreate, RoleResponse, RoleUpdate
from auth.dependencies import require_permission
from auth.models import AccessTokenClaims, Role
from auth.store import IdentityStore

MANAGE_ROLES = "roles.manage"

router = APIRouter()


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(
    request: Request,
    claims: AccessTokenClaims = Depends(require_permission(MANAGE_ROLES)),
) -> list[RoleResponse]:
    store: IdentityStore = request.app.state.store
    return [RoleResponse.from_role(r, store.list_role_permissions(r.id)) for r in store.list_roles()]


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(
    request: Request,
    body: RoleCreate,
    claims: AccessTokenClaims = Depends(require_permission(MANAGE_ROLES)),
) -> RoleResponse:
    """Create a non-system role. Roles created over the API are never system roles."""
    store: IdentityStore = request.app.state.store
    role = Role(
        code=body.code,
        name=body.name,
        description=body.description,
        level=body.level,
        status=body.status,
        is_system=False,
    )
    try:
        role_id = store.create_role(role)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A role with that code already exists."},
        ) from exc
    return RoleResponse.from_role(_get_role_or_404(store, role_id))


@router.get("/roles/{role_id}", response_model=RoleResponse)
def get_role(
    request: Request,
    role_id: int,
    claims: AccessTokenClaims = Depends(require_permission(MANAGE_ROLES)),
) -> RoleResponse:
    store: IdentityStore = request.app.state.store
    role = _get_role_or_404(store, role_id)
    return RoleResponse.from_role(role, store.list_role_permissions(role_id))


@router.put("/roles/{role_id}", response_model=RoleResponse)
def update_role(
    request: Request,
    role_id: int,
    body: RoleUpdate,
    claims: AccessTokenClaims = Depends(require_permission(MANAGE_ROLES)),
) -> RoleResponse:
    store: IdentityStore = request.app.state.store
    if not store.update_role(role_id, **body.model_dump(exclude_unset=True)):
        raise _not_found("Role")
    return RoleResponse.from_role(_get_role_or_404(store, role_id), store.list_role_permissions(role_id))


@router.delete("/roles/{role_id}", status_code=204)
def delete_role(
    request: Request,
    role_id: int,
    claims: AccessTokenClaims = Depends(require_permission(MANAGE_ROLES)),
) -> Response:
    """Delete a role. Built-in (system) roles are protected."""
    store: IdentityStore = request.app.state.store
    role = _get_role_or_404(store, role_id)
    if role.is_system or not store.delete_role(role_id):
        raise HTTPException(
            status_code=409,
            detail={"code": "system_role", "message": "System roles cannot be deleted."},
        )
    return Response(status_code=204)


@router.get("/permissions", response_model=list[PermissionResponse])
def list_permissions(
    request: Request,
    claims: AccessTokenClaims = Depends(require_permission(MANAGE_ROLES)),
) -> list[PermissionResponse]:
    store: IdentityStore = request.app.state.store
    return [PermissionResponse.from_permission(p) for p in store.list_permissions()]


@router.post("/roles/{role_id}/permissions", status_code=201)
def assign_permission(
    request: Request,
    role_id: int,
    body: PermissionAssign,
    claims: AccessTokenClaims = Depends(require_permission(MANAGE_ROLES)),
) -> Response:
    store: IdentityStore = request.app.state.store
    _get_role_or_404(store, role_id)
    if store.get_permission_by_id(body.permission_id) is None:
        raise _not_found("Permission")
    try:
        store.assign_permission(role_id, body.permission_id, body.data_scope)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "The role already holds that permission."},
        ) from exc
    return Response(status_code=201)


@router.delete("/roles/{role_id}/permissions/{permission_id}", status_code=204)
def remove_permission(
    request: Request,
    role_id: int,
    permission_id: int,
    claims: AccessTokenClaims = Depends(require_permission(MANAGE_ROLES)),
) -> Response:
    store: IdentityStore = request.app.state.store
    if not store.remove_permission(role_id, permission_id):
        raise _not_found("Permission grant")
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _not_found(what: str) -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": f"{what} not found."})


def _get_role_or_404(store: IdentityStore, role_id: int) -> Role:
    role = store.get_role_by_id(role_id)
    if role is None:
        raise _not_found("Role")
    return role
