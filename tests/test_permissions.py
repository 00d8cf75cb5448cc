"""
tests/test_permissions.py -- Role -> permission resolution.

Resolution fails closed (empty set) for missing users, users without a role,
and roles that are not ACTIVE. It reads the store on every call, so grant
changes are visible at once.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import ResolutionFailure
from auth.models import STATUS_INACTIVE, Permission, User
from auth.permissions import PermissionResolver
from auth.store import IdentityStore
from conftest import SeededEditor


def test_resolves_role_grants(store: IdentityStore, alice: SeededEditor) -> None:
    assert PermissionResolver(store).resolve(alice.user_id) == frozenset({"doc.read", "doc.write"})


def test_user_without_role_has_no_permissions(store: IdentityStore) -> None:
    uid = store.create_user(User(username="bob"))
    assert PermissionResolver(store).resolve(uid) == frozenset()


def test_unknown_user_has_no_permissions(store: IdentityStore) -> None:
    assert PermissionResolver(store).resolve(12345) == frozenset()


def test_inactive_role_grants_nothing(store: IdentityStore, alice: SeededEditor) -> None:
    store.update_role(alice.role_id, status=STATUS_INACTIVE)
    assert PermissionResolver(store).resolve(alice.user_id) == frozenset()


def test_grant_changes_are_visible_immediately(store: IdentityStore, alice: SeededEditor) -> None:
    resolver = PermissionResolver(store)
    assert "doc.delete" not in resolver.resolve(alice.user_id)

    pid = store.upsert_permission(Permission(code="doc.delete", module="doc", action="delete", name="Delete"))
    store.assign_permission(alice.role_id, pid)
    assert "doc.delete" in resolver.resolve(alice.user_id)

    store.remove_permission(alice.role_id, alice.write_id)
    assert resolver.resolve(alice.user_id) == frozenset({"doc.read", "doc.delete"})


def test_removing_role_from_user_revokes_everything(store: IdentityStore, alice: SeededEditor) -> None:
    store.update_user(alice.user_id, role_id=None)
    assert PermissionResolver(store).resolve(alice.user_id) == frozenset()


def test_storage_failure_is_resolution_failure() -> None:
    broken = MagicMock()
    broken.get_user_by_id.side_effect = OperationalError("SELECT", {}, Exception("db down"))
    with pytest.raises(ResolutionFailure):
        PermissionResolver(broken).resolve(1)
