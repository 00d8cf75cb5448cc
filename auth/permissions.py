"""
auth/permissions.py -- Role -> permission resolution.

A user holds at most one role; the role's grants are the user's permissions.
Resolution fails closed: no user, no role, a role that is not ACTIVE, or a
role without grants all give the empty set. Nothing is cached between calls -- removing a role from a user
must take effect at the next issuance, not when a cache expires.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import ResolutionFailure
from auth.models import STATUS_ACTIVE
from auth.store import IdentityStore

logger = logging.getLogger("identity.auth.permissions")


class PermissionResolver:
    def __init__(self, store: IdentityStore) -> None:
        self._store = store

    def resolve(self, user_id: int) -> frozenset[str]:
        """Return the permission codes currently granted to user_id through their role."""
        try:
            user = self._store.get_user_by_id(user_id)
            if user is None or user.role_id is None:
                return frozenset()
            role = self._store.get_role_by_id(user.role_id)
            if role is None or role.status != STATUS_ACTIVE:
                return frozenset()
            grants = self._store.list_role_permissions(role.id)
        except SQLAlchemyError as exc:
            logger.error("Permission resolution failed for user id=%s: %s", user_id, exc)
            raise ResolutionFailure() from exc
        return frozenset(g.permission_code for g in grants)
