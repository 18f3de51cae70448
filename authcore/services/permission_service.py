"""Permission resolver: answers "may this user do X in context Y".

The super-authority check lives here and nowhere else. Everyone else is
judged against role permissions (cached per role name) plus direct grants.
A grant whose context type is ``system`` satisfies a query of any context
type; that wildcard is intentional.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from authcore.config import Settings, settings
from authcore.models import (
    Permission,
    PermissionAction,
    PermissionDecision,
    PermissionQuery,
    PermissionType,
    User,
)
from authcore.services.permission_cache import RolePermissionCache
from authcore.services.session_service import SessionStore
from authcore.storage import StorageAdapter

logger = logging.getLogger(__name__)

MANAGE_ROLES = PermissionQuery(
    context_id="roles",
    action=PermissionAction.manage,
    context_type=PermissionType.system,
)
MANAGE_PERMISSIONS = PermissionQuery(
    context_id="permissions",
    action=PermissionAction.manage,
    context_type=PermissionType.system,
)


def permission_matches(permission: Permission, query: PermissionQuery) -> bool:
    if permission.context_id != query.context_id or permission.action != query.action:
        return False
    return (
        permission.context_type == query.context_type
        or permission.context_type == PermissionType.system
    )


def grants(permissions: Iterable[Permission], query: PermissionQuery) -> bool:
    return any(permission_matches(p, query) for p in permissions)


class PermissionResolver:
    def __init__(
        self,
        storage: StorageAdapter,
        cache: RolePermissionCache | None = None,
        *,
        sessions: SessionStore | None = None,
        config: Settings = settings,
    ) -> None:
        self.storage = storage
        self.cache = cache if cache is not None else RolePermissionCache()
        self.sessions = sessions
        self.config = config

    def is_super_authority(self, user: User) -> bool:
        return user.role == self.config.super_authority_role

    async def get_cached_role_permissions(self, role: str) -> list[Permission]:
        """Flattened permissions of ``role``; an unknown role has none."""
        cached = self.cache.get(role)
        if cached is not None:
            return cached
        generation = self.cache.generation
        record = await self.storage.get_role_by_name(role)
        if record is None:
            logger.warning("Role %s not found while resolving permissions", role)
            permissions: list[Permission] = []
        else:
            permissions = await self.storage.list_permissions(record.permissions)
        self.cache.set(role, permissions, generation=generation)
        return permissions

    async def get_user_permissions(self, user: User) -> list[Permission]:
        """Role-derived permissions plus the user's direct grants, deduplicated."""
        resolved = {p.permission_id: p for p in await self.get_cached_role_permissions(user.role)}
        if user.permissions:
            for permission in await self.storage.list_permissions(user.permissions):
                resolved.setdefault(permission.permission_id, permission)
        return list(resolved.values())

    def evaluate(
        self, user: User, permissions: Iterable[Permission], query: PermissionQuery
    ) -> bool:
        """Decide ``query`` for a non-super user holding ``permissions``."""
        permissions = list(permissions)
        matched = grants(permissions, query)
        if (
            not matched
            and query.required_role is not None
            and query.required_role != self.config.super_authority_role
            and user.role == query.required_role
        ):
            logger.warning(
                "Blocked self-lockout attempt: user %s (role %s) holds no grant for %s on %s",
                user.id,
                user.role,
                query.action.value,
                query.context_id,
            )
        return matched

    async def check_permission(self, user: User, query: PermissionQuery) -> PermissionDecision:
        if self.is_super_authority(user):
            return PermissionDecision(has_permission=True)
        permissions = await self.get_user_permissions(user)
        allowed = self.evaluate(user, permissions, query)
        if not allowed:
            logger.info(
                "Denied %s on %s/%s for user %s",
                query.action.value,
                query.context_type.value,
                query.context_id,
                user.id,
            )
        return PermissionDecision(has_permission=allowed)

    async def check_session_permission(
        self, session_id: str, query: PermissionQuery
    ) -> PermissionDecision:
        if self.sessions is None:
            raise RuntimeError("PermissionResolver was built without a SessionStore")
        user = await self.sessions.validate_session(session_id)
        if user is None:
            return PermissionDecision(has_permission=False)
        return await self.check_permission(user, query)
