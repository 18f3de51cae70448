"""Role/permission registry.

Every mutation is authorized through the resolver against the acting user:
role changes need ``manage_roles``, permission changes need
``manage_permissions``, and attaching/detaching a permission on a role needs
both. Before the capability check, the actor's own permission set is
recomputed as it would look after the change; if that would cost the actor
a management capability they hold today, the change is refused with
``SelfLockout``. The super-authority role is exempt from both checks.

Cache entries affected by a change are invalidated before the call returns.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from authcore.config import Settings, settings
from authcore.errors import NotFound, SelfLockout, Unauthorized
from authcore.models import (
    Permission,
    PermissionAction,
    PermissionQuery,
    PermissionType,
    Role,
    User,
)
from authcore.services.permission_service import (
    MANAGE_PERMISSIONS,
    MANAGE_ROLES,
    PermissionResolver,
    grants,
)
from authcore.storage import Query, StorageAdapter

logger = logging.getLogger(__name__)

_MANAGEMENT = {"manage_roles": MANAGE_ROLES, "manage_permissions": MANAGE_PERMISSIONS}

# The super-authority role is seeded under config.super_authority_role.
SUPER_AUTHORITY_DESCRIPTION = "Full access to everything"

DEFAULT_ROLES: tuple[tuple[str, str], ...] = (
    ("developer", "Builds and configures collections"),
    ("editor", "Creates and edits content"),
    ("user", "Reads content"),
)

DEFAULT_PERMISSIONS: tuple[dict[str, Any], ...] = (
    {
        "name": "create_content",
        "context_id": "content",
        "action": PermissionAction.create,
        "context_type": PermissionType.collection,
        "description": "Create content",
    },
    {
        "name": "read_content",
        "context_id": "content",
        "action": PermissionAction.read,
        "context_type": PermissionType.collection,
        "description": "Read content",
    },
    {
        "name": "update_content",
        "context_id": "content",
        "action": PermissionAction.update,
        "context_type": PermissionType.collection,
        "description": "Update content",
    },
    {
        "name": "delete_content",
        "context_id": "content",
        "action": PermissionAction.delete,
        "context_type": PermissionType.collection,
        "description": "Delete content",
    },
    {
        "name": "manage_roles",
        "context_id": MANAGE_ROLES.context_id,
        "action": MANAGE_ROLES.action,
        "context_type": MANAGE_ROLES.context_type,
        "description": "Create, edit and assign roles",
    },
    {
        "name": "manage_permissions",
        "context_id": MANAGE_PERMISSIONS.context_id,
        "action": MANAGE_PERMISSIONS.action,
        "context_type": MANAGE_PERMISSIONS.context_type,
        "description": "Create, edit and assign permissions",
    },
)


def _without(permissions: Iterable[Permission], permission_id: str) -> list[Permission]:
    return [p for p in permissions if p.permission_id != permission_id]


def _merge(*groups: Iterable[Permission]) -> list[Permission]:
    merged: dict[str, Permission] = {}
    for group in groups:
        for permission in group:
            merged.setdefault(permission.permission_id, permission)
    return list(merged.values())


class RoleRegistry:
    def __init__(
        self,
        storage: StorageAdapter,
        resolver: PermissionResolver,
        *,
        config: Settings = settings,
    ) -> None:
        self.storage = storage
        self.resolver = resolver
        self.cache = resolver.cache
        self.config = config

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def _authorize(
        self,
        actor: User,
        required: tuple[PermissionQuery, ...],
        *,
        after: list[Permission] | None = None,
        action: str,
    ) -> None:
        """Refuse the change on self-lockout first, then on missing capability.

        ``after`` is the actor's permission set once the change is applied, or
        ``None`` when the change cannot affect the actor.
        """
        if self.resolver.is_super_authority(actor):
            return
        before = await self.resolver.get_user_permissions(actor)
        if after is not None:
            for name, query in _MANAGEMENT.items():
                if grants(before, query) and not grants(after, query):
                    logger.warning(
                        "Blocked self-lockout: %s by user %s would remove their %s",
                        action,
                        actor.id,
                        name,
                    )
                    raise SelfLockout(f"{action} would remove your own {name} capability")
        for query in required:
            if not self.resolver.evaluate(actor, before, query):
                logger.warning(
                    "User %s lacks %s/%s for %s",
                    actor.id,
                    query.context_id,
                    query.action.value,
                    action,
                )
                raise Unauthorized(f"Not allowed to {action}")

    async def _direct_grants(self, user: User) -> list[Permission]:
        if not user.permissions:
            return []
        return await self.storage.list_permissions(user.permissions)

    async def _actor_after_role_change(
        self, actor: User, role_permissions: Iterable[Permission]
    ) -> list[Permission]:
        return _merge(role_permissions, await self._direct_grants(actor))

    async def _require_role(self, role_id: str) -> Role:
        role = await self.storage.get_role_by_id(role_id)
        if role is None:
            raise NotFound(f"Role {role_id} not found")
        return role

    async def _require_permission(self, permission_id: str) -> Permission:
        permission = await self.storage.get_permission_by_id(permission_id)
        if permission is None:
            raise NotFound(f"Permission {permission_id} not found")
        return permission

    async def _require_user(self, user_id: str) -> User:
        record = await self.storage.get_user_by_id(user_id)
        if record is None:
            raise NotFound(f"User {user_id} not found")
        return record.to_user()

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    async def create_role(
        self,
        actor: User,
        name: str,
        *,
        description: str | None = None,
        permissions: Iterable[str] = (),
    ) -> Role:
        await self._authorize(actor, (MANAGE_ROLES,), action="create role")
        role = await self.storage.insert_role(
            Role(name=name, description=description, permissions=list(permissions))
        )
        self.cache.invalidate(role.name)
        logger.info("Role %s created by user %s", role.name, actor.id)
        return role

    async def update_role(self, actor: User, role_id: str, values: Mapping[str, Any]) -> Role:
        current = await self._require_role(role_id)
        after = None
        if current.name == actor.role and ({"name", "permissions"} & set(values)):
            renamed = values.get("name", current.name) != current.name
            if renamed:
                # Users keep the old name, which then resolves to nothing.
                role_permissions: list[Permission] = []
            elif "permissions" in values:
                role_permissions = await self.storage.list_permissions(values["permissions"])
            else:
                role_permissions = await self.resolver.get_cached_role_permissions(current.name)
            after = await self._actor_after_role_change(actor, role_permissions)
        required = (MANAGE_ROLES, MANAGE_PERMISSIONS) if "permissions" in values else (MANAGE_ROLES,)
        await self._authorize(actor, required, after=after, action="update role")
        updated = await self.storage.update_role(role_id, values)
        self.cache.invalidate(current.name, updated.name)
        logger.info("Role %s updated by user %s", role_id, actor.id)
        return updated

    async def delete_role(self, actor: User, role_id: str) -> bool:
        role = await self.storage.get_role_by_id(role_id)
        if role is None:
            return False
        after = None
        if role.name == actor.role:
            after = await self._actor_after_role_change(actor, [])
        await self._authorize(actor, (MANAGE_ROLES,), after=after, action="delete role")
        deleted = await self.storage.delete_role(role_id)
        self.cache.invalidate(role.name)
        if deleted:
            logger.info("Role %s deleted by user %s", role.name, actor.id)
        return deleted

    async def get_role_by_id(self, role_id: str) -> Role | None:
        return await self.storage.get_role_by_id(role_id)

    async def get_role_by_name(self, name: str) -> Role | None:
        return await self.storage.get_role_by_name(name)

    async def get_all_roles(self, query: Query | None = None) -> list[Role]:
        return await self.storage.list_roles(query)

    async def get_permissions_for_role(self, role_id: str) -> list[Permission]:
        role = await self.storage.get_role_by_id(role_id)
        if role is None:
            return []
        return await self.storage.list_permissions(role.permissions)

    async def get_roles_for_permission(self, permission_id: str) -> list[Role]:
        return await self.storage.list_roles_with_permission(permission_id)

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    async def create_permission(
        self,
        actor: User,
        *,
        name: str,
        context_id: str,
        action: PermissionAction | str,
        context_type: PermissionType | str,
        required_role: str | None = None,
        description: str | None = None,
    ) -> Permission:
        await self._authorize(actor, (MANAGE_PERMISSIONS,), action="create permission")
        permission = await self.storage.insert_permission(
            Permission(
                name=name,
                context_id=context_id,
                action=PermissionAction(action),
                context_type=PermissionType(context_type),
                required_role=required_role,
                description=description,
            )
        )
        logger.info("Permission %s created by user %s", permission.name, actor.id)
        return permission

    async def update_permission(
        self, actor: User, permission_id: str, values: Mapping[str, Any]
    ) -> Permission:
        current = await self._require_permission(permission_id)
        candidate = Permission.model_validate({**current.model_dump(), **values})
        before = await self.resolver.get_user_permissions(actor)
        after = None
        if any(p.permission_id == permission_id for p in before):
            after = [*_without(before, permission_id), candidate]
        await self._authorize(
            actor, (MANAGE_PERMISSIONS,), after=after, action="update permission"
        )
        updated = await self.storage.update_permission(permission_id, values)
        self.cache.clear()
        logger.info("Permission %s updated by user %s", permission_id, actor.id)
        return updated

    async def delete_permission(self, actor: User, permission_id: str) -> bool:
        if await self.storage.get_permission_by_id(permission_id) is None:
            return False
        before = await self.resolver.get_user_permissions(actor)
        after = None
        if any(p.permission_id == permission_id for p in before):
            after = _without(before, permission_id)
        await self._authorize(
            actor, (MANAGE_PERMISSIONS,), after=after, action="delete permission"
        )
        deleted = await self.storage.delete_permission(permission_id)
        self.cache.clear()
        if deleted:
            logger.info("Permission %s deleted by user %s", permission_id, actor.id)
        return deleted

    async def get_all_permissions(self) -> list[Permission]:
        return await self.storage.list_permissions()

    async def get_permission_by_id(self, permission_id: str) -> Permission | None:
        return await self.storage.get_permission_by_id(permission_id)

    async def get_permission_by_name(self, name: str) -> Permission | None:
        return await self.storage.get_permission_by_name(name)

    # ------------------------------------------------------------------
    # Role <-> permission
    # ------------------------------------------------------------------

    async def assign_permission_to_role(
        self, actor: User, role_id: str, permission_id: str
    ) -> Role:
        await self._authorize(
            actor,
            (MANAGE_ROLES, MANAGE_PERMISSIONS),
            action="assign permission to role",
        )
        role = await self.storage.add_permission_to_role(role_id, permission_id)
        self.cache.invalidate(role.name)
        logger.info("Permission %s assigned to role %s", permission_id, role.name)
        return role

    async def remove_permission_from_role(
        self, actor: User, role_id: str, permission_id: str
    ) -> Role:
        role = await self._require_role(role_id)
        after = None
        if role.name == actor.role:
            role_permissions = await self.resolver.get_cached_role_permissions(role.name)
            after = await self._actor_after_role_change(
                actor, _without(role_permissions, permission_id)
            )
        await self._authorize(
            actor,
            (MANAGE_ROLES, MANAGE_PERMISSIONS),
            after=after,
            action="remove permission from role",
        )
        updated = await self.storage.remove_permission_from_role(role_id, permission_id)
        self.cache.invalidate(updated.name)
        logger.info("Permission %s removed from role %s", permission_id, updated.name)
        return updated

    # ------------------------------------------------------------------
    # User <-> role / permission
    # ------------------------------------------------------------------

    async def assign_role_to_user(self, actor: User, user_id: str, role_id: str) -> User:
        role = await self._require_role(role_id)
        user = await self._require_user(user_id)
        after = None
        if user.id == actor.id and role.name != self.config.super_authority_role:
            role_permissions = await self.resolver.get_cached_role_permissions(role.name)
            after = await self._actor_after_role_change(actor, role_permissions)
        await self._authorize(actor, (MANAGE_ROLES,), after=after, action="assign role")
        updated = await self.storage.update_user(user_id, {"role": role.name})
        logger.info("Role %s assigned to user %s by %s", role.name, user_id, actor.id)
        return updated.to_user()

    async def remove_role_from_user(self, actor: User, user_id: str, role_id: str) -> User:
        """Fall back to the default role if the user currently holds ``role_id``."""
        role = await self._require_role(role_id)
        user = await self._require_user(user_id)
        if user.role != role.name:
            return user
        fallback = self.config.default_role
        after = None
        if user.id == actor.id and fallback != self.config.super_authority_role:
            role_permissions = await self.resolver.get_cached_role_permissions(fallback)
            after = await self._actor_after_role_change(actor, role_permissions)
        await self._authorize(actor, (MANAGE_ROLES,), after=after, action="remove role")
        updated = await self.storage.update_user(user_id, {"role": fallback})
        logger.info("Role %s removed from user %s by %s", role.name, user_id, actor.id)
        return updated.to_user()

    async def assign_permission_to_user(
        self, actor: User, user_id: str, permission_id: str
    ) -> User:
        await self._authorize(
            actor, (MANAGE_PERMISSIONS,), action="assign permission to user"
        )
        updated = await self.storage.add_permission_to_user(user_id, permission_id)
        logger.info("Permission %s granted directly to user %s", permission_id, user_id)
        return updated.to_user()

    async def remove_permission_from_user(
        self, actor: User, user_id: str, permission_id: str
    ) -> User:
        user = await self._require_user(user_id)
        after = None
        if user.id == actor.id:
            role_permissions = await self.resolver.get_cached_role_permissions(user.role)
            direct = _without(await self._direct_grants(user), permission_id)
            after = _merge(role_permissions, direct)
        await self._authorize(
            actor,
            (MANAGE_PERMISSIONS,),
            after=after,
            action="remove permission from user",
        )
        updated = await self.storage.remove_permission_from_user(user_id, permission_id)
        logger.info("Permission %s revoked from user %s", permission_id, user_id)
        return updated.to_user()

    async def get_roles_for_user(self, user_id: str) -> list[Role]:
        """The user's role as a list; empty for unknown users or dangling role names."""
        record = await self.storage.get_user_by_id(user_id)
        if record is None:
            return []
        role = await self.storage.get_role_by_name(record.role)
        return [role] if role is not None else []

    async def get_users_with_role(self, role_name: str) -> list[User]:
        records = await self.storage.list_users({"role": role_name})
        return [record.to_user() for record in records]

    async def get_users_with_permission(self, permission_id: str) -> list[User]:
        records = await self.storage.list_users_with_permission(permission_id)
        return [record.to_user() for record in records]

    async def get_permissions_for_user(self, user: User) -> list[Permission]:
        """Effective permissions: role-derived plus direct grants."""
        return await self.resolver.get_user_permissions(user)

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    async def initialize_defaults(self) -> bool:
        """Seed the default roles and permissions into an empty registry.

        Returns True when anything was created.
        """
        if await self.storage.list_roles() or await self.storage.list_permissions():
            logger.debug("Roles/permissions already present; skipping defaults")
            return False
        super_role = self.config.super_authority_role
        created = []
        for spec in DEFAULT_PERMISSIONS:
            # Management permissions are hinted to the super-authority role.
            required = super_role if spec["name"] in _MANAGEMENT else None
            created.append(
                await self.storage.insert_permission(Permission(**spec, required_role=required))
            )
        all_ids = [p.permission_id for p in created]
        roles = [(super_role, SUPER_AUTHORITY_DESCRIPTION)]
        roles += [(name, text) for name, text in DEFAULT_ROLES if name != super_role]
        for name, description in roles:
            await self.storage.insert_role(
                Role(
                    name=name,
                    description=description,
                    permissions=all_ids if name == super_role else [],
                )
            )
        self.cache.clear()
        logger.info(
            "Initialized %d default roles and %d default permissions",
            len(roles),
            len(created),
        )
        return True
