"""Auth facade: the operations host applications call.

Wires one storage adapter into the credential, session, token and
role/permission components and adds the flows that span several of them
(login, cascading delete, password reset, invitations).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import timedelta
from typing import Any

from authcore.config import Settings, settings
from authcore.errors import NotFound
from authcore.models import (
    Permission,
    PermissionAction,
    PermissionDecision,
    PermissionQuery,
    PermissionType,
    Role,
    Session,
    Token,
    TokenConsumption,
    TokenType,
    TokenValidation,
    User,
)
from authcore.services.credential_service import CredentialStore, normalize_email
from authcore.services.permission_cache import RolePermissionCache
from authcore.services.permission_service import PermissionResolver
from authcore.services.role_service import RoleRegistry
from authcore.services.session_service import SessionStore
from authcore.services.token_service import TokenStore
from authcore.storage import Query, Sort, StorageAdapter, get_storage_adapter
from authcore.utils.clock import utcnow

logger = logging.getLogger(__name__)


class Auth:
    """Entry point bundling every auth component over a single backend.

    Use as ``async with Auth(adapter) as auth: ...`` or call ``connect()``
    and ``close()`` explicitly.
    """

    def __init__(
        self,
        storage: StorageAdapter | None = None,
        *,
        config: Settings = settings,
        cache: RolePermissionCache | None = None,
    ) -> None:
        self.config = config
        self.storage = storage if storage is not None else get_storage_adapter(config)
        self.credentials = CredentialStore(self.storage, config=config)
        self.sessions = SessionStore(self.storage, config=config)
        self.tokens = TokenStore(self.storage, config=config)
        self.resolver = PermissionResolver(
            self.storage, cache, sessions=self.sessions, config=config
        )
        self.registry = RoleRegistry(self.storage, self.resolver, config=config)

    async def connect(self) -> None:
        await self.storage.connect()
        if self.config.auto_init_roles:
            await self.registry.initialize_defaults()

    async def close(self) -> None:
        await self.storage.close()
        self.credentials.close()

    async def __aenter__(self) -> "Auth":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def create_user(
        self,
        email: str,
        password: str | None = None,
        *,
        role: str | None = None,
        **attributes: Any,
    ) -> User:
        return await self.credentials.create_user(email, password, role=role, **attributes)

    async def verify_login(self, email: str, password: str) -> User | None:
        return await self.credentials.verify_login(email, password)

    async def login(
        self, email: str, password: str, ttl: timedelta | None = None
    ) -> tuple[User, Session] | None:
        """Check credentials and open a session; ``None`` on any failure."""
        user = await self.credentials.verify_login(email, password)
        if user is None:
            return None
        user = await self.credentials.update_user_attributes(
            user.id, {"last_active_at": utcnow(), "last_auth_method": "password"}
        )
        session = await self.sessions.create_session(user.id, ttl)
        return user, session

    async def update_user_attributes(self, user_id: str, values: Mapping[str, Any]) -> User:
        return await self.credentials.update_user_attributes(user_id, values)

    async def block_user(self, user_id: str) -> User:
        user = await self.credentials.block_user(user_id)
        await self.sessions.invalidate_all_user_sessions(user_id)
        return user

    async def unblock_user(self, user_id: str) -> User:
        return await self.credentials.unblock_user(user_id)

    async def delete_user(self, user_id: str) -> bool:
        """Delete the user after removing their sessions and tokens."""
        await self.sessions.invalidate_all_user_sessions(user_id)
        await self.tokens.delete_user_tokens(user_id)
        return await self.credentials.delete_user(user_id)

    async def get_user_by_id(self, user_id: str) -> User | None:
        return await self.credentials.get_user_by_id(user_id)

    async def get_user_by_email(self, email: str) -> User | None:
        return await self.credentials.get_user_by_email(email)

    async def get_all_users(
        self,
        query: Query | None = None,
        *,
        sort: Sort | None = None,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[User]:
        return await self.credentials.get_all_users(query, sort=sort, limit=limit, skip=skip)

    async def get_user_count(self, query: Query | None = None) -> int:
        return await self.credentials.get_user_count(query)

    async def get_recent_user_activities(self, limit: int = 5) -> list[User]:
        return await self.credentials.get_recent_user_activities(limit)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, user_id: str, ttl: timedelta | None = None) -> Session:
        return await self.sessions.create_session(user_id, ttl)

    async def validate_session(self, session_id: str) -> User | None:
        return await self.sessions.validate_session(session_id)

    async def destroy_session(self, session_id: str) -> bool:
        return await self.sessions.destroy_session(session_id)

    async def log_out(self, session_id: str) -> bool:
        """End the caller's session; an unknown id is not an error."""
        return await self.sessions.destroy_session(session_id)

    async def invalidate_all_user_sessions(self, user_id: str) -> int:
        return await self.sessions.invalidate_all_user_sessions(user_id)

    async def update_session_expiry(self, session_id: str, ttl: timedelta) -> Session:
        return await self.sessions.update_session_expiry(session_id, ttl)

    async def get_active_sessions(self, user_id: str) -> list[Session]:
        return await self.sessions.get_active_sessions(user_id)

    async def delete_expired_sessions(self) -> int:
        return await self.sessions.delete_expired_sessions()

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def create_token(
        self,
        *,
        user_id: str,
        email: str,
        type: TokenType | str,
        ttl: timedelta | None = None,
    ) -> str:
        return await self.tokens.create_token(user_id=user_id, email=email, type=type, ttl=ttl)

    async def validate_token(
        self, token: str, user_id: str, type: TokenType | str
    ) -> TokenValidation:
        return await self.tokens.validate_token(token, user_id, type)

    async def consume_token(
        self, token: str, user_id: str, type: TokenType | str
    ) -> TokenConsumption:
        return await self.tokens.consume_token(token, user_id, type)

    async def delete_expired_tokens(self) -> int:
        return await self.tokens.delete_expired_tokens()

    async def get_all_tokens(self, query: Query | None = None) -> list[Token]:
        return await self.tokens.get_all_tokens(query)

    # ------------------------------------------------------------------
    # Password reset and invitations
    # ------------------------------------------------------------------

    async def request_password_reset(
        self, email: str, ttl: timedelta | None = None
    ) -> tuple[str, str] | None:
        """Issue a reset token; returns ``(user_id, token)`` or ``None``.

        Unknown and blocked accounts get ``None`` so callers can respond the
        same way in every case.
        """
        user = await self.credentials.get_user_by_email(email)
        if user is None or user.blocked:
            logger.info("Password reset requested for unknown or blocked account")
            return None
        token = await self.tokens.create_token(
            user_id=user.id, email=user.email, type=TokenType.reset, ttl=ttl
        )
        await self.credentials.update_user_attributes(user.id, {"reset_requested_at": utcnow()})
        return user.id, token

    async def reset_password(
        self, user_id: str, token: str, new_password: str
    ) -> TokenConsumption:
        result = await self.tokens.consume_token(token, user_id, TokenType.reset)
        if not result.consumed:
            logger.warning("Password reset for user %s refused: %s", user_id, result.reason.value)
            return result
        await self.credentials.update_user_attributes(
            user_id,
            {
                "password": new_password,
                "reset_token": None,
                "reset_requested_at": None,
                "failed_attempts": 0,
                "lockout_until": None,
            },
        )
        await self.sessions.invalidate_all_user_sessions(user_id)
        logger.info("Password reset completed for user %s", user_id)
        return result

    async def invite_user(
        self, email: str, role: str | None = None, ttl: timedelta | None = None
    ) -> tuple[User, str]:
        """Provision a password-less user and return it with an invite token."""
        user = await self.credentials.create_user(normalize_email(email), role=role)
        token = await self.tokens.create_token(
            user_id=user.id, email=user.email, type=TokenType.invite, ttl=ttl
        )
        return user, token

    async def accept_invite(
        self, user_id: str, token: str, password: str
    ) -> TokenConsumption:
        result = await self.tokens.consume_token(token, user_id, TokenType.invite)
        if not result.consumed:
            logger.warning("Invite for user %s refused: %s", user_id, result.reason.value)
            return result
        try:
            await self.credentials.update_user_attributes(
                user_id, {"password": password, "is_registered": True}
            )
        except NotFound:
            logger.warning("Data integrity: invite token for missing user %s", user_id)
            raise
        return result

    # ------------------------------------------------------------------
    # Roles and permissions
    # ------------------------------------------------------------------

    async def create_role(
        self,
        actor: User,
        name: str,
        *,
        description: str | None = None,
        permissions: Iterable[str] = (),
    ) -> Role:
        return await self.registry.create_role(
            actor, name, description=description, permissions=permissions
        )

    async def update_role(self, actor: User, role_id: str, values: Mapping[str, Any]) -> Role:
        return await self.registry.update_role(actor, role_id, values)

    async def delete_role(self, actor: User, role_id: str) -> bool:
        return await self.registry.delete_role(actor, role_id)

    async def get_role_by_id(self, role_id: str) -> Role | None:
        return await self.registry.get_role_by_id(role_id)

    async def get_role_by_name(self, name: str) -> Role | None:
        return await self.registry.get_role_by_name(name)

    async def get_all_roles(self, query: Query | None = None) -> list[Role]:
        return await self.registry.get_all_roles(query)

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
        return await self.registry.create_permission(
            actor,
            name=name,
            context_id=context_id,
            action=action,
            context_type=context_type,
            required_role=required_role,
            description=description,
        )

    async def update_permission(
        self, actor: User, permission_id: str, values: Mapping[str, Any]
    ) -> Permission:
        return await self.registry.update_permission(actor, permission_id, values)

    async def delete_permission(self, actor: User, permission_id: str) -> bool:
        return await self.registry.delete_permission(actor, permission_id)

    async def get_all_permissions(self) -> list[Permission]:
        return await self.registry.get_all_permissions()

    async def get_permission_by_id(self, permission_id: str) -> Permission | None:
        return await self.registry.get_permission_by_id(permission_id)

    async def get_permission_by_name(self, name: str) -> Permission | None:
        return await self.registry.get_permission_by_name(name)

    async def get_permissions_for_role(self, role_id: str) -> list[Permission]:
        return await self.registry.get_permissions_for_role(role_id)

    async def get_roles_for_permission(self, permission_id: str) -> list[Role]:
        return await self.registry.get_roles_for_permission(permission_id)

    async def assign_permission_to_role(
        self, actor: User, role_id: str, permission_id: str
    ) -> Role:
        return await self.registry.assign_permission_to_role(actor, role_id, permission_id)

    async def remove_permission_from_role(
        self, actor: User, role_id: str, permission_id: str
    ) -> Role:
        return await self.registry.remove_permission_from_role(actor, role_id, permission_id)

    async def assign_role_to_user(self, actor: User, user_id: str, role_id: str) -> User:
        return await self.registry.assign_role_to_user(actor, user_id, role_id)

    async def remove_role_from_user(self, actor: User, user_id: str, role_id: str) -> User:
        return await self.registry.remove_role_from_user(actor, user_id, role_id)

    async def assign_permission_to_user(
        self, actor: User, user_id: str, permission_id: str
    ) -> User:
        return await self.registry.assign_permission_to_user(actor, user_id, permission_id)

    async def remove_permission_from_user(
        self, actor: User, user_id: str, permission_id: str
    ) -> User:
        return await self.registry.remove_permission_from_user(actor, user_id, permission_id)

    async def get_roles_for_user(self, user_id: str) -> list[Role]:
        return await self.registry.get_roles_for_user(user_id)

    async def get_users_with_role(self, role_name: str) -> list[User]:
        return await self.registry.get_users_with_role(role_name)

    async def get_users_with_permission(self, permission_id: str) -> list[User]:
        return await self.registry.get_users_with_permission(permission_id)

    async def get_permissions_for_user(self, user: User) -> list[Permission]:
        return await self.registry.get_permissions_for_user(user)

    async def check_permission(self, user: User, query: PermissionQuery) -> PermissionDecision:
        return await self.resolver.check_permission(user, query)

    async def check_session_permission(
        self, session_id: str, query: PermissionQuery
    ) -> PermissionDecision:
        return await self.resolver.check_session_permission(session_id, query)

    async def get_cached_role_permissions(self, role: str) -> list[Permission]:
        return await self.resolver.get_cached_role_permissions(role)

    async def initialize_defaults(self) -> bool:
        return await self.registry.initialize_defaults()

    # ------------------------------------------------------------------
    # Generic documents
    # ------------------------------------------------------------------

    async def find_one(self, collection: str, query: Query) -> dict[str, Any] | None:
        return await self.storage.find_one(collection, query)

    async def find_many(
        self,
        collection: str,
        query: Query | None = None,
        *,
        sort: Sort | None = None,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[dict[str, Any]]:
        return await self.storage.find_many(collection, query, sort=sort, limit=limit, skip=skip)

    async def insert_one(self, collection: str, document: Mapping[str, Any]) -> dict[str, Any]:
        return await self.storage.insert_one(collection, document)

    async def insert_many(
        self, collection: str, documents: Iterable[Mapping[str, Any]]
    ) -> list[dict[str, Any]]:
        return await self.storage.insert_many(collection, documents)

    async def update_one(self, collection: str, query: Query, values: Mapping[str, Any]) -> int:
        return await self.storage.update_one(collection, query, values)

    async def update_many(self, collection: str, query: Query, values: Mapping[str, Any]) -> int:
        return await self.storage.update_many(collection, query, values)

    async def delete_one(self, collection: str, query: Query) -> int:
        return await self.storage.delete_one(collection, query)

    async def delete_many(self, collection: str, query: Query | None = None) -> int:
        return await self.storage.delete_many(collection, query)

    async def count_documents(self, collection: str, query: Query | None = None) -> int:
        return await self.storage.count_documents(collection, query)
