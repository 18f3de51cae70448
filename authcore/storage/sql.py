"""Relational backend on async SQLAlchemy + SQLModel tables.

Each public call is one transaction (``async with db.begin()``). Driver
failures are re-raised as ``BackendError``; unique-constraint violations as
``Conflict`` (``DuplicateEmail`` for the users' email column).

Token consumption uses ``DELETE ... RETURNING`` when the dialect supports it
and otherwise a compare-and-delete: select the row, delete it by primary key,
and treat ``rowcount == 0`` as having lost the race to another consumer.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, nulls_last, or_, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel

from authcore.errors import BackendError, Conflict, DuplicateEmail, NotFound
from authcore.models import Permission, Role, Session, Token, UserRecord, new_id
from authcore.schemas.auth import (
    AuthDocument,
    AuthPermission,
    AuthRole,
    AuthRolePermission,
    AuthSession,
    AuthToken,
    AuthUser,
    AuthUserPermission,
)
from authcore.storage.base import Query, Sort, StorageAdapter
from authcore.utils import query as q
from authcore.utils.clock import utcnow
from authcore.utils.db_async import build_engine, describe_database_url

logger = logging.getLogger(__name__)

_NO_SYNC = {"synchronize_session": False}


def _raw(value: Any) -> Any:
    return getattr(value, "value", value)


def _user_record(row: AuthUser, permission_ids: list[str]) -> UserRecord:
    return UserRecord.model_validate({**row.model_dump(), "permissions": permission_ids})


def _session(row: AuthSession) -> Session:
    return Session(
        session_id=row.id,
        user_id=row.user_id,
        expires=row.expires,
        created_at=row.created_at,
    )


def _token(row: Any) -> Token:
    return Token(
        token=row.token,
        user_id=row.user_id,
        email=row.email,
        type=row.type,
        expires=row.expires,
        created_at=row.created_at,
    )


def _role(row: AuthRole, permission_ids: list[str]) -> Role:
    return Role(
        role_id=row.id,
        name=row.name,
        description=row.description,
        permissions=permission_ids,
    )


def _permission(row: AuthPermission) -> Permission:
    return Permission.model_validate(
        {
            "permission_id": row.id,
            "name": row.name,
            "context_id": row.context_id,
            "action": row.action,
            "context_type": row.context_type,
            "required_role": row.required_role,
            "description": row.description,
        }
    )


def _document(row: AuthDocument) -> dict[str, Any]:
    return {"_id": row.id, **row.data}


def _column(model: type[SQLModel], name: str) -> Any:
    if name not in model.model_fields:
        raise ValueError(f"Unknown {model.__name__} field: {name!r}")
    return getattr(model, name)


class SQLStorageAdapter(StorageAdapter):
    backend_name = "sql"

    def __init__(
        self,
        database_url: str,
        *,
        echo: bool = False,
        create_tables: bool = True,
        native_find_and_delete: bool | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.database_url = database_url
        self.echo = echo
        self.create_tables = create_tables
        # None = use DELETE ... RETURNING when the dialect supports it
        self.native_find_and_delete = native_find_and_delete
        self.engine: AsyncEngine | None = None
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None

    async def _open(self) -> None:
        if self.engine is not None:
            return
        logger.info("DB target: %s", describe_database_url(self.database_url))
        engine = build_engine(self.database_url, echo=self.echo)
        try:
            async with engine.begin() as conn:
                if self.create_tables:
                    await conn.run_sync(SQLModel.metadata.create_all)
                else:
                    await conn.execute(text("SELECT 1"))
        except Exception:
            await engine.dispose()
            raise
        self.engine = engine
        self._sessionmaker = async_sessionmaker(
            bind=engine, expire_on_commit=False, class_=AsyncSession
        )

    async def close(self) -> None:
        if self.engine is None:
            return
        await self.engine.dispose()
        self.engine = None
        self._sessionmaker = None
        logger.info("Disposed DB engine")

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        if self._sessionmaker is None:
            raise BackendError("SQL adapter is not connected")
        try:
            async with self._sessionmaker() as db:
                async with db.begin():
                    yield db
        except IntegrityError as exc:
            logger.warning("Constraint violation: %s", exc.orig)
            raise Conflict(str(exc.orig)) from exc
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Database operation failed: %s", exc)
            raise BackendError(f"Database operation failed: {exc}") from exc

    def _uses_delete_returning(self) -> bool:
        if self.native_find_and_delete is not None:
            return self.native_find_and_delete
        assert self.engine is not None
        return bool(self.engine.dialect.delete_returning)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def _user_permission_ids(
        self, db: AsyncSession, user_ids: list[str]
    ) -> dict[str, list[str]]:
        grants: dict[str, list[str]] = defaultdict(list)
        if not user_ids:
            return grants
        result = await db.execute(
            select(AuthUserPermission.user_id, AuthUserPermission.permission_id).where(
                AuthUserPermission.user_id.in_(user_ids)  # type: ignore[attr-defined]
            )
        )
        for user_id, permission_id in result.all():
            grants[user_id].append(permission_id)
        return grants

    async def _load_user(self, db: AsyncSession, user_id: str) -> UserRecord | None:
        row = await db.get(AuthUser, user_id)
        if row is None:
            return None
        grants = await self._user_permission_ids(db, [user_id])
        return _user_record(row, grants[user_id])

    async def _users(self, db: AsyncSession, rows: list[AuthUser]) -> list[UserRecord]:
        grants = await self._user_permission_ids(db, [row.id for row in rows])
        return [_user_record(row, grants[row.id]) for row in rows]

    def _user_filters(self, query: Query | None) -> list[Any]:
        filters = []
        for name, value in (query or {}).items():
            if name == "permissions":
                raise ValueError("Filter direct grants with list_users_with_permission()")
            filters.append(_column(AuthUser, name) == _raw(value))
        return filters

    async def _replace_user_permissions(
        self, db: AsyncSession, user_id: str, permission_ids: list[str]
    ) -> None:
        await db.execute(
            delete(AuthUserPermission)
            .where(AuthUserPermission.user_id == user_id)  # type: ignore[arg-type]
            .execution_options(**_NO_SYNC)
        )
        for permission_id in dict.fromkeys(permission_ids):
            if await db.get(AuthPermission, permission_id) is None:
                raise NotFound(f"Permission {permission_id} not found")
            db.add(AuthUserPermission(user_id=user_id, permission_id=permission_id))

    async def insert_user(self, user: UserRecord) -> UserRecord:
        try:
            async with self._transaction() as db:
                existing = await db.execute(
                    select(AuthUser.id).where(AuthUser.email == user.email)  # type: ignore[arg-type]
                )
                if existing.first() is not None:
                    raise DuplicateEmail(user.email)
                db.add(AuthUser(**user.model_dump(exclude={"permissions"})))
                await db.flush()
                await self._replace_user_permissions(db, user.id, user.permissions)
        except DuplicateEmail:
            raise
        except Conflict as exc:
            # Lost a race with a concurrent insert of the same email.
            raise DuplicateEmail(user.email) from exc
        return user.model_copy(deep=True)

    async def get_user_by_id(self, user_id: str) -> UserRecord | None:
        async with self._transaction() as db:
            return await self._load_user(db, user_id)

    async def get_user_by_email(self, email: str) -> UserRecord | None:
        async with self._transaction() as db:
            result = await db.execute(
                select(AuthUser).where(AuthUser.email == email)  # type: ignore[arg-type]
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return (await self._users(db, [row]))[0]

    async def update_user(self, user_id: str, values: Mapping[str, Any]) -> UserRecord:
        if "id" in values and values["id"] != user_id:
            raise ValueError("id cannot be changed")
        unknown = set(values) - set(UserRecord.model_fields)
        if unknown:
            raise ValueError(f"Unknown UserRecord fields: {sorted(unknown)}")
        try:
            async with self._transaction() as db:
                current = await self._load_user(db, user_id)
                if current is None:
                    raise NotFound(f"User {user_id} not found")
                updated = UserRecord.model_validate(
                    {**current.model_dump(), **values, "updated_at": utcnow()}
                )
                columns = {
                    name: getattr(updated, name)
                    for name in (set(values) | {"updated_at"}) - {"id", "permissions"}
                }
                await db.execute(
                    update(AuthUser)
                    .where(AuthUser.id == user_id)  # type: ignore[arg-type]
                    .values(**columns)
                    .execution_options(**_NO_SYNC)
                )
                if "permissions" in values:
                    await self._replace_user_permissions(db, user_id, updated.permissions)
        except Conflict as exc:
            if "email" in values and not isinstance(exc, DuplicateEmail):
                raise DuplicateEmail(updated.email) from exc
            raise
        return updated

    async def record_login_failure(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout_until: datetime,
        now: datetime,
    ) -> UserRecord | None:
        async with self._transaction() as db:
            # The first UPDATE holds the row lock until commit, so concurrent
            # failures are counted one after another.
            await db.execute(
                update(AuthUser)
                .where(
                    AuthUser.id == user_id,  # type: ignore[arg-type]
                    or_(
                        AuthUser.lockout_until.is_(None),  # type: ignore[union-attr]
                        AuthUser.lockout_until <= now,  # type: ignore[operator]
                    ),
                )
                .values(failed_attempts=AuthUser.failed_attempts + 1, updated_at=now)  # type: ignore[operator]
                .execution_options(**_NO_SYNC)
            )
            await db.execute(
                update(AuthUser)
                .where(
                    AuthUser.id == user_id,  # type: ignore[arg-type]
                    AuthUser.failed_attempts >= max_attempts,  # type: ignore[operator]
                )
                .values(failed_attempts=0, lockout_until=lockout_until, updated_at=now)
                .execution_options(**_NO_SYNC)
            )
            return await self._load_user(db, user_id)

    async def delete_user(self, user_id: str) -> bool:
        async with self._transaction() as db:
            await db.execute(
                delete(AuthUserPermission)
                .where(AuthUserPermission.user_id == user_id)  # type: ignore[arg-type]
                .execution_options(**_NO_SYNC)
            )
            result = await db.execute(
                delete(AuthUser)
                .where(AuthUser.id == user_id)  # type: ignore[arg-type]
                .execution_options(**_NO_SYNC)
            )
            return result.rowcount > 0

    async def list_users(
        self,
        query: Query | None = None,
        *,
        sort: Sort | None = None,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[UserRecord]:
        stmt = select(AuthUser).where(*self._user_filters(query))
        for name, order in (sort or {}).items():
            if order not in ("asc", "desc"):
                raise ValueError(f"Invalid sort order for {name!r}: {order!r}")
            column = _column(AuthUser, name)
            stmt = stmt.order_by(nulls_last(column.asc() if order == "asc" else column.desc()))
        if skip < 0 or (limit is not None and limit < 0):
            raise ValueError("limit and skip must be >= 0")
        if skip:
            stmt = stmt.offset(skip)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._transaction() as db:
            rows = list((await db.execute(stmt)).scalars().all())
            return await self._users(db, rows)

    async def count_users(self, query: Query | None = None) -> int:
        stmt = select(func.count()).select_from(AuthUser).where(*self._user_filters(query))
        async with self._transaction() as db:
            return int((await db.execute(stmt)).scalar_one())

    async def add_permission_to_user(self, user_id: str, permission_id: str) -> UserRecord:
        async with self._transaction() as db:
            if await db.get(AuthUser, user_id) is None:
                raise NotFound(f"User {user_id} not found")
            if await db.get(AuthPermission, permission_id) is None:
                raise NotFound(f"Permission {permission_id} not found")
            if await db.get(AuthUserPermission, (user_id, permission_id)) is None:
                db.add(AuthUserPermission(user_id=user_id, permission_id=permission_id))
                await db.flush()
            user = await self._load_user(db, user_id)
            assert user is not None
            return user

    async def remove_permission_from_user(self, user_id: str, permission_id: str) -> UserRecord:
        async with self._transaction() as db:
            if await db.get(AuthUser, user_id) is None:
                raise NotFound(f"User {user_id} not found")
            await db.execute(
                delete(AuthUserPermission)
                .where(
                    AuthUserPermission.user_id == user_id,  # type: ignore[arg-type]
                    AuthUserPermission.permission_id == permission_id,  # type: ignore[arg-type]
                )
                .execution_options(**_NO_SYNC)
            )
            user = await self._load_user(db, user_id)
            assert user is not None
            return user

    async def list_users_with_permission(self, permission_id: str) -> list[UserRecord]:
        async with self._transaction() as db:
            result = await db.execute(
                select(AuthUser)
                .join(AuthUserPermission, AuthUserPermission.user_id == AuthUser.id)  # type: ignore[arg-type]
                .where(AuthUserPermission.permission_id == permission_id)  # type: ignore[arg-type]
            )
            return await self._users(db, list(result.scalars().all()))

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def insert_session(self, session: Session) -> Session:
        async with self._transaction() as db:
            db.add(
                AuthSession(
                    id=session.session_id,
                    user_id=session.user_id,
                    expires=session.expires,
                    created_at=session.created_at,
                    updated_at=session.created_at,
                )
            )
        return session.model_copy()

    async def get_session(self, session_id: str) -> Session | None:
        async with self._transaction() as db:
            row = await db.get(AuthSession, session_id)
            return _session(row) if row is not None else None

    async def update_session_expiry(
        self, session_id: str, expires: datetime, *, now: datetime
    ) -> Session | None:
        async with self._transaction() as db:
            result = await db.execute(
                update(AuthSession)
                .where(
                    AuthSession.id == session_id,  # type: ignore[arg-type]
                    AuthSession.expires > now,  # type: ignore[arg-type,operator]
                )
                .values(expires=expires, updated_at=now)
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                return None
            row = await db.get(AuthSession, session_id, populate_existing=True)
            return _session(row) if row is not None else None

    async def delete_session(self, session_id: str) -> bool:
        async with self._transaction() as db:
            result = await db.execute(
                delete(AuthSession)
                .where(AuthSession.id == session_id)  # type: ignore[arg-type]
                .execution_options(**_NO_SYNC)
            )
            return result.rowcount > 0

    async def delete_user_sessions(self, user_id: str) -> int:
        async with self._transaction() as db:
            result = await db.execute(
                delete(AuthSession)
                .where(AuthSession.user_id == user_id)  # type: ignore[arg-type]
                .execution_options(**_NO_SYNC)
            )
            return int(result.rowcount)

    async def list_sessions(self, user_id: str, *, live_at: datetime) -> list[Session]:
        async with self._transaction() as db:
            result = await db.execute(
                select(AuthSession)
                .where(
                    AuthSession.user_id == user_id,  # type: ignore[arg-type]
                    AuthSession.expires > live_at,  # type: ignore[arg-type,operator]
                )
                .order_by(AuthSession.expires)  # type: ignore[arg-type]
            )
            return [_session(row) for row in result.scalars().all()]

    async def delete_expired_sessions(self, now: datetime) -> int:
        async with self._transaction() as db:
            result = await db.execute(
                delete(AuthSession)
                .where(AuthSession.expires <= now)  # type: ignore[arg-type,operator]
                .execution_options(**_NO_SYNC)
            )
            return int(result.rowcount)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    @staticmethod
    def _token_criteria(token: str, user_id: str, token_type: str) -> tuple[Any, ...]:
        return (
            AuthToken.token == token,  # type: ignore[arg-type]
            AuthToken.user_id == user_id,  # type: ignore[arg-type]
            AuthToken.type == token_type,  # type: ignore[arg-type]
        )

    async def insert_token(self, token: Token) -> Token:
        async with self._transaction() as db:
            db.add(AuthToken(id=new_id(), **token.model_dump()))
        return token.model_copy()

    async def find_token(self, token: str, user_id: str, token_type: str) -> Token | None:
        async with self._transaction() as db:
            result = await db.execute(
                select(AuthToken).where(*self._token_criteria(token, user_id, token_type))
            )
            row = result.scalar_one_or_none()
            return _token(row) if row is not None else None

    async def take_token(self, token: str, user_id: str, token_type: str) -> Token | None:
        criteria = self._token_criteria(token, user_id, token_type)
        async with self._transaction() as db:
            if self._uses_delete_returning():
                result = await db.execute(
                    delete(AuthToken)
                    .where(*criteria)
                    .returning(
                        AuthToken.token,
                        AuthToken.user_id,
                        AuthToken.email,
                        AuthToken.type,
                        AuthToken.expires,
                        AuthToken.created_at,
                    )
                    .execution_options(**_NO_SYNC)
                )
                row = result.one_or_none()
                return _token(row) if row is not None else None

            found = (await db.execute(select(AuthToken).where(*criteria))).scalar_one_or_none()
            if found is None:
                return None
            claimed = _token(found)
            result = await db.execute(
                delete(AuthToken)
                .where(AuthToken.id == found.id)  # type: ignore[arg-type]
                .execution_options(**_NO_SYNC)
            )
            if result.rowcount != 1:
                logger.debug("Token for user %s was consumed concurrently", user_id)
                return None
            return claimed

    async def list_tokens(self, query: Query | None = None) -> list[Token]:
        filters = []
        for name, value in (query or {}).items():
            if name == "id":
                raise ValueError("Unknown Token field: 'id'")
            filters.append(_column(AuthToken, name) == _raw(value))
        async with self._transaction() as db:
            result = await db.execute(
                select(AuthToken).where(*filters).order_by(AuthToken.created_at)  # type: ignore[arg-type]
            )
            return [_token(row) for row in result.scalars().all()]

    async def delete_user_tokens(self, user_id: str) -> int:
        async with self._transaction() as db:
            result = await db.execute(
                delete(AuthToken)
                .where(AuthToken.user_id == user_id)  # type: ignore[arg-type]
                .execution_options(**_NO_SYNC)
            )
            return int(result.rowcount)

    async def delete_expired_tokens(self, now: datetime) -> int:
        async with self._transaction() as db:
            result = await db.execute(
                delete(AuthToken)
                .where(AuthToken.expires <= now)  # type: ignore[arg-type,operator]
                .execution_options(**_NO_SYNC)
            )
            return int(result.rowcount)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    async def _role_permission_ids(
        self, db: AsyncSession, role_ids: list[str]
    ) -> dict[str, list[str]]:
        grants: dict[str, list[str]] = defaultdict(list)
        if not role_ids:
            return grants
        result = await db.execute(
            select(AuthRolePermission.role_id, AuthRolePermission.permission_id).where(
                AuthRolePermission.role_id.in_(role_ids)  # type: ignore[attr-defined]
            )
        )
        for role_id, permission_id in result.all():
            grants[role_id].append(permission_id)
        return grants

    async def _roles(self, db: AsyncSession, rows: list[AuthRole]) -> list[Role]:
        grants = await self._role_permission_ids(db, [row.id for row in rows])
        return [_role(row, grants[row.id]) for row in rows]

    async def _load_role(self, db: AsyncSession, role_id: str) -> Role | None:
        row = await db.get(AuthRole, role_id, populate_existing=True)
        if row is None:
            return None
        return (await self._roles(db, [row]))[0]

    async def _replace_role_permissions(
        self, db: AsyncSession, role_id: str, permission_ids: list[str]
    ) -> None:
        await db.execute(
            delete(AuthRolePermission)
            .where(AuthRolePermission.role_id == role_id)  # type: ignore[arg-type]
            .execution_options(**_NO_SYNC)
        )
        for permission_id in dict.fromkeys(permission_ids):
            if await db.get(AuthPermission, permission_id) is None:
                raise NotFound(f"Permission {permission_id} not found")
            db.add(AuthRolePermission(role_id=role_id, permission_id=permission_id))

    async def insert_role(self, role: Role) -> Role:
        async with self._transaction() as db:
            existing = await db.execute(
                select(AuthRole.id).where(AuthRole.name == role.name)  # type: ignore[arg-type]
            )
            if existing.first() is not None:
                raise Conflict(f"Role {role.name!r} already exists")
            db.add(AuthRole(id=role.role_id, name=role.name, description=role.description))
            await db.flush()
            await self._replace_role_permissions(db, role.role_id, role.permissions)
        return role.model_copy(deep=True)

    async def get_role_by_id(self, role_id: str) -> Role | None:
        async with self._transaction() as db:
            return await self._load_role(db, role_id)

    async def get_role_by_name(self, name: str) -> Role | None:
        async with self._transaction() as db:
            result = await db.execute(
                select(AuthRole).where(AuthRole.name == name)  # type: ignore[arg-type]
            )
            row = result.scalar_one_or_none()
            return (await self._roles(db, [row]))[0] if row is not None else None

    async def list_roles(self, query: Query | None = None) -> list[Role]:
        async with self._transaction() as db:
            rows = list((await db.execute(select(AuthRole).order_by(AuthRole.name))).scalars().all())  # type: ignore[arg-type]
            return q.select(await self._roles(db, rows), query)

    async def update_role(self, role_id: str, values: Mapping[str, Any]) -> Role:
        if "role_id" in values and values["role_id"] != role_id:
            raise ValueError("role_id cannot be changed")
        unknown = set(values) - set(Role.model_fields)
        if unknown:
            raise ValueError(f"Unknown Role fields: {sorted(unknown)}")
        async with self._transaction() as db:
            current = await self._load_role(db, role_id)
            if current is None:
                raise NotFound(f"Role {role_id} not found")
            updated = Role.model_validate({**current.model_dump(), **values})
            if updated.name != current.name:
                clash = await db.execute(
                    select(AuthRole.id).where(AuthRole.name == updated.name)  # type: ignore[arg-type]
                )
                if clash.first() is not None:
                    raise Conflict(f"Role {updated.name!r} already exists")
            await db.execute(
                update(AuthRole)
                .where(AuthRole.id == role_id)  # type: ignore[arg-type]
                .values(name=updated.name, description=updated.description)
                .execution_options(**_NO_SYNC)
            )
            if "permissions" in values:
                await self._replace_role_permissions(db, role_id, updated.permissions)
        return updated

    async def delete_role(self, role_id: str) -> bool:
        async with self._transaction() as db:
            await db.execute(
                delete(AuthRolePermission)
                .where(AuthRolePermission.role_id == role_id)  # type: ignore[arg-type]
                .execution_options(**_NO_SYNC)
            )
            result = await db.execute(
                delete(AuthRole)
                .where(AuthRole.id == role_id)  # type: ignore[arg-type]
                .execution_options(**_NO_SYNC)
            )
            return result.rowcount > 0

    async def add_permission_to_role(self, role_id: str, permission_id: str) -> Role:
        async with self._transaction() as db:
            if await db.get(AuthRole, role_id) is None:
                raise NotFound(f"Role {role_id} not found")
            if await db.get(AuthPermission, permission_id) is None:
                raise NotFound(f"Permission {permission_id} not found")
            if await db.get(AuthRolePermission, (role_id, permission_id)) is None:
                db.add(AuthRolePermission(role_id=role_id, permission_id=permission_id))
                await db.flush()
            role = await self._load_role(db, role_id)
            assert role is not None
            return role

    async def remove_permission_from_role(self, role_id: str, permission_id: str) -> Role:
        async with self._transaction() as db:
            if await db.get(AuthRole, role_id) is None:
                raise NotFound(f"Role {role_id} not found")
            await db.execute(
                delete(AuthRolePermission)
                .where(
                    AuthRolePermission.role_id == role_id,  # type: ignore[arg-type]
                    AuthRolePermission.permission_id == permission_id,  # type: ignore[arg-type]
                )
                .execution_options(**_NO_SYNC)
            )
            role = await self._load_role(db, role_id)
            assert role is not None
            return role

    async def list_roles_with_permission(self, permission_id: str) -> list[Role]:
        async with self._transaction() as db:
            result = await db.execute(
                select(AuthRole)
                .join(AuthRolePermission, AuthRolePermission.role_id == AuthRole.id)  # type: ignore[arg-type]
                .where(AuthRolePermission.permission_id == permission_id)  # type: ignore[arg-type]
                .order_by(AuthRole.name)  # type: ignore[arg-type]
            )
            return await self._roles(db, list(result.scalars().all()))

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    async def _permission_conflict(self, db: AsyncSession, candidate: Permission) -> str | None:
        result = await db.execute(
            select(AuthPermission).where(
                AuthPermission.id != candidate.permission_id,  # type: ignore[arg-type]
            )
        )
        for row in result.scalars().all():
            if row.name == candidate.name:
                return f"Permission {candidate.name!r} already exists"
            if (row.context_id, row.action, row.context_type) == (
                candidate.context_id,
                candidate.action.value,
                candidate.context_type.value,
            ):
                return (
                    f"Permission {row.name!r} already grants "
                    f"{candidate.action.value} on {candidate.context_id}"
                )
        return None

    async def insert_permission(self, permission: Permission) -> Permission:
        async with self._transaction() as db:
            conflict = await self._permission_conflict(db, permission)
            if conflict:
                raise Conflict(conflict)
            db.add(
                AuthPermission(
                    id=permission.permission_id,
                    name=permission.name,
                    context_id=permission.context_id,
                    action=permission.action.value,
                    context_type=permission.context_type.value,
                    required_role=permission.required_role,
                    description=permission.description,
                )
            )
        return permission.model_copy()

    async def get_permission_by_id(self, permission_id: str) -> Permission | None:
        async with self._transaction() as db:
            row = await db.get(AuthPermission, permission_id)
            return _permission(row) if row is not None else None

    async def get_permission_by_name(self, name: str) -> Permission | None:
        async with self._transaction() as db:
            result = await db.execute(
                select(AuthPermission).where(AuthPermission.name == name)  # type: ignore[arg-type]
            )
            row = result.scalar_one_or_none()
            return _permission(row) if row is not None else None

    async def list_permissions(
        self, permission_ids: Iterable[str] | None = None
    ) -> list[Permission]:
        stmt = select(AuthPermission).order_by(AuthPermission.name)  # type: ignore[arg-type]
        wanted: list[str] | None = None
        if permission_ids is not None:
            wanted = list(dict.fromkeys(permission_ids))
            if not wanted:
                return []
            stmt = stmt.where(AuthPermission.id.in_(wanted))  # type: ignore[attr-defined]
        async with self._transaction() as db:
            rows = {row.id: row for row in (await db.execute(stmt)).scalars().all()}
        if wanted is None:
            return [_permission(row) for row in rows.values()]
        return [_permission(rows[pid]) for pid in wanted if pid in rows]

    async def update_permission(
        self, permission_id: str, values: Mapping[str, Any]
    ) -> Permission:
        if "permission_id" in values and values["permission_id"] != permission_id:
            raise ValueError("permission_id cannot be changed")
        unknown = set(values) - set(Permission.model_fields)
        if unknown:
            raise ValueError(f"Unknown Permission fields: {sorted(unknown)}")
        async with self._transaction() as db:
            row = await db.get(AuthPermission, permission_id)
            if row is None:
                raise NotFound(f"Permission {permission_id} not found")
            updated = Permission.model_validate({**_permission(row).model_dump(), **values})
            conflict = await self._permission_conflict(db, updated)
            if conflict:
                raise Conflict(conflict)
            await db.execute(
                update(AuthPermission)
                .where(AuthPermission.id == permission_id)  # type: ignore[arg-type]
                .values(
                    name=updated.name,
                    context_id=updated.context_id,
                    action=updated.action.value,
                    context_type=updated.context_type.value,
                    required_role=updated.required_role,
                    description=updated.description,
                )
                .execution_options(**_NO_SYNC)
            )
        return updated

    async def delete_permission(self, permission_id: str) -> bool:
        async with self._transaction() as db:
            for link in (AuthRolePermission, AuthUserPermission):
                await db.execute(
                    delete(link)
                    .where(link.permission_id == permission_id)  # type: ignore[arg-type]
                    .execution_options(**_NO_SYNC)
                )
            result = await db.execute(
                delete(AuthPermission)
                .where(AuthPermission.id == permission_id)  # type: ignore[arg-type]
                .execution_options(**_NO_SYNC)
            )
            return result.rowcount > 0

    # ------------------------------------------------------------------
    # Generic documents
    # ------------------------------------------------------------------

    async def _matching_documents(
        self, db: AsyncSession, collection: str, query: Query | None
    ) -> list[AuthDocument]:
        result = await db.execute(
            select(AuthDocument)
            .where(AuthDocument.collection == collection)  # type: ignore[arg-type]
            .order_by(AuthDocument.created_at, AuthDocument.id)  # type: ignore[arg-type]
        )
        return [row for row in result.scalars().all() if q.matches(_document(row), query)]

    async def find_one(self, collection: str, query: Query) -> dict[str, Any] | None:
        async with self._transaction() as db:
            rows = await self._matching_documents(db, collection, query)
            return _document(rows[0]) if rows else None

    async def find_many(
        self,
        collection: str,
        query: Query | None = None,
        *,
        sort: Sort | None = None,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[dict[str, Any]]:
        async with self._transaction() as db:
            rows = await self._matching_documents(db, collection, query)
        documents = [_document(row) for row in rows]
        return q.paginate(q.apply_sort(documents, sort), limit=limit, skip=skip)

    async def insert_one(self, collection: str, document: Mapping[str, Any]) -> dict[str, Any]:
        data = dict(document)
        document_id = str(data.pop("_id", None) or new_id())
        async with self._transaction() as db:
            db.add(AuthDocument(id=document_id, collection=collection, data=data))
        return {"_id": document_id, **data}

    async def _update_documents(
        self, collection: str, query: Query, values: Mapping[str, Any], *, first_only: bool
    ) -> int:
        if "_id" in values:
            raise ValueError("_id cannot be changed")
        now = utcnow()
        async with self._transaction() as db:
            rows = await self._matching_documents(db, collection, query)
            if first_only:
                rows = rows[:1]
            for row in rows:
                await db.execute(
                    update(AuthDocument)
                    .where(AuthDocument.id == row.id)  # type: ignore[arg-type]
                    .values(data={**row.data, **values}, updated_at=now)
                    .execution_options(**_NO_SYNC)
                )
            return len(rows)

    async def update_one(self, collection: str, query: Query, values: Mapping[str, Any]) -> int:
        return await self._update_documents(collection, query, values, first_only=True)

    async def update_many(
        self, collection: str, query: Query, values: Mapping[str, Any]
    ) -> int:
        return await self._update_documents(collection, query, values, first_only=False)

    async def _delete_documents(
        self, collection: str, query: Query | None, *, first_only: bool
    ) -> int:
        async with self._transaction() as db:
            rows = await self._matching_documents(db, collection, query)
            if first_only:
                rows = rows[:1]
            if not rows:
                return 0
            result = await db.execute(
                delete(AuthDocument)
                .where(AuthDocument.id.in_([row.id for row in rows]))  # type: ignore[attr-defined]
                .execution_options(**_NO_SYNC)
            )
            return int(result.rowcount)

    async def delete_one(self, collection: str, query: Query) -> int:
        return await self._delete_documents(collection, query, first_only=True)

    async def delete_many(self, collection: str, query: Query | None = None) -> int:
        return await self._delete_documents(collection, query, first_only=False)

    async def count_documents(self, collection: str, query: Query | None = None) -> int:
        async with self._transaction() as db:
            return len(await self._matching_documents(db, collection, query))
