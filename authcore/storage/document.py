"""Document-store backend.

Every entity lives in an in-memory collection keyed by its identifier and,
when a path is configured, the whole store is rewritten to a JSON snapshot
after each mutation. All mutations run under one ``asyncio.Lock`` and contain
no suspension point between the read and the write they depend on, which is
how this backend provides single-record atomicity and find-and-delete.
A mutation edits a copy of the store that replaces the live one only once
the snapshot is written, so a failed write leaves memory unchanged.
Records are copied on the way in and out, so callers never alias stored state.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import os
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, Field

from authcore.errors import BackendError, Conflict, DuplicateEmail, NotFound
from authcore.models import Permission, Role, Session, Token, UserRecord, new_id
from authcore.storage.base import Query, Sort, StorageAdapter
from authcore.utils import query as q
from authcore.utils.clock import utcnow

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class _Snapshot(BaseModel):
    users: dict[str, UserRecord] = Field(default_factory=dict)
    sessions: dict[str, Session] = Field(default_factory=dict)
    tokens: dict[str, Token] = Field(default_factory=dict)  # keyed by token value
    roles: dict[str, Role] = Field(default_factory=dict)
    permissions: dict[str, Permission] = Field(default_factory=dict)
    documents: dict[str, dict[str, dict[str, Any]]] = Field(default_factory=dict)


def _copy(record: M) -> M:
    return record.model_copy(deep=True)


def _apply(record: M, values: Mapping[str, Any], *, key_field: str) -> M:
    """Return a validated copy of ``record`` with ``values`` applied."""
    unknown = set(values) - set(type(record).model_fields)
    if unknown:
        raise ValueError(f"Unknown {type(record).__name__} fields: {sorted(unknown)}")
    if key_field in values and values[key_field] != getattr(record, key_field):
        raise ValueError(f"{key_field} cannot be changed")
    merged = {**record.model_dump(), **values}
    return type(record).model_validate(merged)


class DocumentStorageAdapter(StorageAdapter):
    backend_name = "document"

    def __init__(self, path: str | Path | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.path = Path(path) if path is not None else None
        self._data = _Snapshot()
        self._lock = asyncio.Lock()

    async def _open(self) -> None:
        if self.path is None:
            return
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            return
        raw = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        self._data = _Snapshot.model_validate_json(raw) if raw.strip() else _Snapshot()
        logger.debug(
            "Loaded document snapshot from %s (%d users, %d roles)",
            self.path,
            len(self._data.users),
            len(self._data.roles),
        )

    async def close(self) -> None:
        async with self._lock:
            await self._flush(self._data)

    async def _flush(self, data: _Snapshot) -> None:
        if self.path is None:
            return
        payload = data.model_dump_json()
        try:
            await asyncio.to_thread(self._write_atomically, self.path, payload)
        except OSError as exc:
            logger.error("Failed to write document snapshot %s: %s", self.path, exc)
            raise BackendError(f"Failed to write document snapshot {self.path}") from exc

    @staticmethod
    def _write_atomically(path: Path, payload: str) -> None:
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(payload, encoding="utf-8")
        os.replace(tmp, path)

    @asynccontextmanager
    async def _mutation(self) -> AsyncIterator[_Snapshot]:
        async with self._lock:
            working = self._data.model_copy(deep=True)
            yield working
            await self._flush(working)
            self._data = working

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    @staticmethod
    def _user_id_for_email(data: _Snapshot, email: str) -> str | None:
        for user in data.users.values():
            if user.email == email:
                return user.id
        return None

    async def insert_user(self, user: UserRecord) -> UserRecord:
        async with self._mutation() as data:
            if self._user_id_for_email(data, user.email) is not None:
                raise DuplicateEmail(user.email)
            if user.id in data.users:
                raise Conflict(f"User {user.id} already exists")
            data.users[user.id] = _copy(user)
        return _copy(user)

    async def get_user_by_id(self, user_id: str) -> UserRecord | None:
        user = self._data.users.get(user_id)
        return _copy(user) if user is not None else None

    async def get_user_by_email(self, email: str) -> UserRecord | None:
        user_id = self._user_id_for_email(self._data, email)
        return await self.get_user_by_id(user_id) if user_id is not None else None

    async def update_user(self, user_id: str, values: Mapping[str, Any]) -> UserRecord:
        async with self._mutation() as data:
            current = data.users.get(user_id)
            if current is None:
                raise NotFound(f"User {user_id} not found")
            updated = _apply(current, {**values, "updated_at": utcnow()}, key_field="id")
            if updated.email != current.email:
                owner = self._user_id_for_email(data, updated.email)
                if owner is not None and owner != user_id:
                    raise DuplicateEmail(updated.email)
            data.users[user_id] = updated
        return _copy(updated)

    async def record_login_failure(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout_until: datetime,
        now: datetime,
    ) -> UserRecord | None:
        async with self._mutation() as data:
            user = data.users.get(user_id)
            if user is None:
                return None
            if not user.is_locked_out(now):
                attempts = user.failed_attempts + 1
                if attempts >= max_attempts:
                    user.failed_attempts = 0
                    user.lockout_until = lockout_until
                else:
                    user.failed_attempts = attempts
                user.updated_at = now
            return _copy(user)

    async def delete_user(self, user_id: str) -> bool:
        async with self._mutation() as data:
            return data.users.pop(user_id, None) is not None

    async def list_users(
        self,
        query: Query | None = None,
        *,
        sort: Sort | None = None,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[UserRecord]:
        users = q.select(self._data.users.values(), query, sort=sort, limit=limit, skip=skip)
        return [_copy(user) for user in users]

    async def count_users(self, query: Query | None = None) -> int:
        return sum(1 for user in self._data.users.values() if q.matches(user, query))

    async def add_permission_to_user(self, user_id: str, permission_id: str) -> UserRecord:
        async with self._mutation() as data:
            user = data.users.get(user_id)
            if user is None:
                raise NotFound(f"User {user_id} not found")
            if permission_id not in data.permissions:
                raise NotFound(f"Permission {permission_id} not found")
            if permission_id not in user.permissions:
                user.permissions.append(permission_id)
                user.updated_at = utcnow()
            return _copy(user)

    async def remove_permission_from_user(self, user_id: str, permission_id: str) -> UserRecord:
        async with self._mutation() as data:
            user = data.users.get(user_id)
            if user is None:
                raise NotFound(f"User {user_id} not found")
            if permission_id in user.permissions:
                user.permissions.remove(permission_id)
                user.updated_at = utcnow()
            return _copy(user)

    async def list_users_with_permission(self, permission_id: str) -> list[UserRecord]:
        return [
            _copy(user)
            for user in self._data.users.values()
            if permission_id in user.permissions
        ]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def insert_session(self, session: Session) -> Session:
        async with self._mutation() as data:
            if session.session_id in data.sessions:
                raise Conflict("Session id collision")
            data.sessions[session.session_id] = _copy(session)
        return _copy(session)

    async def get_session(self, session_id: str) -> Session | None:
        session = self._data.sessions.get(session_id)
        return _copy(session) if session is not None else None

    async def update_session_expiry(
        self, session_id: str, expires: datetime, *, now: datetime
    ) -> Session | None:
        async with self._mutation() as data:
            session = data.sessions.get(session_id)
            if session is None or session.is_expired(now):
                return None
            session.expires = expires
            return _copy(session)

    async def delete_session(self, session_id: str) -> bool:
        async with self._mutation() as data:
            return data.sessions.pop(session_id, None) is not None

    async def delete_user_sessions(self, user_id: str) -> int:
        async with self._mutation() as data:
            doomed = [sid for sid, s in data.sessions.items() if s.user_id == user_id]
            for sid in doomed:
                del data.sessions[sid]
            return len(doomed)

    async def list_sessions(self, user_id: str, *, live_at: datetime) -> list[Session]:
        return [
            _copy(s)
            for s in self._data.sessions.values()
            if s.user_id == user_id and not s.is_expired(live_at)
        ]

    async def delete_expired_sessions(self, now: datetime) -> int:
        async with self._mutation() as data:
            doomed = [sid for sid, s in data.sessions.items() if s.is_expired(now)]
            for sid in doomed:
                del data.sessions[sid]
            return len(doomed)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    @staticmethod
    def _matching_token(
        data: _Snapshot, token: str, user_id: str, token_type: str
    ) -> Token | None:
        record = data.tokens.get(token)
        if record is None or record.user_id != user_id or record.type != token_type:
            return None
        return record

    async def insert_token(self, token: Token) -> Token:
        async with self._mutation() as data:
            if token.token in data.tokens:
                raise Conflict("Token value collision")
            data.tokens[token.token] = _copy(token)
        return _copy(token)

    async def find_token(self, token: str, user_id: str, token_type: str) -> Token | None:
        record = self._matching_token(self._data, token, user_id, token_type)
        return _copy(record) if record is not None else None

    async def take_token(self, token: str, user_id: str, token_type: str) -> Token | None:
        async with self._mutation() as data:
            if self._matching_token(data, token, user_id, token_type) is None:
                return None
            return data.tokens.pop(token)

    async def list_tokens(self, query: Query | None = None) -> list[Token]:
        return [_copy(t) for t in q.select(self._data.tokens.values(), query)]

    async def delete_user_tokens(self, user_id: str) -> int:
        async with self._mutation() as data:
            doomed = [key for key, t in data.tokens.items() if t.user_id == user_id]
            for key in doomed:
                del data.tokens[key]
            return len(doomed)

    async def delete_expired_tokens(self, now: datetime) -> int:
        async with self._mutation() as data:
            doomed = [key for key, t in data.tokens.items() if t.is_expired(now)]
            for key in doomed:
                del data.tokens[key]
            return len(doomed)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    @staticmethod
    def _role_id_for_name(data: _Snapshot, name: str) -> str | None:
        for role in data.roles.values():
            if role.name == name:
                return role.role_id
        return None

    async def insert_role(self, role: Role) -> Role:
        async with self._mutation() as data:
            if self._role_id_for_name(data, role.name) is not None:
                raise Conflict(f"Role {role.name!r} already exists")
            missing = [pid for pid in role.permissions if pid not in data.permissions]
            if missing:
                raise NotFound(f"Permissions not found: {missing}")
            data.roles[role.role_id] = _copy(role)
        return _copy(role)

    async def get_role_by_id(self, role_id: str) -> Role | None:
        role = self._data.roles.get(role_id)
        return _copy(role) if role is not None else None

    async def get_role_by_name(self, name: str) -> Role | None:
        role_id = self._role_id_for_name(self._data, name)
        return await self.get_role_by_id(role_id) if role_id is not None else None

    async def list_roles(self, query: Query | None = None) -> list[Role]:
        return [_copy(r) for r in q.select(self._data.roles.values(), query)]

    async def update_role(self, role_id: str, values: Mapping[str, Any]) -> Role:
        async with self._mutation() as data:
            current = data.roles.get(role_id)
            if current is None:
                raise NotFound(f"Role {role_id} not found")
            updated = _apply(current, values, key_field="role_id")
            if updated.name != current.name and self._role_id_for_name(data, updated.name):
                raise Conflict(f"Role {updated.name!r} already exists")
            missing = [pid for pid in updated.permissions if pid not in data.permissions]
            if missing:
                raise NotFound(f"Permissions not found: {missing}")
            data.roles[role_id] = updated
        return _copy(updated)

    async def delete_role(self, role_id: str) -> bool:
        async with self._mutation() as data:
            return data.roles.pop(role_id, None) is not None

    async def add_permission_to_role(self, role_id: str, permission_id: str) -> Role:
        async with self._mutation() as data:
            role = data.roles.get(role_id)
            if role is None:
                raise NotFound(f"Role {role_id} not found")
            if permission_id not in data.permissions:
                raise NotFound(f"Permission {permission_id} not found")
            if permission_id not in role.permissions:
                role.permissions.append(permission_id)
            return _copy(role)

    async def remove_permission_from_role(self, role_id: str, permission_id: str) -> Role:
        async with self._mutation() as data:
            role = data.roles.get(role_id)
            if role is None:
                raise NotFound(f"Role {role_id} not found")
            if permission_id in role.permissions:
                role.permissions.remove(permission_id)
            return _copy(role)

    async def list_roles_with_permission(self, permission_id: str) -> list[Role]:
        return [
            _copy(role)
            for role in self._data.roles.values()
            if permission_id in role.permissions
        ]

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    @staticmethod
    def _permission_conflict(data: _Snapshot, candidate: Permission) -> str | None:
        for existing in data.permissions.values():
            if existing.permission_id == candidate.permission_id:
                continue
            if existing.name == candidate.name:
                return f"Permission {candidate.name!r} already exists"
            if (existing.context_id, existing.action, existing.context_type) == (
                candidate.context_id,
                candidate.action,
                candidate.context_type,
            ):
                return (
                    f"Permission {existing.name!r} already grants "
                    f"{candidate.action.value} on {candidate.context_id}"
                )
        return None

    async def insert_permission(self, permission: Permission) -> Permission:
        async with self._mutation() as data:
            if permission.permission_id in data.permissions:
                raise Conflict(f"Permission {permission.permission_id} already exists")
            conflict = self._permission_conflict(data, permission)
            if conflict:
                raise Conflict(conflict)
            data.permissions[permission.permission_id] = _copy(permission)
        return _copy(permission)

    async def get_permission_by_id(self, permission_id: str) -> Permission | None:
        permission = self._data.permissions.get(permission_id)
        return _copy(permission) if permission is not None else None

    async def get_permission_by_name(self, name: str) -> Permission | None:
        for permission in self._data.permissions.values():
            if permission.name == name:
                return _copy(permission)
        return None

    async def list_permissions(
        self, permission_ids: Iterable[str] | None = None
    ) -> list[Permission]:
        if permission_ids is None:
            return [_copy(p) for p in self._data.permissions.values()]
        found = (self._data.permissions.get(pid) for pid in dict.fromkeys(permission_ids))
        return [_copy(p) for p in found if p is not None]

    async def update_permission(
        self, permission_id: str, values: Mapping[str, Any]
    ) -> Permission:
        async with self._mutation() as data:
            current = data.permissions.get(permission_id)
            if current is None:
                raise NotFound(f"Permission {permission_id} not found")
            updated = _apply(current, values, key_field="permission_id")
            conflict = self._permission_conflict(data, updated)
            if conflict:
                raise Conflict(conflict)
            data.permissions[permission_id] = updated
        return _copy(updated)

    async def delete_permission(self, permission_id: str) -> bool:
        async with self._mutation() as data:
            if data.permissions.pop(permission_id, None) is None:
                return False
            for role in data.roles.values():
                if permission_id in role.permissions:
                    role.permissions.remove(permission_id)
            for user in data.users.values():
                if permission_id in user.permissions:
                    user.permissions.remove(permission_id)
            return True

    # ------------------------------------------------------------------
    # Generic documents
    # ------------------------------------------------------------------

    def _collection(self, name: str) -> dict[str, dict[str, Any]]:
        return self._data.documents.get(name, {})

    async def find_one(self, collection: str, query: Query) -> dict[str, Any] | None:
        for document in self._collection(collection).values():
            if q.matches(document, query):
                return copy.deepcopy(document)
        return None

    async def find_many(
        self,
        collection: str,
        query: Query | None = None,
        *,
        sort: Sort | None = None,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[dict[str, Any]]:
        documents = q.select(
            self._collection(collection).values(), query, sort=sort, limit=limit, skip=skip
        )
        return copy.deepcopy(documents)

    async def insert_one(self, collection: str, document: Mapping[str, Any]) -> dict[str, Any]:
        stored = copy.deepcopy(dict(document))
        stored.setdefault("_id", new_id())
        async with self._mutation() as data:
            docs = data.documents.setdefault(collection, {})
            if stored["_id"] in docs:
                raise Conflict(f"Document {stored['_id']} already exists in {collection}")
            docs[stored["_id"]] = stored
        return copy.deepcopy(stored)

    async def _update(
        self, collection: str, query: Query, values: Mapping[str, Any], *, first_only: bool
    ) -> int:
        if "_id" in values:
            raise ValueError("_id cannot be changed")
        async with self._mutation() as data:
            updated = 0
            for document in data.documents.get(collection, {}).values():
                if q.matches(document, query):
                    document.update(copy.deepcopy(dict(values)))
                    updated += 1
                    if first_only:
                        break
            return updated

    async def update_one(self, collection: str, query: Query, values: Mapping[str, Any]) -> int:
        return await self._update(collection, query, values, first_only=True)

    async def update_many(
        self, collection: str, query: Query, values: Mapping[str, Any]
    ) -> int:
        return await self._update(collection, query, values, first_only=False)

    async def _delete(self, collection: str, query: Query | None, *, first_only: bool) -> int:
        async with self._mutation() as data:
            docs = data.documents.get(collection, {})
            doomed = [key for key, document in docs.items() if q.matches(document, query)]
            if first_only:
                doomed = doomed[:1]
            for key in doomed:
                del docs[key]
            return len(doomed)

    async def delete_one(self, collection: str, query: Query) -> int:
        return await self._delete(collection, query, first_only=True)

    async def delete_many(self, collection: str, query: Query | None = None) -> int:
        return await self._delete(collection, query, first_only=False)

    async def count_documents(self, collection: str, query: Query | None = None) -> int:
        return sum(1 for d in self._collection(collection).values() if q.matches(d, query))
