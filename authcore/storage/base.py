"""Storage contract every authcore backend implements.

Contract, for every operation below:

* Single-record writes are atomic: a record is either fully written or left
  untouched.
* Lookups that miss return ``None`` (or an empty list / ``False`` / ``0``).
  Mutations that target a missing record raise ``NotFound``. Anything the
  backend itself fails at is raised as ``BackendError`` with the driver
  exception chained.
* ``take_token`` is an atomic find-and-delete: among concurrent callers for
  the same token at most one receives the record.
* Expiry comparisons use the ``now`` passed by the caller, read at call time.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any, ClassVar

from authcore.errors import BackendError
from authcore.models import Permission, Role, Session, SortOrder, Token, UserRecord

logger = logging.getLogger(__name__)

Query = Mapping[str, Any]
Sort = Mapping[str, SortOrder]


class StorageAdapter(ABC):
    backend_name: ClassVar[str] = "abstract"

    def __init__(self, *, retry_attempts: int = 3, retry_delay: float = 3.0) -> None:
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay

    async def connect(self) -> None:
        """Open the backend, retrying a bounded number of times.

        Raises:
            BackendError: every attempt failed.
        """
        for attempt in range(1, self.retry_attempts + 1):
            try:
                await self._open()
            except Exception as exc:
                attempts_left = self.retry_attempts - attempt
                logger.error(
                    "%s adapter failed to connect. Attempts left: %d. Error: %s",
                    self.backend_name,
                    attempts_left,
                    exc,
                )
                if attempts_left == 0:
                    raise BackendError(
                        f"{self.backend_name} adapter failed to connect after "
                        f"{self.retry_attempts} attempts"
                    ) from exc
                await asyncio.sleep(self.retry_delay)
            else:
                logger.info("%s adapter connected", self.backend_name)
                return

    @abstractmethod
    async def _open(self) -> None:
        """Establish the backend connection once (no retry)."""

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources; safe to call twice."""

    async def __aenter__(self) -> "StorageAdapter":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_user(self, user: UserRecord) -> UserRecord:
        """Persist a new user; raises ``DuplicateEmail`` if the email is taken."""

    @abstractmethod
    async def get_user_by_id(self, user_id: str) -> UserRecord | None: ...

    @abstractmethod
    async def get_user_by_email(self, email: str) -> UserRecord | None: ...

    @abstractmethod
    async def update_user(self, user_id: str, values: Mapping[str, Any]) -> UserRecord:
        """Set ``values`` on the user and bump ``updated_at``."""

    @abstractmethod
    async def record_login_failure(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lockout_until: datetime,
        now: datetime,
    ) -> UserRecord | None:
        """Count one failed login in a single atomic step.

        ``failed_attempts`` is incremented unless the user is locked out at
        ``now``. Reaching ``max_attempts`` resets the counter and sets
        ``lockout_until``. Returns the updated user, or ``None`` if missing.
        """

    @abstractmethod
    async def delete_user(self, user_id: str) -> bool: ...

    @abstractmethod
    async def list_users(
        self,
        query: Query | None = None,
        *,
        sort: Sort | None = None,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[UserRecord]: ...

    @abstractmethod
    async def count_users(self, query: Query | None = None) -> int: ...

    @abstractmethod
    async def add_permission_to_user(self, user_id: str, permission_id: str) -> UserRecord: ...

    @abstractmethod
    async def remove_permission_from_user(
        self, user_id: str, permission_id: str
    ) -> UserRecord: ...

    @abstractmethod
    async def list_users_with_permission(self, permission_id: str) -> list[UserRecord]:
        """Users holding ``permission_id`` as a direct grant."""

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_session(self, session: Session) -> Session: ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Session | None: ...

    @abstractmethod
    async def update_session_expiry(
        self, session_id: str, expires: datetime, *, now: datetime
    ) -> Session | None:
        """Move ``expires`` only if the session is still live at ``now``.

        Returns the updated session, or ``None`` when the session is missing
        or already expired.
        """

    @abstractmethod
    async def delete_session(self, session_id: str) -> bool: ...

    @abstractmethod
    async def delete_user_sessions(self, user_id: str) -> int: ...

    @abstractmethod
    async def list_sessions(self, user_id: str, *, live_at: datetime) -> list[Session]:
        """Sessions of ``user_id`` whose ``expires`` is after ``live_at``."""

    @abstractmethod
    async def delete_expired_sessions(self, now: datetime) -> int: ...

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_token(self, token: Token) -> Token: ...

    @abstractmethod
    async def find_token(self, token: str, user_id: str, token_type: str) -> Token | None: ...

    @abstractmethod
    async def take_token(self, token: str, user_id: str, token_type: str) -> Token | None:
        """Atomically delete and return the matching token."""

    @abstractmethod
    async def list_tokens(self, query: Query | None = None) -> list[Token]: ...

    @abstractmethod
    async def delete_user_tokens(self, user_id: str) -> int: ...

    @abstractmethod
    async def delete_expired_tokens(self, now: datetime) -> int: ...

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_role(self, role: Role) -> Role:
        """Persist a role; raises ``Conflict`` on a duplicate name."""

    @abstractmethod
    async def get_role_by_id(self, role_id: str) -> Role | None: ...

    @abstractmethod
    async def get_role_by_name(self, name: str) -> Role | None: ...

    @abstractmethod
    async def list_roles(self, query: Query | None = None) -> list[Role]: ...

    @abstractmethod
    async def update_role(self, role_id: str, values: Mapping[str, Any]) -> Role: ...

    @abstractmethod
    async def delete_role(self, role_id: str) -> bool: ...

    @abstractmethod
    async def add_permission_to_role(self, role_id: str, permission_id: str) -> Role: ...

    @abstractmethod
    async def remove_permission_from_role(self, role_id: str, permission_id: str) -> Role: ...

    @abstractmethod
    async def list_roles_with_permission(self, permission_id: str) -> list[Role]: ...

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert_permission(self, permission: Permission) -> Permission:
        """Persist a permission; raises ``Conflict`` on a duplicate name or identity."""

    @abstractmethod
    async def get_permission_by_id(self, permission_id: str) -> Permission | None: ...

    @abstractmethod
    async def get_permission_by_name(self, name: str) -> Permission | None: ...

    @abstractmethod
    async def list_permissions(
        self, permission_ids: Iterable[str] | None = None
    ) -> list[Permission]:
        """All permissions, or only those whose id is in ``permission_ids``."""

    @abstractmethod
    async def update_permission(
        self, permission_id: str, values: Mapping[str, Any]
    ) -> Permission: ...

    @abstractmethod
    async def delete_permission(self, permission_id: str) -> bool:
        """Delete the permission and detach it from every role and user."""

    # ------------------------------------------------------------------
    # Generic documents (host-application collections)
    # ------------------------------------------------------------------

    @abstractmethod
    async def find_one(self, collection: str, query: Query) -> dict[str, Any] | None: ...

    @abstractmethod
    async def find_many(
        self,
        collection: str,
        query: Query | None = None,
        *,
        sort: Sort | None = None,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def insert_one(self, collection: str, document: Mapping[str, Any]) -> dict[str, Any]:
        """Insert a document; an ``_id`` is generated when absent."""

    async def insert_many(
        self, collection: str, documents: Iterable[Mapping[str, Any]]
    ) -> list[dict[str, Any]]:
        return [await self.insert_one(collection, document) for document in documents]

    @abstractmethod
    async def update_one(self, collection: str, query: Query, values: Mapping[str, Any]) -> int:
        """Set ``values`` on the first matching document; returns 0 or 1."""

    @abstractmethod
    async def update_many(
        self, collection: str, query: Query, values: Mapping[str, Any]
    ) -> int: ...

    @abstractmethod
    async def delete_one(self, collection: str, query: Query) -> int: ...

    @abstractmethod
    async def delete_many(self, collection: str, query: Query | None = None) -> int: ...

    @abstractmethod
    async def count_documents(self, collection: str, query: Query | None = None) -> int: ...
