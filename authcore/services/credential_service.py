"""Credential store: user records and Argon2id password hashing.

Hashing parameters are fixed here and never taken from callers or settings.
Hashing and verification are CPU-bound and run on a bounded thread pool so
they never stall the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.config import Settings, settings
from authcore.errors import NotFound
from authcore.models import User, UserRecord
from authcore.storage import Query, Sort, StorageAdapter
from authcore.utils.clock import utcnow

logger = logging.getLogger(__name__)

ARGON2_TIME_COST = 2
ARGON2_MEMORY_COST = 19456  # KiB
ARGON2_PARALLELISM = 1
ARGON2_SALT_LEN = 16
ARGON2_HASH_LEN = 32

# Fields callers may not set through update_user_attributes. Role and direct
# grants change only through the registry, which checks the acting user.
_PROTECTED_FIELDS = frozenset(
    {"id", "password_hash", "role", "permissions", "created_at", "updated_at"}
)


def build_password_hasher() -> PasswordHasher:
    return PasswordHasher(
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=ARGON2_HASH_LEN,
        salt_len=ARGON2_SALT_LEN,
        type=Type.ID,
    )


def normalize_email(email: str) -> str:
    """Normalize an email address for storage and comparisons."""
    return email.strip().casefold()


class CredentialStore:
    def __init__(
        self,
        storage: StorageAdapter,
        *,
        config: Settings = settings,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.storage = storage
        self.config = config
        self._hasher = build_password_hasher()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=config.password_hash_workers,
            thread_name_prefix="authcore-hash",
        )
        self._dummy_hash: str | None = None

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    async def hash_password(self, password: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._hasher.hash, password)

    async def verify_password(self, password_hash: str, password: str) -> bool:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                self._executor, self._hasher.verify, password_hash, password
            )
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("Stored password hash could not be verified")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

    async def _burn_verify(self, password: str) -> None:
        """Spend the same work as a real check so misses are not observable."""
        if self._dummy_hash is None:
            self._dummy_hash = await self.hash_password("authcore-placeholder")
        await self.verify_password(self._dummy_hash, password)

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
        """Create a user, hashing ``password`` first when given.

        Raises:
            DuplicateEmail: a user with this email already exists.
        """
        if "password_hash" in attributes:
            raise ValueError("password_hash cannot be set directly")
        record = UserRecord(
            email=normalize_email(email),
            role=role or self.config.default_role,
            password_hash=await self.hash_password(password) if password else None,
            **attributes,
        )
        stored = await self.storage.insert_user(record)
        logger.info("Created user %s with role %s", stored.id, stored.role)
        return stored.to_user()

    async def verify_login(self, email: str, password: str) -> User | None:
        """Return the user when ``password`` is correct, else ``None``.

        Unknown email, wrong password, blocked and locked-out accounts all come
        back as ``None`` after the same amount of hashing work.
        """
        record = await self.storage.get_user_by_email(normalize_email(email))
        if record is None or record.password_hash is None:
            await self._burn_verify(password)
            logger.info("Login rejected: unknown account or no password set")
            return None

        now = utcnow()
        if record.blocked or record.is_locked_out(now):
            await self._burn_verify(password)
            logger.warning("Login rejected for blocked or locked-out user %s", record.id)
            return None

        if not await self.verify_password(record.password_hash, password):
            await self._record_failure(record.id)
            return None

        values: dict[str, Any] = {"failed_attempts": 0, "lockout_until": None}
        if self.needs_rehash(record.password_hash):
            values["password_hash"] = await self.hash_password(password)
            logger.info("Upgraded password hash parameters for user %s", record.id)
        updated = await self.storage.update_user(record.id, values)
        return updated.to_user()

    async def _record_failure(self, user_id: str) -> None:
        # The backend increments and locks in one step; the record read before
        # hashing may already be stale.
        now = utcnow()
        updated = await self.storage.record_login_failure(
            user_id,
            max_attempts=self.config.max_failed_attempts,
            lockout_until=now + self.config.lockout_duration,
            now=now,
        )
        if updated is None:
            return
        if updated.is_locked_out(now):
            logger.warning("User %s locked out after repeated failed logins", user_id)
        else:
            logger.info(
                "Failed login for user %s (%d attempts)", user_id, updated.failed_attempts
            )

    async def update_user_attributes(self, user_id: str, values: Mapping[str, Any]) -> User:
        """Update profile/security fields; a ``password`` key is re-hashed."""
        changes = dict(values)
        protected = _PROTECTED_FIELDS & set(changes)
        if protected:
            raise ValueError(f"Fields cannot be updated directly: {sorted(protected)}")
        password = changes.pop("password", None)
        if password is not None:
            changes["password_hash"] = await self.hash_password(password)
        if "email" in changes:
            changes["email"] = normalize_email(changes["email"])
        updated = await self.storage.update_user(user_id, changes)
        logger.debug("Updated user %s fields %s", user_id, sorted(values))
        return updated.to_user()

    async def set_password(self, user_id: str, password: str) -> User:
        return await self.update_user_attributes(user_id, {"password": password})

    async def block_user(self, user_id: str) -> User:
        user = await self.update_user_attributes(user_id, {"blocked": True})
        logger.info("Blocked user %s", user_id)
        return user

    async def unblock_user(self, user_id: str) -> User:
        user = await self.update_user_attributes(
            user_id, {"blocked": False, "failed_attempts": 0, "lockout_until": None}
        )
        logger.info("Unblocked user %s", user_id)
        return user

    async def delete_user(self, user_id: str) -> bool:
        """Delete the user record only; session and token cleanup is the caller's job."""
        deleted = await self.storage.delete_user(user_id)
        if deleted:
            logger.info("Deleted user %s", user_id)
        return deleted

    async def get_user_by_id(self, user_id: str) -> User | None:
        record = await self.storage.get_user_by_id(user_id)
        return record.to_user() if record is not None else None

    async def get_user_by_email(self, email: str) -> User | None:
        record = await self.storage.get_user_by_email(normalize_email(email))
        return record.to_user() if record is not None else None

    async def require_user(self, user_id: str) -> User:
        user = await self.get_user_by_id(user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        return user

    async def get_all_users(
        self,
        query: Query | None = None,
        *,
        sort: Sort | None = None,
        limit: int | None = None,
        skip: int = 0,
    ) -> list[User]:
        if query and "password_hash" in query:
            raise ValueError("Cannot filter users by password hash")
        records = await self.storage.list_users(query, sort=sort, limit=limit, skip=skip)
        return [record.to_user() for record in records]

    async def get_recent_user_activities(self, limit: int = 5) -> list[User]:
        """Most recently active users first; users never seen active are left out."""
        records = await self.storage.list_users(sort={"last_active_at": "desc"}, limit=limit)
        return [record.to_user() for record in records if record.last_active_at is not None]

    async def get_user_count(self, query: Query | None = None) -> int:
        if query and "password_hash" in query:
            raise ValueError("Cannot filter users by password hash")
        return await self.storage.count_users(query)
