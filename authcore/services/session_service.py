"""Session lifecycle: Created -> Valid -> Expired | Destroyed.

Expired sessions are deleted lazily by the validation that observes them, so
an expired record is never handed back as live. The caller holds the raw
session id; storage keys the session by its digest.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from authcore.config import Settings, settings
from authcore.errors import Expired, NotFound
from authcore.models import Session, User
from authcore.storage import StorageAdapter
from authcore.utils.clock import utcnow
from authcore.utils.tokens import generate_secret, hash_secret

logger = logging.getLogger(__name__)


class SessionStore:
    def __init__(self, storage: StorageAdapter, *, config: Settings = settings) -> None:
        self.storage = storage
        self.config = config

    async def create_session(self, user_id: str, ttl: timedelta | None = None) -> Session:
        """Persist a session for ``user_id`` expiring ``ttl`` from now.

        The returned session carries the raw id; only its digest is stored.

        Raises:
            NotFound: the user does not exist.
        """
        if await self.storage.get_user_by_id(user_id) is None:
            raise NotFound(f"User {user_id} not found")
        now = utcnow()
        raw_id = generate_secret()
        session = Session(
            session_id=hash_secret(raw_id),
            user_id=user_id,
            expires=now + (ttl if ttl is not None else self.config.session_ttl),
            created_at=now,
        )
        stored = await self.storage.insert_session(session)
        logger.info("Created session for user %s expiring at %s", user_id, stored.expires)
        return stored.model_copy(update={"session_id": raw_id})

    async def validate_session(self, session_id: str) -> User | None:
        key = hash_secret(session_id)
        session = await self.storage.get_session(key)
        if session is None:
            return None
        if session.is_expired(utcnow()):
            await self.storage.delete_session(key)
            logger.warning("Session for user %s expired; deleted", session.user_id)
            return None
        record = await self.storage.get_user_by_id(session.user_id)
        if record is None:
            logger.warning(
                "Data integrity: session references missing user %s", session.user_id
            )
            return None
        return record.to_user()

    async def destroy_session(self, session_id: str) -> bool:
        destroyed = await self.storage.delete_session(hash_secret(session_id))
        if destroyed:
            logger.info("Destroyed session")
        return destroyed

    async def invalidate_all_user_sessions(self, user_id: str) -> int:
        count = await self.storage.delete_user_sessions(user_id)
        logger.info("Invalidated %d sessions for user %s", count, user_id)
        return count

    async def update_session_expiry(self, session_id: str, ttl: timedelta) -> Session:
        """Move a live session's expiry to ``now + ttl``.

        Raises:
            NotFound: no such session.
            Expired: the session had already expired (it is deleted).
        """
        key = hash_secret(session_id)
        now = utcnow()
        updated = await self.storage.update_session_expiry(key, now + ttl, now=now)
        if updated is not None:
            return updated.model_copy(update={"session_id": session_id})
        if await self.storage.get_session(key) is None:
            raise NotFound("Session not found")
        await self.storage.delete_session(key)
        logger.warning("Refused to extend an expired session; deleted")
        raise Expired("Session has expired")

    async def get_active_sessions(self, user_id: str) -> list[Session]:
        """Live sessions of ``user_id`` as stored, keyed by digest rather than raw id."""
        return await self.storage.list_sessions(user_id, live_at=utcnow())

    async def delete_expired_sessions(self) -> int:
        count = await self.storage.delete_expired_sessions(utcnow())
        if count:
            logger.info("Deleted %d expired sessions", count)
        return count
