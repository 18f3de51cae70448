"""Single-use typed tokens for invite and password-reset flows.

``validate_token`` only reads. ``consume_token`` is one atomic find-and-delete
in the backend, so among concurrent consumers at most one gets the record;
expiry is judged after the delete, and an expired token is still removed.
Only the digest of a token value is stored; lookups hash the presented value.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from authcore.config import Settings, settings
from authcore.models import Token, TokenConsumption, TokenStatus, TokenType, TokenValidation
from authcore.storage import Query, StorageAdapter
from authcore.utils.clock import utcnow
from authcore.utils.tokens import generate_secret, hash_secret

logger = logging.getLogger(__name__)


def _type_value(token_type: TokenType | str) -> str:
    return TokenType(token_type).value


class TokenStore:
    def __init__(self, storage: StorageAdapter, *, config: Settings = settings) -> None:
        self.storage = storage
        self.config = config

    async def create_token(
        self,
        *,
        user_id: str,
        email: str,
        type: TokenType | str,
        ttl: timedelta | None = None,
    ) -> str:
        """Issue a token and return its raw value."""
        now = utcnow()
        raw = generate_secret()
        token = Token(
            token=hash_secret(raw),
            user_id=user_id,
            email=email,
            type=_type_value(type),
            expires=now + (ttl if ttl is not None else self.config.token_ttl),
            created_at=now,
        )
        await self.storage.insert_token(token)
        logger.info("Issued %s token for user %s", token.type, user_id)
        return raw

    async def validate_token(
        self, token: str, user_id: str, type: TokenType | str
    ) -> TokenValidation:
        record = await self.storage.find_token(hash_secret(token), user_id, _type_value(type))
        if record is None:
            return TokenValidation(valid=False, reason=TokenStatus.missing)
        if record.is_expired(utcnow()):
            return TokenValidation(valid=False, reason=TokenStatus.expired)
        return TokenValidation(valid=True, reason=TokenStatus.valid)

    async def consume_token(
        self, token: str, user_id: str, type: TokenType | str
    ) -> TokenConsumption:
        record = await self.storage.take_token(hash_secret(token), user_id, _type_value(type))
        if record is None:
            return TokenConsumption(consumed=False, reason=TokenStatus.missing)
        if record.is_expired(utcnow()):
            logger.info("Consumed expired %s token for user %s", record.type, user_id)
            return TokenConsumption(consumed=False, reason=TokenStatus.expired)
        logger.info("Consumed %s token for user %s", record.type, user_id)
        return TokenConsumption(consumed=True, reason=TokenStatus.valid)

    async def get_all_tokens(self, query: Query | None = None) -> list[Token]:
        """Stored tokens; the ``token`` field holds the digest, not the raw value."""
        if query and "token" in query:
            query = {**query, "token": hash_secret(query["token"])}
        return await self.storage.list_tokens(query)

    async def delete_user_tokens(self, user_id: str) -> int:
        count = await self.storage.delete_user_tokens(user_id)
        logger.info("Deleted %d tokens for user %s", count, user_id)
        return count

    async def delete_expired_tokens(self) -> int:
        count = await self.storage.delete_expired_tokens(utcnow())
        if count:
            logger.info("Deleted %d expired tokens", count)
        return count
