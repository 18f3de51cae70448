"""Integration tests for single-use tokens."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from authcore import Auth, TokenStatus, TokenType
from authcore.utils.tokens import hash_secret
from tests.integration.auth_helpers import create_user


@pytest.mark.asyncio
class TestValidateToken:
    async def test_validate_is_read_only(self, auth: Auth):
        user = await create_user(auth, email="a@x.com")
        token = await auth.create_token(user_id=user.id, email=user.email, type=TokenType.invite)

        for _ in range(3):
            result = await auth.validate_token(token, user.id, TokenType.invite)
            assert result.valid is True
            assert result.reason is TokenStatus.valid
        assert len(await auth.get_all_tokens({"user_id": user.id})) == 1

    async def test_wrong_user_or_type_does_not_match(self, auth: Auth):
        user = await create_user(auth, email="a@x.com")
        token = await auth.create_token(user_id=user.id, email=user.email, type="reset")

        wrong_type = await auth.validate_token(token, user.id, "invite")
        wrong_user = await auth.validate_token(token, "someone-else", "reset")

        assert wrong_type.reason is TokenStatus.missing
        assert wrong_user.reason is TokenStatus.missing

    async def test_unknown_type_is_rejected(self, auth: Auth):
        with pytest.raises(ValueError):
            await auth.validate_token("t", "u", "bogus")


@pytest.mark.asyncio
class TestConsumeToken:
    async def test_consume_once(self, auth: Auth):
        user = await create_user(auth, email="a@x.com")
        token = await auth.create_token(user_id=user.id, email=user.email, type="reset")

        first = await auth.consume_token(token, user.id, "reset")
        second = await auth.consume_token(token, user.id, "reset")

        assert first.consumed is True
        assert first.reason.label == "Token is valid"
        assert second.consumed is False
        assert second.reason is TokenStatus.missing
        assert second.reason.label == "Token does not exist"

    async def test_zero_ttl_token_is_expired_but_still_consumed(self, auth: Auth):
        user = await create_user(auth, email="a@x.com")
        token = await auth.create_token(
            user_id=user.id, email=user.email, type="reset", ttl=timedelta(0)
        )

        validation = await auth.validate_token(token, user.id, "reset")
        assert validation.valid is False
        assert validation.reason is TokenStatus.expired

        consumption = await auth.consume_token(token, user.id, "reset")
        assert consumption.consumed is False
        assert consumption.reason is TokenStatus.expired
        assert consumption.reason.label == "Token is expired"

        after = await auth.validate_token(token, user.id, "reset")
        assert after.reason is TokenStatus.missing

    async def test_concurrent_consumers_single_winner(self, auth: Auth):
        user = await create_user(auth, email="a@x.com")
        token = await auth.create_token(user_id=user.id, email=user.email, type="invite")

        results = await asyncio.gather(
            *(auth.consume_token(token, user.id, "invite") for _ in range(8))
        )

        assert sum(r.consumed for r in results) == 1
        losers = [r for r in results if not r.consumed]
        assert len(losers) == 7
        assert all(r.reason is TokenStatus.missing for r in losers)


@pytest.mark.asyncio
class TestTokenHousekeeping:
    async def test_delete_expired_tokens(self, auth: Auth):
        user = await create_user(auth, email="a@x.com")
        live = await auth.create_token(user_id=user.id, email=user.email, type="invite")
        await auth.create_token(
            user_id=user.id, email=user.email, type="reset", ttl=timedelta(seconds=-1)
        )

        assert await auth.delete_expired_tokens() == 1
        remaining = await auth.get_all_tokens()
        assert [t.token for t in remaining] == [hash_secret(live)]

    async def test_filter_tokens(self, auth: Auth):
        user = await create_user(auth, email="a@x.com")
        await auth.create_token(user_id=user.id, email=user.email, type="invite")
        await auth.create_token(user_id=user.id, email=user.email, type="reset")

        resets = await auth.get_all_tokens({"type": TokenType.reset})

        assert len(resets) == 1
        assert resets[0].type == "reset"
        assert resets[0].email == "a@x.com"

    async def test_raw_value_is_never_stored(self, auth: Auth):
        user = await create_user(auth, email="a@x.com")
        token = await auth.create_token(user_id=user.id, email=user.email, type="invite")

        stored = await auth.get_all_tokens({"user_id": user.id})

        assert [t.token for t in stored] == [hash_secret(token)]
        assert await auth.storage.find_token(token, user.id, "invite") is None
        assert len(await auth.get_all_tokens({"token": token})) == 1
