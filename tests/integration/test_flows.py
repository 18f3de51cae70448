"""Integration tests for password reset and invitation flows."""

from __future__ import annotations

from datetime import timedelta

import pytest

from authcore import Auth, DuplicateEmail, TokenStatus
from tests.integration.auth_helpers import DEFAULT_PASSWORD, create_user

NEW_PASSWORD = "new-password"


@pytest.mark.asyncio
class TestPasswordReset:
    async def test_reset_replaces_password_and_ends_sessions(self, auth: Auth):
        user = await create_user(auth, email="a@x.com")
        session = await auth.create_session(user.id)

        issued = await auth.request_password_reset("A@x.com")
        assert issued is not None
        user_id, token = issued
        assert user_id == user.id
        requested = await auth.get_user_by_id(user.id)
        assert requested is not None and requested.reset_requested_at is not None

        result = await auth.reset_password(user_id, token, NEW_PASSWORD)

        assert result.consumed is True
        assert await auth.verify_login("a@x.com", DEFAULT_PASSWORD) is None
        assert await auth.verify_login("a@x.com", NEW_PASSWORD) is not None
        assert await auth.validate_session(session.session_id) is None
        reset = await auth.get_user_by_id(user.id)
        assert reset is not None and reset.reset_requested_at is None

    async def test_unknown_email_gets_nothing(self, auth: Auth):
        assert await auth.request_password_reset("nobody@x.com") is None
        assert await auth.get_all_tokens() == []

    async def test_blocked_user_gets_nothing(self, auth: Auth):
        user = await create_user(auth, email="a@x.com")
        await auth.block_user(user.id)

        assert await auth.request_password_reset("a@x.com") is None

    async def test_token_is_single_use(self, auth: Auth):
        user = await create_user(auth, email="a@x.com")
        issued = await auth.request_password_reset("a@x.com")
        assert issued is not None
        _, token = issued

        await auth.reset_password(user.id, token, NEW_PASSWORD)
        again = await auth.reset_password(user.id, token, "third-password")

        assert again.consumed is False
        assert again.reason is TokenStatus.missing
        assert await auth.verify_login("a@x.com", NEW_PASSWORD) is not None

    async def test_expired_token_leaves_password_alone(self, auth: Auth):
        user = await create_user(auth, email="a@x.com")
        issued = await auth.request_password_reset("a@x.com", ttl=timedelta(seconds=-1))
        assert issued is not None

        result = await auth.reset_password(user.id, issued[1], NEW_PASSWORD)

        assert result.reason is TokenStatus.expired
        assert await auth.verify_login("a@x.com", DEFAULT_PASSWORD) is not None


@pytest.mark.asyncio
class TestInvites:
    async def test_invite_then_accept(self, auth: Auth):
        invited, token = await auth.invite_user("new@x.com", role="editor")
        assert invited.role == "editor"
        assert invited.is_registered is False
        assert await auth.login("new@x.com", "") is None

        result = await auth.accept_invite(invited.id, token, "chosen-password")

        assert result.consumed is True
        accepted = await auth.get_user_by_id(invited.id)
        assert accepted is not None and accepted.is_registered is True
        login = await auth.login("new@x.com", "chosen-password")
        assert login is not None

    async def test_invite_existing_email_fails(self, auth: Auth):
        await create_user(auth, email="a@x.com")

        with pytest.raises(DuplicateEmail):
            await auth.invite_user("a@x.com")

    async def test_reset_token_cannot_accept_invite(self, auth: Auth):
        invited, _ = await auth.invite_user("new@x.com")
        reset = await auth.create_token(user_id=invited.id, email=invited.email, type="reset")

        result = await auth.accept_invite(invited.id, reset, "pw")

        assert result.reason is TokenStatus.missing
        still = await auth.get_user_by_id(invited.id)
        assert still is not None and still.is_registered is False
