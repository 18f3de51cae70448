"""Integration tests for the credential store across backends."""

from __future__ import annotations

import asyncio

import pytest

from authcore import Auth, DuplicateEmail, NotFound
from authcore.utils.tokens import hash_secret
from tests.integration.auth_helpers import DEFAULT_PASSWORD, create_user


@pytest.mark.asyncio
class TestCreateUser:
    async def test_password_is_hashed_and_never_exposed(self, auth: Auth):
        user = await create_user(auth, email="a@x.com")

        assert user.email == "a@x.com"
        assert user.role == "user"
        assert not hasattr(user, "password_hash")

        record = await auth.storage.get_user_by_id(user.id)
        assert record is not None
        assert record.password_hash is not None
        assert record.password_hash.startswith("$argon2id$")
        assert DEFAULT_PASSWORD not in record.password_hash

    async def test_email_is_normalized(self, auth: Auth):
        user = await create_user(auth, email="  Mixed@Example.COM ")

        assert user.email == "mixed@example.com"
        found = await auth.get_user_by_email("MIXED@example.com")
        assert found is not None
        assert found.id == user.id

    async def test_duplicate_email_rejected_without_touching_original(self, auth: Auth):
        original = await create_user(auth, email="a@x.com", role="editor")

        with pytest.raises(DuplicateEmail):
            await auth.create_user("a@x.com", "other-password", role="admin")

        stored = await auth.get_user_by_id(original.id)
        assert stored is not None
        assert stored.role == "editor"
        assert await auth.verify_login("a@x.com", DEFAULT_PASSWORD) is not None
        assert await auth.get_user_count() == 1

    async def test_create_without_password(self, auth: Auth):
        user = await create_user(auth, email="invitee@x.com", password=None)

        assert await auth.verify_login("invitee@x.com", "") is None
        assert user.is_registered is False


@pytest.mark.asyncio
class TestVerifyLogin:
    async def test_correct_password(self, auth: Auth):
        user = await create_user(auth, email="a@x.com")

        verified = await auth.verify_login("a@x.com", DEFAULT_PASSWORD)

        assert verified is not None
        assert verified.id == user.id

    async def test_wrong_password_and_unknown_email_look_the_same(self, auth: Auth):
        await create_user(auth, email="a@x.com")

        assert await auth.verify_login("a@x.com", "wrong") is None
        assert await auth.verify_login("nobody@x.com", DEFAULT_PASSWORD) is None

    async def test_lockout_after_repeated_failures(self, auth: Auth):
        user = await create_user(auth, email="a@x.com")

        for _ in range(auth.config.max_failed_attempts):
            assert await auth.verify_login("a@x.com", "wrong") is None

        locked = await auth.get_user_by_id(user.id)
        assert locked is not None
        assert locked.lockout_until is not None
        # Correct password is refused while locked out.
        assert await auth.verify_login("a@x.com", DEFAULT_PASSWORD) is None

        await auth.unblock_user(user.id)
        assert await auth.verify_login("a@x.com", DEFAULT_PASSWORD) is not None

    async def test_concurrent_failures_still_lock_out(self, auth: Auth):
        user = await create_user(auth, email="v@x.com")

        results = await asyncio.gather(
            *(auth.verify_login("v@x.com", "wrong") for _ in range(10))
        )

        assert all(result is None for result in results)
        locked = await auth.get_user_by_id(user.id)
        assert locked is not None
        assert locked.lockout_until is not None
        # Failures arriving after the lockout are not counted.
        assert locked.failed_attempts == 0
        assert await auth.verify_login("v@x.com", DEFAULT_PASSWORD) is None

    async def test_success_resets_failed_attempts(self, auth: Auth):
        user = await create_user(auth, email="a@x.com")
        await auth.verify_login("a@x.com", "wrong")

        before = await auth.get_user_by_id(user.id)
        assert before is not None and before.failed_attempts == 1

        await auth.verify_login("a@x.com", DEFAULT_PASSWORD)
        after = await auth.get_user_by_id(user.id)
        assert after is not None and after.failed_attempts == 0

    async def test_blocked_user_cannot_log_in(self, auth: Auth):
        user = await create_user(auth, email="a@x.com")
        await auth.block_user(user.id)

        assert await auth.verify_login("a@x.com", DEFAULT_PASSWORD) is None

        await auth.unblock_user(user.id)
        assert await auth.verify_login("a@x.com", DEFAULT_PASSWORD) is not None


@pytest.mark.asyncio
class TestUpdateAndDelete:
    async def test_update_rehashes_new_password(self, auth: Auth):
        user = await create_user(auth, email="a@x.com")

        updated = await auth.update_user_attributes(
            user.id, {"password": "new-password", "first_name": "Ada"}
        )

        assert updated.first_name == "Ada"
        assert await auth.verify_login("a@x.com", DEFAULT_PASSWORD) is None
        assert await auth.verify_login("a@x.com", "new-password") is not None

    async def test_password_hash_cannot_be_set_directly(self, auth: Auth):
        user = await create_user(auth, email="a@x.com")

        with pytest.raises(ValueError):
            await auth.update_user_attributes(user.id, {"password_hash": "plain"})

    @pytest.mark.parametrize("values", [{"role": "admin"}, {"permissions": ["p1"]}])
    async def test_role_and_grants_cannot_be_set_directly(self, auth: Auth, values):
        user = await create_user(auth, email="a@x.com")

        with pytest.raises(ValueError):
            await auth.update_user_attributes(user.id, values)

        stored = await auth.get_user_by_id(user.id)
        assert stored is not None
        assert stored.role == "user"
        assert stored.permissions == []

    async def test_update_missing_user_raises_not_found(self, auth: Auth):
        with pytest.raises(NotFound):
            await auth.update_user_attributes("missing", {"first_name": "x"})

    async def test_update_to_taken_email_raises_duplicate(self, auth: Auth):
        await create_user(auth, email="a@x.com")
        other = await create_user(auth, email="b@x.com")

        with pytest.raises(DuplicateEmail):
            await auth.update_user_attributes(other.id, {"email": "a@x.com"})

    async def test_delete_cascades_sessions_and_tokens(self, auth: Auth):
        user = await create_user(auth, email="a@x.com")
        session = await auth.create_session(user.id)
        await auth.create_token(user_id=user.id, email=user.email, type="reset")

        assert await auth.delete_user(user.id) is True

        assert await auth.get_user_by_id(user.id) is None
        assert await auth.storage.get_session(hash_secret(session.session_id)) is None
        assert await auth.get_all_tokens({"user_id": user.id}) == []
        assert await auth.delete_user(user.id) is False

    async def test_lookup_misses_return_none(self, auth: Auth):
        assert await auth.get_user_by_id("missing") is None
        assert await auth.get_user_by_email("missing@x.com") is None


@pytest.mark.asyncio
class TestListUsers:
    async def test_filter_sort_and_page(self, auth: Auth):
        for email, role in [
            ("c@x.com", "editor"),
            ("a@x.com", "editor"),
            ("b@x.com", "user"),
            ("d@x.com", "editor"),
        ]:
            await create_user(auth, email=email, role=role)

        editors = await auth.get_all_users({"role": "editor"}, sort={"email": "asc"})
        assert [u.email for u in editors] == ["a@x.com", "c@x.com", "d@x.com"]

        page = await auth.get_all_users(
            {"role": "editor"}, sort={"email": "desc"}, limit=2, skip=1
        )
        assert [u.email for u in page] == ["c@x.com", "a@x.com"]

        assert await auth.get_user_count() == 4
        assert await auth.get_user_count({"role": "user"}) == 1

    async def test_recent_user_activities(self, auth: Auth):
        for email in ("a@x.com", "b@x.com", "c@x.com", "idle@x.com"):
            await create_user(auth, email=email)
        for email in ("b@x.com", "a@x.com", "c@x.com"):
            assert await auth.login(email, DEFAULT_PASSWORD) is not None

        recent = await auth.get_recent_user_activities()
        assert [u.email for u in recent] == ["c@x.com", "a@x.com", "b@x.com"]

        latest = await auth.get_recent_user_activities(limit=2)
        assert [u.email for u in latest] == ["c@x.com", "a@x.com"]
