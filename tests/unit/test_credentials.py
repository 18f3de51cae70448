"""Unit tests for Argon2 hashing in the credential store."""

from __future__ import annotations

import pytest
import pytest_asyncio
from argon2 import PasswordHasher, Type

from authcore.config import Settings
from authcore.services import credential_service
from authcore.services.credential_service import CredentialStore, normalize_email
from authcore.storage import DocumentStorageAdapter


@pytest_asyncio.fixture
async def store():
    adapter = DocumentStorageAdapter(retry_attempts=1, retry_delay=0)
    await adapter.connect()
    credentials = CredentialStore(
        adapter,
        config=Settings(_env_file=None, password_hash_workers=1),  # type: ignore[call-arg]
    )
    try:
        yield credentials
    finally:
        credentials.close()


def test_normalize_email() -> None:
    assert normalize_email("  Someone@Example.COM ") == "someone@example.com"


@pytest.mark.asyncio
class TestHashing:
    async def test_hash_uses_fixed_argon2id_parameters(self, store: CredentialStore):
        encoded = await store.hash_password("secret")

        assert encoded.startswith("$argon2id$")
        assert f"m={credential_service.ARGON2_MEMORY_COST}" in encoded
        assert f"t={credential_service.ARGON2_TIME_COST}" in encoded
        assert f"p={credential_service.ARGON2_PARALLELISM}" in encoded
        assert store.needs_rehash(encoded) is False

    async def test_hashes_are_salted(self, store: CredentialStore):
        assert await store.hash_password("secret") != await store.hash_password("secret")

    async def test_verify(self, store: CredentialStore):
        encoded = await store.hash_password("secret")

        assert await store.verify_password(encoded, "secret") is True
        assert await store.verify_password(encoded, "wrong") is False
        assert await store.verify_password("not-a-hash", "secret") is False

    async def test_outdated_parameters_need_rehash(self, store: CredentialStore):
        weak = PasswordHasher(time_cost=1, memory_cost=8192, parallelism=1, type=Type.ID)

        assert store.needs_rehash(weak.hash("secret")) is True
        assert store.needs_rehash("garbage") is True

    async def test_login_upgrades_outdated_hash(self, store: CredentialStore):
        user = await store.create_user("a@x.com", "secret")
        weak = PasswordHasher(time_cost=1, memory_cost=8192, parallelism=1, type=Type.ID)
        await store.storage.update_user(user.id, {"password_hash": weak.hash("secret")})

        assert await store.verify_login("a@x.com", "secret") is not None

        record = await store.storage.get_user_by_id(user.id)
        assert record is not None
        assert store.needs_rehash(record.password_hash) is False

    async def test_create_user_rejects_raw_hash(self, store: CredentialStore):
        with pytest.raises(ValueError):
            await store.create_user("a@x.com", password_hash="x")

    async def test_filtering_by_hash_is_refused(self, store: CredentialStore):
        with pytest.raises(ValueError):
            await store.get_all_users({"password_hash": "x"})
