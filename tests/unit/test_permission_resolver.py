"""Unit tests for permission matching, caching and the resolver decision."""

from __future__ import annotations

import pytest
import pytest_asyncio

from authcore.config import Settings
from authcore.errors import BackendError
from authcore.models import (
    Permission,
    PermissionAction,
    PermissionQuery,
    PermissionType,
    Role,
    User,
)
from authcore.services.permission_cache import RolePermissionCache
from authcore.services.permission_service import PermissionResolver, permission_matches
from authcore.storage import DocumentStorageAdapter

READ_DOCS = Permission(
    name="read_docs",
    context_id="docs",
    action=PermissionAction.read,
    context_type=PermissionType.collection,
)


def _query(**overrides) -> PermissionQuery:
    fields = {
        "context_id": "docs",
        "action": PermissionAction.read,
        "context_type": PermissionType.collection,
    }
    fields.update(overrides)
    return PermissionQuery(**fields)


class TestPermissionMatches:
    def test_exact_triple(self) -> None:
        assert permission_matches(READ_DOCS, _query())

    def test_context_id_and_action_must_match(self) -> None:
        assert not permission_matches(READ_DOCS, _query(context_id="other"))
        assert not permission_matches(READ_DOCS, _query(action=PermissionAction.update))

    def test_context_type_must_match(self) -> None:
        assert not permission_matches(READ_DOCS, _query(context_type=PermissionType.user))

    def test_system_grant_matches_any_context_type(self) -> None:
        system = READ_DOCS.model_copy(update={"context_type": PermissionType.system})
        for context_type in PermissionType:
            assert permission_matches(system, _query(context_type=context_type))

    def test_system_query_is_not_a_wildcard(self) -> None:
        assert not permission_matches(READ_DOCS, _query(context_type=PermissionType.system))


class TestRolePermissionCache:
    def test_get_set_invalidate(self) -> None:
        cache = RolePermissionCache()
        assert cache.get("editor") is None

        assert cache.set("editor", [READ_DOCS], generation=cache.generation)
        assert cache.get("editor") == [READ_DOCS]
        assert "editor" in cache

        cache.invalidate("editor")
        assert cache.get("editor") is None
        assert len(cache) == 0

    def test_stale_fill_is_dropped(self) -> None:
        cache = RolePermissionCache()
        generation = cache.generation

        cache.invalidate("editor")

        assert cache.set("editor", [READ_DOCS], generation=generation) is False
        assert cache.get("editor") is None

    def test_clear(self) -> None:
        cache = RolePermissionCache()
        cache.set("a", [], generation=cache.generation)
        cache.set("b", [READ_DOCS], generation=cache.generation)

        cache.clear()

        assert len(cache) == 0


@pytest_asyncio.fixture
async def storage() -> DocumentStorageAdapter:
    adapter = DocumentStorageAdapter(retry_attempts=1, retry_delay=0)
    await adapter.connect()
    permission = await adapter.insert_permission(READ_DOCS)
    await adapter.insert_role(Role(name="reader", permissions=[permission.permission_id]))
    return adapter


@pytest.fixture
def config() -> Settings:
    return Settings(_env_file=None)  # type: ignore[call-arg]


@pytest.mark.asyncio
class TestPermissionResolver:
    async def test_super_authority_is_never_looked_up(self, storage, config) -> None:
        resolver = PermissionResolver(storage, config=config)
        admin = User(email="a@x.com", role=config.super_authority_role)

        decision = await resolver.check_permission(admin, _query(context_id="anything"))

        assert decision.has_permission is True
        assert len(resolver.cache) == 0

    async def test_role_permissions_are_cached(self, storage, config) -> None:
        cache = RolePermissionCache()
        resolver = PermissionResolver(storage, cache, config=config)
        reader = User(email="r@x.com", role="reader")

        assert (await resolver.check_permission(reader, _query())).has_permission is True
        assert "reader" in cache

        # Cached entry is served even though storage changed underneath.
        role = await storage.get_role_by_name("reader")
        await storage.update_role(role.role_id, {"permissions": []})
        assert (await resolver.check_permission(reader, _query())).has_permission is True

        cache.invalidate("reader")
        assert (await resolver.check_permission(reader, _query())).has_permission is False

    async def test_direct_grants_are_added(self, storage, config) -> None:
        resolver = PermissionResolver(storage, config=config)
        granted = User(email="u@x.com", role="nobody", permissions=[READ_DOCS.permission_id])

        permissions = await resolver.get_user_permissions(granted)

        assert [p.permission_id for p in permissions] == [READ_DOCS.permission_id]
        assert (await resolver.check_permission(granted, _query())).has_permission is True

    async def test_required_role_holder_is_denied_and_logged(self, storage, config, caplog):
        resolver = PermissionResolver(storage, config=config)
        reader = User(email="r@x.com", role="reader")

        decision = await resolver.check_permission(
            reader, _query(action=PermissionAction.delete, required_role="reader")
        )

        assert decision.has_permission is False
        assert "Blocked self-lockout attempt" in caplog.text

    async def test_backend_failure_propagates(self, config) -> None:
        class _Broken(DocumentStorageAdapter):
            async def get_role_by_name(self, name: str):
                raise BackendError("boom")

        resolver = PermissionResolver(_Broken(), config=config)

        with pytest.raises(BackendError):
            await resolver.check_permission(User(email="x@x.com", role="reader"), _query())

    async def test_session_check_requires_session_store(self, storage, config) -> None:
        resolver = PermissionResolver(storage, config=config)

        with pytest.raises(RuntimeError):
            await resolver.check_session_permission("sid", _query())
