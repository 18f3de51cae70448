"""Integration tests for generic host-application documents."""

from __future__ import annotations

import pytest

from authcore import Auth, Conflict

COLLECTION = "posts"


@pytest.mark.asyncio
class TestDocuments:
    async def test_insert_and_find(self, auth: Auth):
        inserted = await auth.insert_one(COLLECTION, {"title": "Hello", "status": "draft"})

        assert inserted["_id"]
        found = await auth.find_one(COLLECTION, {"_id": inserted["_id"]})
        assert found == inserted
        assert await auth.find_one(COLLECTION, {"title": "Missing"}) is None
        assert await auth.find_one("other", {"title": "Hello"}) is None

    async def test_explicit_id_must_be_unique(self, auth: Auth):
        await auth.insert_one(COLLECTION, {"_id": "fixed", "title": "one"})

        with pytest.raises(Conflict):
            await auth.insert_one(COLLECTION, {"_id": "fixed", "title": "two"})

    async def test_find_many_filters_sorts_and_pages(self, auth: Auth):
        await auth.insert_many(
            COLLECTION,
            [
                {"title": "b", "status": "live", "rank": 2},
                {"title": "a", "status": "live", "rank": 3},
                {"title": "c", "status": "draft", "rank": 1},
                {"title": "d", "status": "live", "rank": 1},
            ],
        )

        live = await auth.find_many(COLLECTION, {"status": "live"}, sort={"rank": "asc"})
        assert [d["title"] for d in live] == ["d", "b", "a"]

        page = await auth.find_many(COLLECTION, sort={"title": "desc"}, limit=2, skip=1)
        assert [d["title"] for d in page] == ["c", "b"]

        assert await auth.count_documents(COLLECTION) == 4
        assert await auth.count_documents(COLLECTION, {"status": "draft"}) == 1

    async def test_update_one_and_many(self, auth: Auth):
        await auth.insert_many(
            COLLECTION,
            [{"title": "a", "status": "draft"}, {"title": "b", "status": "draft"}],
        )

        assert await auth.update_one(COLLECTION, {"status": "draft"}, {"status": "live"}) == 1
        assert await auth.count_documents(COLLECTION, {"status": "live"}) == 1

        assert await auth.update_many(COLLECTION, {}, {"status": "archived"}) == 2
        assert await auth.count_documents(COLLECTION, {"status": "archived"}) == 2

        with pytest.raises(ValueError):
            await auth.update_one(COLLECTION, {}, {"_id": "changed"})

    async def test_delete_one_and_many(self, auth: Auth):
        await auth.insert_many(
            COLLECTION,
            [{"title": "a", "tag": "x"}, {"title": "b", "tag": "x"}, {"title": "c", "tag": "y"}],
        )

        assert await auth.delete_one(COLLECTION, {"tag": "x"}) == 1
        assert await auth.delete_many(COLLECTION, {"tag": "x"}) == 1
        assert await auth.delete_many(COLLECTION, {"tag": "x"}) == 0
        assert await auth.delete_many(COLLECTION) == 1
        assert await auth.count_documents(COLLECTION) == 0
