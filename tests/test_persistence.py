"""Tests for record stores."""
from __future__ import annotations

import json

import pytest

from velo_settlement.persistence import (
    InMemoryRecordStore,
    PostgresRecordStore,
    RecordStore,
    create_record_store,
)


class TestInMemoryRecordStore:
    @pytest.mark.asyncio
    async def test_save_and_find(self, store):
        await store.save("transactions", {"id": "1", "status": "pending", "chain": "ethereum"})
        await store.save("transactions", {"id": "2", "status": "confirmed", "chain": "ethereum"})

        assert (await store.find_one("transactions", {"id": "2"}))["status"] == "confirmed"
        assert len(await store.find("transactions", {"chain": "ethereum"})) == 2
        assert await store.find_one("transactions", {"id": "3"}) is None

    @pytest.mark.asyncio
    async def test_documents_are_copied(self, store):
        """Should not let callers mutate stored documents in place."""
        doc = {"id": "1", "details": {"a": 1}}
        await store.save("t", doc)
        doc["details"]["a"] = 2

        found = await store.find_one("t", {"id": "1"})
        found["details"]["a"] = 3

        assert (await store.find_one("t", {"id": "1"}))["details"] == {"a": 1}

    @pytest.mark.asyncio
    async def test_membership_criteria(self, store):
        for i, status in enumerate(["pending", "failed", "confirmed"]):
            await store.save("t", {"id": str(i), "status": status})

        rows = await store.find("t", {"status": ["pending", "failed"]})

        assert {r["id"] for r in rows} == {"0", "1"}

    @pytest.mark.asyncio
    async def test_update_is_guarded_by_criteria(self, store):
        """Should only patch documents that still match (compare-and-set)."""
        await store.save("t", {"id": "1", "status": "pending"})

        first = await store.update("t", {"id": "1", "status": "pending"}, {"status": "confirmed"})
        second = await store.update("t", {"id": "1", "status": "pending"}, {"status": "failed"})

        assert (first, second) == (1, 0)
        assert (await store.find_one("t", {"id": "1"}))["status"] == "confirmed"

    @pytest.mark.asyncio
    async def test_paging_newest_first(self, store):
        for i in range(5):
            await store.save("t", {"id": str(i), "created_at": f"2026-01-0{i + 1}T00:00:00"})

        rows = await store.find("t", limit=2, offset=1, newest_first=True)

        assert [r["id"] for r in rows] == ["3", "2"]

    @pytest.mark.asyncio
    async def test_save_requires_id(self, store):
        with pytest.raises(ValueError):
            await store.save("t", {"status": "pending"})

    def test_satisfies_protocol(self):
        assert isinstance(InMemoryRecordStore(), RecordStore)


class TestPostgresWhere:
    def test_equality_uses_containment(self):
        clause, params = PostgresRecordStore._where("transactions", {"id": "1", "type": "fee_collection"})

        assert clause == "table_name = $1 AND doc @> $2::jsonb"
        assert params[0] == "transactions"
        assert json.loads(params[1]) == {"id": "1", "type": "fee_collection"}

    def test_membership_uses_any(self):
        clause, params = PostgresRecordStore._where("transactions", {"id": "1", "status": ["pending", "failed"]})

        assert clause.endswith("doc->>$3 = ANY($4::text[])")
        assert params[2:] == ["status", ["pending", "failed"]]


class TestFactory:
    def test_memory_url(self):
        assert isinstance(create_record_store("memory://"), InMemoryRecordStore)

    def test_postgres_url(self):
        assert isinstance(create_record_store("postgres://u:p@localhost/db"), PostgresRecordStore)
