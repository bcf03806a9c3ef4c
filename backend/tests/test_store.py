"""
Tests for the in-memory store and the record repository's compare-and-set.
"""

import pytest

from funding_engine import InMemoryDocumentStore, RecordKind
from funding_engine.errors import ConflictError
from funding_engine.repository import FundingRecordRepository
from funding_engine.store import DuplicateDocumentError


class TestInMemoryStore:

    @pytest.mark.asyncio
    async def test_transaction_rolls_back_on_error(self):
        store = InMemoryDocumentStore()
        await store.insert_one("things", {"_id": "a", "n": 1})

        with pytest.raises(RuntimeError):
            async with store.transaction() as session:
                await store.update_one("things", {"_id": "a"}, {"n": 2}, session=session)
                await store.insert_one("things", {"_id": "b", "n": 3}, session=session)
                raise RuntimeError("boom")

        assert await store.find_one("things", {"_id": "a"}) == {"_id": "a", "n": 1}
        assert await store.count("things", {}) == 1

    @pytest.mark.asyncio
    async def test_unique_constraint(self):
        store = InMemoryDocumentStore()
        await store.ensure_unique("things", ["key"])
        await store.insert_one("things", {"_id": "a", "key": "k"})
        with pytest.raises(DuplicateDocumentError):
            await store.insert_one("things", {"_id": "b", "key": "k"})

    @pytest.mark.asyncio
    async def test_query_operators_and_sort(self):
        store = InMemoryDocumentStore()
        for i, status in enumerate(["DRAFT", "SUBMITTED", "APPROVED"]):
            await store.insert_one("things", {"_id": str(i), "status": status, "n": i})

        found = await store.find_many("things", {"status": {"$in": ["DRAFT", "APPROVED"]}}, sort=[("n", -1)])
        assert [d["_id"] for d in found] == ["2", "0"]
        assert await store.count("things", {"status": {"$ne": "DRAFT"}}) == 2

    @pytest.mark.asyncio
    async def test_returned_documents_are_copies(self):
        store = InMemoryDocumentStore()
        await store.insert_one("things", {"_id": "a", "tags": ["x"]})
        doc = await store.find_one("things", {"_id": "a"})
        doc["tags"].append("y")
        assert (await store.find_one("things", {"_id": "a"}))["tags"] == ["x"]


class TestRepositoryCompareAndSet:

    @pytest.mark.asyncio
    async def test_stale_expected_status_conflicts(self, store):
        repo = FundingRecordRepository(store, RecordKind.PREDICTED)
        record = await repo.create({"fund_need_key": "K1", "year": 2024, "month": 6})
        await repo.update(record["_id"], {"status": "DRAFT"}, expected_status="UNFILLED")

        with pytest.raises(ConflictError) as exc:
            await repo.update(record["_id"], {"status": "DRAFT"}, expected_status="UNFILLED")
        assert exc.value.current_status == "DRAFT"

    @pytest.mark.asyncio
    async def test_batch_update_is_atomic(self, store):
        repo = FundingRecordRepository(store, RecordKind.PREDICTED)
        a = await repo.create({"fund_need_key": "K1", "year": 2024, "month": 6})
        b = await repo.create({"fund_need_key": "K2", "year": 2024, "month": 6})

        with pytest.raises(ConflictError):
            await repo.batch_update([
                (a["_id"], {"remark": "first"}, "UNFILLED"),
                (b["_id"], {"remark": "second"}, "SUBMITTED"),
            ])

        assert (await repo.get(a["_id"]))["remark"] is None
