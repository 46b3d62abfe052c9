"""Tests for the in-memory document store."""

import asyncio

import pytest

from roomsync.core.exceptions import NotFoundError, WriteError
from roomsync.store.base import DELETE_FIELD, SERVER_TIMESTAMP, ArrayRemove, ArrayUnion, Increment, Query
from roomsync.store.memory import MemoryDocumentStore

pytestmark = pytest.mark.anyio


@pytest.fixture
def memory_store() -> MemoryDocumentStore:
    return MemoryDocumentStore()


class TestWrites:
    async def test_merge_creates_and_deep_merges(self, memory_store: MemoryDocumentStore) -> None:
        await memory_store.merge("rooms", "r1", {"name": "one", "counts": {"a": 1, "b": 2}})
        await memory_store.merge("rooms", "r1", {"counts": {"a": 0}})

        doc = await memory_store.get("rooms", "r1")
        assert doc is not None
        assert doc.data == {"name": "one", "counts": {"a": 0, "b": 2}}

    async def test_update_missing_document_raises(self, memory_store: MemoryDocumentStore) -> None:
        with pytest.raises(NotFoundError):
            await memory_store.update("rooms", "missing", {"name": "x"})
        assert await memory_store.get("rooms", "missing") is None

    async def test_update_uses_dotted_paths(self, memory_store: MemoryDocumentStore) -> None:
        await memory_store.merge("rooms", "r1", {"counts": {"a": 3, "b": 4}})
        await memory_store.update("rooms", "r1", {"counts.a": 0})

        doc = await memory_store.get("rooms", "r1")
        assert doc.get("counts") == {"a": 0, "b": 4}

    async def test_field_transforms(self, memory_store: MemoryDocumentStore) -> None:
        await memory_store.merge("rooms", "r1", {"tags": ["x"], "counts": {"a": 1}, "gone": True})
        await memory_store.increment("rooms", "r1", "counts.a", 2)
        await memory_store.increment("rooms", "r1", "counts.b")
        await memory_store.array_union("rooms", "r1", "tags", "x", "y")
        await memory_store.array_remove("rooms", "r1", "tags", "x")
        await memory_store.update("rooms", "r1", {"gone": DELETE_FIELD})

        doc = await memory_store.get("rooms", "r1")
        assert doc.data == {"tags": ["y"], "counts": {"a": 3, "b": 1}}

    async def test_server_timestamps_are_monotonic(self, memory_store: MemoryDocumentStore) -> None:
        ids = [await memory_store.append("log", {"at": SERVER_TIMESTAMP}) for _ in range(5)]
        stamps = [(await memory_store.get("log", document_id)).get("at") for document_id in ids]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == len(stamps)

    async def test_batch_is_all_or_nothing(self, memory_store: MemoryDocumentStore) -> None:
        batch = memory_store.batch()
        batch.merge("rooms", "r1", {"name": "kept?"})
        batch.update("rooms", "missing", {"name": "boom"})

        with pytest.raises(NotFoundError):
            await batch.commit()
        assert await memory_store.get("rooms", "r1") is None

    async def test_delete_collection_drops_nested_collections(self, memory_store: MemoryDocumentStore) -> None:
        await memory_store.append("rooms/r1/messages", {"text": "hi"})
        await memory_store.append("rooms/r2/messages", {"text": "other room"})

        await memory_store.delete_collection("rooms/r1/messages")

        assert await memory_store.query(Query("rooms/r1/messages")) == []
        assert len(await memory_store.query(Query("rooms/r2/messages"))) == 1


class TestQueries:
    async def test_filters_and_ordering_put_nulls_last(self, memory_store: MemoryDocumentStore) -> None:
        await memory_store.merge("rooms", "a", {"members": ["u1"], "at": 2})
        await memory_store.merge("rooms", "b", {"members": ["u1", "u2"], "at": None})
        await memory_store.merge("rooms", "c", {"members": ["u1"], "at": 5})
        await memory_store.merge("rooms", "d", {"members": ["u2"], "at": 9})

        query = Query("rooms").where("members", "array_contains", "u1")
        desc = await memory_store.query(query.order("at", "desc"))
        asc = await memory_store.query(query.order("at", "asc"))

        assert [doc.id for doc in desc] == ["c", "a", "b"]
        assert [doc.id for doc in asc] == ["a", "c", "b"]

    async def test_ties_are_broken_by_id(self, memory_store: MemoryDocumentStore) -> None:
        for document_id in ("m3", "m1", "m2"):
            await memory_store.merge("log", document_id, {"at": 1})

        docs = await memory_store.query(Query("log").order("at", "asc"))
        assert [doc.id for doc in docs] == ["m1", "m2", "m3"]


class TestSubscriptions:
    async def test_delivers_snapshot_then_changes(self, memory_store: MemoryDocumentStore) -> None:
        await memory_store.merge("rooms", "r1", {"n": 1})
        sub = memory_store.subscribe(Query("rooms"))

        first = await sub.next(timeout=1)
        await memory_store.merge("rooms", "r2", {"n": 2})
        second = await sub.next(timeout=1)

        assert [doc.id for doc in first] == ["r1"]
        assert [doc.id for doc in second] == ["r1", "r2"]
        sub.close()

    async def test_unchanged_results_are_not_redelivered(self, memory_store: MemoryDocumentStore) -> None:
        sub = memory_store.subscribe(Query("rooms").where("kind", "==", "chat"))
        assert await sub.next(timeout=1) == []

        await memory_store.merge("rooms", "other", {"kind": "note"})
        await memory_store.merge("rooms", "r1", {"kind": "chat"})

        assert [doc.id for doc in await sub.next(timeout=1)] == ["r1"]
        sub.close()

    async def test_close_stops_delivery(self, memory_store: MemoryDocumentStore) -> None:
        sub = memory_store.subscribe(Query("rooms"))
        await sub.next(timeout=1)

        sub.close()
        sub.close()
        await memory_store.merge("rooms", "r1", {"n": 1})

        assert [snapshot async for snapshot in sub] == []

    async def test_document_subscription_signals_deletion(self, memory_store: MemoryDocumentStore) -> None:
        await memory_store.merge("rooms", "r1", {"name": "one"})
        async with memory_store.subscribe_document("rooms", "r1") as sub:
            assert (await sub.next(timeout=1)).get("name") == "one"
            await memory_store.delete("rooms", "r1")
            assert await sub.next(timeout=1) is None


class TestTransactions:
    async def test_conflicting_transactions_both_apply(self, memory_store: MemoryDocumentStore) -> None:
        await memory_store.merge("rooms", "r1", {"members": ["a", "b", "c"]})

        def remove(member: str):
            async def _fn(transaction) -> None:
                doc = await transaction.get("rooms", "r1")
                await asyncio.sleep(0)
                remaining = [m for m in doc.get("members") if m != member]
                transaction.update("rooms", "r1", {"members": remaining})

            return _fn

        await asyncio.gather(
            memory_store.run_transaction(remove("a")),
            memory_store.run_transaction(remove("b")),
        )

        doc = await memory_store.get("rooms", "r1")
        assert doc.get("members") == ["c"]

    async def test_exhausted_retries_raise_write_error(self, memory_store: MemoryDocumentStore) -> None:
        await memory_store.merge("rooms", "r1", {"n": 0})

        async def _always_conflicts(transaction) -> None:
            await transaction.get("rooms", "r1")
            await memory_store.update("rooms", "r1", {"n": Increment(1)})
            transaction.update("rooms", "r1", {"n": -1})

        with pytest.raises(WriteError):
            await memory_store.run_transaction(_always_conflicts, max_attempts=3)

        doc = await memory_store.get("rooms", "r1")
        assert doc.get("n") == 3

    async def test_array_transforms_in_transaction(self, memory_store: MemoryDocumentStore) -> None:
        await memory_store.merge("rooms", "r1", {"members": ["a"]})

        async def _fn(transaction) -> None:
            await transaction.get("rooms", "r1")
            transaction.update("rooms", "r1", {"members": ArrayUnion("b")})
            transaction.update("rooms", "r1", {"members": ArrayRemove("a")})

        await memory_store.run_transaction(_fn)
        assert (await memory_store.get("rooms", "r1")).get("members") == ["b"]
