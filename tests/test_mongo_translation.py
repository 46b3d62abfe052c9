from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import OperationFailure, PyMongoError

from roomsync.core.exceptions import NotFoundError, QueryError, WriteError
from roomsync.store.base import DELETE_FIELD, SERVER_TIMESTAMP, ArrayRemove, ArrayUnion, Increment, Query
from roomsync.store.mongo import MongoDocumentStore, to_document, to_filter, to_update

pytestmark = pytest.mark.anyio


def _session() -> MagicMock:
    session = MagicMock()
    session.__aenter__.return_value = session
    session.in_transaction = True
    session.commit_transaction = AsyncMock()
    session.abort_transaction = AsyncMock()
    return session


def _store(collection: MagicMock, session: Optional[MagicMock] = None) -> MongoDocumentStore:
    db = MagicMock()
    db.__getitem__.return_value = collection
    client = MagicMock()
    client.start_session = AsyncMock(return_value=session or _session())
    return MongoDocumentStore(client, db, max_attempts=3)


class TestUpdateTranslation:
    def test_field_transforms_map_to_operators(self):
        update = to_update(
            {
                "name": "team",
                "unread_counts.bob": Increment(1),
                "participants": ArrayUnion("carol"),
                "muted_by": ArrayRemove("bob", "dave"),
                "unread_counts.dave": DELETE_FIELD,
                "last_message_at": SERVER_TIMESTAMP,
            },
            deep=False,
        )

        assert update == {
            "$set": {"name": "team"},
            "$inc": {"unread_counts.bob": 1},
            "$addToSet": {"participants": {"$each": ["carol"]}},
            "$pull": {"muted_by": {"$in": ["bob", "dave"]}},
            "$unset": {"unread_counts.dave": ""},
            "$currentDate": {"last_message_at": True},
        }

    def test_deep_merge_flattens_nested_maps(self):
        update = to_update({"unread_counts": {"alice": 0, "bob": 0}, "name": "x"}, deep=True)

        assert update == {"$set": {"unread_counts.alice": 0, "unread_counts.bob": 0, "name": "x"}}


class TestQueryTranslation:
    def test_sub_collection_is_scoped_by_parent(self):
        query = Query("rooms/r1/messages").where("sender_id", "==", "alice")

        assert to_filter(query) == {"_parent": "rooms/r1", "sender_id": "alice"}

    def test_membership_operators(self):
        query = (
            Query("rooms")
            .where("participants", "array_contains", "alice")
            .where("created_by", "in", ("alice", "bob"))
        )

        assert to_filter(query) == {"participants": "alice", "created_by": {"$in": ["alice", "bob"]}}

    def test_hidden_fields_are_stripped(self):
        doc = to_document({"_id": "m1", "_parent": "rooms/r1", "text": "hi"})

        assert doc.id == "m1"
        assert doc.data == {"text": "hi"}


class TestMongoDocumentStore:
    async def test_update_of_missing_document_raises_not_found(self):
        collection = MagicMock()
        collection.update_one = AsyncMock(return_value=SimpleNamespace(matched_count=0))
        store = _store(collection)

        with pytest.raises(NotFoundError):
            await store.update("rooms", "gone", {"name": "x"})

        selector, update = collection.update_one.call_args.args
        assert selector == {"_id": "gone"}
        assert update == {"$set": {"name": "x"}}

    async def test_append_upserts_into_parent_scope(self):
        collection = MagicMock()
        collection.update_one = AsyncMock(return_value=SimpleNamespace(matched_count=0))
        store = _store(collection)

        message_id = await store.append("rooms/r1/messages", {"text": "hi", "created_at": SERVER_TIMESTAMP})

        selector, update = collection.update_one.call_args.args
        assert selector == {"_id": message_id, "_parent": "rooms/r1"}
        assert update == {"$set": {"text": "hi"}, "$currentDate": {"created_at": True}}
        assert collection.update_one.call_args.kwargs["upsert"] is True

    async def test_driver_errors_become_write_errors(self):
        collection = MagicMock()
        collection.update_one = AsyncMock(side_effect=PyMongoError("connection reset"))
        store = _store(collection)

        with pytest.raises(WriteError):
            await store.merge("rooms", "r1", {"name": "x"})

    async def test_query_orders_and_wraps_results(self):
        at = datetime(2024, 1, 1, tzinfo=timezone.utc)
        cursor = MagicMock()
        cursor.sort.return_value = cursor
        cursor.to_list = AsyncMock(return_value=[
            {"_id": "b", "_parent": "rooms/r1", "created_at": at},
            {"_id": "a", "_parent": "rooms/r1", "created_at": at},
        ])
        collection = MagicMock()
        collection.find.return_value = cursor
        store = _store(collection)

        docs = await store.query(Query("rooms/r1/messages").order("created_at", "asc"))

        assert [doc.id for doc in docs] == ["a", "b"]
        collection.find.assert_called_once_with({"_parent": "rooms/r1"})
        cursor.sort.assert_called_once_with([("created_at", 1), ("_id", 1)])

    async def test_failed_reads_raise_query_error(self):
        collection = MagicMock()
        collection.find_one = AsyncMock(side_effect=PyMongoError("timed out"))
        store = _store(collection)

        with pytest.raises(QueryError):
            await store.get("rooms", "r1")

    async def test_transient_transaction_errors_are_retried(self):
        transient = OperationFailure("write conflict", details={"errorLabels": ["TransientTransactionError"]})
        collection = MagicMock()
        collection.update_one = AsyncMock(side_effect=[transient, SimpleNamespace(matched_count=1)])
        store = _store(collection)

        batch = store.batch()
        batch.update("rooms", "r1", {"unread_counts.bob": Increment(1)})
        await batch.commit()

        assert collection.update_one.await_count == 2

    async def test_not_found_inside_batch_propagates(self):
        collection = MagicMock()
        collection.update_one = AsyncMock(return_value=SimpleNamespace(matched_count=0))
        store = _store(collection)

        batch = store.batch()
        batch.update("rooms", "gone", {"name": "x"})
        with pytest.raises(NotFoundError):
            await batch.commit()

    async def test_unknown_commit_result_retries_only_the_commit(self):
        unknown = OperationFailure("commit timed out", details={"errorLabels": ["UnknownTransactionCommitResult"]})
        session = _session()
        session.commit_transaction = AsyncMock(side_effect=[unknown, None])
        collection = MagicMock()
        collection.update_one = AsyncMock(return_value=SimpleNamespace(matched_count=1))
        store = _store(collection, session)

        batch = store.batch()
        batch.update("rooms", "r1", {"unread_counts.bob": Increment(1)})
        await batch.commit()

        assert collection.update_one.await_count == 1
        assert session.commit_transaction.await_count == 2
        session.abort_transaction.assert_not_awaited()

    async def test_transient_commit_failure_reruns_the_body(self):
        transient = OperationFailure("write conflict", details={"errorLabels": ["TransientTransactionError"]})
        session = _session()
        session.commit_transaction = AsyncMock(side_effect=[transient, None])
        collection = MagicMock()
        collection.update_one = AsyncMock(return_value=SimpleNamespace(matched_count=1))
        store = _store(collection, session)

        batch = store.batch()
        batch.update("rooms", "r1", {"unread_counts.bob": Increment(1)})
        await batch.commit()

        assert collection.update_one.await_count == 2
        session.abort_transaction.assert_awaited_once()

    async def test_exhausted_unknown_commit_results_raise_write_error(self):
        unknown = OperationFailure("commit timed out", details={"errorLabels": ["UnknownTransactionCommitResult"]})
        session = _session()
        session.commit_transaction = AsyncMock(side_effect=unknown)
        collection = MagicMock()
        collection.update_one = AsyncMock(return_value=SimpleNamespace(matched_count=1))
        store = _store(collection, session)

        batch = store.batch()
        batch.update("rooms", "r1", {"unread_counts.bob": Increment(1)})
        with pytest.raises(WriteError):
            await batch.commit()

        assert collection.update_one.await_count == 1
        assert session.commit_transaction.await_count == 3
