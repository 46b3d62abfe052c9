"""MongoDB adapter (motor).

A collection path maps to the MongoDB collection named by its last segment;
sub-collections (``rooms/<id>/messages``) share that collection and are told
apart by a hidden ``_parent`` field. Change streams and multi-document
transactions need a replica set.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from roomsync.core.exceptions import NotFoundError, QueryError, SubscriptionError, WriteError
from roomsync.store.base import (
    DELETE_FIELD,
    SERVER_TIMESTAMP,
    ArrayRemove,
    ArrayUnion,
    BaseDocumentStore,
    BufferedWrites,
    Document,
    Increment,
    Query,
    WriteOp,
    flatten,
    order_documents,
    split_path,
)
from roomsync.store.subscription import Subscription

logger = logging.getLogger(__name__)

T = TypeVar("T")

_HIDDEN_FIELDS = ("_id", "_parent")


def to_update(fields: Dict[str, Any], deep: bool) -> Dict[str, Dict[str, Any]]:
    """Translate field paths and transforms into MongoDB update operators."""
    update: Dict[str, Dict[str, Any]] = defaultdict(dict)
    for path, value in (flatten(fields) if deep else fields).items():
        if value is DELETE_FIELD:
            update["$unset"][path] = ""
        elif value is SERVER_TIMESTAMP:
            update["$currentDate"][path] = True
        elif isinstance(value, Increment):
            update["$inc"][path] = value.delta
        elif isinstance(value, ArrayUnion):
            update["$addToSet"][path] = {"$each": list(value.values)}
        elif isinstance(value, ArrayRemove):
            update["$pull"][path] = {"$in": list(value.values)}
        else:
            update["$set"][path] = value
    return dict(update)


def to_filter(query: Query) -> Dict[str, Any]:
    _, parent = split_path(query.collection)
    selector: Dict[str, Any] = {"_parent": parent} if parent else {}
    for path, op, value in query.filters:
        if op == "in":
            selector[path] = {"$in": list(value)}
        else:
            # Equality on an array field matches any element.
            selector[path] = value
    return selector


def to_document(raw: Dict[str, Any]) -> Document:
    data = {key: value for key, value in raw.items() if key not in _HIDDEN_FIELDS}
    return Document(str(raw["_id"]), data)


class MongoWriteBatch(BufferedWrites):

    def __init__(self, store: "MongoDocumentStore") -> None:
        super().__init__(store.new_id)
        self._store = store

    async def commit(self) -> None:
        ops = list(self.ops)

        async def _body(session: AsyncIOMotorClientSession) -> None:
            for op in ops:
                await self._store._apply(op, session)

        await self._store._with_transaction(_body)


class MongoTransaction(BufferedWrites):

    def __init__(self, store: "MongoDocumentStore", session: AsyncIOMotorClientSession) -> None:
        super().__init__(store.new_id)
        self._store = store
        self._session = session

    async def get(self, collection: str, document_id: str) -> Optional[Document]:
        return await self._store._find_one(collection, document_id, self._session)


class MongoDocumentStore(BaseDocumentStore):

    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase, max_attempts: int = 5) -> None:
        self._client = client
        self._db = db
        self._max_attempts = max_attempts

    def new_id(self) -> str:
        return str(ObjectId())

    def collection(self, path: str):
        name, _ = split_path(path)
        return self._db[name]

    def _selector(self, path: str, document_id: str) -> Dict[str, Any]:
        _, parent = split_path(path)
        selector: Dict[str, Any] = {"_id": document_id}
        if parent:
            selector["_parent"] = parent
        return selector

    # Reads

    async def _find_one(
        self, path: str, document_id: str, session: Optional[AsyncIOMotorClientSession] = None
    ) -> Optional[Document]:
        try:
            raw = await self.collection(path).find_one(self._selector(path, document_id), session=session)
        except PyMongoError as exc:
            raise QueryError(f"Failed to read {path}/{document_id}: {exc}") from exc
        return to_document(raw) if raw else None

    async def get(self, collection: str, document_id: str) -> Optional[Document]:
        return await self._find_one(collection, document_id)

    async def query(self, query: Query) -> List[Document]:
        cursor = self.collection(query.collection).find(to_filter(query))
        if query.order_by is not None:
            field_path, direction = query.order_by
            cursor = cursor.sort([(field_path, -1 if direction == "desc" else 1), ("_id", -1 if direction == "desc" else 1)])
        if query.limit is not None:
            cursor = cursor.limit(query.limit)
        try:
            items = await cursor.to_list(length=query.limit)
        except PyMongoError as exc:
            raise QueryError(f"Failed to query {query.collection}: {exc}") from exc
        return order_documents((to_document(raw) for raw in items), query.order_by)

    # Writes

    async def _apply(self, op: WriteOp, session: Optional[AsyncIOMotorClientSession] = None) -> None:
        collection = self.collection(op.collection)
        if op.kind == "delete_collection":
            _, parent = split_path(op.collection)
            await collection.delete_many({"_parent": parent} if parent else {}, session=session)
        elif op.kind == "delete":
            await collection.delete_one(self._selector(op.collection, op.document_id), session=session)
        elif op.kind == "update":
            result = await collection.update_one(
                self._selector(op.collection, op.document_id), to_update(op.fields, deep=False), session=session
            )
            if result.matched_count == 0:
                raise NotFoundError(op.collection, op.document_id)
        else:
            await collection.update_one(
                self._selector(op.collection, op.document_id),
                to_update(op.fields, deep=True),
                upsert=True,
                session=session,
            )

    async def _write(self, op: WriteOp) -> None:
        try:
            await self._apply(op)
        except PyMongoError as exc:
            raise WriteError(f"{op.kind} on {op.collection} failed: {exc}") from exc

    async def merge(self, collection: str, document_id: str, fields: Dict[str, Any]) -> None:
        await self._write(WriteOp("merge", collection, document_id, dict(fields)))

    async def update(self, collection: str, document_id: str, fields: Dict[str, Any]) -> None:
        await self._write(WriteOp("update", collection, document_id, dict(fields)))

    async def append(self, collection: str, fields: Dict[str, Any]) -> str:
        document_id = self.new_id()
        await self._write(WriteOp("append", collection, document_id, dict(fields)))
        return document_id

    async def delete(self, collection: str, document_id: str) -> None:
        await self._write(WriteOp("delete", collection, document_id))

    async def delete_collection(self, collection: str) -> None:
        await self._write(WriteOp("delete_collection", collection))

    def batch(self) -> MongoWriteBatch:
        return MongoWriteBatch(self)

    async def _abort(self, session: AsyncIOMotorClientSession) -> None:
        if not session.in_transaction:
            return
        try:
            await session.abort_transaction()
        except PyMongoError as exc:
            # The server drops the transaction on its own when the abort does not arrive.
            logger.debug("Abort after failed transaction body did not go through: %s", exc)

    async def _commit(self, session: AsyncIOMotorClientSession, attempts: int) -> None:
        # An unknown commit result may mean the writes already landed; only the commit is repeated.
        for attempt in range(1, attempts + 1):
            try:
                await session.commit_transaction()
                return
            except PyMongoError as exc:
                if not exc.has_error_label("UnknownTransactionCommitResult") or attempt == attempts:
                    raise
                logger.debug("Commit result unknown, attempt %d of %d: %s", attempt, attempts, exc)

    async def _with_transaction(
        self, body: Callable[[AsyncIOMotorClientSession], Awaitable[T]], max_attempts: Optional[int] = None
    ) -> T:
        attempts = max_attempts or self._max_attempts
        try:
            async with await self._client.start_session() as session:
                for attempt in range(1, attempts + 1):
                    session.start_transaction()
                    try:
                        result = await body(session)
                        await self._commit(session, attempts)
                    except Exception as exc:
                        await self._abort(session)
                        transient = isinstance(exc, PyMongoError) and exc.has_error_label("TransientTransactionError")
                        if not transient or attempt == attempts:
                            raise
                        logger.debug("Transaction conflict, attempt %d of %d: %s", attempt, attempts, exc)
                        continue
                    return result
        except PyMongoError as exc:
            raise WriteError(f"Transaction failed: {exc}") from exc
        raise WriteError(f"Transaction aborted after {attempts} attempts")

    async def run_transaction(
        self, fn: Callable[[MongoTransaction], Awaitable[T]], max_attempts: Optional[int] = None
    ) -> T:
        async def _body(session: AsyncIOMotorClientSession) -> T:
            transaction = MongoTransaction(self, session)
            result = await fn(transaction)
            for op in transaction.ops:
                await self._apply(op, session)
            return result

        return await self._with_transaction(_body, max_attempts)

    # Subscriptions

    def _watch(self, path: str, pipeline: List[Dict[str, Any]], read: Callable[[], Awaitable[Any]]) -> Subscription[Any]:
        subscription: Subscription[Any] = Subscription()

        async def _run() -> None:
            last: Any = object()
            try:
                # Open the stream before the first read so no change falls in between.
                async with self.collection(path).watch(pipeline, full_document="updateLookup") as stream:
                    snapshot = await read()
                    last = snapshot
                    subscription.push(snapshot)
                    async for _change in stream:
                        snapshot = await read()
                        if snapshot != last:
                            last = snapshot
                            subscription.push(snapshot)
            except (PyMongoError, QueryError) as exc:
                subscription.fail(SubscriptionError(f"Stream on {path} stopped: {exc}"))

        subscription.attach(asyncio.create_task(_run()))
        return subscription

    def subscribe(self, query: Query) -> Subscription[List[Document]]:
        _, parent = split_path(query.collection)
        pipeline: List[Dict[str, Any]] = []
        if parent:
            pipeline = [{"$match": {"$or": [{"fullDocument._parent": parent}, {"operationType": "delete"}]}}]
        return self._watch(query.collection, pipeline, lambda: self.query(query))

    def subscribe_document(self, collection: str, document_id: str) -> Subscription[Optional[Document]]:
        pipeline = [{"$match": {"documentKey._id": document_id}}]
        return self._watch(collection, pipeline, lambda: self.get(collection, document_id))

    async def close(self) -> None:
        self._client.close()
