"""In-process document store with the same semantics as the MongoDB adapter.

Every operation yields to the event loop before touching state, so
concurrent callers interleave the way independent clients would against a
real store. A commit itself never yields, which makes it atomic.
"""

import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, TypeVar

from roomsync.core.exceptions import NotFoundError, WriteError
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
    get_path,
    order_documents,
)
from roomsync.store.subscription import Subscription

logger = logging.getLogger(__name__)

T = TypeVar("T")

_Key = Tuple[str, str]


class _Conflict(Exception):
    pass


@dataclass
class _Entry:
    data: Dict[str, Any]
    revision: int


@dataclass
class _QueryWatcher:
    query: Query
    subscription: Subscription[List[Document]]
    last: Optional[List[Tuple[str, Dict[str, Any]]]] = None


@dataclass
class _DocumentWatcher:
    key: _Key
    subscription: Subscription[Optional[Document]]
    last: Any = None


def _normalize(collection: str) -> str:
    return collection.strip("/")


def _set_path(data: Dict[str, Any], field_path: str, value: Any) -> None:
    parts = field_path.split(".")
    current = data
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, dict):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value


def _delete_path(data: Dict[str, Any], field_path: str) -> None:
    parts = field_path.split(".")
    current = data
    for part in parts[:-1]:
        current = current.get(part)
        if not isinstance(current, dict):
            return
    current.pop(parts[-1], None)


def _apply_fields(data: Dict[str, Any], fields: Dict[str, Any], timestamp: datetime) -> None:
    for path, value in fields.items():
        if value is DELETE_FIELD:
            _delete_path(data, path)
        elif value is SERVER_TIMESTAMP:
            _set_path(data, path, timestamp)
        elif isinstance(value, Increment):
            current = get_path(data, path)
            base = current if isinstance(current, (int, float)) else 0
            _set_path(data, path, base + value.delta)
        elif isinstance(value, ArrayUnion):
            current = get_path(data, path)
            items = list(current) if isinstance(current, list) else []
            for item in value.values:
                if item not in items:
                    items.append(item)
            _set_path(data, path, items)
        elif isinstance(value, ArrayRemove):
            current = get_path(data, path)
            items = list(current) if isinstance(current, list) else []
            _set_path(data, path, [item for item in items if item not in value.values])
        else:
            _set_path(data, path, copy.deepcopy(value))


class MemoryWriteBatch(BufferedWrites):

    def __init__(self, store: "MemoryDocumentStore") -> None:
        super().__init__(store.new_id)
        self._store = store

    async def commit(self) -> None:
        await asyncio.sleep(0)
        self._store._commit(self.ops)


class MemoryTransaction(BufferedWrites):

    def __init__(self, store: "MemoryDocumentStore") -> None:
        super().__init__(store.new_id)
        self._store = store
        self.reads: Dict[_Key, Optional[int]] = {}

    async def get(self, collection: str, document_id: str) -> Optional[Document]:
        await asyncio.sleep(0)
        key = (_normalize(collection), document_id)
        entry = self._store._entry(*key)
        self.reads[key] = entry.revision if entry else None
        return Document(document_id, copy.deepcopy(entry.data)) if entry else None


class MemoryDocumentStore(BaseDocumentStore):

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, _Entry]] = {}
        self._query_watchers: List[_QueryWatcher] = []
        self._document_watchers: List[_DocumentWatcher] = []
        self._revision = 0
        self._last_timestamp = datetime.fromtimestamp(0, tz=timezone.utc)

    # Reads

    async def get(self, collection: str, document_id: str) -> Optional[Document]:
        await asyncio.sleep(0)
        entry = self._entry(_normalize(collection), document_id)
        return Document(document_id, copy.deepcopy(entry.data)) if entry else None

    async def query(self, query: Query) -> List[Document]:
        await asyncio.sleep(0)
        return self._evaluate(query)

    # Writes

    async def merge(self, collection: str, document_id: str, fields: Dict[str, Any]) -> None:
        batch = self.batch()
        batch.merge(collection, document_id, fields)
        await batch.commit()

    async def update(self, collection: str, document_id: str, fields: Dict[str, Any]) -> None:
        batch = self.batch()
        batch.update(collection, document_id, fields)
        await batch.commit()

    async def append(self, collection: str, fields: Dict[str, Any]) -> str:
        batch = self.batch()
        document_id = batch.append(collection, fields)
        await batch.commit()
        return document_id

    async def delete(self, collection: str, document_id: str) -> None:
        batch = self.batch()
        batch.delete(collection, document_id)
        await batch.commit()

    async def delete_collection(self, collection: str) -> None:
        batch = self.batch()
        batch.delete_collection(collection)
        await batch.commit()

    def batch(self) -> MemoryWriteBatch:
        return MemoryWriteBatch(self)

    async def run_transaction(
        self, fn: Callable[[MemoryTransaction], Awaitable[T]], max_attempts: int = 5
    ) -> T:
        for attempt in range(1, max_attempts + 1):
            transaction = MemoryTransaction(self)
            result = await fn(transaction)
            await asyncio.sleep(0)
            try:
                self._commit(transaction.ops, transaction.reads)
            except _Conflict:
                logger.debug("Transaction conflict, attempt %d of %d", attempt, max_attempts)
                continue
            return result
        raise WriteError(f"Transaction aborted after {max_attempts} conflicting attempts")

    # Subscriptions

    def subscribe(self, query: Query) -> Subscription[List[Document]]:
        query = Query(_normalize(query.collection), query.filters, query.order_by, query.limit)
        watcher: _QueryWatcher

        def _remove() -> None:
            self._query_watchers.remove(watcher)

        watcher = _QueryWatcher(query, Subscription(on_close=_remove))
        self._query_watchers.append(watcher)
        self._deliver_query(watcher)
        return watcher.subscription

    def subscribe_document(self, collection: str, document_id: str) -> Subscription[Optional[Document]]:
        watcher: _DocumentWatcher

        def _remove() -> None:
            self._document_watchers.remove(watcher)

        watcher = _DocumentWatcher((_normalize(collection), document_id), Subscription(on_close=_remove))
        self._document_watchers.append(watcher)
        self._deliver_document(watcher, initial=True)
        return watcher.subscription

    async def close(self) -> None:
        for watcher in list(self._query_watchers):
            watcher.subscription.close()
        for watcher in list(self._document_watchers):
            watcher.subscription.close()

    # Internals

    def new_id(self) -> str:
        return uuid.uuid4().hex

    def _entry(self, collection: str, document_id: str) -> Optional[_Entry]:
        return self._collections.get(collection, {}).get(document_id)

    def _evaluate(self, query: Query) -> List[Document]:
        entries = self._collections.get(_normalize(query.collection), {})
        docs = [
            Document(document_id, copy.deepcopy(entry.data))
            for document_id, entry in entries.items()
            if query.matches(entry.data)
        ]
        docs = order_documents(docs, query.order_by)
        if query.limit is not None:
            docs = docs[: query.limit]
        return docs

    def _server_timestamp(self) -> datetime:
        now = datetime.now(timezone.utc)
        if now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def _commit(self, ops: List[WriteOp], reads: Optional[Dict[_Key, Optional[int]]] = None) -> None:
        for (collection, document_id), revision in (reads or {}).items():
            entry = self._entry(collection, document_id)
            if (entry.revision if entry else None) != revision:
                raise _Conflict()

        # Stage on copies so a failing op leaves the store untouched.
        staged: Dict[str, Dict[str, _Entry]] = {}
        dropped: Set[str] = set()
        touched: Set[_Key] = set()
        timestamp = self._server_timestamp()

        def _documents(collection: str) -> Dict[str, _Entry]:
            if collection not in staged:
                source = {} if collection in dropped else self._collections.get(collection, {})
                staged[collection] = dict(source)
            return staged[collection]

        for op in ops:
            collection = _normalize(op.collection)
            if op.kind == "delete_collection":
                for name in list(self._collections) + list(staged):
                    if name == collection or name.startswith(collection + "/"):
                        touched.update((name, document_id) for document_id in _documents(name))
                        dropped.add(name)
                        staged[name] = {}
                continue

            documents = _documents(collection)
            touched.add((collection, op.document_id))
            existing = documents.get(op.document_id)
            if op.kind == "delete":
                documents.pop(op.document_id, None)
                continue
            if op.kind == "update" and existing is None:
                raise NotFoundError(collection, op.document_id)
            data = copy.deepcopy(existing.data) if existing else {}
            fields = flatten(op.fields) if op.kind in ("merge", "append") else op.fields
            _apply_fields(data, fields, timestamp)
            self._revision += 1
            documents[op.document_id] = _Entry(data, self._revision)

        for collection, documents in staged.items():
            if documents:
                self._collections[collection] = documents
            else:
                self._collections.pop(collection, None)

        self._notify({collection for collection, _ in touched}, touched)

    def _notify(self, collections: Set[str], keys: Set[_Key]) -> None:
        for watcher in list(self._query_watchers):
            if watcher.query.collection in collections:
                self._deliver_query(watcher)
        for watcher in list(self._document_watchers):
            if watcher.key in keys:
                self._deliver_document(watcher)

    def _deliver_query(self, watcher: _QueryWatcher) -> None:
        docs = self._evaluate(watcher.query)
        fingerprint = [(doc.id, doc.data) for doc in docs]
        if fingerprint == watcher.last:
            return
        watcher.last = copy.deepcopy(fingerprint)
        watcher.subscription.push(docs)

    def _deliver_document(self, watcher: _DocumentWatcher, initial: bool = False) -> None:
        entry = self._entry(*watcher.key)
        data = copy.deepcopy(entry.data) if entry else None
        if not initial and data == watcher.last:
            return
        watcher.last = data
        watcher.subscription.push(Document(watcher.key[1], copy.deepcopy(data)) if entry else None)
