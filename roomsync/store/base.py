"""Primitives every document store adapter offers.

Writes take a mapping of field paths (dot separated) to values. Besides plain
values a field may carry one of the transforms below, resolved by the store
at commit time so concurrent writers never overwrite each other's deltas.
"""

from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Literal,
    Optional,
    Protocol,
    Tuple,
    TypeVar,
    Union,
)

from roomsync.store.subscription import Subscription

T = TypeVar("T")


class _ServerTimestamp:

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


class _DeleteField:

    def __repr__(self) -> str:
        return "DELETE_FIELD"


SERVER_TIMESTAMP = _ServerTimestamp()
DELETE_FIELD = _DeleteField()


@dataclass(frozen=True)
class Increment:
    delta: int = 1


@dataclass(frozen=True)
class ArrayUnion:
    values: Tuple[Any, ...]

    def __init__(self, *values: Any) -> None:
        object.__setattr__(self, "values", tuple(values))


@dataclass(frozen=True)
class ArrayRemove:
    values: Tuple[Any, ...]

    def __init__(self, *values: Any) -> None:
        object.__setattr__(self, "values", tuple(values))


@dataclass
class Document:
    id: str
    data: Dict[str, Any]

    def get(self, field_path: str, default: Any = None) -> Any:
        return get_path(self.data, field_path, default)


Operator = Literal["==", "in", "array_contains"]
Direction = Literal["asc", "desc"]


@dataclass(frozen=True)
class Query:
    collection: str
    filters: Tuple[Tuple[str, Operator, Any], ...] = ()
    order_by: Optional[Tuple[str, Direction]] = None
    limit: Optional[int] = None

    def where(self, field_path: str, op: Operator, value: Any) -> "Query":
        return Query(self.collection, self.filters + ((field_path, op, value),), self.order_by, self.limit)

    def order(self, field_path: str, direction: Direction = "asc") -> "Query":
        return Query(self.collection, self.filters, (field_path, direction), self.limit)

    def matches(self, data: Dict[str, Any]) -> bool:
        for path, op, value in self.filters:
            actual = get_path(data, path)
            if op == "==" and actual != value:
                return False
            if op == "in" and actual not in value:
                return False
            if op == "array_contains" and (not isinstance(actual, list) or value not in actual):
                return False
        return True


@dataclass
class WriteOp:
    kind: Literal["merge", "update", "append", "delete", "delete_collection"]
    collection: str
    document_id: Optional[str] = None
    fields: Dict[str, Any] = field(default_factory=dict)


def get_path(data: Dict[str, Any], field_path: str, default: Any = None) -> Any:
    current: Any = data
    for part in field_path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def flatten(fields: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Turn nested dicts into dotted leaf paths, the shape of a deep merge."""
    flat: Dict[str, Any] = {}
    for key, value in fields.items():
        path = f"{prefix}{key}"
        if isinstance(value, dict) and value:
            flat.update(flatten(value, prefix=f"{path}."))
        else:
            flat[path] = value
    return flat


def split_path(collection: str) -> Tuple[str, Optional[str]]:
    """`rooms/abc/messages` -> ("messages", "rooms/abc"); `rooms` -> ("rooms", None)."""
    parts = collection.strip("/").split("/")
    if len(parts) % 2 == 0:
        raise ValueError(f"{collection!r} is a document path, not a collection")
    parent = "/".join(parts[:-1]) or None
    return parts[-1], parent


def order_documents(docs: Iterable[Document], order_by: Optional[Tuple[str, Direction]]) -> List[Document]:
    """Order by one field, nulls last in both directions, id as tie-break."""
    docs = list(docs)
    if order_by is None:
        return sorted(docs, key=lambda d: d.id)
    field_path, direction = order_by
    reverse = direction == "desc"
    present = [d for d in docs if d.get(field_path) is not None]
    missing = [d for d in docs if d.get(field_path) is None]
    present.sort(key=lambda d: (d.get(field_path), d.id), reverse=reverse)
    missing.sort(key=lambda d: d.id, reverse=reverse)
    return present + missing


class WriteBatch(Protocol):

    def merge(self, collection: str, document_id: str, fields: Dict[str, Any]) -> None: ...

    def update(self, collection: str, document_id: str, fields: Dict[str, Any]) -> None: ...

    def append(self, collection: str, fields: Dict[str, Any]) -> str: ...

    def delete(self, collection: str, document_id: str) -> None: ...

    def delete_collection(self, collection: str) -> None: ...

    async def commit(self) -> None: ...


class Transaction(Protocol):
    """Reads are tracked; writes are buffered and applied by the store on commit."""

    async def get(self, collection: str, document_id: str) -> Optional[Document]: ...

    def merge(self, collection: str, document_id: str, fields: Dict[str, Any]) -> None: ...

    def update(self, collection: str, document_id: str, fields: Dict[str, Any]) -> None: ...

    def append(self, collection: str, fields: Dict[str, Any]) -> str: ...

    def delete(self, collection: str, document_id: str) -> None: ...

    def delete_collection(self, collection: str) -> None: ...


class DocumentStore(Protocol):

    async def get(self, collection: str, document_id: str) -> Optional[Document]: ...

    async def query(self, query: Query) -> List[Document]: ...

    async def merge(self, collection: str, document_id: str, fields: Dict[str, Any]) -> None: ...

    async def update(self, collection: str, document_id: str, fields: Dict[str, Any]) -> None: ...

    async def append(self, collection: str, fields: Dict[str, Any]) -> str: ...

    async def delete(self, collection: str, document_id: str) -> None: ...

    async def delete_collection(self, collection: str) -> None: ...

    async def increment(self, collection: str, document_id: str, field_path: str, delta: int = 1) -> None: ...

    async def array_union(self, collection: str, document_id: str, field_path: str, *values: Any) -> None: ...

    async def array_remove(self, collection: str, document_id: str, field_path: str, *values: Any) -> None: ...

    def batch(self) -> WriteBatch: ...

    async def run_transaction(
        self, fn: Callable[[Transaction], Awaitable[T]], max_attempts: int = 5
    ) -> T: ...

    def subscribe(self, query: Query) -> Subscription[List[Document]]: ...

    def subscribe_document(self, collection: str, document_id: str) -> Subscription[Optional[Document]]: ...

    async def close(self) -> None: ...


class BaseDocumentStore:
    """Single-field helpers shared by the adapters, expressed as updates."""

    async def update(self, collection: str, document_id: str, fields: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def increment(self, collection: str, document_id: str, field_path: str, delta: int = 1) -> None:
        await self.update(collection, document_id, {field_path: Increment(delta)})

    async def array_union(self, collection: str, document_id: str, field_path: str, *values: Any) -> None:
        await self.update(collection, document_id, {field_path: ArrayUnion(*values)})

    async def array_remove(self, collection: str, document_id: str, field_path: str, *values: Any) -> None:
        await self.update(collection, document_id, {field_path: ArrayRemove(*values)})


class BufferedWrites:
    """Writes collected for one atomic commit; the base of batches and transactions."""

    def __init__(self, new_id: Callable[[], str]) -> None:
        self.ops: List[WriteOp] = []
        self._new_id = new_id

    def merge(self, collection: str, document_id: str, fields: Dict[str, Any]) -> None:
        self.ops.append(WriteOp("merge", collection, document_id, dict(fields)))

    def update(self, collection: str, document_id: str, fields: Dict[str, Any]) -> None:
        self.ops.append(WriteOp("update", collection, document_id, dict(fields)))

    def append(self, collection: str, fields: Dict[str, Any]) -> str:
        document_id = self._new_id()
        self.ops.append(WriteOp("append", collection, document_id, dict(fields)))
        return document_id

    def delete(self, collection: str, document_id: str) -> None:
        self.ops.append(WriteOp("delete", collection, document_id))

    def delete_collection(self, collection: str) -> None:
        self.ops.append(WriteOp("delete_collection", collection))


Writer = Union[WriteBatch, Transaction]
