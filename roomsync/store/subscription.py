import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Generic, List, Optional, TypeVar

from roomsync.core.exceptions import SubscriptionError

logger = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")

_CLOSED = object()


class _Failure:

    def __init__(self, error: SubscriptionError) -> None:
        self.error = error


class Subscription(Generic[T]):
    """Caller-owned handle over a stream of snapshots.

    Iterate it (``async for snapshot in sub``) or use it as an async context
    manager; either way ``close()`` stops delivery and releases whatever feeds
    it (a change-stream task, an in-memory watcher). Closing twice is a no-op.
    A delivery failure surfaces once as ``SubscriptionError`` and ends the
    stream.
    """

    def __init__(self, on_close: Optional[Callable[[], None]] = None) -> None:
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._on_close = on_close
        self._tasks: List["asyncio.Task[Any]"] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, snapshot: T) -> None:
        if not self._closed:
            self._queue.put_nowait(snapshot)

    def fail(self, error: SubscriptionError) -> None:
        if not self._closed:
            logger.warning("Subscription failed: %s", error)
            self._queue.put_nowait(_Failure(error))

    def attach(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.append(task)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        for task in self._tasks:
            task.cancel()
        if self._on_close is not None:
            self._on_close()

    def map(self, fn: Callable[[T], U]) -> "Subscription[U]":
        return _MappedSubscription(self, fn)

    async def next(self, timeout: Optional[float] = None) -> T:
        return await asyncio.wait_for(self.__anext__(), timeout)

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self.close()
            raise item.error
        return item

    async def __aenter__(self) -> "Subscription[T]":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()


class _MappedSubscription(Subscription[U]):

    def __init__(self, inner: Subscription[Any], fn: Callable[[Any], U]) -> None:
        super().__init__()
        self._inner = inner
        self._fn = fn

    @property
    def closed(self) -> bool:
        return self._inner.closed

    def close(self) -> None:
        self._inner.close()

    async def __anext__(self) -> U:
        return self._fn(await self._inner.__anext__())
