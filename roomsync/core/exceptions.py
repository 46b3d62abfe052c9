"""Error taxonomy shared by the store adapters and the services."""


class RoomSyncError(Exception):
    """Base class for every error raised by roomsync."""


class WriteError(RoomSyncError):
    """A merge, append, delete or transaction was rejected by the store.

    Surfaced to the caller as-is; retry policy belongs to the caller.
    """


class NotFoundError(RoomSyncError):
    """The target document does not exist (e.g. the room was deleted)."""

    def __init__(self, collection: str, document_id: str) -> None:
        super().__init__(f"{collection}/{document_id} does not exist")
        self.collection = collection
        self.document_id = document_id


class SubscriptionError(RoomSyncError):
    """A snapshot stream stopped delivering. Raised once from the stream."""


class QueryError(RoomSyncError):
    """A read or query could not be served by the store."""
