import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient

from roomsync.core.config import get_settings
from roomsync.store.base import DocumentStore
from roomsync.store.memory import MemoryDocumentStore
from roomsync.store.mongo import MongoDocumentStore

logger = logging.getLogger(__name__)

_store: Optional[DocumentStore] = None


async def connect_to_store() -> DocumentStore:
    global _store
    if _store is not None:
        return _store
    settings = get_settings()
    if settings.STORE_BACKEND == "memory":
        logger.info("Using in-memory document store")
        _store = MemoryDocumentStore()
        return _store
    client = AsyncIOMotorClient(settings.MONGODB_URL, tz_aware=True)
    logger.info("Connecting to MongoDB database %s", settings.MONGODB_DB)
    _store = MongoDocumentStore(client, client[settings.MONGODB_DB], max_attempts=settings.TRANSACTION_MAX_ATTEMPTS)
    return _store


async def close_store_connection() -> None:
    global _store
    if _store is None:
        return
    await _store.close()
    _store = None
    logger.info("Document store connection closed")


def get_store() -> DocumentStore:
    if _store is None:
        raise RuntimeError("Document store is not connected")
    return _store
