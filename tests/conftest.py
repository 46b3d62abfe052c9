"""Shared fixtures: an in-memory store and the services wired over it."""

from typing import Dict

import pytest

from roomsync.core.constants import USERS_COLLECTION
from roomsync.models.user import UserDocument
from roomsync.repositories.message_repository import MessageRepository
from roomsync.repositories.room_repository import RoomRepository
from roomsync.repositories.user_repository import UserRepository
from roomsync.services.chat_service import MessageLog
from roomsync.services.room_service import RoomRegistry
from roomsync.services.unread import UnreadCounter
from roomsync.store.memory import MemoryDocumentStore

USERS: Dict[str, UserDocument] = {
    "alice": {"email": "alice@example.com", "full_name": "Alice"},
    "bob": {"email": "bob@example.com", "full_name": "Bob"},
    "carol": {"email": "carol@example.com", "full_name": "Carol"},
    "dave": {"email": "dave@example.com", "full_name": None},
}


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
async def store():
    store = MemoryDocumentStore()
    for user_id, profile in USERS.items():
        await store.merge(USERS_COLLECTION, user_id, profile)
    try:
        yield store
    finally:
        await store.close()


@pytest.fixture
def room_repo(store) -> RoomRepository:
    return RoomRepository(store)


@pytest.fixture
def message_repo(store) -> MessageRepository:
    return MessageRepository(store)


@pytest.fixture
def unread(room_repo) -> UnreadCounter:
    return UnreadCounter(room_repo)


@pytest.fixture
def message_log(store, message_repo, room_repo, unread) -> MessageLog:
    return MessageLog(store, message_repo, room_repo, unread)


@pytest.fixture
def make_registry(store, room_repo, message_repo):
    def _make(min_participants: int = 1) -> RoomRegistry:
        return RoomRegistry(
            store,
            room_repo,
            message_repo,
            UserRepository(store),
            min_participants=min_participants,
            max_attempts=10,
        )

    return _make


@pytest.fixture
def registry(make_registry) -> RoomRegistry:
    return make_registry()
