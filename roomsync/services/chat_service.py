import logging
from typing import List

from roomsync.core.exceptions import NotFoundError
from roomsync.repositories.message_repository import MessageRepository
from roomsync.repositories.room_repository import RoomRepository
from roomsync.schemas.message import Message
from roomsync.services.unread import UnreadCounter
from roomsync.store.base import DocumentStore
from roomsync.store.subscription import Subscription

logger = logging.getLogger(__name__)


class MessageLog:

    def __init__(
        self,
        store: DocumentStore,
        message_repo: MessageRepository,
        room_repo: RoomRepository,
        unread: UnreadCounter,
    ) -> None:
        self._store = store
        self._message_repo = message_repo
        self._room_repo = room_repo
        self._unread = unread

    async def send_message(self, room_id: str, sender_id: str, text: str) -> Message:
        """Append a message and bump the room summary and counters in one commit.

        Raises ValueError for blank text, NotFoundError when the room is gone
        and WriteError when the store rejects the commit.
        """
        if not text or not text.strip():
            raise ValueError("Message content cannot be empty")
        text = text.strip()
        room = await self._room_repo.get(room_id)
        if room is None:
            raise NotFoundError(self._room_repo.collection, room_id)

        batch = self._store.batch()
        message_id = self._message_repo.stage_append(batch, room_id, sender_id, text)
        self._unread.on_send(batch, room_id, sender_id, room.participants, text)
        await batch.commit()
        logger.debug("Message %s sent to room %s by %s", message_id, room_id, sender_id)

        stored = await self._message_repo.get_message(room_id, message_id)
        return stored or Message(id=message_id, text=text, sender_id=sender_id)

    async def append_system_message(self, room_id: str, text: str) -> str:
        return await self._message_repo.append_system(room_id, text)

    async def get_messages(self, room_id: str) -> List[Message]:
        return await self._message_repo.get_messages(room_id)

    def subscribe_messages(self, room_id: str) -> Subscription[List[Message]]:
        return self._message_repo.subscribe(room_id)
