from typing import List, Optional

from roomsync.core.constants import SYSTEM_SENDER, messages_collection
from roomsync.models.message import MessageDocument
from roomsync.schemas.message import Message
from roomsync.store.base import SERVER_TIMESTAMP, DocumentStore, Query, Writer
from roomsync.store.subscription import Subscription


def _message_document(sender_id: str, text: str) -> MessageDocument:
    return {"text": text, "sender_id": sender_id, "created_at": SERVER_TIMESTAMP}


class MessageRepository:

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def history_query(self, room_id: str) -> Query:
        return Query(messages_collection(room_id)).order("created_at", "asc")

    def stage_append(self, writer: Writer, room_id: str, sender_id: str, text: str) -> str:
        return writer.append(messages_collection(room_id), dict(_message_document(sender_id, text)))

    def stage_system(self, writer: Writer, room_id: str, text: str) -> str:
        return self.stage_append(writer, room_id, SYSTEM_SENDER, text)

    async def append_system(self, room_id: str, text: str) -> str:
        return await self._store.append(messages_collection(room_id), dict(_message_document(SYSTEM_SENDER, text)))

    async def get_messages(self, room_id: str) -> List[Message]:
        docs = await self._store.query(self.history_query(room_id))
        return [Message.from_document(doc) for doc in docs]

    async def get_message(self, room_id: str, message_id: str) -> Optional[Message]:
        doc = await self._store.get(messages_collection(room_id), message_id)
        return Message.from_document(doc) if doc else None

    def subscribe(self, room_id: str) -> Subscription[List[Message]]:
        return self._store.subscribe(self.history_query(room_id)).map(
            lambda docs: [Message.from_document(doc) for doc in docs]
        )
