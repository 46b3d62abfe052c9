from typing import Iterable, List, Optional, Sequence

from roomsync.core.constants import PREVIEW_MAX_LENGTH, ROOM_CREATED_PLACEHOLDER, ROOMS_COLLECTION, messages_collection
from roomsync.core.exceptions import NotFoundError
from roomsync.models.room import RoomDocument
from roomsync.schemas.room import Room
from roomsync.store.base import (
    DELETE_FIELD,
    SERVER_TIMESTAMP,
    ArrayRemove,
    ArrayUnion,
    DocumentStore,
    Increment,
    Query,
    Transaction,
    Writer,
)
from roomsync.store.subscription import Subscription


class RoomRepository:
    """Field-scoped reads and writes on room documents.

    Every write touches only the keys its caller owns: a sender owns the
    summary fields and the other participants' unread deltas, a viewer owns
    its own unread key, an inviter owns the participant set and the new
    member's initial counter.
    """

    collection = ROOMS_COLLECTION

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    def participant_query(self, participant_id: str) -> Query:
        return (
            Query(self.collection)
            .where("participants", "array_contains", participant_id)
            .order("last_message_at", "desc")
        )

    async def get(self, room_id: str) -> Optional[Room]:
        doc = await self._store.get(self.collection, room_id)
        return Room.from_document(doc) if doc else None

    async def list_for_participant(self, participant_id: str) -> List[Room]:
        docs = await self._store.query(self.participant_query(participant_id))
        return [Room.from_document(doc) for doc in docs]

    def subscribe_for_participant(self, participant_id: str) -> Subscription[List[Room]]:
        return self._store.subscribe(self.participant_query(participant_id)).map(
            lambda docs: [Room.from_document(doc) for doc in docs]
        )

    def subscribe(self, room_id: str) -> Subscription[Optional[Room]]:
        return self._store.subscribe_document(self.collection, room_id).map(
            lambda doc: Room.from_document(doc) if doc else None
        )

    async def create(self, name: str, creator_id: str, participants: Sequence[str]) -> str:
        document: RoomDocument = {
            "name": name,
            "participants": list(participants),
            "created_by": creator_id,
            "created_at": SERVER_TIMESTAMP,
            "last_message": ROOM_CREATED_PLACEHOLDER,
            "last_message_at": SERVER_TIMESTAMP,
            "last_message_sender_id": None,
            "unread_counts": {participant_id: 0 for participant_id in participants},
            "muted_by": [],
        }
        return await self._store.append(self.collection, dict(document))

    def stage_summary(
        self, writer: Writer, room_id: str, sender_id: str, text: str, recipients: Iterable[str]
    ) -> None:
        fields = {
            "last_message": text[:PREVIEW_MAX_LENGTH],
            "last_message_at": SERVER_TIMESTAMP,
            "last_message_sender_id": sender_id,
        }
        for participant_id in recipients:
            fields[f"unread_counts.{participant_id}"] = Increment(1)
        writer.update(self.collection, room_id, fields)

    async def reset_unread(self, room_id: str, participant_id: str) -> bool:
        """Zero the participant's own counter; False when they are no longer a participant."""

        async def _reset(transaction: Transaction) -> bool:
            if not await self._is_participant(transaction, room_id, participant_id):
                return False
            transaction.update(self.collection, room_id, {f"unread_counts.{participant_id}": 0})
            return True

        return await self._store.run_transaction(_reset)

    def stage_rename(self, writer: Writer, room_id: str, name: str) -> None:
        writer.update(self.collection, room_id, {"name": name})

    async def set_muted(self, room_id: str, participant_id: str, muted: bool) -> bool:
        """Toggle the participant's entry in ``muted_by``; False when it cannot apply."""

        async def _mute(transaction: Transaction) -> bool:
            if not await self._is_participant(transaction, room_id, participant_id):
                return False
            value = ArrayUnion(participant_id) if muted else ArrayRemove(participant_id)
            transaction.update(self.collection, room_id, {"muted_by": value})
            return True

        return await self._store.run_transaction(_mute)

    async def _is_participant(self, transaction: Transaction, room_id: str, participant_id: str) -> bool:
        doc = await transaction.get(self.collection, room_id)
        if doc is None:
            raise NotFoundError(self.collection, room_id)
        return participant_id in (doc.get("participants") or [])

    def stage_invite(self, writer: Writer, room_id: str, participant_id: str) -> None:
        writer.update(
            self.collection,
            room_id,
            {
                "participants": ArrayUnion(participant_id),
                f"unread_counts.{participant_id}": 0,
            },
        )

    def stage_leave(self, writer: Writer, room_id: str, participant_id: str, remaining: List[str]) -> None:
        writer.update(
            self.collection,
            room_id,
            {
                "participants": remaining,
                f"unread_counts.{participant_id}": DELETE_FIELD,
                "muted_by": ArrayRemove(participant_id),
            },
        )

    def stage_delete(self, writer: Writer, room_id: str) -> None:
        writer.delete(self.collection, room_id)
        writer.delete_collection(messages_collection(room_id))
