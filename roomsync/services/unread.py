import logging
from typing import Iterable

from roomsync.core.exceptions import NotFoundError
from roomsync.repositories.room_repository import RoomRepository
from roomsync.schemas.room import Room
from roomsync.store.base import WriteBatch

logger = logging.getLogger(__name__)


class UnreadCounter:
    """Per-room, per-participant unread counts kept without read-modify-write.

    A send adds an atomic +1 delta to every other participant's key; opening a
    room assigns 0 to the viewer's key only, and only while the viewer is a
    participant, so a removed participant's key is never recreated. Both are
    single-key writes, so they commute and neither can drop the other's update.
    """

    def __init__(self, room_repo: RoomRepository) -> None:
        self._room_repo = room_repo

    def on_send(
        self, writer: WriteBatch, room_id: str, sender_id: str, participants: Iterable[str], text: str
    ) -> None:
        recipients = [participant_id for participant_id in participants if participant_id != sender_id]
        self._room_repo.stage_summary(writer, room_id, sender_id, text, recipients)

    async def on_room_opened(self, room_id: str, viewer_id: str) -> bool:
        try:
            reset = await self._room_repo.reset_unread(room_id, viewer_id)
        except NotFoundError:
            logger.info("Room %s is gone, nothing to mark read for %s", room_id, viewer_id)
            return False
        if not reset:
            logger.info("%s is not a participant of room %s, unread left untouched", viewer_id, room_id)
        return reset

    @staticmethod
    def unread_total(rooms: Iterable[Room], participant_id: str) -> int:
        return sum(room.unread_for(participant_id) for room in rooms)
