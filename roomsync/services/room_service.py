import enum
import logging
from typing import Iterable, List, Optional

from roomsync.core.exceptions import NotFoundError
from roomsync.repositories.message_repository import MessageRepository
from roomsync.repositories.room_repository import RoomRepository
from roomsync.repositories.user_repository import UserRepository
from roomsync.schemas.room import Room
from roomsync.schemas.user import UserPublic
from roomsync.store.base import DocumentStore, Transaction
from roomsync.store.subscription import Subscription

logger = logging.getLogger(__name__)


class RoomState(str, enum.Enum):
    ACTIVE = "active"
    DELETED = "deleted"


def _unique(ids: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for participant_id in ids:
        if participant_id and participant_id not in seen:
            seen.append(participant_id)
    return seen


class RoomRegistry:
    """Room membership, naming and mute state.

    Reads go through subscriptions; writes are field-scoped updates, and the
    membership changes that depend on the current participant set (invite,
    leave) run as store transactions so concurrent changes cannot clobber
    each other.
    """

    def __init__(
        self,
        store: DocumentStore,
        room_repo: RoomRepository,
        message_repo: MessageRepository,
        user_repo: UserRepository,
        min_participants: int = 1,
        max_attempts: int = 5,
    ) -> None:
        if min_participants < 1:
            raise ValueError("min_participants must be at least 1")
        self._store = store
        self._room_repo = room_repo
        self._message_repo = message_repo
        self._user_repo = user_repo
        self._min_participants = min_participants
        self._max_attempts = max_attempts

    def list_rooms_for_participant(self, participant_id: str) -> Subscription[List[Room]]:
        return self._room_repo.subscribe_for_participant(participant_id)

    async def get_rooms_for_participant(self, participant_id: str) -> List[Room]:
        return await self._room_repo.list_for_participant(participant_id)

    async def get_room(self, room_id: str) -> Optional[Room]:
        return await self._room_repo.get(room_id)

    def subscribe_room(self, room_id: str) -> Subscription[Optional[Room]]:
        """Stream of the room; ``None`` means it was deleted and the viewer should leave the screen."""
        return self._room_repo.subscribe(room_id)

    async def create_room(self, name: str, creator_id: str, participant_ids: Iterable[str]) -> Room:
        if not name or not name.strip():
            raise ValueError("Room name cannot be empty")
        participants = _unique([creator_id, *participant_ids])
        room_id = await self._room_repo.create(name.strip(), creator_id, participants)
        logger.info("Room %s created by %s with %d participants", room_id, creator_id, len(participants))
        room = await self._room_repo.get(room_id)
        return room or Room(id=room_id, name=name.strip(), participants=participants, created_by=creator_id)

    async def find_existing_room(self, participant_a: str, participant_b: str) -> Optional[Room]:
        # The store has no "contains both" query; the second membership check is done here.
        for room in await self._room_repo.list_for_participant(participant_a):
            if room.has_participant(participant_b):
                return room
        return None

    async def open_direct_room(self, participant_a: str, participant_b: str, name: Optional[str] = None) -> Room:
        existing = await self.find_existing_room(participant_a, participant_b)
        if existing is not None:
            return existing
        if not name:
            name = await self._user_repo.display_name(participant_b)
        return await self.create_room(name, participant_a, [participant_b])

    async def rename_room(self, room_id: str, new_name: str) -> bool:
        if not new_name or not new_name.strip():
            raise ValueError("Room name cannot be empty")
        new_name = new_name.strip()
        batch = self._store.batch()
        self._room_repo.stage_rename(batch, room_id, new_name)
        self._message_repo.stage_system(batch, room_id, f'Room name changed to "{new_name}".')
        try:
            await batch.commit()
        except NotFoundError:
            logger.warning("Rename of room %s skipped: room no longer exists", room_id)
            return False
        return True

    async def set_muted(self, room_id: str, participant_id: str, muted: bool) -> bool:
        try:
            updated = await self._room_repo.set_muted(room_id, participant_id, muted)
        except NotFoundError:
            logger.warning("Mute toggle on room %s skipped: room no longer exists", room_id)
            return False
        if not updated:
            logger.warning("Mute toggle on room %s skipped: %s is not a participant", room_id, participant_id)
        return updated

    async def invite_participant(self, room_id: str, target_id: str) -> bool:
        """Add ``target_id`` to an active room. False when already a participant."""
        display_name = await self._user_repo.display_name(target_id)

        async def _invite(transaction: Transaction) -> bool:
            doc = await transaction.get(self._room_repo.collection, room_id)
            if doc is None:
                raise NotFoundError(self._room_repo.collection, room_id)
            if target_id in (doc.get("participants") or []):
                return False
            self._room_repo.stage_invite(transaction, room_id, target_id)
            self._message_repo.stage_system(transaction, room_id, f"{display_name} was invited.")
            return True

        invited = await self._store.run_transaction(_invite, max_attempts=self._max_attempts)
        if invited:
            logger.info("%s invited to room %s", target_id, room_id)
        return invited

    async def leave_room(self, room_id: str, participant_id: str) -> RoomState:
        display_name = await self._user_repo.display_name(participant_id)

        async def _leave(transaction: Transaction) -> RoomState:
            doc = await transaction.get(self._room_repo.collection, room_id)
            if doc is None:
                return RoomState.DELETED
            participants = doc.get("participants") or []
            if participant_id not in participants:
                return RoomState.ACTIVE
            remaining = [other for other in participants if other != participant_id]
            if len(remaining) < self._min_participants:
                self._room_repo.stage_delete(transaction, room_id)
                return RoomState.DELETED
            self._room_repo.stage_leave(transaction, room_id, participant_id, remaining)
            self._message_repo.stage_system(transaction, room_id, f"{display_name} left the room.")
            return RoomState.ACTIVE

        state = await self._store.run_transaction(_leave, max_attempts=self._max_attempts)
        logger.info("%s left room %s (room is now %s)", participant_id, room_id, state.value)
        return state

    async def participants_of(self, room_id: str) -> List[UserPublic]:
        room = await self._room_repo.get(room_id)
        if room is None:
            raise NotFoundError(self._room_repo.collection, room_id)
        return await self._user_repo.get_users(room.participants)

    async def invite_candidates(self, room_id: str) -> List[UserPublic]:
        room = await self._room_repo.get(room_id)
        if room is None:
            raise NotFoundError(self._room_repo.collection, room_id)
        return [user for user in await self._user_repo.list_users() if not room.has_participant(user.id)]
