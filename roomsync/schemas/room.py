from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from roomsync.core.constants import NO_MESSAGES_PLACEHOLDER, UNKNOWN_ROOM_NAME
from roomsync.store.base import Document


class Room(BaseModel):

    id: str
    name: str = UNKNOWN_ROOM_NAME
    participants: List[str] = Field(default_factory=list)
    last_message: str = NO_MESSAGES_PLACEHOLDER
    last_message_at: Optional[datetime] = None
    last_message_sender_id: Optional[str] = None
    unread_counts: Dict[str, int] = Field(default_factory=dict)
    muted_by: List[str] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_document(cls, doc: Document) -> "Room":
        data = {key: value for key, value in doc.data.items() if value is not None}
        return cls(id=doc.id, **data)

    def unread_for(self, participant_id: str) -> int:
        # Keys of removed participants may linger; only a participant's own key is ever read.
        return self.unread_counts.get(participant_id, 0)

    def is_muted_for(self, participant_id: str) -> bool:
        return participant_id in self.muted_by

    def has_participant(self, participant_id: str) -> bool:
        return participant_id in self.participants


class RoomCreate(BaseModel):

    name: str = Field(min_length=1)
    participant_ids: List[str] = Field(default_factory=list)


class RoomRename(BaseModel):

    name: str = Field(min_length=1)


class MuteUpdate(BaseModel):

    muted: bool


class InviteRequest(BaseModel):

    user_id: str
