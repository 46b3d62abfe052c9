from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from roomsync.core.constants import SYSTEM_SENDER
from roomsync.store.base import Document


class Message(BaseModel):

    id: str
    text: str
    sender_id: str
    created_at: Optional[datetime] = None

    @property
    def is_system(self) -> bool:
        return self.sender_id == SYSTEM_SENDER

    @classmethod
    def from_document(cls, doc: Document) -> "Message":
        return cls(
            id=doc.id,
            text=doc.get("text", ""),
            sender_id=doc.get("sender_id", ""),
            created_at=doc.get("created_at"),
        )


class MessageCreate(BaseModel):

    text: str = Field(min_length=1)
