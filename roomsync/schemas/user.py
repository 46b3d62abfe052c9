from typing import Optional

from pydantic import BaseModel, EmailStr

from roomsync.store.base import Document


class UserPublic(BaseModel):

    id: str
    email: Optional[EmailStr] = None
    full_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.full_name or self.email or self.id

    @classmethod
    def from_document(cls, doc: Document) -> "UserPublic":
        return cls(id=doc.id, email=doc.get("email"), full_name=doc.get("full_name"))


class TokenPayload(BaseModel):

    sub: str
    exp: Optional[int] = None
