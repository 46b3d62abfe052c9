import asyncio
from typing import Iterable, List, Optional

from roomsync.core.constants import USERS_COLLECTION
from roomsync.schemas.user import UserPublic
from roomsync.store.base import DocumentStore, Query


class UserRepository:
    """Read-only access to profiles owned by the authentication collaborator."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def get_user_by_id(self, user_id: str) -> Optional[UserPublic]:
        doc = await self._store.get(USERS_COLLECTION, user_id)
        return UserPublic.from_document(doc) if doc else None

    async def get_users(self, user_ids: Iterable[str]) -> List[UserPublic]:
        users = await asyncio.gather(*(self.get_user_by_id(user_id) for user_id in user_ids))
        return [user for user in users if user is not None]

    async def list_users(self) -> List[UserPublic]:
        docs = await self._store.query(Query(USERS_COLLECTION))
        return [UserPublic.from_document(doc) for doc in docs]

    async def display_name(self, user_id: str) -> str:
        user = await self.get_user_by_id(user_id)
        return user.display_name if user else user_id
