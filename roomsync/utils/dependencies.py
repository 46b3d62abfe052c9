import logging
from typing import Optional

from fastapi import Depends, HTTPException, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from roomsync.core.config import get_settings
from roomsync.database.connection import get_store
from roomsync.repositories.message_repository import MessageRepository
from roomsync.repositories.room_repository import RoomRepository
from roomsync.repositories.user_repository import UserRepository
from roomsync.schemas.user import TokenPayload, UserPublic
from roomsync.services.chat_service import MessageLog
from roomsync.services.room_service import RoomRegistry
from roomsync.services.unread import UnreadCounter
from roomsync.store.base import DocumentStore
from roomsync.utils.security import decode_access_token

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def get_room_registry(store: DocumentStore = Depends(get_store)) -> RoomRegistry:
    settings = get_settings()
    return RoomRegistry(
        store,
        RoomRepository(store),
        MessageRepository(store),
        UserRepository(store),
        min_participants=settings.ROOM_MIN_PARTICIPANTS,
        max_attempts=settings.TRANSACTION_MAX_ATTEMPTS,
    )


def get_unread_counter(store: DocumentStore = Depends(get_store)) -> UnreadCounter:
    return UnreadCounter(RoomRepository(store))


def get_message_log(store: DocumentStore = Depends(get_store)) -> MessageLog:
    room_repo = RoomRepository(store)
    return MessageLog(store, MessageRepository(store), room_repo, UnreadCounter(room_repo))


def _participant_id(token: str) -> Optional[str]:
    try:
        return TokenPayload(**decode_access_token(token)).sub
    except (JWTError, ValueError) as exc:
        logger.info("Rejected access token: %s", exc)
        return None


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    store: DocumentStore = Depends(get_store),
) -> UserPublic:
    participant_id = _participant_id(credentials.credentials) if credentials else None
    if participant_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = await UserRepository(store).get_user_by_id(participant_id)
    return user or UserPublic(id=participant_id)


async def authenticate_websocket(websocket: WebSocket) -> Optional[str]:
    """Participant id from the ``token`` query parameter, or None after closing with 4401."""
    token = websocket.query_params.get("token")
    participant_id = _participant_id(token) if token else None
    if participant_id is None:
        await websocket.close(code=4401)
    return participant_id


async def require_participant(registry: RoomRegistry, room_id: str, user_id: str) -> None:
    room = await registry.get_room(room_id)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found.")
    if not room.has_participant(user_id):
        raise HTTPException(status_code=403, detail="Not a participant of this room.")
