import logging

from fastapi import APIRouter, Depends, HTTPException, WebSocket, status
from fastapi.responses import JSONResponse

from roomsync.core.exceptions import WriteError
from roomsync.schemas.message import MessageCreate
from roomsync.schemas.user import UserPublic
from roomsync.services.chat_service import MessageLog
from roomsync.services.room_service import RoomRegistry
from roomsync.services.unread import UnreadCounter
from roomsync.utils.dependencies import (
    authenticate_websocket,
    get_current_user,
    get_message_log,
    get_room_registry,
    get_unread_counter,
    require_participant,
)
from roomsync.utils.websocket_manager import close_quietly, stream_until_disconnect

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rooms/{room_id}/messages", tags=["chat"])


@router.get("")
async def list_messages(
    room_id: str,
    current_user: UserPublic = Depends(get_current_user),
    registry: RoomRegistry = Depends(get_room_registry),
    message_log: MessageLog = Depends(get_message_log),
):
    await require_participant(registry, room_id, current_user.id)
    return {"items": await message_log.get_messages(room_id)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def send_message(
    room_id: str,
    body: MessageCreate,
    current_user: UserPublic = Depends(get_current_user),
    registry: RoomRegistry = Depends(get_room_registry),
    message_log: MessageLog = Depends(get_message_log),
):
    await require_participant(registry, room_id, current_user.id)
    try:
        return await message_log.send_message(room_id, current_user.id, body.text)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except WriteError as exc:
        logger.warning("Send to room %s failed: %s", room_id, exc)
        # The draft goes back to the client so nothing typed is lost.
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Message could not be sent.", "text": body.text},
        )


@router.websocket("/ws")
async def messages_socket(
    websocket: WebSocket,
    room_id: str,
    registry: RoomRegistry = Depends(get_room_registry),
    message_log: MessageLog = Depends(get_message_log),
    unread: UnreadCounter = Depends(get_unread_counter),
):
    user_id = await authenticate_websocket(websocket)
    if user_id is None:
        return
    room = await registry.get_room(room_id)
    if room is None or not room.has_participant(user_id):
        await websocket.close(code=4403)
        return
    await websocket.accept()
    await unread.on_room_opened(room_id, user_id)

    async def _room() -> None:
        async with registry.subscribe_room(room_id) as updates:
            async for current in updates:
                if current is None:
                    await websocket.send_json({"type": "room_deleted", "room_id": room_id})
                    await close_quietly(websocket)
                    return
                if not current.has_participant(user_id):
                    await websocket.send_json({"type": "room_left", "room_id": room_id})
                    await close_quietly(websocket)
                    return
                await websocket.send_json({"type": "room", "room": current.model_dump(mode="json")})

    async def _messages() -> None:
        async with message_log.subscribe_messages(room_id) as stream:
            async for messages in stream:
                await websocket.send_json({
                    "type": "messages",
                    "items": [message.model_dump(mode="json") for message in messages],
                })
                # The viewer is looking at the room, so whatever just arrived is read.
                await unread.on_room_opened(room_id, user_id)

    await stream_until_disconnect(websocket, [_room, _messages])
