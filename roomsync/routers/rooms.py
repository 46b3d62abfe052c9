import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, WebSocket, status

from roomsync.schemas.room import InviteRequest, MuteUpdate, Room, RoomCreate, RoomRename
from roomsync.schemas.user import UserPublic
from roomsync.services.room_service import RoomRegistry
from roomsync.services.unread import UnreadCounter
from roomsync.utils.dependencies import (
    authenticate_websocket,
    get_current_user,
    get_room_registry,
    get_unread_counter,
    require_participant,
)
from roomsync.utils.websocket_manager import stream_until_disconnect

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rooms", tags=["rooms"])


def _muted_room_ids(rooms: List[Room], user_id: str) -> List[str]:
    return [room.id for room in rooms if room.is_muted_for(user_id)]


@router.get("")
async def list_rooms(current_user: UserPublic = Depends(get_current_user), registry: RoomRegistry = Depends(get_room_registry)):
    rooms = await registry.get_rooms_for_participant(current_user.id)
    return {
        "items": rooms,
        "unread_total": UnreadCounter.unread_total(rooms, current_user.id),
        "muted_room_ids": _muted_room_ids(rooms, current_user.id),
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_room(body: RoomCreate, current_user: UserPublic = Depends(get_current_user), registry: RoomRegistry = Depends(get_room_registry)):
    try:
        return await registry.create_room(body.name, current_user.id, body.participant_ids)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/direct/{user_id}")
async def open_direct_room(user_id: str, current_user: UserPublic = Depends(get_current_user), registry: RoomRegistry = Depends(get_room_registry)):
    if user_id == current_user.id:
        raise HTTPException(status_code=400, detail="Cannot open a direct room with yourself.")
    return await registry.open_direct_room(current_user.id, user_id)


@router.patch("/{room_id}")
async def rename_room(room_id: str, body: RoomRename, current_user: UserPublic = Depends(get_current_user), registry: RoomRegistry = Depends(get_room_registry)):
    await require_participant(registry, room_id, current_user.id)
    try:
        renamed = await registry.rename_room(room_id, body.name)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"renamed": renamed}


@router.put("/{room_id}/mute")
async def set_muted(room_id: str, body: MuteUpdate, current_user: UserPublic = Depends(get_current_user), registry: RoomRegistry = Depends(get_room_registry)):
    await require_participant(registry, room_id, current_user.id)
    updated = await registry.set_muted(room_id, current_user.id, body.muted)
    return {"updated": updated, "muted": body.muted}


@router.post("/{room_id}/read")
async def mark_read(
    room_id: str,
    current_user: UserPublic = Depends(get_current_user),
    registry: RoomRegistry = Depends(get_room_registry),
    unread: UnreadCounter = Depends(get_unread_counter),
):
    await require_participant(registry, room_id, current_user.id)
    return {"updated": await unread.on_room_opened(room_id, current_user.id)}


@router.get("/{room_id}/participants")
async def list_participants(room_id: str, current_user: UserPublic = Depends(get_current_user), registry: RoomRegistry = Depends(get_room_registry)):
    await require_participant(registry, room_id, current_user.id)
    return {"items": await registry.participants_of(room_id)}


@router.post("/{room_id}/participants")
async def invite_participant(room_id: str, body: InviteRequest, current_user: UserPublic = Depends(get_current_user), registry: RoomRegistry = Depends(get_room_registry)):
    await require_participant(registry, room_id, current_user.id)
    invited = await registry.invite_participant(room_id, body.user_id)
    return {"invited": invited}


@router.delete("/{room_id}/participants/me")
async def leave_room(room_id: str, current_user: UserPublic = Depends(get_current_user), registry: RoomRegistry = Depends(get_room_registry)):
    state = await registry.leave_room(room_id, current_user.id)
    return {"state": state.value}


@router.get("/{room_id}/invite-candidates")
async def invite_candidates(room_id: str, current_user: UserPublic = Depends(get_current_user), registry: RoomRegistry = Depends(get_room_registry)):
    await require_participant(registry, room_id, current_user.id)
    return {"items": await registry.invite_candidates(room_id)}


@router.websocket("/ws")
async def rooms_socket(websocket: WebSocket, registry: RoomRegistry = Depends(get_room_registry)):
    user_id = await authenticate_websocket(websocket)
    if user_id is None:
        return
    await websocket.accept()

    async def _rooms() -> None:
        async with registry.list_rooms_for_participant(user_id) as rooms:
            async for snapshot in rooms:
                await websocket.send_json({
                    "type": "rooms",
                    "items": [room.model_dump(mode="json") for room in snapshot],
                    "unread_total": UnreadCounter.unread_total(snapshot, user_id),
                    "muted_room_ids": _muted_room_ids(snapshot, user_id),
                })

    await stream_until_disconnect(websocket, [_rooms])
