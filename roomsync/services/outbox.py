import enum
import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from roomsync.core.exceptions import RoomSyncError
from roomsync.services.chat_service import MessageLog

logger = logging.getLogger(__name__)


class DeliveryState(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


@dataclass
class OutgoingMessage:
    room_id: str
    sender_id: str
    text: str
    local_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: DeliveryState = DeliveryState.PENDING
    message_id: Optional[str] = None
    error: Optional[Exception] = None


class Outbox:
    """Tracks outgoing messages until the store confirms them.

    A draft is only considered gone once it is SENT; a FAILED message keeps
    its text so the sender can retry or discard it.
    """

    def __init__(self, message_log: MessageLog) -> None:
        self._message_log = message_log
        self._messages: Dict[str, OutgoingMessage] = {}

    async def submit(self, room_id: str, sender_id: str, text: str) -> OutgoingMessage:
        outgoing = OutgoingMessage(room_id=room_id, sender_id=sender_id, text=text)
        self._messages[outgoing.local_id] = outgoing
        await self._deliver(outgoing)
        return outgoing

    async def retry(self, outgoing: OutgoingMessage) -> OutgoingMessage:
        if outgoing.state is not DeliveryState.FAILED:
            raise ValueError(f"Only failed messages can be retried (state is {outgoing.state.value})")
        outgoing.state = DeliveryState.PENDING
        outgoing.error = None
        await self._deliver(outgoing)
        return outgoing

    def discard(self, outgoing: OutgoingMessage) -> None:
        if outgoing.state is DeliveryState.SENT:
            raise ValueError("Sent messages cannot be discarded")
        self._messages.pop(outgoing.local_id, None)

    def pending(self, room_id: str) -> List[OutgoingMessage]:
        return self._in_state(room_id, DeliveryState.PENDING)

    def failed(self, room_id: str) -> List[OutgoingMessage]:
        return self._in_state(room_id, DeliveryState.FAILED)

    def _in_state(self, room_id: str, state: DeliveryState) -> List[OutgoingMessage]:
        return [m for m in self._messages.values() if m.room_id == room_id and m.state is state]

    async def _deliver(self, outgoing: OutgoingMessage) -> None:
        try:
            message = await self._message_log.send_message(outgoing.room_id, outgoing.sender_id, outgoing.text)
        except (RoomSyncError, ValueError) as exc:
            outgoing.state = DeliveryState.FAILED
            outgoing.error = exc
            logger.warning("Message %s to room %s failed: %s", outgoing.local_id, outgoing.room_id, exc)
            return
        outgoing.state = DeliveryState.SENT
        outgoing.message_id = message.id
        self._messages.pop(outgoing.local_id, None)
