from datetime import datetime
from typing import Dict, List, Optional, TypedDict


class RoomDocument(TypedDict, total=False):
    name: str
    participants: List[str]
    last_message: str
    # server timestamp; None until the store commits the first write
    last_message_at: Optional[datetime]
    last_message_sender_id: Optional[str]
    # per-participant unread counters (participant_id -> count)
    unread_counts: Dict[str, int]
    # participants who turned notifications off for this room
    muted_by: List[str]
    created_by: str
    created_at: Optional[datetime]
