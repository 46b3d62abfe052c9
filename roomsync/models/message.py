from datetime import datetime
from typing import Optional, TypedDict


class MessageDocument(TypedDict, total=False):
    text: str
    # participant id, or "system" for membership and rename announcements
    sender_id: str
    created_at: Optional[datetime]
