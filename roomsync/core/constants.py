ROOMS_COLLECTION = "rooms"
USERS_COLLECTION = "users"

SYSTEM_SENDER = "system"

ROOM_CREATED_PLACEHOLDER = "New chat room created."
UNKNOWN_ROOM_NAME = "Unknown room"
NO_MESSAGES_PLACEHOLDER = "No messages yet."

PREVIEW_MAX_LENGTH = 200


def messages_collection(room_id: str) -> str:
    return f"{ROOMS_COLLECTION}/{room_id}/messages"
