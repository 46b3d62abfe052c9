from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import jwt

from roomsync.core.config import get_settings


def decode_access_token(token: str) -> Dict[str, Any]:
    """Decode a token issued by the authentication collaborator. Raises jose.JWTError."""
    settings = get_settings()
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])


def create_access_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    """Issue a token for ``subject``; used by tooling and tests in place of the real issuer."""
    settings = get_settings()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=1))
    return jwt.encode({"sub": subject, "exp": expire}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
