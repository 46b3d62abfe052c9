from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    PROJECT_NAME: str = "roomsync"
    LOG_LEVEL: str = "INFO"

    # Document store
    STORE_BACKEND: Literal["mongo", "memory"] = "mongo"
    MONGODB_URL: str = "mongodb://localhost:27017/?replicaSet=rs0"
    MONGODB_DB: str = "roomsync"
    TRANSACTION_MAX_ATTEMPTS: int = 5

    # A room with fewer remaining participants than this after a leave is deleted.
    # 1 deletes only empty rooms, 2 also deletes rooms left with a single member.
    ROOM_MIN_PARTICIPANTS: int = 1

    # Tokens are issued by the authentication collaborator; `sub` is the participant id.
    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"


@lru_cache
def get_settings() -> Settings:
    return Settings()
