# roomsync/core/config.py
import os
from typing import Literal
from dotenv import load_dotenv


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """
    Setup environment variables.
        - ROOMSYNC_BACKEND the append-log backend to use: "memory" or "redis"
        - ROOMSYNC_USER_ID / ROOMSYNC_USER_NAME the session user of the service
        - MAX_HISTORIC_MESSAGES entries fetched per message subscription
        - MESSAGE_RETENTION_CAP messages kept in memory per room
        - BADGE_CEILING the highest unread count displayed
        - SOUND_FRESHNESS_SECONDS how old a message may be and still play a sound

    Instances can be tweaked per attribute (tests do this), the module level
    ``settings`` object is what the service uses.
    """

    # Load environment variables from the .env file
    load_dotenv()

    BACKEND: Literal["memory", "redis"] = os.getenv("ROOMSYNC_BACKEND", "memory")

    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", "6379"))
    REDIS_ACCESS_KEY: str = os.getenv("REDIS_ACCESS_KEY", "")
    REDIS_SSL: bool = _flag("REDIS_SSL", "true")
    REDIS_KEY_PREFIX: str = os.getenv("REDIS_KEY_PREFIX", "roomsync:")

    USER_ID: str = os.getenv("ROOMSYNC_USER_ID", "local-user")
    USER_NAME: str = os.getenv("ROOMSYNC_USER_NAME", "Local User")

    MAX_HISTORIC_MESSAGES: int = int(os.getenv("MAX_HISTORIC_MESSAGES", "50"))
    MESSAGE_RETENTION_CAP: int = int(os.getenv("MESSAGE_RETENTION_CAP", "100"))
    BADGE_CEILING: int = int(os.getenv("BADGE_CEILING", "99"))
    SOUND_FRESHNESS_SECONDS: float = float(os.getenv("SOUND_FRESHNESS_SECONDS", "30"))
    LOAD_MORE_MESSAGES: int = int(os.getenv("LOAD_MORE_MESSAGES", "10"))

    ROOM_NAME_MAX_LENGTH: int = int(os.getenv("ROOM_NAME_MAX_LENGTH", "60"))
    ROOM_DEFAULT_NAME_PUBLIC: str = os.getenv("ROOM_DEFAULT_NAME_PUBLIC", "Public Room")
    ROOM_DEFAULT_NAME_EMPTY: str = os.getenv("ROOM_DEFAULT_NAME_EMPTY", "Empty Room")
    ROOM_DEFAULT_NAME_GROUP: str = os.getenv("ROOM_DEFAULT_NAME_GROUP", "Group")
    ROOM_DEFAULT_NAME_1TO1: str = os.getenv("ROOM_DEFAULT_NAME_1TO1", "Direct Message")

    TIME_FORMAT: Literal["24hour", "12hour"] = os.getenv("TIME_FORMAT", "24hour")

settings = Settings()
