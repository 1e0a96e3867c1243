# roomsync/models/models.py
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RoomType(IntEnum):
    INVALID = 0
    GROUP = 1
    ONE_TO_ONE = 2
    PUBLIC = 4


class UserStatus(str, Enum):
    OWNER = "owner"
    MEMBER = "member"
    INVITED = "invited"
    CLOSED = "closed"


class MessageType(IntEnum):
    TEXT = 0
    IMAGE = 2
    FILE = 7


# ============================================================================
# BACKEND PAYLOADS
# ============================================================================

class RoomMeta(BaseModel):
    """Room meta node, ``rooms/{rid}/meta``. Unknown keys are kept."""

    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    type: Optional[int] = None
    type_v4: Optional[int] = None
    created: Optional[int] = None
    image: Optional[str] = None
    user_created: Optional[bool] = None

    def room_type(self) -> RoomType:
        for value in (self.type, self.type_v4):
            if value:
                try:
                    return RoomType(int(value))
                except ValueError:
                    continue
        return RoomType.INVALID


class MembershipRecord(BaseModel):
    """One member of a room, ``rooms/{rid}/users/{uid}``."""

    model_config = ConfigDict(extra="allow")

    uid: str
    status: Optional[str] = None
    time: Optional[int] = None
    name: Optional[str] = None


class MessagePayload(BaseModel):
    """
    A message as stored in the log, ``rooms/{rid}/messages/{mid}``.

    ``time`` is assigned by the backend on write and is the sort key.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    sender_id: str = Field(alias="from")
    type: MessageType = MessageType.TEXT
    meta: Dict[str, Any] = Field(default_factory=dict)
    to: List[str] = Field(default_factory=list)
    time: Optional[int] = None

    @classmethod
    def text(cls, sender_id: str, text: str, to: Optional[List[str]] = None) -> "MessagePayload":
        return cls(sender_id=sender_id, type=MessageType.TEXT, meta={"text": text}, to=to or [])

    @classmethod
    def image(cls, sender_id: str, url: str, width: int, height: int,
              to: Optional[List[str]] = None) -> "MessagePayload":
        meta = {"image-url": url, "image-width": width, "image-height": height, "text": "Image"}
        return cls(sender_id=sender_id, type=MessageType.IMAGE, meta=meta, to=to or [])

    @classmethod
    def file(cls, sender_id: str, file_name: str, mime_type: str, file_url: str,
             to: Optional[List[str]] = None) -> "MessagePayload":
        meta = {"file-name": file_name, "mime-type": mime_type, "file-url": file_url, "text": file_name}
        return cls(sender_id=sender_id, type=MessageType.FILE, meta=meta, to=to or [])

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class TypingEntry(BaseModel):
    name: str = ""


# ============================================================================
# API MODELS
# ============================================================================

class MessageOut(BaseModel):
    mid: str
    sender_id: str
    type: MessageType
    text: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
    time: Optional[int] = None
    read: bool = False
    flagged: bool = False


class RoomSummary(BaseModel):
    id: str
    name: str
    type: RoomType
    badge: int = 0
    online_user_count: int = 0
    user_count: int = 0
    typing: Optional[str] = None
    is_on: bool = False
    is_open: bool = False
    active: bool = True
    deleted: bool = False
    last_message: Optional[MessageOut] = None


class CreateRoomRequest(BaseModel):
    name: Optional[str] = ""
    type: RoomType = RoomType.GROUP
    user_ids: List[str] = Field(default_factory=list)


class SendMessageRequest(BaseModel):
    text: str


class OpenRoomRequest(BaseModel):
    slot: int = 0
    duration: int = 300
