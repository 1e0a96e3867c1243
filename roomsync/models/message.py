# roomsync/models/message.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from roomsync.models.models import MessageOut, MessagePayload, MessageType


@dataclass(eq=False)
class Message:
    """
    A message held in a room's in-memory window.

    ``payload`` is frozen; only ``read`` and ``flagged`` change after the
    message is appended. ``previous``/``next`` are display links derived
    from the room's ordering.
    """

    mid: str
    payload: MessagePayload
    rid: Optional[str] = None
    read: bool = False
    flagged: bool = False
    previous: Optional["Message"] = field(default=None, repr=False)
    next: Optional["Message"] = field(default=None, repr=False)

    @classmethod
    def from_value(cls, mid: str, value: Any, rid: Optional[str] = None) -> "Message":
        """Raises pydantic.ValidationError on malformed payloads."""
        return cls(mid=mid, payload=MessagePayload.model_validate(value), rid=rid)

    @property
    def time(self) -> int:
        return self.payload.time or 0

    @property
    def sender_id(self) -> str:
        return self.payload.sender_id

    @property
    def type(self) -> MessageType:
        return self.payload.type

    def text(self) -> str:
        return str(self.payload.meta.get("text", ""))

    def mark_read(self) -> None:
        self.read = True

    @property
    def follows_same_sender(self) -> bool:
        """True when the previous message has the same sender (UI collapsing)."""
        return self.previous is not None and self.previous.sender_id == self.sender_id

    def to_out(self) -> MessageOut:
        return MessageOut(
            mid=self.mid,
            sender_id=self.sender_id,
            type=self.type,
            text=self.text(),
            meta=dict(self.payload.meta),
            time=self.payload.time,
            read=self.read,
            flagged=self.flagged,
        )
