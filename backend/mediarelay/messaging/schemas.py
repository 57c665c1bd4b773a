"""Pydantic schemas for LINE webhook payloads.

Only the fields the relay reads are modelled; everything else in the
payload is ignored. Field names follow the wire format (camelCase), the same
way the chat models keep ``userId`` / ``displayName``.
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from mediarelay.access.schemas import Principal


class MediaKind(str, Enum):
    """Message types that carry archivable content."""
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"

    @classmethod
    def coerce(cls, value: str) -> "MediaKind":
        """Map a message type to a media kind; unknown kinds fold into FILE."""
        try:
            return cls(value)
        except ValueError:
            return cls.FILE


# Extension used when the platform does not supply a file name.
DEFAULT_EXTENSIONS = {
    MediaKind.IMAGE: "jpg",
    MediaKind.VIDEO: "mp4",
    MediaKind.AUDIO: "m4a",
    MediaKind.FILE: "dat",
}


class SourceType(str, Enum):
    USER = "user"
    GROUP = "group"
    ROOM = "room"


class EventSource(BaseModel):
    type: SourceType
    userId: Optional[str] = None
    groupId: Optional[str] = None
    roomId: Optional[str] = None


class EventMessage(BaseModel):
    type: str
    id: str
    text: Optional[str] = None
    fileName: Optional[str] = None
    fileSize: Optional[int] = None


class InboundEvent(BaseModel):
    """A single webhook event."""
    type: str
    source: EventSource
    message: Optional[EventMessage] = None
    replyToken: Optional[str] = None
    timestamp: int = 0
    webhookEventId: Optional[str] = None

    @property
    def conversation_key(self) -> str:
        """Group id, else room id, else user id."""
        src = self.source
        return src.groupId or src.roomId or src.userId or "unknown"

    @property
    def principal(self) -> Optional[Principal]:
        """The principal whose whitelist entry governs this event."""
        src = self.source
        if src.type == SourceType.GROUP and src.groupId:
            return Principal.group(src.groupId)
        if src.type == SourceType.ROOM and src.roomId:
            return Principal.group(src.roomId)
        if src.userId:
            return Principal.user(src.userId)
        return None

    @property
    def text(self) -> Optional[str]:
        if self.type != "message" or self.message is None or self.message.type != "text":
            return None
        return (self.message.text or "").strip()

    @property
    def media_kind(self) -> Optional[MediaKind]:
        if self.type != "message" or self.message is None:
            return None
        try:
            return MediaKind(self.message.type)
        except ValueError:
            return None

    def file_name(self) -> str:
        """Platform file name, or ``<messageId>.<ext>`` for unnamed media."""
        kind = self.media_kind or MediaKind.FILE
        if self.message is not None and self.message.fileName:
            return self.message.fileName
        message_id = self.message.id if self.message is not None else "unknown"
        return f"{message_id}.{DEFAULT_EXTENSIONS[kind]}"


class WebhookPayload(BaseModel):
    destination: Optional[str] = None
    events: List[InboundEvent] = Field(default_factory=list)
