"""Domain models for chat rooms, chat messages and notifications."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat datetimes without a timezone as UTC and convert the rest to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RoomKind(str, Enum):
    """Kind of chat room."""

    DIRECT = "direct"
    GROUP = "group"


class MessageKind(str, Enum):
    """Kind of chat message."""

    TEXT = "text"
    MEME = "meme"
    IMAGE = "image"


class Document(BaseModel):
    """Base for entities persisted as store documents."""

    def to_document(self) -> Dict[str, Any]:
        """Serialize into the shape written to the store."""
        return self.model_dump()

    @classmethod
    def from_document(cls, doc: Dict[str, Any]):
        """Build the entity back from a stored document."""
        return cls.model_validate(doc)


class AttachmentData(BaseModel):
    """Shared content attached to a non-text message."""

    reference_id: str
    title: str
    media_url: str
    attribution: str = ""


class LastMessageSummary(BaseModel):
    """Denormalized view of a room's latest message."""

    text: str
    sender_id: str
    timestamp: datetime
    kind: MessageKind = MessageKind.TEXT

    @field_validator("timestamp")
    @classmethod
    def timestamp_in_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class ChatRoom(Document):
    """Chat room model."""

    id: str
    kind: RoomKind
    name: Optional[str] = None
    participants: List[str]
    created_by: str
    created_at: datetime = Field(default_factory=utcnow)
    last_message_summary: Optional[LastMessageSummary] = None
    last_activity: datetime = Field(default_factory=utcnow)
    is_active: bool = True

    @field_validator("created_at", "last_activity")
    @classmethod
    def times_in_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class ChatMessage(Document):
    """Chat message model."""

    id: str
    chat_id: str
    sender_id: str
    sender_name: str
    text: str
    kind: MessageKind = MessageKind.TEXT
    timestamp: datetime = Field(default_factory=utcnow)
    attachment_data: Optional[AttachmentData] = None
    read_by: List[str] = []
    edited: bool = False
    edited_at: Optional[datetime] = None

    @field_validator("timestamp", "edited_at")
    @classmethod
    def times_in_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @model_validator(mode="after")
    def sender_has_read(self) -> "ChatMessage":
        # The sender has always read their own message
        if self.sender_id not in self.read_by:
            self.read_by = [self.sender_id, *self.read_by]
        return self

    def summary(self) -> LastMessageSummary:
        """Summary written onto the parent room."""
        return LastMessageSummary(
            text=self.text,
            sender_id=self.sender_id,
            timestamp=self.timestamp,
            kind=self.kind,
        )


class Notification(Document):
    """Notification model."""

    id: str
    user_id: str
    from_user_id: Optional[str] = None
    type: str
    target_id: Optional[str] = None
    message: str
    read: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = {}

    @field_validator("created_at")
    @classmethod
    def created_at_in_utc(cls, value: datetime) -> datetime:
        return as_utc(value)
