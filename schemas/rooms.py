from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from constants import REPLY_PREVIEW_LENGTH


class Category(str, Enum):
    STUDY = "study"
    TRAVEL = "travel"


class Channel(str, Enum):
    GENERAL = "general"
    VISA = "visa"


class Role(str, Enum):
    USER = "user"
    CONSULTANT = "consultant"
    RESIDENT = "resident"
    GUEST = "guest"


class RoomKey(BaseModel):
    """Identifies one message stream and one presence set: `{topic_id}/{category}/{channel}`."""
    model_config = ConfigDict(frozen=True)

    topic_id: str
    category: Category
    channel: Channel

    @field_validator("topic_id")
    @classmethod
    def check_topic_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("topic_id must not be empty")
        if "/" in value:
            raise ValueError("topic_id must not contain '/'")
        return value

    @classmethod
    def parse(cls, value: str) -> "RoomKey":
        parts = value.split("/")
        if len(parts) != 3:
            raise ValueError(f"Room key must look like topic/category/channel, got {value!r}")
        topic_id, category, channel = parts
        return cls(topic_id=topic_id, category=category, channel=channel)

    def with_channel(self, channel: Channel) -> "RoomKey":
        return RoomKey(topic_id=self.topic_id, category=self.category, channel=channel)

    def __str__(self) -> str:
        return f"{self.topic_id}/{self.category.value}/{self.channel.value}"


class Identity(BaseModel):
    """A participant as resolved by the authentication layer."""
    participant_id: str
    display_name: str
    role: Role

    @field_validator("participant_id", "display_name")
    @classmethod
    def not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @property
    def is_guest(self) -> bool:
        return self.role == Role.GUEST


class ReplyTo(BaseModel):
    message_id: str
    sender_name: str
    content: str

    @classmethod
    def from_message(cls, target: "Message") -> "ReplyTo":
        content = target.content
        if len(content) > REPLY_PREVIEW_LENGTH:
            content = content[:REPLY_PREVIEW_LENGTH] + "..."
        return cls(message_id=target.id, sender_name=target.sender_name, content=content)


class MessageDraft(BaseModel):
    sender_id: str
    sender_name: str
    sender_role: Role
    content: str
    reply_to: Optional[ReplyTo] = None


class Message(BaseModel):
    id: str
    room_key: str
    sender_id: str
    sender_name: str
    sender_role: Role
    content: str
    created_at: datetime
    expires_at: datetime
    reply_to: Optional[ReplyTo] = None

    @property
    def sequence(self) -> int:
        return int(self.id)

    def is_valid(self, as_of: datetime) -> bool:
        return as_of < self.expires_at


class PresenceEntry(BaseModel):
    participant_id: str
    display_name: str
    role: Role
    joined_at: datetime
    connection_id: Optional[str] = None


class MessageAdded(BaseModel):
    type: Literal["message_added"] = "message_added"
    message: Message


class PresenceChanged(BaseModel):
    type: Literal["presence_changed"] = "presence_changed"
    participants: list[PresenceEntry]


RoomEvent = Annotated[Union[MessageAdded, PresenceChanged], Field(discriminator="type")]


class QuotaStatus(BaseModel):
    guest_id: str
    sent_count: int
    limit: int
    remaining: int


class RoomSnapshot(BaseModel):
    room_key: str
    messages: list[Message]
    participants: list[PresenceEntry]


class RoomDetailsResponse(BaseModel):
    room_key: str
    topic_id: str
    category: Category
    channel: Channel
    message_count: int
    online_users_count: int
    online_users: list[PresenceEntry]
    messages: Optional[list[Message]] = None


class HealthResponse(BaseModel):
    status: str
    redis: bool
