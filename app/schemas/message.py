"""Request and response schemas for direct messaging."""
from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.core.errors import ValidationError
from app.models.message import Message, MessageType
from app.models.user import User

DELETED_PLACEHOLDER = "This message was deleted"
DEFAULT_AVATAR = "/default-avatar.png"


def parse_user_id(value: str, field: str = "user_id") -> str:
    """Normalize a user id, rejecting anything that is not a UUID."""
    try:
        return str(UUID(str(value)))
    except (TypeError, ValueError):
        raise ValidationError("Invalid user ID", details={"field": field})


def _uuid_string(value: str) -> str:
    try:
        return str(UUID(str(value)))
    except (TypeError, ValueError):
        raise ValueError("must be a valid user id")


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class SendMessageRequest(BaseModel):
    """Send message body, shared by POST /send and the send_message event"""
    model_config = ConfigDict(extra="forbid")

    receiver_id: str
    content: str
    message_type: MessageType = MessageType.TEXT
    reply_to_id: Optional[int] = None
    file_url: Optional[str] = Field(default=None, max_length=500)
    file_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("receiver_id")
    @classmethod
    def _receiver_is_uuid(cls, value: str) -> str:
        return _uuid_string(value)


class TypingEvent(BaseModel):
    receiver_id: str
    conversation_id: Optional[str] = None

    @field_validator("receiver_id")
    @classmethod
    def _receiver_is_uuid(cls, value: str) -> str:
        return _uuid_string(value)


class MarkReadEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str

    @field_validator("user_id")
    @classmethod
    def _user_is_uuid(cls, value: str) -> str:
        return _uuid_string(value)


class ConversationRoomEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    conversation_id: str = Field(..., min_length=1, max_length=255)


class StatusEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: str = Field(..., min_length=1, max_length=50)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class UserSnippet(BaseModel):
    id: str
    name: str
    first_name: str
    last_name: str
    avatar: str
    online: bool
    last_seen: Optional[datetime] = None


class ReplySnippet(BaseModel):
    id: int
    content: str
    sender_name: str
    timestamp: datetime
    is_deleted: bool = False


class MessageOut(BaseModel):
    id: int
    content: str
    sender_id: str
    sender_name: str
    receiver_id: str
    receiver_name: str
    timestamp: datetime
    is_read: bool
    read_at: Optional[datetime] = None
    message_type: str
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    conversation_id: str
    reply_to: Optional[ReplySnippet] = None


class LastMessageSnippet(BaseModel):
    id: int
    content: str
    sender: str
    sender_id: str
    timestamp: datetime
    is_read: bool
    is_deleted: bool = False


class ConversationOut(BaseModel):
    id: str
    conversation_id: str
    participant: UserSnippet
    last_message: Optional[LastMessageSnippet] = None
    unread_count: int
    last_message_at: Optional[datetime] = None
    updated_at: datetime


class Pagination(BaseModel):
    page: int
    limit: int
    total: int


class ConversationListData(BaseModel):
    conversations: List[ConversationOut]
    pagination: Pagination


class ConversationMessagesData(BaseModel):
    messages: List[MessageOut]
    other_user: UserSnippet
    pagination: Pagination


class ConversationListResponse(BaseModel):
    success: bool = True
    data: ConversationListData


class ConversationMessagesResponse(BaseModel):
    success: bool = True
    data: ConversationMessagesData


class MessageResponse(BaseModel):
    success: bool = True
    message: str
    data: MessageOut


class UnreadCountData(BaseModel):
    unread_count: int


class UnreadCountResponse(BaseModel):
    success: bool = True
    data: UnreadCountData


class ActionResponse(BaseModel):
    success: bool = True
    message: str
    data: Optional[Dict[str, str]] = None


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def _name(user: Optional[User]) -> str:
    if user is None:
        return "Unknown"
    return user.full_name or user.email


def format_user(user: User, online: bool) -> UserSnippet:
    return UserSnippet(
        id=user.id,
        name=_name(user),
        first_name=user.first_name,
        last_name=user.last_name,
        avatar=user.profile_picture or DEFAULT_AVATAR,
        online=online,
        last_seen=user.last_active_at,
    )


def format_message(
    message: Message,
    profiles: Dict[str, User],
    conversation_id: str,
    reply_to: Optional[Message] = None,
) -> MessageOut:
    """Render a message; deleted messages keep their metadata but lose their payload."""
    reply = None
    if reply_to is not None:
        reply = ReplySnippet(
            id=reply_to.id,
            content=DELETED_PLACEHOLDER if reply_to.is_deleted else reply_to.content,
            sender_name=_name(profiles.get(reply_to.sender_id)),
            timestamp=reply_to.created_at,
            is_deleted=reply_to.is_deleted,
        )

    deleted = message.is_deleted
    return MessageOut(
        id=message.id,
        content=DELETED_PLACEHOLDER if deleted else message.content,
        sender_id=message.sender_id,
        sender_name=_name(profiles.get(message.sender_id)),
        receiver_id=message.receiver_id,
        receiver_name=_name(profiles.get(message.receiver_id)),
        timestamp=message.created_at,
        is_read=message.is_read,
        read_at=message.read_at,
        message_type=message.message_type,
        file_url=None if deleted else message.file_url,
        file_name=None if deleted else message.file_name,
        is_edited=message.is_edited,
        edited_at=message.edited_at,
        is_deleted=deleted,
        deleted_at=message.deleted_at,
        conversation_id=conversation_id,
        reply_to=reply,
    )


def format_last_message(message: Message, profiles: Dict[str, User]) -> LastMessageSnippet:
    return LastMessageSnippet(
        id=message.id,
        content=DELETED_PLACEHOLDER if message.is_deleted else message.content,
        sender=_name(profiles.get(message.sender_id)),
        sender_id=message.sender_id,
        timestamp=message.created_at,
        is_read=message.is_read,
        is_deleted=message.is_deleted,
    )
