"""
Message Model for direct messaging

Stores individual direct messages exchanged between two users.
Messages are never physically removed: deletion only flags the row.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from sqlmodel import SQLModel, Field, Column, Index
from sqlalchemy import Text, String

MIN_CONTENT_LENGTH = 1
MAX_CONTENT_LENGTH = 1000


class MessageType(str, Enum):
    """Kind of payload carried by a message"""
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    FILE = "file"


class Message(SQLModel, table=True):
    """
    Direct message from one user to another.

    Lifecycle:
    - Created on send
    - Receiver side: read-marking (is_read/read_at)
    - Sender side: soft delete (is_deleted/deleted_at)

    The integer id grows with insertion order and breaks ties between
    messages sharing a created_at value.
    """
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_pair_created", "sender_id", "receiver_id", "created_at"),
        Index("ix_messages_receiver_unread", "receiver_id", "is_read"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    sender_id: str = Field(foreign_key="user.id", index=True)
    receiver_id: str = Field(foreign_key="user.id", index=True)
    content: str = Field(sa_column=Column(Text, nullable=False))
    message_type: str = Field(default=MessageType.TEXT.value, sa_column=Column(String(10), nullable=False))
    file_url: Optional[str] = Field(default=None, max_length=500)
    file_name: Optional[str] = Field(default=None, max_length=255)
    reply_to_id: Optional[int] = Field(default=None, foreign_key="messages.id")

    is_read: bool = Field(default=False)
    read_at: Optional[datetime] = Field(default=None)
    is_edited: bool = Field(default=False)
    edited_at: Optional[datetime] = Field(default=None)
    is_deleted: bool = Field(default=False)
    deleted_at: Optional[datetime] = Field(default=None)

    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)

    def involves(self, user_id: str) -> bool:
        return user_id in (self.sender_id, self.receiver_id)

    def peer_of(self, user_id: str) -> str:
        return self.receiver_id if self.sender_id == user_id else self.sender_id
