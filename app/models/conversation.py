"""
Conversation Model for direct messaging

A conversation pairs exactly two users and caches a pointer to the most
recent message plus one unread counter per participant.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Sequence
from uuid import UUID, uuid4
from sqlmodel import SQLModel, Field, UniqueConstraint


class ConversationType(str, Enum):
    """Conversation kind; only direct conversations are functional"""
    DIRECT = "direct"
    GROUP = "group"


def participant_key(participant_ids: Sequence[str]) -> str:
    """Sort the participant ids lexically and join them with ``_``."""
    return "_".join(sorted(str(p) for p in participant_ids))


class Conversation(SQLModel, table=True):
    """
    Direct conversation between two participants.

    participant_one_id/participant_two_id are stored sorted, so the
    (participant_key, conversation_type) unique index backs the
    find-or-create lookup against duplicate rows.
    """
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("participant_key", "conversation_type", name="uq_conversation_participants"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    participant_one_id: str = Field(foreign_key="user.id", index=True)
    participant_two_id: str = Field(foreign_key="user.id", index=True)
    participant_key: str = Field(max_length=255, index=True)
    conversation_type: str = Field(default=ConversationType.DIRECT.value, max_length=10)

    last_message_id: Optional[int] = Field(default=None, foreign_key="messages.id")
    last_message_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    is_active: bool = Field(default=True)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def participants(self) -> List[str]:
        return [self.participant_one_id, self.participant_two_id]

    @property
    def conversation_id(self) -> str:
        """Derived routing key; not the storage id."""
        if self.conversation_type == ConversationType.DIRECT.value:
            return participant_key(self.participants)
        return str(self.id)

    def other_participant(self, user_id: str) -> str:
        if self.participant_one_id == user_id:
            return self.participant_two_id
        return self.participant_one_id

    def has_participant(self, user_id: str) -> bool:
        return user_id in (self.participant_one_id, self.participant_two_id)


class ConversationUnread(SQLModel, table=True):
    """Per-participant unread counter, updated in place with atomic SQL."""
    __tablename__ = "conversation_unread"

    conversation_id: UUID = Field(foreign_key="conversations.id", primary_key=True)
    user_id: str = Field(foreign_key="user.id", primary_key=True)
    unread_count: int = Field(default=0)
