"""SQLModel tables for the messaging service."""
from .user import User, Friendship
from .message import Message, MessageType
from .conversation import Conversation, ConversationType, ConversationUnread

__all__ = [
    "User",
    "Friendship",
    "Message",
    "MessageType",
    "Conversation",
    "ConversationType",
    "ConversationUnread",
]
