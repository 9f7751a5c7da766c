"""
Message Service

Durable store for direct messages: send, paginate, read-marking,
soft delete and unread accounting.

Soft-deleted messages stay in every result set; callers render them
through the redacting formatter in app.schemas.message.
"""

from typing import List, Optional
from datetime import datetime
import logging

from sqlalchemy import and_, func, or_, update
from sqlmodel import Session, select

from app.core.errors import ForbiddenError, NotFoundError, ValidationError
from app.models.message import (
    MAX_CONTENT_LENGTH,
    MIN_CONTENT_LENGTH,
    Message,
    MessageType,
)

logger = logging.getLogger(__name__)

DEFAULT_CONVERSATION_PAGE_SIZE = 20
DEFAULT_MESSAGE_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100


def validate_paging(page: int, page_size: int) -> None:
    if page < 1:
        raise ValidationError("Page must be a positive integer", details={"field": "page"})
    if page_size < 1 or page_size > MAX_PAGE_SIZE:
        raise ValidationError(
            f"Limit must be between 1 and {MAX_PAGE_SIZE}",
            details={"field": "limit"}
        )


def _pair_filter(user_a: str, user_b: str):
    return or_(
        and_(Message.sender_id == user_a, Message.receiver_id == user_b),
        and_(Message.sender_id == user_b, Message.receiver_id == user_a),
    )


class MessageService:
    """Service for storing and querying direct messages"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, message_id: int) -> Optional[Message]:
        return self.db.get(Message, message_id)

    @staticmethod
    def validate_payload(content: str, message_type: str) -> tuple:
        """
        Check content and type before anything is written.

        Returns the trimmed content and the parsed MessageType.
        """
        content = (content or "").strip()
        if not MIN_CONTENT_LENGTH <= len(content) <= MAX_CONTENT_LENGTH:
            raise ValidationError(
                f"Message content must be between {MIN_CONTENT_LENGTH} and {MAX_CONTENT_LENGTH} characters",
                details={"field": "content"}
            )

        try:
            kind = MessageType(message_type)
        except ValueError:
            raise ValidationError("Invalid message type", details={"field": "message_type"})
        return content, kind

    def send(
        self,
        sender_id: str,
        receiver_id: str,
        content: str,
        message_type: str = MessageType.TEXT.value,
        reply_to_id: Optional[int] = None,
        file_url: Optional[str] = None,
        file_name: Optional[str] = None,
        commit: bool = True,
    ) -> Message:
        """
        Create a message from sender to receiver.

        Friendship and receiver existence are checked by the caller. An unknown
        reply_to_id is dropped rather than failing the send.

        Raises:
            ValidationError: On bad content length or message type
        """
        content, kind = self.validate_payload(content, message_type)

        if sender_id == receiver_id:
            raise ValidationError("Cannot send a message to yourself", details={"field": "receiver_id"})

        if reply_to_id is not None:
            parent = self.get(reply_to_id)
            if parent is None or not (parent.involves(sender_id) and parent.involves(receiver_id)):
                logger.debug(f"Dropping unknown reply target {reply_to_id}")
                reply_to_id = None

        message = Message(
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            message_type=kind.value,
            file_url=file_url if kind is not MessageType.TEXT else None,
            file_name=file_name if kind is not MessageType.TEXT else None,
            reply_to_id=reply_to_id,
            created_at=datetime.utcnow(),
        )
        self.db.add(message)
        if commit:
            self.db.commit()
            self.db.refresh(message)
        else:
            self.db.flush()
        return message

    def get_conversation_page(
        self,
        user_a: str,
        user_b: str,
        page: int = 1,
        page_size: int = DEFAULT_MESSAGE_PAGE_SIZE,
        before_id: Optional[int] = None,
    ) -> List[Message]:
        """
        Page of messages between two users, oldest first.

        Pages are cut newest-first. When before_id is given the page is
        anchored below that message instead of using an offset, so
        inserts between requests cannot shift it.
        """
        validate_paging(page, page_size)

        statement = select(Message).where(_pair_filter(user_a, user_b))
        if before_id is not None:
            statement = statement.where(Message.id < before_id)
        else:
            statement = statement.offset((page - 1) * page_size)

        statement = statement.order_by(
            Message.created_at.desc(), Message.id.desc()
        ).limit(page_size)

        messages = list(self.db.exec(statement).all())
        messages.reverse()
        return messages

    def mark_read(self, from_user: str, to_user: str, commit: bool = True) -> int:
        """Mark every unread message from from_user to to_user as read. Returns rows flipped."""
        result = self.db.exec(
            update(Message)
            .where(
                Message.sender_id == from_user,
                Message.receiver_id == to_user,
                Message.is_read == False,  # noqa: E712
            )
            .values(is_read=True, read_at=datetime.utcnow())
        )
        if commit:
            self.db.commit()
        return result.rowcount or 0

    def soft_delete(self, message_id: int, requesting_user: str) -> Message:
        """
        Flag a message as deleted.

        Raises:
            NotFoundError: If the message does not exist
            ForbiddenError: If the requester is not the sender
        """
        message = self.get(message_id)
        if message is None:
            raise NotFoundError("Message not found", details={"message_id": message_id})
        if message.sender_id != requesting_user:
            raise ForbiddenError("You can only delete your own messages")

        if not message.is_deleted:
            message.is_deleted = True
            message.deleted_at = datetime.utcnow()
            self.db.add(message)
            self.db.commit()
            self.db.refresh(message)
        return message

    def unread_count_for(self, user_id: str) -> int:
        statement = select(func.count()).select_from(Message).where(
            Message.receiver_id == user_id,
            Message.is_read == False,  # noqa: E712
        )
        return self.db.exec(statement).one()

    def last_between(self, user_a: str, user_b: str) -> Optional[Message]:
        statement = select(Message).where(
            _pair_filter(user_a, user_b)
        ).order_by(Message.created_at.desc(), Message.id.desc()).limit(1)
        return self.db.exec(statement).first()
