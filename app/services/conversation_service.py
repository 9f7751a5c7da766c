"""
Conversation Service

Find-or-create, listing and pointer/counter maintenance for direct
conversations.

Counters live in conversation_unread and are only ever changed with
single UPDATE statements, so concurrent increments cannot lose updates.
"""

from typing import Dict, Iterable, List, Optional, Sequence
from uuid import UUID
from datetime import datetime
import logging

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.core.errors import InternalError, UnsupportedError, ValidationError
from app.models.conversation import (
    Conversation,
    ConversationType,
    ConversationUnread,
    participant_key,
)
from app.models.message import Message
from app.services.message_service import DEFAULT_CONVERSATION_PAGE_SIZE, validate_paging

logger = logging.getLogger(__name__)


class ConversationService:
    """Service for managing direct conversations"""

    def __init__(self, db: Session):
        self.db = db

    def _get_by_key(self, key: str) -> Optional[Conversation]:
        statement = select(Conversation).where(
            Conversation.participant_key == key,
            Conversation.conversation_type == ConversationType.DIRECT.value
        )
        return self.db.exec(statement).first()

    def get(self, conversation_id: UUID) -> Optional[Conversation]:
        return self.db.get(Conversation, conversation_id)

    def get_by_participants(self, user_a: str, user_b: str) -> Optional[Conversation]:
        return self._get_by_key(participant_key([user_a, user_b]))

    def find_or_create(self, participant_ids: Sequence[str], commit: bool = True) -> Conversation:
        """
        Return the direct conversation for exactly two participants, creating it if absent.

        Must be called with no pending changes on the session: a lost
        insert race rolls back and re-reads the winning row.
        With commit=False a new row is only flushed, so the caller's commit
        decides whether it survives.

        Raises:
            UnsupportedError: If not exactly two participants are given
            ValidationError: If both participants are the same user
        """
        ids = [str(p) for p in participant_ids]
        if len(ids) != 2:
            raise UnsupportedError("Group conversations are not implemented yet")
        if ids[0] == ids[1]:
            raise ValidationError("A conversation needs two distinct participants")

        first, second = sorted(ids)
        key = participant_key(ids)

        existing = self._get_by_key(key)
        if existing:
            return existing

        now = datetime.utcnow()
        conversation = Conversation(
            participant_one_id=first,
            participant_two_id=second,
            participant_key=key,
            conversation_type=ConversationType.DIRECT.value,
            last_message_at=now,
            created_at=now,
            updated_at=now
        )
        try:
            self.db.add(conversation)
            self.db.flush()
            for user_id in (first, second):
                self.db.add(ConversationUnread(conversation_id=conversation.id, user_id=user_id))
            if commit:
                self.db.commit()
            else:
                self.db.flush()
        except IntegrityError:
            self.db.rollback()
            winner = self._get_by_key(key)
            if winner is None:
                raise InternalError("Failed to create conversation")
            logger.info(f"Conversation {key} created concurrently; using existing row {winner.id}")
            return winner

        if commit:
            self.db.refresh(conversation)
        logger.info(f"Created conversation {conversation.id} for {key}")
        return conversation

    def list_for_user(self, user_id: str, page: int = 1,
                      page_size: int = DEFAULT_CONVERSATION_PAGE_SIZE) -> List[Conversation]:
        """Active conversations for a user, most recent activity first"""
        validate_paging(page, page_size)
        statement = select(Conversation).where(
            Conversation.is_active == True,  # noqa: E712
            or_(
                Conversation.participant_one_id == user_id,
                Conversation.participant_two_id == user_id
            )
        ).order_by(
            Conversation.last_message_at.desc(),
            Conversation.updated_at.desc()
        ).offset((page - 1) * page_size).limit(page_size)

        return list(self.db.exec(statement).all())

    def count_for_user(self, user_id: str) -> int:
        statement = select(func.count()).select_from(Conversation).where(
            Conversation.is_active == True,  # noqa: E712
            or_(
                Conversation.participant_one_id == user_id,
                Conversation.participant_two_id == user_id
            )
        )
        return self.db.exec(statement).one()

    def missing_pointer_for_user(self, user_id: str) -> List[Conversation]:
        """Conversations of user_id whose last_message pointer was never set"""
        statement = select(Conversation).where(
            Conversation.last_message_id.is_(None),
            or_(
                Conversation.participant_one_id == user_id,
                Conversation.participant_two_id == user_id
            )
        )
        return list(self.db.exec(statement).all())

    def partner_ids(self, user_id: str) -> set:
        """Ids of every user sharing a direct conversation with user_id"""
        statement = select(Conversation).where(
            or_(
                Conversation.participant_one_id == user_id,
                Conversation.participant_two_id == user_id
            )
        )
        return {c.other_participant(user_id) for c in self.db.exec(statement).all()}

    def update_last_message(
        self,
        conversation: Conversation,
        message: Message,
        only_if_empty: bool = False,
        commit: bool = True,
    ) -> bool:
        """
        Point the conversation at message.

        The update never moves the pointer to an older message; with
        only_if_empty it only fills a missing pointer. Returns whether the
        row changed.
        """
        statement = update(Conversation).where(Conversation.id == conversation.id)
        if only_if_empty:
            statement = statement.where(Conversation.last_message_id.is_(None))
        else:
            statement = statement.where(or_(
                Conversation.last_message_id.is_(None),
                Conversation.last_message_at <= message.created_at
            ))
        statement = statement.values(
            last_message_id=message.id,
            last_message_at=message.created_at,
            updated_at=datetime.utcnow()
        )

        result = self.db.exec(statement)
        if commit:
            self.db.commit()
            self.db.refresh(conversation)
        return bool(result.rowcount)

    def increment_unread(self, conversation: Conversation, user_id: str, commit: bool = True) -> None:
        self._require_participant(conversation, user_id)
        result = self.db.exec(
            update(ConversationUnread)
            .where(
                ConversationUnread.conversation_id == conversation.id,
                ConversationUnread.user_id == user_id
            )
            .values(unread_count=ConversationUnread.unread_count + 1)
        )
        if not result.rowcount:
            self.db.add(ConversationUnread(conversation_id=conversation.id, user_id=user_id, unread_count=1))
            self.db.flush()
        if commit:
            self.db.commit()

    def reset_unread(self, conversation: Conversation, user_id: str, commit: bool = True) -> None:
        self._require_participant(conversation, user_id)
        result = self.db.exec(
            update(ConversationUnread)
            .where(
                ConversationUnread.conversation_id == conversation.id,
                ConversationUnread.user_id == user_id
            )
            .values(unread_count=0)
        )
        if not result.rowcount:
            self.db.add(ConversationUnread(conversation_id=conversation.id, user_id=user_id, unread_count=0))
            self.db.flush()
        if commit:
            self.db.commit()

    def unread_for(self, conversation: Conversation, user_id: str) -> int:
        row = self.db.get(ConversationUnread, (conversation.id, user_id))
        return row.unread_count if row else 0

    def unread_counts(self, conversation: Conversation) -> Dict[str, int]:
        """Mapping of participant id to unread counter"""
        counts = {user_id: 0 for user_id in conversation.participants}
        rows = self.db.exec(
            select(ConversationUnread).where(ConversationUnread.conversation_id == conversation.id)
        ).all()
        for row in rows:
            counts[row.user_id] = row.unread_count
        return counts

    def unread_for_many(self, conversations: Iterable[Conversation], user_id: str) -> Dict[UUID, int]:
        ids = [c.id for c in conversations]
        if not ids:
            return {}
        rows = self.db.exec(
            select(ConversationUnread).where(
                ConversationUnread.conversation_id.in_(ids),
                ConversationUnread.user_id == user_id
            )
        ).all()
        return {row.conversation_id: row.unread_count for row in rows}

    def _require_participant(self, conversation: Conversation, user_id: str) -> None:
        if not conversation.has_participant(user_id):
            raise ValidationError(
                "User is not a participant of this conversation",
                details={"user_id": user_id}
            )
