"""
Chat Service

Orchestrates the message and conversation stores for both the HTTP API and
the realtime gateway, then pushes the resulting events through the
presence registry. Keeping a single code path means both transports leave
the stores in identical states.

Store work runs in the threadpool on a fresh session per call; pushes
happen on the event loop after the transaction has committed.
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set
import logging
import os

from sqlmodel import Session
from starlette.concurrency import run_in_threadpool

from app.core.errors import ForbiddenError, NotFoundError, ValidationError
from app.models.conversation import participant_key
from app.models.message import Message
from app.models.user import User
from app.schemas.message import (
    ConversationListData,
    ConversationMessagesData,
    ConversationOut,
    MessageOut,
    Pagination,
    SendMessageRequest,
    format_last_message,
    format_message,
    format_user,
)
from app.services.conversation_service import ConversationService
from app.services.friend_graph import FriendGraph
from app.services.message_service import MessageService
from app.services.presence import PresenceRegistry
from app.services.reconciliation import ReconciliationJob
from app.services.user_directory import UserDirectory
from app.utils.metrics import metrics_collector

logger = logging.getLogger(__name__)

ONLINE_WINDOW_MINUTES = int(os.environ.get("ONLINE_WINDOW_MINUTES", "5"))
RECONCILE_ON_LIST = os.environ.get("RECONCILE_ON_LIST", "true").lower() in ("1", "true", "yes")


class ChatService:
    """Shared entry point for every conversation-mutating operation"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        presence: PresenceRegistry,
        reconcile_on_list: bool = RECONCILE_ON_LIST,
        online_window: timedelta = timedelta(minutes=ONLINE_WINDOW_MINUTES),
    ):
        self.session_factory = session_factory
        self.presence = presence
        self.reconcile_on_list = reconcile_on_list
        self.online_window = online_window

    # ------------------------------------------------------------------
    # Helpers (sync, run in the threadpool)
    # ------------------------------------------------------------------

    def _is_online(self, user: User, online_ids: Set[str]) -> bool:
        if user.id in online_ids:
            return True
        if user.last_active_at is None:
            return False
        return datetime.utcnow() - user.last_active_at < self.online_window

    def _require_active_user(self, db: Session, user_id: str, label: str) -> User:
        user = UserDirectory(db).require(user_id, label)
        if not user.is_active:
            raise NotFoundError(f"{label} not found", details={"user_id": user_id})
        return user

    def _require_friends(self, db: Session, user_id: str, peer_id: str) -> None:
        if not FriendGraph(db).are_friends(user_id, peer_id):
            raise ForbiddenError("You can only message friends")

    def _format_messages(self, db: Session, messages: List[Message], conversation_id: str) -> List[MessageOut]:
        store = MessageService(db)
        reply_ids = {m.reply_to_id for m in messages if m.reply_to_id is not None}
        replies = {rid: store.get(rid) for rid in reply_ids}
        user_ids = {m.sender_id for m in messages} | {m.receiver_id for m in messages}
        user_ids |= {r.sender_id for r in replies.values() if r is not None}
        profiles = UserDirectory(db).profiles(user_ids)
        return [
            format_message(m, profiles, conversation_id, replies.get(m.reply_to_id))
            for m in messages
        ]

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    def _send_message(self, sender_id: str, request: SendMessageRequest) -> MessageOut:
        with self.session_factory() as db:
            messages = MessageService(db)
            conversations = ConversationService(db)

            if request.receiver_id == sender_id:
                raise ValidationError("Cannot send a message to yourself", details={"field": "receiver_id"})
            MessageService.validate_payload(request.content, request.message_type.value)

            receiver = self._require_active_user(db, request.receiver_id, "Receiver")
            self._require_friends(db, sender_id, receiver.id)

            try:
                conversation = conversations.find_or_create([sender_id, receiver.id], commit=False)
                message = messages.send(
                    sender_id=sender_id,
                    receiver_id=receiver.id,
                    content=request.content,
                    message_type=request.message_type.value,
                    reply_to_id=request.reply_to_id,
                    file_url=request.file_url,
                    file_name=request.file_name,
                    commit=False,
                )
                conversations.update_last_message(conversation, message, commit=False)
                conversations.increment_unread(conversation, receiver.id, commit=False)
                db.commit()
            except Exception:
                db.rollback()
                raise

            db.refresh(message)
            metrics_collector.increment_counter("messages_sent_total")
            logger.info(f"Message {message.id} sent from {sender_id} to {receiver.id}")
            return self._format_messages(db, [message], conversation.conversation_id)[0]

    async def send_message(self, sender_id: str, request: SendMessageRequest) -> MessageOut:
        """
        Persist a message, then push new_message to the receiver and
        message_sent to every connection of the sender.
        """
        message = await run_in_threadpool(self._send_message, sender_id, request)
        payload = message.model_dump(mode="json")
        await self.presence.emit_to_user(message.receiver_id, "new_message", payload)
        await self.presence.emit_to_user(sender_id, "message_sent", payload)
        return message

    # ------------------------------------------------------------------
    # Read receipts
    # ------------------------------------------------------------------

    def _mark_read(self, reader_id: str, peer_id: str) -> tuple:
        with self.session_factory() as db:
            UserDirectory(db).require(peer_id)
            flipped = MessageService(db).mark_read(peer_id, reader_id, commit=False)
            conversations = ConversationService(db)
            conversation = conversations.get_by_participants(reader_id, peer_id)
            if conversation is not None:
                conversations.reset_unread(conversation, reader_id, commit=False)
            db.commit()
            metrics_collector.increment_counter("messages_read_total", flipped)
            return participant_key([reader_id, peer_id]), flipped

    async def mark_read(self, reader_id: str, peer_id: str) -> str:
        """Mark peer's messages to reader as read and notify the peer. Returns the derived conversation id."""
        if reader_id == peer_id:
            raise ValidationError("Cannot mark a conversation with yourself", details={"field": "user_id"})
        conversation_id, _ = await run_in_threadpool(self._mark_read, reader_id, peer_id)
        await self.presence.emit_to_user(peer_id, "messages_read", {
            "read_by": reader_id,
            "conversation_id": conversation_id,
        })
        return conversation_id

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _get_conversation(self, user_id: str, peer_id: str, page: int, limit: int,
                          before_id: Optional[int], online_ids: Set[str]) -> tuple:
        with self.session_factory() as db:
            other = UserDirectory(db).require(peer_id)
            self._require_friends(db, user_id, peer_id)

            store = MessageService(db)
            page_messages = store.get_conversation_page(user_id, peer_id, page, limit, before_id)

            flipped = store.mark_read(peer_id, user_id, commit=False)
            conversations = ConversationService(db)
            conversation = conversations.get_by_participants(user_id, peer_id)
            if conversation is not None:
                conversations.reset_unread(conversation, user_id, commit=False)
            db.commit()

            conversation_id = participant_key([user_id, peer_id])
            data = ConversationMessagesData(
                messages=self._format_messages(db, page_messages, conversation_id),
                other_user=format_user(other, self._is_online(other, online_ids)),
                pagination=Pagination(page=page, limit=limit, total=len(page_messages)),
            )
            return data, conversation_id, flipped

    async def get_conversation(self, user_id: str, peer_id: str, page: int = 1, limit: int = 50,
                               before_id: Optional[int] = None) -> ConversationMessagesData:
        """Message history with a friend; reading it marks the peer's messages as read."""
        if user_id == peer_id:
            raise ValidationError("Cannot open a conversation with yourself", details={"field": "user_id"})
        data, conversation_id, flipped = await run_in_threadpool(
            self._get_conversation, user_id, peer_id, page, limit, before_id,
            self.presence.online_user_ids()
        )
        if flipped:
            await self.presence.emit_to_user(peer_id, "messages_read", {
                "read_by": user_id,
                "conversation_id": conversation_id,
            })
        return data

    def _list_conversations(self, user_id: str, page: int, limit: int,
                            online_ids: Set[str]) -> ConversationListData:
        with self.session_factory() as db:
            if self.reconcile_on_list:
                ReconciliationJob(db).run_for_user(user_id)

            conversations = ConversationService(db)
            rows = conversations.list_for_user(user_id, page, limit)
            total = conversations.count_for_user(user_id)

            store = MessageService(db)
            last_messages: Dict[int, Message] = {}
            for conversation in rows:
                if conversation.last_message_id is not None:
                    message = store.get(conversation.last_message_id)
                    if message is not None:
                        last_messages[conversation.last_message_id] = message

            user_ids = {c.other_participant(user_id) for c in rows}
            user_ids |= {m.sender_id for m in last_messages.values()}
            profiles = UserDirectory(db).profiles(user_ids)
            unread = conversations.unread_for_many(rows, user_id)

            items = []
            for conversation in rows:
                other = profiles.get(conversation.other_participant(user_id))
                if other is None:
                    logger.warning(f"Skipping conversation {conversation.id}: participant missing")
                    continue
                last = last_messages.get(conversation.last_message_id)
                items.append(ConversationOut(
                    id=str(conversation.id),
                    conversation_id=conversation.conversation_id,
                    participant=format_user(other, self._is_online(other, online_ids)),
                    last_message=format_last_message(last, profiles) if last else None,
                    unread_count=unread.get(conversation.id, 0),
                    last_message_at=conversation.last_message_at,
                    updated_at=conversation.updated_at,
                ))

            return ConversationListData(
                conversations=items,
                pagination=Pagination(page=page, limit=limit, total=total),
            )

    async def list_conversations(self, user_id: str, page: int = 1, limit: int = 20) -> ConversationListData:
        return await run_in_threadpool(
            self._list_conversations, user_id, page, limit, self.presence.online_user_ids()
        )

    # ------------------------------------------------------------------
    # Delete / counters
    # ------------------------------------------------------------------

    def _delete_message(self, user_id: str, message_id: int) -> MessageOut:
        with self.session_factory() as db:
            message = MessageService(db).soft_delete(message_id, user_id)
            metrics_collector.increment_counter("messages_deleted_total")
            conversation_id = participant_key([message.sender_id, message.receiver_id])
            return self._format_messages(db, [message], conversation_id)[0]

    async def delete_message(self, user_id: str, message_id: int) -> MessageOut:
        """Soft-delete a message (sender only) and tell both parties."""
        message = await run_in_threadpool(self._delete_message, user_id, message_id)
        payload = {"message_id": message.id, "conversation_id": message.conversation_id}
        await self.presence.emit_to_user(message.receiver_id, "message_deleted", payload)
        await self.presence.emit_to_user(message.sender_id, "message_deleted", payload)
        return message

    def _unread_count(self, user_id: str) -> int:
        with self.session_factory() as db:
            return MessageService(db).unread_count_for(user_id)

    async def unread_count(self, user_id: str) -> int:
        return await run_in_threadpool(self._unread_count, user_id)
