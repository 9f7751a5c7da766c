"""Messages router: conversations, history, send, read receipts and deletion."""
from fastapi import APIRouter, Depends, Query, Request, status
from typing import Optional

from app.middleware.auth import get_current_user, CurrentUser
from app.schemas.message import (
    ActionResponse,
    ConversationListResponse,
    ConversationMessagesResponse,
    MessageResponse,
    SendMessageRequest,
    UnreadCountData,
    UnreadCountResponse,
    parse_user_id,
)
from app.services.chat_service import ChatService
from app.services.message_service import (
    DEFAULT_CONVERSATION_PAGE_SIZE,
    DEFAULT_MESSAGE_PAGE_SIZE,
    MAX_PAGE_SIZE,
)

router = APIRouter(prefix="/messages", tags=["Messages"])  # main.py adds the /api prefix


def get_chat_service(request: Request) -> ChatService:
    """Dependency returning the application's ChatService."""
    return request.app.state.chat


@router.get("/conversations", response_model=ConversationListResponse)
async def list_conversations(
    current_user: CurrentUser = Depends(get_current_user),
    chat: ChatService = Depends(get_chat_service),
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(DEFAULT_CONVERSATION_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, description="Conversations per page"),
):
    """List the caller's conversations, most recent activity first."""
    data = await chat.list_conversations(current_user.user_id, page, limit)
    return ConversationListResponse(data=data)


@router.get("/conversations/{peer_user_id}", response_model=ConversationMessagesResponse)
async def get_conversation(
    peer_user_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    chat: ChatService = Depends(get_chat_service),
    page: int = Query(1, ge=1, description="Page number"),
    limit: int = Query(DEFAULT_MESSAGE_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, description="Messages per page"),
    before: Optional[int] = Query(None, ge=1, description="Only messages older than this message id"),
):
    """Message history with a friend, oldest first. Marks the friend's messages as read."""
    peer_id = parse_user_id(peer_user_id, "peer_user_id")
    data = await chat.get_conversation(current_user.user_id, peer_id, page, limit, before)
    return ConversationMessagesResponse(data=data)


@router.post("/send", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    body: SendMessageRequest,
    current_user: CurrentUser = Depends(get_current_user),
    chat: ChatService = Depends(get_chat_service),
):
    """Send a message to a friend. The receiver is also notified over the socket."""
    message = await chat.send_message(current_user.user_id, body)
    return MessageResponse(message="Message sent successfully", data=message)


@router.put("/mark-read/{peer_user_id}", response_model=ActionResponse)
async def mark_read(
    peer_user_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    chat: ChatService = Depends(get_chat_service),
):
    peer_id = parse_user_id(peer_user_id, "peer_user_id")
    conversation_id = await chat.mark_read(current_user.user_id, peer_id)
    return ActionResponse(message="Messages marked as read", data={"conversation_id": conversation_id})


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(
    current_user: CurrentUser = Depends(get_current_user),
    chat: ChatService = Depends(get_chat_service),
):
    count = await chat.unread_count(current_user.user_id)
    return UnreadCountResponse(data=UnreadCountData(unread_count=count))


@router.delete("/{message_id}", response_model=MessageResponse)
async def delete_message(
    message_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    chat: ChatService = Depends(get_chat_service),
):
    """Soft-delete one of the caller's own messages."""
    message = await chat.delete_message(current_user.user_id, message_id)
    return MessageResponse(message="Message deleted successfully", data=message)
