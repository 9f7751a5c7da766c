"""
Realtime Gateway.

Authenticates WebSocket clients, registers them with the presence registry
and routes inbound events to the chat service.

Frames are JSON objects ``{"event": <name>, "data": {...}}`` in both
directions. A connection moves through
CONNECTING -> AUTHENTICATED -> ACTIVE -> DISCONNECTED; only an
authentication failure closes it from the server side, every other error is
reported back as ``message_error``.
"""

import asyncio
import json
import os
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import uuid4

import anyio
from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError
from sqlmodel import Session
from starlette.concurrency import run_in_threadpool
from websockets.exceptions import ConnectionClosed

from app.core.errors import AuthenticationError, ChatError, InternalError, ValidationError
from app.middleware.auth import IdentityService
from app.models.user import User
from app.schemas.message import (
    ConversationRoomEvent,
    MarkReadEvent,
    SendMessageRequest,
    StatusEvent,
    TypingEvent,
)
from app.services.chat_service import ChatService
from app.services.presence import PresenceRegistry
from app.services.user_directory import UserDirectory
from app.utils.logger import get_logger
from app.utils.metrics import metrics_collector

logger = get_logger("realtime-gateway")

WS_AUTH_TIMEOUT_SECONDS = float(os.environ.get("WS_AUTH_TIMEOUT_SECONDS", "10"))
CLOSE_AUTHENTICATION_FAILED = 4401

# Events that are dropped silently instead of answered with message_error
BEST_EFFORT_EVENTS = {"typing_start", "typing_stop"}


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class WebSocketConnection:
    """One client socket, as seen by the presence registry."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.connection_id = uuid4().hex
        self.state = ConnectionState.CONNECTING
        self.user_id: Optional[str] = None
        self.first_name = ""
        self.full_name = ""
        self._send_lock = asyncio.Lock()

    async def send_event(self, event: str, data: Dict[str, Any]) -> None:
        async with self._send_lock:
            await self.websocket.send_json({"event": event, "data": data})

    def room(self, conversation_id: str) -> str:
        return f"conversation_{conversation_id}"


class RealtimeGateway:
    """Connection lifecycle and event routing for /ws"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        presence: PresenceRegistry,
        chat: ChatService,
        auth_timeout: float = WS_AUTH_TIMEOUT_SECONDS,
    ):
        self.session_factory = session_factory
        self.presence = presence
        self.chat = chat
        self.auth_timeout = auth_timeout
        self._handlers: Dict[str, Callable[[WebSocketConnection, Dict[str, Any]], Awaitable[None]]] = {
            "typing_start": self._on_typing_start,
            "typing_stop": self._on_typing_stop,
            "send_message": self._on_send_message,
            "mark_messages_read": self._on_mark_messages_read,
            "join_conversation": self._on_join_conversation,
            "leave_conversation": self._on_leave_conversation,
            "update_status": self._on_update_status,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def handle(self, websocket: WebSocket) -> None:
        """Serve one WebSocket connection until it closes."""
        await websocket.accept()
        connection = WebSocketConnection(websocket)

        try:
            user = await self._authenticate(connection)
        except AuthenticationError as e:
            metrics_collector.increment_counter("realtime_auth_failures_total")
            logger.warning("Socket authentication failed", connection_id=connection.connection_id, reason=e.message)
            await self._reject(connection, e)
            return
        except (WebSocketDisconnect, ConnectionClosed):
            connection.state = ConnectionState.DISCONNECTED
            return

        connection.state = ConnectionState.AUTHENTICATED
        connection.user_id = user.id
        connection.first_name = user.first_name
        connection.full_name = user.full_name

        try:
            await self._activate(connection)
            await self._receive_loop(connection)
        except (WebSocketDisconnect, ConnectionClosed):
            pass
        finally:
            # Teardown may arrive as cancellation; offline bookkeeping must still finish
            with anyio.CancelScope(shield=True):
                await self._deactivate(connection)

    def _resolve_identity(self, token: Optional[str]) -> User:
        with self.session_factory() as db:
            current = IdentityService(db).resolve(token)
            return UserDirectory(db).require(current.user_id)

    async def _authenticate(self, connection: WebSocketConnection) -> User:
        """
        Read the credential from ``?token=`` or from an ``authenticate`` frame
        sent within the auth timeout.
        """
        websocket = connection.websocket
        token = websocket.query_params.get("token")
        if not token:
            try:
                raw = await asyncio.wait_for(self._read_frame(websocket), timeout=self.auth_timeout)
            except asyncio.TimeoutError:
                raise AuthenticationError("Authentication timed out")
            try:
                frame = json.loads(raw) if raw is not None else None
            except ValueError:
                raise AuthenticationError("No token provided")
            if not isinstance(frame, dict) or frame.get("event") != "authenticate":
                raise AuthenticationError("No token provided")
            data = frame.get("data")
            token = data.get("token") if isinstance(data, dict) else None

        return await run_in_threadpool(self._resolve_identity, token)

    async def _reject(self, connection: WebSocketConnection, error: AuthenticationError) -> None:
        connection.state = ConnectionState.DISCONNECTED
        try:
            await connection.send_event("connect_error", {"message": f"Authentication error: {error.message}"})
            await connection.websocket.close(code=CLOSE_AUTHENTICATION_FAILED)
        except (WebSocketDisconnect, ConnectionClosed, RuntimeError):
            pass

    async def _activate(self, connection: WebSocketConnection) -> None:
        await self.presence.register(connection.user_id, connection, announce={"name": connection.full_name})
        connection.state = ConnectionState.ACTIVE
        metrics_collector.increment_counter("realtime_connections_total")
        logger.info("Socket connected", user_id=connection.user_id, connection_id=connection.connection_id)

        await self._persist_last_active(connection.user_id)
        await connection.send_event("connected", {
            "user_id": connection.user_id,
            "connection_id": connection.connection_id,
        })

    async def _deactivate(self, connection: WebSocketConnection) -> None:
        if connection.state == ConnectionState.DISCONNECTED:
            return
        connection.state = ConnectionState.DISCONNECTED
        last_seen = await self.presence.unregister(
            connection.user_id, connection, announce={"name": connection.full_name}
        )
        if last_seen is None and not self.presence.is_online(connection.user_id):
            # Already pruned by a failed push; unregister stamped the time then
            last_seen = self.presence.last_active(connection.user_id)
        logger.info("Socket disconnected", user_id=connection.user_id, connection_id=connection.connection_id)
        if last_seen is not None:
            await self._persist_last_active(connection.user_id, last_seen)

    async def _persist_last_active(self, user_id: str, when=None) -> None:
        def _touch():
            with self.session_factory() as db:
                UserDirectory(db).touch_last_active(user_id, when)
        try:
            await run_in_threadpool(_touch)
        except Exception:
            logger.exception("Failed to update last active time", user_id=user_id)

    # ------------------------------------------------------------------
    # Event routing
    # ------------------------------------------------------------------

    async def _read_frame(self, websocket: WebSocket) -> Optional[str]:
        """
        Next client frame as text. Binary frames are decoded as UTF-8;
        undecodable payloads come back as None.
        """
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
        if message.get("text") is not None:
            return message["text"]
        payload = message.get("bytes")
        if payload is None:
            return None
        try:
            return payload.decode("utf-8")
        except UnicodeDecodeError:
            return None

    async def _receive_loop(self, connection: WebSocketConnection) -> None:
        while connection.state == ConnectionState.ACTIVE:
            raw = await self._read_frame(connection.websocket)
            try:
                frame = json.loads(raw) if raw is not None else None
            except ValueError:
                await self._emit_error(connection, ValidationError("Malformed frame"), None)
                continue
            await self.dispatch(connection, frame)

    async def dispatch(self, connection: WebSocketConnection, frame: Any) -> None:
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            await self._emit_error(connection, ValidationError("Malformed frame"), None)
            return

        event = frame["event"]
        data = frame.get("data")
        if data is None:
            data = {}

        if event == "logout":
            await self._deactivate(connection)
            await connection.websocket.close(code=1000)
            return

        handler = self._handlers.get(event)
        if handler is None:
            await self._emit_error(connection, ValidationError(f"Unknown event: {event}"), event)
            return

        metrics_collector.increment_counter("realtime_events_total")
        self.presence.touch(connection.user_id)
        try:
            if not isinstance(data, dict):
                raise ValidationError("Event data must be an object")
            await handler(connection, data)
        except PydanticValidationError as e:
            await self._handle_error(connection, event, ValidationError(
                "Validation failed",
                details={"errors": [err["msg"] for err in e.errors()]}
            ))
        except ChatError as e:
            await self._handle_error(connection, event, e)
        except (WebSocketDisconnect, ConnectionClosed):
            raise
        except Exception:
            logger.exception("Unhandled error in socket event", event=event, user_id=connection.user_id)
            await self._handle_error(connection, event, InternalError(f"Failed to handle {event}"))

    async def _handle_error(self, connection: WebSocketConnection, event: str, error: ChatError) -> None:
        if event in BEST_EFFORT_EVENTS:
            logger.debug("Dropped best-effort event", event=event, reason=error.message)
            return
        metrics_collector.increment_counter("realtime_event_errors_total")
        await self._emit_error(connection, error, event)

    async def _emit_error(self, connection: WebSocketConnection, error: ChatError, event: Optional[str]) -> None:
        await connection.send_event("message_error", {
            "error": error.message,
            "code": error.code,
            "event": event,
        })

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_typing_start(self, connection: WebSocketConnection, data: Dict[str, Any]) -> None:
        request = TypingEvent.model_validate(data)
        await self.presence.emit_to_user(request.receiver_id, "user_typing", {
            "user_id": connection.user_id,
            "name": connection.first_name,
            "conversation_id": request.conversation_id,
        })

    async def _on_typing_stop(self, connection: WebSocketConnection, data: Dict[str, Any]) -> None:
        request = TypingEvent.model_validate(data)
        await self.presence.emit_to_user(request.receiver_id, "user_stop_typing", {
            "user_id": connection.user_id,
            "conversation_id": request.conversation_id,
        })

    async def _on_send_message(self, connection: WebSocketConnection, data: Dict[str, Any]) -> None:
        request = SendMessageRequest.model_validate(data)
        await self.chat.send_message(connection.user_id, request)

    async def _on_mark_messages_read(self, connection: WebSocketConnection, data: Dict[str, Any]) -> None:
        request = MarkReadEvent.model_validate(data)
        await self.chat.mark_read(connection.user_id, request.user_id)

    async def _on_join_conversation(self, connection: WebSocketConnection, data: Dict[str, Any]) -> None:
        request = ConversationRoomEvent.model_validate(data)
        await self.presence.join_room(connection.room(request.conversation_id), connection)
        logger.debug("Joined conversation room", user_id=connection.user_id,
                     conversation_id=request.conversation_id)

    async def _on_leave_conversation(self, connection: WebSocketConnection, data: Dict[str, Any]) -> None:
        request = ConversationRoomEvent.model_validate(data)
        await self.presence.leave_room(connection.room(request.conversation_id), connection)
        logger.debug("Left conversation room", user_id=connection.user_id,
                     conversation_id=request.conversation_id)

    async def _on_update_status(self, connection: WebSocketConnection, data: Dict[str, Any]) -> None:
        request = StatusEvent.model_validate(data)
        await self.presence.broadcast_to_friends(connection.user_id, "user_status_update", {
            "user_id": connection.user_id,
            "status": request.status,
        })
