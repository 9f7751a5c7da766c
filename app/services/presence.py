"""
Presence & Session Registry.

Maps each authenticated user to the set of live connections they hold
(one per device) and fans events out to them. Presence is derived from
this map only: nothing here is persisted, so every user appears offline
after a restart until they reconnect.

All mutation goes through register/unregister (and the room helpers) so
online/offline broadcasts always agree with the map.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Protocol, Set

from starlette.websockets import WebSocketDisconnect
from websockets.exceptions import ConnectionClosed

logger = logging.getLogger(__name__)

FriendsLookup = Callable[[str], Awaitable[Set[str]]]


class Connection(Protocol):
    """A live, push-capable client connection"""
    connection_id: str

    async def send_event(self, event: str, data: Dict[str, Any]) -> None:
        ...


class PresenceRegistry:
    """Process-wide registry of user -> live connections."""

    def __init__(self, friends_of: FriendsLookup):
        self._friends_of = friends_of
        self._connections: Dict[str, Set[Connection]] = {}
        self._last_active: Dict[str, datetime] = {}
        self._rooms: Dict[str, Set[Connection]] = {}
        self._lock = asyncio.Lock()

    # -- queries -----------------------------------------------------------

    def connections_for(self, user_id: str) -> Set[Connection]:
        return set(self._connections.get(user_id, ()))

    def is_online(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    def online_user_ids(self) -> Set[str]:
        return {user_id for user_id, conns in self._connections.items() if conns}

    def last_active(self, user_id: str) -> Optional[datetime]:
        return self._last_active.get(user_id)

    def connection_count(self) -> int:
        return sum(len(conns) for conns in self._connections.values())

    def room_members(self, room: str) -> Set[Connection]:
        return set(self._rooms.get(room, ()))

    # -- mutation ----------------------------------------------------------

    async def register(self, user_id: str, connection: Connection,
                       announce: Optional[Dict[str, Any]] = None) -> bool:
        """
        Add a connection for user_id.

        Friends are told the user is online only when this is the user's
        first live connection. Returns True in that case.
        """
        async with self._lock:
            conns = self._connections.setdefault(user_id, set())
            came_online = not conns
            conns.add(connection)
            self._last_active[user_id] = datetime.utcnow()

        logger.info(f"User {user_id} connected ({connection.connection_id}). "
                    f"Total connections: {self.connection_count()}")

        if came_online:
            payload = {"user_id": user_id, "online": True}
            payload.update(announce or {})
            await self.broadcast_to_friends(user_id, "user_online", payload)
        return came_online

    async def unregister(self, user_id: str, connection: Connection,
                         announce: Optional[Dict[str, Any]] = None) -> Optional[datetime]:
        """
        Remove a connection for user_id.

        When the user's last connection goes away the last-active time is
        stamped, friends receive user_offline and the timestamp is returned.
        """
        async with self._lock:
            conns = self._connections.get(user_id)
            if not conns or connection not in conns:
                return None
            conns.discard(connection)
            for members in self._rooms.values():
                members.discard(connection)
            self._rooms = {room: members for room, members in self._rooms.items() if members}
            if conns:
                return None
            del self._connections[user_id]
            last_seen = datetime.utcnow()
            self._last_active[user_id] = last_seen

        logger.info(f"User {user_id} went offline. Remaining connections: {self.connection_count()}")

        payload = {"user_id": user_id, "online": False, "last_seen": last_seen.isoformat()}
        payload.update(announce or {})
        await self.broadcast_to_friends(user_id, "user_offline", payload)
        return last_seen

    def touch(self, user_id: str) -> None:
        if user_id in self._connections:
            self._last_active[user_id] = datetime.utcnow()

    async def join_room(self, room: str, connection: Connection) -> None:
        async with self._lock:
            self._rooms.setdefault(room, set()).add(connection)

    async def leave_room(self, room: str, connection: Connection) -> None:
        async with self._lock:
            members = self._rooms.get(room)
            if members is not None:
                members.discard(connection)
                if not members:
                    del self._rooms[room]

    # -- delivery ----------------------------------------------------------

    async def _deliver(self, targets: Iterable[Connection], event: str,
                       data: Dict[str, Any]) -> tuple:
        delivered = 0
        dead = set()
        for connection in targets:
            try:
                await connection.send_event(event, data)
                delivered += 1
            except (ConnectionClosed, WebSocketDisconnect):
                dead.add(connection)
            except Exception as e:
                logger.error(f"Error sending {event} to connection {connection.connection_id}: {e}")
                dead.add(connection)
        return delivered, dead

    async def emit_to_user(self, user_id: str, event: str, data: Dict[str, Any],
                           exclude: Optional[Connection] = None) -> int:
        """Push an event to every live connection of user_id. Returns deliveries made."""
        targets = [c for c in self.connections_for(user_id) if c is not exclude]
        if not targets:
            return 0

        delivered, dead = await self._deliver(targets, event, data)
        for connection in dead:
            await self.unregister(user_id, connection)
        if dead:
            logger.info(f"Removed {len(dead)} disconnected clients for user {user_id}")
        return delivered

    async def emit_to_room(self, room: str, event: str, data: Dict[str, Any],
                           exclude: Optional[Connection] = None) -> int:
        targets = [c for c in self.room_members(room) if c is not exclude]
        delivered, dead = await self._deliver(targets, event, data)
        for connection in dead:
            await self.leave_room(room, connection)
        return delivered

    async def broadcast_to_friends(self, user_id: str, event: str, data: Dict[str, Any]) -> int:
        """Best-effort push to every friend of user_id who is online."""
        try:
            friends = await self._friends_of(user_id)
        except Exception as e:
            logger.error(f"Friend lookup failed for {user_id}; skipping {event} broadcast: {e}")
            return 0

        delivered = 0
        for friend_id in friends:
            if self.is_online(friend_id):
                delivered += await self.emit_to_user(friend_id, event, data)
        return delivered
