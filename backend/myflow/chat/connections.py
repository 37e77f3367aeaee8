"""WebSocket connection registry and fan-out for chat rooms.

This module owns the only state the gateway keeps outside the store: which
live connection belongs to which user, and which connections are subscribed
to which room channel. It supports:

    - connection -> user mapping (set once on connect)
    - user -> connections multiplexing for directed signals (kick, invite)
    - room -> connections subscriptions for room-scoped fan-out
    - concurrent broadcasting with asyncio.gather()
    - automatic dead connection cleanup

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.
"""
import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks live connections per user and per room channel.

    A connection is subscribed to at most one room at a time; subscribing it
    to a room removes it from any previous room channel.
    """

    def __init__(self) -> None:
        # websocket -> userId (explicit, owned mapping)
        self.connection_users: Dict[WebSocket, str] = {}

        # userId -> set of live connections (a user may have several tabs)
        self.user_connections: Dict[str, Set[WebSocket]] = {}

        # room_id -> set of subscribed connections
        self.room_connections: Dict[str, Set[WebSocket]] = {}

        # websocket -> room_id it is subscribed to
        self.connection_rooms: Dict[WebSocket, str] = {}

    # =========================================================================
    # Registration
    # =========================================================================

    def register(self, websocket: WebSocket, user_id: str) -> None:
        """Bind an accepted connection to a user."""
        self.connection_users[websocket] = user_id
        self.user_connections.setdefault(user_id, set()).add(websocket)
        logger.info(
            f"[Connections] User {user_id} connected "
            f"({len(self.user_connections[user_id])} connection(s))"
        )

    def unregister(self, websocket: WebSocket) -> Optional[str]:
        """Forget a connection everywhere.

        Returns:
            The user the connection belonged to, or None if unknown.
        """
        self._unsubscribe_connection(websocket)
        user_id = self.connection_users.pop(websocket, None)
        if user_id is not None:
            conns = self.user_connections.get(user_id)
            if conns is not None:
                conns.discard(websocket)
                if not conns:
                    del self.user_connections[user_id]
        return user_id

    def user_of(self, websocket: WebSocket) -> Optional[str]:
        return self.connection_users.get(websocket)

    def is_connected(self, user_id: str) -> bool:
        return bool(self.user_connections.get(user_id))

    def connections_of(self, user_id: str) -> List[WebSocket]:
        return list(self.user_connections.get(user_id, ()))

    # =========================================================================
    # Room subscriptions
    # =========================================================================

    def subscribe_user(self, user_id: str, room_id: str) -> None:
        """Subscribe every connection of a user to a room channel."""
        for websocket in self.connections_of(user_id):
            self.subscribe(websocket, room_id)

    def unsubscribe_user(self, user_id: str, room_id: str) -> None:
        for websocket in self.connections_of(user_id):
            if self.connection_rooms.get(websocket) == room_id:
                self._unsubscribe_connection(websocket)

    def subscribe(self, websocket: WebSocket, room_id: str) -> None:
        if self.connection_rooms.get(websocket) == room_id:
            return
        self._unsubscribe_connection(websocket)
        self.room_connections.setdefault(room_id, set()).add(websocket)
        self.connection_rooms[websocket] = room_id

    def _unsubscribe_connection(self, websocket: WebSocket) -> None:
        room_id = self.connection_rooms.pop(websocket, None)
        if room_id is None:
            return
        conns = self.room_connections.get(room_id)
        if conns is not None:
            conns.discard(websocket)
            if not conns:
                del self.room_connections[room_id]

    # =========================================================================
    # Delivery
    # =========================================================================

    async def broadcast(self, message: dict, room_id: str) -> None:
        """Send a message to every connection subscribed to a room."""
        await self._send_many(list(self.room_connections.get(room_id, ())), message)

    async def send_to_user(self, message: dict, user_id: str) -> None:
        """Directed delivery to all connections of one user, whatever their room."""
        await self._send_many(self.connections_of(user_id), message)

    async def send(self, message: dict, websocket: WebSocket) -> None:
        await self._send_many([websocket], message)

    async def _send_many(self, connections: List[WebSocket], message: dict) -> None:
        """Send concurrently; connections that fail are dropped."""
        if not connections:
            return

        results = await asyncio.gather(
            *[self._safe_send(conn, message) for conn in connections],
            return_exceptions=True
        )

        failed_connections = [
            conn for conn, success in zip(connections, results)
            if success is not True
        ]
        self._cleanup_connections(failed_connections)

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        """Send a message to a WebSocket connection with error handling.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    def _cleanup_connections(self, failed_connections: Iterable[WebSocket]) -> None:
        for conn in failed_connections:
            user_id = self.unregister(conn)
            logger.debug(f"Removed dead connection of user {user_id}")
