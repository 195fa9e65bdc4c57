"""Registry of live real-time connections and their room membership.

Connections are ephemeral: they are registered when a WebSocket is accepted
and dropped on disconnect, and nothing about them survives a reconnect.

Thread Safety:
    All mutation and snapshot reads happen under one ``threading.Lock``, so
    the registry can be shared by every handler in the process (including
    handlers running on different event loops, as under the test client).
"""
import logging
import threading
import uuid
from typing import Dict, Iterable, List, Optional, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)

# The one well-known room every connection is auto-joined to
DEFAULT_ROOM = "global"


class Connection:
    """A single real-time client session.

    Attributes:
        id: Unique identifier for this session.
        transport: The WebSocket (or any object with an async send_json)
            outbound events are written to.
        rooms: Rooms this connection has joined. Maintained by the registry.
    """

    def __init__(self, transport: WebSocket, connection_id: Optional[str] = None) -> None:
        self.id = connection_id or str(uuid.uuid4())
        self.transport = transport
        self.rooms: Set[str] = set()

    async def send(self, payload: dict) -> None:
        await self.transport.send_json(payload)

    def __repr__(self) -> str:
        return f"Connection(id={self.id!r}, rooms={sorted(self.rooms)!r})"


class ConnectionRegistry:
    """Tracks connected clients and which rooms they belong to."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # connection_id -> Connection
        self._connections: Dict[str, Connection] = {}
        # room -> set of connection ids
        self._rooms: Dict[str, Set[str]] = {}

    def register(self, connection: Connection) -> None:
        """Add a connection with no room membership.

        Registering an already known connection drops its old memberships.
        """
        with self._lock:
            previous = self._connections.get(connection.id)
            self._drop_memberships(connection.id, connection.rooms)
            if previous is not None and previous is not connection:
                self._drop_memberships(connection.id, previous.rooms)
                previous.rooms = set()
            connection.rooms = set()
            self._connections[connection.id] = connection
            total = len(self._connections)
        logger.info("[Registry] Registered %s (%d connected)", connection.id, total)

    def _drop_memberships(self, connection_id: str, rooms: Iterable[str]) -> None:
        # Caller holds the lock.
        for room in rooms:
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(connection_id)
            if not members:
                del self._rooms[room]

    def join(self, connection_id: str, room: str) -> bool:
        """Add *room* to a connection's membership.

        Idempotent. Returns False if the connection is not registered.
        """
        with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                return False
            connection.rooms.add(room)
            self._rooms.setdefault(room, set()).add(connection_id)
        logger.debug("[Registry] %s joined room %s", connection_id, room)
        return True

    def unregister(self, connection_id: str) -> Optional[Connection]:
        """Remove a connection and all its memberships.

        Safe to call more than once; later calls return None.
        """
        with self._lock:
            connection = self._connections.pop(connection_id, None)
            if connection is None:
                return None
            self._drop_memberships(connection_id, connection.rooms)
            connection.rooms = set()
            total = len(self._connections)
        logger.info("[Registry] Unregistered %s (%d connected)", connection_id, total)
        return connection

    def members_of(self, room: str) -> Set[str]:
        """Get the ids of connections in a room (empty for unknown rooms)."""
        with self._lock:
            return set(self._rooms.get(room, ()))

    def snapshot(self, room: str) -> List[Connection]:
        """Get a consistent copy of the connections currently in a room."""
        with self._lock:
            return [
                self._connections[cid]
                for cid in self._rooms.get(room, ())
                if cid in self._connections
            ]

    def get(self, connection_id: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(connection_id)

    def connection_ids(self) -> Iterable[str]:
        with self._lock:
            return list(self._connections)

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        with self._lock:
            return connection_id in self._connections
