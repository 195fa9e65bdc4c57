"""Fanout of persisted messages to connected clients.

Delivery is fire-and-forget per connection: every recipient is sent to
concurrently with asyncio.gather(), and a recipient that fails is logged,
counted and dropped from the registry without affecting anyone else.
Nothing is buffered for clients that are offline at publish time.
"""
import asyncio
import logging

from relay.errors import DeliveryError
from relay.messages.schemas import ChatMessage

from .registry import DEFAULT_ROOM, Connection, ConnectionRegistry

logger = logging.getLogger(__name__)

# Outbound event type for a newly stored message
NEW_MESSAGE_EVENT = "new_message"


class Broadcaster:
    """Delivers messages to every connection in a room.

    Attributes:
        registry: Source of room membership.
        failed_deliveries: Running count of per-recipient failures.
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry
        self.failed_deliveries = 0

    async def publish(self, message: ChatMessage, room: str = DEFAULT_ROOM) -> int:
        """Send a new_message event to all connections in *room*.

        Never raises for delivery problems.

        Args:
            message: The persisted message.
            room: Target room; every connection is in the default room.

        Returns:
            Number of connections the event was delivered to.
        """
        payload = {"type": NEW_MESSAGE_EVENT, **message.model_dump(mode="json")}
        return await self.send_to_room(payload, room)

    async def send_to_room(self, payload: dict, room: str) -> int:
        """Send an arbitrary event to all connections in a room concurrently."""
        connections = self.registry.snapshot(room)
        if not connections:
            return 0

        results = await asyncio.gather(
            *[self._safe_send(conn, payload) for conn in connections],
            return_exceptions=True
        )

        delivered = 0
        for conn, result in zip(connections, results):
            if result is True:
                delivered += 1
                continue
            self.failed_deliveries += 1
            logger.debug("[Fanout] %s", result)
            self.registry.unregister(conn.id)

        logger.info(
            "[Fanout] %s delivered to %d/%d connections in room %s",
            payload.get("type"), delivered, len(connections), room,
        )
        return delivered

    async def _safe_send(self, connection: Connection, payload: dict) -> bool:
        """Send to one connection, turning any failure into a DeliveryError value.

        Returns:
            True if sent. Failures are raised as DeliveryError and collected
            by gather(), never propagated.
        """
        try:
            await connection.send(payload)
            return True
        except Exception as e:
            raise DeliveryError(connection.id, str(e) or type(e).__name__) from e
