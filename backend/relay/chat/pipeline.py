"""Ingestion pipeline shared by the REST and WebSocket transports.

Every incoming message, whichever way it arrives, goes through the same
steps: normalize, validate, persist, publish. The transports differ only in
how they report the two failure modes:

    ValidationError  REST: 400          WebSocket: dropped silently
    StoreError       REST: 500          WebSocket: error event to sender only
"""
import logging
from typing import Any, Mapping, Optional, Union

from relay.messages.schemas import DEFAULT_USER, ChatMessage, MessageCreate, normalize_message
from relay.messages.store import CommitGate, MessageStore, call_store

from .broadcast import Broadcaster
from .registry import DEFAULT_ROOM

logger = logging.getLogger(__name__)

RawMessage = Union[MessageCreate, Mapping[str, Any]]


class IngestionPipeline:
    """Validates, persists and publishes incoming chat messages."""

    def __init__(
        self,
        store: MessageStore,
        broadcaster: Broadcaster,
        room: str = DEFAULT_ROOM,
        default_user: str = DEFAULT_USER,
        timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.room = room
        self.default_user = default_user
        self.timeout = timeout

    async def ingest(self, raw: RawMessage) -> ChatMessage:
        """Run one message through the pipeline.

        Args:
            raw: A MessageCreate or a mapping with optional "user" and "text".

        Returns:
            The persisted ChatMessage, already handed to the broadcaster.

        Raises:
            ValidationError: Text is missing or blank. Nothing is stored.
            StoreError: The store failed or timed out. Nothing is stored or
                broadcast.
        """
        if isinstance(raw, MessageCreate):
            user, text = raw.user, raw.text
        else:
            user, text = raw.get("user"), raw.get("text")

        user, text = normalize_message(user, text, self.default_user)

        message = await call_store(
            self.store.append, user, text, timeout=self.timeout, gate=CommitGate()
        )
        logger.info(f"[Ingest] Stored message {message.id} from {message.user}: {message.text[:50]}")

        await self.broadcaster.publish(message, self.room)
        return message
