"""Read path for recent chat history. Every call re-reads the store."""
import logging
from typing import List, Optional

from relay.messages.schemas import ChatMessage
from relay.messages.store import DEFAULT_RECENT_LIMIT, MessageStore, call_store

logger = logging.getLogger(__name__)


class HistoryQuery:
    """Serves the most recent messages in chronological order."""

    def __init__(
        self,
        store: MessageStore,
        default_limit: int = DEFAULT_RECENT_LIMIT,
        max_limit: int = DEFAULT_RECENT_LIMIT,
        timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.default_limit = min(default_limit, max_limit)
        self.max_limit = max_limit
        self.timeout = timeout

    async def fetch(self, limit: Optional[int] = None) -> List[ChatMessage]:
        """Get up to *limit* recent messages, oldest first.

        The limit is clamped to max_limit; None means default_limit.

        Raises:
            StoreError: If the store fails or times out.
        """
        if limit is None:
            limit = self.default_limit
        limit = min(limit, self.max_limit)
        messages = await call_store(self.store.recent, limit, timeout=self.timeout)
        logger.debug("[History] Returning %d messages (limit=%d)", len(messages), limit)
        return messages
