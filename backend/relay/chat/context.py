"""The explicitly owned bundle of relay state.

A ChatContext is built once at startup and handed to every REST and
WebSocket handler through ``app.state.chat``. Tests build their own with a
substitute store.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from relay.config import AppConfig, require_database_url
from relay.messages.store import MessageStore

from .broadcast import Broadcaster
from .history import HistoryQuery
from .pipeline import IngestionPipeline
from .registry import ConnectionRegistry

logger = logging.getLogger(__name__)


@dataclass
class ChatContext:
    """Store, registry and the services built on them."""
    config: AppConfig
    store: MessageStore
    registry: ConnectionRegistry
    broadcaster: Broadcaster
    pipeline: IngestionPipeline
    history: HistoryQuery

    @property
    def default_room(self) -> str:
        return self.config.chat.default_room

    def close(self) -> None:
        self.store.close()


def build_context(config: AppConfig, store: Optional[MessageStore] = None) -> ChatContext:
    """Wire a ChatContext from config.

    Args:
        config: Loaded application config.
        store: Optional pre-built store; otherwise one is opened on
            the configured database URL.

    Raises:
        ConfigError: If no store is given and no database URL is configured.
        StoreError: If the database cannot be opened.
    """
    if store is None:
        store = MessageStore(
            require_database_url(config),
            default_limit=config.history.default_limit,
            default_user=config.chat.default_user,
        )

    timeout = config.database.timeout_seconds
    registry = ConnectionRegistry()
    broadcaster = Broadcaster(registry)
    pipeline = IngestionPipeline(
        store,
        broadcaster,
        room=config.chat.default_room,
        default_user=config.chat.default_user,
        timeout=timeout,
    )
    history = HistoryQuery(
        store,
        default_limit=config.history.default_limit,
        max_limit=config.history.max_limit,
        timeout=timeout,
    )
    logger.info("Chat context ready (room=%s, timeout=%ss)", config.chat.default_room, timeout)
    return ChatContext(
        config=config,
        store=store,
        registry=registry,
        broadcaster=broadcaster,
        pipeline=pipeline,
        history=history,
    )
