"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from relay.chat.context import build_context
from relay.config import AppConfig
from relay.errors import StoreError
from relay.main import create_app
from relay.messages.store import MessageStore


class FailingStore:
    """Stand-in for a message store whose backend is unreachable."""

    default_limit = 100
    default_user = "Anonymous"

    def __init__(self) -> None:
        self.append_calls = 0

    def append(self, user, text, gate=None):
        self.append_calls += 1
        raise StoreError("connection refused")

    def recent(self, limit=None):
        raise StoreError("connection refused")

    def count(self) -> int:
        return 0

    def close(self) -> None:
        pass


@pytest.fixture
def config():
    """Config pointing at an in-memory database."""
    return AppConfig(secrets={"database": {"url": ":memory:"}})


@pytest.fixture
def store():
    store = MessageStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def chat_context(config, store):
    return build_context(config, store=store)


@pytest.fixture
def api_client(chat_context):
    """Provide a TestClient for an app wired to the in-memory context.

    Used as a context manager so every WebSocket session shares one
    event loop.
    """
    with TestClient(create_app(context=chat_context)) as client:
        yield client


@pytest.fixture
def failing_store():
    return FailingStore()


@pytest.fixture
def failing_client(config, failing_store):
    """TestClient whose message store always fails."""
    context = build_context(config, store=failing_store)
    with TestClient(create_app(context=context)) as client:
        yield client
