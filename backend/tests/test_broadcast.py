"""Tests for broadcast fanout and the ingestion pipeline."""
import asyncio
import time

import pytest

from relay.chat.broadcast import Broadcaster
from relay.chat.history import HistoryQuery
from relay.chat.pipeline import IngestionPipeline
from relay.chat.registry import DEFAULT_ROOM, Connection, ConnectionRegistry
from relay.errors import StoreError, ValidationError
from relay.messages.schemas import MessageCreate


class FakeTransport:
    def __init__(self):
        self.sent = []

    async def send_json(self, data):
        self.sent.append(data)


class DeadTransport:
    async def send_json(self, data):
        raise RuntimeError("Cannot call send once a close message has been sent")


def connect(registry, transport=None, room=DEFAULT_ROOM):
    conn = Connection(transport or FakeTransport())
    registry.register(conn)
    registry.join(conn.id, room)
    return conn


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def broadcaster(registry):
    return Broadcaster(registry)


@pytest.fixture
def pipeline(store, broadcaster):
    return IngestionPipeline(store, broadcaster, timeout=5)


class TestBroadcaster:
    def test_publish_reaches_every_member(self, store, registry, broadcaster):
        conns = [connect(registry) for _ in range(3)]
        message = store.append("alice", "hi")

        delivered = asyncio.run(broadcaster.publish(message))

        assert delivered == 3
        for conn in conns:
            assert conn.transport.sent == [{
                "type": "new_message",
                **message.model_dump(mode="json"),
            }]

    def test_publish_to_empty_room(self, store, broadcaster):
        message = store.append("alice", "hi")
        assert asyncio.run(broadcaster.publish(message, "empty-room")) == 0

    def test_publish_is_room_scoped(self, store, registry, broadcaster):
        inside = connect(registry, room="lobby")
        outside = connect(registry, room="other")
        message = store.append("alice", "hi")

        asyncio.run(broadcaster.publish(message, "lobby"))

        assert len(inside.transport.sent) == 1
        assert outside.transport.sent == []

    def test_failed_recipient_does_not_block_others(self, store, registry, broadcaster):
        alive1 = connect(registry)
        dead = connect(registry, DeadTransport())
        alive2 = connect(registry)
        message = store.append("alice", "hi")

        delivered = asyncio.run(broadcaster.publish(message))

        assert delivered == 2
        assert len(alive1.transport.sent) == 1
        assert len(alive2.transport.sent) == 1
        assert broadcaster.failed_deliveries == 1
        # Dead connections are dropped so later publishes skip them
        assert dead.id not in registry
        assert registry.members_of(DEFAULT_ROOM) == {alive1.id, alive2.id}


class TestIngestionPipeline:
    def test_ingest_stores_and_broadcasts(self, store, registry, pipeline):
        sender = connect(registry)
        other = connect(registry)

        message = asyncio.run(pipeline.ingest({"user": "alice", "text": "  hi  "}))

        assert message.user == "alice"
        assert message.text == "hi"
        assert store.count() == 1
        for conn in (sender, other):
            assert conn.transport.sent[0]["type"] == "new_message"
            assert conn.transport.sent[0]["id"] == message.id
            assert conn.transport.sent[0]["text"] == "hi"

    def test_ingest_accepts_message_create(self, store, pipeline):
        message = asyncio.run(pipeline.ingest(MessageCreate(text="hello")))
        assert message.user == "Anonymous"
        assert store.count() == 1

    @pytest.mark.parametrize("raw", [{}, {"text": ""}, {"text": "   "}, {"user": "bob"}, {"text": None}])
    def test_blank_text_is_rejected_without_side_effects(self, store, registry, pipeline, raw):
        conn = connect(registry)

        with pytest.raises(ValidationError):
            asyncio.run(pipeline.ingest(raw))

        assert store.count() == 0
        assert conn.transport.sent == []

    def test_store_failure_is_not_broadcast(self, failing_store, registry, broadcaster):
        conn = connect(registry)
        pipeline = IngestionPipeline(failing_store, broadcaster, timeout=5)

        with pytest.raises(StoreError):
            asyncio.run(pipeline.ingest({"user": "alice", "text": "hi"}))

        assert failing_store.append_calls == 1
        assert conn.transport.sent == []

    def test_blank_text_never_reaches_store(self, failing_store, broadcaster):
        pipeline = IngestionPipeline(failing_store, broadcaster, timeout=5)

        with pytest.raises(ValidationError):
            asyncio.run(pipeline.ingest({"text": " "}))

        assert failing_store.append_calls == 0

    def test_store_timeout_is_store_error(self, store, registry, broadcaster):
        class SlowStore:
            def append(self, user, text, gate=None):
                time.sleep(0.5)
                return store.append(user, text, gate=gate)

        conn = connect(registry)
        pipeline = IngestionPipeline(SlowStore(), broadcaster, timeout=0.05)

        with pytest.raises(StoreError):
            asyncio.run(pipeline.ingest({"text": "slow"}))

        # asyncio.run waits for the worker thread, so a late commit would show
        assert store.count() == 0
        assert store.recent() == []
        assert conn.transport.sent == []

    def test_timed_out_message_can_be_resent_once(self, store, registry, broadcaster, monkeypatch):
        real_append = store.append

        def slow_append(user, text, gate=None):
            time.sleep(0.3)
            return real_append(user, text, gate=gate)

        conn = connect(registry)
        monkeypatch.setattr(store, "append", slow_append)
        with pytest.raises(StoreError):
            asyncio.run(IngestionPipeline(store, broadcaster, timeout=0.05).ingest({"text": "retry me"}))

        monkeypatch.setattr(store, "append", real_append)
        asyncio.run(IngestionPipeline(store, broadcaster, timeout=5).ingest({"text": "retry me"}))

        assert [m.text for m in store.recent()] == ["retry me"]
        assert [e["text"] for e in conn.transport.sent] == ["retry me"]

    def test_slow_insert_after_commit_started_is_published(self, store, registry, broadcaster):
        class CommitThenStall:
            def append(self, user, text, gate=None):
                message = store.append(user, text, gate=gate)
                time.sleep(0.3)
                return message

        conn = connect(registry)
        pipeline = IngestionPipeline(CommitThenStall(), broadcaster, timeout=0.05)

        message = asyncio.run(pipeline.ingest({"text": "made it"}))

        assert store.count() == 1
        assert conn.transport.sent[0]["id"] == message.id

    def test_single_sender_order_is_preserved(self, store, registry, pipeline):
        receiver = connect(registry)

        async def send_all():
            for i in range(10):
                await pipeline.ingest({"user": "alice", "text": f"message {i}"})

        asyncio.run(send_all())

        assert [e["text"] for e in receiver.transport.sent] == [f"message {i}" for i in range(10)]
        assert [m.text for m in store.recent()] == [f"message {i}" for i in range(10)]


class TestHistoryQuery:
    def test_fetch_uses_default_limit(self, store):
        for i in range(5):
            store.append("alice", f"message {i}")
        history = HistoryQuery(store, default_limit=3, max_limit=100)

        messages = asyncio.run(history.fetch())

        assert [m.text for m in messages] == ["message 2", "message 3", "message 4"]

    def test_fetch_clamps_to_max_limit(self, store):
        for i in range(5):
            store.append("alice", f"message {i}")
        history = HistoryQuery(store, default_limit=2, max_limit=4)

        assert len(asyncio.run(history.fetch(50))) == 4

    def test_fetch_empty_store(self, store):
        assert asyncio.run(HistoryQuery(store).fetch()) == []

    def test_fetch_rereads_store(self, store):
        history = HistoryQuery(store)
        assert asyncio.run(history.fetch()) == []
        store.append("alice", "new")
        assert len(asyncio.run(history.fetch())) == 1

    def test_fetch_store_failure(self, failing_store):
        with pytest.raises(StoreError):
            asyncio.run(HistoryQuery(failing_store).fetch())
