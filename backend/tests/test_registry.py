"""Tests for the connection registry."""
import threading

from relay.chat.registry import DEFAULT_ROOM, Connection, ConnectionRegistry


class FakeTransport:
    def __init__(self):
        self.sent = []

    async def send_json(self, data):
        self.sent.append(data)


def make_connection(connection_id=None):
    return Connection(FakeTransport(), connection_id=connection_id)


class TestConnection:
    def test_generates_unique_ids(self):
        assert make_connection().id != make_connection().id

    def test_explicit_id(self):
        assert make_connection("conn-1").id == "conn-1"


class TestConnectionRegistry:
    def test_register_has_no_rooms(self):
        registry = ConnectionRegistry()
        conn = make_connection()

        registry.register(conn)

        assert conn.id in registry
        assert len(registry) == 1
        assert conn.rooms == set()
        assert registry.members_of(DEFAULT_ROOM) == set()

    def test_register_again_drops_old_memberships(self):
        registry = ConnectionRegistry()
        conn = make_connection()
        registry.register(conn)
        registry.join(conn.id, DEFAULT_ROOM)
        registry.join(conn.id, "lobby")

        registry.register(conn)

        assert conn.rooms == set()
        assert registry.members_of(DEFAULT_ROOM) == set()
        assert registry.members_of("lobby") == set()

        registry.unregister(conn.id)
        assert registry.snapshot(DEFAULT_ROOM) == []

    def test_register_replacement_with_same_id(self):
        registry = ConnectionRegistry()
        old = make_connection("conn-1")
        registry.register(old)
        registry.join("conn-1", "lobby")

        new = make_connection("conn-1")
        registry.register(new)

        assert old.rooms == set()
        assert registry.members_of("lobby") == set()
        assert registry.get("conn-1") is new

    def test_join_adds_membership(self):
        registry = ConnectionRegistry()
        conn = make_connection()
        registry.register(conn)

        assert registry.join(conn.id, "global") is True

        assert registry.members_of("global") == {conn.id}
        assert conn.rooms == {"global"}

    def test_join_is_idempotent(self):
        registry = ConnectionRegistry()
        conn = make_connection()
        registry.register(conn)

        registry.join(conn.id, "global")
        before = len(registry.members_of("global"))
        registry.join(conn.id, "global")

        assert len(registry.members_of("global")) == before == 1

    def test_join_unknown_connection_is_noop(self):
        registry = ConnectionRegistry()

        assert registry.join("missing", "global") is False
        assert registry.members_of("global") == set()

    def test_members_of_unknown_room_is_empty(self):
        registry = ConnectionRegistry()
        assert registry.members_of("nowhere") == set()
        assert registry.snapshot("nowhere") == []

    def test_unregister_removes_all_memberships(self):
        registry = ConnectionRegistry()
        conn = make_connection()
        other = make_connection()
        registry.register(conn)
        registry.register(other)
        registry.join(conn.id, "global")
        registry.join(conn.id, "lobby")
        registry.join(other.id, "global")

        removed = registry.unregister(conn.id)

        assert removed is conn
        assert conn.id not in registry
        assert registry.members_of("global") == {other.id}
        assert registry.members_of("lobby") == set()

    def test_unregister_is_idempotent(self):
        registry = ConnectionRegistry()
        conn = make_connection()
        registry.register(conn)

        assert registry.unregister(conn.id) is conn
        assert registry.unregister(conn.id) is None
        assert registry.unregister("never-registered") is None
        assert len(registry) == 0

    def test_snapshot_is_a_copy(self):
        registry = ConnectionRegistry()
        conn = make_connection()
        registry.register(conn)
        registry.join(conn.id, "global")

        snapshot = registry.snapshot("global")
        registry.unregister(conn.id)

        assert snapshot == [conn]
        assert registry.snapshot("global") == []

    def test_get(self):
        registry = ConnectionRegistry()
        conn = make_connection()
        registry.register(conn)

        assert registry.get(conn.id) is conn
        assert registry.get("missing") is None

    def test_concurrent_register_and_unregister(self):
        """Registry stays consistent under concurrent mutation from threads."""
        registry = ConnectionRegistry()
        connections = [make_connection() for _ in range(200)]

        def churn(batch):
            for conn in batch:
                registry.register(conn)
                registry.join(conn.id, "global")
                registry.join(conn.id, "global")
            for conn in batch[::2]:
                registry.unregister(conn.id)

        threads = [
            threading.Thread(target=churn, args=(connections[i::4],))
            for i in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        survivors = {c.id for i in range(4) for c in connections[i::4][1::2]}
        assert registry.members_of("global") == survivors
        assert len(registry) == len(survivors)
