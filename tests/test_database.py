"""Store semantics shared by the SQLite and in-memory backends."""
import sqlite3

import pytest

from database import (
    InMemoryStore,
    SQLiteStore,
    StoreError,
    create_user_in_store,
    get_user_by_id,
    get_user_by_username,
    resolve_range,
    update_user_password,
)


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, clock, tmp_path):
    if request.param == "memory":
        return InMemoryStore(clock=clock)
    return SQLiteStore(str(tmp_path / "store.db"), clock=clock)


class TestResolveRange:
    def test_whole_range(self):
        assert resolve_range(0, -1, 5) == (0, 5)

    def test_clamps_end(self):
        assert resolve_range(2, 100, 5) == (2, 3)

    def test_negative_start(self):
        assert resolve_range(-2, -1, 5) == (3, 2)

    def test_empty(self):
        assert resolve_range(0, -1, 0) == (0, 0)
        assert resolve_range(4, 2, 10) == (0, 0)


class TestKeyValue:
    def test_get_set_delete(self, any_store):
        assert any_store.get("k") is None
        any_store.set("k", "v")
        assert any_store.get("k") == "v"
        any_store.delete("k")
        assert any_store.get("k") is None

    def test_expiry(self, any_store, clock):
        any_store.set_with_expiry("game:1", "payload", 3600)
        clock.advance(3599)
        assert any_store.get("game:1") == "payload"
        clock.advance(1)
        assert any_store.get("game:1") is None

    def test_set_clears_expiry(self, any_store, clock):
        any_store.set_with_expiry("k", "old", 10)
        any_store.set("k", "new")
        clock.advance(100)
        assert any_store.get("k") == "new"

    def test_purge_expired(self, any_store, clock):
        any_store.set_with_expiry("game:1", "a", 10)
        any_store.set_with_expiry("game:2", "b", 100)
        any_store.set("keep", "c")
        clock.advance(50)
        assert any_store.purge_expired() == 1
        assert any_store.purge_expired() == 0
        assert any_store.get("game:2") == "b"
        assert any_store.get("keep") == "c"

    def test_expiring_write_sweeps_abandoned_keys(self, any_store, clock):
        for number in range(5):
            any_store.set_with_expiry(f"game:{number}", "abandoned", 3600)
        clock.advance(24 * 3600)
        any_store.set_with_expiry("game:new", "fresh", 3600)
        assert any_store.purge_expired() == 0
        assert any_store.get("game:new") == "fresh"

    def test_hashes(self, any_store):
        assert any_store.hash_get("users", "alice") is None
        any_store.hash_set("users", "alice", "1")
        any_store.hash_set("users", "alice", "2")
        assert any_store.hash_get("users", "alice") == "2"

    def test_ping(self, any_store):
        assert any_store.ping() is True


class TestOrderedSets:
    def test_ordered_by_score_then_insertion(self, any_store):
        any_store.ordered_set_add("lb", 120, "a")
        any_store.ordered_set_add("lb", 95, "b")
        any_store.ordered_set_add("lb", 120, "c")
        any_store.ordered_set_add("lb", 150, "d")
        assert any_store.ordered_set_range("lb", 0, -1) == [("b", 95), ("a", 120), ("c", 120), ("d", 150)]
        assert any_store.ordered_set_range("lb", 0, 1) == [("b", 95), ("a", 120)]
        assert any_store.ordered_set_range("lb", -1, -1) == [("d", 150)]
        assert any_store.ordered_set_cardinality("lb") == 4

    def test_readding_member_updates_score(self, any_store):
        any_store.ordered_set_add("lb", 10, "a")
        any_store.ordered_set_add("lb", 20, "b")
        any_store.ordered_set_add("lb", 30, "a")
        assert any_store.ordered_set_range("lb", 0, -1) == [("b", 20), ("a", 30)]
        assert any_store.ordered_set_cardinality("lb") == 2

    def test_missing_set(self, any_store):
        assert any_store.ordered_set_range("nope", 0, -1) == []
        assert any_store.ordered_set_cardinality("nope") == 0


class TestLists:
    def test_prepend_keeps_newest_first(self, any_store):
        for value in ("first", "second", "third"):
            any_store.list_prepend("history", value)
        assert any_store.list_range("history", 0, -1) == ["third", "second", "first"]
        assert any_store.list_range("history", 1, 1) == ["second"]
        assert any_store.list_length("history") == 3

    def test_delete_removes_list(self, any_store):
        any_store.list_prepend("history", "x")
        any_store.delete("history")
        assert any_store.list_length("history") == 0


class TestUsers:
    def test_create_and_lookup(self, any_store):
        user = create_user_in_store(any_store, "alice", "hashed")
        assert user is not None
        assert get_user_by_username(any_store, "alice")["id"] == user["id"]
        assert get_user_by_id(any_store, user["id"])["username"] == "alice"

    def test_duplicate_username(self, any_store):
        create_user_in_store(any_store, "alice", "hashed")
        assert create_user_in_store(any_store, "alice", "other") is None

    def test_update_password(self, any_store):
        create_user_in_store(any_store, "alice", "hashed")
        assert update_user_password(any_store, "alice", "new-hash") is True
        user = get_user_by_username(any_store, "alice")
        assert user["password"] == "new-hash"
        assert "updatedAt" in user
        assert update_user_password(any_store, "bob", "x") is False

    def test_corrupt_user_record_is_ignored(self, any_store):
        any_store.hash_set("users", "broken", "{not json")
        assert get_user_by_username(any_store, "broken") is None


class TestSQLiteStore:
    def test_failures_raise_store_error(self, tmp_path):
        store = SQLiteStore(str(tmp_path / "store.db"))
        store.db_path = str(tmp_path / "missing-dir" / "store.db")
        with pytest.raises(StoreError):
            store.get("k")

    def test_abandoned_sessions_leave_no_rows(self, tmp_path, clock):
        db_path = str(tmp_path / "store.db")
        store = SQLiteStore(db_path, clock=clock)
        for number in range(50):
            store.set_with_expiry(f"game:{number}", "abandoned", 3600)
        clock.advance(24 * 3600)
        reopened = SQLiteStore(db_path, clock=clock)
        reopened.set_with_expiry("game:new", "fresh", 3600)
        with sqlite3.connect(db_path) as conn:
            assert conn.execute("SELECT COUNT(*) FROM kv").fetchone()[0] == 1
