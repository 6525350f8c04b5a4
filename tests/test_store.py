"""
Contract tests run against every MemoryStore backend.

Both the JSON-file and the SQLite backend must give the same answers for
CRUD, ownership, listing and stats.  Backend-only behavior lives in
test_file_store.py and test_sqlite_store.py.
"""

import pytest

from sharedmem.config import StoreConfig
from sharedmem.file_store import FileMemoryStore
from sharedmem.sqlite_store import SqliteMemoryStore
from sharedmem.store import DeleteResult, may_delete, open_store
from sharedmem.types import AgentRecord, MemoryEntry


@pytest.fixture(params=["file", "sqlite"])
def store(request, tmp_path):
    if request.param == "file":
        s = FileMemoryStore(str(tmp_path / "mem"))
    else:
        s = SqliteMemoryStore(str(tmp_path / "mem.db"))
    yield s
    s.close()


def entry(key, content="body", stored_by="alice", stored_at=None, **kw):
    if stored_at is not None:
        kw["stored_at"] = stored_at
    return MemoryEntry(
        key=key, content=content, content_length=len(content),
        stored_by=stored_by, **kw,
    )


# ---------------------------------------------------------------------------
# Write / read
# ---------------------------------------------------------------------------


class TestWriteRead:
    def test_read_missing(self, store):
        assert store.read("nope") is None

    def test_write_then_read(self, store):
        store.write(entry("k1", "hello", tags=["a", "b"], url="https://example.com/"))
        got = store.read("k1")
        assert got.content == "hello"
        assert got.tags == ["a", "b"]
        assert got.url == "https://example.com/"
        assert got.stored_by == "alice"

    def test_each_read_bumps_access_count(self, store):
        store.write(entry("k1"))
        assert store.read("k1").access_count == 1
        assert store.read("k1").access_count == 2

    def test_overwrite_replaces_wholesale(self, store):
        store.write(entry("k1", "old", stored_by="alice", tags=["x"]))
        store.read("k1")
        store.write(entry("k1", "new", stored_by="bob"))
        got = store.read("k1")
        assert got.content == "new"
        assert got.stored_by == "bob"
        assert got.tags == []
        assert got.access_count == 1
        assert store.count() == 1

    def test_count_and_keys_in_insertion_order(self, store):
        for k in ("c", "a", "b"):
            store.write(entry(k))
        assert store.count() == 3
        assert store.keys() == ["c", "a", "b"]
        assert store.keys(2) == ["c", "a"]

    def test_unicode_round_trip(self, store):
        store.write(entry("ü", "naïve café ☕"))
        assert store.read("ü").content == "naïve café ☕"


# ---------------------------------------------------------------------------
# Search / list
# ---------------------------------------------------------------------------


class TestSearchList:
    def test_search_fields(self, store):
        store.write(entry("alpha-key", "nothing"))
        store.write(entry("k2", "nothing", title="Beta Title"))
        store.write(entry("k3", "some gamma text"))
        store.write(entry("k4", "nothing", tags=["Delta"]))
        assert [e.key for e in store.search("alpha")] == ["alpha-key"]
        assert [e.key for e in store.search("beta")] == ["k2"]
        assert [e.key for e in store.search("gamma")] == ["k3"]
        assert [e.key for e in store.search("delta")] == ["k4"]

    def test_search_case_insensitive(self, store):
        store.write(entry("k", "Hello World"))
        assert len(store.search("hello world")) == 1

    def test_search_no_match(self, store):
        store.write(entry("k", "abc"))
        assert store.search("zzz") == []

    def test_search_empty_query(self, store):
        store.write(entry("k", "abc"))
        assert store.search("") == []

    def test_search_limit(self, store):
        for i in range(15):
            store.write(entry(f"k{i}", "common"))
        assert len(store.search("common")) == 10
        assert len(store.search("common", limit=3)) == 3

    def test_search_wildcards_are_literal(self, store):
        store.write(entry("k1", "100% sure"))
        store.write(entry("k2", "100 percent"))
        store.write(entry("k3", "snake_case"))
        store.write(entry("k4", "snakeXcase"))
        assert [e.key for e in store.search("100%")] == ["k1"]
        assert [e.key for e in store.search("e_c")] == ["k3"]

    def test_search_does_not_bump_access_count(self, store):
        store.write(entry("k", "abc"))
        store.search("abc")
        assert store.read("k").access_count == 1

    def test_list_newest_first(self, store):
        store.write(entry("old", stored_at="2024-01-01T00:00:00.000+00:00"))
        store.write(entry("new", stored_at="2024-03-01T00:00:00.000+00:00"))
        store.write(entry("mid", stored_at="2024-02-01T00:00:00.000+00:00"))
        assert [e.key for e in store.list()] == ["new", "mid", "old"]

    def test_list_limit(self, store):
        for i in range(60):
            store.write(entry(f"k{i:02d}", stored_at=f"2024-01-01T00:00:{i:02d}.000+00:00"))
        listed = store.list()
        assert len(listed) == 50
        assert listed[0].key == "k59"
        assert len(store.list(limit=5)) == 5


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------


class TestDelete:
    def test_owner_deletes(self, store):
        store.write(entry("k", stored_by="alice"))
        assert store.delete("k", "alice") is DeleteResult.OK
        assert store.read("k") is None
        assert store.count() == 0

    def test_admin_deletes(self, store):
        store.write(entry("k", stored_by="alice"))
        assert store.delete("k", "admin") is DeleteResult.OK

    def test_other_agent_refused(self, store):
        store.write(entry("k", stored_by="alice"))
        assert store.delete("k", "bob") is DeleteResult.UNAUTHORIZED
        assert store.read("k") is not None

    def test_missing_agent_refused(self, store):
        store.write(entry("k", stored_by="alice"))
        assert store.delete("k", None) is DeleteResult.UNAUTHORIZED

    def test_missing_key(self, store):
        assert store.delete("nope", "admin") is DeleteResult.NOT_FOUND

    def test_anonymous_entry_deletable_by_anonymous(self, store):
        store.write(entry("k", stored_by="anonymous"))
        assert store.delete("k", "anonymous") is DeleteResult.OK


class TestMayDelete:
    @pytest.mark.parametrize("agent,expected", [
        ("alice", True), ("admin", True), ("bob", False), (None, False), ("Admin", False),
    ])
    def test_rule(self, agent, expected):
        assert may_delete(entry("k", stored_by="alice"), agent) is expected


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


class TestStats:
    def test_empty(self, store):
        assert store.stats() == {
            "totalEntries": 0,
            "totalCharacters": 0,
            "totalAgents": 0,
            "uniqueContributors": 0,
            "topContributors": [],
        }

    def test_counts(self, store):
        store.write(entry("a1", "aaaa", stored_by="alice"))
        store.write(entry("b1", "bb", stored_by="bob"))
        store.write(entry("b2", "bb", stored_by="bob"))
        store.register_agent(AgentRecord(username="bob"))
        stats = store.stats()
        assert stats["totalEntries"] == 3
        assert stats["totalCharacters"] == 8
        assert stats["totalAgents"] == 1
        assert stats["uniqueContributors"] == 2
        assert stats["topContributors"] == ["bob", "alice"]

    def test_total_characters_uses_recorded_length(self, store):
        store.write(MemoryEntry(key="k", content="abc", content_length=10))
        assert store.stats()["totalCharacters"] == 10


# ---------------------------------------------------------------------------
# Agent registry
# ---------------------------------------------------------------------------


class TestAgents:
    def test_register_and_get(self, store):
        store.register_agent(AgentRecord(username="bot", name="Bot", mode="active"))
        got = store.get_agent("bot")
        assert got.name == "Bot"
        assert got.mode == "active"
        assert store.count_agents() == 1

    def test_reregister_replaces(self, store):
        store.register_agent(AgentRecord(username="bot", name="One"))
        store.register_agent(AgentRecord(username="bot", name="Two"))
        assert store.get_agent("bot").name == "Two"
        assert store.count_agents() == 1

    def test_deregister(self, store):
        store.register_agent(AgentRecord(username="bot"))
        assert store.deregister_agent("bot") is True
        assert store.deregister_agent("bot") is False
        assert store.get_agent("bot") is None


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestOpenStore:
    def test_file_backend(self, tmp_path):
        s = open_store(StoreConfig(backend="file", storage_dir=str(tmp_path / "m")))
        assert isinstance(s, FileMemoryStore)
        assert s.backend_name == "file"

    def test_sqlite_backend(self, tmp_path):
        s = open_store(StoreConfig(backend="sqlite", db_path=str(tmp_path / "m.db")))
        assert isinstance(s, SqliteMemoryStore)
        assert s.backend_name == "sqlite"
        s.close()

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            open_store(StoreConfig(backend="redis"))
