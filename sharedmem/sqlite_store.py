"""
SQLite Memory Store — relational backend

Tables:
    memories     - one row per entry (key is the primary key)
    agents       - agent registry (optional for the app to function)
    schema_meta  - schema version and creator

Search runs server-side with LIKE over lower-cased columns, newest first.
The access counter is read-then-write: two concurrent readers of one key
can lose an increment.  That counter is best-effort by contract.

Thread safety: uses sqlite3 check_same_thread=False with explicit serialization.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from sharedmem.errors import BackendFailure
from sharedmem.store import (
    DEFAULT_LIST_LIMIT,
    DEFAULT_SEARCH_LIMIT,
    TOP_CONTRIBUTORS,
    DeleteResult,
    MemoryStore,
    may_delete,
)
from sharedmem.types import AgentRecord, MemoryEntry

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS memories (
    key            TEXT PRIMARY KEY,
    url            TEXT,
    title          TEXT,
    content        TEXT NOT NULL,
    content_length INTEGER NOT NULL DEFAULT 0,
    tags           TEXT NOT NULL DEFAULT '[]',   -- JSON array
    tags_text      TEXT NOT NULL DEFAULT '',     -- lower-cased, newline-joined
    stored_by      TEXT NOT NULL DEFAULT 'anonymous',
    stored_at      TEXT NOT NULL,
    access_count   INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS agents (
    agent_username  TEXT PRIMARY KEY,
    agent_name      TEXT,
    agent_facts_url TEXT,
    mode            TEXT,
    registered_at   TEXT NOT NULL,
    contributions   INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS memories_stored_at_idx ON memories (stored_at DESC);
CREATE INDEX IF NOT EXISTS memories_access_count_idx ON memories (access_count DESC);
"""


def _py_lower(value: Optional[str]) -> str:
    """Unicode-aware lower() for SQL; SQLite's own only folds ASCII."""
    return value.lower() if value else ""


def _tags_text(tags: List[str]) -> str:
    """Search column for tags; newline keeps one tag from matching into the next."""
    return "\n".join(t.lower() for t in tags)


def _like_pattern(query: str) -> str:
    """Substring LIKE pattern with %, _ and the escape char escaped."""
    escaped = (
        query.lower()
        .replace("\\", "\\\\")
        .replace("%", "\\%")
        .replace("_", "\\_")
    )
    return f"%{escaped}%"


class SqliteMemoryStore(MemoryStore):
    """
    SQLite-backed shared memory store.

    Thread-safe via explicit lock.  Every sqlite3.Error is re-raised as
    BackendFailure, except when persisting the best-effort access counter.
    """

    backend_name = "sqlite"

    def __init__(self, db_path: str = ":memory:", wal_mode: bool = True):
        """
        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.
        """
        self._db_path = db_path
        self._lock = threading.Lock()
        try:
            if db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.create_function("py_lower", 1, _py_lower, deterministic=True)
            if wal_mode and db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA_SQL)
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
                (str(SCHEMA_VERSION),),
            )
            self._conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_by', 'sharedmem')",
            )
            self._conn.commit()
        except (sqlite3.Error, OSError) as exc:
            raise BackendFailure(f"Cannot open database {db_path}: {exc}") from exc
        logger.info("SqliteMemoryStore initialized: %s", db_path)

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    # -- Internal helpers --------------------------------------------------

    def _execute(self, sql: str, params=()) -> sqlite3.Cursor:
        """Run one statement and commit (must be called within lock)."""
        try:
            cur = self._conn.execute(sql, params)
            self._conn.commit()
            return cur
        except sqlite3.Error as exc:
            self._conn.rollback()
            raise BackendFailure(f"SQLite error: {exc}") from exc

    def _query(self, sql: str, params=()) -> List[sqlite3.Row]:
        """Run one SELECT (must be called within lock)."""
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise BackendFailure(f"SQLite error: {exc}") from exc

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> MemoryEntry:
        """Convert a SQLite Row to MemoryEntry."""
        return MemoryEntry(
            key=row["key"],
            url=row["url"],
            title=row["title"] or "",
            content=row["content"],
            content_length=row["content_length"],
            tags=json.loads(row["tags"] or "[]"),
            stored_by=row["stored_by"],
            stored_at=row["stored_at"],
            access_count=row["access_count"],
        )

    @staticmethod
    def _row_to_agent(row: sqlite3.Row) -> AgentRecord:
        return AgentRecord(
            username=row["agent_username"],
            name=row["agent_name"] or "",
            facts_url=row["agent_facts_url"],
            mode=row["mode"] or "passive",
            registered_at=row["registered_at"],
            contributions=row["contributions"],
        )

    # -- Entries -----------------------------------------------------------

    def write(self, entry: MemoryEntry) -> MemoryEntry:
        with self._lock:
            self._execute(
                """INSERT INTO memories
                   (key, url, title, content, content_length, tags, tags_text,
                    stored_by, stored_at, access_count)
                   VALUES (?,?,?,?,?,?,?,?,?,?)
                   ON CONFLICT(key) DO UPDATE SET
                    url=excluded.url, title=excluded.title,
                    content=excluded.content,
                    content_length=excluded.content_length,
                    tags=excluded.tags, tags_text=excluded.tags_text,
                    stored_by=excluded.stored_by, stored_at=excluded.stored_at,
                    access_count=excluded.access_count""",
                (
                    entry.key, entry.url, entry.title, entry.content,
                    entry.content_length, json.dumps(entry.tags),
                    _tags_text(entry.tags), entry.stored_by, entry.stored_at,
                    entry.access_count,
                ),
            )
        return entry

    def read(self, key: str) -> Optional[MemoryEntry]:
        with self._lock:
            rows = self._query("SELECT * FROM memories WHERE key=?", (key,))
            if not rows:
                return None
            entry = self._row_to_entry(rows[0])
            entry.access_count += 1
            # Best-effort counter: a failed UPDATE is logged, the read stands.
            try:
                self._conn.execute(
                    "UPDATE memories SET access_count=? WHERE key=?",
                    (entry.access_count, key),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                logger.warning("Access count for %r not persisted: %s", key, exc)
            return entry

    def search(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> List[MemoryEntry]:
        if not query:
            return []
        like = _like_pattern(query)
        with self._lock:
            rows = self._query(
                """SELECT * FROM memories
                   WHERE py_lower(key) LIKE ? ESCAPE '\\'
                      OR py_lower(title) LIKE ? ESCAPE '\\'
                      OR py_lower(content) LIKE ? ESCAPE '\\'
                      OR tags_text LIKE ? ESCAPE '\\'
                   ORDER BY stored_at DESC LIMIT ?""",
                (like, like, like, like, limit),
            )
        return [self._row_to_entry(r) for r in rows]

    def list(self, limit: int = DEFAULT_LIST_LIMIT) -> List[MemoryEntry]:
        with self._lock:
            rows = self._query(
                "SELECT * FROM memories ORDER BY stored_at DESC LIMIT ?", (limit,),
            )
        return [self._row_to_entry(r) for r in rows]

    def count(self) -> int:
        with self._lock:
            return self._query("SELECT COUNT(*) AS cnt FROM memories")[0]["cnt"]

    def keys(self, limit: Optional[int] = None) -> List[str]:
        with self._lock:
            rows = self._query(
                "SELECT key FROM memories ORDER BY rowid LIMIT ?",
                (-1 if limit is None else limit,),
            )
        return [r["key"] for r in rows]

    def delete(self, key: str, requesting_agent: Optional[str]) -> DeleteResult:
        with self._lock:
            rows = self._query("SELECT * FROM memories WHERE key=?", (key,))
            if not rows:
                return DeleteResult.NOT_FOUND
            if not may_delete(self._row_to_entry(rows[0]), requesting_agent):
                return DeleteResult.UNAUTHORIZED
            self._execute("DELETE FROM memories WHERE key=?", (key,))
            return DeleteResult.OK

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            totals = self._query(
                "SELECT COUNT(*) AS cnt, COALESCE(SUM(content_length), 0) AS chars "
                "FROM memories"
            )[0]
            contributors = self._query(
                "SELECT stored_by, COUNT(*) AS cnt FROM memories "
                "GROUP BY stored_by ORDER BY cnt DESC, MIN(rowid)"
            )
            agents = self._query("SELECT COUNT(*) AS cnt FROM agents")[0]["cnt"]
        return {
            "totalEntries": totals["cnt"],
            "totalCharacters": totals["chars"],
            "totalAgents": agents,
            "uniqueContributors": len(contributors),
            "topContributors": [
                r["stored_by"] for r in contributors[:TOP_CONTRIBUTORS]
            ],
        }

    # -- Agent registry ----------------------------------------------------

    def register_agent(self, record: AgentRecord) -> AgentRecord:
        with self._lock:
            self._execute(
                """INSERT OR REPLACE INTO agents
                   (agent_username, agent_name, agent_facts_url, mode,
                    registered_at, contributions)
                   VALUES (?,?,?,?,?,?)""",
                (
                    record.username, record.name, record.facts_url,
                    record.mode, record.registered_at, record.contributions,
                ),
            )
        return record

    def deregister_agent(self, username: str) -> bool:
        with self._lock:
            cur = self._execute(
                "DELETE FROM agents WHERE agent_username=?", (username,),
            )
            return cur.rowcount > 0

    def get_agent(self, username: str) -> Optional[AgentRecord]:
        with self._lock:
            rows = self._query(
                "SELECT * FROM agents WHERE agent_username=?", (username,),
            )
        return self._row_to_agent(rows[0]) if rows else None

    def count_agents(self) -> int:
        with self._lock:
            return self._query("SELECT COUNT(*) AS cnt FROM agents")[0]["cnt"]
