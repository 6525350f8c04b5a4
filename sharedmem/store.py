"""
Memory Store — backend-agnostic contract

Two interchangeable backends implement the same CRUD/search/stat and
ownership contract:

    file    FileMemoryStore    — whole-state JSON files, rewritten per mutation
    sqlite  SqliteMemoryStore  — one table, server-side search and counters

Exactly one backend is active per process; open_store() picks it once at
startup from StoreConfig.backend.  Call sites only see MemoryStore.

Known, deliberate differences:
    - search order: file = insertion scan, sqlite = most-recent-first
    - record_contribution: file increments, sqlite is a no-op
"""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional

from sharedmem.config import StoreConfig
from sharedmem.types import ADMIN_AGENT, AgentRecord, MemoryEntry

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 10
DEFAULT_LIST_LIMIT = 50
TOP_CONTRIBUTORS = 10


class DeleteResult(enum.Enum):
    """Outcome of MemoryStore.delete()."""
    OK = "ok"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"


def may_delete(entry: MemoryEntry, requesting_agent: Optional[str]) -> bool:
    """Owner-or-admin rule shared by both backends."""
    return requesting_agent == entry.stored_by or requesting_agent == ADMIN_AGENT


def contributor_stats(stored_by: Iterable[str]) -> Dict[str, Any]:
    """Distinct-contributor fields of stats(), most entries first."""
    counts = Counter(stored_by)
    ranked = [name for name, _ in counts.most_common(TOP_CONTRIBUTORS)]
    return {
        "uniqueContributors": len(counts),
        "topContributors": ranked,
    }


class MemoryStore(ABC):
    """
    Abstract shared-memory store.

    Backend failures surface as sharedmem.errors.BackendFailure.
    Not-found and unauthorized are return values, not exceptions.
    """

    backend_name: str = ""

    # -- Entries -----------------------------------------------------------

    @abstractmethod
    def write(self, entry: MemoryEntry) -> MemoryEntry:
        """Insert or fully replace the entry stored under entry.key."""

    @abstractmethod
    def read(self, key: str) -> Optional[MemoryEntry]:
        """
        Read by key and bump access_count.

        Returns the post-increment entry, or None if absent.  Persisting
        the bump is best-effort: a failure is logged, not raised.
        """

    @abstractmethod
    def search(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> List[MemoryEntry]:
        """Case-insensitive substring match on key, title, content, tags."""

    @abstractmethod
    def list(self, limit: int = DEFAULT_LIST_LIMIT) -> List[MemoryEntry]:
        """Most-recent-first entries."""

    @abstractmethod
    def count(self) -> int:
        """Total number of entries."""

    @abstractmethod
    def keys(self, limit: Optional[int] = None) -> List[str]:
        """Stored keys in insertion order."""

    @abstractmethod
    def delete(self, key: str, requesting_agent: Optional[str]) -> DeleteResult:
        """Delete if requesting_agent owns the entry or is the admin."""

    @abstractmethod
    def stats(self) -> Dict[str, Any]:
        """
        Aggregate counters, identical keys on every backend:
        totalEntries, totalCharacters, totalAgents,
        uniqueContributors, topContributors.
        """

    # -- Agent registry ----------------------------------------------------

    @abstractmethod
    def register_agent(self, record: AgentRecord) -> AgentRecord:
        """Insert or replace an agent record."""

    @abstractmethod
    def deregister_agent(self, username: str) -> bool:
        """Remove an agent. Returns True if it existed."""

    @abstractmethod
    def get_agent(self, username: str) -> Optional[AgentRecord]:
        """Look up one agent."""

    @abstractmethod
    def count_agents(self) -> int:
        """Number of registered agents."""

    def record_contribution(self, username: str) -> bool:
        """Bump an agent's contribution counter. Returns True if counted."""
        return False

    def close(self) -> None:
        """Release backend resources."""


def open_store(config: Optional[StoreConfig] = None) -> MemoryStore:
    """Construct the configured backend.  Called once at process start."""
    config = config or StoreConfig()
    if config.backend == "file":
        from sharedmem.file_store import FileMemoryStore
        return FileMemoryStore(config.storage_dir)
    if config.backend == "sqlite":
        from sharedmem.sqlite_store import SqliteMemoryStore
        return SqliteMemoryStore(config.db_path, wal_mode=config.wal_mode)
    raise ValueError(f"Unknown store backend: {config.backend!r}")
