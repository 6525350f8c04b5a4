"""
File Memory Store — durable JSON backend

Layout (under storage_dir):
    shared-memory.json   entries by key
    agents.json          agents by username

The whole state lives in memory; every mutation rewrites the affected
file through temp-file + fsync + atomic replace, so a file is always
either the old or the new state.  Several processes sharing one
directory race on the final replace and the last writer wins.

Thread safety: one lock serializes every read-modify-persist cycle.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from sharedmem.errors import BackendFailure
from sharedmem.store import (
    DEFAULT_LIST_LIMIT,
    DEFAULT_SEARCH_LIMIT,
    DeleteResult,
    MemoryStore,
    contributor_stats,
    may_delete,
)
from sharedmem.types import AgentRecord, MemoryEntry

logger = logging.getLogger(__name__)

MEMORY_FILENAME = "shared-memory.json"
AGENTS_FILENAME = "agents.json"


def load_json(path: Path, default: Any) -> Any:
    """Read a JSON file; return default if missing or unreadable."""
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as exc:
        logger.warning("Failed to load %s: %s — starting empty", path, exc)
        return default


def atomic_write_json(path: Path, data: Any) -> None:
    """Write data as JSON via temp file + fsync + replace.

    Raises BackendFailure on any OS error; the temp file is removed.
    """
    content = json.dumps(data, indent=2, ensure_ascii=False)
    fd = -1
    tmp_path = ""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(path.parent), prefix=f".{path.stem}_", suffix=".tmp",
        )
        os.write(fd, content.encode("utf-8"))
        os.fsync(fd)
        os.close(fd)
        fd = -1
        Path(tmp_path).replace(path)
    except OSError as exc:
        if fd >= 0:
            os.close(fd)
        if tmp_path:
            Path(tmp_path).unlink(missing_ok=True)
        raise BackendFailure(f"Write to {path} failed: {exc}") from exc


class FileMemoryStore(MemoryStore):
    """JSON-file backed store.  One instance owns the state for a directory."""

    backend_name = "file"

    def __init__(self, storage_dir: str = "memory"):
        self._dir = Path(storage_dir)
        self._memory_path = self._dir / MEMORY_FILENAME
        self._agents_path = self._dir / AGENTS_FILENAME
        self._lock = threading.Lock()
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackendFailure(f"Cannot create storage dir {self._dir}: {exc}") from exc

        raw_entries = load_json(self._memory_path, {})
        raw_agents = load_json(self._agents_path, {})
        self._entries: Dict[str, MemoryEntry] = {}
        self._agents: Dict[str, AgentRecord] = {}
        for key, d in (raw_entries if isinstance(raw_entries, dict) else {}).items():
            try:
                self._entries[key] = MemoryEntry.from_dict({**d, "key": key})
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable entry %r: %s", key, exc)
        for name, d in (raw_agents if isinstance(raw_agents, dict) else {}).items():
            try:
                self._agents[name] = AgentRecord.from_dict({**d, "username": name})
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable agent %r: %s", name, exc)
        logger.info(
            "FileMemoryStore initialized: %s (%d entries, %d agents)",
            self._dir, len(self._entries), len(self._agents),
        )

    # -- Persistence (call within lock) ------------------------------------

    def _persist_memory(self) -> None:
        atomic_write_json(
            self._memory_path,
            {k: e.to_dict() for k, e in self._entries.items()},
        )

    def _persist_agents(self) -> None:
        atomic_write_json(
            self._agents_path,
            {k: a.to_dict() for k, a in self._agents.items()},
        )

    # -- Entries -----------------------------------------------------------

    def write(self, entry: MemoryEntry) -> MemoryEntry:
        with self._lock:
            previous = self._entries.get(entry.key)
            self._entries[entry.key] = entry
            try:
                self._persist_memory()
            except BackendFailure:
                # Keep memory consistent with disk
                if previous is None:
                    del self._entries[entry.key]
                else:
                    self._entries[entry.key] = previous
                raise
        return entry

    def read(self, key: str) -> Optional[MemoryEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            entry.access_count += 1
            # Best-effort: the counter is advisory, a failed persist
            # must not fail the read.
            try:
                self._persist_memory()
            except BackendFailure as exc:
                logger.warning("Access count for %r not persisted: %s", key, exc)
            return MemoryEntry.from_dict(entry.to_dict())

    def search(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> List[MemoryEntry]:
        if not query:
            return []
        with self._lock:
            hits = []
            for entry in self._entries.values():
                if entry.matches(query):
                    hits.append(entry)
                    if len(hits) >= limit:
                        break
            return hits

    def list(self, limit: int = DEFAULT_LIST_LIMIT) -> List[MemoryEntry]:
        with self._lock:
            ordered = sorted(
                self._entries.values(), key=lambda e: e.stored_at, reverse=True,
            )
            return ordered[:limit]

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self, limit: Optional[int] = None) -> List[str]:
        with self._lock:
            names = list(self._entries.keys())
        return names if limit is None else names[:limit]

    def delete(self, key: str, requesting_agent: Optional[str]) -> DeleteResult:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return DeleteResult.NOT_FOUND
            if not may_delete(entry, requesting_agent):
                return DeleteResult.UNAUTHORIZED
            del self._entries[key]
            try:
                self._persist_memory()
            except BackendFailure:
                self._entries[key] = entry
                raise
            return DeleteResult.OK

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            entries = list(self._entries.values())
            total_agents = len(self._agents)
        return {
            "totalEntries": len(entries),
            "totalCharacters": sum(e.content_length or 0 for e in entries),
            "totalAgents": total_agents,
            **contributor_stats(e.stored_by for e in entries),
        }

    # -- Agent registry ----------------------------------------------------

    def register_agent(self, record: AgentRecord) -> AgentRecord:
        with self._lock:
            self._agents[record.username] = record
            self._persist_agents()
        return record

    def deregister_agent(self, username: str) -> bool:
        with self._lock:
            if username not in self._agents:
                return False
            del self._agents[username]
            self._persist_agents()
            return True

    def get_agent(self, username: str) -> Optional[AgentRecord]:
        with self._lock:
            rec = self._agents.get(username)
            return AgentRecord.from_dict(rec.to_dict()) if rec else None

    def count_agents(self) -> int:
        with self._lock:
            return len(self._agents)

    def record_contribution(self, username: str) -> bool:
        with self._lock:
            rec = self._agents.get(username)
            if rec is None:
                return False
            rec.contributions += 1
            self._persist_agents()
            return True
