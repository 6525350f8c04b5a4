"""
Shared Memory Data Model

Defines the stored entry and the agent registry record.  Entries are
replaced wholesale on re-write; the only in-place mutation is the
access counter bumped by a read-by-key.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

MAX_CONTENT_CHARS = 50_000
ANONYMOUS = "anonymous"
ADMIN_AGENT = "admin"

# camelCase names used on the wire and by older JSON files
_WIRE_NAMES = {
    "content_length": "contentLength",
    "stored_by": "storedBy",
    "stored_at": "storedAt",
    "access_count": "accessCount",
}
_AGENT_WIRE_NAMES = {
    "facts_url": "factsUrl",
    "registered_at": "registeredAt",
}


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string (millisecond precision)."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def _from_wire(d: Dict[str, Any], names: Dict[str, str]) -> Dict[str, Any]:
    """Map camelCase keys back to field names; snake_case keys win."""
    data = dict(d)
    for snake, camel in names.items():
        if camel in data and snake not in data:
            data[snake] = data[camel]
    return data


# ---------------------------------------------------------------------------
# Memory Entry
# ---------------------------------------------------------------------------

@dataclass
class MemoryEntry:
    """
    One stored item, addressed by its key.

    ``content_length`` is supplied by the writer and is not recomputed:
    scraped entries carry the length of the extracted text, pasted
    entries the length of the caller's string before truncation.
    """

    key: str
    content: str = ""
    url: Optional[str] = None
    title: str = ""
    content_length: int = 0
    tags: List[str] = field(default_factory=list)
    stored_by: str = ANONYMOUS
    stored_at: str = field(default_factory=_now_iso)
    access_count: int = 0

    def __post_init__(self):
        """Enforce the content cap and normalize tags."""
        if len(self.content) > MAX_CONTENT_CHARS:
            self.content = self.content[:MAX_CONTENT_CHARS]
        if not self.title:
            self.title = self.url or self.key
        self.tags = [str(t) for t in (self.tags or [])]
        if self.access_count < 0:
            raise ValueError(f"Invalid access_count: {self.access_count!r}")

    def matches(self, query: str) -> bool:
        """Case-insensitive substring match on key, title, content, tags."""
        q = query.lower()
        # entries loaded from disk may carry non-string fields
        return (
            q in str(self.key).lower()
            or q in str(self.title or "").lower()
            or q in str(self.content or "").lower()
            or any(q in str(t).lower() for t in self.tags)
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (JSON-safe, persisted form)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemoryEntry:
        """Deserialize from dict; accepts camelCase field names."""
        data = _from_wire(d, _WIRE_NAMES)
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_payload(self) -> Dict[str, Any]:
        """Full wire representation (camelCase)."""
        return {
            "key": self.key,
            "title": self.title,
            "url": self.url,
            "content": self.content,
            "contentLength": self.content_length,
            "tags": list(self.tags),
            "storedBy": self.stored_by,
            "storedAt": self.stored_at,
            "accessCount": self.access_count,
        }

    def format_list_item(self) -> Dict[str, Any]:
        """Summary row for the ``list`` action."""
        return {
            "key": self.key,
            "title": self.title,
            "url": self.url,
            "contentLength": self.content_length,
            "storedBy": self.stored_by,
            "storedAt": self.stored_at,
            "accessCount": self.access_count,
        }

    def format_search_hit(self, preview_chars: int = 200) -> Dict[str, Any]:
        """Result row for the ``search`` action."""
        return {
            "key": self.key,
            "title": self.title,
            "preview": (self.content or "")[:preview_chars],
            "storedBy": self.stored_by,
            "storedAt": self.stored_at,
        }


# ---------------------------------------------------------------------------
# Agent Record
# ---------------------------------------------------------------------------

@dataclass
class AgentRecord:
    """Registered agent.  Created on register, removed on deregister."""

    username: str
    name: str = ""
    facts_url: Optional[str] = None
    mode: str = "passive"
    registered_at: str = field(default_factory=_now_iso)
    contributions: int = 0

    def __post_init__(self):
        if not self.name:
            self.name = self.username

    def to_dict(self) -> Dict[str, Any]:
        """Serialize agent record to a plain dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> AgentRecord:
        """Deserialize agent record, filtering to known fields."""
        data = _from_wire(d, _AGENT_WIRE_NAMES)
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in data.items() if k in known})
