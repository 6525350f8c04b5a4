"""
sharedmem — shared keyed memory for many cooperating agents.

Agents store web pages (scraped through an SSRF-guarded, bounded fetcher)
or pasted text under string keys, then read, search, list and delete
them.  One of two interchangeable backends (JSON files or SQLite) is
chosen at startup.
"""

__version__ = "1.0.0"

from sharedmem.types import MemoryEntry, AgentRecord, MAX_CONTENT_CHARS
from sharedmem.store import MemoryStore, DeleteResult, open_store
from sharedmem.config import SharedMemoryConfig, load_config
from sharedmem.service import MemoryService

__all__ = [
    "__version__",
    "MemoryEntry",
    "AgentRecord",
    "MAX_CONTENT_CHARS",
    "MemoryStore",
    "DeleteResult",
    "open_store",
    "SharedMemoryConfig",
    "load_config",
    "MemoryService",
]
