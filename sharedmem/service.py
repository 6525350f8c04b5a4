"""
Shared Memory Service — action dispatch

Maps an action request ({"action": ..., fields...}) onto the store and the
scrape pipeline:

    scrape/store_url   validate → fetch → extract → key → write
    store/store_text   cap → key → write
    get/retrieve       read (bumps accessCount)
    search, list, stats, delete
    register, deregister, health

Every response carries ``success``.  Business failures (missing field,
not found, unauthorized, safety rejection, fetch failure, backend failure)
come back as ``success: false`` payloads; anything else propagates to the
transport layer as an internal fault.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from sharedmem.config import SharedMemoryConfig
from sharedmem.errors import (
    InputError,
    SafetyRejection,
    SharedMemoryError,
)
from sharedmem.extract import extract_text, extract_title
from sharedmem.fetch import BoundedFetcher
from sharedmem.keys import derive_key, text_key
from sharedmem.store import DeleteResult, MemoryStore
from sharedmem.types import ANONYMOUS, AgentRecord, MemoryEntry

logger = logging.getLogger(__name__)

AVAILABLE_ACTIONS = [
    "scrape", "store", "get", "search", "list", "stats", "delete",
]

ACTION_ALIASES = {
    "store_url": "scrape",
    "store_text": "store",
    "retrieve": "get",
}


def canonical_action(action: Any) -> str:
    """Resolve an action alias to its canonical name ("" for non-strings)."""
    if not isinstance(action, str):
        return ""
    name = action.strip().lower()
    return ACTION_ALIASES.get(name, name)


def ok(**fields: Any) -> Dict[str, Any]:
    """Success payload."""
    return {"success": True, **fields}


def fail(error: str, **fields: Any) -> Dict[str, Any]:
    """Business-failure payload."""
    return {"success": False, "error": error, **fields}


def parse_tags(raw: Any) -> List[str]:
    """Accept a list of labels or a comma-separated string."""
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        return [t.strip() for t in raw.split(",") if t.strip()]
    if isinstance(raw, (list, tuple)):
        return [str(t) for t in raw]
    raise InputError("tags must be a list of strings or a comma-separated string")


def _require(request: Dict[str, Any], name: str) -> Any:
    value = request.get(name)
    if value is None or value == "":
        raise InputError(f"{name} required")
    return value


def _optional_str(request: Dict[str, Any], name: str) -> Optional[str]:
    """Optional text field; empty means absent, non-strings are refused."""
    value = request.get(name)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise InputError(f"{name} must be a string")
    return value


class MemoryService:
    """
    Action dispatcher over one MemoryStore.

    The store is constructed once at startup and handed in; the service
    never chooses or switches backends.
    """

    def __init__(
        self,
        store: MemoryStore,
        config: Optional[SharedMemoryConfig] = None,
        fetcher: Optional[BoundedFetcher] = None,
    ):
        self.store = store
        self.config = config or SharedMemoryConfig()
        self.fetcher = fetcher or BoundedFetcher(self.config.fetch)
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            "scrape": self.scrape,
            "store": self.store_text,
            "get": self.get,
            "search": self.search,
            "list": self.list_entries,
            "stats": self.stats,
            "delete": self.delete,
            "register": self.register_agent,
            "deregister": self.deregister_agent,
            "health": self.health,
        }

    # -- Dispatch ----------------------------------------------------------

    def dispatch(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """
        Route one request by its ``action`` field.

        Raises only for internal faults; every business failure is a payload.
        """
        if not isinstance(request, dict):
            return fail("request body must be an object")
        action = canonical_action(request.get("action"))
        handler = self._handlers.get(action)
        if handler is None:
            return fail(
                f"Unknown action: {request.get('action')}",
                availableActions=list(AVAILABLE_ACTIONS),
            )
        try:
            return handler(request)
        except (SafetyRejection, InputError) as e:
            logger.info("Rejected %s request: %s", action, e)
            return fail(str(e))
        except SharedMemoryError as e:
            logger.warning("%s failed: %s", action, e)
            return fail(str(e))

    # -- Writes ------------------------------------------------------------

    def scrape(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Fetch a URL, extract text, store it."""
        url = _require(request, "url")
        if not isinstance(url, str):
            raise InputError("url must be a string")
        agent = _optional_str(request, "agent")
        title = _optional_str(request, "title")
        key = _optional_str(request, "key")
        limits = self.config.limits

        logger.info("Scraping: %s", url)
        fetched = self.fetcher.fetch(url)
        text = extract_text(fetched.text, max_chars=limits.max_content_chars)

        if not title and self.config.scrape.title_from_page:
            title = extract_title(fetched.text)
        title = title or url
        key = key or derive_key(url)

        entry = MemoryEntry(
            key=key,
            url=url,
            title=title,
            content=text,
            content_length=len(text),
            tags=parse_tags(request.get("tags")),
            stored_by=agent or ANONYMOUS,
        )
        self.store.write(entry)

        if agent:
            # Best-effort: a failed counter bump never fails the scrape.
            try:
                self.store.record_contribution(agent)
            except SharedMemoryError as e:
                logger.warning("Contribution count for %r not recorded: %s", agent, e)

        n = limits.scrape_preview_chars
        preview = text[:n] + ("..." if len(text) > n else "")
        return ok(
            key=key,
            title=title,
            contentLength=len(text),
            preview=preview,
            message=f'Stored {len(text)} chars as "{key}"',
        )

    def store_text(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Store pasted text."""
        content = _require(request, "content")
        if not isinstance(content, str):
            raise InputError("content must be a string")
        title = _optional_str(request, "title")
        agent = _optional_str(request, "agent")
        key = _optional_str(request, "key") or text_key()
        entry = MemoryEntry(
            key=key,
            url=None,
            title=title or key,
            content=content[: self.config.limits.max_content_chars],
            content_length=len(content),
            tags=parse_tags(request.get("tags")),
            stored_by=agent or ANONYMOUS,
        )
        self.store.write(entry)
        return ok(
            key=key,
            contentLength=len(content),
            message=f'Stored {len(content)} chars as "{key}"',
        )

    def delete(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Delete an entry (owner or admin only)."""
        key = str(_require(request, "key"))
        agent = str(_require(request, "agent"))
        result = self.store.delete(key, agent)
        if result is DeleteResult.NOT_FOUND:
            return fail("Key not found")
        if result is DeleteResult.UNAUTHORIZED:
            logger.info("Delete of %r by %r refused", key, agent)
            return fail("Can only delete your own entries")
        return ok(message=f'Deleted "{key}"')

    # -- Reads -------------------------------------------------------------

    def get(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Read one entry by key."""
        key = str(_require(request, "key"))
        entry = self.store.read(key)
        if entry is None:
            return fail(
                f'Key "{key}" not found',
                available=self.store.keys(self.config.limits.available_keys_hint),
            )
        return ok(**entry.to_payload())

    def search(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Substring search over key, title, content and tags."""
        query = str(request.get("query") or "").lower()
        if not query:
            return fail("query required")
        limits = self.config.limits
        hits = self.store.search(query, limit=limits.search_limit)
        results = [h.format_search_hit(limits.search_preview_chars) for h in hits]
        return ok(query=query, count=len(results), results=results)

    def list_entries(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Newest entries first, plus the total count."""
        items = self.store.list(limit=self.config.limits.list_limit)
        return ok(
            count=self.store.count(),
            items=[e.format_list_item() for e in items],
        )

    def stats(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Aggregate counters."""
        return ok(stats=self.store.stats())

    def health(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Liveness summary."""
        return ok(
            status="ok",
            entries=self.store.count(),
            agents=self.store.count_agents(),
            backend=self.store.backend_name,
        )

    # -- Agent registry ----------------------------------------------------

    def register_agent(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Register (or re-register) an agent."""
        username = _require(request, "agentUsername")
        if not isinstance(username, str):
            raise InputError("agentUsername must be a string")
        name = _optional_str(request, "agentName") or username
        self.store.register_agent(AgentRecord(
            username=username,
            name=name,
            facts_url=_optional_str(request, "agentFactsUrl"),
            mode=_optional_str(request, "mode") or "passive",
        ))
        logger.info("Agent registered: %s", username)
        return ok(message=f"Welcome {name}!")

    def deregister_agent(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Remove an agent; succeeds whether or not it was registered."""
        username = _optional_str(request, "agentUsername")
        if username and self.store.deregister_agent(username):
            logger.info("Agent deregistered: %s", username)
        return ok()
