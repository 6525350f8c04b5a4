"""
sharedmem MCP Tools — 11 shared-memory tools for MCP integration.

Thin wrappers around MemoryService.dispatch().  Each tool follows the
locked middleware order:

    ① Rate limiter     — charge the call to the agent's read/write budget
    ② Dispatch         — MemoryService (business failures come back as payloads)
    ③ Audit log        — always, including on failure (in finally block)

Tools are coroutines; each call runs in a worker thread, so a scrape
waiting on the network does not hold up other tools.

Tool hierarchy:
    WRITE:    memory_scrape, memory_store, memory_delete
    READ:     memory_get, memory_search, memory_list
    STATUS:   memory_stats, memory_health
    GENERIC:  memory_action — raw {"action": ...} request, any action
    AGENTS:   agent_register, agent_deregister
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from sharedmem.mcp.audit import AuditLogger
from sharedmem.mcp.rate_limiter import RateLimitExceeded, RateLimiter
from sharedmem.service import MemoryService, canonical_action
from sharedmem.types import ANONYMOUS

logger = logging.getLogger(__name__)


def _drop_none(**fields: Any) -> Dict[str, Any]:
    return {k: v for k, v in fields.items() if v is not None}


def _audit_detail(action: str, request: Dict[str, Any]) -> Dict[str, Any]:
    """Tool-specific audit fields; never raw content."""
    if action == "store" and isinstance(request.get("content"), str):
        return AuditLogger.make_content_detail(request["content"])
    if action == "scrape":
        return _drop_none(url=request.get("url"), key=request.get("key"))
    if action in ("get", "delete"):
        return _drop_none(key=request.get("key"))
    if action == "search":
        return {"query_len": len(str(request.get("query") or ""))}
    return {}


def register_memory_tools(
    mcp,
    service: MemoryService,
    *,
    rate_limiter: Optional[RateLimiter] = None,
    audit: Optional[AuditLogger] = None,
) -> None:
    """
    Register all 11 shared-memory MCP tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance.
        service: MemoryService bound to the process-wide store.
        rate_limiter: RateLimiter for throttling (None = unlimited).
        audit: AuditLogger for structured logging.
    """
    if audit is None:
        audit = AuditLogger(backend=service.store.backend_name)

    def _call(tool: str, request: Dict[str, Any]) -> Dict[str, Any]:
        """Run one request through rate limit → dispatch → audit."""
        t0 = time.monotonic()
        rid = audit.new_rid()
        action = canonical_action(request.get("action"))
        agent = str(request.get("agent") or request.get("agentUsername") or ANONYMOUS)
        outcome = "ok"
        detail = _audit_detail(action, request)
        try:
            if rate_limiter:
                rate_limiter.check(action, agent)
            result = service.dispatch(request)
            if not result.get("success"):
                outcome = "failed"
                detail["error"] = result.get("error")
            return result
        except RateLimitExceeded as e:
            outcome = "rate_limited"
            return {
                "success": False,
                "error": str(e),
                "retryAfterMs": e.retry_after_ms,
            }
        except Exception as e:
            outcome = "error"
            logger.exception("%s failed unexpectedly", tool)
            return {"success": False, "error": f"Internal error: {e}"}
        finally:
            audit.log(tool, rid, agent, action, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    async def _offload(tool: str, request: Dict[str, Any]) -> Dict[str, Any]:
        """Run _call in a worker thread so the event loop never waits on I/O."""
        return await asyncio.to_thread(_call, tool, request)

    # =====================================================================
    # WRITE
    # =====================================================================

    @mcp.tool()
    async def memory_scrape(
        url: str,
        key: Optional[str] = None,
        title: Optional[str] = None,
        tags: Optional[List[str]] = None,
        agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Fetch a public web page, extract its text, and store it.

        Private, loopback and link-local targets are refused, on the
        first URL and on every redirect.  Bodies over 1 MiB, more than
        5 redirects, or a hop slower than 15 s fail the call.

        Args:
            url: http(s) URL to scrape.
            key: Storage key. Default: derived from the URL.
            title: Display title. Default: the URL.
            tags: Short labels.
            agent: Your agent name (recorded as storedBy).

        Returns:
            key, title, contentLength, preview (≤500 chars), message.
        """
        return await _offload("memory_scrape", _drop_none(
            action="scrape", url=url, key=key, title=title, tags=tags, agent=agent,
        ))

    @mcp.tool()
    async def memory_store(
        content: str,
        key: Optional[str] = None,
        title: Optional[str] = None,
        tags: Optional[List[str]] = None,
        agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Store pasted text (capped at 50,000 characters).

        Args:
            content: Text to store.
            key: Storage key. Default: text_<epoch ms>.
            title: Display title. Default: the key.
            tags: Short labels.
            agent: Your agent name (recorded as storedBy).

        Returns:
            key, contentLength (before truncation), message.
        """
        return await _offload("memory_store", _drop_none(
            action="store", content=content, key=key, title=title, tags=tags, agent=agent,
        ))

    @mcp.tool()
    async def memory_delete(key: str, agent: str) -> Dict[str, Any]:
        """Delete an entry. Only its author (storedBy) or "admin" may delete.

        Args:
            key: Entry key.
            agent: Your agent name.
        """
        return await _offload("memory_delete", {"action": "delete", "key": key, "agent": agent})

    # =====================================================================
    # READ
    # =====================================================================

    @mcp.tool()
    async def memory_get(key: str, agent: Optional[str] = None) -> Dict[str, Any]:
        """Retrieve an entry by key. Increments its accessCount.

        Args:
            key: Entry key.
            agent: Your agent name (rate-limit accounting only).

        Returns:
            All entry fields with the post-increment accessCount, or
            success=false with up to 20 available keys.
        """
        return await _offload("memory_get", _drop_none(action="get", key=key, agent=agent))

    @mcp.tool()
    async def memory_search(query: str, agent: Optional[str] = None) -> Dict[str, Any]:
        """Case-insensitive substring search over key, title, content and tags.

        Args:
            query: Text to look for.
            agent: Your agent name (rate-limit accounting only).

        Returns:
            query, count, results (≤10; key, title, preview, storedBy, storedAt).
        """
        return await _offload("memory_search", _drop_none(action="search", query=query, agent=agent))

    @mcp.tool()
    async def memory_list(agent: Optional[str] = None) -> Dict[str, Any]:
        """List the 50 most recent entries (no content bodies)."""
        return await _offload("memory_list", _drop_none(action="list", agent=agent))

    # =====================================================================
    # STATUS
    # =====================================================================

    @mcp.tool()
    async def memory_stats() -> Dict[str, Any]:
        """Store totals: entries, characters, agents, contributors."""
        return await _offload("memory_stats", {"action": "stats"})

    @mcp.tool()
    async def memory_health() -> Dict[str, Any]:
        """Liveness check: entry and agent counts, active backend."""
        return await _offload("memory_health", {"action": "health"})

    # =====================================================================
    # GENERIC
    # =====================================================================

    @mcp.tool()
    async def memory_action(
        action: str,
        url: Optional[str] = None,
        key: Optional[str] = None,
        content: Optional[str] = None,
        title: Optional[str] = None,
        tags: Optional[List[str]] = None,
        query: Optional[str] = None,
        agent: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Run any action by name with the flat request shape.

        Actions: scrape|store_url, store|store_text, get|retrieve,
        search, list, stats, delete.
        """
        return await _offload("memory_action", _drop_none(
            action=action, url=url, key=key, content=content, title=title,
            tags=tags, query=query, agent=agent,
        ))

    # =====================================================================
    # AGENTS
    # =====================================================================

    @mcp.tool()
    async def agent_register(
        agent_username: str,
        agent_name: Optional[str] = None,
        agent_facts_url: Optional[str] = None,
        mode: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Register an agent so its scrape contributions are counted."""
        return await _offload("agent_register", _drop_none(
            action="register", agentUsername=agent_username, agentName=agent_name,
            agentFactsUrl=agent_facts_url, mode=mode,
        ))

    @mcp.tool()
    async def agent_deregister(agent_username: str) -> Dict[str, Any]:
        """Remove an agent registration."""
        return await _offload("agent_deregister", {
            "action": "deregister", "agentUsername": agent_username,
        })
