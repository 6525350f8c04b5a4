"""
sharedmem MCP Server — shared keyed memory for many agents

Standalone MCP server exposing sharedmem actions via the Model Context
Protocol.  Architecture: thin MCP layer delegating to MemoryService.
Zero business logic in this module.

The storage backend is chosen ONCE here, at startup:
    --backend file     JSON files under --storage-dir (default)
    --backend sqlite   SQLite database at --db

Middleware:
    RateLimiter  — per-agent token buckets
    AuditLogger  — structured JSONL audit trail

Usage:
    python -m sharedmem.mcp.server --backend file --storage-dir ./memory
    python -m sharedmem.mcp.server --backend sqlite --db ./memory/shared.db
    python -m sharedmem.mcp.server --config sharedmem.json --audit-log audit.jsonl

Precedence (invariant):
    CLI --flag  >  SHAREDMEM_* env var  >  --config file  >  compiled default
"""

from __future__ import annotations

import argparse
import logging
import os

from sharedmem.config import SharedMemoryConfig, load_config

logger = logging.getLogger(__name__)

# Sent to every MCP client at initialization.
_MCP_INSTRUCTIONS = (
    "Shared keyed memory for many agents (11 tools).\n"
    "\n"
    "STORE:   memory_scrape saves a public web page as text;\n"
    "         memory_store saves pasted text.\n"
    "FIND:    memory_search (substring, ≤10 hits), memory_list (newest 50).\n"
    "READ:    memory_get by key (increments accessCount).\n"
    "DELETE:  memory_delete — only the author or 'admin' may delete.\n"
    "\n"
    "Rules:\n"
    "- Always pass your agent name so entries are attributed to you\n"
    "- Content is capped at 50,000 characters\n"
    "- Private-network and localhost URLs are refused\n"
    "- Rate limits apply per agent: 20 writes/min, 120 reads/min;\n"
    "  writes are also capped across all agents\n"
)


def _env_int(name: str, default: int) -> int:
    """Integer env var, or default when unset or not a number."""
    val = os.environ.get(name)
    if val is not None:
        try:
            return int(val)
        except ValueError:
            pass
    return default


def _env_str(name: str, *fallbacks: str):
    """First non-empty value among the named env vars, else None."""
    for n in (name, *fallbacks):
        v = os.environ.get(n)
        if v:
            return v
    return None


def add_store_arguments(p: argparse.ArgumentParser) -> None:
    """Backend selection flags shared by the server and the CLI."""
    g = p.add_argument_group("storage")
    g.add_argument(
        "--config",
        default=os.environ.get("SHAREDMEM_CONFIG"),
        help="JSON config file (default: $SHAREDMEM_CONFIG, else compiled defaults)",
    )
    g.add_argument(
        "--backend",
        choices=["file", "sqlite"],
        default=_env_str("SHAREDMEM_BACKEND"),
        help="Storage backend (default: file or $SHAREDMEM_BACKEND)",
    )
    g.add_argument(
        "--storage-dir",
        default=_env_str("SHAREDMEM_STORAGE_DIR", "STORAGE_DIR"),
        help="File backend directory (default: ./memory, $SHAREDMEM_STORAGE_DIR or $STORAGE_DIR)",
    )
    g.add_argument(
        "--db",
        default=_env_str("SHAREDMEM_DB"),
        help="SQLite backend path (default: memory/shared-memory.db or $SHAREDMEM_DB)",
    )


def resolve_config(args: argparse.Namespace) -> SharedMemoryConfig:
    """Merge --config file with CLI/env overrides."""
    config = load_config(getattr(args, "config", None))
    if getattr(args, "backend", None):
        config.store.backend = args.backend
    if getattr(args, "storage_dir", None):
        config.store.storage_dir = args.storage_dir
    if getattr(args, "db", None):
        config.store.db_path = args.db
    return config


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the sharedmem MCP server."""
    p = argparse.ArgumentParser(
        prog="sharedmem-mcp",
        description="sharedmem MCP Server — shared keyed memory for agents",
    )
    add_store_arguments(p)
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    r = p.add_argument_group("rate limiting")
    r.add_argument(
        "--rate-limit",
        action="store_true",
        dest="rate_limit",
        default=True,
        help="Enable rate limiting (default: enabled)",
    )
    r.add_argument(
        "--no-rate-limit",
        action="store_false",
        dest="rate_limit",
        help="Disable rate limiting",
    )
    r.add_argument(
        "--writes-per-minute",
        type=int,
        default=_env_int("SHAREDMEM_WRITES_PER_MINUTE", 20),
        help="Write operations cap per agent per minute (default: 20)",
    )
    r.add_argument(
        "--reads-per-minute",
        type=int,
        default=_env_int("SHAREDMEM_READS_PER_MINUTE", 120),
        help="Read operations cap per agent per minute (default: 120)",
    )
    r.add_argument(
        "--global-writes-per-minute",
        type=int,
        default=_env_int("SHAREDMEM_GLOBAL_WRITES_PER_MINUTE", 200),
        help="Write operations cap across all agents per minute (default: 200)",
    )
    r.add_argument(
        "--burst-factor",
        type=float,
        default=2.0,
        help="Burst multiplier for rate limiter (default: 2.0)",
    )

    a = p.add_argument_group("audit")
    a.add_argument(
        "--audit-log",
        default=os.environ.get("SHAREDMEM_AUDIT_LOG"),
        help="Audit log file path (default: stderr)",
    )
    return p


def create_server(args=None):
    """
    Create and configure the FastMCP server with shared-memory tools.

    Args:
        args: Namespace from build_parser(); parsed from sys.argv when None.

    Returns:
        (mcp_server, service) tuple.
    """
    from mcp.server.fastmcp import FastMCP

    from sharedmem.config import ValidationError
    from sharedmem.mcp.audit import AuditLogger
    from sharedmem.mcp.rate_limiter import RateLimiter
    from sharedmem.mcp.tools import register_memory_tools
    from sharedmem.service import MemoryService
    from sharedmem.store import open_store

    if args is None:
        args = build_parser().parse_args()

    config = resolve_config(args)
    errors = config.validate()
    if errors:
        raise ValidationError(f"Config validation failed: {'; '.join(errors)}")

    store = open_store(config.store)
    service = MemoryService(store, config)

    rate_limiter = None
    if args.rate_limit:
        rate_limiter = RateLimiter(
            writes_per_minute=args.writes_per_minute,
            reads_per_minute=args.reads_per_minute,
            burst_factor=args.burst_factor,
            global_writes_per_minute=args.global_writes_per_minute,
        )

    audit_output = None
    if args.audit_log:
        audit_output = open(args.audit_log, "a", encoding="utf-8")
    audit = AuditLogger(output=audit_output, backend=store.backend_name)

    mcp = FastMCP(
        name="sharedmem",
        instructions=_MCP_INSTRUCTIONS,
    )
    register_memory_tools(mcp, service, rate_limiter=rate_limiter, audit=audit)

    logger.info(
        "sharedmem MCP server ready: backend=%s, entries=%d, agents=%d, rate_limit=%s",
        store.backend_name, store.count(), store.count_agents(),
        "on" if rate_limiter else "off",
    )
    return mcp, service


def main():
    """Entry point for the sharedmem-mcp script: serve over stdio."""
    parser = build_parser()
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    mcp, _service = create_server(args)
    mcp.run()


if __name__ == "__main__":
    main()
