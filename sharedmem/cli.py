"""
sharedmem CLI — operator commands over the shared memory store

Commands:
    sharedmem serve                                  — start MCP server (foreground)
    sharedmem scrape URL [--key K] [--title T]       — fetch + extract + store
    sharedmem store  TEXT|- [--key K] [--title T]    — store text ("-" reads stdin)
    sharedmem get    KEY                             — read one entry
    sharedmem search QUERY                           — substring search
    sharedmem list                                   — newest entries
    sharedmem stats                                  — store totals
    sharedmem delete KEY --agent A                   — delete (owner or admin)

Every data command prints the action payload as JSON on stdout.

Environment variables:
    SHAREDMEM_BACKEND       file|sqlite (default: file)
    SHAREDMEM_STORAGE_DIR   File backend directory (also: STORAGE_DIR)
    SHAREDMEM_DB            SQLite database path
    SHAREDMEM_CONFIG        JSON config file

Precedence (invariant):
    CLI --flag  >  SHAREDMEM_* env var  >  --config file  >  compiled default

Exit codes:
    0  Success
    1  Business failure (payload has "success": false, bad config)
    2  Internal failure (unexpected exception, I/O error)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _env_str(name: str, *fallbacks: str) -> Optional[str]:
    """First non-empty value among the named env vars, else None."""
    for n in (name, *fallbacks):
        v = os.environ.get(n)
        if v:
            return v
    return None


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _store_namespace(args: argparse.Namespace) -> argparse.Namespace:
    """Storage flags with env fallback applied (CLI > env)."""
    return argparse.Namespace(
        config=getattr(args, "config", None) or _env_str("SHAREDMEM_CONFIG"),
        backend=getattr(args, "backend", None) or _env_str("SHAREDMEM_BACKEND"),
        storage_dir=(getattr(args, "storage_dir", None)
                     or _env_str("SHAREDMEM_STORAGE_DIR", "STORAGE_DIR")),
        db=getattr(args, "db", None) or _env_str("SHAREDMEM_DB"),
    )


def _open_service(args: argparse.Namespace):
    """Resolve config, open the store once, wrap it in a MemoryService."""
    from sharedmem.config import ValidationError
    from sharedmem.mcp.server import resolve_config
    from sharedmem.service import MemoryService
    from sharedmem.store import open_store

    config = resolve_config(_store_namespace(args))
    errors = config.validate()
    if errors:
        raise ValidationError(f"Config validation failed: {'; '.join(errors)}")
    return MemoryService(open_store(config.store), config)


def _emit(payload: Dict[str, Any]) -> None:
    """Print a payload as JSON and exit 1 if it reports failure."""
    print(json.dumps(payload, indent=2, ensure_ascii=False))
    if not payload.get("success"):
        sys.exit(1)


def _run(args: argparse.Namespace, request: Dict[str, Any]) -> None:
    """Dispatch one request against a freshly opened store."""
    service = _open_service(args)
    try:
        payload = service.dispatch(request)
    finally:
        service.store.close()
    _emit(payload)


def _write_fields(args: argparse.Namespace) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    for name in ("key", "title", "tags", "agent"):
        value = getattr(args, name, None)
        if value:
            fields[name] = value
    return fields


# ===========================================================================
# Commands
# ===========================================================================


def cmd_scrape(args: argparse.Namespace) -> None:
    """Fetch a URL and store its text."""
    _run(args, {"action": "scrape", "url": args.url, **_write_fields(args)})


def cmd_store(args: argparse.Namespace) -> None:
    """Store text from the argument, or stdin when TEXT is '-'."""
    content = sys.stdin.read() if args.text == "-" else args.text
    _run(args, {"action": "store", "content": content, **_write_fields(args)})


def cmd_get(args: argparse.Namespace) -> None:
    _run(args, {"action": "get", "key": args.key})


def cmd_search(args: argparse.Namespace) -> None:
    _run(args, {"action": "search", "query": args.query})


def cmd_list(args: argparse.Namespace) -> None:
    _run(args, {"action": "list"})


def cmd_stats(args: argparse.Namespace) -> None:
    _run(args, {"action": "stats"})


def cmd_delete(args: argparse.Namespace) -> None:
    _run(args, {"action": "delete", "key": args.key, "agent": args.agent})


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the sharedmem MCP server in foreground."""
    from sharedmem.mcp.server import build_parser as mcp_parser
    from sharedmem.mcp.server import create_server

    server_args = mcp_parser().parse_args([])
    for name, value in vars(_store_namespace(args)).items():
        setattr(server_args, name, value)
    if getattr(args, "no_rate_limit", False):
        server_args.rate_limit = False
    if getattr(args, "audit_log", None):
        server_args.audit_log = args.audit_log

    mcp, service = create_server(server_args)
    print(
        f"sharedmem MCP server (backend={service.store.backend_name})",
        file=sys.stderr,
    )
    print("Press Ctrl+C to stop.", file=sys.stderr)
    mcp.run()


# ===========================================================================
# Entry point
# ===========================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the sharedmem argument parser."""
    # SUPPRESS defaults keep subparser defaults from clobbering values
    # given before the subcommand (argparse parents quirk).
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--backend", choices=["file", "sqlite"], default=argparse.SUPPRESS,
        help="Storage backend (default: $SHAREDMEM_BACKEND or file)",
    )
    _common.add_argument(
        "--storage-dir", default=argparse.SUPPRESS,
        help="File backend directory (default: $SHAREDMEM_STORAGE_DIR or ./memory)",
    )
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help="SQLite database path (default: $SHAREDMEM_DB or memory/shared-memory.db)",
    )
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="JSON config file (default: $SHAREDMEM_CONFIG)",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="sharedmem",
        description="sharedmem — shared keyed memory for agents",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    def _write_options(p: argparse.ArgumentParser) -> None:
        p.add_argument("--key", default=None, help="Storage key")
        p.add_argument("--title", default=None, help="Display title")
        p.add_argument("--tags", default=None, help="Comma-separated tags")
        p.add_argument("--agent", default=None, help="Agent name recorded as storedBy")

    p_serve = sub.add_parser("serve", parents=[_common], help="Start MCP server")
    p_serve.add_argument(
        "--no-rate-limit", action="store_true", help="Disable rate limiting",
    )
    p_serve.add_argument("--audit-log", default=None, help="Audit log file path")
    p_serve.set_defaults(func=cmd_serve)

    p_scrape = sub.add_parser("scrape", parents=[_common], help="Scrape a URL into memory")
    p_scrape.add_argument("url", help="http(s) URL")
    _write_options(p_scrape)
    p_scrape.set_defaults(func=cmd_scrape)

    p_store = sub.add_parser("store", parents=[_common], help="Store text")
    p_store.add_argument("text", help="Text to store, or '-' for stdin")
    _write_options(p_store)
    p_store.set_defaults(func=cmd_store)

    p_get = sub.add_parser("get", parents=[_common], help="Read an entry")
    p_get.add_argument("key", help="Entry key")
    p_get.set_defaults(func=cmd_get)

    p_search = sub.add_parser("search", parents=[_common], help="Search entries")
    p_search.add_argument("query", help="Substring to look for")
    p_search.set_defaults(func=cmd_search)

    p_list = sub.add_parser("list", parents=[_common], help="List newest entries")
    p_list.set_defaults(func=cmd_list)

    p_stats = sub.add_parser("stats", parents=[_common], help="Store statistics")
    p_stats.set_defaults(func=cmd_stats)

    p_delete = sub.add_parser("delete", parents=[_common], help="Delete an entry")
    p_delete.add_argument("key", help="Entry key")
    p_delete.add_argument("--agent", required=True, help="Requesting agent")
    p_delete.set_defaults(func=cmd_delete)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point: sharedmem <command> [args]."""
    from sharedmem.config import ValidationError

    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if getattr(args, "verbose", False) else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except ValidationError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)
    except BrokenPipeError:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        print(f"Internal error: {e}", file=sys.stderr)
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
