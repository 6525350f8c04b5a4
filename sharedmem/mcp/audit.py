"""
Audit trail for MCP tool calls, one JSON object per line.

Each record names the tool, the canonical action, the calling agent, the
active backend, the outcome (ok, failed, rate_limited, error) and the
latency.  Content never appears in full: store calls carry its size, a
SHA-256 digest and a short single-line preview.

Writing a record must not break the call it describes, so log() reports
its own failures through the module logger and returns.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sys
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

logger = logging.getLogger(__name__)

AUDIT_SCHEMA_VERSION = 1
PREVIEW_MAX_CHARS = 120


def _utc_stamp() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


class AuditLogger:
    """Appends audit records to a text stream (stderr by default)."""

    def __init__(self, output: Optional[TextIO] = None, backend: str = ""):
        self._out = output if output is not None else sys.stderr
        self._backend = backend
        self._lock = threading.Lock()

    @staticmethod
    def new_rid() -> str:
        """Fresh request id."""
        return uuid.uuid4().hex

    def log(
        self,
        tool: str,
        rid: str,
        agent: str,
        action: str,
        outcome: str,
        detail: Optional[Dict[str, Any]] = None,
        latency_ms: float = 0.0,
    ) -> None:
        """
        Append one record.

        Args:
            tool: MCP tool name, e.g. "memory_scrape".
            rid: Request id from new_rid().
            agent: Calling agent ("anonymous" when none was given).
            action: Canonical action name.
            outcome: ok | failed | rate_limited | error.
            detail: Extra fields stored under "d"; omitted when empty.
            latency_ms: Time spent in the tool.
        """
        record: Dict[str, Any] = {
            "v": AUDIT_SCHEMA_VERSION,
            "ts": _utc_stamp(),
            "rid": rid,
            "tool": tool,
            "action": action,
            "agent": agent,
            "backend": self._backend,
            "outcome": outcome,
        }
        if detail:
            record["d"] = detail
        record["ms"] = round(latency_ms, 1)
        try:
            line = json.dumps(record, ensure_ascii=False, separators=(",", ":")) + "\n"
            with self._lock:
                self._out.write(line)
                self._out.flush()
        except (TypeError, ValueError, OSError) as e:
            logger.debug("Audit record for %s dropped: %s", rid, e)

    @staticmethod
    def make_content_detail(content: str) -> Dict[str, Any]:
        """Size, digest and a one-line preview of stored text."""
        raw = content.encode("utf-8")
        flat = content[:PREVIEW_MAX_CHARS].replace("\r", "").replace("\n", " ")
        if len(content) > PREVIEW_MAX_CHARS:
            flat = flat.rstrip() + "…"
        return {
            "bytes": len(raw),
            "hash": hashlib.sha256(raw).hexdigest(),
            "preview": flat,
        }
