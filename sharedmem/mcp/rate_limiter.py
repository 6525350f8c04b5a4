"""
Per-agent rate limiting for the MCP tools.

Keeps one runaway agent from flooding the shared store or using scrape
as a fetch amplifier.  Each (agent, kind) pair owns a token bucket that
refills continuously; callers that give no agent name all share the
"anonymous" buckets.

Action kinds:
    write   scrape, store, delete, register, deregister
    read    get, search, list
    exempt  stats, health, and anything unrecognized

Tools run in worker threads, so every check holds the limiter lock.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Tuple

WRITE_ACTIONS: FrozenSet[str] = frozenset({
    "scrape", "store", "delete", "register", "deregister",
})
READ_ACTIONS: FrozenSet[str] = frozenset({"get", "search", "list"})
EXEMPT_ACTIONS: FrozenSet[str] = frozenset({"stats", "health"})

_NO_REFILL_WAIT_MS = 60_000


def classify_action(action: str) -> str:
    """'write', 'read' or 'exempt' for a canonical action name."""
    if action in WRITE_ACTIONS:
        return "write"
    if action in READ_ACTIONS:
        return "read"
    return "exempt"


class RateLimitExceeded(Exception):
    """An agent spent its budget; retry_after_ms says when one token is back."""

    def __init__(self, retry_after_ms: int, message: str):
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


@dataclass
class _Bucket:
    capacity: float
    tokens: float
    refill_rate: float  # tokens per second
    last_refill: float = field(default_factory=time.monotonic)

    def refill(self) -> None:
        now = time.monotonic()
        if now > self.last_refill:
            gained = (now - self.last_refill) * self.refill_rate
            self.tokens = min(self.capacity, self.tokens + gained)
            self.last_refill = now

    def try_consume(self) -> int:
        """Take one token.  0 on success, else milliseconds until one exists."""
        self.refill()
        if self.tokens >= 1:
            self.tokens -= 1
            return 0
        if self.refill_rate <= 0:
            return _NO_REFILL_WAIT_MS
        return int((1 - self.tokens) / self.refill_rate * 1000)


class RateLimiter:
    """
    Token buckets keyed by (agent, kind), plus one write bucket for everyone.

    Agent names are self-declared, so per-agent buckets only separate
    well-behaved callers.  The global write bucket caps total write
    traffic however many names a caller rotates through.  At most
    ``max_buckets`` buckets are kept; the least recently used go first.
    """

    def __init__(
        self,
        writes_per_minute: int = 20,
        reads_per_minute: int = 120,
        burst_factor: float = 2.0,
        global_writes_per_minute: Optional[int] = None,
        max_buckets: int = 2048,
    ):
        self._per_minute = {"write": writes_per_minute, "read": reads_per_minute}
        self._burst_factor = burst_factor
        self._max_buckets = max(1, max_buckets)
        self._buckets: OrderedDict[Tuple[str, str], _Bucket] = OrderedDict()
        self._global_per_minute = (
            global_writes_per_minute
            if global_writes_per_minute is not None
            else writes_per_minute * 10
        )
        self._global_writes = self._new_bucket(self._global_per_minute)
        self._lock = threading.Lock()

    def _new_bucket(self, per_minute: int) -> _Bucket:
        burst = per_minute * self._burst_factor
        return _Bucket(capacity=burst, tokens=burst, refill_rate=per_minute / 60.0)

    def _bucket(self, agent: str, kind: str) -> _Bucket:
        key = (agent, kind)
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = self._new_bucket(self._per_minute[kind])
            self._buckets[key] = bucket
            while len(self._buckets) > self._max_buckets:
                self._buckets.popitem(last=False)
        else:
            self._buckets.move_to_end(key)
        return bucket

    def check(self, action: str, agent: str) -> None:
        """Charge one call of `action` to `agent`; exempt actions are free."""
        kind = classify_action(action)
        if kind == "exempt":
            return
        with self._lock:
            wait = self._bucket(agent, kind).try_consume()
            if wait:
                raise RateLimitExceeded(
                    wait,
                    f"{kind.capitalize()} rate limit exceeded "
                    f"({self._per_minute[kind]}/min). Retry after {wait}ms.",
                )
            if kind == "write":
                wait = self._global_writes.try_consume()
                if wait:
                    raise RateLimitExceeded(
                        wait,
                        f"Global write rate limit exceeded "
                        f"({self._global_per_minute}/min). Retry after {wait}ms.",
                    )
