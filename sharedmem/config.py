"""
Shared Memory Configuration

One dataclass per concern (store, fetch, limits, scrape), each able to
list its own range violations.  Values come from a JSON file; CLI flags
and SHAREDMEM_* variables are layered on top by the entry points.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

BackendName = Literal["file", "sqlite"]
VALID_BACKENDS: set = {"file", "sqlite"}


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """A config value has the wrong type or lies outside its range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Record a type or [lo, hi] bound violation in errors."""
    if typ is not None and not isinstance(value, typ):
        expected = "/".join(t.__name__ for t in typ) if isinstance(typ, tuple) else typ.__name__
        errors.append(f"{name}: expected {expected}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


@dataclass
class StoreConfig:
    """Storage backend configuration.  Exactly one backend per process."""
    backend: BackendName = "file"
    storage_dir: str = "memory"
    db_path: str = "memory/shared-memory.db"
    wal_mode: bool = True

    def validate(self) -> List[str]:
        """Error messages for this section; empty when valid."""
        errors: List[str] = []
        if self.backend not in VALID_BACKENDS:
            errors.append(
                f"store.backend: {self.backend!r} not in {sorted(VALID_BACKENDS)}"
            )
        if not self.storage_dir:
            errors.append("store.storage_dir: must not be empty")
        if not self.db_path:
            errors.append("store.db_path: must not be empty")
        return errors


@dataclass
class FetchConfig:
    """Outbound fetch bounds."""
    max_bytes: int = 1024 * 1024
    timeout_seconds: float = 15.0
    max_redirects: int = 5
    user_agent: str = "SharedMemory/1.0"
    accept: str = "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8"

    def validate(self) -> List[str]:
        """Error messages for this section; empty when valid."""
        errors: List[str] = []
        _check_range(errors, "fetch.max_bytes",
                      self.max_bytes, 1024, 64 * 1024 * 1024, int)
        _check_range(errors, "fetch.timeout_seconds",
                      self.timeout_seconds, 0.1, 300.0, (int, float))
        _check_range(errors, "fetch.max_redirects",
                      self.max_redirects, 0, 20, int)
        return errors


@dataclass
class LimitsConfig:
    """Payload and listing limits for the action dispatcher."""
    max_content_chars: int = 50_000
    scrape_preview_chars: int = 500
    search_preview_chars: int = 200
    search_limit: int = 10
    list_limit: int = 50
    available_keys_hint: int = 20

    def validate(self) -> List[str]:
        """Error messages for this section; empty when valid."""
        errors: List[str] = []
        _check_range(errors, "limits.max_content_chars",
                      self.max_content_chars, 1, 50_000, int)
        _check_range(errors, "limits.scrape_preview_chars",
                      self.scrape_preview_chars, 0, 10_000, int)
        _check_range(errors, "limits.search_preview_chars",
                      self.search_preview_chars, 0, 10_000, int)
        _check_range(errors, "limits.search_limit",
                      self.search_limit, 1, 1000, int)
        _check_range(errors, "limits.list_limit",
                      self.list_limit, 1, 10_000, int)
        _check_range(errors, "limits.available_keys_hint",
                      self.available_keys_hint, 0, 1000, int)
        return errors


@dataclass
class ScrapeConfig:
    """Scrape behavior."""
    title_from_page: bool = False

    def validate(self) -> List[str]:
        """Error messages for this section; empty when valid."""
        return []


@dataclass
class SharedMemoryConfig:
    """Top-level sharedmem configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    scrape: ScrapeConfig = field(default_factory=ScrapeConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SharedMemoryConfig:
        """Config from a dict shaped like the JSON file; absent sections keep defaults."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "fetch" in d:
            kwargs["fetch"] = FetchConfig(**d["fetch"])
        if "limits" in d:
            kwargs["limits"] = LimitsConfig(**d["limits"])
        if "scrape" in d:
            kwargs["scrape"] = ScrapeConfig(**d["scrape"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Error messages from every section."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.fetch.validate())
        errors.extend(self.limits.validate())
        errors.extend(self.scrape.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> SharedMemoryConfig:
    """Read a JSON config file.

    A missing, unparsable or wrongly shaped file yields the compiled
    defaults.  Out-of-range values are kept unless strict is set, in
    which case they raise ValidationError.
    """
    if path is None:
        cfg = SharedMemoryConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = SharedMemoryConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = SharedMemoryConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
