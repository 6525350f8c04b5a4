"""
Storage key derivation.

Readable, stable keys for entries whose caller gave none.  The URL hash
is truncated to 8 hex chars: unique enough for a shared scratch store,
not a cryptographic identifier.
"""

from __future__ import annotations

import hashlib
import re
import time
from typing import Optional

_SCHEME_PREFIX = re.compile(r"^https?://")


def url_hash(url: str, length: int = 8) -> str:
    """First `length` hex chars of the MD5 of the raw URL string."""
    return hashlib.md5(url.encode("utf-8"), usedforsecurity=False).hexdigest()[:length]


def derive_key(url: str) -> str:
    """Key for a scraped URL: ``<domain_with_underscores>_<hash8>``.

    The domain part keeps any port or userinfo as written in the URL.
    """
    domain = _SCHEME_PREFIX.sub("", url).split("/")[0].replace(".", "_")
    return f"{domain}_{url_hash(url)}"


def text_key(now_ms: Optional[int] = None) -> str:
    """Key for pasted text: ``text_<epoch milliseconds>``."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"text_{now_ms}"
