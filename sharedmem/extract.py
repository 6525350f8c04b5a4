"""
Text Extraction — markup to capped plain text

A regex reduction, not an HTML parser: good enough for storing a
readable approximation of a page.  Pure and total; never raises.

Order matters:
    1. drop <script>, <style> and comments WITH their content
    2. structural tags → whitespace cues (br, p, div, h1-h6, li)
    3. strip every remaining tag
    4. decode the six common entities only
    5. collapse 3+ newlines to 2, trim
    6. truncate to max_chars
"""

from __future__ import annotations

import re
from typing import Optional

from sharedmem.types import MAX_CONTENT_CHARS

_DROP_BLOCKS = (
    re.compile(r"<script[^>]*>[\s\S]*?</script>", re.IGNORECASE),
    re.compile(r"<style[^>]*>[\s\S]*?</style>", re.IGNORECASE),
    re.compile(r"<!--[\s\S]*?-->"),
)

_STRUCTURAL = (
    (re.compile(r"<br\s*/?>", re.IGNORECASE), "\n"),
    (re.compile(r"</p>", re.IGNORECASE), "\n\n"),
    (re.compile(r"</div>", re.IGNORECASE), "\n"),
    (re.compile(r"</h[1-6]>", re.IGNORECASE), "\n\n"),
    (re.compile(r"<li>", re.IGNORECASE), "• "),
    (re.compile(r"</li>", re.IGNORECASE), "\n"),
)

_ANY_TAG = re.compile(r"<[^>]+>")

# &amp; is decoded before &lt;/&gt; so "&amp;lt;" becomes "<"
_ENTITIES = (
    ("&nbsp;", " "),
    ("&amp;", "&"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
)

_BLANK_RUNS = re.compile(r"\n\s*\n\s*\n")
_TITLE = re.compile(r"<title[^>]*>([\s\S]*?)</title>", re.IGNORECASE)
_WS = re.compile(r"\s+")


def decode_entities(text: str) -> str:
    """Decode &nbsp; &amp; &lt; &gt; &quot; &#39;; leave everything else."""
    for entity, char in _ENTITIES:
        text = text.replace(entity, char)
    return text


def extract_text(markup: str, max_chars: int = MAX_CONTENT_CHARS) -> str:
    """
    Reduce HTML-ish markup to plain text.

    Args:
        markup: Raw response body (any text; non-HTML passes through).
        max_chars: Output cap (default 50,000).

    Returns:
        Extracted text, at most max_chars characters.
    """
    if not markup:
        return ""
    text = markup
    for pattern in _DROP_BLOCKS:
        text = pattern.sub("", text)
    for pattern, repl in _STRUCTURAL:
        text = pattern.sub(repl, text)
    text = _ANY_TAG.sub("", text)
    text = decode_entities(text)
    text = _BLANK_RUNS.sub("\n\n", text)
    return text.strip()[:max_chars]


def extract_title(markup: str) -> Optional[str]:
    """Return the page <title> text, whitespace-collapsed, or None."""
    if not markup:
        return None
    m = _TITLE.search(markup)
    if not m:
        return None
    title = _WS.sub(" ", decode_entities(_ANY_TAG.sub("", m.group(1)))).strip()
    return title or None
