"""
Helpers that make third-party text safe to persist and display.

Raw response bodies can contain markup; they are stored base64-encoded and
rendered only through the escaping helpers below.
"""

import base64
import binascii
import html
import re

B64_PREFIX = "b64:"

_WHITESPACE = re.compile(r"\s+")


def truncate(text: str, max_length: int = 320, suffix: str = "...") -> str:
    """Cut text to max_length characters, suffix included."""
    text = str(text or "")
    if len(text) <= max_length:
        return text
    if max_length <= len(suffix):
        return text[:max_length]
    return text[: max_length - len(suffix)] + suffix


def to_b64_snippet(raw: str, max_raw: int = 800) -> str:
    """Encode a truncated diagnostic body as ``b64:<data>``."""
    if str(raw or "").startswith(B64_PREFIX):
        return raw
    clipped = truncate(raw, max_raw, suffix="…")
    return B64_PREFIX + base64.b64encode(clipped.encode("utf-8")).decode("ascii")


def from_b64_snippet(snippet: str) -> str:
    """Decode a ``b64:`` snippet; anything else is returned unchanged."""
    snippet = str(snippet or "")
    if not snippet.startswith(B64_PREFIX):
        return snippet
    try:
        return base64.b64decode(snippet[len(B64_PREFIX):], validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return snippet


def to_safe_text_snippet(text: str, max_length: int = 320) -> str:
    """Escape markup, collapse whitespace and truncate for logs and summaries."""
    escaped = html.escape(str(text or ""), quote=False)
    return truncate(_WHITESPACE.sub(" ", escaped).strip(), max_length)
