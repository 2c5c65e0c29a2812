"""Provide utility helpers for timestamps and names."""

from __future__ import annotations

import re
from datetime import datetime, timezone

from .constants import SLUG_MAX_CHARS

_SLUG_DROP_RE = re.compile(r"[^a-z0-9\s-]")
_WHITESPACE_RE = re.compile(r"\s+")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _slugify(text: str, max_chars: int = SLUG_MAX_CHARS) -> str:
    """Lowercase, drop punctuation, hyphenate whitespace and cap the length."""
    slug = _SLUG_DROP_RE.sub("", (text or "").lower())
    slug = _WHITESPACE_RE.sub("-", slug.strip())
    return slug[:max_chars].strip("-")


def _split_list(value: object, separators: str = ",") -> tuple[str, ...]:
    """Accept separated strings or sequences and return the non-empty items."""
    if value is None:
        return ()
    if isinstance(value, str):
        parts = re.split(f"[{re.escape(separators)}\n]", value)
    elif isinstance(value, (list, tuple, set)):
        parts = [str(item) for item in value]
    else:
        parts = [str(value)]
    return tuple(item.strip() for item in parts if item and item.strip())
