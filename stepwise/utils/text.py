"""Character-bounded text helpers shared by the summarisers."""

from __future__ import annotations

import json
from typing import Any


def truncate_chars(text: str, max_chars: int) -> tuple[str, bool]:
    """Cut ``text`` to ``max_chars`` characters. Returns (text, was_truncated)."""
    if max_chars <= 0:
        return "", bool(text)
    if len(text) <= max_chars:
        return text, False
    return text[:max_chars], True


def truncate_with_notice(text: str, max_chars: int) -> str:
    truncated, was_truncated = truncate_chars(text, max_chars)
    if was_truncated:
        return f"{truncated} ...(truncated)"
    return truncated


def to_json(value: Any) -> str:
    """Compact JSON serialisation used for every size measurement."""
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def summarize_args(args: Any, max_len: int) -> str:
    raw = to_json(args)
    if len(raw) <= max_len:
        return raw
    return f"{raw[:max_len]}..."
