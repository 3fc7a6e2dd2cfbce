"""Controller history compaction.

Compaction keeps a stable prefix and a recent tail so that the start of the
prompt stays byte-identical between turns and provider prompt caches keep
hitting.
"""

from __future__ import annotations

from typing import Sequence

from stepwise.llm.types import LLMMessage
from stepwise.utils.text import to_json


def message_chars(message: LLMMessage) -> int:
    content = message.content
    if isinstance(content, str):
        return len(content)
    if isinstance(content, list):
        return sum(
            len(part["text"])
            for part in content
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        )
    return len(to_json(content))


def compact_history(
    messages: Sequence[LLMMessage],
    max_chars: int = 48_000,
    stable_prefix_messages: int = 8,
    recent_tail_messages: int = 20,
) -> list[LLMMessage]:
    total = sum(message_chars(m) for m in messages)
    if total <= max_chars:
        return list(messages)

    prefix_end = min(len(messages), stable_prefix_messages)
    tail_start = max(0, len(messages) - recent_tail_messages)
    if tail_start <= prefix_end:
        return list(messages)

    return list(messages[:prefix_end]) + list(messages[tail_start:])
