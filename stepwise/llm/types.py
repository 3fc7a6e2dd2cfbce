"""LLM data types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class LLMMessage:
    role: str  # "user", "assistant", "system"
    content: str | list[dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass
class LLMResponse:
    content: str = ""
    stop_reason: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
