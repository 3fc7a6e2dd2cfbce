"""LLM provider abstract base class."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from stepwise.llm.types import LLMMessage, LLMResponse


class LLMProvider(ABC):
    """Transport boundary. Implementations own HTTP, retries and caching headers."""

    @abstractmethod
    async def complete(
        self,
        messages: list[LLMMessage],
        system: str | None = None,
        output_format: dict[str, Any] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse: ...

    async def close(self) -> None:
        """Clean up resources. Override if needed."""
