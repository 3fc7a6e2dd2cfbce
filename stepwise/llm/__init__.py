"""LLM boundary: message types and the abstract provider."""

from stepwise.llm.types import LLMMessage, LLMResponse
from stepwise.llm.base import LLMProvider

__all__ = [
    "LLMMessage",
    "LLMResponse",
    "LLMProvider",
]
