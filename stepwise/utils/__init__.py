"""Utility modules for Stepwise."""

from .logging import get_logger, setup_logging
from .text import summarize_args, truncate_chars, truncate_with_notice

__all__ = [
    "get_logger",
    "setup_logging",
    "summarize_args",
    "truncate_chars",
    "truncate_with_notice",
]
