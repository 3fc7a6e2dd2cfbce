"""Structured logging for agent runs.

Every event emitted while a run is active carries the run's session and
conversation ids through structlog's contextvars, so interleaved runs in one
process stay separable. Tool arguments and model output pass through two
processors before rendering: secret-looking keys are masked at any depth and
long strings are clipped.
"""

from __future__ import annotations

import logging
import re
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog

from stepwise.utils.text import truncate_with_notice

MAX_LOG_VALUE_CHARS = 2_000

_SECRET_KEY = re.compile(r"token|api_?key|secret|password|authorization|cookie", re.IGNORECASE)
_SECRET_INLINE = re.compile(
    r"(token|api_?key|secret|password|authorization)([\"']?\s*[:=]\s*[\"']?)[\w\-\.]+",
    re.IGNORECASE,
)
_MASK = "***"


def _mask(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: _MASK if isinstance(k, str) and _SECRET_KEY.search(k) else _mask(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_mask(v) for v in value]
    if isinstance(value, str):
        return _SECRET_INLINE.sub(rf"\1\2{_MASK}", value)
    return value


def mask_secrets(
    _logger: structlog.types.WrappedLogger,
    _method: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    for key, value in list(event_dict.items()):
        if key == "event":
            continue
        if _SECRET_KEY.search(key):
            event_dict[key] = _MASK
        else:
            event_dict[key] = _mask(value)
    return event_dict


def clip_long_values(
    _logger: structlog.types.WrappedLogger,
    _method: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    for key, value in list(event_dict.items()):
        if isinstance(value, str) and len(value) > MAX_LOG_VALUE_CHARS:
            event_dict[key] = truncate_with_notice(value, MAX_LOG_VALUE_CHARS)
    return event_dict


@contextmanager
def run_log_context(session_id: str, conversation_id: str) -> Iterator[None]:
    """Tag every log line inside the block with the run's identifiers."""
    with structlog.contextvars.bound_contextvars(
        session_id=session_id, conversation_id=conversation_id,
    ):
        yield


def setup_logging(level: str = "INFO", json_output: bool = False) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    if numeric_level <= logging.DEBUG:
        print(
            "WARNING: DEBUG logging is enabled. Tool arguments and model output "
            "will appear in logs (secret-looking keys are masked).",
            file=sys.stderr,
        )

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        mask_secrets,
        clip_long_values,
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]
    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    ))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)
    # aiosqlite logs every statement at DEBUG
    logging.getLogger("aiosqlite").setLevel(max(numeric_level, logging.INFO))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
