"""Inline-vs-persist decision for tool results."""

from __future__ import annotations

from stepwise.models import (
    OutputDeliveryResolution,
    OutputMode,
    ResolvedOutputMode,
    ToolResultMode,
)

INTROSPECTION_PREFIX = "tool_outputs."

# Results above this many characters persist under the auto policy
AUTO_INLINE_MAX_CHARS = 4_096
# Nothing larger is ever inlined, whatever was requested
INLINE_HARD_MAX_CHARS = 16_384

FORCED_REASON_HARD_LIMIT = "inline_size_exceeds_hard_limit"


def is_introspection_tool(tool_name: str) -> bool:
    return tool_name.startswith(INTROSPECTION_PREFIX)


def should_persist(tool_name: str, result_mode: ToolResultMode, size_chars: int) -> bool:
    if is_introspection_tool(tool_name):
        return False
    if result_mode is ToolResultMode.INLINE:
        return size_chars > INLINE_HARD_MAX_CHARS
    if result_mode is ToolResultMode.PERSIST:
        return True
    return size_chars > AUTO_INLINE_MAX_CHARS


def resolve_output_delivery(
    tool_name: str,
    requested: OutputMode,
    result_mode: ToolResultMode,
    size_chars: int,
) -> OutputDeliveryResolution:
    """Decide how a result of ``size_chars`` compact-JSON characters is delivered."""
    if is_introspection_tool(tool_name):
        # these already read persisted data
        return OutputDeliveryResolution(requested, ResolvedOutputMode.INLINE)

    if requested is OutputMode.PERSIST:
        return OutputDeliveryResolution(requested, ResolvedOutputMode.PERSIST)

    if requested is OutputMode.INLINE:
        if size_chars > INLINE_HARD_MAX_CHARS:
            return OutputDeliveryResolution(
                requested,
                ResolvedOutputMode.PERSIST,
                forced_persist=True,
                forced_reason=FORCED_REASON_HARD_LIMIT,
            )
        return OutputDeliveryResolution(requested, ResolvedOutputMode.INLINE)

    persist = should_persist(tool_name, result_mode, size_chars)
    forced = persist and result_mode is ToolResultMode.INLINE
    return OutputDeliveryResolution(
        requested,
        ResolvedOutputMode.PERSIST if persist else ResolvedOutputMode.INLINE,
        forced_persist=forced,
        forced_reason=FORCED_REASON_HARD_LIMIT if forced else None,
    )
