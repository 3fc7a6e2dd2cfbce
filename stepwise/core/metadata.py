"""Size-bounded structural summaries of tool results.

When a result is persisted instead of inlined, the model only sees this
metadata plus a short preview, so the summary itself must stay small.
"""

from __future__ import annotations

from collections import Counter
from typing import Any

from stepwise.utils.text import to_json, truncate_with_notice

MAX_TOP_LEVEL_KEYS = 20
MAX_ID_HINTS = 12
MAX_ID_SAMPLE_CHARS = 80
MAX_ITEM_TYPE_HINTS = 8
SCAN_MAX_DEPTH = 4
SCAN_MAX_ARRAY_ITEMS = 24
MAX_SERIALIZED_CHARS = 1_600


def json_type_name(value: Any) -> str:
    if isinstance(value, dict):
        return "object"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, str):
        return "string"
    # bool before number: bool is an int subclass
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if value is None:
        return "null"
    return "string"


def value_char_len(value: Any) -> int:
    return len(to_json(value))


def _item_type_hints(items: list[Any]) -> list[dict[str, Any]]:
    counts = Counter(json_type_name(item) for item in items[:SCAN_MAX_ARRAY_ITEMS])
    return [
        {"type": type_name, "count": counts[type_name]}
        for type_name in sorted(counts)[:MAX_ITEM_TYPE_HINTS]
    ]


def is_id_like_key(key: str) -> bool:
    normalized = key.strip().lower()
    return normalized == "id" or normalized.endswith("id")


def _id_sample(value: Any) -> str | None:
    if isinstance(value, bool):
        raw = "true" if value else "false"
    elif isinstance(value, (str, int, float)):
        raw = str(value)
    else:
        return None
    return truncate_with_notice(raw, MAX_ID_SAMPLE_CHARS)


def collect_id_hints(value: Any, path: str = "$", depth: int = 0,
                     hints: list[dict[str, Any]] | None = None) -> list[dict[str, Any]]:
    """Walk ``value`` collecting id-like keys, bounded in depth, breadth and count."""
    if hints is None:
        hints = []
    if depth > SCAN_MAX_DEPTH or len(hints) >= MAX_ID_HINTS:
        return hints

    if isinstance(value, dict):
        for key in sorted(value, key=str):
            if len(hints) >= MAX_ID_HINTS:
                break
            child = value[key]
            child_path = f"{path}.{key}"
            if is_id_like_key(str(key)):
                hint: dict[str, Any] = {
                    "path": child_path,
                    "key": str(key),
                    "value_type": json_type_name(child),
                }
                sample = _id_sample(child)
                if sample is not None:
                    hint["sample"] = sample
                hints.append(hint)
            collect_id_hints(child, child_path, depth + 1, hints)
    elif isinstance(value, (list, tuple)):
        for index, child in enumerate(value[:SCAN_MAX_ARRAY_ITEMS]):
            if len(hints) >= MAX_ID_HINTS:
                break
            collect_id_hints(child, f"{path}[{index}]", depth + 1, hints)
    return hints


def _bound_size(metadata: dict[str, Any]) -> dict[str, Any]:
    if value_char_len(metadata) <= MAX_SERIALIZED_CHARS:
        return metadata

    metadata.pop("id_hints", None)
    metadata["metadata_truncated"] = True
    metadata["metadata_truncation_reason"] = "removed_id_hints_for_size_limit"
    if value_char_len(metadata) <= MAX_SERIALIZED_CHARS:
        return metadata

    metadata.pop("item_type_hints", None)
    metadata.pop("top_level_value_types", None)
    metadata["metadata_truncation_reason"] = "removed_secondary_hints_for_size_limit"
    if value_char_len(metadata) <= MAX_SERIALIZED_CHARS:
        return metadata

    return {
        "root_type": metadata.get("root_type", "unknown"),
        "size_chars": metadata.get("size_chars", 0),
        "metadata_truncated": True,
        "metadata_truncation_reason": "hard_size_limit",
    }


def compute_output_metadata(value: Any) -> dict[str, Any]:
    root_type = json_type_name(value)
    metadata: dict[str, Any] = {
        "root_type": root_type,
        "size_chars": value_char_len(value),
    }

    if isinstance(value, dict):
        keys = sorted(str(k) for k in value)[:MAX_TOP_LEVEL_KEYS]
        lookup = {str(k): v for k, v in value.items()}
        metadata["key_count"] = len(value)
        metadata["top_level_keys"] = keys
        metadata["top_level_value_types"] = [
            {"key": key, "type": json_type_name(lookup[key])}
            for key in keys[:MAX_ITEM_TYPE_HINTS]
        ]
    elif isinstance(value, (list, tuple)):
        metadata["array_length"] = len(value)
        metadata["item_type_hints"] = _item_type_hints(list(value))
    elif isinstance(value, str):
        metadata["string_length"] = len(value)

    id_hints = collect_id_hints(value)
    if id_hints:
        metadata["id_hints"] = id_hints

    return _bound_size(metadata)


def strip_id_hints(metadata: Any) -> Any:
    if isinstance(metadata, dict):
        return {k: v for k, v in metadata.items() if k != "id_hints"}
    return metadata
