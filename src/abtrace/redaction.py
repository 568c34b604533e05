"""Redaction profiles applied before request/response data leaves the process.

Both profiles walk a value the way a JSON replacer does: every nested value
is checked together with the key it is stored under, and whatever the rule
returns is what gets serialised (and, for containers, walked further).

``full``
    Used for the primary request/response capture. Oversized strings,
    inline images and binary blobs are replaced; field names are ignored.

``metadata``
    Used for diagnostic captures of a whole result object. Content-bearing
    fields are replaced by a type-aware placeholder first, then the string
    rules apply with a much lower size limit.

Lengths reported in placeholders and compared against the limits are
Python string lengths, i.e. code points. Text outside the Basic
Multilingual Plane therefore counts one per character, where a UTF-16
based client would count two.
"""

from __future__ import annotations

import dataclasses
import json
from enum import Enum
from typing import Any, Callable, FrozenSet, Mapping, Optional

FULL_STRING_LIMIT = 10_000
METADATA_STRING_LIMIT = 1_000

IMAGE_PLACEHOLDER = "[base64 image omitted]"
BINARY_PLACEHOLDER = "[binary data omitted]"
CONTENT_PLACEHOLDER = "[content omitted]"

CONTENT_KEYS: FrozenSet[str] = frozenset(
    {
        "text",
        "content",
        "message",
        "messages",
        "object",
        "prompt",
        "system",
        "input",
        "output",
        "response",
        "toolCalls",
        "toolResults",
        "steps",
        "reasoning",
        "rawResponse",
        "rawCall",
        "body",
        "candidates",
        "parts",
    }
)


class RedactionProfile(str, Enum):
    FULL = "full"
    METADATA = "metadata"


def _is_binary(value: Any) -> bool:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return True
    return isinstance(value, Mapping) and value.get("type") == "Buffer"


def _string_rule(value: str, limit: int) -> str:
    if value.startswith("data:image/"):
        return IMAGE_PLACEHOLDER
    if len(value) > limit:
        return f"[large string omitted: {len(value)} chars]"
    return value


def _full_rule(key: Optional[str], value: Any) -> Any:
    if isinstance(value, str):
        return _string_rule(value, FULL_STRING_LIMIT)
    if _is_binary(value):
        return BINARY_PLACEHOLDER
    return value


def _metadata_rule(key: Optional[str], value: Any) -> Any:
    if key in CONTENT_KEYS:
        if isinstance(value, str):
            return f"[content omitted: {len(value)} chars]"
        if isinstance(value, (list, tuple)):
            return f"[content omitted: {len(value)} items]"
        if value is not None and not isinstance(value, (bool, int, float)):
            return CONTENT_PLACEHOLDER
    if isinstance(value, str):
        return _string_rule(value, METADATA_STRING_LIMIT)
    if _is_binary(value):
        return BINARY_PLACEHOLDER
    return value


_RULES: Mapping[RedactionProfile, Callable[[Optional[str], Any], Any]] = {
    RedactionProfile.FULL: _full_rule,
    RedactionProfile.METADATA: _metadata_rule,
}


def _to_plain(value: Any) -> Any:
    """Convert non-JSON objects into mappings/strings the walk understands."""

    if value is None or isinstance(value, (str, bool, int, float, bytes, bytearray, memoryview)):
        return value
    if isinstance(value, (Mapping, list, tuple)):
        return value
    if isinstance(value, (set, frozenset)):
        return list(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {field.name: getattr(value, field.name) for field in dataclasses.fields(value)}
    for attr in ("model_dump", "to_dict"):
        method = getattr(value, attr, None)
        if callable(method):
            try:
                return method()
            except Exception:  # noqa: BLE001 - fall through to the generic conversions
                break
    if hasattr(value, "__dict__"):
        return {key: item for key, item in vars(value).items() if not key.startswith("_")}
    return str(value)


def _walk(key: Optional[str], value: Any, rule: Callable[[Optional[str], Any], Any], depth: int) -> Any:
    value = rule(key, _to_plain(value))
    if depth > 64:
        return str(value)
    if isinstance(value, Mapping):
        return {str(k): _walk(str(k), v, rule, depth + 1) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        # array elements are visited with their index as key, as JSON does
        return [_walk(str(index), item, rule, depth + 1) for index, item in enumerate(value)]
    return value


def sanitize(value: Any, profile: RedactionProfile = RedactionProfile.FULL) -> Any:
    """Return a JSON-ready copy of ``value`` with ``profile`` applied."""

    return _walk(None, value, _RULES[RedactionProfile(profile)], 0)


def sanitize_full(value: Any) -> Any:
    return sanitize(value, RedactionProfile.FULL)


def sanitize_metadata(value: Any) -> Any:
    return sanitize(value, RedactionProfile.METADATA)


def to_json(value: Any, profile: RedactionProfile = RedactionProfile.FULL) -> str:
    """Serialise ``value`` after redaction."""

    return json.dumps(sanitize(value, profile), default=str, ensure_ascii=False)


__all__ = [
    "CONTENT_KEYS",
    "RedactionProfile",
    "sanitize",
    "sanitize_full",
    "sanitize_metadata",
    "to_json",
]
