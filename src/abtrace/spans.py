"""Span records describing one completed unit of work."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


def _ensure_utc(value: datetime) -> datetime:
    """Normalise a datetime to UTC with tzinfo."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SpanStatus(str, Enum):
    OK = "OK"
    ERROR = "ERROR"


class SpanKind(str, Enum):
    """Well-known span kinds; any other string is accepted as a custom kind."""

    LLM = "llm"
    CUSTOM = "custom"


@dataclass(frozen=True, slots=True)
class SpanRecord:
    """Immutable record of one LLM call or custom unit of work."""

    name: str
    kind: str
    trace_id: str
    span_id: str
    start_time: datetime
    end_time: datetime
    status: SpanStatus = SpanStatus.OK
    model: Optional[str] = None
    parent_span_id: Optional[str] = None
    config_key: Optional[str] = None
    session_id: Optional[str] = None
    customer_id: Optional[str] = None
    error_message: Optional[str] = None
    attributes: Mapping[str, Any] = field(default_factory=dict)
    prompt_key: Optional[str] = None
    prompt_version: Optional[int] = None
    ab_test_key: Optional[str] = None
    variant_index: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.trace_id:
            raise ValueError("trace_id must be provided")
        if not self.span_id:
            raise ValueError("span_id must be provided")
        start = _ensure_utc(self.start_time)
        end = _ensure_utc(self.end_time)
        if end < start:
            raise ValueError("span end_time cannot be earlier than start_time")
        object.__setattr__(self, "start_time", start)
        object.__setattr__(self, "end_time", end)
        object.__setattr__(self, "status", SpanStatus(self.status))
        object.__setattr__(self, "kind", str(getattr(self.kind, "value", self.kind)))
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    @property
    def duration_ms(self) -> int:
        """Return the span duration in whole milliseconds."""
        delta = self.end_time - self.start_time
        return int(delta.total_seconds() * 1000)

    def to_payload(self) -> Dict[str, Any]:
        """Serialise the record into the collector's JSON body."""

        payload: Dict[str, Any] = {
            "config_key": self.config_key,
            "session_id": self.session_id,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "name": self.name,
            "kind": self.kind,
            "model": self.model,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration_ms": self.duration_ms,
            "status": self.status.value,
            "attributes": dict(self.attributes),
        }
        if self.customer_id:
            payload["customer_id"] = self.customer_id
        if self.error_message:
            payload["error_message"] = self.error_message
        if self.prompt_key:
            payload["prompt_key"] = self.prompt_key
            payload["prompt_version"] = self.prompt_version
            payload["prompt_ab_test_key"] = self.ab_test_key
            payload["prompt_variant_index"] = self.variant_index
        return payload


__all__ = ["SpanKind", "SpanRecord", "SpanStatus"]
