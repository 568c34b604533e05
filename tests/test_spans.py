from __future__ import annotations

from dataclasses import FrozenInstanceError
from datetime import datetime, timedelta, timezone

import pytest

from abtrace.spans import SpanKind, SpanRecord, SpanStatus

START = datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)


def _record(**overrides) -> SpanRecord:
    fields = dict(
        name="generateText",
        kind=SpanKind.LLM,
        trace_id="a" * 32,
        span_id="b" * 16,
        start_time=START,
        end_time=START + timedelta(milliseconds=420),
        model="gpt-4o",
        config_key="agent",
        session_id="s-1",
        attributes={"abtrace.method": "generateText"},
    )
    fields.update(overrides)
    return SpanRecord(**fields)


def test_payload_contains_collector_fields() -> None:
    payload = _record().to_payload()

    assert payload == {
        "config_key": "agent",
        "session_id": "s-1",
        "trace_id": "a" * 32,
        "span_id": "b" * 16,
        "parent_span_id": None,
        "name": "generateText",
        "kind": "llm",
        "model": "gpt-4o",
        "start_time": "2024-05-01T09:30:00.000Z",
        "end_time": "2024-05-01T09:30:00.420Z",
        "duration_ms": 420,
        "status": "OK",
        "attributes": {"abtrace.method": "generateText"},
    }


def test_optional_fields_are_added_when_set() -> None:
    payload = _record(
        customer_id="cust-1",
        status="ERROR",
        error_message="boom",
        prompt_key="greeting",
        prompt_version=3,
        ab_test_key="greeting-test",
        variant_index=1,
    ).to_payload()

    assert payload["customer_id"] == "cust-1"
    assert payload["status"] == "ERROR"
    assert payload["error_message"] == "boom"
    assert payload["prompt_key"] == "greeting"
    assert payload["prompt_version"] == 3
    assert payload["prompt_ab_test_key"] == "greeting-test"
    assert payload["prompt_variant_index"] == 1


def test_naive_times_are_treated_as_utc() -> None:
    naive = datetime(2024, 5, 1, 9, 30)
    record = _record(start_time=naive, end_time=naive + timedelta(seconds=2))
    assert record.start_time.tzinfo is timezone.utc
    assert record.duration_ms == 2000


def test_end_before_start_is_rejected() -> None:
    with pytest.raises(ValueError):
        _record(end_time=START - timedelta(seconds=1))


@pytest.mark.parametrize("field_name", ["trace_id", "span_id"])
def test_ids_are_required(field_name: str) -> None:
    with pytest.raises(ValueError):
        _record(**{field_name: ""})


def test_record_is_frozen_and_attributes_are_read_only() -> None:
    source = {"score": 1}
    record = _record(attributes=source)
    source["score"] = 2

    assert record.attributes["score"] == 1
    assert record.status is SpanStatus.OK
    with pytest.raises(FrozenInstanceError):
        record.model = "other"  # type: ignore[misc]
    with pytest.raises(TypeError):
        record.attributes["score"] = 3  # type: ignore[index]
