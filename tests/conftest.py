"""Shared pytest fixtures for the abtrace test-suite."""

from __future__ import annotations

import threading
from typing import Any, List, Mapping

import pytest

from abtrace.context import ContextStore
from abtrace.errors import DeliveryFailure


class RecordingTransport:
    """Transport double that keeps every payload it is asked to send."""

    def __init__(self) -> None:
        self.payloads: List[Mapping[str, Any]] = []
        self._lock = threading.Lock()

    def send(self, payload: Mapping[str, Any], *, timeout: float) -> None:
        with self._lock:
            self.payloads.append(dict(payload))


class FailingTransport:
    def __init__(self) -> None:
        self.calls = 0
        self._lock = threading.Lock()

    def send(self, payload: Mapping[str, Any], *, timeout: float) -> None:
        with self._lock:
            self.calls += 1
        raise DeliveryFailure("collector unavailable", status_code=503)


@pytest.fixture()
def store() -> ContextStore:
    return ContextStore(name="test")


@pytest.fixture()
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture()
def failing_transport() -> FailingTransport:
    return FailingTransport()
