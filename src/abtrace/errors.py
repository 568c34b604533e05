"""Exception types raised by :mod:`abtrace`.

Only :class:`ConfigurationError` is ever allowed to reach the host
application during normal operation. The remaining types describe failures
that the resilient entry points recover from internally; they are public so
that the strict variants and custom transports can use them.
"""

from __future__ import annotations

from enum import Enum


class ConfigurationError(RuntimeError):
    """Raised once at initialisation when required settings are missing."""


class InvalidSnapshotError(ValueError):
    """Raised when a configuration snapshot cannot be built."""


class AssignmentFailureKind(str, Enum):
    """Reasons a variant lookup can fail."""

    UNKNOWN_KEY = "unknown_key"
    SNAPSHOT_MISSING = "snapshot_missing"
    VERSION_MISSING = "version_missing"
    EMPTY_SNAPSHOT = "empty_snapshot"
    TIMEOUT = "timeout"
    SOURCE_ERROR = "source_error"


class AssignmentFailure(RuntimeError):
    """Raised by the strict assignment path; carries the failure kind."""

    def __init__(self, kind: AssignmentFailureKind, config_key: str, detail: str | None = None) -> None:
        message = f"assignment for {config_key!r} failed: {kind.value}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.kind = kind
        self.config_key = config_key


class DeliveryFailure(RuntimeError):
    """Raised by transports when a span could not be delivered."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PromptNotFoundError(KeyError):
    """Raised when a prompt or prompt A/B test is not present in the cache."""


__all__ = [
    "AssignmentFailure",
    "AssignmentFailureKind",
    "ConfigurationError",
    "DeliveryFailure",
    "InvalidSnapshotError",
    "PromptNotFoundError",
]
