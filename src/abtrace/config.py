"""Configuration helpers for the abtrace client."""
from __future__ import annotations

from dataclasses import dataclass, field
import os
from typing import Mapping, Optional

from .errors import ConfigurationError

DEFAULT_BASE_URL = "https://spans.abtrace.dev"
DEFAULT_ASSIGNMENT_TIMEOUT = 1.5
DEFAULT_DELIVERY_TIMEOUT = 5.0

_truthy = {"1", "true", "yes", "on"}
_falsy = {"0", "false", "no", "off"}


def _bool_env(env: Mapping[str, str], var_name: str, default: bool) -> bool:
    value = env.get(var_name)
    if value is None or not value.strip():
        return default
    normalized = value.strip().lower()
    if normalized in _truthy:
        return True
    if normalized in _falsy:
        return False
    return default


def _float_env(env: Mapping[str, str], var_name: str, default: float) -> float:
    value = env.get(var_name)
    if value is None or not value.strip():
        return default
    try:
        parsed = float(value)
    except ValueError as exc:
        raise ConfigurationError(f"Environment variable '{var_name}' must be a number, got {value!r}") from exc
    if parsed <= 0:
        raise ConfigurationError(f"Environment variable '{var_name}' must be positive")
    return parsed


@dataclass(frozen=True)
class ClientConfig:
    """Runtime configuration for tracing and experimentation.

    Values are normally read from ``ABTRACE_*`` environment variables;
    explicit arguments passed to :meth:`from_env` take precedence. The
    timeouts bound every network-touching call on the request path.
    """

    api_key: str
    base_url: str = DEFAULT_BASE_URL
    capture_content: bool = True
    debug: bool = False
    assignment_timeout: float = DEFAULT_ASSIGNMENT_TIMEOUT
    delivery_timeout: float = DEFAULT_DELIVERY_TIMEOUT
    service_name: str = "abtrace-traced-app"
    extra_headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.api_key:
            raise ConfigurationError(
                "No API key provided. Set ABTRACE_API_KEY environment variable or pass api_key."
            )
        object.__setattr__(self, "base_url", self.base_url.rstrip("/"))

    @staticmethod
    def from_env(
        env: Optional[Mapping[str, str]] = None,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        capture_content: Optional[bool] = None,
        debug: Optional[bool] = None,
    ) -> "ClientConfig":
        """Instantiate :class:`ClientConfig` from environment variables."""

        mapping = env if env is not None else os.environ
        resolved_capture = _bool_env(mapping, "ABTRACE_CAPTURE_CONTENT", True)
        # an explicit opt-out in the environment wins over the argument
        if capture_content is not None and resolved_capture:
            resolved_capture = capture_content
        return ClientConfig(
            api_key=api_key or mapping.get("ABTRACE_API_KEY", ""),
            base_url=base_url or mapping.get("ABTRACE_BASE_URL") or DEFAULT_BASE_URL,
            capture_content=resolved_capture,
            debug=debug if debug is not None else _bool_env(mapping, "ABTRACE_DEBUG", False),
            assignment_timeout=_float_env(mapping, "ABTRACE_ASSIGNMENT_TIMEOUT", DEFAULT_ASSIGNMENT_TIMEOUT),
            delivery_timeout=_float_env(mapping, "ABTRACE_DELIVERY_TIMEOUT", DEFAULT_DELIVERY_TIMEOUT),
        )

    def auth_headers(self) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        headers.update(self.extra_headers)
        return headers

    def to_traces_endpoint(self) -> str:
        return f"{self.base_url}/v1/traces"


__all__ = ["ClientConfig", "DEFAULT_BASE_URL"]
