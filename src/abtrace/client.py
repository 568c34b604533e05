"""Process-wide client tying configuration, experiments and tracing together."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from .assignment import AssignmentEngine, AssignmentResult
from .config import ClientConfig
from .context import ContextStore, default_store
from .prompts import PromptManager
from .recorder import SpanRecorder
from .resilience import BackgroundDispatcher
from .snapshots import SnapshotCache, load_model_configs
from .transport import HttpSpanTransport, SpanTransport

_LOGGER = logging.getLogger(__name__)


class AbTraceClient:
    """Holds the components used by application code after :func:`init`."""

    def __init__(
        self,
        config: ClientConfig,
        *,
        store: Optional[ContextStore] = None,
        transport: Optional[SpanTransport] = None,
        models: Optional[SnapshotCache] = None,
    ) -> None:
        self.config = config
        self.store = store or default_store
        self.models = models or SnapshotCache()
        self.engine = AssignmentEngine(self.models, timeout=config.assignment_timeout)
        self.prompts = PromptManager(store=self.store, timeout=config.assignment_timeout)
        self.recorder = SpanRecorder(
            transport or HttpSpanTransport(config.base_url, config.api_key),
            store=self.store,
            dispatcher=BackgroundDispatcher(timeout=config.delivery_timeout),
            capture_content=config.capture_content,
            debug=config.debug,
        )
        self.tracer_provider: Optional[Any] = None

    def load_model_configs(self, payload: Mapping[str, Any]) -> None:
        """Publish a freshly fetched ``{"configs": [...]}`` document."""

        self.models.replace(load_model_configs(payload))

    async def get_model(
        self,
        config_key: str,
        session_id: str,
        *,
        fallback: str,
        version: Optional[int] = None,
    ) -> AssignmentResult:
        return await self.engine.get(config_key, session_id, fallback=fallback, version=version)

    def get_model_sync(
        self,
        config_key: str,
        session_id: str,
        *,
        fallback: str,
        version: Optional[int] = None,
    ) -> AssignmentResult:
        return self.engine.get_sync(config_key, session_id, fallback=fallback, version=version)

    def enable_tracing(self, span_exporter: Optional[Any] = None) -> Any:
        """Install an OpenTelemetry provider that tags spans with the ambient session."""

        from .otel import configure_tracing

        if self.tracer_provider is None:
            self.tracer_provider = configure_tracing(self.config, span_exporter=span_exporter, store=self.store)
        return self.tracer_provider

    def shutdown(self) -> None:
        self.recorder.flush_sync()
        self.recorder.shutdown()
        if self.tracer_provider is not None:
            self.tracer_provider.shutdown()


_client: Optional[AbTraceClient] = None


def init(
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    capture_content: Optional[bool] = None,
    *,
    debug: Optional[bool] = None,
    transport: Optional[SpanTransport] = None,
    env: Optional[Mapping[str, str]] = None,
    tracing: bool = False,
    span_exporter: Optional[Any] = None,
) -> AbTraceClient:
    """Initialise the process-wide client.

    Raises :class:`~abtrace.errors.ConfigurationError` when no API key is
    available. Calling ``init`` again returns the existing client. With
    ``tracing=True`` an OpenTelemetry provider exporting to the collector is
    installed as well.
    """

    global _client
    if _client is not None:
        return _client
    config = ClientConfig.from_env(
        env,
        api_key=api_key,
        base_url=base_url,
        capture_content=capture_content,
        debug=debug,
    )
    client = AbTraceClient(config, transport=transport)
    if tracing:
        client.enable_tracing(span_exporter)
    _client = client
    _LOGGER.debug(
        "abtrace initialised",
        extra={"base_url": config.base_url, "capture_content": config.capture_content},
    )
    return _client


def get_client() -> Optional[AbTraceClient]:
    return _client


def shutdown() -> None:
    global _client
    client, _client = _client, None
    if client is not None:
        client.shutdown()


__all__ = ["AbTraceClient", "get_client", "init", "shutdown"]
