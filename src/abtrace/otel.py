"""OpenTelemetry wiring that groups auto-instrumented spans by session."""

from __future__ import annotations

import logging
from typing import Optional

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, Span, SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter

from .config import ClientConfig
from .context import ContextStore, default_store

_LOGGER = logging.getLogger(__name__)

CONFIG_KEY_ATTR = "abtrace.config_key"
SESSION_ID_ATTR = "abtrace.session_id"
CUSTOMER_ID_ATTR = "abtrace.customer_id"


class SessionSpanProcessor(SpanProcessor):
    """Stamps the ambient session identity onto every span at start."""

    def __init__(self, store: Optional[ContextStore] = None) -> None:
        self._store = store or default_store

    def on_start(self, span: Span, parent_context: Optional[Context] = None) -> None:
        session = self._store.get()
        if session is None:
            return
        span.set_attribute(CONFIG_KEY_ATTR, session.config_key)
        span.set_attribute(SESSION_ID_ATTR, session.session_id)
        if session.customer_id:
            span.set_attribute(CUSTOMER_ID_ATTR, session.customer_id)

    def on_end(self, span: ReadableSpan) -> None:
        return None

    def shutdown(self) -> None:
        return None

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return True


def configure_tracing(
    config: ClientConfig,
    *,
    span_exporter: Optional[SpanExporter] = None,
    store: Optional[ContextStore] = None,
    set_global: bool = True,
) -> TracerProvider:
    """Create a tracer provider that exports OTLP/HTTP spans to the collector."""

    if span_exporter is None:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

        span_exporter = OTLPSpanExporter(
            endpoint=config.to_traces_endpoint(),
            headers=config.auth_headers(),
            timeout=config.delivery_timeout,
        )

    provider = TracerProvider(resource=Resource.create({"service.name": config.service_name}))
    provider.add_span_processor(SessionSpanProcessor(store))
    provider.add_span_processor(BatchSpanProcessor(span_exporter))
    if set_global:
        trace.set_tracer_provider(provider)
    _LOGGER.debug("Tracing configured", extra={"endpoint": config.to_traces_endpoint()})
    return provider


__all__ = ["SessionSpanProcessor", "configure_tracing"]
