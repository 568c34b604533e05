"""Span recording around LLM calls and custom units of work."""

from __future__ import annotations

import functools
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from .adapters import CallKind, CapturedCall, MappingAdapter, ProviderAdapter
from .context import ContextStore, SessionContext, TraceContext, default_store, new_span_id, new_trace_id
from .redaction import RedactionProfile, to_json
from .resilience import BackgroundDispatcher
from .spans import SpanKind, SpanRecord, SpanStatus
from .transport import SpanTransport

_LOGGER = logging.getLogger(__name__)

SPAN_SCHEMA_VERSION = "2"

SDK_VERSION_ATTR = "abtrace.sdk_version"
METHOD_ATTR = "abtrace.method"
RAW_REQUEST_ATTR = "abtrace.raw.request"
RAW_RESPONSE_ATTR = "abtrace.raw.response"
RAW_USAGE_ATTR = "abtrace.raw.usage"
RAW_METADATA_ATTR = "abtrace.raw.metadata"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ActiveSpan:
    """State captured when a unit of work starts."""

    name: str
    kind: str
    trace: TraceContext
    started_at: datetime
    session: Optional[SessionContext] = None
    model: Optional[str] = None

    @property
    def span_id(self) -> str:
        return self.trace.span_id or ""


class SpanRecorder:
    """Builds span records from call metadata and ships them in the background.

    No public method raises because of telemetry problems: a span that
    cannot be built or delivered is logged at debug level and dropped.
    """

    def __init__(
        self,
        transport: SpanTransport,
        *,
        store: Optional[ContextStore] = None,
        dispatcher: Optional[BackgroundDispatcher] = None,
        capture_content: bool = True,
        debug: bool = False,
        adapter: Optional[ProviderAdapter] = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._transport = transport
        self._store = store or default_store
        self._dispatcher = dispatcher or BackgroundDispatcher()
        self._adapter: ProviderAdapter = adapter or MappingAdapter()
        self._clock = clock
        self.capture_content = capture_content
        self.debug = debug

    @property
    def store(self) -> ContextStore:
        return self._store

    # Lifecycle -----------------------------------------------------------
    def start(self, name: str, *, kind: str | SpanKind = SpanKind.LLM, model: Optional[str] = None) -> ActiveSpan:
        """Capture start time and mint ids from the ambient trace position."""

        parent = self._store.get_trace()
        if parent is None:
            trace = TraceContext(trace_id=new_trace_id(), span_id=new_span_id())
        else:
            trace = parent.child()
        session = self._store.get()
        return ActiveSpan(
            name=name,
            kind=str(getattr(kind, "value", kind)),
            trace=trace,
            started_at=self._clock(),
            session=session.copy() if session is not None else None,
            model=model,
        )

    def finish(
        self,
        active: ActiveSpan,
        *,
        request: Any = None,
        response: Any = None,
        result: Any = None,
        error: Optional[BaseException] = None,
        model_id: Optional[str] = None,
        usage: Optional[Mapping[str, Any]] = None,
        metrics: Optional[Mapping[str, Any]] = None,
        method: Optional[str] = None,
    ) -> Optional[SpanRecord]:
        """Build the record for ``active`` and dispatch it."""

        try:
            record = self._build(
                active,
                request=request,
                response=response,
                result=result,
                error=error,
                model_id=model_id,
                usage=usage,
                metrics=metrics,
                method=method,
            )
        except Exception:  # noqa: BLE001 - telemetry must not break the caller
            _LOGGER.debug("Failed to build span %s", active.name, exc_info=True)
            return None
        self.dispatch(record)
        return record

    def record_call(
        self,
        call: CapturedCall,
        active: ActiveSpan,
        *,
        metrics: Optional[Mapping[str, Any]] = None,
        adapter: Optional[ProviderAdapter] = None,
    ) -> Optional[SpanRecord]:
        """Record a call captured by an instrumentation adapter."""

        adapter = adapter or self._adapter
        try:
            params = call.request_params or {}
            model = call.model_id or adapter.model_id(params, call.result)
            request = dict(adapter.request_view(call.kind, params))
            request.setdefault("model", model)
            response = None if call.failed else adapter.response_view(call.kind, call.result)
            usage = None if call.failed else adapter.usage(call.result)
        except Exception:  # noqa: BLE001 - adapters are external code
            _LOGGER.debug("Adapter failed to describe %s call", call.kind.value, exc_info=True)
            return None
        return self.finish(
            active,
            request=request,
            response=response,
            result=call.result,
            error=call.error,
            model_id=model,
            usage=usage,
            metrics=metrics,
            method=call.kind.value,
        )

    def record_metrics(
        self,
        data: Mapping[str, Any],
        *,
        config_key: Optional[str] = None,
        session_id: Optional[str] = None,
        name: str = "metrics",
    ) -> Optional[SpanRecord]:
        """Record caller-supplied business metrics as a custom span.

        Explicit identifiers override the ambient session. Without either the
        span is still sent; the collector treats the session as unknown.
        """

        active = self.start(name, kind=SpanKind.CUSTOM)
        session = active.session
        if config_key or session_id:
            session = SessionContext(
                config_key=config_key or (session.config_key if session else ""),
                session_id=session_id or (session.session_id if session else ""),
                customer_id=session.customer_id if session else None,
            )
            active = ActiveSpan(
                name=active.name,
                kind=active.kind,
                trace=active.trace,
                started_at=active.started_at,
                session=session,
            )
        if session is None:
            _LOGGER.debug("Recording metrics without session context")
        return self.finish(active, metrics=data, method="span")

    def dispatch(self, record: SpanRecord) -> None:
        """Hand ``record`` to the background dispatcher; never blocks or raises."""

        try:
            payload = record.to_payload()
        except Exception:  # noqa: BLE001
            _LOGGER.debug("Failed to serialise span %s", record.span_id, exc_info=True)
            return
        if self.debug:
            _LOGGER.debug("Dispatching span", extra={"span": payload})
        self._dispatcher.submit(functools.partial(self._deliver, payload), label=f"span {record.span_id}")

    def _deliver(self, payload: Mapping[str, Any], timeout: float) -> None:
        self._transport.send(payload, timeout=timeout)

    async def flush(self, timeout: Optional[float] = None) -> None:
        await self._dispatcher.flush(timeout)

    def flush_sync(self, timeout: Optional[float] = None) -> None:
        self._dispatcher.flush_sync(timeout)

    def shutdown(self) -> None:
        self._dispatcher.shutdown()

    # Decorator -----------------------------------------------------------
    def instrument(
        self,
        name: Optional[str] = None,
        *,
        call_kind: CallKind = CallKind.CUSTOM,
        kind: str | SpanKind = SpanKind.LLM,
        adapter: Optional[ProviderAdapter] = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Wrap a sync or async LLM call so each invocation produces a span.

        The request parameters are taken from the first positional argument
        when it is a mapping, otherwise from the keyword arguments. While the
        call runs, its span is the ambient parent for nested spans.
        """

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            if name:
                span_name = name
            elif call_kind is CallKind.CUSTOM:
                span_name = func.__name__
            else:
                span_name = call_kind.value

            def _params(args: tuple, kwargs: Dict[str, Any]) -> Mapping[str, Any]:
                if args and isinstance(args[0], Mapping):
                    return args[0]
                return kwargs

            def _complete(active: ActiveSpan, params: Mapping[str, Any], result: Any, error: Optional[BaseException]) -> None:
                self.record_call(
                    CapturedCall(kind=call_kind, request_params=params, result=result, error=error),
                    active,
                    adapter=adapter,
                )

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                params = _params(args, kwargs)
                active = self.start(span_name, kind=kind)
                with self._store.trace_scope(active.trace):
                    try:
                        result = await func(*args, **kwargs)
                    except Exception as exc:
                        _complete(active, params, None, exc)
                        raise
                _complete(active, params, result, None)
                return result

            @functools.wraps(func)
            def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
                params = _params(args, kwargs)
                active = self.start(span_name, kind=kind)
                with self._store.trace_scope(active.trace):
                    try:
                        result = func(*args, **kwargs)
                    except Exception as exc:
                        _complete(active, params, None, exc)
                        raise
                _complete(active, params, result, None)
                return result

            return async_wrapper if inspect.iscoroutinefunction(func) else sync_wrapper

        return decorator

    # Internal helpers ----------------------------------------------------
    def _build(
        self,
        active: ActiveSpan,
        *,
        request: Any,
        response: Any,
        result: Any,
        error: Optional[BaseException],
        model_id: Optional[str],
        usage: Optional[Mapping[str, Any]],
        metrics: Optional[Mapping[str, Any]],
        method: Optional[str],
    ) -> SpanRecord:
        ended_at = self._clock()
        attributes: Dict[str, Any] = {
            SDK_VERSION_ATTR: SPAN_SCHEMA_VERSION,
            METHOD_ATTR: method or active.name,
        }
        if self.capture_content:
            if request is not None:
                attributes[RAW_REQUEST_ATTR] = to_json(request, RedactionProfile.FULL)
            if response is not None and error is None:
                attributes[RAW_RESPONSE_ATTR] = to_json(response, RedactionProfile.FULL)
        if usage:
            attributes[RAW_USAGE_ATTR] = to_json(usage, RedactionProfile.FULL)
        if self.debug and result is not None and error is None:
            attributes[RAW_METADATA_ATTR] = to_json(result, RedactionProfile.METADATA)
        if metrics:
            attributes.update(metrics)

        link = self._store.pop_prompt_link()
        session = active.session
        return SpanRecord(
            name=active.name,
            kind=active.kind,
            trace_id=active.trace.trace_id,
            span_id=active.span_id,
            parent_span_id=active.trace.parent_span_id,
            start_time=active.started_at,
            end_time=max(ended_at, active.started_at),
            status=SpanStatus.ERROR if error is not None else SpanStatus.OK,
            model=model_id or active.model,
            config_key=session.config_key if session else None,
            session_id=session.session_id if session else None,
            customer_id=session.customer_id if session else None,
            error_message=str(error) if error is not None else None,
            attributes=attributes,
            prompt_key=link.prompt_key if link else None,
            prompt_version=link.prompt_version if link else None,
            ab_test_key=link.ab_test_key if link else None,
            variant_index=link.variant_index if link else None,
        )


__all__ = ["ActiveSpan", "SpanRecorder", "SPAN_SCHEMA_VERSION"]
