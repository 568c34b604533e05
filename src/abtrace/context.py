"""Ambient session and trace context.

Scoped values live in :class:`contextvars.ContextVar` slots. Every asyncio
task copies the context that was current when it was created, so work started
inside :meth:`ContextStore.run` keeps seeing that scope even after the
synchronous frame has returned, and two scopes interleaved on the same event
loop never observe each other.

Callers that never enter a scope share one process-wide fallback slot. That
slot is a plain attribute with no locking: concurrent writers race and the
last write wins.
"""

from __future__ import annotations

import inspect
import secrets
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, TypeVar

T = TypeVar("T")


def new_trace_id() -> str:
    """Return a random 128-bit trace id as 32 hex characters."""

    return secrets.token_hex(16)


def new_span_id() -> str:
    """Return a random 64-bit span id as 16 hex characters."""

    return secrets.token_hex(8)


@dataclass
class SessionContext:
    """Who the current call chain is for."""

    config_key: str
    session_id: str
    customer_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)

    def copy(self) -> "SessionContext":
        return replace(self, metadata=dict(self.metadata), tags=list(self.tags))


@dataclass(frozen=True)
class TraceContext:
    """Position of the current call chain inside a trace."""

    trace_id: str
    span_id: Optional[str] = None
    parent_span_id: Optional[str] = None

    def child(self, span_id: Optional[str] = None) -> "TraceContext":
        """Return the context of a span started underneath this one."""

        return TraceContext(
            trace_id=self.trace_id,
            span_id=span_id or new_span_id(),
            parent_span_id=self.span_id,
        )


@dataclass(frozen=True)
class PromptLink:
    """Prompt selection recorded on the next span."""

    prompt_key: str
    prompt_version: Optional[int] = None
    ab_test_key: Optional[str] = None
    variant_index: Optional[int] = None


class _PromptSlot:
    """Prompt link shared by every task that inherits it; cleared in place."""

    __slots__ = ("link",)

    def __init__(self, link: Optional[PromptLink]) -> None:
        self.link = link


class ContextStore:
    """Holds the ambient session/trace identity for the current call chain."""

    def __init__(self, name: str = "abtrace") -> None:
        self._session: ContextVar[Optional[SessionContext]] = ContextVar(f"{name}_session", default=None)
        self._trace: ContextVar[Optional[TraceContext]] = ContextVar(f"{name}_trace", default=None)
        self._prompt: ContextVar[Optional[_PromptSlot]] = ContextVar(f"{name}_prompt", default=None)
        # process-wide, unsynchronised, last write wins
        self._fallback_session: Optional[SessionContext] = None
        self._fallback_trace: Optional[TraceContext] = None

    # Session scope -------------------------------------------------------
    def run(
        self,
        context: SessionContext,
        fn: Callable[..., T],
        *args: Any,
        trace: Optional[TraceContext] = None,
        **kwargs: Any,
    ) -> T:
        """Execute ``fn`` with ``context`` bound as the ambient session.

        When ``fn`` returns an awaitable, the returned coroutine re-binds the
        scope for the whole await so that the work it performs, and every
        task it spawns, observes ``context``.
        """

        scoped = context.copy()
        if trace is None:
            trace = self._trace.get()
        session_token = self._session.set(scoped)
        trace_token = self._trace.set(trace)
        try:
            result = fn(*args, **kwargs)
        finally:
            self._trace.reset(trace_token)
            self._session.reset(session_token)
        if inspect.isawaitable(result):
            return self._bind(scoped, trace, result)  # type: ignore[return-value]
        return result

    async def _bind(self, scoped: SessionContext, trace: Optional[TraceContext], awaitable: Awaitable[T]) -> T:
        session_token = self._session.set(scoped)
        trace_token = self._trace.set(trace)
        try:
            return await awaitable
        finally:
            self._trace.reset(trace_token)
            self._session.reset(session_token)

    def set(
        self,
        config_key: str,
        session_id: str,
        *,
        customer_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
    ) -> None:
        """Update the active scope, or overwrite the fallback slot outside one."""

        scoped = self._session.get()
        if scoped is not None:
            scoped.config_key = config_key
            scoped.session_id = session_id
            if customer_id is not None:
                scoped.customer_id = customer_id
            if metadata is not None:
                scoped.metadata = dict(metadata)
            if tags is not None:
                scoped.tags = list(tags)
            return
        self._fallback_session = SessionContext(
            config_key=config_key,
            session_id=session_id,
            customer_id=customer_id,
            metadata=dict(metadata or {}),
            tags=list(tags or []),
        )

    def get(self) -> Optional[SessionContext]:
        scoped = self._session.get()
        if scoped is not None:
            return scoped
        return self._fallback_session

    def clear(self) -> None:
        """Reset the fallback slot. Scopes entered via :meth:`run` are untouched."""

        self._fallback_session = None
        self._fallback_trace = None

    def in_scope(self) -> bool:
        return self._session.get() is not None

    # Trace side ----------------------------------------------------------
    def get_trace(self) -> Optional[TraceContext]:
        scoped = self._trace.get()
        if scoped is not None:
            return scoped
        if self._session.get() is not None:
            return None
        return self._fallback_trace

    def set_trace(self, trace: TraceContext) -> None:
        if self._session.get() is not None:
            self._trace.set(trace)
        else:
            self._fallback_trace = trace

    @contextmanager
    def trace_scope(self, trace: TraceContext) -> Iterator[TraceContext]:
        """Make ``trace`` the ambient trace position until the block exits."""

        token = self._trace.set(trace)
        try:
            yield trace
        finally:
            self._trace.reset(token)

    # One-shot prompt linkage --------------------------------------------
    def set_prompt_link(self, link: PromptLink) -> None:
        """Attach ``link`` to the next span recorded in this call chain.

        Tasks spawned after this call share the link; whichever of them
        records a span first consumes it.
        """

        self._prompt.set(_PromptSlot(link))

    def pop_prompt_link(self) -> Optional[PromptLink]:
        slot = self._prompt.get()
        if slot is None:
            return None
        link, slot.link = slot.link, None
        return link


default_store = ContextStore()


def run_with_session(config_key: str, session_id: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run ``fn`` with a fresh session scope on the default store."""

    return default_store.run(SessionContext(config_key=config_key, session_id=session_id), fn, *args, **kwargs)


def set_session(config_key: str, session_id: str, *, customer_id: Optional[str] = None) -> None:
    default_store.set(config_key, session_id, customer_id=customer_id)


def get_session() -> Optional[SessionContext]:
    return default_store.get()


def clear_session() -> None:
    default_store.clear()


__all__ = [
    "ContextStore",
    "PromptLink",
    "SessionContext",
    "TraceContext",
    "clear_session",
    "default_store",
    "get_session",
    "new_span_id",
    "new_trace_id",
    "run_with_session",
    "set_session",
]
