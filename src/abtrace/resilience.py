"""Timeout and fire-and-forget helpers shared by assignment and delivery.

Nothing on the request path is retried. Work that exceeds its bound is
abandoned: the caller stops waiting, but the underlying operation is not
cancelled and its eventual outcome is discarded.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from concurrent.futures import Future, wait
from typing import Any, Awaitable, Callable, Optional, Set, TypeVar

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def _consume_result(future: "asyncio.Future[Any]") -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        _LOGGER.debug("Abandoned operation finished with an error", exc_info=exc)


async def bounded(awaitable: Awaitable[T], timeout: float) -> T:
    """Await ``awaitable`` for at most ``timeout`` seconds.

    Raises :class:`asyncio.TimeoutError` when the bound is exceeded. The inner
    work is shielded so the timeout abandons it instead of cancelling it.
    """

    inner = asyncio.ensure_future(awaitable)
    try:
        return await asyncio.wait_for(asyncio.shield(inner), timeout)
    except asyncio.TimeoutError:
        inner.add_done_callback(_consume_result)
        raise


class BackgroundDispatcher:
    """Runs delivery callables without blocking or raising into the caller.

    Every job runs on its own daemon thread, so a hung collector can neither
    hold up the event loop nor keep the interpreter alive at exit. At most
    ``max_workers`` jobs send at once; a job that cannot get a slot within
    ``timeout`` is dropped. Inside a running loop the job is also tracked as
    a task that stops waiting after ``timeout``. Failures of any kind are
    logged at debug level and dropped.
    """

    def __init__(self, *, timeout: float = 5.0, max_workers: int = 4) -> None:
        self._timeout = timeout
        self._slots = threading.BoundedSemaphore(max_workers)
        self._tasks: Set[asyncio.Task[None]] = set()
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def timeout(self) -> float:
        return self._timeout

    def submit(self, job: Callable[[float], None], *, label: str = "job") -> None:
        """Schedule ``job(timeout)``; never raises."""

        if self._closed:
            _LOGGER.debug("Dispatcher closed; dropping %s", label)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        try:
            future = self._spawn(job, label)
            if loop is not None:
                task = loop.create_task(self._watch(future, label))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        except Exception:  # noqa: BLE001 - dispatch must never fail the caller
            _LOGGER.debug("Failed to schedule %s", label, exc_info=True)

    def _spawn(self, job: Callable[[float], None], label: str) -> Future:
        future: Future = Future()
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

        def _target() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                if not self._slots.acquire(timeout=self._timeout):
                    _LOGGER.debug("No delivery slot for %s within %.1fs; dropped", label, self._timeout)
                    return
                try:
                    job(self._timeout)
                finally:
                    self._slots.release()
            except Exception:  # noqa: BLE001 - best-effort delivery
                _LOGGER.debug("%s failed", label, exc_info=True)
            finally:
                future.set_result(None)

        threading.Thread(target=_target, name=f"abtrace-delivery {label}", daemon=True).start()
        return future

    async def _watch(self, future: Future, label: str) -> None:
        loop = asyncio.get_running_loop()
        done = loop.create_future()

        def _settle() -> None:
            if not done.done():
                done.set_result(None)

        def _notify(_: Future) -> None:
            try:
                loop.call_soon_threadsafe(_settle)
            except RuntimeError:
                _LOGGER.debug("Event loop closed before %s finished", label)

        future.add_done_callback(_notify)
        try:
            await bounded(done, self._timeout)
        except asyncio.TimeoutError:
            _LOGGER.debug("%s abandoned after %.1fs", label, self._timeout)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    async def flush(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight jobs, up to ``timeout``."""

        limit = self._timeout if timeout is None else timeout
        deadline = time.monotonic() + limit
        with self._lock:
            pending = list(self._pending)
        if pending:
            await asyncio.to_thread(wait, pending, limit)
        tasks = list(self._tasks)
        if tasks:
            await asyncio.wait(tasks, timeout=max(deadline - time.monotonic(), 0.0))

    def flush_sync(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, self._timeout if timeout is None else timeout)

    def shutdown(self) -> None:
        """Stop accepting jobs. Jobs still sending are abandoned, not joined."""

        self._closed = True


__all__ = ["BackgroundDispatcher", "bounded"]
