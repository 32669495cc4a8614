"""Asyncio reconcile loop.

Keys are ``(kind, namespace, name)``.  A key is never reconciled by two
workers at once; enqueueing a key that is already queued is a no-op, and
enqueueing a key that is being processed schedules exactly one more pass
after the current one.  Reconcilers are synchronous and run in a worker
thread, so ``enqueue`` may be called from any thread.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable, Mapping

import structlog

from fleetguard.controller.outcome import ReconcileOutcome
from fleetguard.observability.logging import reconcile_context
from fleetguard.observability.metrics import reconcile_duration_seconds, reconcile_total

_log = structlog.get_logger(component="loop")

Key = tuple[str, str, str]
Reconciler = Callable[[str, str], ReconcileOutcome]

BASE_DELAY = 1.0
MAX_DELAY = 300.0


def backoff_delay(failures: int, base: float = BASE_DELAY, cap: float = MAX_DELAY) -> float:
    """Exponential per-key retry delay: base, 2*base, 4*base ... capped."""
    if failures <= 0:
        return 0.0
    return min(base * (2 ** (failures - 1)), cap)


class ReconcileLoop:
    def __init__(
        self,
        reconcilers: Mapping[str, Reconciler],
        workers: int = 2,
        base_delay: float = BASE_DELAY,
        max_delay: float = MAX_DELAY,
    ) -> None:
        self._reconcilers = dict(reconcilers)
        self._worker_count = workers
        self._base_delay = base_delay
        self._max_delay = max_delay

        self._queue: asyncio.Queue[Key] = asyncio.Queue()
        self._pending: set[Key] = set()
        self._processing: set[Key] = set()
        self._dirty: set[Key] = set()
        self._timers: dict[Key, asyncio.TimerHandle] = {}
        self._failures: dict[Key, int] = {}
        self._backlog: list[Key] = []
        self._idle = asyncio.Event()
        self._idle.set()

        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread_id: int | None = None
        self._workers: list[asyncio.Task[None]] = []
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._loop = asyncio.get_running_loop()
        self._thread_id = threading.get_ident()
        self._running = True
        for i in range(self._worker_count):
            self._workers.append(asyncio.create_task(self._worker(), name=f"fleetguard-reconcile-{i}"))
        backlog, self._backlog = self._backlog, []
        for key in backlog:
            self._add(key)
        _log.info("reconcile_loop_started", workers=self._worker_count)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        _log.info("reconcile_loop_stopped")

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def enqueue(self, kind: str, namespace: str, name: str, delay: float = 0.0) -> None:
        """Request a reconcile of the given key.  Safe to call from any thread."""
        key = (kind, namespace, name)
        if self._loop is None:
            self._backlog.append(key)
            return
        if threading.get_ident() == self._thread_id:
            self._schedule(key, delay)
        else:
            self._loop.call_soon_threadsafe(self._schedule, key, delay)

    async def wait_idle(self, timeout: float = 5.0) -> None:
        """Wait until no key is queued or being processed.

        Delayed requeues do not count as pending work.
        """
        await asyncio.wait_for(self._idle.wait(), timeout=timeout)

    def failures(self, kind: str, namespace: str, name: str) -> int:
        return self._failures.get((kind, namespace, name), 0)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _schedule(self, key: Key, delay: float) -> None:
        if delay <= 0:
            self._add(key)
            return
        assert self._loop is not None
        existing = self._timers.get(key)
        when = self._loop.time() + delay
        if existing is not None:
            if existing.when() <= when:
                return
            existing.cancel()
        self._timers[key] = self._loop.call_at(when, self._fire, key)

    def _fire(self, key: Key) -> None:
        self._timers.pop(key, None)
        self._add(key)

    def _add(self, key: Key) -> None:
        if not self._running:
            self._backlog.append(key)
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._pending:
            return
        self._pending.add(key)
        self._idle.clear()
        self._queue.put_nowait(key)

    async def _worker(self) -> None:
        while True:
            key = await self._queue.get()
            self._pending.discard(key)
            self._processing.add(key)
            try:
                outcome = await asyncio.to_thread(self._run, key)
                self._handle(key, outcome)
            finally:
                self._processing.discard(key)
                self._queue.task_done()
                if key in self._dirty:
                    self._dirty.discard(key)
                    self._add(key)
                if not self._pending and not self._processing:
                    self._idle.set()

    def _run(self, key: Key) -> ReconcileOutcome:
        kind, namespace, name = key
        reconciler = self._reconcilers.get(kind)
        if reconciler is None:
            _log.warning("reconciler_not_registered", kind=kind, namespace=namespace, name=name)
            return ReconcileOutcome()
        with reconcile_duration_seconds.labels(kind=kind).time(), reconcile_context(kind, namespace, name):
            try:
                return reconciler(namespace, name)
            except Exception as exc:
                _log.exception("reconcile_crashed", kind=kind, namespace=namespace, name=name)
                return ReconcileOutcome(error=f"{type(exc).__name__}: {exc}")

    def _handle(self, key: Key, outcome: ReconcileOutcome) -> None:
        kind, namespace, name = key
        if outcome.error:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
            delay = backoff_delay(failures, self._base_delay, self._max_delay)
            reconcile_total.labels(kind=kind, result="error").inc()
            _log.warning(
                "reconcile_failed",
                kind=kind,
                namespace=namespace,
                name=name,
                error=outcome.error,
                failures=failures,
                retry_in=delay,
            )
            self._schedule(key, delay)
            return

        self._failures.pop(key, None)
        if outcome.requeue_after is not None:
            reconcile_total.labels(kind=kind, result="requeue").inc()
            self._schedule(key, max(outcome.requeue_after, 0.001))
            return
        reconcile_total.labels(kind=kind, result="success").inc()
