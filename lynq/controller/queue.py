"""Asyncio work queue with per-key serialization and rate-limited requeue.

A key is queued at most once (``dirty``) and processed by at most one worker
at a time (``processing``).  A key added while it is being processed is
re-queued when its worker finishes, so the handler always sees the latest
state without two passes for the same object ever overlapping.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from lynq.controller.result import ReconcileResult
from lynq.errors import TransientAPIError
from lynq.observability import metrics
from lynq.observability.logging import get_logger

_logger = get_logger("workqueue")

DEFAULT_BASE_DELAY = 0.5
DEFAULT_MAX_DELAY = 300.0

Handler = Callable[[str], Awaitable[ReconcileResult]]


class WorkQueue:
    """Bounded pool of workers draining a deduplicating key queue."""

    def __init__(
        self,
        name: str,
        handler: Handler,
        workers: int = 1,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
    ) -> None:
        self.name = name
        self._handler = handler
        self._workers = max(1, workers)
        self._base_delay = base_delay
        self._max_delay = max_delay

        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._failures: dict[str, int] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: list[asyncio.Task[None]] = []
        self._shutting_down = False

    def __len__(self) -> int:
        return self._queue.qsize()

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def add(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.put_nowait(key)
        metrics.workqueue_depth.labels(name=self.name).set(self._queue.qsize())

    def add_after(self, key: str, delay: float) -> None:
        """Add *key* after *delay* seconds; the earliest pending deadline wins."""
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        existing = self._timers.get(key)
        if existing is not None:
            if existing.when() <= when:
                return
            existing.cancel()
        self._timers[key] = loop.call_at(when, self._fire, key)

    def add_rate_limited(self, key: str) -> float:
        """Requeue *key* with per-key exponential backoff; returns the delay."""
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        delay = min(self._base_delay * (2**failures), self._max_delay)
        metrics.workqueue_retries_total.labels(name=self.name).inc()
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        """Reset the backoff of *key*."""
        self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        return self._failures.get(key, 0)

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        self.add(key)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def start(self) -> None:
        for i in range(self._workers):
            self._tasks.append(asyncio.create_task(self._worker(), name=f"{self.name}-worker-{i}"))
        _logger.info("workqueue_started", queue=self.name, workers=self._workers)

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop accepting keys, cancel pending timers and wait for the workers."""
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.wait(self._tasks, timeout=timeout)
        self._tasks.clear()
        _logger.info("workqueue_stopped", queue=self.name)

    async def _worker(self) -> None:
        while True:
            key = await self._queue.get()
            self._dirty.discard(key)
            self._processing.add(key)
            metrics.workqueue_depth.labels(name=self.name).set(self._queue.qsize())
            try:
                await self._process(key)
            finally:
                self._processing.discard(key)
                if key in self._dirty and not self._shutting_down:
                    self._queue.put_nowait(key)
                self._queue.task_done()

    async def _process(self, key: str) -> None:
        try:
            result = await self._handler(key)
        except asyncio.CancelledError:
            raise
        except TransientAPIError as exc:
            delay = self.add_rate_limited(key)
            _logger.warning("reconcile_failed", queue=self.name, key=key, error=str(exc), retry_in=delay)
            return
        except Exception:
            delay = self.add_rate_limited(key)
            _logger.exception("reconcile_crashed", queue=self.name, key=key, retry_in=delay)
            return
        self.forget(key)
        if result.requeue_after is not None:
            self.add_after(key, result.requeue_after)

    async def join(self) -> None:
        """Wait until every queued key has been processed."""
        await self._queue.join()
