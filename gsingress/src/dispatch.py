from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from gsingress.src.metrics import METRICS


@dataclass(frozen=True)
class Deferred:
    """Returned by a task to finish its work with ``then`` after ``delay`` seconds.

    The worker is released for the wait and the key stays busy until ``then``
    has run.
    """

    delay: float
    then: Callable[[], Any]


@dataclass(frozen=True)
class _Task:
    key: str
    fn: Callable[[], Any]
    attempt: int = 1
    # Continuation of a deferred task; retries restart from ``fn``.
    step: Callable[[], Any] | None = None


def _always_retry(exc: BaseException) -> bool:
    return True


class KeyedDispatcher:
    """Runs submitted work on a bounded pool with per-key single flight.

    At most one task per key runs at a time.  A submission for a key that is
    already running is parked; a newer submission replaces the parked one, so
    the latest snapshot of an object always wins.  Unrelated keys run fully
    concurrently up to ``max_workers``.

    A task that raises is logged and, when ``should_retry`` allows it,
    resubmitted after a bounded exponential backoff
    (``retry_base_seconds * 2 ** (attempt - 1)``, capped at
    ``retry_max_seconds``) until ``max_retries`` attempts have been made.  A
    newer submission for the same key cancels any pending retry.

    A task may return a :class:`Deferred` to pause part way through.  The
    remainder runs on a timer-fed worker later, so a pause never holds a pool
    slot, and the key is not released in between.

    Exceptions never escape :meth:`submit`; callers on the watch thread are
    never blocked or told about task failures.
    """

    def __init__(
        self,
        max_workers: int = 16,
        max_retries: int = 5,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 30.0,
        should_retry: Callable[[BaseException], bool] = _always_retry,
        logger: logging.Logger | None = None,
        executor: Executor | None = None,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ) -> None:
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.should_retry = should_retry
        self.logger = logger or logging.getLogger(__name__)
        self.timer_factory = timer_factory
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="reconcile"
        )

        self._lock = threading.Lock()
        self._running: set[str] = set()
        self._parked: dict[str, _Task] = {}
        self._retry_tasks: dict[str, _Task] = {}
        self._retry_timers: dict[str, threading.Timer] = {}
        self._deferred_timers: dict[str, threading.Timer] = {}
        self._stopped = False

    def submit(self, key: str, fn: Callable[[], Any]) -> None:
        """Schedule *fn* for *key*; returns immediately."""
        with self._lock:
            timer = self._retry_timers.pop(key, None)
            self._retry_tasks.pop(key, None)
        if timer is not None:
            timer.cancel()
            self.logger.debug("Pending retry for %s superseded by a new submission", key)
        self._enqueue(_Task(key=key, fn=fn))

    def is_busy(self, key: str) -> bool:
        with self._lock:
            return key in self._running or key in self._parked or key in self._retry_tasks

    def retry_delay(self, attempt: int) -> float:
        return min(self.retry_max_seconds, self.retry_base_seconds * float(2 ** (attempt - 1)))

    def _enqueue(self, task: _Task) -> None:
        with self._lock:
            if self._stopped:
                self.logger.debug("Dispatcher stopped; dropping work for %s", task.key)
                return
            if task.key in self._running:
                if task.key in self._parked:
                    METRICS.pipelines_coalesced_total.inc()
                self._parked[task.key] = task
                return
            self._running.add(task.key)
        self._start(task)

    def _start(self, task: _Task) -> None:
        try:
            self._executor.submit(self._run, task)
        except RuntimeError:
            # Executor already shut down.
            with self._lock:
                self._running.discard(task.key)
                self._parked.pop(task.key, None)
            self.logger.warning("Executor unavailable; dropping work for %s", task.key)

    def _run(self, task: _Task) -> None:
        METRICS.inflight_pipelines.inc()
        error: BaseException | None = None
        result: Any = None
        try:
            result = task.step() if task.step is not None else task.fn()
        except Exception as exc:
            error = exc
            self.logger.exception("Reconcile of %s failed (attempt %d)", task.key, task.attempt)
        finally:
            METRICS.inflight_pipelines.dec()

        if isinstance(result, Deferred) and self._defer(task, result):
            return

        with self._lock:
            parked = self._parked.pop(task.key, None)
            if parked is None:
                self._running.discard(task.key)
            if error is not None and parked is None and not self._stopped:
                self._schedule_retry(task, error)

        if parked is not None:
            self._start(parked)

    def _defer(self, task: _Task, deferred: Deferred) -> bool:
        """Arm a timer for the rest of *task*; False when the dispatcher is stopping."""
        delay = max(0.0, deferred.delay)
        resume = _Task(key=task.key, fn=task.fn, attempt=task.attempt, step=deferred.then)
        with self._lock:
            if self._stopped:
                return False
            timer = self.timer_factory(delay, self._fire_deferred, args=(resume,))
            timer.daemon = True
            self._deferred_timers[task.key] = timer
        self.logger.debug("Resuming %s in %.3fs", task.key, delay)
        timer.start()
        return True

    def _fire_deferred(self, task: _Task) -> None:
        with self._lock:
            if self._deferred_timers.pop(task.key, None) is None:
                return
        # The key never left ``_running``; start directly so parked work stays parked.
        self._start(task)

    def _schedule_retry(self, task: _Task, error: BaseException) -> None:
        """Arm a retry timer for a failed task. Caller holds ``_lock``."""
        if not self.should_retry(error):
            self.logger.warning("Not retrying %s: error is not retryable", task.key)
            METRICS.dropped_pipelines_total.inc()
            return
        if task.attempt >= self.max_retries:
            self.logger.error(
                "Giving up on %s after %d attempt(s); waiting for the next notification",
                task.key,
                task.attempt,
            )
            METRICS.dropped_pipelines_total.inc()
            return

        delay = self.retry_delay(task.attempt)
        retry = _Task(key=task.key, fn=task.fn, attempt=task.attempt + 1)
        timer = self.timer_factory(delay, self._fire_retry, args=(retry,))
        timer.daemon = True
        self._retry_tasks[task.key] = retry
        self._retry_timers[task.key] = timer
        METRICS.retries_total.inc()
        self.logger.warning(
            "Scheduling retry attempt %d for %s in %.1fs", retry.attempt, task.key, delay
        )
        timer.start()

    def _fire_retry(self, task: _Task) -> None:
        with self._lock:
            if self._retry_tasks.get(task.key) is not task:
                return
            self._retry_tasks.pop(task.key, None)
            self._retry_timers.pop(task.key, None)
        self._enqueue(task)

    def shutdown(self, wait: bool = True) -> None:
        """Cancel pending retries, deferred steps and parked work, then stop the pool."""
        with self._lock:
            self._stopped = True
            timers = list(self._retry_timers.values())
            self._retry_timers.clear()
            self._retry_tasks.clear()
            deferred = list(self._deferred_timers.values())
            self._running.difference_update(self._deferred_timers)
            self._deferred_timers.clear()
            dropped = len(self._parked)
            self._parked.clear()
        for timer in timers + deferred:
            timer.cancel()
        if dropped or timers or deferred:
            self.logger.warning(
                "Dispatcher stopping with %d parked, %d delayed and %d retrying "
                "pipeline(s) abandoned",
                dropped,
                len(deferred),
                len(timers),
            )
        self._executor.shutdown(wait=wait, cancel_futures=True)
