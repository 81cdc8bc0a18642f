# src/dbconnector/engine/scheduler.py
"""Traversal scheduling and shutdown.

Two daemon threads, one per schedule, wait on a shared stop event:

    full:        RUNNING -> SCHEDULED (wait interval) -> RUNNING -> ...
    incremental: RUNNING -> SCHEDULED (wait interval) -> RUNNING -> ...

Either schedule ends in STOPPED once shutdown is requested. In run-once
mode only the full schedule runs, exactly one cycle, then stops.

A failed cycle (query error) is logged and the schedule carries on with
its next cycle. An unexpected exception stops every schedule and is kept
in ``fatal_error`` for the caller.
"""

import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

import structlog

from dbconnector.contracts import QueryExecutionError, SchedulerStatus, TraversalAborted, TraversalKind
from dbconnector.engine.traversal import TraversalResult, TraversalRunner

logger = structlog.get_logger(__name__)


class TraversalScheduler:
    """Runs full and incremental traversals on independent intervals."""

    def __init__(
        self,
        runner: TraversalRunner,
        *,
        stop_event: threading.Event,
        full_interval_seconds: float,
        incremental_interval_seconds: float | None = None,
        run_once: bool = False,
    ) -> None:
        """Initialize the scheduler.

        Args:
            runner: Executes the cycles
            stop_event: Shared with the runner; set on shutdown
            full_interval_seconds: Delay between full traversals
            incremental_interval_seconds: Delay between incremental
                traversals; None disables the incremental schedule
            run_once: Run a single full traversal and stop
        """
        self._runner = runner
        self._stop_event = stop_event
        self._full_interval = full_interval_seconds
        self._incremental_interval = incremental_interval_seconds
        self._run_once = run_once
        # Reentrant: shutdown() may run in a signal handler on the main thread
        self._lock = threading.RLock()
        self._status = {TraversalKind.FULL: SchedulerStatus.IDLE, TraversalKind.INCREMENTAL: SchedulerStatus.IDLE}
        self._threads: list[threading.Thread] = []
        self._fatal_error: BaseException | None = None
        self._shutdown_reason: str | None = None
        self._last_results: dict[TraversalKind, TraversalResult] = {}

    @property
    def incremental_enabled(self) -> bool:
        return self._incremental_interval is not None and not self._run_once

    @property
    def fatal_error(self) -> BaseException | None:
        with self._lock:
            return self._fatal_error

    @property
    def shutdown_reason(self) -> str | None:
        with self._lock:
            return self._shutdown_reason

    def status(self, kind: TraversalKind) -> SchedulerStatus:
        with self._lock:
            return self._status[kind]

    def last_result(self, kind: TraversalKind) -> TraversalResult | None:
        with self._lock:
            return self._last_results.get(kind)

    def _set_status(self, kind: TraversalKind, status: SchedulerStatus) -> None:
        with self._lock:
            self._status[kind] = status

    def start(self) -> None:
        """Start the schedule threads.

        Raises:
            RuntimeError: If already started
        """
        if self._threads:
            raise RuntimeError("Scheduler already started")

        schedules: list[tuple[TraversalKind, Callable[[], TraversalResult], float]] = [
            (TraversalKind.FULL, self._runner.run_full, self._full_interval),
        ]
        if self.incremental_enabled:
            assert self._incremental_interval is not None
            schedules.append((TraversalKind.INCREMENTAL, self._runner.run_incremental, self._incremental_interval))
        else:
            self._set_status(TraversalKind.INCREMENTAL, SchedulerStatus.STOPPED)

        for kind, cycle, interval in schedules:
            thread = threading.Thread(
                target=self._loop,
                args=(kind, cycle, interval),
                name=f"dbconnector-{kind.value}",
                daemon=True,
            )
            self._threads.append(thread)
        for thread in self._threads:
            thread.start()
        logger.info(
            "scheduler_started",
            run_once=self._run_once,
            full_interval_seconds=self._full_interval,
            incremental_interval_seconds=self._incremental_interval if self.incremental_enabled else None,
        )

    def _loop(self, kind: TraversalKind, cycle: Callable[[], TraversalResult], interval: float) -> None:
        log = logger.bind(traversal=kind.value)
        try:
            while not self._stop_event.is_set():
                self._set_status(kind, SchedulerStatus.RUNNING)
                try:
                    result = cycle()
                except QueryExecutionError as e:
                    log.warning("traversal_cycle_failed", error=str(e), retry_in_seconds=interval)
                except TraversalAborted:
                    break
                else:
                    with self._lock:
                        self._last_results[kind] = result

                if self._run_once:
                    self.shutdown("run_once completed")
                    break
                self._set_status(kind, SchedulerStatus.SCHEDULED)
                # Returns early when shutdown is requested
                self._stop_event.wait(interval)
        except Exception as e:
            log.exception("traversal_schedule_crashed", error=str(e))
            with self._lock:
                if self._fatal_error is None:
                    self._fatal_error = e
            self.shutdown(f"{kind.value} schedule crashed: {type(e).__name__}")
        finally:
            self._set_status(kind, SchedulerStatus.STOPPED)

    def shutdown(self, reason: str) -> None:
        """Request shutdown. In-flight cycles stop at the next row boundary."""
        with self._lock:
            if self._shutdown_reason is None:
                self._shutdown_reason = reason
                logger.info("shutdown_requested", reason=reason)
        self._stop_event.set()

    def await_terminated(self, timeout: float | None = None) -> bool:
        """Wait for all schedule threads to finish.

        Args:
            timeout: Total seconds to wait; None waits indefinitely

        Returns:
            True if every thread finished within the timeout
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        return not any(thread.is_alive() for thread in self._threads)

    def wait_for_stop(self, poll_seconds: float = 0.5) -> None:
        """Block the calling thread until shutdown is requested.

        Polls so the main thread stays responsive to signal handlers.
        """
        while not self._stop_event.wait(poll_seconds):
            pass


@contextmanager
def shutdown_signal_handlers(on_signal: Callable[[str], Any]) -> Iterator[None]:
    """Install SIGINT/SIGTERM handlers that request a graceful shutdown.

    On first signal: calls on_signal with the signal name, restores the
    default SIGINT handler (so a second Ctrl-C force-kills via
    KeyboardInterrupt).

    Outside the main thread no handlers are installed: signal.signal()
    raises ValueError there.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, frame: Any) -> None:
        on_signal(signal.Signals(signum).name)
        signal.signal(signal.SIGINT, signal.default_int_handler)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)
