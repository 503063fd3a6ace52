"""
Sync scheduler for background tenant synchronization.

Provides a SyncScheduler class that manages:
- Incremental syncs on a short cadence and full syncs on a long one
- Run statistics, recent errors and a health verdict for monitoring
- Manual sync triggers for the admin endpoints and CLI
- Signal handling for graceful shutdown (SIGTERM/SIGINT) in the foreground
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable

from tenant_sync.sync.engine import RunStatus, SyncKind, SyncRun

if TYPE_CHECKING:
    from tenant_sync.sync.engine import SyncEngine

logger = logging.getLogger(__name__)

# Number of error strings kept for the status endpoint
RECENT_ERRORS_LIMIT = 10

# Failure rate above which the scheduler reports unhealthy
MAX_FAILURE_RATE = 0.25

# Longest single wait in the scheduler loop, so clock jumps are noticed
MAX_WAIT_SECONDS = 60.0


def _local_now() -> datetime:
    return datetime.now().astimezone()


@dataclass
class SchedulerStats:
    """
    Statistics from scheduled and manual sync runs.

    Runs rejected by single-flight are not counted.
    """

    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    total_runs: int = 0
    failed_runs: int = 0
    last_full: SyncRun | None = None
    last_incremental: SyncRun | None = None
    last_completed_at: datetime | None = None
    incremental_anchor: datetime | None = None
    recent_errors: deque[str] = field(
        default_factory=lambda: deque(maxlen=RECENT_ERRORS_LIMIT)
    )

    @property
    def failure_rate(self) -> float:
        if self.total_runs == 0:
            return 0.0
        return self.failed_runs / self.total_runs


class SyncScheduler:
    """
    Scheduler for incremental and full sync runs.

    Usage:
        scheduler = SyncScheduler(engine, incremental_interval=1800)

        # Background thread (web server)
        scheduler.start()
        ...
        scheduler.stop()

        # Foreground (blocks until SIGTERM/SIGINT)
        scheduler.run()

    Attributes:
        incremental_interval: Seconds between incremental runs
        full_interval: Seconds between full runs
        stats: Run statistics
    """

    def __init__(
        self,
        engine: SyncEngine,
        incremental_interval: int = 30 * 60,
        full_interval: int = 24 * 3600,
        incremental_lookback: int = 2 * 3600,
        max_staleness: int = 2 * 3600,
        active_hours: tuple[int, int] = (9, 18),
        run_immediately: bool = True,
        clock: Callable[[], datetime] = _local_now,
    ):
        """
        Initialize the scheduler.

        Args:
            engine: Sync engine to drive
            incremental_interval: Seconds between incremental runs
            full_interval: Seconds between full runs
            incremental_lookback: Window of the first incremental run, seconds
            max_staleness: Longest acceptable gap between completed runs
                           during active hours, seconds
            active_hours: (start, end) local hours when staleness matters
            run_immediately: Run once on start before waiting
            clock: Returns the current time (timezone-aware)
        """
        if incremental_interval <= 0 or full_interval <= 0:
            raise ValueError("Sync intervals must be positive")
        self.engine = engine
        self.incremental_interval = incremental_interval
        self.full_interval = full_interval
        self.incremental_lookback = incremental_lookback
        self.max_staleness = max_staleness
        self.active_hours = active_hours
        self.run_immediately = run_immediately
        self._clock = clock
        self._stats_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._running = False
        self._original_handlers: dict[int, Any] = {}
        self.stats = SchedulerStats()

    # =========================================================================
    # Running syncs
    # =========================================================================

    def next_since(self, now: datetime | None = None) -> datetime:
        """
        Lower bound for the next incremental run.

        The start of the last completed run, or now minus the lookback
        window when nothing has completed yet.
        """
        with self._stats_lock:
            anchor = self.stats.incremental_anchor
        if anchor is not None:
            return anchor
        now = now or self._clock()
        return now - timedelta(seconds=self.incremental_lookback)

    def trigger_manual_sync(
        self, kind: SyncKind | str, since: datetime | None = None
    ) -> SyncRun:
        """
        Run a sync now and record it in the statistics.

        Args:
            kind: "full" or "incremental"
            since: Override for the incremental lower bound

        Raises:
            ValueError: If kind is not a sync kind
        """
        kind = SyncKind(kind)
        logger.info(f"Manual {kind.value} sync triggered")
        return self._run_sync(kind, since)

    def _run_sync(self, kind: SyncKind, since: datetime | None = None) -> SyncRun:
        if kind == SyncKind.FULL:
            run = self.engine.run_full()
        else:
            run = self.engine.run_incremental(since or self.next_since())
        self._record(run)
        return run

    def _record(self, run: SyncRun) -> None:
        if run.status == RunStatus.ALREADY_IN_PROGRESS:
            logger.info(f"Skipped {run.kind.value} sync: another sync is running")
            return

        with self._stats_lock:
            stats = self.stats
            stats.total_runs += 1
            if not run.success:
                stats.failed_runs += 1
            stamp = (run.finished_at or run.started_at).isoformat()
            for error in run.errors:
                stats.recent_errors.append(f"[{run.kind.value} {stamp}] {error}")

            if run.kind == SyncKind.FULL:
                stats.last_full = run
            else:
                stats.last_incremental = run

            if run.status == RunStatus.COMPLETED:
                stats.last_completed_at = run.finished_at or run.started_at
                # A completed run of either kind covers everything edited
                # before it started
                if (
                    stats.incremental_anchor is None
                    or run.started_at > stats.incremental_anchor
                ):
                    stats.incremental_anchor = run.started_at

        if run.success:
            logger.info(f"{run.kind.value} sync completed successfully")
        else:
            logger.warning(
                f"{run.kind.value} sync {run.status.value} with "
                f"{len(run.errors)} error(s)"
            )

    # =========================================================================
    # Status and health
    # =========================================================================

    def get_last_sync_stats(self) -> dict[str, Any]:
        """Snapshot of run statistics for the status endpoint."""
        with self._stats_lock:
            stats = self.stats
            return {
                "last_full": stats.last_full.to_dict() if stats.last_full else None,
                "last_incremental": (
                    stats.last_incremental.to_dict() if stats.last_incremental else None
                ),
                "last_completed_at": (
                    stats.last_completed_at.isoformat()
                    if stats.last_completed_at
                    else None
                ),
                "totals": {
                    "runs": stats.total_runs,
                    "failed": stats.failed_runs,
                },
                "failure_rate": round(stats.failure_rate, 4),
                "recent_errors": list(stats.recent_errors),
                "running": self.engine.is_running,
                "scheduler_active": self.is_running(),
            }

    def in_active_hours(self, now: datetime) -> bool:
        start, end = self.active_hours
        return start <= now.hour < end

    def is_healthy(self, now: datetime | None = None) -> bool:
        """
        Health verdict for monitoring.

        Unhealthy when no run has ever completed, when the last completed
        run is older than max_staleness during active hours, or when more
        than 25% of runs failed.
        """
        now = now or self._clock()
        with self._stats_lock:
            last_completed = self.stats.last_completed_at
            failure_rate = self.stats.failure_rate

        if last_completed is None:
            return False
        if self.in_active_hours(now):
            if now - last_completed > timedelta(seconds=self.max_staleness):
                return False
        return failure_rate <= MAX_FAILURE_RATE

    # =========================================================================
    # Loop
    # =========================================================================

    def _initial_run(self) -> None:
        # An empty registry needs the whole collection, not a lookback window
        if self.engine.db.get_tenant_count() == 0:
            self._run_sync(SyncKind.FULL)
        else:
            self._run_sync(SyncKind.INCREMENTAL)

    def _run_scheduled(self, kind: SyncKind | None = None) -> None:
        """
        Run one scheduled sync without letting an exception end the loop.

        Args:
            kind: Sync kind, or None for the initial run
        """
        label = kind.value if kind is not None else "initial"
        try:
            if kind is None:
                self._initial_run()
            else:
                self._run_sync(kind)
        except Exception as e:
            logger.exception(f"Scheduled {label} sync failed with exception: {e}")
            self._record_exception(label, e)

    def _record_exception(self, label: str, error: Exception) -> None:
        with self._stats_lock:
            self.stats.total_runs += 1
            self.stats.failed_runs += 1
            stamp = self._clock().isoformat()
            self.stats.recent_errors.append(
                f"[{label} {stamp}] {type(error).__name__}: {error}"
            )

    def _loop(self) -> None:
        self._running = True
        try:
            now = time.time()
            next_incremental = now + self.incremental_interval
            next_full = now + self.full_interval

            if self.run_immediately and not self._stop_event.is_set():
                self._run_scheduled()

            while not self._stop_event.is_set():
                now = time.time()
                if now >= next_full:
                    self._run_scheduled(SyncKind.FULL)
                    next_full = time.time() + self.full_interval
                    next_incremental = time.time() + self.incremental_interval
                    continue
                if now >= next_incremental:
                    self._run_scheduled(SyncKind.INCREMENTAL)
                    next_incremental = time.time() + self.incremental_interval
                    continue

                wait = min(next_incremental, next_full) - now
                self._stop_event.wait(min(max(wait, 0.0), MAX_WAIT_SECONDS))
        finally:
            self._running = False
            logger.info("Sync scheduler stopped")

    def start(self) -> None:
        """Run the scheduler loop in a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.debug("Scheduler thread already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, name="tenant-sync-scheduler", daemon=True
        )
        self._thread.start()
        logger.info(
            f"Sync scheduler started (incremental every "
            f"{self.incremental_interval}s, full every {self.full_interval}s)"
        )

    def run(self) -> None:
        """
        Run the scheduler in the foreground.

        Blocks until stop() is called or SIGTERM/SIGINT is received.
        """
        self._stop_event.clear()
        in_main_thread = threading.current_thread() is threading.main_thread()
        if in_main_thread:
            self._setup_signal_handlers()
        logger.info(
            f"Starting sync scheduler (incremental every "
            f"{self.incremental_interval}s, full every {self.full_interval}s)"
        )
        try:
            self._loop()
        finally:
            if in_main_thread:
                self._restore_signal_handlers()

    def stop(self, timeout: float | None = 30.0) -> None:
        """
        Stop the loop and cancel any sync in progress.

        The sync in flight finishes its current record before returning.
        """
        logger.info("Stop requested")
        self._stop_event.set()
        self.engine.request_cancel()
        if (
            self._thread is not None
            and self._thread is not threading.current_thread()
            and self._thread.is_alive()
        ):
            self._thread.join(timeout)

    def is_running(self) -> bool:
        return self._running

    def _setup_signal_handlers(self) -> None:
        for signum in (signal.SIGTERM, signal.SIGINT):
            self._original_handlers[signum] = signal.signal(
                signum, self._signal_handler
            )
        logger.debug("Signal handlers installed for SIGTERM and SIGINT")

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._original_handlers.items():
            signal.signal(signum, handler)
        self._original_handlers.clear()

    def _signal_handler(self, signum: int, frame: object) -> None:
        signal_name = signal.Signals(signum).name
        logger.info(f"Received {signal_name}, initiating graceful shutdown...")
        self._stop_event.set()
        self.engine.request_cancel()
