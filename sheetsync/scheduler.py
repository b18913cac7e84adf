"""Adaptive poll scheduler.

The scheduler drives one :class:`~sheetsync.cache.DataCache`. After every
cycle it recomputes its interval from what it knows about the user and the
source:

- items still pending on the sheet poll fastest;
- a recently active user gets a medium interval;
- an idle user gets the slowest interval;
- during a backoff streak the backoff delay is added on top.

Cycles are skipped while the dashboard is hidden, paused, idle past the
cutoff, or hard-stopped by a long failure streak. Whatever a cycle does, it
always ends by arming the next timer.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from .cache import DataCache, SyncResult
from .delta import DeltaDetector
from .environment import CancelHandle, Environment, PollingContext

LOGGER = logging.getLogger(__name__)

UpdateCallback = Callable[[SyncResult], Awaitable[None] | None]
StatusCallback = Callable[[str, "SyncStatus"], Awaitable[None] | None]


class SchedulerState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    WAITING = "waiting"
    STOPPED = "stopped"


class SyncStatus(str, Enum):
    """Sync-health indicator exposed to the UI."""

    SYNCED = "synced"
    """Last cycle produced fresh data."""

    SYNCING = "syncing"
    """A cycle is in progress."""

    DELAYED = "delayed"
    """Serving stale data past the freshness target."""

    ERROR = "error"
    """Last fetch failed and no usable stale data exists."""

    PAUSED = "paused"
    """Polling was paused by the user."""


class NoDataAvailableError(RuntimeError):
    """Raised by a manual refresh when no data has ever been obtained."""


@dataclass(frozen=True)
class PollIntervals:
    """Interval policy for a :class:`PollScheduler`.

    Attributes:
        pending_seconds: Interval while the dataset contains pending items
        active_seconds: Interval while the user was active within ``active_window_seconds``
        idle_seconds: Interval otherwise
        active_window_seconds: How recent activity must be to count as active
        idle_cutoff_seconds: Skip cycles after this much inactivity (0 disables)
        hard_stop_failures: Skip cycles while this many failures are still inside the backoff window
    """

    pending_seconds: float = 20.0
    active_seconds: float = 45.0
    idle_seconds: float = 90.0
    active_window_seconds: float = 60.0
    idle_cutoff_seconds: float = 300.0
    hard_stop_failures: int = 5


class PollScheduler:
    """Polls a data cache and forwards meaningful changes to a consumer."""

    def __init__(
        self,
        cache: DataCache,
        on_data_update: UpdateCallback,
        *,
        environment: Environment,
        detector: DeltaDetector,
        intervals: Optional[PollIntervals] = None,
        name: Optional[str] = None,
        on_status_change: Optional[StatusCallback] = None,
    ) -> None:
        self._cache = cache
        self._on_data_update = on_data_update
        self._environment = environment
        self._detector = detector
        self._intervals = intervals or PollIntervals()
        self.name = name or cache.key
        self._on_status_change = on_status_change

        self._state = SchedulerState.IDLE
        self._status = SyncStatus.SYNCING
        self._started = False
        self._paused = False
        self._delivered = False
        self._last_result: Optional[SyncResult] = None
        self._next_interval: Optional[float] = None
        self._timer: Optional[CancelHandle] = None
        self._timer_due: Optional[float] = None
        self._cycle_lock = asyncio.Lock()
        self._cycle_task: Optional[asyncio.Task[None]] = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._detach: list[Callable[[], None]] = []

    @property
    def cache(self) -> DataCache:
        return self._cache

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._started

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def last_result(self) -> Optional[SyncResult]:
        return self._last_result

    @property
    def next_interval(self) -> Optional[float]:
        """Delay the pending timer was armed with."""
        return self._next_interval

    def context(self) -> PollingContext:
        return PollingContext(
            is_visible=self._environment.is_foreground(),
            last_activity_at=self._environment.last_activity_at(),
            is_degraded=self._cache.backoff.is_active,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Attach environment listeners and run the initial load."""
        if self._started:
            return

        self._started = True
        self._state = SchedulerState.IDLE
        self._detach = [
            self._environment.add_visibility_listener(self._on_visibility),
            self._environment.add_activity_listener(self._on_activity),
        ]
        LOGGER.info("Poll scheduler started for %s", self.name)
        self._spawn_cycle(initial=True)

    async def stop(self) -> None:
        """Cancel the timer, detach listeners and abort any in-flight fetch."""
        if not self._started:
            return

        self._started = False
        self._state = SchedulerState.STOPPED
        self._cancel_timer()

        for detach in self._detach:
            detach()
        self._detach.clear()

        self._cache.cancel_pending()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        self._cycle_task = None
        LOGGER.info("Poll scheduler stopped for %s", self.name)

    def pause(self) -> None:
        if self._paused:
            return
        self._paused = True
        self._set_status(SyncStatus.PAUSED)

    def resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        if self._last_result is not None:
            self._set_status(self._status_for(self._last_result))
        else:
            self._set_status(SyncStatus.SYNCING)
        self._spawn_cycle()

    async def force_update(self) -> SyncResult:
        """Refresh now, bypassing interval and backoff gating.

        The consumer callback fires with the result whenever it carries data,
        changed or not.

        Raises:
            NoDataAvailableError: If the refresh failed and no data was ever obtained
        """
        LOGGER.info("Manual refresh requested for %s", self.name)
        if not self._paused:
            self._set_status(SyncStatus.SYNCING)

        try:
            result = await self._cache.force_refresh()
            await self._handle_result(result, force=True)
        finally:
            if self._started and not self._is_cycle_running():
                self._schedule_next()

        if self._is_without_data(result):
            raise NoDataAvailableError(
                f"No data available for {self.name}: "
                f"{result.error.value if result.error else 'unknown error'}"
            )
        return result

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------
    def should_poll(self) -> bool:
        return self._skip_reason() is None

    def current_poll_interval(self) -> float:
        intervals = self._intervals
        if self._cache.has_pending_items():
            interval = intervals.pending_seconds
        elif self._idle_for() < intervals.active_window_seconds:
            interval = intervals.active_seconds
        else:
            interval = intervals.idle_seconds

        backoff = self._cache.backoff
        if backoff.is_active:
            interval += backoff.current_delay()
        return interval

    def _idle_for(self) -> float:
        return self._environment.monotonic() - self._environment.last_activity_at()

    def _skip_reason(self) -> Optional[str]:
        if self._paused:
            return "paused"
        if not self._environment.is_foreground():
            return "hidden"

        backoff = self._cache.backoff
        if (
            backoff.consecutive_failures >= self._intervals.hard_stop_failures
            and backoff.in_backoff_window()
        ):
            return "backoff"

        cutoff = self._intervals.idle_cutoff_seconds
        if cutoff > 0 and self._idle_for() >= cutoff:
            return "idle"
        return None

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    def _is_cycle_running(self) -> bool:
        return self._cycle_task is not None and not self._cycle_task.done()

    def _spawn_cycle(self, *, initial: bool = False) -> None:
        if not self._started or self._is_cycle_running():
            return
        task = asyncio.create_task(self._run_cycle(initial=initial))
        self._cycle_task = task
        self._track(task)

    def _on_timer(self) -> None:
        self._timer = None
        self._timer_due = None
        self._spawn_cycle()

    async def _run_cycle(self, *, initial: bool = False) -> None:
        async with self._cycle_lock:
            try:
                reason = None if initial else self._skip_reason()
                if reason is not None:
                    LOGGER.debug("Skipping poll for %s (%s)", self.name, reason)
                    return

                self._state = SchedulerState.FETCHING
                if not self._paused:
                    self._set_status(SyncStatus.SYNCING)
                result = await self._cache.get_data()
                await self._handle_result(result)
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("Poll cycle failed for %s", self.name)
            finally:
                if self._started:
                    self._state = SchedulerState.WAITING
                    self._schedule_next()

    async def _handle_result(self, result: SyncResult, *, force: bool = False) -> None:
        self._last_result = result

        # Failures that produced no records never reach the consumer
        if result.has_data or result.error is None:
            changed = self._detector.has_changed(result.dataset)
            if changed or force:
                self._delivered = True
                await self._deliver(result)

        self._set_status(self._status_for(result))

    def _status_for(self, result: SyncResult) -> SyncStatus:
        if self._paused:
            return SyncStatus.PAUSED
        if not result.is_stale:
            return SyncStatus.SYNCED
        if self._is_without_data(result):
            return SyncStatus.ERROR
        return SyncStatus.DELAYED

    def _is_without_data(self, result: SyncResult) -> bool:
        """True when the attempt failed and no data was ever obtained."""
        return result.is_stale and not result.has_data and not self._delivered

    async def _deliver(self, result: SyncResult) -> None:
        try:
            outcome = self._on_data_update(result)
            if asyncio.iscoroutine(outcome):
                await outcome
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("Data update callback failed for %s", self.name)

    def _schedule_next(self) -> None:
        self._cancel_timer()
        interval = self.current_poll_interval()
        self._next_interval = interval
        self._timer_due = self._environment.monotonic() + interval
        self._timer = self._environment.schedule(interval, self._on_timer)
        LOGGER.debug("Next poll for %s in %.1fs", self.name, interval)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._timer_due = None

    # ------------------------------------------------------------------
    # Environment signals
    # ------------------------------------------------------------------
    def _on_visibility(self, visible: bool) -> None:
        if visible:
            LOGGER.debug("%s became visible; polling now", self.name)
            self._spawn_cycle()

    def _on_activity(self) -> None:
        if not self._started or self._state is not SchedulerState.WAITING:
            return
        # Only pull the next poll closer; steady activity must not postpone it
        if self._timer_due is not None:
            remaining = self._timer_due - self._environment.monotonic()
            if self.current_poll_interval() >= remaining:
                return
        self._schedule_next()

    def _set_status(self, status: SyncStatus) -> None:
        if status is self._status:
            return
        previous = self._status
        self._status = status

        log = LOGGER.debug if SyncStatus.SYNCING in (previous, status) else LOGGER.info
        log("Sync status for %s: %s -> %s", self.name, previous.value, status.value)

        if self._on_status_change is None:
            return
        try:
            outcome = self._on_status_change(self.name, status)
        except Exception:
            LOGGER.exception("Status listener failed for %s", self.name)
            return
        if asyncio.iscoroutine(outcome):
            self._track(asyncio.ensure_future(outcome))

    def _track(self, task: "asyncio.Future[Any]") -> None:
        self._tasks.add(task)  # type: ignore[arg-type]
        task.add_done_callback(self._tasks.discard)
