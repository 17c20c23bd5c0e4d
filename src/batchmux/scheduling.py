"""
Window scheduler deciding when accumulated requests flush into one batch.
A window opens on the first ``schedule`` call and closes when either:
- its deadline elapses (bounded by ``max_window_seconds`` from the window start),
- ``max_batch_size`` schedules accumulated,
- an ``urgent`` schedule or an explicit ``flush`` arrives.
"""

from __future__ import annotations

import typing as t
from dataclasses import asdict, dataclass
from enum import StrEnum

import structlog

from batchmux.clock import Clock, LoopClock, TimerHandle
from batchmux.models import Priority

log = structlog.get_logger(__name__)

FlushCallback = t.Callable[[], None]

PRIORITY_WINDOW_FACTORS: dict[Priority, float] = {
    Priority.low: 2.0,
    Priority.normal: 1.0,
    Priority.high: 0.25,
}


class SchedulerState(StrEnum):
    idle = "idle"
    armed = "armed"
    flushing = "flushing"


class FlushReason(StrEnum):
    timer = "timer"
    size = "size"
    urgent = "urgent"
    manual = "manual"


@dataclass
class SchedulerStats:
    scheduled: int = 0
    flushes: int = 0
    timer_flushes: int = 0
    size_flushes: int = 0
    urgent_flushes: int = 0
    manual_flushes: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class WindowScheduler:
    """
    Coalesce bursts of ``schedule`` calls into a bounded number of flushes.

    Parameters
    ----------
    default_window_seconds : float
        Window length for ``normal`` priority schedules.
    max_window_seconds : float
        No deadline may be set later than the window start plus this value.
    max_batch_size : int
        Flush immediately once this many schedules accumulated in a window.
    clock : Clock | None, optional
        Timer capability; defaults to the running asyncio loop.

    Notes
    -----
    Only the most recent callback is kept: every ``schedule`` call in a
    window is expected to register the same flush routine.
    """

    def __init__(
        self,
        *,
        default_window_seconds: float = 0.016,
        max_window_seconds: float = 0.1,
        max_batch_size: int = 20,
        clock: Clock | None = None,
    ) -> None:
        self._default_window_seconds = default_window_seconds
        self._max_window_seconds = max_window_seconds
        self._max_batch_size = max_batch_size
        self._clock: Clock = clock if clock is not None else LoopClock()

        self._state = SchedulerState.idle
        self._callback: FlushCallback | None = None
        self._timer: TimerHandle | None = None
        self._window_started_at: float | None = None
        self._deadline: float | None = None
        self._escalated = False
        self._scheduled_in_window = 0
        self._stats = SchedulerStats()

        log.debug(
            event="Initialized WindowScheduler",
            default_window_seconds=default_window_seconds,
            max_window_seconds=max_window_seconds,
            max_batch_size=max_batch_size,
        )

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def deadline(self) -> float | None:
        return self._deadline

    @property
    def pending_count(self) -> int:
        return self._scheduled_in_window

    def window_for(self, *, priority: Priority) -> float:
        """
        Compute the window length for a priority, capped by the max window.

        Parameters
        ----------
        priority : Priority
            Priority of the schedule call. ``urgent`` has no window.

        Returns
        -------
        float
            Window length in seconds.
        """
        if priority is Priority.urgent:
            return 0.0
        factor = PRIORITY_WINDOW_FACTORS[priority]
        return min(self._default_window_seconds * factor, self._max_window_seconds)

    def schedule(
        self,
        callback: FlushCallback,
        priority: Priority | str = Priority.normal,
    ) -> None:
        """
        Register ``callback`` to run when the current window flushes.

        Parameters
        ----------
        callback : FlushCallback
            Routine executed on flush.
        priority : Priority | str, optional
            Priority of the work being scheduled.
        """
        priority = Priority(priority)
        self._callback = callback
        self._scheduled_in_window += 1
        self._stats.scheduled += 1

        if priority is Priority.urgent:
            self._run(reason=FlushReason.urgent)
            return
        if self._scheduled_in_window >= self._max_batch_size:
            log.debug(
                event="Batch size reached",
                max_batch_size=self._max_batch_size,
            )
            self._run(reason=FlushReason.size)
            return

        now = self._clock.now()
        candidate = now + self.window_for(priority=priority)

        if self._state is not SchedulerState.armed:
            self._window_started_at = now
            self._escalated = priority is Priority.high
            self._arm(deadline=candidate, now=now)
            log.debug(
                event="Starting batch window timer",
                priority=str(priority),
                window_seconds=candidate - now,
            )
            return

        window_cap = t.cast(float, self._window_started_at) + self._max_window_seconds
        candidate = min(candidate, window_cap)
        current_deadline = t.cast(float, self._deadline)
        if priority is Priority.high:
            self._escalated = True
            if candidate < current_deadline:
                self._arm(deadline=candidate, now=now)
                log.debug(event="Window escalated", deadline_in=candidate - now)
        elif not self._escalated and candidate > current_deadline:
            self._arm(deadline=candidate, now=now)

    def flush(self) -> None:
        """
        Run the pending callback now and disarm the timer.
        """
        if self._callback is None:
            log.debug(event="Flush requested with nothing scheduled")
            self.clear()
            return
        self._run(reason=FlushReason.manual)

    def clear(self) -> None:
        """
        Disarm the timer without running the pending callback.
        """
        self._reset_window()
        self._callback = None
        self._state = SchedulerState.idle

    def get_stats(self) -> dict[str, t.Any]:
        return {**self._stats.to_dict(), "state": str(self._state)}

    def reset_stats(self) -> None:
        self._stats = SchedulerStats()

    def _arm(self, *, deadline: float, now: float) -> None:
        self._cancel_timer()
        self._deadline = deadline
        self._timer = self._clock.call_later(deadline - now, self._on_timer)
        self._state = SchedulerState.armed

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _reset_window(self) -> None:
        self._cancel_timer()
        self._deadline = None
        self._window_started_at = None
        self._escalated = False
        self._scheduled_in_window = 0

    def _on_timer(self) -> None:
        self._timer = None
        if self._state is not SchedulerState.armed:
            return
        log.debug(event="Batch window elapsed")
        self._run(reason=FlushReason.timer)

    def _run(self, *, reason: FlushReason) -> None:
        callback = self._callback
        scheduled = self._scheduled_in_window
        self._reset_window()
        self._callback = None
        self._state = SchedulerState.flushing

        self._stats.flushes += 1
        counter_name = f"{reason}_flushes"
        setattr(self._stats, counter_name, getattr(self._stats, counter_name) + 1)

        log.debug(event="Flushing window", reason=str(reason), scheduled=scheduled)
        try:
            if callback is not None:
                callback()
        finally:
            if self._state is SchedulerState.flushing:
                self._state = SchedulerState.idle
