"""
Manual clock for deterministic window tests.
"""

import typing as t


class FakeTimer:
    def __init__(self, *, when: float, callback: t.Callable[[], None]) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeClock:
    """
    Clock whose time only moves through ``advance``.

    Timers due within the advanced span fire in deadline order, with ``now``
    set to each timer's deadline while its callback runs.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._timers: list[FakeTimer] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: t.Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(when=self._now + delay, callback=callback)
        self._timers.append(timer)
        return timer

    @property
    def pending_timers(self) -> list[FakeTimer]:
        return [timer for timer in self._timers if not timer.cancelled and not timer.fired]

    def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while True:
            due = [timer for timer in self.pending_timers if timer.when <= target]
            if not due:
                break
            timer = min(due, key=lambda candidate: candidate.when)
            self._now = timer.when
            timer.fired = True
            timer.callback()
        self._now = target
