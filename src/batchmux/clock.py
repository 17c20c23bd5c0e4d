"""
Timer capability used by the window scheduler.
"""

from __future__ import annotations

import asyncio
import time
import typing as t


class TimerHandle(t.Protocol):
    def cancel(self) -> None: ...


class Clock(t.Protocol):
    """
    Source of time and delayed callbacks.

    Notes
    -----
    ``now`` must be monotonic. ``call_later`` callbacks run on the same
    execution context that owns the scheduler.
    """

    def now(self) -> float: ...

    def call_later(self, delay: float, callback: t.Callable[[], None]) -> TimerHandle: ...


class LoopClock:
    """
    Clock backed by the running asyncio event loop.

    Parameters
    ----------
    loop : asyncio.AbstractEventLoop | None, optional
        Loop to schedule timers on. Resolved lazily from the running loop
        when omitted, so a clock can be built outside of a coroutine.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is not None:
            return self._loop
        return asyncio.get_running_loop()

    def now(self) -> float:
        if self._loop is not None:
            return self._loop.time()
        try:
            return asyncio.get_running_loop().time()
        except RuntimeError:
            return time.monotonic()

    def call_later(self, delay: float, callback: t.Callable[[], None]) -> asyncio.TimerHandle:
        return self._get_loop().call_later(max(delay, 0.0), callback)
