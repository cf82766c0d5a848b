"""
carecompanion/core/scheduling.py — Timer and background-work seams.

The conversation controller never sleeps and never spawns threads itself.
It asks a :class:`Scheduler` for single-shot timers and a :class:`Dispatcher`
for background work, so tests can substitute a manual clock and inline
execution while production uses daemon threads.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    """A pending single-shot timer."""

    def cancel(self) -> None:
        """Cancel the timer. Cancelling a fired or cancelled timer is a no-op."""


class Scheduler(Protocol):
    """Creates single-shot timers."""

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle:
        """Run *callback* once after *delay_s* seconds unless cancelled."""


class Dispatcher(Protocol):
    """Runs work off the caller's thread."""

    def submit(self, fn: Callable[[], None], name: str = "work") -> None:
        """Run *fn* in the background. Exceptions are the caller's concern."""


class _ThreadTimer:
    """:class:`TimerHandle` backed by :class:`threading.Timer`."""

    def __init__(self, timer: threading.Timer) -> None:
        self._timer = timer

    def cancel(self) -> None:
        self._timer.cancel()


class ThreadScheduler:
    """Production scheduler: one daemon :class:`threading.Timer` per timer."""

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(max(0.0, delay_s), callback)
        timer.daemon = True
        timer.start()
        return _ThreadTimer(timer)


class ThreadDispatcher:
    """
    Production dispatcher: each submission runs on its own daemon thread.

    Exceptions escaping *fn* are logged here so a failed background job can
    never kill the interpreter or go unnoticed.
    """

    def submit(self, fn: Callable[[], None], name: str = "work") -> None:
        def _run() -> None:
            try:
                fn()
            except Exception as exc:  # noqa: BLE001
                logger.error("Background job %r failed: %s", name, exc, exc_info=True)

        threading.Thread(target=_run, name=f"care-{name}", daemon=True).start()
