"""Timer helpers for the event-loop driven sync core."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """
    Anything that can run a callback later on the current thread.

    ``asyncio.AbstractEventLoop`` satisfies this protocol directly; tests
    use a manual clock instead.
    """

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle: ...

    def time(self) -> float: ...


def default_scheduler() -> Scheduler:
    """Return the running event loop (or the thread's default loop)."""
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.get_event_loop_policy().get_event_loop()


class CallDebouncer:
    """
    Runs a callback once after a period without calls.

    Every ``call()`` re-arms the timer, cancelling the previous one, so the
    callback fires ``delay`` seconds after the last call. ``cancel()``
    drops the pending call without firing.
    """

    def __init__(
        self,
        callback: Callable[[], Any],
        delay: float,
        scheduler: Scheduler | None = None,
    ) -> None:
        """
        Initialize the call debouncer.

        Args:
            callback: Function to call when the debounce fires.
            delay: Seconds to wait after the last call before firing.
            scheduler: Timer source; defaults to the running event loop.
        """
        self._callback = callback
        self._delay = delay
        self._scheduler = scheduler
        self._timer: TimerHandle | None = None
        self._deadline: float | None = None

    @property
    def scheduler(self) -> Scheduler:
        if self._scheduler is None:
            self._scheduler = default_scheduler()
        return self._scheduler

    def call(self) -> None:
        """Request a call to the callback (debounced)."""
        self._cancel_timer()
        self._deadline = self.scheduler.time() + self._delay
        self._timer = self.scheduler.call_later(self._delay, self._fire)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._deadline = None

    def _fire(self) -> None:
        if self._timer is None:
            return
        self._timer = None
        self._deadline = None
        self._callback()

    def flush(self) -> None:
        """Immediately fire if pending."""
        if self._timer is not None:
            self._timer.cancel()
            self._fire()

    def cancel(self) -> None:
        """Cancel without firing."""
        self._cancel_timer()

    @property
    def is_pending(self) -> bool:
        """Check if a call is pending."""
        return self._timer is not None

    @property
    def deadline(self) -> float | None:
        """Scheduler time at which the pending call fires."""
        return self._deadline
