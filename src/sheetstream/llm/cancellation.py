"""Per-call cancellation handle.

A ``CancellationToken`` is created fresh for every ``complete()`` call and
passed explicitly into the retry loop.  It owns at most one running
``asyncio.Task`` at a time (the current attempt or the current backoff
sleep) plus the per-attempt timer, and cancels that task when:

  * the per-attempt timer expires (``timed_out``; the retry loop continues),
  * the caller calls ``cancel()`` (``explicit``; the retry loop stops),
  * a newer call supersedes this one via ``invalidate()`` (loop stops).
"""

from __future__ import annotations

import asyncio
import logging

_logger = logging.getLogger(__name__)


class CancellationToken:
    """Cancellation handle for a single ``complete()`` call."""

    def __init__(self) -> None:
        self._task: asyncio.Future | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._explicit = False
        self._superseded = False
        self._fired = False
        self._timed_out = False
        self._closed = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        """True once the whole call must stop (explicit cancel or superseded)."""
        return self._explicit or self._superseded

    @property
    def explicit(self) -> bool:
        return self._explicit

    @property
    def superseded(self) -> bool:
        return self._superseded

    @property
    def fired(self) -> bool:
        """True if this token cancelled the currently attached task."""
        return self._fired

    @property
    def timed_out(self) -> bool:
        return self._timed_out

    @property
    def has_timer(self) -> bool:
        return self._timer is not None

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Task management
    # ------------------------------------------------------------------

    def attach(self, task: asyncio.Future, timeout: float | None = None) -> None:
        """Track *task* and optionally arm a timer that cancels it."""
        self.detach()
        self._task = task
        self._fired = False
        self._timed_out = False
        if timeout is not None and timeout > 0:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(timeout, self._expire)
        if self.cancelled:
            self._fire()

    def detach(self) -> None:
        """Disarm the timer and forget the current task."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._task = None

    def close(self) -> None:
        """Release everything at the end of the call."""
        self.detach()
        self._closed = True

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Explicit caller cancellation: stop the call with no further attempts."""
        if self._closed:
            return
        self._explicit = True
        self._fire()

    def invalidate(self) -> None:
        """Supersede this call because a newer one is starting."""
        if self._closed:
            return
        if not self._explicit:
            self._superseded = True
        self._fire()

    def _expire(self) -> None:
        self._timer = None
        self._timed_out = True
        _logger.debug("Per-attempt timer expired")
        self._fire()

    def _fire(self) -> None:
        if self._task is not None and not self._task.done():
            self._fired = True
            self._task.cancel()
