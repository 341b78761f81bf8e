"""Debounced save scheduler with a local-change clock.

Owns two pieces of state for a session: a cancellable handle for the
pending save and the timestamp of the most recent local mutation. The
synchronization engine reads the timestamp to decide whether an incoming
remote snapshot is an echo of its own write.

Time and timers are injected. In production both come from the session's
asyncio event loop (``loop.time`` and ``loop.call_later``) so timer
callbacks run on the same queue as user actions and remote pushes. Tests
pass a manual clock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    """Anything with ``cancel()``; ``asyncio.TimerHandle`` qualifies."""

    def cancel(self) -> None: ...


CallLater = Callable[[float, Callable[[], None]], TimerHandle]


class SaveScheduler:
    """Cancellable debounce timer plus the "last local change" stamp.

    Args:
        call_later: ``(delay_seconds, callback) -> handle`` used to arm the timer.
        clock: Monotonic clock in seconds.
        debounce_seconds: Quiet interval before a scheduled save fires.
    """

    def __init__(
        self,
        call_later: CallLater,
        clock: Callable[[], float] = time.monotonic,
        debounce_seconds: float = 0.6,
    ) -> None:
        self._call_later = call_later
        self._clock = clock
        self._debounce = debounce_seconds
        self._handle: TimerHandle | None = None
        self._last_local_change_at: float | None = None
        self._closed = False

    @classmethod
    def for_loop(
        cls,
        loop: asyncio.AbstractEventLoop,
        debounce_seconds: float = 0.6,
    ) -> SaveScheduler:
        """Scheduler bound to an asyncio event loop's clock and timers."""
        return cls(call_later=loop.call_later, clock=loop.time, debounce_seconds=debounce_seconds)

    @property
    def last_local_change_at(self) -> float | None:
        return self._last_local_change_at

    @property
    def has_pending(self) -> bool:
        return self._handle is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def now(self) -> float:
        return self._clock()

    def record_change(self) -> float:
        """Stamp a local mutation. Returns the stamp."""
        self._last_local_change_at = self._clock()
        return self._last_local_change_at

    def seconds_since_change(self) -> float | None:
        """Seconds since the last local mutation, or None if there was none."""
        if self._last_local_change_at is None:
            return None
        return self._clock() - self._last_local_change_at

    def schedule(self, callback: Callable[[], None]) -> bool:
        """Arm the timer, replacing any save that has not fired yet.

        Returns:
            False if the scheduler has been closed.
        """
        if self._closed:
            logger.debug("Ignoring schedule on closed scheduler")
            return False
        self.cancel_pending()

        def _fire() -> None:
            self._handle = None
            if self._closed:
                return
            callback()

        self._handle = self._call_later(self._debounce, _fire)
        return True

    def cancel_pending(self) -> bool:
        """Cancel the pending save. Returns True if one was pending."""
        handle, self._handle = self._handle, None
        if handle is None:
            return False
        handle.cancel()
        return True

    def close(self) -> None:
        """Cancel anything pending and refuse further scheduling."""
        self.cancel_pending()
        self._closed = True
