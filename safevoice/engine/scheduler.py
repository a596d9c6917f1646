"""
safevoice.engine.scheduler — Lifecycle Timers
==============================================

An arena of cancellable deferred callbacks keyed by entity, used for post
expiry (``expiry:<post_id>``) and temporary boosts
(``boost:<kind>:<post_id>``).  Arming a key always cancels whatever was
armed under it before, so a stale timer can never fire after a deadline
change.  A deadline already in the past fires synchronously.

Deferral is delegated to a :class:`TimerBackend`:

* :class:`AsyncioTimerBackend` — ``loop.call_later`` on the running loop.
* :class:`ManualTimerBackend` — fires due callbacks when a
  :class:`~safevoice.engine.clock.ManualClock` is advanced, for tests.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from collections.abc import Callable
from typing import Protocol

from safevoice.engine.clock import Clock, ManualClock

logger = logging.getLogger(__name__)

Callback = Callable[[], None]


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------
class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class TimerBackend(Protocol):
    def call_later(self, delay_ms: int, callback: Callback) -> TimerHandle: ...


class AsyncioTimerBackend:
    """Schedules on an asyncio loop (the running one unless given)."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def call_later(self, delay_ms: int, callback: Callback) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(max(delay_ms, 0) / 1000, callback)


class _ManualHandle:
    __slots__ = ("cancelled",)

    def __init__(self) -> None:
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualTimerBackend:
    """Deterministic backend driven by :meth:`advance`."""

    def __init__(self, clock: ManualClock) -> None:
        self.clock = clock
        self._queue: list[tuple[int, int, _ManualHandle, Callback]] = []
        self._seq = itertools.count()

    def call_later(self, delay_ms: int, callback: Callback) -> _ManualHandle:
        handle = _ManualHandle()
        due = self.clock.now_ms() + max(delay_ms, 0)
        heapq.heappush(self._queue, (due, next(self._seq), handle, callback))
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for _, _, h, _ in self._queue if not h.cancelled)

    def advance(self, ms: int) -> int:
        """Move the clock forward, firing due callbacks in deadline order.

        The clock is set to each callback's deadline before it runs, so
        callbacks observe the time they were due.  Returns how many fired.
        """
        target = self.clock.now_ms() + ms
        fired = 0
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, callback = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self.clock.set(max(due, self.clock.now_ms()))
            fired += 1
            callback()
        self.clock.set(target)
        return fired


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------
def expiry_key(post_id: str) -> str:
    return f"expiry:{post_id}"


def boost_key(kind: str, post_id: str) -> str:
    return f"boost:{kind}:{post_id}"


class LifecycleScheduler:
    """Keyed timer arena with cancel-before-rearm discipline."""

    def __init__(self, clock: Clock, backend: TimerBackend) -> None:
        self.clock = clock
        self.backend = backend
        self._handles: dict[str, TimerHandle] = {}
        self._deadlines: dict[str, int] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def deadline(self, key: str) -> int | None:
        return self._deadlines.get(key)

    def keys(self) -> list[str]:
        return list(self._handles)

    def schedule(self, key: str, deadline_ms: int, callback: Callback) -> bool:
        """Arm *callback* for *deadline_ms*, replacing any timer under *key*.

        Returns ``True`` if a timer was armed, ``False`` if the deadline had
        already passed and the callback ran synchronously.
        """
        self.cancel(key)
        delay = deadline_ms - self.clock.now_ms()
        if delay <= 0:
            self._run(key, callback)
            return False

        def _fire() -> None:
            # Drop the handle first; the callback may re-arm this key.
            self._handles.pop(key, None)
            self._deadlines.pop(key, None)
            self._run(key, callback)

        self._handles[key] = self.backend.call_later(delay, _fire)
        self._deadlines[key] = deadline_ms
        return True

    def cancel(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        self._deadlines.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> int:
        """Teardown: cancel every live timer."""
        count = len(self._handles)
        for key in list(self._handles):
            self.cancel(key)
        if count:
            logger.info("Cancelled %d live timer(s)", count)
        return count

    @staticmethod
    def _run(key: str, callback: Callback) -> None:
        try:
            callback()
        except Exception:
            logger.exception("Timer callback for %s failed", key)

    # -- post-specific helpers ---------------------------------------------
    def schedule_expiry(self, post_id: str, expires_at: int, on_expire: Callback) -> bool:
        return self.schedule(expiry_key(post_id), expires_at, on_expire)

    def clear_expiry_timer(self, post_id: str) -> bool:
        return self.cancel(expiry_key(post_id))

    def schedule_boost(self, post_id: str, kind: str, expires_at: int, on_end: Callback) -> bool:
        return self.schedule(boost_key(kind, post_id), expires_at, on_end)

    def clear_boost_timer(self, post_id: str, kind: str) -> bool:
        return self.cancel(boost_key(kind, post_id))

    def clear_post(self, post_id: str) -> int:
        """Cancel the expiry and every boost timer of one post."""
        count = int(self.clear_expiry_timer(post_id))
        for key in [k for k in self._handles if k.startswith("boost:") and k.endswith(f":{post_id}")]:
            count += int(self.cancel(key))
        return count
