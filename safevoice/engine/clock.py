"""
safevoice.engine.clock — Injectable time source
================================================

Every component reads time through a :class:`Clock` so the whole store can
be driven deterministically in tests (``ManualClock``) without wall-clock
waits.  Timestamps are integer epoch milliseconds throughout.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime, timedelta
from typing import Protocol

__all__ = ["Clock", "ManualClock", "SystemClock", "day_key", "previous_day_key"]


class Clock(Protocol):
    def now_ms(self) -> int: ...


class SystemClock:
    """Wall-clock time."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start_ms: int = 1_767_225_600_000) -> None:  # 2026-01-01 UTC
        self._now = int(start_ms)

    def now_ms(self) -> int:
        return self._now

    def set(self, now_ms: int) -> None:
        self._now = int(now_ms)

    def advance(self, ms: int) -> int:
        self._now += int(ms)
        return self._now


# ---------------------------------------------------------------------------
# Calendar helpers for streaks
# ---------------------------------------------------------------------------
def _to_date(ms: int):
    return datetime.fromtimestamp(ms / 1000, tz=UTC).date()


def day_key(ms: int) -> str:
    """UTC calendar day of *ms* as ``YYYY-MM-DD``."""
    return _to_date(ms).isoformat()


def previous_day_key(ms: int) -> str:
    """The calendar day before the day of *ms*."""
    return (_to_date(ms) - timedelta(days=1)).isoformat()
