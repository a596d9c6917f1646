"""
safevoice.engine.events — StoreEvent envelope and EventBus
===========================================================

Side-channel notifications (toasts, badges, live counters) are emitted as
:class:`StoreEvent` values on an :class:`EventBus`.  The ledger and store
never talk to presentation code directly; they only emit.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

__all__ = ["EventBus", "EventKind", "StoreEvent"]


class EventKind(enum.StrEnum):
    """Everything the core can announce."""
    BALANCE_CHANGED = "balance_changed"
    REWARD_EARNED = "reward_earned"
    REWARD_SUPPRESSED = "reward_suppressed"
    TOKENS_SPENT = "tokens_spent"
    CLAIM_COMPLETED = "claim_completed"
    CLAIM_FAILED = "claim_failed"
    ACHIEVEMENT_UNLOCKED = "achievement_unlocked"
    STREAK_UPDATED = "streak_updated"
    POST_CREATED = "post_created"
    POST_DELETED = "post_deleted"
    POST_EXPIRED = "post_expired"
    EXPIRY_WARNING = "expiry_warning"
    BOOST_STARTED = "boost_started"
    BOOST_EXPIRED = "boost_expired"
    POSTS_ARCHIVED = "posts_archived"
    NOTIFICATION_ADDED = "notification_added"
    UNREAD_INCREMENTED = "unread_incremented"
    MODERATION_LOGGED = "moderation_logged"
    MODERATOR_COOLDOWN = "moderator_cooldown"
    REFERRAL_JOINED = "referral_joined"
    REFERRAL_FIRST_POST = "referral_first_post"
    TRIBUTE_CREATED = "tribute_created"
    CANDLE_LIT = "candle_lit"
    TRIBUTE_MILESTONE = "tribute_milestone"


@dataclass(frozen=True, slots=True)
class StoreEvent:
    """One emitted event.  ``timestamp`` is epoch ms from the store clock."""

    kind: EventKind
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: int = 0


Listener = Callable[[StoreEvent], None]


class EventBus:
    """Synchronous observer list.

    Listeners run in subscription order.  A listener that raises is logged
    and skipped; it never interrupts the mutation that emitted the event.
    """

    def __init__(self, clock=None) -> None:
        self._clock = clock
        self._listeners: list[tuple[Listener, frozenset[EventKind] | None]] = []

    def subscribe(
        self, listener: Listener, kinds: Iterable[EventKind] | None = None
    ) -> Callable[[], None]:
        """Register *listener*; returns a callable that unsubscribes it."""
        entry = (listener, frozenset(kinds) if kinds is not None else None)
        self._listeners.append(entry)

        def _unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return _unsubscribe

    def emit(self, kind: EventKind, /, **payload: Any) -> StoreEvent:
        timestamp = self._clock.now_ms() if self._clock is not None else 0
        event = StoreEvent(kind=kind, payload=payload, timestamp=timestamp)
        for listener, kinds in list(self._listeners):
            if kinds is not None and kind not in kinds:
                continue
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed for %s", kind)
        return event

    def clear(self) -> None:
        self._listeners.clear()
