"""
safevoice.engine.fanout — Unread-counter fan-out
=================================================

Pure functions deciding, per community membership, whether a new post
should bump that member's unread counters, plus the two mutations that
touch those counters outside of fan-out (mark-read, channel toggle).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from safevoice.engine.community import Membership, NotificationSettings

logger = logging.getLogger(__name__)


def should_increment_unread(
    membership: Membership,
    author_id: str,
    channel_id: str | None,
    settings: NotificationSettings | None,
) -> bool:
    """Evaluate the preference hierarchy for one membership.

    In order: the author never notifies themself; inactive and muted
    memberships are skipped; ``mute_all`` silences everything; an explicit
    channel override wins outright; otherwise ``notify_on_post`` decides.
    A membership without stored settings uses the defaults (notify on).
    """
    if membership.student_id == author_id:
        return False
    if not membership.is_active:
        return False
    if membership.is_muted:
        return False
    if settings is None:
        return True
    if settings.mute_all:
        return False
    if channel_id is not None and channel_id in settings.channel_overrides:
        return settings.channel_overrides[channel_id]
    return settings.notify_on_post


def fan_out_new_post(
    memberships: Iterable[Membership],
    settings_for: dict[str, NotificationSettings],
    *,
    community_id: str,
    author_id: str,
    channel_id: str | None,
) -> list[Membership]:
    """Increment ``unread_count`` (and the channel counter) by exactly one
    for every eligible membership of *community_id*.

    *settings_for* maps student id → that student's settings for this
    community.  Returns the memberships that were bumped.
    """
    bumped: list[Membership] = []
    for membership in memberships:
        if membership.community_id != community_id:
            continue
        if not should_increment_unread(membership, author_id, channel_id, settings_for.get(membership.student_id)):
            continue
        membership.unread_count += 1
        if channel_id is not None:
            membership.channel_unread_counts[channel_id] = (
                membership.channel_unread_counts.get(channel_id, 0) + 1
            )
        bumped.append(membership)
    logger.debug("Fan-out in %s bumped %d membership(s)", community_id, len(bumped))
    return bumped


def mark_community_read(membership: Membership, now_ms: int, channel_id: str | None = None) -> None:
    """Reset unread state.

    Without *channel_id* the whole community is marked read; with it only
    that channel's counter is cleared and subtracted from the total.
    """
    if channel_id is None:
        membership.unread_count = 0
        for key in membership.channel_unread_counts:
            membership.channel_unread_counts[key] = 0
            membership.channel_last_visited_at[key] = now_ms
        membership.last_visited_at = now_ms
        return
    cleared = membership.channel_unread_counts.get(channel_id, 0)
    membership.channel_unread_counts[channel_id] = 0
    membership.channel_last_visited_at[channel_id] = now_ms
    membership.unread_count = max(0, membership.unread_count - cleared)


def toggle_channel_override(settings: NotificationSettings, channel_id: str, now_ms: int) -> bool:
    """Flip one channel's notification override; returns the new value.

    Enabling a channel also clears ``mute_all``; other channels keep
    whatever explicit override they had.
    """
    current = settings.channel_overrides.get(
        channel_id, settings.notify_on_post and not settings.mute_all
    )
    new_value = not current
    settings.channel_overrides[channel_id] = new_value
    if new_value:
        settings.mute_all = False
    settings.updated_at = now_ms
    return new_value
