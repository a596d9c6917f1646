"""
safevoice.engine.community — Community records
===============================================

Communities, channels, memberships, per-member notification settings and
the moderation-side records (audit entries, member statuses, channel
mutes, announcements).  All are :class:`~safevoice.engine.entities.Record`
subclasses, so they share the tolerant load path.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

from safevoice.engine.entities import Record


class MemberRole(enum.StrEnum):
    MEMBER = "member"
    MODERATOR = "moderator"
    ADMIN = "admin"


class CommunityActionType(enum.StrEnum):
    """Privileged, community-scoped moderation actions."""
    PIN_POST = "pin_community_post"
    UNPIN_POST = "unpin_community_post"
    DELETE_POST = "delete_community_post"
    BAN_MEMBER = "ban_member"
    WARN_MEMBER = "warn_member"
    MUTE_CHANNEL = "mute_channel"
    UNMUTE_CHANNEL = "unmute_channel"
    POST_ANNOUNCEMENT = "post_announcement"


# ---------------------------------------------------------------------------
# Communities & channels
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class Community(Record):
    id: str
    name: str
    slug: str
    short_code: str = ""
    description: str = ""
    city: str = ""
    state: str = ""
    country: str = ""
    member_count: int = 0
    post_count: int = 0
    visibility: str = "public"
    rules: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    created_at: int = 0
    last_activity_at: int = 0
    is_verified: bool = False


@dataclass(slots=True)
class Channel(Record):
    id: str
    community_id: str
    kind: str
    name: str
    slug: str = ""
    description: str = ""
    icon: str = ""
    order: int = 0
    post_count: int = 0
    last_activity_at: int = 0
    is_default: bool = False
    is_locked: bool = False
    created_at: int = 0
    rules: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Membership & notification preferences
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class Membership(Record):
    """A student's membership in one community.

    Unread counters only grow through fan-out and only return to zero
    through an explicit mark-read.
    """

    id: str
    community_id: str
    student_id: str
    role: MemberRole = MemberRole.MEMBER
    joined_at: int = 0
    last_visited_at: int = 0
    unread_count: int = 0
    is_muted: bool = False
    is_active: bool = True
    channel_unread_counts: dict[str, int] = field(default_factory=dict)
    channel_last_visited_at: dict[str, int] = field(default_factory=dict)
    banned_until: int | None = None
    ban_reason: str | None = None

    @property
    def is_moderator(self) -> bool:
        return self.role in (MemberRole.MODERATOR, MemberRole.ADMIN)

    def is_banned(self, now_ms: int) -> bool:
        return self.banned_until is not None and self.banned_until > now_ms


@dataclass(slots=True)
class NotificationSettings(Record):
    community_id: str
    student_id: str
    notify_on_post: bool = True
    notify_on_mention: bool = True
    notify_on_reply: bool = True
    mute_all: bool = False
    channel_overrides: dict[str, bool] = field(default_factory=dict)
    updated_at: int = 0

    def effective_toggles(self) -> dict[str, bool]:
        """The three event-class toggles, all off while ``mute_all`` is set."""
        if self.mute_all:
            return {"post": False, "mention": False, "reply": False}
        return {
            "post": self.notify_on_post,
            "mention": self.notify_on_mention,
            "reply": self.notify_on_reply,
        }


def settings_key(community_id: str, student_id: str) -> str:
    return f"{community_id}:{student_id}"


# ---------------------------------------------------------------------------
# Per-channel metadata & activity
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class ChannelPostMeta(Record):
    channel_id: str
    community_id: str
    post_count: int = 0
    comment_count: int = 0
    last_post_at: int = 0
    last_comment_at: int = 0
    pinned_post_count: int = 0
    active_members: int = 0


@dataclass(slots=True)
class ActivitySample(Record):
    id: str
    community_id: str
    type: str  # post | comment | reaction | join | moderation
    timestamp: int
    channel_id: str | None = None
    count: int = 1


# ---------------------------------------------------------------------------
# Moderation records
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class ModerationLogEntry(Record):
    id: str
    community_id: str
    moderator_id: str
    action_type: CommunityActionType
    target_id: str
    description: str
    timestamp: int
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class MemberStatus(Record):
    community_id: str
    student_id: str
    banned_until: int | None = None
    ban_reason: str | None = None
    # [{"reason", "moderator_id", "timestamp"}, ...], append-only
    warnings: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class ChannelMuteStatus(Record):
    channel_id: str
    community_id: str
    muted_until: int | None = None
    reason: str = ""
    muted_by: str | None = None

    def is_active(self, now_ms: int) -> bool:
        return self.muted_until is not None and self.muted_until > now_ms


@dataclass(slots=True)
class Announcement(Record):
    id: str
    community_id: str
    title: str
    content: str
    author_id: str
    created_at: int
    is_pinned: bool = True
