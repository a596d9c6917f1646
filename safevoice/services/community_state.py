"""
safevoice.services.community_state — Community namespaces
==========================================================

Holds every community-scoped collection (definitions, channels,
memberships, notification settings, per-channel metadata, activity
samples, moderation log, member statuses, channel mutes, announcements)
and the operations on them that don't involve posts.  The Post Store and
the Moderation Log both work through one instance of this class.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from safevoice.constants import (
    COMMUNITY_SEED_VERSION,
    MAX_ACTIVITY_SAMPLES,
    MAX_MODERATION_LOG_ENTRIES,
)
from safevoice.engine import fanout
from safevoice.engine.clock import Clock
from safevoice.engine.community import (
    ActivitySample,
    Announcement,
    Channel,
    ChannelMuteStatus,
    ChannelPostMeta,
    Community,
    MemberRole,
    MemberStatus,
    Membership,
    ModerationLogEntry,
    NotificationSettings,
    settings_key,
)
from safevoice.engine.entities import new_id
from safevoice.engine.events import EventBus, EventKind
from safevoice.errors import NotFound, ValidationError
from safevoice.services.community_seed import build_default_seed
from safevoice.services.persistence import Namespace

if TYPE_CHECKING:
    from safevoice.services.persistence import PersistenceAdapter

logger = logging.getLogger(__name__)

# Fields a student may change through update_settings()
_SETTINGS_FIELDS = frozenset({"notify_on_post", "notify_on_mention", "notify_on_reply", "mute_all"})


class CommunityState:
    """All community namespaces plus membership/notification operations."""

    def __init__(
        self,
        persistence: PersistenceAdapter,
        clock: Clock,
        bus: EventBus,
        moderator_ids: Iterable[str] = (),
    ) -> None:
        self.persistence = persistence
        self.clock = clock
        self.bus = bus
        self.moderator_ids = frozenset(moderator_ids)

        self.communities: dict[str, Community] = {}
        self.channels: dict[str, Channel] = {}
        self.memberships: dict[str, Membership] = {}
        self.settings: dict[str, NotificationSettings] = {}
        self.post_meta: dict[str, ChannelPostMeta] = {}
        self.activity: list[ActivitySample] = []
        self.moderation_log: list[ModerationLogEntry] = []
        self.member_statuses: dict[str, MemberStatus] = {}
        self.channel_mutes: dict[str, ChannelMuteStatus] = {}
        self.announcements: list[Announcement] = []

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def load(self) -> None:
        p = self.persistence
        self.communities = {c.id: c for c in p.load_records(Namespace.COMMUNITIES, Community)}
        self.channels = {c.id: c for c in p.load_records(Namespace.COMMUNITY_CHANNELS, Channel)}
        self.memberships = p.load_record_map(Namespace.COMMUNITY_MEMBERSHIPS, Membership)
        self.settings = p.load_record_map(Namespace.COMMUNITY_NOTIFICATION_SETTINGS, NotificationSettings)
        self.post_meta = p.load_record_map(Namespace.COMMUNITY_POST_META, ChannelPostMeta)
        self.activity = p.load_records(Namespace.COMMUNITY_ACTIVITY, ActivitySample)
        self.moderation_log = p.load_records(Namespace.COMMUNITY_MODERATION_LOG, ModerationLogEntry)
        self.member_statuses = p.load_record_map(Namespace.COMMUNITY_MEMBER_STATUSES, MemberStatus)
        self.channel_mutes = p.load_record_map(Namespace.COMMUNITY_CHANNEL_MUTES, ChannelMuteStatus)
        self.announcements = p.load_records(Namespace.COMMUNITY_ANNOUNCEMENTS, Announcement)

        # Unread counters are never negative
        for membership in self.memberships.values():
            membership.unread_count = max(0, membership.unread_count)
            for channel_id, count in list(membership.channel_unread_counts.items()):
                membership.channel_unread_counts[channel_id] = max(0, count)

        self.seed_if_needed()

    def save(self, *namespaces: str) -> None:
        """Write the given namespaces (all of them when none are named)."""
        writers = {
            Namespace.COMMUNITIES: lambda: self.persistence.save_records(
                Namespace.COMMUNITIES, list(self.communities.values())),
            Namespace.COMMUNITY_CHANNELS: lambda: self.persistence.save_records(
                Namespace.COMMUNITY_CHANNELS, list(self.channels.values())),
            Namespace.COMMUNITY_MEMBERSHIPS: lambda: self.persistence.save_record_map(
                Namespace.COMMUNITY_MEMBERSHIPS, self.memberships),
            Namespace.COMMUNITY_NOTIFICATION_SETTINGS: lambda: self.persistence.save_record_map(
                Namespace.COMMUNITY_NOTIFICATION_SETTINGS, self.settings),
            Namespace.COMMUNITY_POST_META: lambda: self.persistence.save_record_map(
                Namespace.COMMUNITY_POST_META, self.post_meta),
            Namespace.COMMUNITY_ACTIVITY: lambda: self.persistence.save_records(
                Namespace.COMMUNITY_ACTIVITY, self.activity),
            Namespace.COMMUNITY_MODERATION_LOG: lambda: self.persistence.save_records(
                Namespace.COMMUNITY_MODERATION_LOG, self.moderation_log),
            Namespace.COMMUNITY_MEMBER_STATUSES: lambda: self.persistence.save_record_map(
                Namespace.COMMUNITY_MEMBER_STATUSES, self.member_statuses),
            Namespace.COMMUNITY_CHANNEL_MUTES: lambda: self.persistence.save_record_map(
                Namespace.COMMUNITY_CHANNEL_MUTES, self.channel_mutes),
            Namespace.COMMUNITY_ANNOUNCEMENTS: lambda: self.persistence.save_records(
                Namespace.COMMUNITY_ANNOUNCEMENTS, self.announcements),
        }
        for namespace in namespaces or tuple(writers):
            writers[namespace]()

    def seed_if_needed(self) -> bool:
        """Add default communities once per seed version.

        Existing communities, channels and memberships are kept; only
        missing defaults are added.
        """
        marker = self.persistence.load(Namespace.COMMUNITY_SEED_VERSION, default=lambda: None)
        if marker == COMMUNITY_SEED_VERSION:
            return False

        seed = build_default_seed(self.clock.now_ms())
        added = 0
        for community in seed.communities:
            if community.id not in self.communities:
                self.communities[community.id] = community
                added += 1
        for channel in seed.channels:
            self.channels.setdefault(channel.id, channel)
        for meta in seed.post_meta:
            self.post_meta.setdefault(meta.channel_id, meta)
        self.save(Namespace.COMMUNITIES, Namespace.COMMUNITY_CHANNELS, Namespace.COMMUNITY_POST_META)
        self.persistence.save(Namespace.COMMUNITY_SEED_VERSION, COMMUNITY_SEED_VERSION)
        logger.info("Seeded communities (version %s): %d new", COMMUNITY_SEED_VERSION, added)
        return True

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get_community(self, community_id: str) -> Community:
        community = self.communities.get(community_id)
        if community is None:
            raise NotFound(f"Community {community_id} not found")
        return community

    def get_channel(self, community_id: str, channel_id: str) -> Channel:
        channel = self.channels.get(channel_id)
        if channel is None or channel.community_id != community_id:
            raise NotFound(f"Channel {channel_id} not found in {community_id}")
        return channel

    def channels_for(self, community_id: str) -> list[Channel]:
        return sorted(
            (c for c in self.channels.values() if c.community_id == community_id),
            key=lambda c: c.order,
        )

    def membership(self, community_id: str, student_id: str) -> Membership | None:
        return self.memberships.get(settings_key(community_id, student_id))

    def memberships_for(self, student_id: str) -> list[Membership]:
        return [m for m in self.memberships.values() if m.student_id == student_id and m.is_active]

    def require_membership(self, community_id: str, student_id: str) -> Membership:
        membership = self.membership(community_id, student_id)
        if membership is None or not membership.is_active:
            raise ValidationError(f"{student_id} is not a member of {community_id}")
        return membership

    def is_moderator(self, actor: str, community_id: str | None = None) -> bool:
        """Global volunteer moderators, or a moderator/admin of *community_id*."""
        if actor in self.moderator_ids:
            return True
        if community_id is None:
            return False
        membership = self.membership(community_id, actor)
        return membership is not None and membership.is_active and membership.is_moderator

    def is_channel_muted(self, channel_id: str) -> bool:
        status = self.channel_mutes.get(channel_id)
        return status is not None and status.is_active(self.clock.now_ms())

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------
    def join(self, community_id: str, student_id: str, role: MemberRole = MemberRole.MEMBER) -> Membership:
        """Join (or re-activate) a membership.  Joining twice is a no-op."""
        community = self.get_community(community_id)
        now = self.clock.now_ms()
        key = settings_key(community_id, student_id)
        membership = self.memberships.get(key)
        if membership is not None and membership.is_active:
            return membership
        if membership is None:
            membership = Membership(
                id=new_id("membership_"),
                community_id=community_id,
                student_id=student_id,
                role=role,
                joined_at=now,
                last_visited_at=now,
            )
            self.memberships[key] = membership
        else:
            membership.is_active = True
            membership.joined_at = now
        self.settings.setdefault(
            key, NotificationSettings(community_id=community_id, student_id=student_id, updated_at=now)
        )
        community.member_count += 1
        self.record_activity(community_id, None, "join")
        self.save(
            Namespace.COMMUNITIES, Namespace.COMMUNITY_MEMBERSHIPS,
            Namespace.COMMUNITY_NOTIFICATION_SETTINGS, Namespace.COMMUNITY_ACTIVITY,
        )
        logger.info("%s joined %s", student_id, community_id)
        return membership

    def leave(self, community_id: str, student_id: str) -> Membership:
        membership = self.require_membership(community_id, student_id)
        membership.is_active = False
        community = self.get_community(community_id)
        community.member_count = max(0, community.member_count - 1)
        self.save(Namespace.COMMUNITIES, Namespace.COMMUNITY_MEMBERSHIPS)
        return membership

    def set_role(self, community_id: str, student_id: str, role: MemberRole) -> Membership:
        membership = self.require_membership(community_id, student_id)
        membership.role = role
        self.save(Namespace.COMMUNITY_MEMBERSHIPS)
        return membership

    def set_membership_muted(self, community_id: str, student_id: str, muted: bool) -> Membership:
        membership = self.require_membership(community_id, student_id)
        membership.is_muted = muted
        self.save(Namespace.COMMUNITY_MEMBERSHIPS)
        return membership

    # ------------------------------------------------------------------
    # Notification settings & unread counters
    # ------------------------------------------------------------------
    def get_settings(self, community_id: str, student_id: str) -> NotificationSettings:
        key = settings_key(community_id, student_id)
        settings = self.settings.get(key)
        if settings is None:
            settings = NotificationSettings(
                community_id=community_id, student_id=student_id, updated_at=self.clock.now_ms()
            )
            self.settings[key] = settings
        return settings

    def update_settings(self, community_id: str, student_id: str, **changes: Any) -> NotificationSettings:
        self.require_membership(community_id, student_id)
        unknown = set(changes) - _SETTINGS_FIELDS
        if unknown:
            raise ValidationError(f"Unknown notification setting(s): {', '.join(sorted(unknown))}")
        settings = self.get_settings(community_id, student_id)
        for name, value in changes.items():
            if not isinstance(value, bool):
                raise ValidationError(f"{name} must be a boolean")
        for name, value in changes.items():
            setattr(settings, name, value)
        settings.updated_at = self.clock.now_ms()
        self.save(Namespace.COMMUNITY_NOTIFICATION_SETTINGS)
        return settings

    def toggle_channel(self, community_id: str, student_id: str, channel_id: str) -> bool:
        self.require_membership(community_id, student_id)
        self.get_channel(community_id, channel_id)
        settings = self.get_settings(community_id, student_id)
        enabled = fanout.toggle_channel_override(settings, channel_id, self.clock.now_ms())
        self.save(Namespace.COMMUNITY_NOTIFICATION_SETTINGS)
        return enabled

    def mark_read(self, community_id: str, student_id: str, channel_id: str | None = None) -> Membership:
        membership = self.require_membership(community_id, student_id)
        if channel_id is not None:
            self.get_channel(community_id, channel_id)
        fanout.mark_community_read(membership, self.clock.now_ms(), channel_id)
        self.save(Namespace.COMMUNITY_MEMBERSHIPS)
        return membership

    def fan_out_post(self, community_id: str, channel_id: str | None, author_id: str) -> list[Membership]:
        settings_for = {
            s.student_id: s for s in self.settings.values() if s.community_id == community_id
        }
        bumped = fanout.fan_out_new_post(
            self.memberships.values(),
            settings_for,
            community_id=community_id,
            author_id=author_id,
            channel_id=channel_id,
        )
        if bumped:
            self.save(Namespace.COMMUNITY_MEMBERSHIPS)
            self.bus.emit(
                EventKind.UNREAD_INCREMENTED,
                community_id=community_id,
                channel_id=channel_id,
                student_ids=[m.student_id for m in bumped],
            )
        return bumped

    # ------------------------------------------------------------------
    # Channel metadata & activity
    # ------------------------------------------------------------------
    def _meta(self, community_id: str, channel_id: str) -> ChannelPostMeta:
        meta = self.post_meta.get(channel_id)
        if meta is None:
            meta = ChannelPostMeta(channel_id=channel_id, community_id=community_id)
            self.post_meta[channel_id] = meta
        return meta

    def record_activity(self, community_id: str, channel_id: str | None, kind: str) -> ActivitySample:
        sample = ActivitySample(
            id=new_id("activity_"),
            community_id=community_id,
            channel_id=channel_id,
            type=kind,
            timestamp=self.clock.now_ms(),
        )
        self.activity.append(sample)
        del self.activity[:-MAX_ACTIVITY_SAMPLES]
        return sample

    def record_post(self, community_id: str, channel_id: str | None) -> None:
        now = self.clock.now_ms()
        community = self.get_community(community_id)
        community.post_count += 1
        community.last_activity_at = now
        if channel_id is not None:
            meta = self._meta(community_id, channel_id)
            meta.post_count += 1
            meta.last_post_at = now
            channel = self.channels.get(channel_id)
            if channel is not None:
                channel.post_count += 1
                channel.last_activity_at = now
        self.record_activity(community_id, channel_id, "post")
        self.save(
            Namespace.COMMUNITIES, Namespace.COMMUNITY_CHANNELS,
            Namespace.COMMUNITY_POST_META, Namespace.COMMUNITY_ACTIVITY,
        )

    def record_comment(self, community_id: str, channel_id: str | None) -> None:
        now = self.clock.now_ms()
        if community_id in self.communities:
            self.communities[community_id].last_activity_at = now
        if channel_id is not None:
            meta = self._meta(community_id, channel_id)
            meta.comment_count += 1
            meta.last_comment_at = now
        self.record_activity(community_id, channel_id, "comment")
        self.save(Namespace.COMMUNITIES, Namespace.COMMUNITY_POST_META, Namespace.COMMUNITY_ACTIVITY)

    def adjust_pinned(self, community_id: str, channel_id: str | None, delta: int) -> None:
        if channel_id is None:
            return
        meta = self._meta(community_id, channel_id)
        meta.pinned_post_count = max(0, meta.pinned_post_count + delta)
        self.save(Namespace.COMMUNITY_POST_META)

    # ------------------------------------------------------------------
    # Moderation records
    # ------------------------------------------------------------------
    def append_log(self, entry: ModerationLogEntry) -> None:
        """Append an audit entry, dropping the community's oldest beyond the cap.

        The cap applies per community; a busy community never evicts
        another community's history.
        """
        self.moderation_log.append(entry)
        scoped = [e.id for e in self.moderation_log if e.community_id == entry.community_id]
        overflow = len(scoped) - MAX_MODERATION_LOG_ENTRIES
        if overflow > 0:
            dropped = set(scoped[:overflow])
            self.moderation_log = [e for e in self.moderation_log if e.id not in dropped]
        self.save(Namespace.COMMUNITY_MODERATION_LOG)

    def log_for(self, community_id: str) -> list[ModerationLogEntry]:
        return [e for e in reversed(self.moderation_log) if e.community_id == community_id]

    def member_status(self, community_id: str, student_id: str) -> MemberStatus:
        key = settings_key(community_id, student_id)
        status = self.member_statuses.get(key)
        if status is None:
            status = MemberStatus(community_id=community_id, student_id=student_id)
            self.member_statuses[key] = status
        return status

    def announcements_for(self, community_id: str) -> list[Announcement]:
        return sorted(
            (a for a in self.announcements if a.community_id == community_id),
            key=lambda a: (not a.is_pinned, -a.created_at),
        )
