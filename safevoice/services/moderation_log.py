"""
safevoice.services.moderation_log — Privileged actions
=======================================================

Wraps every privileged mutation in the same four steps:

1. **Capability check.** No moderator capability → :class:`PermissionDenied`
   before anything is touched.
2. **Mutation** of the target (post flags, membership ban, channel mute …).
3. **Audit entry** appended to a bounded history.
4. **Cooldown-gated credit** of ``volunteer_mod_action`` to the moderator,
   keyed ``moderator:<moderatorId>:<actionType>``.  Inside the 5-minute
   window the action and its audit entry still happen; only the credit is
   suppressed.

Two surfaces exist: volunteer actions on the global feed
(:meth:`ModerationLog.record_moderator_action`, capped at 100 records)
and community-scoped actions (capped at 200 audit entries).
"""

from __future__ import annotations

import logging
from typing import Any

from safevoice.constants import (
    EARN_RULES,
    HOUR_MS,
    MAX_MODERATOR_ACTIONS,
    MODERATOR_REWARD_COOLDOWN_MS,
)
from safevoice.engine.community import (
    Announcement,
    ChannelMuteStatus,
    CommunityActionType,
    ModerationLogEntry,
)
from safevoice.engine.entities import ModeratorAction, ModeratorActionType, RewardCategory, new_id
from safevoice.engine.events import EventKind
from safevoice.errors import PermissionDenied, ValidationError
from safevoice.services.persistence import Namespace
from safevoice.services.post_store import PostStore

logger = logging.getLogger(__name__)

# Ledger reason per volunteer action
_ACTION_REASONS: dict[ModeratorActionType, str] = {
    ModeratorActionType.BLUR_POST: "Sensitive content blurred",
    ModeratorActionType.HIDE_POST: "Harmful content removed",
    ModeratorActionType.RESTORE_POST: "Content restored after review",
    ModeratorActionType.REVIEW_REPORT: "Community report reviewed",
    ModeratorActionType.VERIFY_ADVICE: "Verified community advice",
}


def _require_text(value: str | None, what: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{what} is required")
    return str(value).strip()


def _require_hours(value: Any, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{what} must be a positive number of hours")
    return value


class ModerationLog:
    """Capability-checked moderation on top of a loaded :class:`PostStore`."""

    def __init__(self, store: PostStore) -> None:
        self.store = store
        self.community = store.community
        self.ledger = store.ledger
        self.bus = store.bus
        self.clock = store.clock
        self.actions: list[ModeratorAction] = []

    def load(self) -> None:
        self.actions = self.store.persistence.load_records(Namespace.MODERATOR_ACTIONS, ModeratorAction)
        del self.actions[:-MAX_MODERATOR_ACTIONS]

    # ------------------------------------------------------------------
    # Credit
    # ------------------------------------------------------------------
    def _reward(self, moderator_id: str, action_type: str, target_id: str, reason: str) -> bool:
        tx = self.ledger.credit_with_cooldown(
            moderator_id,
            EARN_RULES["volunteer_mod_action"],
            reason,
            RewardCategory.REPORTING,
            reward_id=f"moderator:{moderator_id}:{action_type}",
            cooldown_ms=MODERATOR_REWARD_COOLDOWN_MS,
            metadata={
                "moderator_id": moderator_id,
                "action_type": str(action_type),
                "target_id": target_id,
            },
        )
        if tx is None:
            self.bus.emit(
                EventKind.MODERATOR_COOLDOWN,
                moderator_id=moderator_id, action_type=str(action_type), target_id=target_id,
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Volunteer actions (global feed)
    # ------------------------------------------------------------------
    def record_moderator_action(
        self,
        actor: str,
        action_type: str,
        target_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> ModeratorAction:
        """Apply a volunteer moderation action and record it.

        ``review_report`` reads ``metadata["accepted"]`` (default ``True``).
        """
        if not self.community.is_moderator(actor):
            raise PermissionDenied(f"{actor} is not a volunteer moderator")
        try:
            kind = ModeratorActionType(action_type)
        except ValueError:
            raise ValidationError(f"Unknown moderator action {action_type!r}") from None
        metadata = dict(metadata or {})

        if kind is ModeratorActionType.BLUR_POST:
            self.store.set_moderation_flags(target_id, blurred=True)
        elif kind is ModeratorActionType.HIDE_POST:
            self.store.set_moderation_flags(target_id, hidden=True)
        elif kind is ModeratorActionType.RESTORE_POST:
            self.store.set_moderation_flags(target_id, blurred=False, hidden=False)
        elif kind is ModeratorActionType.REVIEW_REPORT:
            self.store.review_report(target_id, actor, bool(metadata.get("accepted", True)))
        elif kind is ModeratorActionType.VERIFY_ADVICE:
            self.store.verify_advice(target_id)

        action = ModeratorAction(
            id=new_id("modaction_"),
            moderator_id=actor,
            action_type=kind,
            target_id=target_id,
            created_at=self.clock.now_ms(),
            metadata=metadata,
        )
        action.rewarded = self._reward(actor, kind.value, target_id, _ACTION_REASONS[kind])
        self.actions.append(action)
        del self.actions[:-MAX_MODERATOR_ACTIONS]
        self.store.persistence.save_records(Namespace.MODERATOR_ACTIONS, self.actions)
        logger.info("Moderator %s: %s on %s (rewarded=%s)", actor, kind, target_id, action.rewarded)
        return action

    # ------------------------------------------------------------------
    # Community actions
    # ------------------------------------------------------------------
    def _require_moderator(self, actor: str, community_id: str) -> None:
        self.community.get_community(community_id)
        if not self.community.is_moderator(actor, community_id):
            raise PermissionDenied(f"{actor} cannot moderate {community_id}")

    def _log(
        self,
        actor: str,
        community_id: str,
        action_type: CommunityActionType,
        target_id: str,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> ModerationLogEntry:
        entry = ModerationLogEntry(
            id=new_id("modlog_"),
            community_id=community_id,
            moderator_id=actor,
            action_type=action_type,
            target_id=target_id,
            description=description,
            timestamp=self.clock.now_ms(),
            metadata=dict(metadata or {}),
        )
        self.community.append_log(entry)
        self.community.record_activity(community_id, None, "moderation")
        self.community.save(Namespace.COMMUNITY_ACTIVITY)
        self.bus.emit(
            EventKind.MODERATION_LOGGED,
            community_id=community_id, entry_id=entry.id,
            action_type=action_type.value, moderator_id=actor, target_id=target_id,
        )
        entry.metadata["rewarded"] = self._reward(actor, action_type.value, target_id, description)
        self.community.save(Namespace.COMMUNITY_MODERATION_LOG)
        return entry

    def _community_post(self, community_id: str, post_id: str):
        post = self.store.get_post(post_id)
        if post.community_id != community_id:
            raise ValidationError(f"Post {post_id} does not belong to {community_id}")
        return post

    def pin_post(
        self, actor: str, community_id: str, post_id: str, duration_hours: int | None = None
    ) -> ModerationLogEntry:
        self._require_moderator(actor, community_id)
        self._community_post(community_id, post_id)
        until = None
        if duration_hours is not None:
            until = self.clock.now_ms() + _require_hours(duration_hours, "Pin duration") * HOUR_MS
        self.store.set_pinned(post_id, True, until=until)
        return self._log(
            actor, community_id, CommunityActionType.PIN_POST, post_id,
            "Pinned post", {"until": until},
        )

    def unpin_post(self, actor: str, community_id: str, post_id: str) -> ModerationLogEntry:
        self._require_moderator(actor, community_id)
        self._community_post(community_id, post_id)
        self.store.set_pinned(post_id, False)
        return self._log(actor, community_id, CommunityActionType.UNPIN_POST, post_id, "Unpinned post")

    def delete_post(self, actor: str, community_id: str, post_id: str, reason: str) -> ModerationLogEntry:
        self._require_moderator(actor, community_id)
        reason = _require_text(reason, "Reason")
        post = self._community_post(community_id, post_id)
        self.store.remove_post(post_id)
        return self._log(
            actor, community_id, CommunityActionType.DELETE_POST, post_id,
            f"Deleted post: {reason}", {"reason": reason, "author_id": post.author_id},
        )

    def ban_member(
        self, actor: str, community_id: str, student_id: str, reason: str, duration_hours: int
    ) -> ModerationLogEntry:
        self._require_moderator(actor, community_id)
        reason = _require_text(reason, "Reason")
        hours = _require_hours(duration_hours, "Ban duration")
        if student_id == actor:
            raise ValidationError("You cannot ban yourself")
        membership = self.community.require_membership(community_id, student_id)

        until = self.clock.now_ms() + hours * HOUR_MS
        membership.banned_until = until
        membership.ban_reason = reason
        status = self.community.member_status(community_id, student_id)
        status.banned_until = until
        status.ban_reason = reason
        self.community.save(Namespace.COMMUNITY_MEMBERSHIPS, Namespace.COMMUNITY_MEMBER_STATUSES)
        return self._log(
            actor, community_id, CommunityActionType.BAN_MEMBER, student_id,
            f"Banned for {hours}h: {reason}", {"reason": reason, "until": until, "duration_hours": hours},
        )

    def warn_member(self, actor: str, community_id: str, student_id: str, reason: str) -> ModerationLogEntry:
        self._require_moderator(actor, community_id)
        reason = _require_text(reason, "Reason")
        self.community.require_membership(community_id, student_id)
        status = self.community.member_status(community_id, student_id)
        status.warnings.append({"reason": reason, "moderator_id": actor, "timestamp": self.clock.now_ms()})
        self.community.save(Namespace.COMMUNITY_MEMBER_STATUSES)
        return self._log(
            actor, community_id, CommunityActionType.WARN_MEMBER, student_id,
            f"Warned: {reason}", {"reason": reason, "warning_count": len(status.warnings)},
        )

    def mute_channel(
        self, actor: str, community_id: str, channel_id: str, reason: str, duration_hours: int
    ) -> ModerationLogEntry:
        self._require_moderator(actor, community_id)
        reason = _require_text(reason, "Reason")
        hours = _require_hours(duration_hours, "Mute duration")
        channel = self.community.get_channel(community_id, channel_id)
        until = self.clock.now_ms() + hours * HOUR_MS
        self.community.channel_mutes[channel_id] = ChannelMuteStatus(
            channel_id=channel_id,
            community_id=community_id,
            muted_until=until,
            reason=reason,
            muted_by=actor,
        )
        self.community.save(Namespace.COMMUNITY_CHANNEL_MUTES)
        return self._log(
            actor, community_id, CommunityActionType.MUTE_CHANNEL, channel_id,
            f"Muted #{channel.slug} for {hours}h: {reason}", {"reason": reason, "until": until},
        )

    def unmute_channel(self, actor: str, community_id: str, channel_id: str) -> ModerationLogEntry:
        self._require_moderator(actor, community_id)
        channel = self.community.get_channel(community_id, channel_id)
        self.community.channel_mutes.pop(channel_id, None)
        self.community.save(Namespace.COMMUNITY_CHANNEL_MUTES)
        return self._log(
            actor, community_id, CommunityActionType.UNMUTE_CHANNEL, channel_id, f"Unmuted #{channel.slug}"
        )

    def post_announcement(self, actor: str, community_id: str, title: str, content: str) -> Announcement:
        self._require_moderator(actor, community_id)
        title = _require_text(title, "Title")
        content = _require_text(content, "Content")
        announcement = Announcement(
            id=new_id("announcement_"),
            community_id=community_id,
            title=title,
            content=content,
            author_id=actor,
            created_at=self.clock.now_ms(),
        )
        self.community.announcements.append(announcement)
        self.community.save(Namespace.COMMUNITY_ANNOUNCEMENTS)
        self._log(
            actor, community_id, CommunityActionType.POST_ANNOUNCEMENT, announcement.id,
            f"Announcement: {title}",
        )
        return announcement

    def actions_for(self, moderator_id: str | None = None) -> list[ModeratorAction]:
        return [a for a in reversed(self.actions) if moderator_id is None or a.moderator_id == moderator_id]
