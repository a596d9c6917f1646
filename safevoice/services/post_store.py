"""
safevoice.services.post_store — Post Store (aggregate root)
============================================================

Ties posts, comments, reports, bookmarks, notifications and community
state together.  Every public mutation runs to completion synchronously:
validate → mutate in place → (re)arm timers → credit/debit the ledger →
fan out unread counters → save the touched namespaces → emit events.
Validation and permission errors are raised before anything changes.

Reward idempotency keys used here:

====================================  ==============  =========================
reward_id                             role            credited
====================================  ==============  =========================
``first_post``                        author          first post ever (20)
``post:<postId>``                     author          any later post (10)
``post_media:<postId>``               author          media bonus (15)
``reaction:<postId>:<giverId>``       giver/receiver  1 / 2
``comment:<commentId>``               author          comment or reply (3)
``comment:<commentId>``               post_owner      comment received (2)
``crisis_support:<commentId>``        responder       crisis response (100)
``helpful_post:<postId>``             author          first helpful mark (50)
``helpful_comment:<commentId>``       author          5 helpful votes (25)
``verified_advice:<commentId>``       author          moderator-verified (50)
``viral:<postId>``                    author          100 reactions (150)
``report:<reportId>``                 reporter        accepted report (10)
====================================  ==============  =========================
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from safevoice.constants import (
    ARCHIVE_AFTER_MS,
    CUSTOM_LIFETIME_MAX_HOURS,
    CUSTOM_LIFETIME_MIN_HOURS,
    DEFAULT_BOOST_HOURS,
    EARN_RULES,
    EXPIRY_WARNING_MS,
    EXTENSION_HOURS,
    HELPFUL_COMMENT_THRESHOLD,
    HOUR_MS,
    LIFETIME_DURATIONS_MS,
    MAX_NOTIFICATIONS,
    MAX_PINNED_POSTS,
    SPEND_RULES,
    VIRAL_REACTION_THRESHOLD,
)
from safevoice.engine.clock import Clock
from safevoice.engine.entities import (
    REACTION_KINDS,
    BoostKind,
    Comment,
    Lifetime,
    Notification,
    Post,
    Report,
    RewardCategory,
    new_id,
)
from safevoice.engine.events import EventBus, EventKind
from safevoice.engine.ledger import RewardLedger, calculate_post_reward
from safevoice.engine.scheduler import LifecycleScheduler
from safevoice.errors import NotFound, PermissionDenied, ValidationError
from safevoice.services.collaborators import (
    AllowAllClassifier,
    ContentClassifier,
    CrisisDetector,
    CrisisEvent,
    CrisisEventType,
    CrisisRequest,
    CrisisRequestQueue,
    EncryptionHelper,
    ModerationResult,
    NoCrisisDetector,
)
from safevoice.services.community_state import CommunityState
from safevoice.services.persistence import Namespace

if TYPE_CHECKING:
    from safevoice.services.persistence import PersistenceAdapter

logger = logging.getLogger(__name__)

# BoostKind → (flag attribute, deadline attribute)
_BOOST_FIELDS: dict[BoostKind, tuple[str, str]] = {
    BoostKind.HIGHLIGHT: ("is_highlighted", "highlighted_until"),
    BoostKind.CROSS_CAMPUS: ("is_cross_campus_boosted", "cross_campus_until"),
    BoostKind.PIN: ("is_pinned", "pinned_until"),
}

_BOOST_COST: dict[BoostKind, int] = {
    BoostKind.HIGHLIGHT: SPEND_RULES["post_boost"],
    BoostKind.CROSS_CAMPUS: SPEND_RULES["cross_campus_boost"],
}


def resolve_lifetime(lifetime: str, custom_hours: int | None, now_ms: int) -> tuple[Lifetime, int | None]:
    """Validate a lifetime choice and return ``(lifetime, expires_at)``."""
    try:
        policy = Lifetime(lifetime)
    except ValueError:
        raise ValidationError(f"Unknown lifetime {lifetime!r}") from None
    if policy is Lifetime.NEVER:
        return policy, None
    if policy is Lifetime.CUSTOM:
        if (
            custom_hours is None
            or isinstance(custom_hours, bool)
            or not isinstance(custom_hours, int)
            or not CUSTOM_LIFETIME_MIN_HOURS <= custom_hours <= CUSTOM_LIFETIME_MAX_HOURS
        ):
            raise ValidationError(
                f"Custom lifetime must be {CUSTOM_LIFETIME_MIN_HOURS}-{CUSTOM_LIFETIME_MAX_HOURS} hours"
            )
        return policy, now_ms + custom_hours * HOUR_MS
    return policy, now_ms + LIFETIME_DURATIONS_MS[policy.value]


class PostStore:
    """The aggregate root.  Construct, then call :meth:`load` once."""

    def __init__(
        self,
        persistence: PersistenceAdapter,
        clock: Clock,
        scheduler: LifecycleScheduler,
        bus: EventBus,
        ledger: RewardLedger,
        community: CommunityState,
        *,
        classifier: ContentClassifier | None = None,
        crisis_detector: CrisisDetector | None = None,
        encryption: EncryptionHelper | None = None,
        crisis_queue: CrisisRequestQueue | None = None,
    ) -> None:
        self.persistence = persistence
        self.clock = clock
        self.scheduler = scheduler
        self.bus = bus
        self.ledger = ledger
        self.community = community
        self.classifier = classifier or AllowAllClassifier()
        self.crisis_detector = crisis_detector or NoCrisisDetector()
        self.encryption = encryption
        self.crisis_queue = crisis_queue

        self.posts: dict[str, Post] = {}
        self.bookmarks: dict[str, list[str]] = {}
        self.reports: list[Report] = []
        self.notifications: list[Notification] = []
        self.encryption_keys: dict[str, dict[str, str]] = {}
        self.crisis_requests: dict[str, CrisisRequest] = {}

        self._unsubscribe_crisis: Callable[[], None] | None = None
        self.ledger.set_context_provider(self._achievement_stats)

    # ------------------------------------------------------------------
    # Load / resume / teardown
    # ------------------------------------------------------------------
    def load(self) -> dict[str, int]:
        """Rehydrate every namespace and resume timers.

        Posts whose deadline passed while the process was down are deleted
        before this returns; live deadlines are re-armed from the persisted
        ``expires_at``.  Returns a summary of what happened.
        """
        p = self.persistence
        self.posts = {post.id: post for post in p.load_records(Namespace.POSTS, Post)}
        self.reports = p.load_records(Namespace.REPORTS, Report)
        self.notifications = p.load_records(Namespace.NOTIFICATIONS, Notification)
        self.crisis_requests = p.load_record_map(Namespace.CRISIS_REQUESTS, CrisisRequest)

        raw_bookmarks = p.load(Namespace.BOOKMARKS, default=dict)
        self.bookmarks = {}
        if isinstance(raw_bookmarks, dict):
            for student_id, ids in raw_bookmarks.items():
                if isinstance(ids, list):
                    self.bookmarks[str(student_id)] = [i for i in ids if isinstance(i, str)]
        else:
            logger.warning("Bookmarks namespace is malformed; resetting")

        raw_keys = p.load(Namespace.ENCRYPTION_KEYS, default=dict)
        self.encryption_keys = {
            k: v for k, v in raw_keys.items() if isinstance(v, dict)
        } if isinstance(raw_keys, dict) else {}

        self.ledger.load()
        self.community.load()

        summary = self._resume()
        summary["archived"] = self.archive_old_posts()
        if self.crisis_queue is not None and self._unsubscribe_crisis is None:
            self._unsubscribe_crisis = self.crisis_queue.subscribe(self.merge_crisis_event)
        logger.info(
            "Post store loaded: %d post(s), %d expired on load, %d timer(s) armed",
            len(self.posts), summary["expired"], summary["armed"],
        )
        return summary

    def _resume(self) -> dict[str, int]:
        now = self.clock.now_ms()
        expired = armed = boosts_ended = 0
        for post in list(self.posts.values()):
            if post.expires_at is not None and post.expires_at <= now:
                self._remove_post(post.id, EventKind.POST_EXPIRED, save=False)
                expired += 1
                continue
            if post.expires_at is not None:
                self._arm_expiry(post)
                armed += 1
            for kind, (flag, until_attr) in _BOOST_FIELDS.items():
                until = getattr(post, until_attr)
                if not getattr(post, flag) or until is None:
                    continue
                if until <= now:
                    self._clear_boost_fields(post, kind)
                    boosts_ended += 1
                else:
                    self._arm_boost(post.id, kind, until)
                    armed += 1
        if expired or boosts_ended:
            self._save(Namespace.POSTS, Namespace.BOOKMARKS, Namespace.ENCRYPTION_KEYS)
        return {"expired": expired, "armed": armed, "boosts_ended": boosts_ended}

    def shutdown(self) -> None:
        """Cancel every live timer and detach from the crisis queue."""
        self.scheduler.cancel_all()
        if self._unsubscribe_crisis is not None:
            self._unsubscribe_crisis()
            self._unsubscribe_crisis = None

    def _save(self, *namespaces: str) -> None:
        p = self.persistence
        for namespace in namespaces:
            if namespace == Namespace.POSTS:
                p.save_records(Namespace.POSTS, list(self.posts.values()))
            elif namespace == Namespace.REPORTS:
                p.save_records(Namespace.REPORTS, self.reports)
            elif namespace == Namespace.NOTIFICATIONS:
                p.save_records(Namespace.NOTIFICATIONS, self.notifications)
            elif namespace == Namespace.BOOKMARKS:
                p.save(Namespace.BOOKMARKS, self.bookmarks)
            elif namespace == Namespace.ENCRYPTION_KEYS:
                p.save(Namespace.ENCRYPTION_KEYS, self.encryption_keys)
            elif namespace == Namespace.CRISIS_REQUESTS:
                p.save_record_map(Namespace.CRISIS_REQUESTS, self.crisis_requests)
            else:
                raise KeyError(namespace)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_post(self, post_id: str) -> Post:
        post = self.posts.get(post_id)
        if post is None:
            raise NotFound(f"Post {post_id} not found")
        return post

    def get_comment(self, post_id: str, comment_id: str) -> tuple[Post, Comment]:
        post = self.get_post(post_id)
        comment = post.comments.get(comment_id)
        if comment is None:
            raise NotFound(f"Comment {comment_id} not found on post {post_id}")
        return post, comment

    def find_comment(self, comment_id: str) -> tuple[Post, Comment]:
        for post in self.posts.values():
            comment = post.comments.get(comment_id)
            if comment is not None:
                return post, comment
        raise NotFound(f"Comment {comment_id} not found")

    def list_posts(
        self,
        *,
        community_id: str | None = None,
        channel_id: str | None = None,
        author_id: str | None = None,
        include_archived: bool = False,
        include_hidden: bool = False,
    ) -> list[Post]:
        """Pinned first, then newest first."""
        posts = [
            p for p in self.posts.values()
            if (community_id is None or p.community_id == community_id)
            and (channel_id is None or p.channel_id == channel_id)
            and (author_id is None or p.author_id == author_id)
            and (include_archived or not p.archived)
            and (include_hidden or not p.is_hidden)
        ]
        posts.sort(key=lambda p: (not p.is_pinned, -p.created_at))
        return posts

    def bookmarked_posts(self, student_id: str) -> list[Post]:
        return [self.posts[i] for i in self.bookmarks.get(student_id, []) if i in self.posts]

    def notifications_for(self, student_id: str, *, unread_only: bool = False) -> list[Notification]:
        return [
            n for n in reversed(self.notifications)
            if n.recipient_id == student_id and (not unread_only or not n.read)
        ]

    def _achievement_stats(self, user_id: str) -> dict[str, int]:
        reactions = viral = 0
        for post in self.posts.values():
            if post.author_id != user_id:
                continue
            reactions += post.total_reactions
            viral += int(post.is_viral)
        return {"total_reactions_received": reactions, "viral_post_count": viral}

    # ------------------------------------------------------------------
    # Posts
    # ------------------------------------------------------------------
    def create_post(
        self,
        author_id: str,
        content: str,
        *,
        category: str | None = None,
        lifetime: str = Lifetime.NEVER,
        custom_hours: int | None = None,
        image_url: str | None = None,
        encrypted: bool = False,
        moderation: ModerationResult | None = None,
        community_id: str | None = None,
        channel_id: str | None = None,
        visibility: str = "public",
        is_anonymous: bool = True,
    ) -> Post:
        if not content or not content.strip():
            raise ValidationError("Post content cannot be empty")
        now = self.clock.now_ms()
        policy, expires_at = resolve_lifetime(lifetime, custom_hours, now)

        if community_id is not None:
            self._check_can_post(author_id, community_id, channel_id)
        elif channel_id is not None:
            raise ValidationError("A channel requires a community")

        result = moderation or self.classifier.classify(content)
        if result.blocked:
            raise ValidationError(
                "Post blocked by content moderation: " + (", ".join(result.issues) or "policy violation")
            )
        if encrypted and self.encryption is None:
            raise ValidationError("Encryption is not available")

        crisis = self.crisis_detector.detect(content)
        post = Post(
            id=new_id("post_"),
            author_id=author_id,
            content=content,
            created_at=now,
            category=category,
            image_url=image_url,
            lifetime=policy,
            custom_lifetime_hours=custom_hours if policy is Lifetime.CUSTOM else None,
            expires_at=expires_at,
            is_crisis_flagged=crisis.is_crisis,
            crisis_level=crisis.severity,
            moderation_issues=list(result.issues),
            needs_review=result.needs_review,
            community_id=community_id,
            channel_id=channel_id,
            visibility=visibility,
            is_anonymous=is_anonymous,
        )
        if encrypted:
            payload = self.encryption.encrypt(content)
            post.content = payload.ciphertext
            post.is_encrypted = True
            self.encryption_keys[post.id] = {"iv": payload.iv, "key_id": payload.key_id}

        self.posts[post.id] = post
        if expires_at is not None:
            self._arm_expiry(post)
        self._save(Namespace.POSTS, Namespace.ENCRYPTION_KEYS)

        first_post = self._credit_post(post)
        self.ledger.process_posting_streak(author_id)

        if crisis.is_crisis and self.crisis_queue is not None:
            self.crisis_queue.create(
                CrisisRequest(
                    id=new_id("crisis_"),
                    student_id=author_id,
                    post_id=post.id,
                    severity=crisis.severity or "high",
                    created_at=now,
                    updated_at=now,
                )
            )

        if community_id is not None:
            self.community.record_post(community_id, channel_id)
            self.community.fan_out_post(community_id, channel_id, author_id)

        logger.info("Post %s created by %s (lifetime=%s)", post.id, author_id, policy)
        self.bus.emit(
            EventKind.POST_CREATED,
            post_id=post.id, author_id=author_id, community_id=community_id, channel_id=channel_id,
            first_post=first_post,
        )
        return post

    def _check_can_post(self, author_id: str, community_id: str, channel_id: str | None) -> None:
        self.community.get_community(community_id)
        membership = self.community.require_membership(community_id, author_id)
        if membership.is_banned(self.clock.now_ms()):
            raise PermissionDenied(f"{author_id} is banned from {community_id}")
        if channel_id is None:
            return
        channel = self.community.get_channel(community_id, channel_id)
        is_mod = self.community.is_moderator(author_id, community_id)
        if channel.is_locked and not is_mod:
            raise PermissionDenied(f"Channel {channel.name} is read-only")
        if self.community.is_channel_muted(channel_id) and not is_mod:
            raise PermissionDenied(f"Channel {channel.name} is muted")

    def _credit_post(self, post: Post) -> bool:
        """Pay the author for *post*; returns whether it was their first."""
        first = not self.ledger.has_reward("first_post", "author", post.author_id)
        breakdown = calculate_post_reward(is_first_post=first, has_media=bool(post.image_url))
        meta = {"post_id": post.id, "first_post": first}
        if first:
            self.ledger.credit_once(
                post.author_id, breakdown.base + breakdown.first_post, "First post bonus",
                RewardCategory.POSTS, reward_id="first_post", recipient_role="author", metadata=meta,
            )
        else:
            self.ledger.credit_once(
                post.author_id, breakdown.base, "Post created",
                RewardCategory.POSTS, reward_id=f"post:{post.id}", recipient_role="author", metadata=meta,
            )
        if breakdown.media:
            self.ledger.credit_once(
                post.author_id, breakdown.media, "Media post bonus",
                RewardCategory.POSTS, reward_id=f"post_media:{post.id}", recipient_role="author",
                metadata={"post_id": post.id},
            )
        return first

    def edit_post(
        self,
        post_id: str,
        actor: str,
        *,
        content: str | None = None,
        lifetime: str | None = None,
        custom_hours: int | None = None,
    ) -> Post:
        """Author-only edit.  A lifetime change restarts the clock from now."""
        post = self.get_post(post_id)
        if post.author_id != actor:
            raise PermissionDenied("Only the author can edit this post")
        if content is not None and not content.strip():
            raise ValidationError("Post content cannot be empty")
        now = self.clock.now_ms()
        new_lifetime = None
        if lifetime is not None:
            new_lifetime = resolve_lifetime(lifetime, custom_hours, now)

        if content is not None and not post.is_encrypted:
            post.content = content
            post.is_edited = True
            post.edited_at = now
        if new_lifetime is not None:
            self.scheduler.clear_expiry_timer(post_id)
            post.lifetime, post.expires_at = new_lifetime
            post.custom_lifetime_hours = custom_hours if post.lifetime is Lifetime.CUSTOM else None
            post.expiry_warning_shown = False
            if post.expires_at is not None:
                self._arm_expiry(post)
        self._save(Namespace.POSTS)
        return post

    def delete_post(self, post_id: str, actor: str) -> None:
        post = self.get_post(post_id)
        if post.author_id != actor:
            raise PermissionDenied("Only the author can delete this post")
        self._remove_post(post_id, EventKind.POST_DELETED)

    def remove_post(self, post_id: str) -> None:
        """Privileged removal (moderation); the caller checks capability."""
        self.get_post(post_id)
        self._remove_post(post_id, EventKind.POST_DELETED)

    def _remove_post(self, post_id: str, kind: EventKind, *, save: bool = True) -> None:
        post = self.posts.pop(post_id, None)
        if post is None:
            return
        self.scheduler.clear_post(post_id)
        self.encryption_keys.pop(post_id, None)
        for ids in self.bookmarks.values():
            if post_id in ids:
                ids.remove(post_id)
        if post.is_pinned and post.community_id is not None:
            self.community.adjust_pinned(post.community_id, post.channel_id, -1)
        if save:
            self._save(Namespace.POSTS, Namespace.BOOKMARKS, Namespace.ENCRYPTION_KEYS)
        logger.info("Post %s removed (%s)", post_id, kind)
        self.bus.emit(kind, post_id=post_id, author_id=post.author_id)

    def toggle_pin(self, post_id: str, actor: str) -> bool:
        """Author self-pin; at most three pinned posts per author."""
        post = self.get_post(post_id)
        if post.author_id != actor:
            raise PermissionDenied("Only the author can pin this post")
        if post.is_pinned:
            self.scheduler.clear_boost_timer(post_id, BoostKind.PIN)
            post.is_pinned = False
            post.pinned_at = None
            post.pinned_until = None
        else:
            pinned = sum(1 for p in self.posts.values() if p.author_id == actor and p.is_pinned)
            if pinned >= MAX_PINNED_POSTS:
                raise ValidationError(f"You can pin at most {MAX_PINNED_POSTS} posts")
            post.is_pinned = True
            post.pinned_at = self.clock.now_ms()
        if post.community_id is not None:
            self.community.adjust_pinned(post.community_id, post.channel_id, 1 if post.is_pinned else -1)
        self._save(Namespace.POSTS)
        return post.is_pinned

    def set_pinned(self, post_id: str, pinned: bool, *, until: int | None = None) -> Post:
        """Privileged pin/unpin (moderation); an ``until`` arms a timer."""
        post = self.get_post(post_id)
        was_pinned = post.is_pinned
        self.scheduler.clear_boost_timer(post_id, BoostKind.PIN)
        post.is_pinned = pinned
        post.pinned_at = self.clock.now_ms() if pinned else None
        post.pinned_until = until if pinned else None
        if pinned and until is not None:
            self._arm_boost(post_id, BoostKind.PIN, until)
        if post.community_id is not None and was_pinned != post.is_pinned:
            self.community.adjust_pinned(post.community_id, post.channel_id, 1 if pinned else -1)
        self._save(Namespace.POSTS)
        return post

    # ------------------------------------------------------------------
    # Lifecycle: expiry, extension, boosts
    # ------------------------------------------------------------------
    def _arm_expiry(self, post: Post) -> None:
        post_id = post.id
        self.scheduler.schedule_expiry(post_id, post.expires_at, lambda: self._on_expiry(post_id))

    def _on_expiry(self, post_id: str) -> None:
        post = self.posts.get(post_id)
        if post is None or post.expires_at is None:
            return
        if post.expires_at > self.clock.now_ms():
            # Fired early (wall clock vs. loop clock); re-arm for the rest
            self._arm_expiry(post)
            return
        self._remove_post(post_id, EventKind.POST_EXPIRED)

    def extend_post(self, post_id: str, actor: str, hours: int = EXTENSION_HOURS) -> Post:
        """Paid extension: new deadline = old deadline + *hours*."""
        post = self.get_post(post_id)
        if post.author_id != actor:
            raise PermissionDenied("Only the author can extend this post")
        if post.expires_at is None:
            raise ValidationError("Post never expires")
        if isinstance(hours, bool) or not isinstance(hours, int) or hours <= 0:
            raise ValidationError("Extension must be a positive number of hours")

        self.ledger.debit(
            actor, SPEND_RULES["post_extension"], "Post lifetime extension",
            {"post_id": post_id, "hours": hours},
        )
        self.scheduler.clear_expiry_timer(post_id)
        post.expires_at += hours * HOUR_MS
        post.expiry_warning_shown = False
        post.extension_count += 1
        self._arm_expiry(post)
        self._save(Namespace.POSTS)
        logger.info("Post %s extended by %dh", post_id, hours)
        return post

    def boost_post(self, post_id: str, actor: str, kind: str, hours: int | None = None) -> Post:
        """Paid temporary highlight or cross-campus boost."""
        try:
            boost = BoostKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown boost kind {kind!r}") from None
        if boost not in _BOOST_COST:
            raise ValidationError(f"{kind} cannot be purchased")
        post = self.get_post(post_id)
        if post.author_id != actor:
            raise PermissionDenied("Only the author can boost this post")
        hours = DEFAULT_BOOST_HOURS[boost.value] if hours is None else hours
        if isinstance(hours, bool) or not isinstance(hours, int) or hours <= 0:
            raise ValidationError("Boost duration must be a positive number of hours")
        flag, until_attr = _BOOST_FIELDS[boost]
        if getattr(post, flag):
            raise ValidationError(f"Post already has an active {boost} boost")

        label = "Post highlight" if boost is BoostKind.HIGHLIGHT else "Cross-campus boost"
        self.ledger.debit(actor, _BOOST_COST[boost], label, {"post_id": post_id, "boost": boost.value, "hours": hours})
        until = self.clock.now_ms() + hours * HOUR_MS
        setattr(post, flag, True)
        setattr(post, until_attr, until)
        self._arm_boost(post_id, boost, until)
        self._save(Namespace.POSTS)
        self.bus.emit(EventKind.BOOST_STARTED, post_id=post_id, boost_kind=boost.value, until=until)
        return post

    def _arm_boost(self, post_id: str, kind: BoostKind, until: int) -> None:
        self.scheduler.schedule_boost(post_id, kind.value, until, lambda: self._on_boost_end(post_id, kind))

    def _clear_boost_fields(self, post: Post, kind: BoostKind) -> None:
        flag, until_attr = _BOOST_FIELDS[kind]
        setattr(post, flag, False)
        setattr(post, until_attr, None)
        if kind is BoostKind.PIN:
            post.pinned_at = None
            if post.community_id is not None:
                self.community.adjust_pinned(post.community_id, post.channel_id, -1)

    def _on_boost_end(self, post_id: str, kind: BoostKind) -> None:
        post = self.posts.get(post_id)
        if post is None:
            return
        self._clear_boost_fields(post, kind)
        self._save(Namespace.POSTS)
        logger.info("Boost %s ended for post %s", kind, post_id)
        self.notify(post.author_id, "boost", f"Your {kind.value.replace('_', ' ')} boost has ended", post_id=post_id)
        self.bus.emit(EventKind.BOOST_EXPIRED, post_id=post_id, boost_kind=kind.value)

    def check_expiry_warnings(self) -> list[str]:
        """Warn authors once per deadline when expiry is 30 minutes away."""
        now = self.clock.now_ms()
        warned: list[str] = []
        for post in self.posts.values():
            if post.expires_at is None or post.expiry_warning_shown:
                continue
            remaining = post.expires_at - now
            if 0 < remaining <= EXPIRY_WARNING_MS:
                post.expiry_warning_shown = True
                warned.append(post.id)
                minutes = max(1, remaining // 60_000)
                self.notify(post.author_id, "expiry", f"Your post expires in {minutes} minute(s)", post_id=post.id)
                self.bus.emit(EventKind.EXPIRY_WARNING, post_id=post.id, expires_at=post.expires_at)
        if warned:
            self._save(Namespace.POSTS)
        return warned

    def archive_old_posts(self) -> int:
        """Archive every post created more than 30 days ago."""
        cutoff = self.clock.now_ms() - ARCHIVE_AFTER_MS
        archived = 0
        for post in self.posts.values():
            if not post.archived and post.created_at < cutoff:
                post.archived = True
                post.archived_at = self.clock.now_ms()
                archived += 1
        if archived:
            self._save(Namespace.POSTS)
            logger.info("Archived %d post(s)", archived)
            self.bus.emit(EventKind.POSTS_ARCHIVED, count=archived)
        return archived

    def run_maintenance(self) -> dict[str, int]:
        """Periodic sweep: overdue expiries, warnings, archival, renewals."""
        now = self.clock.now_ms()
        overdue = [p.id for p in self.posts.values() if p.expires_at is not None and p.expires_at <= now]
        for post_id in overdue:
            self._remove_post(post_id, EventKind.POST_EXPIRED)
        return {
            "expired": len(overdue),
            "warned": len(self.check_expiry_warnings()),
            "archived": self.archive_old_posts(),
            "renewals": len(self.ledger.renew_due_subscriptions()),
        }

    # ------------------------------------------------------------------
    # Reactions & helpful marks
    # ------------------------------------------------------------------
    def react(self, post_id: str, actor: str, kind: str) -> Post:
        if kind not in REACTION_KINDS:
            raise ValidationError(f"Unknown reaction {kind!r}")
        post = self.get_post(post_id)
        post.reactions[kind] = post.reactions.get(kind, 0) + 1
        self._save(Namespace.POSTS)

        reward_id = f"reaction:{post_id}:{actor}"
        meta = {"post_id": post_id, "reaction": kind}
        self.ledger.credit_once(
            actor, EARN_RULES["reaction_given"], "Reaction given", RewardCategory.REACTIONS,
            reward_id=reward_id, recipient_role="giver", metadata=meta,
        )
        if actor != post.author_id:
            self.ledger.credit_once(
                post.author_id, EARN_RULES["reaction_received"], "Reaction received", RewardCategory.REACTIONS,
                reward_id=reward_id, recipient_role="receiver", metadata=meta,
            )
            self.notify(post.author_id, "reaction", "Someone reacted to your post", post_id=post_id, actor_id=actor)

        self._check_viral(post)
        self.ledger.reconcile_achievements(post.author_id)
        if post.community_id is not None:
            self.community.record_activity(post.community_id, post.channel_id, "reaction")
            self.community.save(Namespace.COMMUNITY_ACTIVITY)
        return post

    def _check_viral(self, post: Post) -> None:
        total = post.total_reactions
        if post.is_viral or total < VIRAL_REACTION_THRESHOLD:
            return
        post.is_viral = True
        post.viral_awarded_at = self.clock.now_ms()
        self._save(Namespace.POSTS)
        self.ledger.credit_once(
            post.author_id, EARN_RULES["viral_post"], "Post went viral", RewardCategory.POSTS,
            reward_id=f"viral:{post.id}", recipient_role="author",
            metadata={"post_id": post.id, "viral_threshold": VIRAL_REACTION_THRESHOLD, "total_reactions": total},
        )
        self.notify(post.author_id, "award", "Your post went viral!", post_id=post.id)

    def mark_post_helpful(self, post_id: str, actor: str) -> Post:
        post = self.get_post(post_id)
        if post.author_id == actor:
            raise ValidationError("You cannot mark your own post helpful")
        post.helpful_count += 1
        first = not post.helpful_reward_awarded
        post.helpful_reward_awarded = True
        self._save(Namespace.POSTS)
        if first:
            self.ledger.credit_once(
                post.author_id, EARN_RULES["helpful_post"], "Post marked helpful", RewardCategory.HELPFUL,
                reward_id=f"helpful_post:{post_id}", recipient_role="author", metadata={"post_id": post_id},
            )
        return post

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------
    def add_comment(self, post_id: str, actor: str, content: str, parent_id: str | None = None) -> Comment:
        if not content or not content.strip():
            raise ValidationError("Comment cannot be empty")
        post = self.get_post(post_id)
        parent = None
        if parent_id is not None:
            parent = post.comments.get(parent_id)
            if parent is None:
                raise NotFound(f"Comment {parent_id} not found on post {post_id}")

        comment = Comment(
            id=new_id("comment_"),
            post_id=post_id,
            parent_id=parent_id,
            author_id=actor,
            content=content,
            created_at=self.clock.now_ms(),
        )
        post.comments.add(comment)
        post.comment_count = len(post.comments)
        self._save(Namespace.POSTS)

        is_reply = parent is not None
        reward_id = f"comment:{comment.id}"
        meta = {"post_id": post_id, "comment_id": comment.id, "is_reply": is_reply}
        self.ledger.credit_once(
            actor, EARN_RULES["reply" if is_reply else "comment"],
            "Reply posted" if is_reply else "Comment posted", RewardCategory.COMMENTS,
            reward_id=reward_id, recipient_role="author", metadata=meta,
        )
        if post.author_id != actor:
            self.ledger.credit_once(
                post.author_id, EARN_RULES["reply_received"],
                "Reply received on post" if is_reply else "Comment received", RewardCategory.COMMENTS,
                reward_id=reward_id, recipient_role="post_owner", metadata=meta,
            )
            self.notify(
                post.author_id, "reply" if is_reply else "comment",
                "New reply on your post" if is_reply else "New comment on your post",
                post_id=post_id, comment_id=comment.id, actor_id=actor,
            )
        if parent is not None and not parent.is_deleted and parent.author_id not in (actor, post.author_id):
            self.notify(
                parent.author_id, "reply", "Someone replied to your comment",
                post_id=post_id, comment_id=comment.id, actor_id=actor,
            )

        if post.is_crisis_flagged and actor != post.author_id:
            self.ledger.credit_once(
                actor, EARN_RULES["crisis_response"], "Crisis support response", RewardCategory.CRISIS,
                reward_id=f"crisis_support:{comment.id}", recipient_role="responder",
                metadata={"post_id": post_id, "comment_id": comment.id},
            )

        if post.community_id is not None:
            self.community.record_comment(post.community_id, post.channel_id)
        return comment

    def edit_comment(self, post_id: str, comment_id: str, actor: str, content: str) -> Comment:
        _, comment = self.get_comment(post_id, comment_id)
        if comment.author_id != actor:
            raise PermissionDenied("Only the author can edit this comment")
        if not content or not content.strip():
            raise ValidationError("Comment cannot be empty")
        comment.content = content
        comment.is_edited = True
        comment.edited_at = self.clock.now_ms()
        self._save(Namespace.POSTS)
        return comment

    def delete_comment(self, post_id: str, comment_id: str, actor: str) -> bool:
        """Returns ``True`` if removed, ``False`` if left as a placeholder."""
        post, comment = self.get_comment(post_id, comment_id)
        if comment.author_id != actor and not self.community.is_moderator(actor, post.community_id):
            raise PermissionDenied("Only the author can delete this comment")
        removed = post.comments.remove(comment_id)
        post.comment_count = len(post.comments)
        self._save(Namespace.POSTS)
        return removed

    def react_to_comment(self, post_id: str, comment_id: str, actor: str, kind: str) -> Comment:
        if kind not in REACTION_KINDS:
            raise ValidationError(f"Unknown reaction {kind!r}")
        _, comment = self.get_comment(post_id, comment_id)
        if comment.is_deleted:
            raise ValidationError("Cannot react to a deleted comment")
        comment.reactions[kind] = comment.reactions.get(kind, 0) + 1
        self._save(Namespace.POSTS)
        return comment

    def mark_comment_helpful(self, post_id: str, comment_id: str, actor: str) -> Comment:
        """Count a helpful vote; the fifth one pays the author once."""
        _, comment = self.get_comment(post_id, comment_id)
        if comment.is_deleted:
            raise ValidationError("Cannot vote on a deleted comment")
        if comment.author_id == actor:
            raise ValidationError("You cannot mark your own comment helpful")
        comment.helpful_votes += 1
        award = comment.helpful_votes >= HELPFUL_COMMENT_THRESHOLD and not comment.helpful_reward_awarded
        if award:
            comment.helpful_reward_awarded = True
        self._save(Namespace.POSTS)
        if award:
            self.ledger.credit_once(
                comment.author_id, EARN_RULES["helpful_comment"], "Comment marked helpful", RewardCategory.HELPFUL,
                reward_id=f"helpful_comment:{comment_id}", recipient_role="author",
                metadata={
                    "post_id": post_id, "comment_id": comment_id,
                    "helpful_votes": comment.helpful_votes, "threshold": HELPFUL_COMMENT_THRESHOLD,
                },
            )
            self.notify(comment.author_id, "award", "Your comment was marked helpful", post_id=post_id, comment_id=comment_id)
        return comment

    def verify_advice(self, comment_id: str) -> Comment:
        """Mark a comment as verified advice (the caller checks capability)."""
        post, comment = self.find_comment(comment_id)
        if comment.is_deleted:
            raise ValidationError("Cannot verify a deleted comment")
        comment.is_verified_advice = True
        award = not comment.verified_advice_reward_awarded
        comment.verified_advice_reward_awarded = True
        self._save(Namespace.POSTS)
        if award:
            self.ledger.credit_once(
                comment.author_id, EARN_RULES["verified_advice"], "Advice verified by moderator",
                RewardCategory.HELPFUL, reward_id=f"verified_advice:{comment_id}", recipient_role="author",
                metadata={"post_id": post.id, "comment_id": comment_id},
            )
        return comment

    def set_moderation_flags(self, post_id: str, *, blurred: bool | None = None, hidden: bool | None = None) -> Post:
        post = self.get_post(post_id)
        if blurred is not None:
            post.is_blurred = blurred
        if hidden is not None:
            post.is_hidden = hidden
        self._save(Namespace.POSTS)
        return post

    # ------------------------------------------------------------------
    # Reports & bookmarks
    # ------------------------------------------------------------------
    def report(
        self,
        actor: str,
        report_type: str,
        description: str = "",
        *,
        post_id: str | None = None,
        comment_id: str | None = None,
    ) -> Report:
        if not report_type or not report_type.strip():
            raise ValidationError("Report type is required")
        if post_id is None:
            raise ValidationError("A report must target a post or a comment")
        post = self.get_post(post_id)
        if comment_id is not None and comment_id not in post.comments:
            raise NotFound(f"Comment {comment_id} not found on post {post_id}")

        report = Report(
            id=new_id("report_"),
            reporter_id=actor,
            report_type=report_type,
            description=description,
            reported_at=self.clock.now_ms(),
            post_id=post_id,
            comment_id=comment_id,
        )
        self.reports.append(report)
        post.report_count += 1
        self._save(Namespace.REPORTS, Namespace.POSTS)
        logger.info("Report %s filed on post %s", report.id, post_id)
        return report

    def get_report(self, report_id: str) -> Report:
        for report in self.reports:
            if report.id == report_id:
                return report
        raise NotFound(f"Report {report_id} not found")

    def review_report(self, report_id: str, reviewer: str, accepted: bool) -> Report:
        """Close a report (the caller checks capability)."""
        report = self.get_report(report_id)
        if report.status != "pending":
            raise ValidationError(f"Report {report_id} was already reviewed")
        report.status = "accepted" if accepted else "dismissed"
        report.reviewed_by = reviewer
        report.reviewed_at = self.clock.now_ms()
        self._save(Namespace.REPORTS)
        if accepted:
            self.ledger.credit_once(
                report.reporter_id, EARN_RULES["report_accepted"], "Report accepted", RewardCategory.REPORTING,
                reward_id=f"report:{report_id}", recipient_role="reporter", metadata={"report_id": report_id},
            )
        return report

    def toggle_bookmark(self, post_id: str, student_id: str) -> bool:
        self.get_post(post_id)
        ids = self.bookmarks.setdefault(student_id, [])
        if post_id in ids:
            ids.remove(post_id)
            bookmarked = False
        else:
            ids.append(post_id)
            bookmarked = True
        self._save(Namespace.BOOKMARKS)
        return bookmarked

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------
    def notify(
        self,
        recipient_id: str,
        type_: str,
        message: str,
        *,
        post_id: str | None = None,
        comment_id: str | None = None,
        actor_id: str | None = None,
    ) -> Notification:
        notification = Notification(
            id=new_id("notification_"),
            recipient_id=recipient_id,
            type=type_,
            message=message,
            created_at=self.clock.now_ms(),
            actor_id=actor_id,
            post_id=post_id,
            comment_id=comment_id,
        )
        self.notifications.append(notification)
        # Keep only the newest MAX_NOTIFICATIONS per recipient
        mine = [n for n in self.notifications if n.recipient_id == recipient_id]
        if len(mine) > MAX_NOTIFICATIONS:
            drop = {n.id for n in mine[: len(mine) - MAX_NOTIFICATIONS]}
            self.notifications = [n for n in self.notifications if n.id not in drop]
        self._save(Namespace.NOTIFICATIONS)
        self.bus.emit(
            EventKind.NOTIFICATION_ADDED,
            recipient_id=recipient_id, notification_id=notification.id, type=type_, message=message,
        )
        return notification

    def mark_notification_read(self, notification_id: str, student_id: str) -> Notification:
        for notification in self.notifications:
            if notification.id == notification_id and notification.recipient_id == student_id:
                notification.read = True
                self._save(Namespace.NOTIFICATIONS)
                return notification
        raise NotFound(f"Notification {notification_id} not found")

    def mark_all_notifications_read(self, student_id: str) -> int:
        count = 0
        for notification in self.notifications:
            if notification.recipient_id == student_id and not notification.read:
                notification.read = True
                count += 1
        if count:
            self._save(Namespace.NOTIFICATIONS)
        return count

    # ------------------------------------------------------------------
    # Crisis-request merge
    # ------------------------------------------------------------------
    def merge_crisis_event(self, event: CrisisEvent) -> None:
        """Apply a pushed create/update/delete to the local request list."""
        if event.type is CrisisEventType.DELETED:
            if self.crisis_requests.pop(event.request_id, None) is None:
                return
        elif event.request is not None:
            existing = self.crisis_requests.get(event.request_id)
            if (
                event.type is CrisisEventType.UPDATED
                and existing is not None
                and existing.updated_at > event.request.updated_at
            ):
                return
            self.crisis_requests[event.request_id] = CrisisRequest.from_dict(event.request.to_dict())
        else:
            return
        self._save(Namespace.CRISIS_REQUESTS)

    def snapshot(self) -> dict[str, Any]:
        """Counts for health/diagnostics."""
        return {
            "posts": len(self.posts),
            "reports": len(self.reports),
            "notifications": len(self.notifications),
            "timers": len(self.scheduler),
            "communities": len(self.community.communities),
            "crisis_requests": len(self.crisis_requests),
        }
