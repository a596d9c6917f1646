"""
safevoice.engine.entities — Post Store records
===============================================

Mutable, slotted dataclasses for everything the Post Store persists:
posts, comments, reports, notifications, volunteer moderator actions,
referrals and memorial tributes.

Every record derives from :class:`Record`, which provides a JSON-friendly
``to_dict()`` and a tolerant ``from_dict()``.  Loading normalises field by
field: a malformed optional field falls back to its default with a
warning; a malformed *required* field raises ``ValueError`` so the caller
can drop that one entry instead of aborting the whole namespace.
"""

from __future__ import annotations

import enum
import functools
import logging
import types
import typing
import uuid
from dataclasses import MISSING, dataclass, field, fields
from typing import Any, ClassVar

from safevoice.constants import DELETED_PLACEHOLDER
from safevoice.engine.comment_tree import CommentTree

logger = logging.getLogger(__name__)

REACTION_KINDS: tuple[str, ...] = ("heart", "fire", "clap", "sad", "angry", "laugh")


class Lifetime(enum.StrEnum):
    ONE_HOUR = "1h"
    SIX_HOURS = "6h"
    ONE_DAY = "24h"
    SEVEN_DAYS = "7d"
    THIRTY_DAYS = "30d"
    CUSTOM = "custom"
    NEVER = "never"


class RewardCategory(enum.StrEnum):
    """Fixed reason categories for the per-category earnings breakdown."""
    POSTS = "posts"
    REACTIONS = "reactions"
    COMMENTS = "comments"
    HELPFUL = "helpful"
    STREAKS = "streaks"
    BONUSES = "bonuses"
    CRISIS = "crisis"
    REPORTING = "reporting"
    REFERRALS = "referrals"


class BoostKind(enum.StrEnum):
    HIGHLIGHT = "highlight"
    CROSS_CAMPUS = "cross_campus"
    PIN = "pin"


class ModeratorActionType(enum.StrEnum):
    """Volunteer actions on the global feed."""
    BLUR_POST = "blur_post"
    HIDE_POST = "hide_post"
    RESTORE_POST = "restore_post"
    REVIEW_REPORT = "review_report"
    VERIFY_ADVICE = "verify_advice"


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex}"


def empty_reactions() -> dict[str, int]:
    return {kind: 0 for kind in REACTION_KINDS}


# ---------------------------------------------------------------------------
# Tolerant (de)serialisation
# ---------------------------------------------------------------------------
def _coerce(value: Any, hint: Any) -> Any:
    """Check/convert *value* against a type hint; ``TypeError`` on mismatch."""
    if hint is Any:
        return value
    if isinstance(hint, type) and issubclass(hint, Record):
        return hint.from_dict(value)
    origin = typing.get_origin(hint)
    args = typing.get_args(hint)

    if origin in (types.UnionType, typing.Union):
        if value is None and type(None) in args:
            return None
        candidates = [a for a in args if a is not type(None)]
        for candidate in candidates:
            try:
                return _coerce(value, candidate)
            except (TypeError, ValueError):
                continue
        raise TypeError(f"{value!r} matches none of {hint}")

    if hint is bool:
        if isinstance(value, bool):
            return value
        raise TypeError(f"expected bool, got {value!r}")
    if hint is int:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"expected int, got {value!r}")
        return int(value)
    if hint is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"expected float, got {value!r}")
        return float(value)
    if hint is str or (isinstance(hint, type) and issubclass(hint, str)):
        if not isinstance(value, str):
            raise TypeError(f"expected str, got {value!r}")
        return hint(value) if hint is not str else value

    if origin is dict:
        if not isinstance(value, dict):
            raise TypeError(f"expected mapping, got {type(value).__name__}")
        _, value_hint = args or (str, Any)
        return {str(k): _coerce(v, value_hint) for k, v in value.items()}
    if origin is list:
        if not isinstance(value, list):
            raise TypeError(f"expected list, got {type(value).__name__}")
        (item_hint,) = args or (Any,)
        return [_coerce(v, item_hint) for v in value]
    if hint is dict:
        if not isinstance(value, dict):
            raise TypeError(f"expected mapping, got {type(value).__name__}")
        return dict(value)

    raise TypeError(f"unsupported field type {hint!r}")


def _plain(value: Any) -> Any:
    if isinstance(value, Record):
        return value.to_dict()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_plain(v) for v in value]
    return value


@functools.cache
def _hints(cls: type) -> dict[str, Any]:
    return typing.get_type_hints(cls)


@dataclass(slots=True)
class Record:
    """Base for persisted records."""

    # Fields serialised by the subclass itself
    _CUSTOM_FIELDS: ClassVar[tuple[str, ...]] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            f.name: _plain(getattr(self, f.name))
            for f in fields(self)
            if f.name not in self._CUSTOM_FIELDS
        }

    @classmethod
    def from_dict(cls, raw: Any):
        if not isinstance(raw, dict):
            raise ValueError(f"{cls.__name__}: expected object, got {type(raw).__name__}")
        hints = _hints(cls)
        kwargs: dict[str, Any] = {}
        for f in fields(cls):
            if f.name in cls._CUSTOM_FIELDS:
                continue
            has_default = f.default is not MISSING or f.default_factory is not MISSING
            if f.name not in raw:
                if not has_default:
                    raise ValueError(f"{cls.__name__}: missing required field {f.name!r}")
                continue
            try:
                kwargs[f.name] = _coerce(raw[f.name], hints[f.name])
            except (TypeError, ValueError) as exc:
                if not has_default:
                    raise ValueError(f"{cls.__name__}.{f.name}: {exc}") from exc
                logger.warning(
                    "Dropping malformed %s.%s (%s); using default", cls.__name__, f.name, exc,
                )
        return cls(**kwargs)


# ---------------------------------------------------------------------------
# Comment
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class Comment(Record):
    id: str
    post_id: str
    author_id: str
    content: str
    created_at: int
    parent_id: str | None = None
    reactions: dict[str, int] = field(default_factory=empty_reactions)
    is_edited: bool = False
    edited_at: int | None = None
    helpful_votes: int = 0
    helpful_reward_awarded: bool = False
    is_verified_advice: bool = False
    verified_advice_reward_awarded: bool = False

    @property
    def is_deleted(self) -> bool:
        return self.author_id == DELETED_PLACEHOLDER


# ---------------------------------------------------------------------------
# Post
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class Post(Record):
    """A feed post.

    ``expires_at`` is ``None`` exactly when ``lifetime`` is ``never``.
    Each boost flag has a companion ``*_until`` deadline that is cleared
    together with the flag when the boost ends.
    """

    _CUSTOM_FIELDS: ClassVar[tuple[str, ...]] = ("comments",)

    id: str
    author_id: str
    content: str
    created_at: int
    category: str | None = None
    reactions: dict[str, int] = field(default_factory=empty_reactions)
    comments: CommentTree = field(default_factory=CommentTree)
    comment_count: int = 0
    image_url: str | None = None
    is_edited: bool = False
    edited_at: int | None = None

    # Lifecycle
    lifetime: Lifetime = Lifetime.NEVER
    custom_lifetime_hours: int | None = None
    expires_at: int | None = None
    expiry_warning_shown: bool = False
    extension_count: int = 0

    # Pin / boosts
    is_pinned: bool = False
    pinned_at: int | None = None
    pinned_until: int | None = None
    is_highlighted: bool = False
    highlighted_until: int | None = None
    is_cross_campus_boosted: bool = False
    cross_campus_until: int | None = None

    # Moderation
    report_count: int = 0
    is_blurred: bool = False
    is_hidden: bool = False
    is_crisis_flagged: bool = False
    crisis_level: str | None = None
    moderation_issues: list[str] = field(default_factory=list)
    needs_review: bool = False

    # Engagement
    helpful_count: int = 0
    helpful_reward_awarded: bool = False
    is_viral: bool = False
    viral_awarded_at: int | None = None

    # Community association
    community_id: str | None = None
    channel_id: str | None = None
    visibility: str = "public"
    is_anonymous: bool = True

    # Encryption / archival
    is_encrypted: bool = False
    archived: bool = False
    archived_at: int | None = None

    @property
    def total_reactions(self) -> int:
        return sum(self.reactions.values())

    def to_dict(self) -> dict[str, Any]:
        data = Record.to_dict(self)
        data["comments"] = self.comments.to_list()
        return data

    @classmethod
    def from_dict(cls, raw: Any) -> Post:
        post = super(Post, cls).from_dict(raw)
        post.comments = CommentTree.from_list(raw.get("comments"), post.id, Comment.from_dict)
        post.comment_count = len(post.comments)
        # Keep the expires_at ↔ lifetime invariant after a partial load
        if post.lifetime is Lifetime.NEVER:
            post.expires_at = None
        elif post.expires_at is None:
            post.lifetime = Lifetime.NEVER
        for kind in REACTION_KINDS:
            post.reactions.setdefault(kind, 0)
        return post


# ---------------------------------------------------------------------------
# Report / Notification / Moderator action
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class Report(Record):
    id: str
    reporter_id: str
    report_type: str
    reported_at: int
    description: str = ""
    post_id: str | None = None
    comment_id: str | None = None
    status: str = "pending"  # pending | accepted | dismissed
    reviewed_by: str | None = None
    reviewed_at: int | None = None


@dataclass(slots=True)
class Notification(Record):
    id: str
    recipient_id: str
    type: str  # reaction | comment | reply | award | report | boost | expiry | referral | memorial
    message: str
    created_at: int
    actor_id: str | None = None
    post_id: str | None = None
    comment_id: str | None = None
    read: bool = False


@dataclass(slots=True)
class ModeratorAction(Record):
    id: str
    moderator_id: str
    action_type: ModeratorActionType
    target_id: str
    created_at: int
    metadata: dict[str, Any] = field(default_factory=dict)
    rewarded: bool = False


# ---------------------------------------------------------------------------
# Referrals
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class Referral(Record):
    """A friend who joined with someone's invite code."""

    id: str
    referrer_id: str
    friend_id: str
    code_used: str
    joined_at: int
    first_post_at: int | None = None
    first_post_rewarded: bool = False


# ---------------------------------------------------------------------------
# Memorial wall
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class Candle(Record):
    id: str
    tribute_id: str
    lighted_by: str
    lighted_at: int


@dataclass(slots=True)
class Tribute(Record):
    """A memorial for one person; candles accumulate toward a one-time milestone."""

    _CUSTOM_FIELDS: ClassVar[tuple[str, ...]] = ("candles",)

    id: str
    created_by: str
    created_at: int
    person_name: str
    message: str
    candles: list[Candle] = field(default_factory=list)
    milestone_reward_awarded: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = Record.to_dict(self)
        data["candles"] = [c.to_dict() for c in self.candles]
        return data

    @classmethod
    def from_dict(cls, raw: Any) -> Tribute:
        tribute = super(Tribute, cls).from_dict(raw)
        items = raw.get("candles")
        for item in items if isinstance(items, list) else []:
            try:
                tribute.candles.append(Candle.from_dict(item))
            except ValueError as exc:
                logger.warning("Dropping malformed candle on tribute %s: %s", tribute.id, exc)
        return tribute
