"""
safevoice.engine.achievements — Achievement Table & Ranks
==========================================================

Handler-registry evaluation of the fixed achievement table.  Each
:class:`TriggerType` maps to a pure handler that receives the definition's
``trigger_config`` and an :class:`AchievementContext`; the ledger decides
what to do with newly met achievements (record, notify, credit bonus).

This module is pure calculation: no persistence, no events.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class AchievementType(enum.StrEnum):
    MILESTONE = "milestone"
    STREAK = "streak"
    REPUTATION = "reputation"
    SPECIAL = "special"


class TriggerType(enum.StrEnum):
    CATEGORY_EARNED = "category_earned"
    TOTAL_EARNED = "total_earned"
    LOGIN_STREAK = "login_streak"
    REACTIONS_RECEIVED = "reactions_received"
    VIRAL_POSTS = "viral_posts"


# ---------------------------------------------------------------------------
# Achievement Context — passed to every trigger handler
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AchievementContext:
    """Snapshot of one student's standing.

    Parameters
    ----------
    total_earned : Lifetime credited $VOICE.
    breakdown : Per-category credited totals (``{"posts": 20, ...}``).
    current_streak : Current daily-login streak length.
    total_reactions_received : Reactions across the student's posts.
    viral_post_count : Posts of theirs that crossed the viral threshold.
    """

    total_earned: int = 0
    breakdown: dict[str, int] = field(default_factory=dict)
    current_streak: int = 0
    total_reactions_received: int = 0
    viral_post_count: int = 0


@dataclass(frozen=True, slots=True)
class AchievementDefinition:
    id: str
    name: str
    icon: str
    description: str
    type: AchievementType
    trigger_type: TriggerType
    trigger_config: dict = field(default_factory=dict)
    reward_amount: int = 0


# ---------------------------------------------------------------------------
# Trigger handlers — pure functions (config, ctx) → bool
# ---------------------------------------------------------------------------

def _check_category_earned(config: dict, ctx: AchievementContext) -> bool:
    """Fires when a breakdown category reaches a credited total.

    Config: {"category": "posts", "value": 10}
    """
    category = config.get("category")
    value = config.get("value")
    if not category or value is None:
        return False
    return ctx.breakdown.get(category, 0) >= value


def _check_total_earned(config: dict, ctx: AchievementContext) -> bool:
    """Config: {"value": 1000}"""
    value = config.get("value")
    if value is None:
        return False
    return ctx.total_earned >= value


def _check_login_streak(config: dict, ctx: AchievementContext) -> bool:
    """Config: {"days": 7}"""
    days = config.get("days")
    if days is None:
        return False
    return ctx.current_streak >= days


def _check_reactions_received(config: dict, ctx: AchievementContext) -> bool:
    value = config.get("value")
    if value is None:
        return False
    return ctx.total_reactions_received >= value


def _check_viral_posts(config: dict, ctx: AchievementContext) -> bool:
    return ctx.viral_post_count >= config.get("count", 1)


# ---------------------------------------------------------------------------
# Handler registry
# ---------------------------------------------------------------------------
TRIGGER_HANDLERS: dict[str, Callable[[dict, AchievementContext], bool]] = {
    TriggerType.CATEGORY_EARNED: _check_category_earned,
    TriggerType.TOTAL_EARNED: _check_total_earned,
    TriggerType.LOGIN_STREAK: _check_login_streak,
    TriggerType.REACTIONS_RECEIVED: _check_reactions_received,
    TriggerType.VIRAL_POSTS: _check_viral_posts,
}


ACHIEVEMENT_DEFINITIONS: tuple[AchievementDefinition, ...] = (
    AchievementDefinition(
        id="first_post",
        name="First Steps",
        icon="✨",
        description="Create your first post",
        type=AchievementType.MILESTONE,
        trigger_type=TriggerType.CATEGORY_EARNED,
        trigger_config={"category": "posts", "value": 10},
    ),
    AchievementDefinition(
        id="hundred_reactions",
        name="Popular Voice",
        icon="\U0001f525",
        description="Receive 100 total reactions on your content",
        type=AchievementType.REPUTATION,
        trigger_type=TriggerType.REACTIONS_RECEIVED,
        trigger_config={"value": 100},
        reward_amount=50,
    ),
    AchievementDefinition(
        id="seven_day_streak",
        name="Dedication",
        icon="\U0001f4c5",
        description="Maintain a 7-day login streak",
        type=AchievementType.STREAK,
        trigger_type=TriggerType.LOGIN_STREAK,
        trigger_config={"days": 7},
        reward_amount=75,
    ),
    AchievementDefinition(
        id="help_crisis",
        name="Crisis Supporter",
        icon="\U0001f499",
        description="Respond to a crisis-flagged post",
        type=AchievementType.SPECIAL,
        trigger_type=TriggerType.CATEGORY_EARNED,
        trigger_config={"category": "crisis", "value": 100},
        reward_amount=100,
    ),
    AchievementDefinition(
        id="viral_post",
        name="Viral Star",
        icon="⭐",
        description="Create a post that receives 100+ reactions",
        type=AchievementType.SPECIAL,
        trigger_type=TriggerType.VIRAL_POSTS,
        trigger_config={"count": 1},
        reward_amount=200,
    ),
    AchievementDefinition(
        id="top_contributor",
        name="Top Contributor",
        icon="\U0001f451",
        description="Earn a total of 1000 VOICE tokens",
        type=AchievementType.MILESTONE,
        trigger_type=TriggerType.TOTAL_EARNED,
        trigger_config={"value": 1000},
        reward_amount=250,
    ),
    AchievementDefinition(
        id="mentor",
        name="Wise Mentor",
        icon="\U0001f393",
        description="Have 5 comments marked as helpful or verified advice",
        type=AchievementType.REPUTATION,
        trigger_type=TriggerType.CATEGORY_EARNED,
        trigger_config={"category": "helpful", "value": 125},
        reward_amount=150,
    ),
)

ACHIEVEMENTS_BY_ID: dict[str, AchievementDefinition] = {
    a.id: a for a in ACHIEVEMENT_DEFINITIONS
}


# ---------------------------------------------------------------------------
# Main check function
# ---------------------------------------------------------------------------
def check_achievements(
    ctx: AchievementContext,
    already_earned: set[str],
    definitions: tuple[AchievementDefinition, ...] = ACHIEVEMENT_DEFINITIONS,
) -> list[AchievementDefinition]:
    """Return the definitions whose predicate is met and which are not
    already in *already_earned*, in table order.
    """
    newly_earned: list[AchievementDefinition] = []
    for definition in definitions:
        if definition.id in already_earned:
            continue
        handler = TRIGGER_HANDLERS.get(definition.trigger_type)
        if handler is None:
            continue
        if handler(definition.trigger_config, ctx):
            newly_earned.append(definition)
            logger.debug("Achievement predicate met: %s", definition.id)
    return newly_earned


# ---------------------------------------------------------------------------
# Ranks (by lifetime $VOICE earned)
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Rank:
    id: str
    name: str
    icon: str
    min_voice: int
    max_voice: int | None  # exclusive upper bound; None = open-ended


RANKS: tuple[Rank, ...] = (
    Rank("newbie", "Newbie", "\U0001f331", 0, 500),
    Rank("helper", "Helper", "\U0001f91d", 500, 2000),
    Rank("guardian", "Guardian", "\U0001f6e1️", 2000, 5000),
    Rank("legend", "Legend", "\U0001f48e", 5000, None),
)


def get_rank(total_earned: int) -> Rank:
    for rank in RANKS:
        if total_earned >= rank.min_voice and (
            rank.max_voice is None or total_earned < rank.max_voice
        ):
            return rank
    return RANKS[0]


def next_rank(total_earned: int) -> Rank | None:
    """The rank above the current one, or ``None`` at the top."""
    current = get_rank(total_earned)
    index = RANKS.index(current)
    return RANKS[index + 1] if index + 1 < len(RANKS) else None
