"""
safevoice.constants — Shared Constants & Helpers
=================================================

Single source of truth for the $VOICE economy, post lifetimes, and the
caps/thresholds enforced by the store.  Import from here instead of
duplicating numbers in services and routes.
"""

from __future__ import annotations

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS
MINUTE_MS = 60 * 1000

# ---------------------------------------------------------------------------
# Earning rules (credited amounts)
# ---------------------------------------------------------------------------
EARN_RULES: dict[str, int] = {
    # Posts
    "first_post": 20,  # total for a first post (base included)
    "regular_post": 10,
    "media_post_bonus": 15,
    "viral_post": 150,
    # Reactions
    "reaction_received": 2,
    "reaction_given": 1,
    # Comments
    "comment": 3,
    "reply": 3,
    "reply_received": 2,
    # Community
    "helpful_post": 50,
    "helpful_comment": 25,
    "verified_advice": 50,
    "crisis_response": 100,
    "report_accepted": 10,
    "volunteer_mod_action": 15,
    # Engagement
    "daily_login_bonus": 5,
    "posting_streak_bonus": 5,
    "weekly_streak": 50,
    "monthly_streak": 300,
    # Referrals
    "referral_join": 50,
    "referral_first_post": 25,
    # Memorial wall
    "memorial_tribute": 20,
    "memorial_candle": 2,
    "memorial_milestone": 100,
}

# ---------------------------------------------------------------------------
# Spending rules (debited amounts)
# ---------------------------------------------------------------------------
SPEND_RULES: dict[str, int] = {
    "post_extension": 10,
    "post_boost": 10,
    "cross_campus_boost": 25,
}

# id → (display name, monthly cost)
SUBSCRIPTION_PLANS: dict[str, tuple[str, int]] = {
    "verified_badge": ("Verified Badge", 50),
    "analytics": ("Advanced Analytics", 30),
    "ad_free": ("Ad-Free Experience", 20),
    "priority_support": ("Priority Support", 40),
}
SUBSCRIPTION_PERIOD_MS = 30 * DAY_MS

# ---------------------------------------------------------------------------
# Post lifetimes
# ---------------------------------------------------------------------------
LIFETIME_DURATIONS_MS: dict[str, int] = {
    "1h": HOUR_MS,
    "6h": 6 * HOUR_MS,
    "24h": 24 * HOUR_MS,
    "7d": 7 * DAY_MS,
    "30d": 30 * DAY_MS,
}
CUSTOM_LIFETIME_MIN_HOURS = 1
CUSTOM_LIFETIME_MAX_HOURS = 8760

# Default boost windows when the caller does not pass hours
DEFAULT_BOOST_HOURS: dict[str, int] = {
    "highlight": 24,
    "cross_campus": 24,
}

# One paid extension pushes the deadline out by this much
EXTENSION_HOURS = 24

# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------
VIRAL_REACTION_THRESHOLD = 100
HELPFUL_COMMENT_THRESHOLD = 5
WEEKLY_STREAK_DAYS = 7
MONTHLY_STREAK_DAYS = 30
ARCHIVE_AFTER_MS = 30 * DAY_MS
EXPIRY_WARNING_MS = 30 * MINUTE_MS
MODERATOR_REWARD_COOLDOWN_MS = 5 * MINUTE_MS
MAX_PINNED_POSTS = 3
CANDLE_MILESTONE = 50
TRIBUTE_NAME_MAX_CHARS = 100
TRIBUTE_MESSAGE_MAX_CHARS = 600
REFERRAL_CODE_LENGTH = 8

# ---------------------------------------------------------------------------
# Retention caps (trim on insert)
# ---------------------------------------------------------------------------
MAX_NOTIFICATIONS = 50
MAX_MODERATOR_ACTIONS = 100
MAX_MODERATION_LOG_ENTRIES = 200
MAX_ACTIVITY_SAMPLES = 500

# Bumping this re-seeds the default communities exactly once.
COMMUNITY_SEED_VERSION = "2"

DELETED_PLACEHOLDER = "[deleted]"


def format_voice(amount: int | float) -> str:
    """Human-readable $VOICE amount (``1.5K VOICE``)."""
    if amount >= 1_000_000:
        return f"{amount / 1_000_000:.1f}M VOICE"
    if amount >= 1_000:
        return f"{amount / 1_000:.1f}K VOICE"
    return f"{float(amount):.1f} VOICE"
