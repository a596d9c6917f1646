"""
safevoice.engine.ledger — $VOICE Reward Ledger
===============================================

Owns every student's wallet: balance, pending-for-claim, claimed, spent,
the per-category earnings breakdown, login/posting streaks,
subscriptions and unlocked achievements.  All wallets live in the
``reward_ledger`` namespace and are saved after every mutation.

Accounting rules
----------------
* ``credit`` appends an ``earn`` transaction and raises balance, pending
  and total earned.  A non-positive amount is a silent no-op.
* ``debit`` appends a ``spend`` transaction and lowers balance.  It never
  drives the balance negative.
* ``claim`` moves the whole pending amount into claimed after an
  external settlement succeeds.  Balance is unaffected.

So at all times ``balance == total_earned - spent`` and the ordered
transaction list replays to the stored totals.

Idempotency
-----------
Call sites that can fire twice for one logical event use
:meth:`RewardLedger.credit_once`, keyed by ``(reward_id, recipient_role,
user_id)``.  The key is indexed in memory, so the duplicate check is a
dictionary lookup instead of a history scan.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from safevoice.constants import (
    EARN_RULES,
    MONTHLY_STREAK_DAYS,
    SUBSCRIPTION_PERIOD_MS,
    SUBSCRIPTION_PLANS,
    VIRAL_REACTION_THRESHOLD,
    WEEKLY_STREAK_DAYS,
)
from safevoice.engine.achievements import AchievementContext, check_achievements
from safevoice.engine.clock import Clock, day_key, previous_day_key
from safevoice.engine.entities import Record, RewardCategory, new_id
from safevoice.engine.events import EventBus, EventKind
from safevoice.errors import (
    ExternalClaimFailure,
    InsufficientBalance,
    NotFound,
    ValidationError,
)

if TYPE_CHECKING:
    from safevoice.services.persistence import PersistenceAdapter
    from safevoice.services.settlement import SettlementClient

logger = logging.getLogger(__name__)

NAMESPACE = "reward_ledger"


class TransactionType(enum.StrEnum):
    EARN = "earn"
    SPEND = "spend"
    CLAIM = "claim"


def empty_breakdown() -> dict[str, int]:
    return {category.value: 0 for category in RewardCategory}


# ---------------------------------------------------------------------------
# Wallet records
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class Transaction(Record):
    """One append-only ledger entry.

    ``amount`` is always non-negative; the direction comes from ``type``.
    ``balance``/``pending``/``claimed``/``spent`` are the wallet totals
    right after this entry was applied.
    """

    id: str
    type: TransactionType
    amount: int
    reason: str
    user_id: str
    timestamp: int
    category: RewardCategory | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    balance: int = 0
    pending: int = 0
    claimed: int = 0
    spent: int = 0

    @property
    def reward_id(self) -> str | None:
        value = self.metadata.get("reward_id")
        return value if isinstance(value, str) else None


@dataclass(slots=True)
class StreakData(Record):
    current_streak: int = 0
    longest_streak: int = 0
    last_date: str | None = None
    streak_broken: bool = False
    last_reset_date: str | None = None


@dataclass(slots=True)
class Subscription(Record):
    plan_id: str
    name: str
    monthly_cost: int
    active: bool = True
    started_at: int = 0
    next_renewal_at: int = 0
    cancelled_at: int | None = None


@dataclass(slots=True)
class UnlockedAchievement(Record):
    id: str
    name: str
    icon: str
    type: str
    unlocked_at: int
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Wallet(Record):
    """Everything the ledger knows about one student."""

    _CUSTOM_FIELDS: ClassVar[tuple[str, ...]] = ("transactions",)

    user_id: str
    total_earned: int = 0
    pending: int = 0
    claimed: int = 0
    spent: int = 0
    balance: int = 0
    breakdown: dict[str, int] = field(default_factory=empty_breakdown)
    transactions: list[Transaction] = field(default_factory=list)
    login_streak: StreakData = field(default_factory=StreakData)
    posting_streak: StreakData = field(default_factory=StreakData)
    subscriptions: dict[str, Subscription] = field(default_factory=dict)
    achievements: list[UnlockedAchievement] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = Record.to_dict(self)
        data["transactions"] = [tx.to_dict() for tx in self.transactions]
        return data

    @classmethod
    def from_dict(cls, raw: Any) -> Wallet:
        wallet = super(Wallet, cls).from_dict(raw)
        items = raw.get("transactions")
        if not isinstance(items, list):
            items = []
        for item in items:
            try:
                wallet.transactions.append(Transaction.from_dict(item))
            except ValueError as exc:
                logger.warning("Dropping malformed transaction for %s: %s", wallet.user_id, exc)
        for category in RewardCategory:
            wallet.breakdown.setdefault(category.value, 0)
        return wallet


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class LedgerTotals:
    total_earned: int = 0
    pending: int = 0
    claimed: int = 0
    spent: int = 0
    balance: int = 0
    breakdown: dict[str, int] = field(default_factory=empty_breakdown)


@dataclass(frozen=True, slots=True)
class StreakResult:
    awarded: bool
    streak: int
    milestone: str | None = None
    amount: int = 0


@dataclass(frozen=True, slots=True)
class PostRewardBreakdown:
    base: int
    first_post: int = 0
    media: int = 0
    reactions: int = 0
    helpful: int = 0
    crisis: int = 0
    details: tuple[str, ...] = ()

    @property
    def total(self) -> int:
        return self.base + self.first_post + self.media + self.reactions + self.helpful + self.crisis


# Engagement tiers for calculate_post_reward (threshold, bonus, label)
REACTION_TIERS: tuple[tuple[int, int, str], ...] = (
    (VIRAL_REACTION_THRESHOLD, EARN_RULES["viral_post"] - EARN_RULES["regular_post"], "Viral"),
    (50, 30, "Popular"),
    (20, 15, "Trending"),
    (10, 5, "Engaged"),
)


def calculate_post_reward(
    *,
    is_first_post: bool = False,
    has_media: bool = False,
    total_reactions: int = 0,
    helpful_count: int = 0,
    is_crisis_flagged: bool = False,
) -> PostRewardBreakdown:
    """Tiered reward estimate for a post.

    Only ``base``, ``first_post`` and ``media`` are credited at creation
    time; the remaining parts are reported for display.
    """
    base = EARN_RULES["regular_post"]
    details = [f"Base post: {base} VOICE"]
    first = EARN_RULES["first_post"] - base if is_first_post else 0
    if first:
        details.append(f"First post bonus: +{first} VOICE")
    media = EARN_RULES["media_post_bonus"] if has_media else 0
    if media:
        details.append(f"Media bonus: +{media} VOICE")

    reactions = 0
    for threshold, bonus, label in REACTION_TIERS:
        if total_reactions >= threshold:
            reactions = bonus
            details.append(f"{label} ({threshold}+ reactions): +{bonus} VOICE")
            break

    helpful = EARN_RULES["helpful_post"] if helpful_count > 0 else 0
    if helpful:
        details.append(f"Helpful post: +{helpful} VOICE")
    crisis = EARN_RULES["crisis_response"] if is_crisis_flagged else 0
    if crisis:
        details.append(f"Crisis response: +{crisis} VOICE")

    return PostRewardBreakdown(
        base=base,
        first_post=first,
        media=media,
        reactions=reactions,
        helpful=helpful,
        crisis=crisis,
        details=tuple(details),
    )


def replay(transactions: list[Transaction]) -> LedgerTotals:
    """Recompute wallet totals from an ordered transaction list."""
    total = pending = claimed = spent = 0
    breakdown = empty_breakdown()
    for tx in transactions:
        if tx.type is TransactionType.EARN:
            total += tx.amount
            pending += tx.amount
            if tx.category is not None:
                breakdown[tx.category.value] = breakdown.get(tx.category.value, 0) + tx.amount
        elif tx.type is TransactionType.SPEND:
            spent += tx.amount
        elif tx.type is TransactionType.CLAIM:
            pending -= tx.amount
            claimed += tx.amount
    return LedgerTotals(
        total_earned=total,
        pending=pending,
        claimed=claimed,
        spent=spent,
        balance=total - spent,
        breakdown=breakdown,
    )


RewardKey = tuple[str, str | None, str]
ContextProvider = Callable[[str], dict[str, int]]


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------
class RewardLedger:
    """Per-student wallets with idempotent, cooldown-aware crediting."""

    def __init__(
        self,
        persistence: PersistenceAdapter,
        clock: Clock,
        bus: EventBus,
        settlement: SettlementClient | None = None,
    ) -> None:
        self.persistence = persistence
        self.clock = clock
        self.bus = bus
        self.settlement = settlement
        self._wallets: dict[str, Wallet] = {}
        self._reward_index: dict[RewardKey, str] = {}
        self._last_reward_at: dict[str, int] = {}
        self._context_provider: ContextProvider | None = None
        self._reconciling: set[str] = set()
        self._claims_in_flight: set[str] = set()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def load(self) -> None:
        """Rehydrate wallets; totals that disagree with replay are repaired."""
        self._wallets = self.persistence.load_record_map(NAMESPACE, Wallet)
        repaired = 0
        for wallet in self._wallets.values():
            totals = replay(wallet.transactions)
            if (
                wallet.total_earned != totals.total_earned
                or wallet.pending != totals.pending
                or wallet.claimed != totals.claimed
                or wallet.spent != totals.spent
                or wallet.balance != totals.balance
            ):
                repaired += 1
                wallet.total_earned = totals.total_earned
                wallet.pending = totals.pending
                wallet.claimed = totals.claimed
                wallet.spent = totals.spent
                wallet.balance = totals.balance
                wallet.breakdown = dict(totals.breakdown)
        if repaired:
            logger.warning("Repaired %d wallet(s) whose totals disagreed with history", repaired)
        self._rebuild_index()
        logger.info("Reward ledger loaded: %d wallet(s)", len(self._wallets))

    def save(self) -> None:
        self.persistence.save_record_map(NAMESPACE, self._wallets)

    def _rebuild_index(self) -> None:
        self._reward_index.clear()
        self._last_reward_at.clear()
        for wallet in self._wallets.values():
            for tx in wallet.transactions:
                self._index(tx)

    def _index(self, tx: Transaction) -> None:
        if tx.type is not TransactionType.EARN or tx.reward_id is None:
            return
        role = tx.metadata.get("recipient_role")
        self._reward_index[(tx.reward_id, role, tx.user_id)] = tx.id
        previous = self._last_reward_at.get(tx.reward_id, 0)
        self._last_reward_at[tx.reward_id] = max(previous, tx.timestamp)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def wallet(self, user_id: str) -> Wallet:
        """The live wallet for *user_id*, created empty on first use."""
        wallet = self._wallets.get(user_id)
        if wallet is None:
            wallet = Wallet(user_id=user_id)
            self._wallets[user_id] = wallet
        return wallet

    def snapshot(self, user_id: str) -> dict[str, Any]:
        return self.wallet(user_id).to_dict()

    def balance(self, user_id: str) -> int:
        return self.wallet(user_id).balance

    def transactions(self, user_id: str, *, newest_first: bool = True, limit: int | None = None) -> list[Transaction]:
        txs = list(self.wallet(user_id).transactions)
        if newest_first:
            txs.reverse()
        return txs[:limit] if limit is not None else txs

    def user_ids(self) -> list[str]:
        return list(self._wallets)

    # ------------------------------------------------------------------
    # Credit / debit
    # ------------------------------------------------------------------
    def credit(
        self,
        user_id: str,
        amount: int,
        reason: str,
        category: RewardCategory = RewardCategory.BONUSES,
        metadata: dict[str, Any] | None = None,
    ) -> Transaction | None:
        """Append an ``earn`` transaction; ``None`` when *amount* <= 0."""
        if amount <= 0:
            logger.debug("Ignoring non-positive credit %s for %s (%s)", amount, user_id, reason)
            return None

        wallet = self.wallet(user_id)
        previous = wallet.balance
        wallet.total_earned += amount
        wallet.pending += amount
        wallet.balance += amount
        wallet.breakdown[category.value] = wallet.breakdown.get(category.value, 0) + amount

        tx = Transaction(
            id=new_id("tx_"),
            type=TransactionType.EARN,
            amount=amount,
            reason=reason,
            user_id=user_id,
            timestamp=self.clock.now_ms(),
            category=category,
            metadata={**(metadata or {}), "user_id": user_id},
            balance=wallet.balance,
            pending=wallet.pending,
            claimed=wallet.claimed,
            spent=wallet.spent,
        )
        wallet.transactions.append(tx)
        self._index(tx)
        self.save()

        self.bus.emit(
            EventKind.REWARD_EARNED,
            user_id=user_id, amount=amount, reason=reason,
            category=category.value, transaction_id=tx.id,
        )
        self.bus.emit(EventKind.BALANCE_CHANGED, user_id=user_id, balance=wallet.balance, previous=previous)
        self.reconcile_achievements(user_id)
        return tx

    def has_reward(self, reward_id: str, recipient_role: str | None, user_id: str) -> bool:
        return (reward_id, recipient_role, user_id) in self._reward_index

    def credit_once(
        self,
        user_id: str,
        amount: int,
        reason: str,
        category: RewardCategory,
        *,
        reward_id: str,
        recipient_role: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Transaction | None:
        """Credit unless ``(reward_id, recipient_role, user_id)`` was already paid."""
        if self.has_reward(reward_id, recipient_role, user_id):
            logger.debug("Duplicate reward suppressed: %s/%s → %s", reward_id, recipient_role, user_id)
            self.bus.emit(
                EventKind.REWARD_SUPPRESSED,
                user_id=user_id, reward_id=reward_id, recipient_role=recipient_role, cause="duplicate",
            )
            return None
        meta = dict(metadata or {})
        meta["reward_id"] = reward_id
        if recipient_role is not None:
            meta["recipient_role"] = recipient_role
        return self.credit(user_id, amount, reason, category, meta)

    def in_cooldown(self, reward_id_prefix: str, window_ms: int) -> bool:
        """True if any reward whose id starts with the prefix landed within the window."""
        cutoff = self.clock.now_ms() - window_ms
        return any(
            ts > cutoff
            for reward_id, ts in self._last_reward_at.items()
            if reward_id.startswith(reward_id_prefix)
        )

    def credit_with_cooldown(
        self,
        user_id: str,
        amount: int,
        reason: str,
        category: RewardCategory,
        *,
        reward_id: str,
        cooldown_ms: int,
        metadata: dict[str, Any] | None = None,
    ) -> Transaction | None:
        """Credit only if no reward with this id landed inside ``cooldown_ms``."""
        if self.in_cooldown(reward_id, cooldown_ms):
            logger.info("Reward %s for %s suppressed by cooldown", reward_id, user_id)
            self.bus.emit(
                EventKind.REWARD_SUPPRESSED,
                user_id=user_id, reward_id=reward_id, recipient_role=None, cause="cooldown",
            )
            return None
        meta = {**(metadata or {}), "reward_id": reward_id, "cooldown_ms": cooldown_ms}
        return self.credit(user_id, amount, reason, category, meta)

    def debit(
        self,
        user_id: str,
        amount: int,
        reason: str,
        metadata: dict[str, Any] | None = None,
    ) -> Transaction:
        """Append a ``spend`` transaction.

        Raises
        ------
        ValidationError
            If *amount* is not positive.
        InsufficientBalance
            If *amount* exceeds the available balance.  Nothing is spent.
        """
        if amount <= 0:
            raise ValidationError(f"Spend amount must be positive, got {amount}")
        wallet = self.wallet(user_id)
        if amount > wallet.balance:
            raise InsufficientBalance(required=amount, available=wallet.balance)

        previous = wallet.balance
        wallet.balance -= amount
        wallet.spent += amount
        tx = Transaction(
            id=new_id("tx_"),
            type=TransactionType.SPEND,
            amount=amount,
            reason=reason,
            user_id=user_id,
            timestamp=self.clock.now_ms(),
            metadata={**(metadata or {}), "user_id": user_id},
            balance=wallet.balance,
            pending=wallet.pending,
            claimed=wallet.claimed,
            spent=wallet.spent,
        )
        wallet.transactions.append(tx)
        self.save()

        self.bus.emit(EventKind.TOKENS_SPENT, user_id=user_id, amount=amount, reason=reason, transaction_id=tx.id)
        self.bus.emit(EventKind.BALANCE_CHANGED, user_id=user_id, balance=wallet.balance, previous=previous)
        self.reconcile_achievements(user_id)
        return tx

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------
    async def claim(self, user_id: str, wallet_address: str | None = None) -> Transaction:
        """Settle the whole pending amount.

        The amount is captured before awaiting settlement; credits that
        land while settlement is in flight stay pending for the next claim.
        On failure nothing changes and :class:`ExternalClaimFailure` is
        raised; there is no retry.
        """
        wallet = self.wallet(user_id)
        amount = wallet.pending
        if amount <= 0:
            raise ValidationError("No pending rewards to claim")
        if user_id in self._claims_in_flight:
            raise ValidationError("A claim is already in progress")

        self._claims_in_flight.add(user_id)
        try:
            if self.settlement is None:
                receipt: dict[str, Any] = {"mode": "local"}
            else:
                receipt = await self.settlement.settle(user_id, amount, wallet_address)
        except ExternalClaimFailure as exc:
            logger.warning("Claim of %d for %s failed: %s", amount, user_id, exc)
            self.bus.emit(EventKind.CLAIM_FAILED, user_id=user_id, amount=amount, error=str(exc))
            raise
        except Exception as exc:
            logger.warning("Claim of %d for %s failed: %s", amount, user_id, exc)
            self.bus.emit(EventKind.CLAIM_FAILED, user_id=user_id, amount=amount, error=str(exc))
            raise ExternalClaimFailure(str(exc)) from exc
        finally:
            self._claims_in_flight.discard(user_id)

        wallet.pending -= amount
        wallet.claimed += amount
        tx = Transaction(
            id=new_id("tx_"),
            type=TransactionType.CLAIM,
            amount=amount,
            reason="Claimed to wallet",
            user_id=user_id,
            timestamp=self.clock.now_ms(),
            metadata={"user_id": user_id, "address": wallet_address, "receipt": receipt},
            balance=wallet.balance,
            pending=wallet.pending,
            claimed=wallet.claimed,
            spent=wallet.spent,
        )
        wallet.transactions.append(tx)
        self.save()
        logger.info("Claimed %d VOICE for %s", amount, user_id)
        self.bus.emit(EventKind.CLAIM_COMPLETED, user_id=user_id, amount=amount, transaction_id=tx.id)
        return tx

    # ------------------------------------------------------------------
    # Streaks
    # ------------------------------------------------------------------
    @staticmethod
    def _advance_streak(streak: StreakData, now_ms: int) -> bool:
        """Apply today's activity; ``False`` if already counted today."""
        today = day_key(now_ms)
        if streak.last_date == today:
            return False
        consecutive = streak.last_date == previous_day_key(now_ms)
        new_streak = streak.current_streak + 1 if consecutive else 1
        broken = not consecutive and streak.current_streak > 0
        streak.current_streak = new_streak
        streak.longest_streak = max(new_streak, streak.longest_streak)
        streak.last_date = today
        streak.streak_broken = broken
        if broken:
            streak.last_reset_date = today
        return True

    def process_daily_login(self, user_id: str) -> StreakResult:
        """Daily login bonus plus a weekly/monthly milestone bonus.

        A gap of two or more days resets the streak to 1.
        """
        wallet = self.wallet(user_id)
        now = self.clock.now_ms()
        if not self._advance_streak(wallet.login_streak, now):
            return StreakResult(awarded=False, streak=wallet.login_streak.current_streak)

        streak = wallet.login_streak.current_streak
        today = wallet.login_streak.last_date
        self.save()
        self.bus.emit(EventKind.STREAK_UPDATED, user_id=user_id, streak_kind="login", streak=streak)

        amount = EARN_RULES["daily_login_bonus"]
        self.credit_once(
            user_id, amount, "Daily login bonus", RewardCategory.STREAKS,
            reward_id=f"daily_login:{today}", metadata={"date": today},
        )

        milestone: str | None = None
        if streak % MONTHLY_STREAK_DAYS == 0:
            milestone, bonus = f"{MONTHLY_STREAK_DAYS}-day", EARN_RULES["monthly_streak"]
        elif streak % WEEKLY_STREAK_DAYS == 0:
            milestone, bonus = f"{WEEKLY_STREAK_DAYS}-day", EARN_RULES["weekly_streak"]
        if milestone is not None:
            self.credit_once(
                user_id, bonus, f"{streak}-day streak bonus!", RewardCategory.STREAKS,
                reward_id=f"login_streak:{today}", metadata={"streak": streak, "milestone": milestone},
            )
            amount += bonus
        return StreakResult(awarded=True, streak=streak, milestone=milestone, amount=amount)

    def process_posting_streak(self, user_id: str) -> StreakResult:
        """Count today's first post; continuing a streak earns a small bonus."""
        wallet = self.wallet(user_id)
        now = self.clock.now_ms()
        if not self._advance_streak(wallet.posting_streak, now):
            return StreakResult(awarded=False, streak=wallet.posting_streak.current_streak)

        streak = wallet.posting_streak.current_streak
        today = wallet.posting_streak.last_date
        self.save()
        self.bus.emit(EventKind.STREAK_UPDATED, user_id=user_id, streak_kind="posting", streak=streak)
        if streak < 2:
            return StreakResult(awarded=False, streak=streak)

        amount = EARN_RULES["posting_streak_bonus"]
        self.credit_once(
            user_id, amount, f"{streak}-day posting streak", RewardCategory.STREAKS,
            reward_id=f"posting_streak:{today}", metadata={"streak": streak},
        )
        return StreakResult(awarded=True, streak=streak, amount=amount)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    def activate_subscription(self, user_id: str, plan_id: str) -> Subscription:
        if plan_id not in SUBSCRIPTION_PLANS:
            raise ValidationError(f"Unknown subscription plan {plan_id!r}")
        wallet = self.wallet(user_id)
        current = wallet.subscriptions.get(plan_id)
        if current is not None and current.active:
            raise ValidationError(f"Subscription {plan_id!r} is already active")

        name, cost = SUBSCRIPTION_PLANS[plan_id]
        self.debit(user_id, cost, f"{name} subscription", {"plan_id": plan_id, "subscription": True})
        now = self.clock.now_ms()
        subscription = Subscription(
            plan_id=plan_id,
            name=name,
            monthly_cost=cost,
            active=True,
            started_at=now,
            next_renewal_at=now + SUBSCRIPTION_PERIOD_MS,
        )
        wallet.subscriptions[plan_id] = subscription
        self.save()
        return subscription

    def cancel_subscription(self, user_id: str, plan_id: str) -> Subscription:
        subscription = self.wallet(user_id).subscriptions.get(plan_id)
        if subscription is None or not subscription.active:
            raise NotFound(f"No active subscription {plan_id!r}")
        subscription.active = False
        subscription.cancelled_at = self.clock.now_ms()
        self.save()
        return subscription

    def renew_due_subscriptions(self) -> list[tuple[str, str, bool]]:
        """Charge every active subscription whose renewal date has passed.

        Returns ``(user_id, plan_id, renewed)`` triples.  A subscription
        the student can no longer afford is deactivated.
        """
        now = self.clock.now_ms()
        results: list[tuple[str, str, bool]] = []
        for user_id, wallet in list(self._wallets.items()):
            for plan_id, subscription in list(wallet.subscriptions.items()):
                if not subscription.active or subscription.next_renewal_at > now:
                    continue
                try:
                    self.debit(
                        user_id, subscription.monthly_cost, f"{subscription.name} renewal",
                        {"plan_id": plan_id, "subscription": True, "renewal": True},
                    )
                except InsufficientBalance:
                    logger.warning("Subscription %s for %s lapsed: insufficient balance", plan_id, user_id)
                    subscription.active = False
                    subscription.cancelled_at = now
                    results.append((user_id, plan_id, False))
                    continue
                subscription.next_renewal_at += SUBSCRIPTION_PERIOD_MS
                results.append((user_id, plan_id, True))
        if results:
            self.save()
        return results

    # ------------------------------------------------------------------
    # Achievements
    # ------------------------------------------------------------------
    def set_context_provider(self, provider: ContextProvider | None) -> None:
        """Supply per-student content stats (reactions received, viral posts)."""
        self._context_provider = provider

    def achievement_context(self, user_id: str) -> AchievementContext:
        wallet = self.wallet(user_id)
        extra = self._context_provider(user_id) if self._context_provider else {}
        return AchievementContext(
            total_earned=wallet.total_earned,
            breakdown=dict(wallet.breakdown),
            current_streak=wallet.login_streak.current_streak,
            total_reactions_received=extra.get("total_reactions_received", 0),
            viral_post_count=extra.get("viral_post_count", 0),
        )

    def reconcile_achievements(self, user_id: str) -> list[UnlockedAchievement]:
        """Unlock every newly met achievement exactly once.

        Unlock bonuses are credits themselves, so this loops until no
        further achievement is met; re-entry for the same student is a
        no-op.
        """
        if user_id in self._reconciling:
            return []
        self._reconciling.add(user_id)
        unlocked: list[UnlockedAchievement] = []
        try:
            wallet = self.wallet(user_id)
            while True:
                earned = {a.id for a in wallet.achievements}
                newly = check_achievements(self.achievement_context(user_id), earned)
                if not newly:
                    break
                for definition in newly:
                    record = UnlockedAchievement(
                        id=definition.id,
                        name=definition.name,
                        icon=definition.icon,
                        type=definition.type.value,
                        unlocked_at=self.clock.now_ms(),
                    )
                    wallet.achievements.append(record)
                    unlocked.append(record)
                    self.save()
                    logger.info("Achievement unlocked: %s for %s", definition.id, user_id)
                    self.bus.emit(
                        EventKind.ACHIEVEMENT_UNLOCKED,
                        user_id=user_id, achievement_id=definition.id,
                        name=definition.name, reward_amount=definition.reward_amount,
                    )
                    if definition.reward_amount:
                        self.credit_once(
                            user_id, definition.reward_amount,
                            f"Achievement unlocked: {definition.name}", RewardCategory.BONUSES,
                            reward_id=f"achievement:{definition.id}",
                            metadata={"achievement_id": definition.id},
                        )
        finally:
            self._reconciling.discard(user_id)
        return unlocked

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------
    def verify_wallet(self, user_id: str) -> bool:
        """Check stored totals against a replay of the history."""
        wallet = self.wallet(user_id)
        totals = replay(wallet.transactions)
        return (
            wallet.balance == wallet.total_earned - wallet.spent
            and wallet.balance >= 0
            and totals.total_earned == wallet.total_earned
            and totals.pending == wallet.pending
            and totals.claimed == wallet.claimed
            and totals.spent == wallet.spent
            and totals.balance == wallet.balance
        )
