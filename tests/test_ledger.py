"""
tests/test_ledger.py — Unit Tests for the Reward Ledger
========================================================

Covers crediting (plain, idempotent, cooldown-gated), debits, claims
against a mocked settlement client, daily streaks, subscriptions and
load-time repair of persisted wallets.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import earn_reasons, kinds
from safevoice.constants import DAY_MS, MINUTE_MS, MODERATOR_REWARD_COOLDOWN_MS, SUBSCRIPTION_PERIOD_MS
from safevoice.engine.entities import RewardCategory
from safevoice.engine.ledger import (
    RewardLedger,
    Transaction,
    TransactionType,
    calculate_post_reward,
    replay,
)
from safevoice.errors import ExternalClaimFailure, InsufficientBalance, ValidationError


def _balanced(ledger: RewardLedger, user_id: str) -> bool:
    w = ledger.wallet(user_id)
    return w.balance == w.total_earned - w.spent and w.balance >= 0


# ===========================================================================
# Plain credit / debit
# ===========================================================================
class TestCredit:
    def test_credit_updates_every_partition(self, ledger, events):
        tx = ledger.credit("s1", 30, "Test credit", RewardCategory.POSTS)

        wallet = ledger.wallet("s1")
        assert tx is not None
        assert tx.type is TransactionType.EARN
        assert (wallet.total_earned, wallet.pending, wallet.balance, wallet.spent) == (30, 30, 30, 0)
        assert wallet.breakdown["posts"] == 30
        assert "reward_earned" in kinds(events)
        assert "balance_changed" in kinds(events)

    def test_non_positive_credit_is_a_noop(self, ledger, events):
        assert ledger.credit("s1", 0, "Nothing") is None
        assert ledger.credit("s1", -5, "Negative") is None
        assert ledger.wallet("s1").transactions == []
        assert events == []

    def test_transaction_records_running_totals(self, ledger):
        ledger.credit("s1", 10, "One")
        tx = ledger.credit("s1", 5, "Two")
        assert tx.balance == 15
        assert tx.pending == 15
        assert tx.metadata["user_id"] == "s1"

    def test_credit_persists(self, ledger, persistence, clock, bus):
        ledger.credit("s1", 12, "Saved")
        reloaded = RewardLedger(persistence, clock, bus)
        reloaded.load()
        assert reloaded.balance("s1") == 12


class TestDebit:
    def test_debit_reduces_balance_not_pending(self, ledger):
        ledger.credit("s1", 40, "Seed")
        tx = ledger.debit("s1", 25, "Spend")

        wallet = ledger.wallet("s1")
        assert tx.type is TransactionType.SPEND
        assert tx.amount == 25
        assert wallet.balance == 15
        assert wallet.spent == 25
        assert wallet.pending == 40
        assert _balanced(ledger, "s1")

    def test_insufficient_balance_spends_nothing(self, ledger):
        ledger.credit("s1", 5, "Seed")
        with pytest.raises(InsufficientBalance) as exc_info:
            ledger.debit("s1", 10, "Too much")

        assert exc_info.value.required == 10
        assert exc_info.value.available == 5
        assert ledger.balance("s1") == 5
        assert len(ledger.wallet("s1").transactions) == 1

    @pytest.mark.parametrize("amount", [0, -3])
    def test_non_positive_debit_rejected(self, ledger, amount):
        ledger.credit("s1", 5, "Seed")
        with pytest.raises(ValidationError):
            ledger.debit("s1", amount, "Bad")
        assert ledger.balance("s1") == 5


# ===========================================================================
# Idempotency & cooldown
# ===========================================================================
class TestIdempotentCredit:
    def test_same_reward_id_credits_once(self, ledger, events):
        first = ledger.credit_once(
            "s1", 3, "Comment posted", RewardCategory.COMMENTS,
            reward_id="comment:c1", recipient_role="author",
        )
        second = ledger.credit_once(
            "s1", 3, "Comment posted", RewardCategory.COMMENTS,
            reward_id="comment:c1", recipient_role="author",
        )

        assert first is not None
        assert second is None
        assert ledger.balance("s1") == 3
        suppressed = [e for e in events if e.kind == "reward_suppressed"]
        assert len(suppressed) == 1
        assert suppressed[0].payload["cause"] == "duplicate"

    def test_roles_are_independent(self, ledger):
        ledger.credit_once("s1", 1, "Given", RewardCategory.REACTIONS, reward_id="reaction:p1:s1", recipient_role="giver")
        ledger.credit_once("s1", 2, "Received", RewardCategory.REACTIONS, reward_id="reaction:p1:s1", recipient_role="receiver")
        assert ledger.balance("s1") == 3

    def test_same_reward_id_for_different_students(self, ledger):
        ledger.credit_once("a", 2, "Received", RewardCategory.COMMENTS, reward_id="comment:c1", recipient_role="post_owner")
        ledger.credit_once("b", 3, "Posted", RewardCategory.COMMENTS, reward_id="comment:c1", recipient_role="author")
        assert ledger.balance("a") == 2
        assert ledger.balance("b") == 3

    def test_index_survives_reload(self, ledger, persistence, clock, bus):
        ledger.credit_once("s1", 10, "Accepted", RewardCategory.REPORTING, reward_id="report:r1", recipient_role="reporter")

        reloaded = RewardLedger(persistence, clock, bus)
        reloaded.load()
        assert reloaded.has_reward("report:r1", "reporter", "s1")
        assert reloaded.credit_once(
            "s1", 10, "Accepted", RewardCategory.REPORTING, reward_id="report:r1", recipient_role="reporter",
        ) is None
        assert reloaded.balance("s1") == 10


class TestCooldown:
    def _reward(self, ledger):
        return ledger.credit_with_cooldown(
            "mod", 15, "Moderation", RewardCategory.REPORTING,
            reward_id="moderator:mod:blur_post", cooldown_ms=MODERATOR_REWARD_COOLDOWN_MS,
        )

    def test_second_credit_inside_window_suppressed(self, ledger, clock, events):
        assert self._reward(ledger) is not None
        clock.advance(4 * MINUTE_MS)
        assert self._reward(ledger) is None
        assert ledger.balance("mod") == 15
        assert any(e.kind == "reward_suppressed" and e.payload["cause"] == "cooldown" for e in events)

    def test_credit_after_window(self, ledger, clock):
        self._reward(ledger)
        clock.advance(MODERATOR_REWARD_COOLDOWN_MS + 1)
        assert self._reward(ledger) is not None
        assert ledger.balance("mod") == 30

    def test_different_action_types_not_gated(self, ledger):
        self._reward(ledger)
        tx = ledger.credit_with_cooldown(
            "mod", 15, "Moderation", RewardCategory.REPORTING,
            reward_id="moderator:mod:hide_post", cooldown_ms=MODERATOR_REWARD_COOLDOWN_MS,
        )
        assert tx is not None


# ===========================================================================
# Claims
# ===========================================================================
class TestClaim:
    def test_local_claim_moves_pending_to_claimed(self, ledger, events):
        ledger.credit("s1", 40, "Seed")
        ledger.debit("s1", 10, "Spend")

        tx = asyncio.run(ledger.claim("s1"))

        wallet = ledger.wallet("s1")
        assert tx.type is TransactionType.CLAIM
        assert tx.amount == 40
        assert wallet.pending == 0
        assert wallet.claimed == 40
        assert wallet.balance == 30
        assert "claim_completed" in kinds(events)
        assert ledger.verify_wallet("s1")

    def test_nothing_pending(self, ledger):
        with pytest.raises(ValidationError):
            asyncio.run(ledger.claim("s1"))

    def test_settlement_failure_leaves_wallet_untouched(self, persistence, clock, bus, events):
        settlement = MagicMock()
        settlement.settle = AsyncMock(side_effect=ExternalClaimFailure("bridge down"))
        ledger = RewardLedger(persistence, clock, bus, settlement)
        ledger.credit("s1", 25, "Seed")

        with pytest.raises(ExternalClaimFailure):
            asyncio.run(ledger.claim("s1", "0xabc"))

        wallet = ledger.wallet("s1")
        assert (wallet.pending, wallet.claimed) == (25, 0)
        assert "claim_failed" in kinds(events)
        settlement.settle.assert_awaited_once_with("s1", 25, "0xabc")

    def test_unexpected_settlement_error_is_wrapped(self, persistence, clock, bus):
        settlement = MagicMock()
        settlement.settle = AsyncMock(side_effect=RuntimeError("boom"))
        ledger = RewardLedger(persistence, clock, bus, settlement)
        ledger.credit("s1", 5, "Seed")

        with pytest.raises(ExternalClaimFailure):
            asyncio.run(ledger.claim("s1"))
        assert ledger.wallet("s1").pending == 5

    def test_receipt_recorded(self, persistence, clock, bus):
        settlement = MagicMock()
        settlement.settle = AsyncMock(return_value={"tx_hash": "0xfeed"})
        ledger = RewardLedger(persistence, clock, bus, settlement)
        ledger.credit("s1", 5, "Seed")

        tx = asyncio.run(ledger.claim("s1"))
        assert tx.metadata["receipt"] == {"tx_hash": "0xfeed"}


# ===========================================================================
# Streaks
# ===========================================================================
class TestDailyLogin:
    def test_first_login(self, ledger):
        result = ledger.process_daily_login("s1")
        assert result.awarded
        assert result.streak == 1
        assert result.amount == 5
        assert ledger.balance("s1") == 5

    def test_same_day_is_noop(self, ledger, clock):
        ledger.process_daily_login("s1")
        clock.advance(3 * 60 * MINUTE_MS)
        result = ledger.process_daily_login("s1")
        assert not result.awarded
        assert ledger.balance("s1") == 5

    def test_consecutive_day_increments(self, ledger, clock):
        ledger.process_daily_login("s1")
        clock.advance(DAY_MS)
        result = ledger.process_daily_login("s1")
        assert result.streak == 2
        assert ledger.wallet("s1").login_streak.longest_streak == 2

    def test_gap_resets_to_one(self, ledger, clock):
        ledger.process_daily_login("s1")
        clock.advance(DAY_MS)
        ledger.process_daily_login("s1")
        clock.advance(3 * DAY_MS)
        result = ledger.process_daily_login("s1")

        streak = ledger.wallet("s1").login_streak
        assert result.streak == 1
        assert streak.streak_broken
        assert streak.longest_streak == 2

    def test_streak_events_name_their_streak(self, ledger, clock, events):
        ledger.process_daily_login("s1")
        ledger.process_posting_streak("s1")
        clock.advance(DAY_MS)
        result = ledger.process_posting_streak("s1")

        updates = [e.payload for e in events if e.kind == "streak_updated"]
        assert [(u["streak_kind"], u["streak"]) for u in updates] == [("login", 1), ("posting", 1), ("posting", 2)]
        assert result.amount == 5
        assert "2-day posting streak" in earn_reasons(ledger, "s1")

    def test_seven_day_milestone(self, ledger, clock):
        for day in range(7):
            if day:
                clock.advance(DAY_MS)
            result = ledger.process_daily_login("s1")

        assert result.milestone == "7-day"
        assert result.amount == 5 + 50
        reasons = earn_reasons(ledger, "s1")
        assert reasons.count("Daily login bonus") == 7
        assert "7-day streak bonus!" in reasons
        # Dedication achievement pays its own bonus once
        assert "Achievement unlocked: Dedication" in reasons
        assert ledger.balance("s1") == 7 * 5 + 50 + 75


# ===========================================================================
# Subscriptions
# ===========================================================================
class TestSubscriptions:
    def test_activate_debits_plan_cost(self, ledger):
        ledger.credit("s1", 100, "Seed")
        sub = ledger.activate_subscription("s1", "verified_badge")
        assert sub.active
        assert ledger.balance("s1") == 50

    def test_unknown_plan(self, ledger):
        with pytest.raises(ValidationError):
            ledger.activate_subscription("s1", "nope")

    def test_cannot_afford(self, ledger):
        ledger.credit("s1", 10, "Seed")
        with pytest.raises(InsufficientBalance):
            ledger.activate_subscription("s1", "verified_badge")
        assert "verified_badge" not in ledger.wallet("s1").subscriptions

    def test_renewal_and_lapse(self, ledger, clock):
        ledger.credit("s1", 70, "Seed")
        ledger.activate_subscription("s1", "verified_badge")  # 20 left

        clock.advance(SUBSCRIPTION_PERIOD_MS)
        assert ledger.renew_due_subscriptions() == [("s1", "verified_badge", False)]
        assert not ledger.wallet("s1").subscriptions["verified_badge"].active
        assert ledger.balance("s1") == 20

    def test_cancel(self, ledger):
        ledger.credit("s1", 30, "Seed")
        ledger.activate_subscription("s1", "ad_free")
        assert not ledger.cancel_subscription("s1", "ad_free").active


# ===========================================================================
# Load-time repair
# ===========================================================================
class TestLoadRepair:
    def test_tampered_totals_repaired_from_history(self, ledger, persistence, clock, bus):
        ledger.credit("s1", 30, "Seed")
        ledger.debit("s1", 10, "Spend")
        raw = persistence.load("reward_ledger")
        raw["s1"]["balance"] = 999
        raw["s1"]["spent"] = 0
        persistence.save("reward_ledger", raw)

        reloaded = RewardLedger(persistence, clock, bus)
        reloaded.load()
        assert reloaded.balance("s1") == 20
        assert reloaded.wallet("s1").spent == 10
        assert reloaded.verify_wallet("s1")

    def test_malformed_transaction_dropped(self, ledger, persistence, clock, bus):
        ledger.credit("s1", 30, "Seed")
        raw = persistence.load("reward_ledger")
        raw["s1"]["transactions"].append({"id": "broken"})
        persistence.save("reward_ledger", raw)

        reloaded = RewardLedger(persistence, clock, bus)
        reloaded.load()
        assert len(reloaded.wallet("s1").transactions) == 1
        assert reloaded.balance("s1") == 30

    def test_unreadable_namespace_starts_empty(self, persistence, clock, bus, db_engine):
        from sqlalchemy.orm import Session

        from safevoice.database.models import KeyValueRecord

        with Session(db_engine) as session:
            session.add(KeyValueRecord(namespace="reward_ledger", value_json="{not json"))
            session.commit()

        ledger = RewardLedger(persistence, clock, bus)
        ledger.load()
        assert ledger.user_ids() == []


# ===========================================================================
# Pure helpers
# ===========================================================================
class TestPostRewardCalculation:
    def test_first_post_with_media(self):
        reward = calculate_post_reward(is_first_post=True, has_media=True)
        assert reward.base + reward.first_post == 20
        assert reward.media == 15
        assert reward.total == 35

    @pytest.mark.parametrize("reactions, bonus", [(9, 0), (10, 5), (20, 15), (50, 30), (100, 140)])
    def test_reaction_tiers(self, reactions, bonus):
        assert calculate_post_reward(total_reactions=reactions).reactions == bonus


class TestReplay:
    def test_replay_partitions(self):
        txs = [
            Transaction(id="1", type=TransactionType.EARN, amount=50, reason="", user_id="s", timestamp=1,
                        category=RewardCategory.POSTS),
            Transaction(id="2", type=TransactionType.SPEND, amount=20, reason="", user_id="s", timestamp=2),
            Transaction(id="3", type=TransactionType.CLAIM, amount=50, reason="", user_id="s", timestamp=3),
        ]
        totals = replay(txs)
        assert (totals.total_earned, totals.pending, totals.claimed, totals.spent, totals.balance) == (50, 0, 50, 20, 30)
        assert totals.breakdown["posts"] == 50


# ===========================================================================
# Event bus
# ===========================================================================
class TestEventBus:
    def test_payload_may_use_kind_as_a_key(self, bus, events):
        from safevoice.engine.events import EventKind

        event = bus.emit(EventKind.STREAK_UPDATED, kind="login", user_id="s1")
        assert event.kind is EventKind.STREAK_UPDATED
        assert event.payload == {"kind": "login", "user_id": "s1"}
        assert events == [event]

    def test_failing_listener_does_not_block_others(self, bus, events):
        from safevoice.engine.events import EventKind

        bus.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        late = MagicMock()
        bus.subscribe(late, kinds=[EventKind.STREAK_UPDATED])
        bus.emit(EventKind.STREAK_UPDATED, user_id="s1")
        bus.emit(EventKind.POST_CREATED, post_id="p1")

        assert kinds(events) == ["streak_updated", "post_created"]
        late.assert_called_once()
