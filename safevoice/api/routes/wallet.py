"""
safevoice.api.routes.wallet — $VOICE wallet, streaks & notifications
======================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Query
from pydantic import BaseModel

from safevoice.api.deps import Runtime, StudentId
from safevoice.constants import SPEND_RULES, SUBSCRIPTION_PLANS, format_voice
from safevoice.engine.achievements import ACHIEVEMENT_DEFINITIONS, get_rank, next_rank

router = APIRouter(tags=["wallet"])


class ClaimIn(BaseModel):
    wallet_address: str | None = None


# ---------------------------------------------------------------------------
# Wallet
# ---------------------------------------------------------------------------
@router.get("/wallet")
async def get_wallet(runtime: Runtime, student_id: StudentId):
    ledger = runtime.ledger
    wallet = ledger.wallet(student_id)
    rank = get_rank(wallet.total_earned)
    upcoming = next_rank(wallet.total_earned)
    return {
        "user_id": student_id,
        "balance": wallet.balance,
        "balance_display": format_voice(wallet.balance),
        "total_earned": wallet.total_earned,
        "pending": wallet.pending,
        "claimed": wallet.claimed,
        "spent": wallet.spent,
        "breakdown": wallet.breakdown,
        "login_streak": wallet.login_streak.to_dict(),
        "posting_streak": wallet.posting_streak.to_dict(),
        "rank": {"id": rank.id, "name": rank.name, "icon": rank.icon},
        "next_rank": {"id": upcoming.id, "min_voice": upcoming.min_voice} if upcoming else None,
        "verified": ledger.verify_wallet(student_id),
    }


@router.get("/wallet/transactions")
async def list_transactions(
    runtime: Runtime,
    student_id: StudentId,
    limit: int = Query(50, ge=1, le=500),
):
    return [tx.to_dict() for tx in runtime.ledger.transactions(student_id, limit=limit)]


@router.post("/wallet/daily-login")
async def daily_login(runtime: Runtime, student_id: StudentId):
    result = runtime.ledger.process_daily_login(student_id)
    return {
        "awarded": result.awarded,
        "streak": result.streak,
        "milestone": result.milestone,
        "amount": result.amount,
    }


@router.post("/wallet/claim")
async def claim(body: ClaimIn, runtime: Runtime, student_id: StudentId):
    tx = await runtime.ledger.claim(student_id, body.wallet_address)
    return tx.to_dict()


@router.get("/wallet/achievements")
async def list_achievements(runtime: Runtime, student_id: StudentId):
    unlocked = {a.id: a for a in runtime.ledger.wallet(student_id).achievements}
    return [
        {
            "id": d.id,
            "name": d.name,
            "icon": d.icon,
            "description": d.description,
            "reward_amount": d.reward_amount,
            "unlocked_at": unlocked[d.id].unlocked_at if d.id in unlocked else None,
        }
        for d in ACHIEVEMENT_DEFINITIONS
    ]


# ---------------------------------------------------------------------------
# Spending catalog & subscriptions
# ---------------------------------------------------------------------------
@router.get("/wallet/catalog")
async def catalog():
    return {
        "spend": SPEND_RULES,
        "subscriptions": {pid: {"name": n, "monthly_cost": c} for pid, (n, c) in SUBSCRIPTION_PLANS.items()},
    }


@router.post("/wallet/subscriptions/{plan_id}", status_code=201)
async def subscribe(plan_id: str, runtime: Runtime, student_id: StudentId):
    return runtime.ledger.activate_subscription(student_id, plan_id).to_dict()


@router.delete("/wallet/subscriptions/{plan_id}")
async def unsubscribe(plan_id: str, runtime: Runtime, student_id: StudentId):
    return runtime.ledger.cancel_subscription(student_id, plan_id).to_dict()


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------
@router.get("/notifications")
async def list_notifications(runtime: Runtime, student_id: StudentId, unread_only: bool = False):
    return [n.to_dict() for n in runtime.store.notifications_for(student_id, unread_only=unread_only)]


@router.post("/notifications/{notification_id}/read")
async def read_notification(notification_id: str, runtime: Runtime, student_id: StudentId):
    return runtime.store.mark_notification_read(notification_id, student_id).to_dict()


@router.post("/notifications/read-all")
async def read_all_notifications(runtime: Runtime, student_id: StudentId):
    return {"updated": runtime.store.mark_all_notifications_read(student_id)}


# ---------------------------------------------------------------------------
# Referrals
# ---------------------------------------------------------------------------
class ReferralJoinIn(BaseModel):
    code: str


@router.get("/referrals")
async def referral_summary(runtime: Runtime, student_id: StudentId):
    return runtime.referrals.summary(student_id)


@router.post("/referrals/code")
async def regenerate_referral_code(runtime: Runtime, student_id: StudentId):
    return {"code": runtime.referrals.regenerate_code(student_id)}


@router.post("/referrals/join", status_code=201)
async def join_with_referral(body: ReferralJoinIn, runtime: Runtime, student_id: StudentId):
    return runtime.referrals.join_with_code(body.code, student_id).to_dict()
