"""
safevoice.services.referrals — Invite codes & referral rewards
===============================================================

Every student can hand out one invite code.  A friend who joins with it
pays the referrer ``referral_join``; that friend's first post pays the
referrer ``referral_first_post`` once more.  Both credits land in the
``referrals`` category and are keyed on the friend's id, so neither can
be paid twice even if the join or the post is replayed.

The first-post credit is driven by ``post_created`` events from the
:class:`~safevoice.services.post_store.PostStore`, so the store itself
knows nothing about referrals.
"""

from __future__ import annotations

import logging
import secrets
import string

from safevoice.constants import EARN_RULES, REFERRAL_CODE_LENGTH
from safevoice.engine.entities import Referral, RewardCategory, new_id
from safevoice.engine.events import EventKind, StoreEvent
from safevoice.errors import NotFound, ValidationError
from safevoice.services.persistence import Namespace
from safevoice.services.post_store import PostStore

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


class ReferralProgram:
    """Invite codes and the two referral credits, on top of a :class:`PostStore`."""

    def __init__(self, store: PostStore) -> None:
        self.store = store
        self.ledger = store.ledger
        self.bus = store.bus
        self.clock = store.clock
        self.persistence = store.persistence
        # student id → invite code
        self.codes: dict[str, str] = {}
        # friend id → referral
        self.referrals: dict[str, Referral] = {}
        self._unsubscribe = None

    def load(self) -> None:
        raw = self.persistence.load(Namespace.REFERRAL_CODES)
        if not isinstance(raw, dict):
            logger.warning("Referral codes are not a mapping; resetting")
            raw = {}
        self.codes = {str(k): normalize_code(v) for k, v in raw.items() if isinstance(v, str) and v.strip()}
        self.referrals = self.persistence.load_record_map(Namespace.REFERRALS, Referral)
        self._unsubscribe = self.bus.subscribe(self._on_post_created, kinds=[EventKind.POST_CREATED])

    def save(self) -> None:
        self.persistence.save(Namespace.REFERRAL_CODES, self.codes)
        self.persistence.save_record_map(Namespace.REFERRALS, self.referrals)

    def shutdown(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # ------------------------------------------------------------------
    # Codes
    # ------------------------------------------------------------------
    def code_for(self, student_id: str) -> str:
        """The student's invite code, created on first use."""
        code = self.codes.get(student_id)
        if code is None:
            code = self.regenerate_code(student_id)
        return code

    def regenerate_code(self, student_id: str) -> str:
        """Issue a fresh code; the old one stops working."""
        taken = set(self.codes.values())
        while True:
            code = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))
            if code not in taken:
                break
        self.codes[student_id] = code
        self.save()
        return code

    def _owner_of(self, code: str) -> str:
        for student_id, owned in self.codes.items():
            if owned == code:
                return student_id
        raise NotFound(f"Unknown invite code {code!r}")

    # ------------------------------------------------------------------
    # Join / first post
    # ------------------------------------------------------------------
    def join_with_code(self, code: str, friend_id: str) -> Referral:
        """Link *friend_id* to the owner of *code* and pay the referrer.

        A student can be referred only once, and never by themself.
        """
        code = normalize_code(code)
        if not code:
            raise ValidationError("Invite code is required")
        referrer_id = self._owner_of(code)
        if referrer_id == friend_id:
            raise ValidationError("You cannot use your own invite code")
        existing = self.referrals.get(friend_id)
        if existing is not None:
            raise ValidationError(f"{friend_id} is already linked to invite code {existing.code_used}")

        referral = Referral(
            id=new_id("referral_"),
            referrer_id=referrer_id,
            friend_id=friend_id,
            code_used=code,
            joined_at=self.clock.now_ms(),
        )
        self.referrals[friend_id] = referral
        self.save()

        self.ledger.credit_once(
            referrer_id, EARN_RULES["referral_join"], "Friend joined with your invite", RewardCategory.REFERRALS,
            reward_id=f"referral_join:{friend_id}", recipient_role="referrer",
            metadata={"referral_event": "friend_join", "friend_id": friend_id, "invite_code": code},
        )
        self.store.notify(referrer_id, "referral", "A friend joined with your invite code", actor_id=friend_id)
        self.bus.emit(EventKind.REFERRAL_JOINED, referrer_id=referrer_id, friend_id=friend_id, code=code)
        logger.info("Referral: %s joined with %s's code", friend_id, referrer_id)
        return referral

    def mark_first_post(self, friend_id: str) -> bool:
        """Pay the referrer for the friend's first post.

        ``False`` when the friend was never referred or was already paid for.
        """
        referral = self.referrals.get(friend_id)
        if referral is None or referral.first_post_rewarded:
            return False
        referral.first_post_at = self.clock.now_ms()
        referral.first_post_rewarded = True
        self.save()

        self.ledger.credit_once(
            referral.referrer_id, EARN_RULES["referral_first_post"],
            "Referred friend shared their first post", RewardCategory.REFERRALS,
            reward_id=f"referral_first_post:{friend_id}", recipient_role="referrer",
            metadata={"referral_event": "friend_first_post", "friend_id": friend_id, "referral_id": referral.id},
        )
        self.bus.emit(EventKind.REFERRAL_FIRST_POST, referrer_id=referral.referrer_id, friend_id=friend_id)
        return True

    def _on_post_created(self, event: StoreEvent) -> None:
        if event.payload.get("first_post"):
            self.mark_first_post(event.payload["author_id"])

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def referred_by(self, referrer_id: str) -> list[Referral]:
        """Friends *referrer_id* brought in, oldest first."""
        return sorted(
            (r for r in self.referrals.values() if r.referrer_id == referrer_id),
            key=lambda r: r.joined_at,
        )

    def summary(self, student_id: str) -> dict:
        friends = self.referred_by(student_id)
        earned = sum(
            EARN_RULES["referral_join"] + (EARN_RULES["referral_first_post"] if f.first_post_rewarded else 0)
            for f in friends
        )
        return {
            "code": self.code_for(student_id),
            "friends": [f.to_dict() for f in friends],
            "total_earned": earned,
        }
