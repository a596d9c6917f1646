"""
safevoice.services.memorial — Memorial wall
============================================

Tributes to people the campus has lost.  Creating a tribute pays its
author ``memorial_tribute``; lighting a candle pays the lighter
``memorial_candle`` once per tribute (more candles may be lit, they just
don't pay again).  When a tribute reaches :data:`CANDLE_MILESTONE` candles
its author is paid ``memorial_milestone`` exactly once.
"""

from __future__ import annotations

import logging

from safevoice.constants import (
    CANDLE_MILESTONE,
    EARN_RULES,
    TRIBUTE_MESSAGE_MAX_CHARS,
    TRIBUTE_NAME_MAX_CHARS,
)
from safevoice.engine.entities import Candle, RewardCategory, Tribute, new_id
from safevoice.engine.events import EventKind
from safevoice.errors import NotFound, ValidationError
from safevoice.services.persistence import Namespace
from safevoice.services.post_store import PostStore

logger = logging.getLogger(__name__)


def _require_text(value: str | None, what: str, limit: int) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{what} is required")
    if len(text) > limit:
        raise ValidationError(f"{what} must be at most {limit} characters")
    return text


class MemorialWall:
    def __init__(self, store: PostStore) -> None:
        self.store = store
        self.ledger = store.ledger
        self.bus = store.bus
        self.clock = store.clock
        self.persistence = store.persistence
        self.tributes: dict[str, Tribute] = {}

    def load(self) -> None:
        self.tributes = self.persistence.load_record_map(Namespace.MEMORIAL_TRIBUTES, Tribute)

    def save(self) -> None:
        self.persistence.save_record_map(Namespace.MEMORIAL_TRIBUTES, self.tributes)

    def list_tributes(self) -> list[Tribute]:
        """Newest first."""
        return sorted(self.tributes.values(), key=lambda t: t.created_at, reverse=True)

    def get_tribute(self, tribute_id: str) -> Tribute:
        tribute = self.tributes.get(tribute_id)
        if tribute is None:
            raise NotFound(f"Tribute {tribute_id} not found")
        return tribute

    def create_tribute(self, actor: str, person_name: str, message: str) -> Tribute:
        person_name = _require_text(person_name, "Name", TRIBUTE_NAME_MAX_CHARS)
        message = _require_text(message, "Tribute message", TRIBUTE_MESSAGE_MAX_CHARS)
        tribute = Tribute(
            id=new_id("tribute_"),
            created_by=actor,
            created_at=self.clock.now_ms(),
            person_name=person_name,
            message=message,
        )
        self.tributes[tribute.id] = tribute
        self.save()

        self.ledger.credit_once(
            actor, EARN_RULES["memorial_tribute"], f"Tribute created for {person_name}", RewardCategory.BONUSES,
            reward_id=f"tribute:{tribute.id}", recipient_role="author",
            metadata={"tribute_id": tribute.id, "person_name": person_name,
                      "action": "create_tribute", "feature": "memorial_wall"},
        )
        self.bus.emit(EventKind.TRIBUTE_CREATED, tribute_id=tribute.id, created_by=actor)
        logger.info("Tribute %s created by %s", tribute.id, actor)
        return tribute

    def light_candle(self, tribute_id: str, actor: str) -> Candle:
        tribute = self.get_tribute(tribute_id)
        candle = Candle(
            id=new_id("candle_"),
            tribute_id=tribute_id,
            lighted_by=actor,
            lighted_at=self.clock.now_ms(),
        )
        tribute.candles.append(candle)
        reach_milestone = len(tribute.candles) >= CANDLE_MILESTONE and not tribute.milestone_reward_awarded
        if reach_milestone:
            tribute.milestone_reward_awarded = True
        self.save()

        self.ledger.credit_once(
            actor, EARN_RULES["memorial_candle"], f"Candle lit for {tribute.person_name}", RewardCategory.BONUSES,
            reward_id=f"candle:{tribute_id}", recipient_role="lighter",
            metadata={"tribute_id": tribute_id, "person_name": tribute.person_name,
                      "action": "light_candle", "feature": "memorial_wall"},
        )
        self.bus.emit(EventKind.CANDLE_LIT, tribute_id=tribute_id, lighted_by=actor, candle_count=len(tribute.candles))

        if reach_milestone:
            self.ledger.credit_once(
                tribute.created_by, EARN_RULES["memorial_milestone"],
                f"{tribute.person_name} reached {CANDLE_MILESTONE} candles", RewardCategory.BONUSES,
                reward_id=f"tribute_milestone:{tribute_id}", recipient_role="author",
                metadata={"tribute_id": tribute_id, "person_name": tribute.person_name,
                          "action": "candle_milestone", "candle_count": len(tribute.candles)},
            )
            self.store.notify(
                tribute.created_by, "memorial",
                f"Your tribute to {tribute.person_name} reached {CANDLE_MILESTONE} candles",
            )
            self.bus.emit(EventKind.TRIBUTE_MILESTONE, tribute_id=tribute_id, candle_count=len(tribute.candles))
        return candle
