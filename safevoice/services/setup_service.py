"""
safevoice.services.setup_service — Runtime bootstrap
=====================================================

Builds the object graph once (persistence → event bus → ledger →
community state → post store → moderation log, referrals, memorial wall),
loads every namespace, and resumes timers.  The API lifespan and the
tests both go through :func:`bootstrap`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import Engine

from safevoice.config import SafeVoiceConfig
from safevoice.constants import MINUTE_MS
from safevoice.database.engine import init_db
from safevoice.engine.clock import Clock, SystemClock
from safevoice.engine.events import EventBus
from safevoice.engine.ledger import RewardLedger
from safevoice.engine.scheduler import AsyncioTimerBackend, LifecycleScheduler, TimerBackend
from safevoice.services.collaborators import (
    ContentClassifier,
    CrisisDetector,
    CrisisRequestQueue,
    EncryptionHelper,
    LocalCrisisQueue,
)
from safevoice.services.community_state import CommunityState
from safevoice.services.memorial import MemorialWall
from safevoice.services.moderation_log import ModerationLog
from safevoice.services.persistence import PersistenceAdapter
from safevoice.services.post_store import PostStore
from safevoice.services.referrals import ReferralProgram
from safevoice.services.settlement import HttpSettlementClient, SettlementClient

logger = logging.getLogger(__name__)

MAINTENANCE_INTERVAL_MS = MINUTE_MS


@dataclass(slots=True)
class SafeVoiceRuntime:
    persistence: PersistenceAdapter
    bus: EventBus
    scheduler: LifecycleScheduler
    ledger: RewardLedger
    community: CommunityState
    store: PostStore
    moderation: ModerationLog
    referrals: ReferralProgram
    memorial: MemorialWall

    def shutdown(self) -> None:
        self.store.shutdown()
        self.referrals.shutdown()
        self.bus.clear()


def bootstrap(
    engine: Engine,
    *,
    clock: Clock | None = None,
    backend: TimerBackend | None = None,
    moderator_ids: Iterable[str] = (),
    settlement: SettlementClient | None = None,
    classifier: ContentClassifier | None = None,
    crisis_detector: CrisisDetector | None = None,
    encryption: EncryptionHelper | None = None,
    crisis_queue: CrisisRequestQueue | None = None,
) -> SafeVoiceRuntime:
    """Create the tables, build every component and load persisted state.

    *backend* defaults to the running asyncio loop, so call this from
    inside the loop (e.g. a FastAPI lifespan) unless a manual backend is
    passed.
    """
    clock = clock or SystemClock()
    init_db(engine)
    persistence = PersistenceAdapter(engine)
    bus = EventBus(clock)
    scheduler = LifecycleScheduler(clock, backend or AsyncioTimerBackend())
    ledger = RewardLedger(persistence, clock, bus, settlement)
    community = CommunityState(persistence, clock, bus, moderator_ids)
    store = PostStore(
        persistence, clock, scheduler, bus, ledger, community,
        classifier=classifier,
        crisis_detector=crisis_detector,
        encryption=encryption,
        crisis_queue=crisis_queue if crisis_queue is not None else LocalCrisisQueue(),
    )
    summary = store.load()
    moderation = ModerationLog(store)
    moderation.load()
    referrals = ReferralProgram(store)
    referrals.load()
    memorial = MemorialWall(store)
    memorial.load()
    logger.info(
        "SafeVoice runtime ready: %d post(s), %d communit(ies), resume=%s",
        len(store.posts), len(community.communities), summary,
    )
    return SafeVoiceRuntime(
        persistence=persistence,
        bus=bus,
        scheduler=scheduler,
        ledger=ledger,
        community=community,
        store=store,
        moderation=moderation,
        referrals=referrals,
        memorial=memorial,
    )


def bootstrap_from_config(engine: Engine, cfg: SafeVoiceConfig) -> SafeVoiceRuntime:
    settlement = None
    if cfg.settlement_url:
        settlement = HttpSettlementClient(cfg.settlement_url, timeout=cfg.settlement_timeout)
    return bootstrap(engine, moderator_ids=cfg.moderator_ids, settlement=settlement)


async def maintenance_loop(runtime: SafeVoiceRuntime, interval_ms: int = MAINTENANCE_INTERVAL_MS) -> None:
    """Run the periodic sweep until cancelled."""
    while True:
        await asyncio.sleep(interval_ms / 1000)
        try:
            result = runtime.store.run_maintenance()
        except Exception:
            logger.exception("Maintenance sweep failed")
            continue
        if any(result.values()):
            logger.info("Maintenance sweep: %s", result)
