"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of safevoice.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import pytest  # noqa: E402
from sqlalchemy import Engine  # noqa: E402

from safevoice.database.engine import create_db_engine, init_db  # noqa: E402
from safevoice.engine.clock import ManualClock  # noqa: E402
from safevoice.engine.events import EventBus, StoreEvent  # noqa: E402
from safevoice.engine.ledger import RewardLedger  # noqa: E402
from safevoice.engine.scheduler import LifecycleScheduler, ManualTimerBackend  # noqa: E402
from safevoice.services.persistence import PersistenceAdapter  # noqa: E402
from safevoice.services.setup_service import SafeVoiceRuntime, bootstrap  # noqa: E402

MODERATOR = "mod-1"
COMMUNITY = "community-iit-b"
GENERAL = "channel-iit-b-general"


@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with the kv_store table.

    ``create_db_engine`` gives in-memory URLs a StaticPool so every
    connection sees the same database.
    """
    engine = create_db_engine("sqlite://")
    init_db(engine)
    return engine


@pytest.fixture
def persistence(db_engine: Engine) -> PersistenceAdapter:
    return PersistenceAdapter(db_engine)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def backend(clock: ManualClock) -> ManualTimerBackend:
    return ManualTimerBackend(clock)


@pytest.fixture
def bus(clock: ManualClock) -> EventBus:
    return EventBus(clock)


@pytest.fixture
def events(bus: EventBus) -> list[StoreEvent]:
    """Every event emitted on ``bus`` during the test, in order."""
    captured: list[StoreEvent] = []
    bus.subscribe(captured.append)
    return captured


@pytest.fixture
def scheduler(clock: ManualClock, backend: ManualTimerBackend) -> LifecycleScheduler:
    return LifecycleScheduler(clock, backend)


@pytest.fixture
def ledger(persistence: PersistenceAdapter, clock: ManualClock, bus: EventBus) -> RewardLedger:
    ledger = RewardLedger(persistence, clock, bus)
    ledger.load()
    return ledger


def make_runtime(engine: Engine, clock: ManualClock, backend: ManualTimerBackend, **kwargs) -> SafeVoiceRuntime:
    """Bootstrap a fully wired runtime on a manual clock."""
    kwargs.setdefault("moderator_ids", [MODERATOR])
    return bootstrap(engine, clock=clock, backend=backend, **kwargs)


@pytest.fixture
def runtime(db_engine: Engine, clock: ManualClock, backend: ManualTimerBackend):
    rt = make_runtime(db_engine, clock, backend)
    yield rt
    rt.shutdown()


@pytest.fixture
def store(runtime: SafeVoiceRuntime):
    return runtime.store


@pytest.fixture
def runtime_events(runtime: SafeVoiceRuntime) -> list[StoreEvent]:
    captured: list[StoreEvent] = []
    runtime.bus.subscribe(captured.append)
    return captured


def kinds(events: list[StoreEvent]) -> list[str]:
    return [e.kind.value for e in events]


def earn_reasons(ledger: RewardLedger, user_id: str) -> list[str]:
    """Reasons of the student's earn transactions, oldest first."""
    return [tx.reason for tx in ledger.transactions(user_id, newest_first=False) if tx.type == "earn"]


def make_token(student_id: str) -> str:
    from safevoice.api.deps import issue_token

    return issue_token(student_id)
