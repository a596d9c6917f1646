"""
safevoice.services.persistence — Namespace Persistence Adapter
===============================================================

Reads and writes whole-snapshot JSON documents to the ``kv_store`` table,
one row per logical namespace.  Loading never raises on bad data: a
missing row yields the default, an unreadable row logs a warning and
yields the default, and record collections drop malformed entries one
at a time.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from safevoice.database.engine import get_session
from safevoice.database.models import KeyValueRecord
from safevoice.engine.entities import Record

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Record)


# ---------------------------------------------------------------------------
# Logical namespaces
# ---------------------------------------------------------------------------
class Namespace:
    POSTS = "posts"
    BOOKMARKS = "bookmarked_post_ids"
    REPORTS = "reports"
    MODERATOR_ACTIONS = "moderator_actions"
    NOTIFICATIONS = "notifications"
    ENCRYPTION_KEYS = "encryption_keys"
    CRISIS_REQUESTS = "crisis_requests"
    REWARD_LEDGER = "reward_ledger"
    COMMUNITIES = "communities"
    COMMUNITY_CHANNELS = "community_channels"
    COMMUNITY_MEMBERSHIPS = "community_memberships"
    COMMUNITY_NOTIFICATION_SETTINGS = "community_notification_settings"
    COMMUNITY_POST_META = "community_post_meta"
    COMMUNITY_ACTIVITY = "community_activity"
    COMMUNITY_MODERATION_LOG = "community_moderation_log"
    COMMUNITY_MEMBER_STATUSES = "community_member_statuses"
    COMMUNITY_CHANNEL_MUTES = "community_channel_mutes"
    COMMUNITY_ANNOUNCEMENTS = "community_announcements"
    COMMUNITY_SEED_VERSION = "community_seed_version"
    REFERRAL_CODES = "referral_codes"
    REFERRALS = "referrals"
    MEMORIAL_TRIBUTES = "memorial_tributes"


class PersistenceAdapter:
    """Durable local key-value store over a SQLAlchemy engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # -- raw documents ------------------------------------------------------
    def load(self, namespace: str, default: Callable[[], Any] = dict) -> Any:
        """Return the decoded document for *namespace*, or ``default()``."""
        with Session(self.engine) as session:
            row = session.get(KeyValueRecord, namespace)
            raw = row.value_json if row is not None else None
        if raw is None:
            return default()
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Namespace %r is unreadable; falling back to default", namespace)
            return default()

    def save(self, namespace: str, value: Any) -> None:
        """Overwrite *namespace* with the JSON encoding of *value*."""
        payload = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
        with get_session(self.engine) as session:
            row = session.get(KeyValueRecord, namespace)
            if row is None:
                session.add(KeyValueRecord(namespace=namespace, value_json=payload))
            else:
                row.value_json = payload

    def delete(self, namespace: str) -> None:
        with get_session(self.engine) as session:
            row = session.get(KeyValueRecord, namespace)
            if row is not None:
                session.delete(row)

    def namespaces(self) -> list[str]:
        with Session(self.engine) as session:
            return list(session.scalars(select(KeyValueRecord.namespace).order_by(KeyValueRecord.namespace)))

    # -- typed collections --------------------------------------------------
    def load_records(self, namespace: str, record_cls: type[R]) -> list[R]:
        """Load a list of records, dropping entries that fail their schema."""
        raw = self.load(namespace, default=list)
        if not isinstance(raw, list):
            logger.warning("Namespace %r is not a list; resetting", namespace)
            return []
        records: list[R] = []
        for item in raw:
            try:
                records.append(record_cls.from_dict(item))
            except ValueError as exc:
                logger.warning("Dropping malformed %s in %r: %s", record_cls.__name__, namespace, exc)
        return records

    def save_records(self, namespace: str, records: list[Record]) -> None:
        self.save(namespace, [r.to_dict() for r in records])

    def load_record_map(self, namespace: str, record_cls: type[R]) -> dict[str, R]:
        """Load a ``key → record`` mapping, dropping malformed values."""
        raw = self.load(namespace, default=dict)
        if not isinstance(raw, dict):
            logger.warning("Namespace %r is not a mapping; resetting", namespace)
            return {}
        records: dict[str, R] = {}
        for key, item in raw.items():
            try:
                records[str(key)] = record_cls.from_dict(item)
            except ValueError as exc:
                logger.warning("Dropping malformed %s %r in %r: %s", record_cls.__name__, key, namespace, exc)
        return records

    def save_record_map(self, namespace: str, records: dict[str, Record]) -> None:
        self.save(namespace, {k: r.to_dict() for k, r in records.items()})
