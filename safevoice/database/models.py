"""
safevoice.database.models — SQLAlchemy 2.0 Data Models
=======================================================

The durable local store is a plain key-value table: one row per logical
namespace (``posts``, ``reward_ledger``, ``community_memberships`` …)
holding a whole-snapshot JSON document.

Tables:
- kv_store — namespace → JSON snapshot
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all SafeVoice ORM models."""


# ---------------------------------------------------------------------------
# KeyValueRecord — one JSON snapshot per namespace
# ---------------------------------------------------------------------------
class KeyValueRecord(Base):
    __tablename__ = "kv_store"

    namespace: Mapped[str] = mapped_column(String(100), primary_key=True)
    value_json: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<KeyValueRecord namespace={self.namespace!r} bytes={len(self.value_json)}>"
