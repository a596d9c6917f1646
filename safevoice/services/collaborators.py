"""
safevoice.services.collaborators — External collaborator seams
===============================================================

The store consumes a content classifier, a crisis detector, an
encryption helper and a crisis-request queue only through these small
interfaces.  The defaults here are permissive: nothing is blocked,
nothing is flagged, and the queue is a local in-process channel.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from safevoice.engine.entities import Record, new_id

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Classifier / crisis detector / encryption
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ModerationResult:
    blocked: bool = False
    issues: tuple[str, ...] = ()
    needs_review: bool = False


@dataclass(frozen=True, slots=True)
class CrisisAssessment:
    is_crisis: bool = False
    severity: str | None = None  # low | medium | high | critical


@dataclass(frozen=True, slots=True)
class EncryptedPayload:
    ciphertext: str
    iv: str
    key_id: str


class ContentClassifier(Protocol):
    def classify(self, content: str) -> ModerationResult: ...


class CrisisDetector(Protocol):
    def detect(self, content: str) -> CrisisAssessment: ...


class EncryptionHelper(Protocol):
    def encrypt(self, plaintext: str) -> EncryptedPayload: ...


class AllowAllClassifier:
    def classify(self, content: str) -> ModerationResult:
        return ModerationResult()


class NoCrisisDetector:
    def detect(self, content: str) -> CrisisAssessment:
        return CrisisAssessment()


# ---------------------------------------------------------------------------
# Crisis-request queue
# ---------------------------------------------------------------------------
class CrisisEventType(enum.StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(slots=True)
class CrisisRequest(Record):
    id: str
    student_id: str
    created_at: int
    post_id: str | None = None
    severity: str = "high"
    status: str = "pending"  # pending | acknowledged | resolved
    updated_at: int = 0
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CrisisEvent:
    type: CrisisEventType
    request_id: str
    request: CrisisRequest | None = None


CrisisListener = Callable[[CrisisEvent], None]


class CrisisRequestQueue(Protocol):
    def create(self, request: CrisisRequest) -> CrisisRequest: ...
    def update(self, request_id: str, **changes: Any) -> CrisisRequest: ...
    def delete(self, request_id: str) -> None: ...
    def subscribe(self, listener: CrisisListener) -> Callable[[], None]: ...


class LocalCrisisQueue:
    """Single-process queue that pushes every change to its subscribers."""

    def __init__(self) -> None:
        self._requests: dict[str, CrisisRequest] = {}
        self._listeners: list[CrisisListener] = []

    def create(self, request: CrisisRequest) -> CrisisRequest:
        if not request.id:
            request.id = new_id("crisis_")
        self._requests[request.id] = request
        self._publish(CrisisEvent(CrisisEventType.CREATED, request.id, request))
        return request

    def update(self, request_id: str, **changes: Any) -> CrisisRequest:
        request = self._requests[request_id]
        for key, value in changes.items():
            setattr(request, key, value)
        self._publish(CrisisEvent(CrisisEventType.UPDATED, request_id, request))
        return request

    def delete(self, request_id: str) -> None:
        if self._requests.pop(request_id, None) is not None:
            self._publish(CrisisEvent(CrisisEventType.DELETED, request_id))

    def subscribe(self, listener: CrisisListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def _publish(self, event: CrisisEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Crisis queue listener failed for %s", event.type)
