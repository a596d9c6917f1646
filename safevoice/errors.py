"""
safevoice.errors — Error taxonomy
==================================

Validation and permission errors surface synchronously to the caller.
Persisted-state corruption is recovered locally and never raised, and a
suppressed duplicate reward is a deliberate no-op rather than an error.
"""

from __future__ import annotations


class SafeVoiceError(Exception):
    """Base class for every error raised by the core."""


class ValidationError(SafeVoiceError):
    """Malformed input; no state was mutated."""


class NotFound(ValidationError):
    """The referenced post, comment, community or membership does not exist."""


class PermissionDenied(SafeVoiceError):
    """The actor lacks the capability required for this action."""


class InsufficientBalance(SafeVoiceError):
    """A debit exceeded the available balance; nothing was spent."""

    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            f"Insufficient VOICE balance: need {required}, have {available}"
        )
        self.required = required
        self.available = available


class ExternalClaimFailure(SafeVoiceError):
    """Claim settlement failed; pending and claimed amounts are untouched."""
