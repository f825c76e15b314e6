"""
arise.exceptions: Progression Error Taxonomy
=============================================

Structured exceptions raised by the engine and its services.  Every error
carries a stable ``error_code``, a ``details`` dict (user id, event id, …)
and an ``is_retryable`` hint so callers can decide between surfacing the
error and retrying with backoff.

Hierarchy::

    ProgressionError
    ├── ValidationError          # malformed input, rejected before mutation
    ├── NotFoundError            # unknown quest / template / user
    ├── InvalidStateTransition   # e.g. declining the protocol on day 2
    ├── StorageUnavailable       # retryable, nothing was written
    ├── ConcurrencyConflict      # retryable with backoff
    └── LedgerCorrupted          # chain verification failure, never healed
"""

from __future__ import annotations

from typing import Any


class ProgressionError(Exception):
    """Base class for all progression engine errors.

    Parameters
    ----------
    message:
        Human-readable description.
    details:
        Structured context for logging (ids, offending values).
    is_retryable:
        Whether re-issuing the same operation may succeed.
    """

    error_code: str = "PROGRESSION_ERROR"
    retryable_default: bool = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        is_retryable: bool | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.is_retryable = (
            self.retryable_default if is_retryable is None else is_retryable
        )
        if error_code is not None:
            self.error_code = error_code

    def to_dict(self) -> dict[str, Any]:
        """Serialize for structured logs and API error bodies."""
        return {
            "error": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "is_retryable": self.is_retryable,
        }

    def __str__(self) -> str:
        if self.details:
            details = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.error_code}] {self.message} | Details: {details}"
        return f"[{self.error_code}] {self.message}"


class ValidationError(ProgressionError):
    """Input rejected before any state was touched."""

    error_code = "VALIDATION_ERROR"


class NotFoundError(ProgressionError):
    """A referenced quest, template or user does not exist."""

    error_code = "NOT_FOUND"


class InvalidStateTransition(ProgressionError):
    """The requested transition is not allowed from the current state."""

    error_code = "INVALID_STATE_TRANSITION"

    def __init__(
        self,
        message: str,
        *,
        current_state: str | None = None,
        action: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = dict(details or {})
        if current_state is not None:
            merged["current_state"] = current_state
        if action is not None:
            merged["action"] = action
        super().__init__(message, merged)
        self.current_state = current_state
        self.action = action


class StorageUnavailable(ProgressionError):
    """The persistence layer could not be reached; no mutation happened."""

    error_code = "STORAGE_UNAVAILABLE"
    retryable_default = True


class ConcurrencyConflict(ProgressionError):
    """Another writer holds the user's lock or won the race on the chain tip."""

    error_code = "CONCURRENCY_CONFLICT"
    retryable_default = True


class LedgerCorrupted(ProgressionError):
    """A user's event chain failed verification.

    Raised only by chain verification.  The ledger is never auto-healed;
    the offending event id is carried for manual investigation.
    """

    error_code = "LEDGER_CORRUPTED"

    def __init__(self, user_id: str, event_id: int | None, reason: str) -> None:
        super().__init__(
            f"Ledger chain for user {user_id} is corrupted: {reason}",
            {"user_id": user_id, "event_id": event_id, "reason": reason},
        )
        self.user_id = user_id
        self.event_id = event_id
        self.reason = reason
