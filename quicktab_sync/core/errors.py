"""
Sync error taxonomy.

Every error carries the operation, entity id, revision and reason so that a
failure can be audited or replayed from the logs alone.

    StaleWriteError        revision conflict, writer re-reads and retries
    QuotaExceededError     permanent, surfaced immediately, never retried
    TransientBackendError  retried with the shared backoff policy
    ChannelTimeoutError    heartbeat miss, link goes DEGRADED
    ChannelDeadError       repeated misses, link goes CIRCUIT_OPEN
    OwnershipDeniedError   rejected and logged, never retried
    CorruptSnapshotError   checksum mismatch, fall back to last-known-good
    InvalidOperationError  malformed operation request at the channel boundary
    EntityNotFoundError    operation on an entity that does not exist
    WriteAbandonedError    write timed out; no further attempts are made
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base class for all sync failures.

    Attributes:
        operation: Operation being performed (``create``, ``move``, ``read``...).
        entity_id: Entity the operation targeted, if any.
        revision: Revision involved in the failure, if known.
        reason: Human-readable cause.
    """

    retryable = False

    def __init__(
        self,
        reason: str,
        *,
        operation: Optional[str] = None,
        entity_id: Optional[str] = None,
        revision: Optional[int] = None,
    ) -> None:
        self.reason = reason
        self.operation = operation
        self.entity_id = entity_id
        self.revision = revision
        super().__init__(reason)

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_record(self) -> Dict[str, Any]:
        """Audit record for structured logging."""
        return {
            "error": self.kind,
            "operation": self.operation,
            "entity_id": self.entity_id,
            "revision": self.revision,
            "reason": self.reason,
        }


class StaleWriteError(SyncError):
    """Raised when a candidate revision no longer follows the authoritative one."""

    retryable = True

    def __init__(
        self,
        candidate_revision: int,
        authoritative_revision: Optional[int],
        **kwargs: Any,
    ) -> None:
        self.candidate_revision = candidate_revision
        self.authoritative_revision = authoritative_revision
        kwargs.setdefault("revision", candidate_revision)
        super().__init__(
            f"Stale write: candidate revision {candidate_revision}, "
            f"authoritative revision {authoritative_revision}",
            **kwargs,
        )


class QuotaExceededError(SyncError):
    """The persistence backend refused the write for lack of space."""


class TransientBackendError(SyncError):
    """A backend failure that may succeed on retry."""

    retryable = True


class ChannelTimeoutError(SyncError):
    """A request on the message channel did not get a reply in time."""

    retryable = True


class ChannelDeadError(SyncError):
    """The message channel is unusable (circuit open or disconnected)."""


class OwnershipDeniedError(SyncError):
    """The context may not mutate the entity."""


class CorruptSnapshotError(SyncError):
    """A persisted snapshot failed checksum verification."""

    def __init__(
        self,
        expected: Optional[str],
        actual: str,
        **kwargs: Any,
    ) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch: stored {expected!r}, computed {actual!r}",
            **kwargs,
        )


class InvalidOperationError(SyncError):
    """An operation request or channel message failed validation."""


class EntityNotFoundError(SyncError):
    """The target entity does not exist in the authoritative snapshot."""


class WriteAbandonedError(SyncError):
    """The write passed its deadline and was reported as failed to the caller."""


__all__ = [
    "SyncError",
    "StaleWriteError",
    "QuotaExceededError",
    "TransientBackendError",
    "ChannelTimeoutError",
    "ChannelDeadError",
    "OwnershipDeniedError",
    "CorruptSnapshotError",
    "InvalidOperationError",
    "EntityNotFoundError",
    "WriteAbandonedError",
]
