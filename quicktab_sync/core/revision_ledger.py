"""
Revision Ledger
===============

Sole ordering authority for the replicated snapshot.

Writes use optimistic concurrency: read the authoritative snapshot, build a
candidate at ``revision + 1`` with a fresh save id, re-read and validate
right before ``set``, then read back. A candidate that no longer follows the
authoritative revision raises :class:`StaleWriteError`; the ledger re-reads
and retries with the shared backoff policy up to a bounded number of
attempts.

Incoming change notifications are classified with a priority cascade, not
a conjunction:

    1. revision defined and <= locally applied   -> STALE
    2. revision defined and greater              -> ACCEPT (always)
    3. revision undefined                        -> ACCEPT iff save id differs
    4. checksum                                  -> only sets content_changed

The ledger also remembers which (revision, save id) pairs it committed
itself, so a notification can be proven to be an echo of its own write, or
proven to have replaced one of its writes at the same revision.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional

from .backoff import BackoffPolicy, RetryExhaustedError
from .config import LedgerConfig
from .errors import StaleWriteError, TransientBackendError, WriteAbandonedError
from .models import QuickTabEntity, StateSnapshot

logger = logging.getLogger(__name__)

SnapshotBuilder = Callable[[Optional[StateSnapshot], int], Mapping[str, QuickTabEntity]]


class AcceptDecision(str, Enum):
    ACCEPT = "accept"
    REJECT_STALE = "reject_stale"
    REJECT_CONFLICT = "reject_conflict"


class DedupVerdict(str, Enum):
    ACCEPT = "accept"
    STALE = "stale"


@dataclass(frozen=True)
class NotificationClass:
    """Outcome of the dedup cascade for one incoming snapshot."""
    verdict: DedupVerdict
    reason: str
    revision: Optional[int]
    save_id: Optional[str]
    content_changed: bool = False
    own_write: bool = False
    superseded_own_write: bool = False

    @property
    def accepted(self) -> bool:
        return self.verdict == DedupVerdict.ACCEPT


@dataclass(frozen=True)
class LedgerEntry:
    """One write this context committed."""
    revision: int
    save_id: str
    writer_id: Optional[str]
    operation: str
    intent_id: Optional[str] = None
    committed_at: float = field(default_factory=time.time)


@dataclass
class CommitOutcome:
    snapshot: StateSnapshot
    previous: Optional[StateSnapshot]
    observed: StateSnapshot
    attempts: int
    entry: LedgerEntry


class RevisionLedger:
    """Per-context revision bookkeeping and optimistic-concurrency commits."""

    def __init__(
        self,
        writer_id: Optional[str] = None,
        config: Optional[LedgerConfig] = None,
        backoff: Optional[BackoffPolicy] = None,
    ):
        self.writer_id = writer_id
        self.config = config or LedgerConfig()
        self._backoff = backoff or BackoffPolicy(
            self.config.backoff(),
            retryable=lambda e: isinstance(e, StaleWriteError),
        )

        self.applied_revision: Optional[int] = None
        self.applied_save_id: Optional[str] = None
        self.applied_checksum: Optional[str] = None

        self._entries: "OrderedDict[int, LedgerEntry]" = OrderedDict()
        self._own_save_ids: Dict[str, int] = {}
        self._superseded: List[LedgerEntry] = []

        self.total_commits = 0
        self.total_conflicts = 0
        self.total_abandoned = 0
        self.total_stale_notifications = 0

    # -------------------------------------------------------------------------
    # Revision arithmetic
    # -------------------------------------------------------------------------

    @staticmethod
    def next_revision(snapshot: Optional[StateSnapshot]) -> int:
        if snapshot is None or snapshot.revision is None:
            return 1
        return snapshot.revision + 1

    @staticmethod
    def accept(
        candidate: StateSnapshot,
        authoritative: Optional[StateSnapshot],
    ) -> AcceptDecision:
        """Accept iff the candidate directly follows the authoritative revision."""
        if authoritative is None or authoritative.revision is None:
            return AcceptDecision.ACCEPT
        if candidate.revision is None:
            return AcceptDecision.REJECT_STALE
        if candidate.revision == authoritative.revision + 1:
            return AcceptDecision.ACCEPT
        if candidate.revision <= authoritative.revision:
            return AcceptDecision.REJECT_STALE
        return AcceptDecision.REJECT_CONFLICT

    # -------------------------------------------------------------------------
    # Commit
    # -------------------------------------------------------------------------

    async def commit(
        self,
        store,
        build: SnapshotBuilder,
        operation: str = "write",
        entity_id: Optional[str] = None,
        intent_id: Optional[str] = None,
        abandoned: Optional[Callable[[], bool]] = None,
    ) -> CommitOutcome:
        """Write a new snapshot built from the authoritative one.

        ``build(current, revision)`` returns the entity map for the candidate;
        any exception it raises other than :class:`StaleWriteError`
        propagates without retry. Raises :class:`StaleWriteError` once the
        conflict retries are exhausted.

        ``abandoned`` is checked before every read and before ``set``; once it
        returns True no further attempt is made and
        :class:`WriteAbandonedError` is raised. A ``set`` already started is
        allowed to finish.
        """

        def check_abandoned(stage: str) -> None:
            if abandoned is not None and abandoned():
                self.total_abandoned += 1
                raise WriteAbandonedError(
                    f"abandoned before {stage}",
                    operation=operation,
                    entity_id=entity_id,
                )

        async def attempt() -> CommitOutcome:
            check_abandoned("read")
            current = await store.get()
            revision = self.next_revision(current)
            candidate = StateSnapshot.build(build(current, revision), revision)

            latest = await store.get()
            decision = self.accept(candidate, latest)
            moved = (latest is None) != (current is None) or (
                latest is not None
                and current is not None
                and latest.save_id != current.save_id
            )
            if decision != AcceptDecision.ACCEPT or moved:
                self.total_conflicts += 1
                raise StaleWriteError(
                    candidate.revision,
                    latest.revision if latest is not None else None,
                    operation=operation,
                    entity_id=entity_id,
                )

            check_abandoned("set")
            await store.set(candidate)

            observed = await store.get()
            if observed is None:
                raise TransientBackendError(
                    "snapshot missing on read-back",
                    operation=operation,
                    entity_id=entity_id,
                    revision=candidate.revision,
                )
            if observed.save_id != candidate.save_id and (
                observed.revision is None or observed.revision <= candidate.revision
            ):
                # Another writer replaced ours at the same revision.
                self.total_conflicts += 1
                raise StaleWriteError(
                    candidate.revision,
                    observed.revision,
                    operation=operation,
                    entity_id=entity_id,
                )

            entry = self._record(candidate, operation, intent_id)
            return CommitOutcome(
                snapshot=candidate,
                previous=current,
                observed=observed,
                attempts=0,
                entry=entry,
            )

        try:
            outcome, attempts = await self._backoff.execute(
                attempt, operation_name=f"commit {operation}"
            )
        except RetryExhaustedError as e:
            logger.warning(
                f"[RevisionLedger:{self.writer_id}] Giving up on {operation} "
                f"for {entity_id} after {e.attempts} conflicts"
            )
            raise e.last_error from None

        outcome.attempts = attempts
        self.total_commits += 1
        logger.debug(
            f"[RevisionLedger:{self.writer_id}] Committed revision "
            f"{outcome.snapshot.revision} ({operation} {entity_id}) "
            f"in {attempts} attempt(s)"
        )
        return outcome

    def _record(
        self,
        snapshot: StateSnapshot,
        operation: str,
        intent_id: Optional[str],
    ) -> LedgerEntry:
        existing = self._entries.get(snapshot.revision)
        if existing is not None and existing.save_id != snapshot.save_id:
            logger.warning(
                f"[RevisionLedger:{self.writer_id}] Revision {snapshot.revision} "
                f"committed twice ({existing.save_id} -> {snapshot.save_id})"
            )
            self._own_save_ids.pop(existing.save_id, None)

        entry = LedgerEntry(
            revision=snapshot.revision,
            save_id=snapshot.save_id,
            writer_id=self.writer_id,
            operation=operation,
            intent_id=intent_id,
        )
        self._entries[entry.revision] = entry
        self._entries.move_to_end(entry.revision)
        self._own_save_ids[entry.save_id] = entry.revision

        while len(self._entries) > self.config.entry_history:
            _, dropped = self._entries.popitem(last=False)
            self._own_save_ids.pop(dropped.save_id, None)
        return entry

    # -------------------------------------------------------------------------
    # Dedup cascade
    # -------------------------------------------------------------------------

    def classify(self, incoming: StateSnapshot) -> NotificationClass:
        """Classify an incoming snapshot against what this context applied."""
        own_write = (
            incoming.save_id is not None and incoming.save_id in self._own_save_ids
        )

        superseded = False
        if incoming.revision is not None and not own_write:
            entry = self._entries.get(incoming.revision)
            if entry is not None and entry.save_id != incoming.save_id:
                superseded = True

        if incoming.revision is not None:
            if (
                self.applied_revision is not None
                and incoming.revision <= self.applied_revision
            ):
                verdict = DedupVerdict.STALE
                reason = (
                    f"revision {incoming.revision} <= applied {self.applied_revision}"
                )
            else:
                verdict = DedupVerdict.ACCEPT
                reason = f"revision advanced to {incoming.revision}"
        elif incoming.save_id is None:
            verdict = DedupVerdict.ACCEPT
            reason = "no revision or save id"
        elif incoming.save_id != self.applied_save_id:
            verdict = DedupVerdict.ACCEPT
            reason = "unrevisioned, save id changed"
        else:
            verdict = DedupVerdict.STALE
            reason = "unrevisioned, save id already applied"

        content_changed = False
        if verdict == DedupVerdict.ACCEPT:
            content_changed = (
                incoming.checksum is None
                or self.applied_checksum is None
                or incoming.checksum != self.applied_checksum
            )
        else:
            self.total_stale_notifications += 1

        return NotificationClass(
            verdict=verdict,
            reason=reason,
            revision=incoming.revision,
            save_id=incoming.save_id,
            content_changed=content_changed,
            own_write=own_write,
            superseded_own_write=superseded,
        )

    def mark_applied(self, snapshot: StateSnapshot) -> None:
        if snapshot.revision is not None:
            if self.applied_revision is None or snapshot.revision > self.applied_revision:
                self.applied_revision = snapshot.revision
        self.applied_save_id = snapshot.save_id
        self.applied_checksum = snapshot.checksum

    def observe(self, incoming: StateSnapshot) -> NotificationClass:
        """Classify and, when accepted, mark the snapshot as applied."""
        result = self.classify(incoming)
        if result.accepted:
            self.mark_applied(incoming)
        return result

    def take_superseded(self, revision: int) -> Optional[LedgerEntry]:
        """Remove and return the own entry replaced at ``revision``, once."""
        entry = self._entries.pop(revision, None)
        if entry is None:
            return None
        self._own_save_ids.pop(entry.save_id, None)
        self._superseded.append(entry)
        logger.warning(
            f"[RevisionLedger:{self.writer_id}] Own write at revision {revision} "
            f"({entry.operation}) was replaced by another writer"
        )
        return entry

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def entries(self) -> List[LedgerEntry]:
        return list(self._entries.values())

    def get_stats(self) -> Dict[str, object]:
        return {
            "writer_id": self.writer_id,
            "applied_revision": self.applied_revision,
            "entries": len(self._entries),
            "total_commits": self.total_commits,
            "total_conflicts": self.total_conflicts,
            "total_abandoned": self.total_abandoned,
            "total_stale_notifications": self.total_stale_notifications,
            "superseded_writes": len(self._superseded),
        }


__all__ = [
    "AcceptDecision",
    "DedupVerdict",
    "NotificationClass",
    "LedgerEntry",
    "CommitOutcome",
    "RevisionLedger",
]
