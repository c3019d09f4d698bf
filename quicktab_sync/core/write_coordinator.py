"""
Write Coordinator
=================

Serializes one context's write intents against the shared store.

    HIGH    minimize / restore / close
    MEDIUM  create / move / resize / adopt
    LOW     focus / cleanup

Each lane is FIFO; a single worker always takes the head of the highest
non-empty lane, so a HIGH intent overtakes queued MEDIUM/LOW intents but an
in-flight write is never aborted.

Every intent has a deadline of ``write_timeout`` counted from enqueue:
- still queued at the deadline: evicted from its lane, FAILED (TIMEOUT)
- in flight at the deadline: reported FAILED (TIMEOUT) and the worker moves
  on; the intent is marked abandoned, so the ledger makes no further read or
  retry for it. A ``set`` already started may still land; that late commit
  reaches the commit listeners and is logged, never reported as a failure

Results always resolve with a :class:`WriteResult`; nothing raises out of
``enqueue``. Successful writes rely on the store's own change propagation,
there is no side notification channel.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Mapping, Optional, Set

from .backoff import BackoffPolicy, RetryExhaustedError
from .config import WriteCoordinatorConfig
from .errors import (
    CorruptSnapshotError,
    EntityNotFoundError,
    InvalidOperationError,
    OwnershipDeniedError,
    QuotaExceededError,
    StaleWriteError,
    SyncError,
    TransientBackendError,
    WriteAbandonedError,
)
from .models import (
    ContextIdentity,
    DeltaKind,
    QuickTabEntity,
    StateSnapshot,
    WriteFailureKind,
    WriteIntent,
    WritePriority,
    WriteResult,
)
from .ownership import OwnershipFilter
from .revision_ledger import CommitOutcome, RevisionLedger

logger = logging.getLogger(__name__)

CommitListener = Callable[[WriteIntent, CommitOutcome], None]


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, (TransientBackendError, ConnectionError, OSError))


_FAILURE_KINDS = (
    (StaleWriteError, WriteFailureKind.STALE_WRITE),
    (QuotaExceededError, WriteFailureKind.QUOTA_EXCEEDED),
    (OwnershipDeniedError, WriteFailureKind.OWNERSHIP_DENIED),
    (EntityNotFoundError, WriteFailureKind.NOT_FOUND),
    (InvalidOperationError, WriteFailureKind.INVALID),
    (WriteAbandonedError, WriteFailureKind.TIMEOUT),
    (CorruptSnapshotError, WriteFailureKind.BACKEND_ERROR),
)


def failure_kind_for(error: BaseException) -> WriteFailureKind:
    for error_type, kind in _FAILURE_KINDS:
        if isinstance(error, error_type):
            return kind
    return WriteFailureKind.BACKEND_ERROR


@dataclass
class _QueuedWrite:
    intent: WriteIntent
    future: asyncio.Future
    deadline: float
    timer: Optional[asyncio.TimerHandle] = None


class WriteCoordinator:
    """Per-context priority write queue with deadline eviction and retries."""

    def __init__(
        self,
        store,
        ledger: RevisionLedger,
        identity: ContextIdentity,
        ownership: Optional[OwnershipFilter] = None,
        config: Optional[WriteCoordinatorConfig] = None,
        backoff: Optional[BackoffPolicy] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.identity = identity
        self.ownership = ownership or OwnershipFilter()
        self.config = config or WriteCoordinatorConfig()
        self._backoff = backoff or BackoffPolicy(
            self.config.retry, retryable=_is_transient
        )

        self._lanes: Dict[WritePriority, Deque[_QueuedWrite]] = {
            priority: deque() for priority in WritePriority
        }
        self._queued: Dict[str, _QueuedWrite] = {}
        self._in_flight: Optional[_QueuedWrite] = None
        self._background: Set[asyncio.Task] = set()
        self._abandoned: Set[str] = set()
        self._history: "OrderedDict[str, WriteIntent]" = OrderedDict()
        self._commit_listeners: List[CommitListener] = []

        self._wakeup: Optional[asyncio.Event] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._running = False
        self._stopped = False

        self.total_enqueued = 0
        self.total_completed = 0
        self.total_failed = 0
        self.total_evicted = 0
        self.total_cancelled = 0
        self.total_late = 0
        self.total_abandoned = 0

    @property
    def _name(self) -> str:
        return self.identity.label

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        self._stopped = False
        self._ensure_worker()

    def _ensure_worker(self) -> None:
        if self._running and self._worker_task and not self._worker_task.done():
            return
        self._running = True
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        self._worker_task = asyncio.create_task(self._worker_loop())
        logger.debug(f"[WriteCoordinator:{self._name}] Worker started")

    async def stop(self) -> None:
        """Finish the in-flight write, then cancel everything still queued."""
        self._running = False
        self._stopped = True
        if self._wakeup is not None:
            self._wakeup.set()
        if self._worker_task and not self._worker_task.done():
            await self._worker_task
        self._worker_task = None

        for lane in self._lanes.values():
            while lane:
                item = lane.popleft()
                self._queued.pop(item.intent.intent_id, None)
                self._finish(
                    item,
                    self._failure(item.intent, WriteFailureKind.CANCELLED, "coordinator stopped"),
                )

        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        logger.debug(f"[WriteCoordinator:{self._name}] Stopped")

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def enqueue(self, intent: WriteIntent) -> "asyncio.Future[WriteResult]":
        """Queue an intent; the returned future resolves with its result."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self.total_enqueued += 1

        if self._stopped:
            future.set_result(
                self._failure(intent, WriteFailureKind.CANCELLED, "coordinator stopped")
            )
            return future
        if not self._running:
            self._ensure_worker()

        lane = self._lanes[intent.priority]
        if len(lane) >= self.config.lane_capacity:
            self.total_failed += 1
            result = self._failure(
                intent,
                WriteFailureKind.BACKEND_ERROR,
                f"{intent.priority.name} lane full ({self.config.lane_capacity})",
            )
            logger.warning(f"[WriteCoordinator:{self._name}] {result.reason}")
            future.set_result(result)
            return future

        if not intent.enqueued_at:
            intent.enqueued_at = loop.time()
        deadline = intent.enqueued_at + self.config.write_timeout
        item = _QueuedWrite(intent=intent, future=future, deadline=deadline)
        item.timer = loop.call_at(deadline, self._evict, intent.intent_id)

        lane.append(item)
        self._queued[intent.intent_id] = item
        self._wakeup.set()
        logger.debug(
            f"[WriteCoordinator:{self._name}] Queued {intent.source_operation} "
            f"{intent.entity_id} in {intent.priority.name} lane"
        )
        return future

    async def submit(self, intent: WriteIntent) -> WriteResult:
        return await self.enqueue(intent)

    def cancel(self, intent_id: str) -> bool:
        """Cancel a queued intent. In-flight intents cannot be cancelled."""
        item = self._queued.pop(intent_id, None)
        if item is None:
            return False
        self._lanes[item.intent.priority].remove(item)
        self.total_cancelled += 1
        self._finish(
            item,
            self._failure(item.intent, WriteFailureKind.CANCELLED, "cancelled while queued"),
        )
        return True

    def is_queued(self, intent_id: str) -> bool:
        return intent_id in self._queued

    @property
    def in_flight(self) -> Optional[WriteIntent]:
        return self._in_flight.intent if self._in_flight else None

    def committed_intent(self, intent_id: str) -> Optional[WriteIntent]:
        """A recently committed intent, kept so a lost update can be replayed."""
        return self._history.get(intent_id)

    def on_commit(self, listener: CommitListener) -> None:
        self._commit_listeners.append(listener)

    # -------------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------------

    def _next(self) -> Optional[_QueuedWrite]:
        for priority in sorted(WritePriority, key=lambda p: p.value):
            lane = self._lanes[priority]
            if lane:
                item = lane.popleft()
                self._queued.pop(item.intent.intent_id, None)
                if item.timer:
                    item.timer.cancel()
                return item
        return None

    async def _worker_loop(self) -> None:
        while self._running:
            item = self._next()
            if item is None:
                self._wakeup.clear()
                await self._wakeup.wait()
                continue
            try:
                await self._run(item)
            except Exception as e:
                logger.exception(f"[WriteCoordinator:{self._name}] Worker error: {e}")
                self._finish(
                    item,
                    self._failure(item.intent, WriteFailureKind.BACKEND_ERROR, str(e)),
                )

    async def _run(self, item: _QueuedWrite) -> None:
        loop = asyncio.get_running_loop()
        remaining = item.deadline - loop.time()
        if remaining <= 0:
            self.total_evicted += 1
            self._finish(item, self._timeout(item.intent, "deadline passed before start"))
            return

        task = asyncio.create_task(self._execute(item.intent))
        self._in_flight = item
        try:
            result = await asyncio.wait_for(asyncio.shield(task), timeout=remaining)
        except asyncio.TimeoutError:
            self.total_evicted += 1
            result = self._timeout(
                item.intent,
                f"in flight past the {self.config.write_timeout}s deadline",
            )
            self._abandoned.add(item.intent.intent_id)
            self._background.add(task)
            task.add_done_callback(
                lambda t, intent=item.intent: self._on_late_completion(intent, t)
            )
        finally:
            self._in_flight = None
        self._finish(item, result)

    def _evict(self, intent_id: str) -> None:
        item = self._queued.pop(intent_id, None)
        if item is None:
            return
        self._lanes[item.intent.priority].remove(item)
        self.total_evicted += 1
        self._finish(item, self._timeout(item.intent, "evicted from queue at deadline"))

    def _on_late_completion(self, intent: WriteIntent, task: asyncio.Task) -> None:
        self._background.discard(task)
        self._abandoned.discard(intent.intent_id)
        if task.cancelled():
            return
        result = task.result()
        if result.succeeded:
            self.total_late += 1
            logger.warning(
                f"[WriteCoordinator:{self._name}] Timed-out {intent.source_operation} "
                f"{intent.entity_id} committed late at revision {result.revision}"
            )
        elif result.failure == WriteFailureKind.TIMEOUT:
            self.total_abandoned += 1
            logger.info(
                f"[WriteCoordinator:{self._name}] Abandoned timed-out "
                f"{intent.source_operation} {intent.entity_id}: {result.reason}"
            )
        else:
            logger.warning(
                f"[WriteCoordinator:{self._name}] Timed-out {intent.source_operation} "
                f"{intent.entity_id} failed late: {result.reason}"
            )

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _builder(self, intent: WriteIntent, identity: ContextIdentity):
        delta = intent.delta

        def build(
            current: Optional[StateSnapshot], revision: int
        ) -> Mapping[str, QuickTabEntity]:
            entities = dict(current.entities) if current is not None else {}
            existing = entities.get(delta.entity_id)
            current_revision = current.revision if current is not None else None

            if existing is None and delta.kind != DeltaKind.CREATE:
                raise EntityNotFoundError(
                    f"{delta.entity_id} does not exist",
                    operation=intent.source_operation,
                    entity_id=delta.entity_id,
                    revision=current_revision,
                )

            decision = self.ownership.can_mutate(existing, identity, intent.op)
            decision.raise_if_denied(
                delta.entity_id, intent.source_operation, current_revision
            )

            try:
                updated = delta.apply(existing, identity, revision)
            except (ValueError, TypeError) as e:
                raise InvalidOperationError(
                    str(e),
                    operation=intent.source_operation,
                    entity_id=delta.entity_id,
                    revision=current_revision,
                ) from e

            if updated is None:
                entities.pop(delta.entity_id, None)
            else:
                entities[delta.entity_id] = updated
            return entities

        return build

    async def _execute(self, intent: WriteIntent) -> WriteResult:
        identity = self.identity
        build = self._builder(intent, identity)

        async def write_once() -> CommitOutcome:
            return await self.ledger.commit(
                self.store,
                build,
                operation=intent.source_operation,
                entity_id=intent.entity_id,
                intent_id=intent.intent_id,
                abandoned=lambda: intent.intent_id in self._abandoned,
            )

        try:
            outcome, attempts = await self._backoff.execute(
                write_once,
                operation_name=f"{intent.source_operation} {intent.entity_id}",
            )
        except RetryExhaustedError as e:
            return self._failed_from(intent, e.last_error, e.attempts)
        except SyncError as e:
            return self._failed_from(intent, e, 1)
        except Exception as e:
            logger.exception(
                f"[WriteCoordinator:{self._name}] Unexpected error writing "
                f"{intent.entity_id}: {e}"
            )
            return self._failed_from(intent, e, 1)

        self._remember(intent)
        for listener in list(self._commit_listeners):
            try:
                listener(intent, outcome)
            except Exception as e:
                logger.warning(f"[WriteCoordinator:{self._name}] Commit listener error: {e}")

        return WriteResult.completed(
            intent, outcome.snapshot, attempts=attempts + outcome.attempts - 1
        )

    def _remember(self, intent: WriteIntent) -> None:
        self._history[intent.intent_id] = intent
        while len(self._history) > self.config.commit_history:
            self._history.popitem(last=False)

    # -------------------------------------------------------------------------
    # Results
    # -------------------------------------------------------------------------

    def _failure(
        self,
        intent: WriteIntent,
        failure: WriteFailureKind,
        reason: str,
        revision: Optional[int] = None,
        attempts: int = 0,
    ) -> WriteResult:
        return WriteResult.failed(
            intent.intent_id,
            intent.source_operation,
            failure,
            reason,
            entity_id=intent.entity_id,
            revision=revision,
            attempts=attempts,
        )

    def _timeout(self, intent: WriteIntent, reason: str) -> WriteResult:
        return self._failure(intent, WriteFailureKind.TIMEOUT, reason)

    def _failed_from(
        self, intent: WriteIntent, error: BaseException, attempts: int
    ) -> WriteResult:
        revision = getattr(error, "revision", None)
        reason = getattr(error, "reason", None) or str(error)
        return self._failure(
            intent, failure_kind_for(error), reason, revision=revision, attempts=attempts
        )

    def _finish(self, item: _QueuedWrite, result: WriteResult) -> None:
        if item.timer:
            item.timer.cancel()
        if item.future.done():
            return

        if result.succeeded:
            self.total_completed += 1
            logger.debug(
                f"[WriteCoordinator:{self._name}] {result.operation} "
                f"{result.entity_id} committed at revision {result.revision}"
            )
        else:
            if result.failure != WriteFailureKind.CANCELLED:
                self.total_failed += 1
            audit = {
                "operation": result.operation,
                "entity_id": result.entity_id,
                "revision": result.revision,
                "reason": result.reason,
                "failure": result.failure.value if result.failure else None,
            }
            logger.warning(
                f"[WriteCoordinator:{self._name}] {result.operation} "
                f"{result.entity_id} {result.status.value}: "
                f"{result.failure.value if result.failure else ''} {result.reason}",
                extra={"audit": audit},
            )
        item.future.set_result(result)

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    def get_stats(self) -> Dict[str, object]:
        return {
            "context": self._name,
            "running": self._running,
            "lanes": {p.name: len(lane) for p, lane in self._lanes.items()},
            "in_flight": self._in_flight.intent.intent_id if self._in_flight else None,
            "background_writes": len(self._background),
            "total_enqueued": self.total_enqueued,
            "total_completed": self.total_completed,
            "total_failed": self.total_failed,
            "total_evicted": self.total_evicted,
            "total_cancelled": self.total_cancelled,
            "total_late": self.total_late,
            "total_abandoned": self.total_abandoned,
        }


__all__ = ["WriteCoordinator", "failure_kind_for"]
