"""
Sync Engine
===========

One instance per execution context, constructed with the context's identity.
It wires the components together:

    submit(request)
        -> parse_operation (closed set of operation kinds)
        -> OwnershipFilter pre-check
        -> WriteCoordinator (priority lanes, deadline, retries)
        -> RevisionLedger.commit (optimistic concurrency) -> store.set

    store change notification
        -> RevisionLedger dedup cascade (STALE dropped, ACCEPT applied)
        -> ownership re-filter of the working set
        -> entityCreated / entityUpdated / entityRemoved

A notification proving that another writer replaced one of this context's
commits at the same revision causes that intent to be replayed through the
coordinator. Nothing is muted by time; only writes the ledger recorded as
its own are recognised as echoes.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from .config import SyncEngineConfig
from .entity_events import EntityEvent, EntityEventEmitter, EntityListener
from .errors import ChannelDeadError, InvalidOperationError, SyncError
from .hydration import HydrationPipeline, HydrationResult
from .message_channel import MessageChannel
from .models import (
    ContextIdentity,
    DeltaKind,
    EntityDelta,
    MutationOp,
    OP_PRIORITY,
    QuickTabEntity,
    StateSnapshot,
    WriteFailureKind,
    WriteIntent,
    WriteResult,
)
from .connection_monitor import ConnectionHealthMonitor
from .operations import (
    OperationMessage, OperationResultMessage, parse_operation, to_intent
)
from .ownership import OwnershipFilter
from .revision_ledger import CommitOutcome, NotificationClass, RevisionLedger
from .state_store import PersistenceBackend, ReplicatedStateStore
from .write_coordinator import WriteCoordinator

logger = logging.getLogger(__name__)


def delta_reflected(delta: EntityDelta, snapshot: Optional[StateSnapshot]) -> bool:
    """True when ``snapshot`` already shows the effect of ``delta``.

    A patch or adoption on an entity that has since been removed counts as
    reflected, so a replay never resurrects a closed entity.
    """
    entity = snapshot.get(delta.entity_id) if snapshot is not None else None
    if delta.kind == DeltaKind.REMOVE:
        return entity is None
    if delta.kind == DeltaKind.CREATE:
        return entity is not None
    if entity is None:
        return True
    if delta.kind == DeltaKind.ADOPT:
        return (
            entity.owner_context_id == delta.new_owner_context_id
            and (
                delta.new_owner_namespace_id is None
                or entity.owner_namespace_id == delta.new_owner_namespace_id
            )
        )
    return all(getattr(entity, name) == value for name, value in delta.changes.items())


class SyncEngine:
    """Replicated quick tab state for one execution context."""

    def __init__(
        self,
        identity: ContextIdentity,
        backend: PersistenceBackend,
        channel: Optional[MessageChannel] = None,
        config: Optional[SyncEngineConfig] = None,
    ):
        self.identity = identity
        self.config = config or SyncEngineConfig()

        self.store = ReplicatedStateStore(backend, self.config.storage_key)
        self.ownership = OwnershipFilter()
        self.ledger = RevisionLedger(identity.context_id, self.config.ledger)
        self.coordinator = WriteCoordinator(
            self.store, self.ledger, identity, self.ownership, self.config.writes
        )
        self.hydration = HydrationPipeline(self.ownership)
        self.events = EntityEventEmitter(identity.label)

        self.monitor: Optional[ConnectionHealthMonitor] = None
        if channel is not None:
            self.monitor = ConnectionHealthMonitor(
                channel, identity, self.config.heartbeat, self.config.outbox
            )
            self.monitor.on_message(self._on_channel_message)

        self._entities: Dict[str, QuickTabEntity] = {}
        self._snapshot: Optional[StateSnapshot] = None
        self._unsubscribe = None
        self._tasks: Set[asyncio.Task] = set()
        self._started = False

        self.total_notifications = 0
        self.total_stale_dropped = 0
        self.total_replays = 0
        self.total_suspicious_drops = 0
        self.total_remote_operations = 0

        self.coordinator.on_commit(self._on_local_commit)

    @property
    def _name(self) -> str:
        return self.identity.label

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, connect: bool = True, run_heartbeat: bool = True) -> HydrationResult:
        """Subscribe to the store, hydrate and (optionally) connect."""
        if self._started:
            raise RuntimeError(f"{self._name} already started")
        self._started = True

        await self.coordinator.start()
        self._unsubscribe = self.store.subscribe(self._on_store_change)

        result = await self.hydration.load(self.store, self.identity)
        if result.unavailable:
            logger.warning(
                f"[SyncEngine:{self._name}] Store unreadable and no cached snapshot, "
                f"starting empty"
            )
        elif result.from_cache:
            logger.warning(f"[SyncEngine:{self._name}] Started from last-known-good snapshot")
        if result.snapshot is not None:
            self.ledger.observe(result.snapshot)
            self._snapshot = result.snapshot
        self._reconcile(
            {entity.id: entity for entity in result.entities}, "hydrated"
        )

        if self.monitor is not None and connect:
            await self.monitor.start(run_heartbeat=run_heartbeat)

        logger.info(
            f"[SyncEngine:{self._name}] Started with {len(self._entities)} owned "
            f"entities at revision {self.ledger.applied_revision}"
        )
        return result

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.coordinator.stop()
        if self.monitor is not None:
            await self.monitor.stop()
        self._started = False
        logger.info(f"[SyncEngine:{self._name}] Closed")

    async def resolve_identity(
        self, context_id: str, namespace_id: Optional[str] = None
    ) -> List[QuickTabEntity]:
        """Adopt the identity the host assigned and re-hydrate under it."""
        self.identity = ContextIdentity(
            context_id=context_id,
            namespace_id=namespace_id if namespace_id is not None else self.identity.namespace_id,
            kind=self.identity.kind,
        )
        self.ledger.writer_id = context_id
        self.coordinator.identity = self.identity
        logger.info(f"[SyncEngine:{self._name}] Identity resolved")

        snapshot = self._snapshot
        if snapshot is None:
            result = await self.hydration.load(self.store, self.identity)
            if result.snapshot is not None:
                self.ledger.observe(result.snapshot)
                self._snapshot = result.snapshot
            owned = result.entities
        else:
            owned = self.hydration.hydrate(snapshot, self.identity)
        self._reconcile({entity.id: entity for entity in owned}, "identity resolved")

        if self.monitor is not None:
            self.monitor.identity = self.identity
            if self.monitor.is_available:
                try:
                    await self.monitor.announce()
                except (ConnectionError, OSError, SyncError) as e:
                    logger.warning(f"[SyncEngine:{self._name}] Announce failed: {e}")
        return list(self._entities.values())

    # -------------------------------------------------------------------------
    # Rendering boundary
    # -------------------------------------------------------------------------

    def on(self, event: EntityEvent, listener: EntityListener):
        return self.events.on(event, listener)

    @property
    def entities(self) -> Dict[str, QuickTabEntity]:
        """The local working set (entities this context owns)."""
        return dict(self._entities)

    @property
    def snapshot(self) -> Optional[StateSnapshot]:
        """Last applied authoritative snapshot, owned or not."""
        return self._snapshot

    def get_entity(self, entity_id: str) -> Optional[QuickTabEntity]:
        return self._entities.get(entity_id)

    def _next_z_index(self) -> int:
        if not self._snapshot or not self._snapshot.entities:
            return 1
        return max(e.z_index for e in self._snapshot.entities.values()) + 1

    async def submit(self, request: Union[Mapping[str, Any], Any]) -> WriteResult:
        """Mutation entry point. Always resolves to success or failure."""
        try:
            operation = parse_operation(request)
        except InvalidOperationError as e:
            logger.warning(
                f"[SyncEngine:{self._name}] Rejected operation: {e.reason}",
                extra={"audit": e.to_record()},
            )
            return WriteResult.failed(
                uuid.uuid4().hex,
                e.operation or "unknown",
                WriteFailureKind.INVALID,
                e.reason,
                entity_id=e.entity_id,
            )

        op = operation.mutation_op
        known = self._snapshot.get(operation.entity_id) if self._snapshot else None
        if known is not None or op == MutationOp.CREATE or not self.identity.is_resolved:
            decision = self.ownership.can_mutate(known, self.identity, op)
            if not decision.allowed:
                return WriteResult.failed(
                    uuid.uuid4().hex,
                    op.value,
                    WriteFailureKind.OWNERSHIP_DENIED,
                    decision.describe(),
                    entity_id=operation.entity_id,
                    revision=self.ledger.applied_revision,
                )

        intent = to_intent(operation, next_z_index=self._next_z_index())
        return await self.coordinator.submit(intent)

    async def submit_intent(self, intent: WriteIntent) -> WriteResult:
        return await self.coordinator.submit(intent)

    async def cleanup_orphans(
        self,
        live_context_ids: Iterable[str],
        owners: Optional[Iterable[str]] = None,
    ) -> List[WriteResult]:
        """Remove entities whose owning context is no longer alive.

        With ``owners`` given, only entities of those contexts are considered.
        """
        live = set(live_context_ids)
        candidates = set(owners) if owners is not None else None
        snapshot = await self.store.get()
        if snapshot is None:
            return []

        orphans = [
            entity for entity in snapshot.entities.values()
            if entity.owner_context_id is not None
            and entity.owner_context_id not in live
            and (candidates is None or entity.owner_context_id in candidates)
        ]
        if not orphans:
            return []

        logger.info(
            f"[SyncEngine:{self._name}] Cleaning up {len(orphans)} orphaned "
            f"entities: {[e.id for e in orphans]}"
        )
        intents = [
            WriteIntent(
                delta=EntityDelta(DeltaKind.REMOVE, entity.id),
                priority=OP_PRIORITY[MutationOp.CLEANUP],
                source_operation=MutationOp.CLEANUP.value,
                op=MutationOp.CLEANUP,
            )
            for entity in orphans
        ]
        return list(await asyncio.gather(*(self.coordinator.submit(i) for i in intents)))

    # -------------------------------------------------------------------------
    # Remote operations
    # -------------------------------------------------------------------------

    async def request_remote(
        self,
        request: Union[Mapping[str, Any], Any],
        target_context_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> WriteResult:
        """Ask the coordinator to run an operation in the owning context."""
        operation = parse_operation(request)
        if self.monitor is None or not self.monitor.is_available:
            state = self.monitor.state.value if self.monitor else "no channel"
            raise ChannelDeadError(
                f"cannot route {operation.op}: link is {state}",
                operation=operation.op,
                entity_id=operation.entity_id,
            )
        message = OperationMessage(
            source_context_id=self.identity.context_id,
            target_context_id=target_context_id,
            operation=operation,
        )
        wait = timeout or (self.config.writes.write_timeout + self.config.heartbeat.timeout)
        reply = await self.monitor.request(message, timeout=wait)
        return WriteResult.from_dict(reply.result)

    async def _on_channel_message(self, message) -> None:
        if not isinstance(message, OperationMessage):
            return
        if message.target_context_id not in (None, self.identity.context_id):
            return
        self.total_remote_operations += 1
        result = await self.submit(message.operation)
        reply = OperationResultMessage(
            request_id=message.request_id,
            target_context_id=message.source_context_id,
            result=result.to_dict(),
        )
        try:
            await self.monitor.send(reply.to_wire())
        except SyncError as e:
            logger.warning(f"[SyncEngine:{self._name}] Could not reply to operation: {e}")

    # -------------------------------------------------------------------------
    # Applying snapshots
    # -------------------------------------------------------------------------

    def _on_store_change(
        self, old: Optional[StateSnapshot], new: Optional[StateSnapshot]
    ) -> None:
        if new is None:
            return
        self.total_notifications += 1
        self._apply_snapshot(new, "remote change")

    def _on_local_commit(self, intent: WriteIntent, outcome: CommitOutcome) -> None:
        reason = f"local {intent.source_operation}"
        if intent.replay_of is not None:
            reason = f"replayed {intent.source_operation}"
        self._apply_snapshot(outcome.observed, reason)

    def _apply_snapshot(self, snapshot: StateSnapshot, reason: str) -> NotificationClass:
        result = self.ledger.observe(snapshot)

        if result.superseded_own_write and result.revision is not None:
            self._schedule_replay(result.revision)

        if not result.accepted:
            self.total_stale_dropped += 1
            logger.debug(
                f"[SyncEngine:{self._name}] Dropped {reason}: {result.reason}"
                + (" (own write)" if result.own_write else "")
            )
            return result

        self._snapshot = snapshot
        if not result.content_changed:
            return result

        owned = {
            entity_id: entity
            for entity_id, entity in snapshot.entities.items()
            if self.ownership.is_owned(entity, self.identity)
        }
        if (
            self.config.warn_on_suspicious_drop
            and self._entities
            and not snapshot.entities
        ):
            self.total_suspicious_drops += 1
            logger.warning(
                f"[SyncEngine:{self._name}] Revision {snapshot.revision} empties a "
                f"working set of {len(self._entities)} entities ({reason})"
            )
        self._reconcile(owned, reason, snapshot)
        return result

    def _reconcile(
        self,
        owned: Dict[str, QuickTabEntity],
        reason: str,
        snapshot: Optional[StateSnapshot] = None,
    ) -> None:
        previous = self._entities
        self._entities = owned

        for entity_id, entity in owned.items():
            before = previous.get(entity_id)
            if before is None:
                self.events.emit(EntityEvent.CREATED, entity, reason)
            elif before != entity:
                self.events.emit(EntityEvent.UPDATED, entity, reason)

        for entity_id, entity in previous.items():
            if entity_id in owned:
                continue
            if snapshot is not None and entity_id in snapshot.entities:
                self.events.emit(EntityEvent.REMOVED, entity, f"{reason}: ownership moved")
            else:
                self.events.emit(EntityEvent.REMOVED, entity, reason)

    # -------------------------------------------------------------------------
    # Lost-update replay
    # -------------------------------------------------------------------------

    def _schedule_replay(self, revision: int) -> None:
        entry = self.ledger.take_superseded(revision)
        if entry is None or entry.intent_id is None:
            return
        original = self.coordinator.committed_intent(entry.intent_id)
        if original is None:
            logger.warning(
                f"[SyncEngine:{self._name}] Lost {entry.operation} at revision "
                f"{revision} is no longer in the commit history"
            )
            return
        replay = WriteIntent(
            delta=original.delta,
            priority=original.priority,
            source_operation=original.source_operation,
            op=original.op,
            request_id=original.request_id,
            replay_of=revision,
        )
        task = asyncio.ensure_future(self._replay(replay))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _replay(self, intent: WriteIntent) -> Optional[WriteResult]:
        current = await self.store.get()
        if delta_reflected(intent.delta, current):
            logger.debug(
                f"[SyncEngine:{self._name}] {intent.source_operation} "
                f"{intent.entity_id} already reflected, no replay"
            )
            return None
        self.total_replays += 1
        logger.info(
            f"[SyncEngine:{self._name}] Replaying {intent.source_operation} "
            f"{intent.entity_id} lost at revision {intent.replay_of}"
        )
        return await self.coordinator.submit(intent)

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "context": self._name,
            "owned_entities": len(self._entities),
            "snapshot_entities": len(self._snapshot) if self._snapshot else 0,
            "applied_revision": self.ledger.applied_revision,
            "needs_recovery": self.store.needs_recovery,
            "total_notifications": self.total_notifications,
            "total_stale_dropped": self.total_stale_dropped,
            "total_replays": self.total_replays,
            "total_suspicious_drops": self.total_suspicious_drops,
            "total_remote_operations": self.total_remote_operations,
            "ledger": self.ledger.get_stats(),
            "writes": self.coordinator.get_stats(),
            "ownership": self.ownership.get_stats(),
        }
        if self.monitor is not None:
            stats["connection"] = self.monitor.get_stats()
        return stats


__all__ = ["SyncEngine", "delta_reflected"]
