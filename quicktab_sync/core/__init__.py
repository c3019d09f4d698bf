"""
Quick Tab Sync Core
Replicated quick tab state shared by independent execution contexts

This package provides:
- Replicated state store over a durable key-value backend
- Revision ledger with optimistic-concurrency commits and dedup cascade
- Per-context write coordinator with priority lanes and deadlines
- Ownership filter and hydration pipeline
- Connection health monitor for the coordinator link
"""

from .backoff import BackoffPolicy, RetryExhaustedError
from .config import (
    BackoffConfig,
    CoordinatorConfig,
    HeartbeatConfig,
    LedgerConfig,
    OutboxConfig,
    SyncEngineConfig,
    WriteCoordinatorConfig,
)
from .connection_monitor import ConnectionHealthMonitor
from .entity_events import EntityEvent, EntityEventEmitter
from .errors import (
    ChannelDeadError,
    ChannelTimeoutError,
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
from .hydration import HydrationDecision, HydrationOutcome, HydrationPipeline, HydrationResult
from .message_buffer import MessageOutbox, OverflowPolicy
from .message_channel import HandlerSet, LoopbackChannel, MessageChannel
from .models import (
    ConnectionState,
    ContextIdentity,
    ContextKind,
    MutationOp,
    Position,
    QuickTabEntity,
    Size,
    StateSnapshot,
    WriteFailureKind,
    WriteIntent,
    WritePriority,
    WriteResult,
    WriteStatus,
)
from .operations import parse_message, parse_operation, to_intent
from .ownership import DenyReason, OwnershipDecision, OwnershipFilter, OwnershipVerdict
from .revision_ledger import AcceptDecision, DedupVerdict, NotificationClass, RevisionLedger
from .state_store import FileBackend, InMemoryBackend, PersistenceBackend, ReplicatedStateStore
from .sync_engine import SyncEngine
from .write_coordinator import WriteCoordinator

__all__ = [
    # Engine
    "SyncEngine",
    "SyncEngineConfig",
    # Store
    "PersistenceBackend",
    "InMemoryBackend",
    "FileBackend",
    "ReplicatedStateStore",
    # Ledger
    "RevisionLedger",
    "AcceptDecision",
    "DedupVerdict",
    "NotificationClass",
    "LedgerConfig",
    # Writes
    "WriteCoordinator",
    "WriteCoordinatorConfig",
    "BackoffPolicy",
    "BackoffConfig",
    "RetryExhaustedError",
    # Ownership / hydration
    "OwnershipFilter",
    "OwnershipDecision",
    "OwnershipVerdict",
    "DenyReason",
    "HydrationPipeline",
    "HydrationResult",
    "HydrationDecision",
    "HydrationOutcome",
    # Connection
    "ConnectionHealthMonitor",
    "HeartbeatConfig",
    "OutboxConfig",
    "CoordinatorConfig",
    "MessageChannel",
    "LoopbackChannel",
    "HandlerSet",
    "MessageOutbox",
    "OverflowPolicy",
    # Events
    "EntityEvent",
    "EntityEventEmitter",
    # Model
    "QuickTabEntity",
    "StateSnapshot",
    "Position",
    "Size",
    "ContextIdentity",
    "ContextKind",
    "ConnectionState",
    "MutationOp",
    "WriteIntent",
    "WritePriority",
    "WriteResult",
    "WriteStatus",
    "WriteFailureKind",
    "parse_operation",
    "parse_message",
    "to_intent",
    # Errors
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
