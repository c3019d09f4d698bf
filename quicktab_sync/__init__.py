"""
Quick Tab Sync
Keeps floating quick tab windows consistent across page, panel and
coordinator contexts that share only a key-value store and message links.
"""

from .coordinator_hub import COORDINATOR_CONTEXT_ID, CoordinatorHub
from .core import (
    ConnectionState,
    ContextIdentity,
    ContextKind,
    EntityEvent,
    FileBackend,
    InMemoryBackend,
    LoopbackChannel,
    QuickTabEntity,
    StateSnapshot,
    SyncEngine,
    SyncEngineConfig,
    WriteResult,
)

__version__ = "1.0.0"

__all__ = [
    "SyncEngine",
    "SyncEngineConfig",
    "CoordinatorHub",
    "COORDINATOR_CONTEXT_ID",
    "InMemoryBackend",
    "FileBackend",
    "LoopbackChannel",
    "ContextIdentity",
    "ContextKind",
    "ConnectionState",
    "EntityEvent",
    "QuickTabEntity",
    "StateSnapshot",
    "WriteResult",
]
