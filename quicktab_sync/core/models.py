"""
Quick Tab data model.

Entities and snapshots are immutable dataclasses: every mutation produces a
new value, so a context can diff what it has applied against what arrives
from the store without copying.

Persisted layout (one record per namespace key):

    {
        "entities": {"qt-1": {"id": "qt-1", "url": "...", ...}},
        "revision": 12,
        "saveId": "1700000000000-3f9a1c2b7d4e",
        "checksum": "<sha256 over entities>"
    }
"""

from __future__ import annotations

import hashlib
import json
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional


# =============================================================================
# Enums
# =============================================================================

class ContextKind(str, Enum):
    """Kinds of execution context sharing the store."""
    PAGE = "page"
    PANEL = "panel"
    COORDINATOR = "coordinator"


class MutationOp(str, Enum):
    """Operations a context can request on an entity."""
    CREATE = "create"
    MOVE = "move"
    RESIZE = "resize"
    MINIMIZE = "minimize"
    RESTORE = "restore"
    CLOSE = "close"
    FOCUS = "focus"
    ADOPT = "adopt"
    CLEANUP = "cleanup"


class WritePriority(Enum):
    """Write lanes, lower value drains first."""
    HIGH = 0
    MEDIUM = 1
    LOW = 2


OP_PRIORITY: Dict[MutationOp, WritePriority] = {
    MutationOp.MINIMIZE: WritePriority.HIGH,
    MutationOp.RESTORE: WritePriority.HIGH,
    MutationOp.CLOSE: WritePriority.HIGH,
    MutationOp.CREATE: WritePriority.MEDIUM,
    MutationOp.MOVE: WritePriority.MEDIUM,
    MutationOp.RESIZE: WritePriority.MEDIUM,
    MutationOp.ADOPT: WritePriority.MEDIUM,
    MutationOp.FOCUS: WritePriority.LOW,
    MutationOp.CLEANUP: WritePriority.LOW,
}


class DeltaKind(str, Enum):
    CREATE = "create"
    PATCH = "patch"
    REMOVE = "remove"
    ADOPT = "adopt"


class WriteStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WriteFailureKind(str, Enum):
    STALE_WRITE = "stale_write"
    QUOTA_EXCEEDED = "quota_exceeded"
    TIMEOUT = "timeout"
    OWNERSHIP_DENIED = "ownership_denied"
    NOT_FOUND = "not_found"
    INVALID = "invalid"
    BACKEND_ERROR = "backend_error"
    CANCELLED = "cancelled"


class ConnectionState(str, Enum):
    """Lifecycle of the message link to the coordinator."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    CIRCUIT_OPEN = "circuit_open"


# =============================================================================
# Geometry
# =============================================================================

@dataclass(frozen=True)
class Position:
    left: float = 0
    top: float = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"left": self.left, "top": self.top}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Position:
        data = data or {}
        return cls(left=data.get("left", 0), top=data.get("top", 0))


@dataclass(frozen=True)
class Size:
    width: float = 800
    height: float = 600

    def to_dict(self) -> Dict[str, Any]:
        return {"width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Size:
        data = data or {}
        return cls(width=data.get("width", 800), height=data.get("height", 600))


# =============================================================================
# Entity
# =============================================================================

def _optional_id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


@dataclass(frozen=True)
class QuickTabEntity:
    """Persisted state of one quick tab window.

    ``owner_context_id`` of ``None`` marks a legacy entity written before
    ownership was tracked. ``revision`` is the snapshot revision at which the
    entity was last written and is only ever set by the revision ledger.
    """
    id: str
    url: str
    position: Position = field(default_factory=Position)
    size: Size = field(default_factory=Size)
    minimized: bool = False
    z_index: int = 0
    owner_context_id: Optional[str] = None
    owner_namespace_id: Optional[str] = None
    revision: int = 0
    last_writer_id: Optional[str] = None

    @property
    def is_legacy(self) -> bool:
        return self.owner_context_id is None

    def with_changes(self, **changes: Any) -> QuickTabEntity:
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "position": self.position.to_dict(),
            "size": self.size.to_dict(),
            "minimized": self.minimized,
            "zIndex": self.z_index,
            "ownerContextId": self.owner_context_id,
            "ownerNamespaceId": self.owner_namespace_id,
            "revision": self.revision,
            "lastWriterId": self.last_writer_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> QuickTabEntity:
        """Deserialize, accepting the pre-ownership field names as well."""
        if not data.get("id") or not data.get("url"):
            raise ValueError(f"Quick tab record missing id or url: {dict(data)!r}")

        owner = data.get("ownerContextId", data.get("originTabId"))
        namespace = data.get("ownerNamespaceId", data.get("originContainerId"))
        return cls(
            id=str(data["id"]),
            url=str(data["url"]),
            position=Position.from_dict(data.get("position")),
            size=Size.from_dict(data.get("size")),
            minimized=bool(data.get("minimized", False)),
            z_index=int(data.get("zIndex", 0)),
            owner_context_id=_optional_id(owner),
            owner_namespace_id=_optional_id(namespace),
            revision=int(data.get("revision", 0)),
            last_writer_id=_optional_id(data.get("lastWriterId")),
        )


# =============================================================================
# Snapshot
# =============================================================================

def compute_checksum(entities: Mapping[str, QuickTabEntity]) -> str:
    """SHA-256 over the canonical JSON of the entities map."""
    canonical = json.dumps(
        {entity_id: entity.to_dict() for entity_id, entity in entities.items()},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def new_save_id() -> str:
    """Random per-write identifier, unique across contexts."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class StateSnapshot:
    """The authoritative record for one namespace key."""
    entities: Dict[str, QuickTabEntity] = field(default_factory=dict)
    revision: Optional[int] = 0
    save_id: Optional[str] = None
    checksum: Optional[str] = None

    @classmethod
    def build(
        cls,
        entities: Mapping[str, QuickTabEntity],
        revision: int,
        save_id: Optional[str] = None,
    ) -> StateSnapshot:
        """Create a snapshot with a fresh save id and a matching checksum."""
        entities = dict(entities)
        return cls(
            entities=entities,
            revision=revision,
            save_id=save_id or new_save_id(),
            checksum=compute_checksum(entities),
        )

    @classmethod
    def empty(cls) -> StateSnapshot:
        return cls.build({}, revision=0, save_id="empty")

    def verify_checksum(self) -> bool:
        """True when the stored checksum matches the entities.

        Legacy records carry no checksum and cannot be verified; they are
        treated as intact.
        """
        if self.checksum is None:
            return True
        return self.checksum == compute_checksum(self.entities)

    def get(self, entity_id: str) -> Optional[QuickTabEntity]:
        return self.entities.get(entity_id)

    def __len__(self) -> int:
        return len(self.entities)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entities": {eid: e.to_dict() for eid, e in self.entities.items()},
            "revision": self.revision,
            "saveId": self.save_id,
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StateSnapshot:
        """Deserialize a stored record.

        Older records stored the entities as a list under ``allQuickTabs``
        and had no revision; both shapes are accepted.
        """
        raw_entities = data.get("entities")
        if raw_entities is None:
            raw_entities = data.get("allQuickTabs", [])

        records: Iterable[Mapping[str, Any]]
        if isinstance(raw_entities, Mapping):
            records = raw_entities.values()
        else:
            records = raw_entities

        entities: Dict[str, QuickTabEntity] = {}
        for record in records:
            entity = QuickTabEntity.from_dict(record)
            entities[entity.id] = entity

        revision = data.get("revision")
        return cls(
            entities=entities,
            revision=int(revision) if revision is not None else None,
            save_id=data.get("saveId"),
            checksum=data.get("checksum"),
        )


# =============================================================================
# Context identity
# =============================================================================

@dataclass(frozen=True)
class ContextIdentity:
    """Who a context is.

    ``context_id`` stays ``None`` until the host tells a page context its tab
    id. Until then the context is treated as unknown and may mutate nothing.
    """
    context_id: Optional[str]
    namespace_id: Optional[str] = None
    kind: ContextKind = ContextKind.PAGE

    @property
    def is_resolved(self) -> bool:
        return self.context_id is not None

    @property
    def label(self) -> str:
        return f"{self.kind.value}:{self.context_id or 'unresolved'}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contextId": self.context_id,
            "namespaceId": self.namespace_id,
            "kind": self.kind.value,
        }


# =============================================================================
# Write intents
# =============================================================================

@dataclass(frozen=True)
class EntityDelta:
    """What a write changes, re-applicable to any snapshot version."""
    kind: DeltaKind
    entity_id: str
    entity: Optional[QuickTabEntity] = None
    changes: Mapping[str, Any] = field(default_factory=dict)
    new_owner_context_id: Optional[str] = None
    new_owner_namespace_id: Optional[str] = None

    def apply(
        self,
        current: Optional[QuickTabEntity],
        writer: ContextIdentity,
        revision: int,
    ) -> Optional[QuickTabEntity]:
        """Return the entity after this delta, or ``None`` when removed.

        Ownership is stamped here: a created entity belongs to the writer,
        a legacy entity is claimed by its first successful writer, and an
        adopted entity moves to the requested owner.
        """
        if self.kind == DeltaKind.REMOVE:
            return None

        if self.kind == DeltaKind.CREATE:
            base = self.entity or current
            if base is None:
                raise ValueError(f"create delta for {self.entity_id} has no entity")
            return base.with_changes(
                owner_context_id=writer.context_id,
                owner_namespace_id=writer.namespace_id,
                revision=revision,
                last_writer_id=writer.context_id,
            )

        if current is None:
            raise ValueError(f"{self.kind.value} delta for missing entity {self.entity_id}")

        if self.kind == DeltaKind.ADOPT:
            # An omitted namespace keeps the entity in the one it already lives in.
            return current.with_changes(
                owner_context_id=self.new_owner_context_id,
                owner_namespace_id=(
                    self.new_owner_namespace_id
                    or current.owner_namespace_id
                    or writer.namespace_id
                ),
                revision=revision,
                last_writer_id=writer.context_id,
            )

        updated = current.with_changes(
            **dict(self.changes),
            revision=revision,
            last_writer_id=writer.context_id,
        )
        if updated.is_legacy:
            updated = updated.with_changes(
                owner_context_id=writer.context_id,
                owner_namespace_id=updated.owner_namespace_id or writer.namespace_id,
            )
        return updated


@dataclass
class WriteIntent:
    """One queued write request."""
    delta: EntityDelta
    priority: WritePriority
    source_operation: str
    op: MutationOp
    intent_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    enqueued_at: float = 0.0
    request_id: Optional[str] = None
    replay_of: Optional[int] = None

    @property
    def entity_id(self) -> str:
        return self.delta.entity_id


@dataclass
class WriteResult:
    """Definitive outcome of a write intent."""
    intent_id: str
    status: WriteStatus
    operation: str
    entity_id: Optional[str] = None
    revision: Optional[int] = None
    save_id: Optional[str] = None
    failure: Optional[WriteFailureKind] = None
    reason: Optional[str] = None
    attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == WriteStatus.COMPLETED

    @classmethod
    def completed(
        cls,
        intent: WriteIntent,
        snapshot: StateSnapshot,
        attempts: int = 1,
    ) -> WriteResult:
        return cls(
            intent_id=intent.intent_id,
            status=WriteStatus.COMPLETED,
            operation=intent.source_operation,
            entity_id=intent.entity_id,
            revision=snapshot.revision,
            save_id=snapshot.save_id,
            attempts=attempts,
        )

    @classmethod
    def failed(
        cls,
        intent_id: str,
        operation: str,
        failure: WriteFailureKind,
        reason: str,
        entity_id: Optional[str] = None,
        revision: Optional[int] = None,
        attempts: int = 0,
    ) -> WriteResult:
        status = (
            WriteStatus.CANCELLED
            if failure == WriteFailureKind.CANCELLED
            else WriteStatus.FAILED
        )
        return cls(
            intent_id=intent_id,
            status=status,
            operation=operation,
            entity_id=entity_id,
            revision=revision,
            failure=failure,
            reason=reason,
            attempts=attempts,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intentId": self.intent_id,
            "status": self.status.value,
            "operation": self.operation,
            "entityId": self.entity_id,
            "revision": self.revision,
            "saveId": self.save_id,
            "failure": self.failure.value if self.failure else None,
            "reason": self.reason,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WriteResult:
        failure = data.get("failure")
        return cls(
            intent_id=str(data["intentId"]),
            status=WriteStatus(data["status"]),
            operation=str(data.get("operation", "")),
            entity_id=data.get("entityId"),
            revision=data.get("revision"),
            save_id=data.get("saveId"),
            failure=WriteFailureKind(failure) if failure else None,
            reason=data.get("reason"),
            attempts=int(data.get("attempts", 0)),
        )
