"""
Typed operation requests and channel messages.

The rendering layer and remote contexts send plain dicts; they are
validated here, at the boundary, into a closed set of tagged variants
before anything reaches the core. Anything that does not validate raises
:class:`InvalidOperationError`.

Operation request shape (wire names):

    {"op": "move", "entityId": "qt-1", "payload": {"left": 10, "top": 20}}

Channel message shape:

    {"type": "heartbeat", "correlationId": "..."}
"""

from __future__ import annotations

import time
import uuid
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import InvalidOperationError
from .models import (
    ContextKind,
    DeltaKind,
    EntityDelta,
    MutationOp,
    OP_PRIORITY,
    Position,
    QuickTabEntity,
    Size,
    WriteIntent,
)


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# =============================================================================
# Payloads
# =============================================================================

class PositionPayload(_WireModel):
    left: float = 0
    top: float = 0


class SizePayload(_WireModel):
    width: float = Field(default=800, gt=0)
    height: float = Field(default=600, gt=0)


class CreatePayload(_WireModel):
    url: str = Field(min_length=1)
    position: PositionPayload = Field(default_factory=PositionPayload)
    size: SizePayload = Field(default_factory=SizePayload)
    minimized: bool = False
    z_index: int = Field(default=0, alias="zIndex")


class MovePayload(_WireModel):
    left: float
    top: float


class ResizePayload(_WireModel):
    width: float = Field(gt=0)
    height: float = Field(gt=0)


class FocusPayload(_WireModel):
    z_index: Optional[int] = Field(default=None, alias="zIndex")


class AdoptPayload(_WireModel):
    new_owner_context_id: str = Field(alias="newOwnerContextId", min_length=1)
    new_owner_namespace_id: Optional[str] = Field(default=None, alias="newOwnerNamespaceId")


class EmptyPayload(_WireModel):
    pass


# =============================================================================
# Operations
# =============================================================================

class _OperationBase(_WireModel):
    entity_id: str = Field(alias="entityId", min_length=1)
    request_id: Optional[str] = Field(default=None, alias="requestId")

    @property
    def mutation_op(self) -> MutationOp:
        return MutationOp(self.op)

    def delta(self, next_z_index: int = 0) -> EntityDelta:
        raise NotImplementedError


class CreateOperation(_OperationBase):
    op: Literal["create"] = "create"
    payload: CreatePayload

    def delta(self, next_z_index: int = 0) -> EntityDelta:
        p = self.payload
        entity = QuickTabEntity(
            id=self.entity_id,
            url=p.url,
            position=Position(p.position.left, p.position.top),
            size=Size(p.size.width, p.size.height),
            minimized=p.minimized,
            z_index=p.z_index or next_z_index,
        )
        return EntityDelta(DeltaKind.CREATE, self.entity_id, entity=entity)


class MoveOperation(_OperationBase):
    op: Literal["move"] = "move"
    payload: MovePayload

    def delta(self, next_z_index: int = 0) -> EntityDelta:
        position = Position(self.payload.left, self.payload.top)
        return EntityDelta(DeltaKind.PATCH, self.entity_id, changes={"position": position})


class ResizeOperation(_OperationBase):
    op: Literal["resize"] = "resize"
    payload: ResizePayload

    def delta(self, next_z_index: int = 0) -> EntityDelta:
        size = Size(self.payload.width, self.payload.height)
        return EntityDelta(DeltaKind.PATCH, self.entity_id, changes={"size": size})


class MinimizeOperation(_OperationBase):
    op: Literal["minimize"] = "minimize"
    payload: EmptyPayload = Field(default_factory=EmptyPayload)

    def delta(self, next_z_index: int = 0) -> EntityDelta:
        return EntityDelta(DeltaKind.PATCH, self.entity_id, changes={"minimized": True})


class RestoreOperation(_OperationBase):
    op: Literal["restore"] = "restore"
    payload: EmptyPayload = Field(default_factory=EmptyPayload)

    def delta(self, next_z_index: int = 0) -> EntityDelta:
        return EntityDelta(DeltaKind.PATCH, self.entity_id, changes={"minimized": False})


class CloseOperation(_OperationBase):
    op: Literal["close"] = "close"
    payload: EmptyPayload = Field(default_factory=EmptyPayload)

    def delta(self, next_z_index: int = 0) -> EntityDelta:
        return EntityDelta(DeltaKind.REMOVE, self.entity_id)


class FocusOperation(_OperationBase):
    op: Literal["focus"] = "focus"
    payload: FocusPayload = Field(default_factory=FocusPayload)

    def delta(self, next_z_index: int = 0) -> EntityDelta:
        z_index = self.payload.z_index if self.payload.z_index is not None else next_z_index
        return EntityDelta(DeltaKind.PATCH, self.entity_id, changes={"z_index": z_index})


class AdoptOperation(_OperationBase):
    op: Literal["adopt"] = "adopt"
    payload: AdoptPayload

    def delta(self, next_z_index: int = 0) -> EntityDelta:
        return EntityDelta(
            DeltaKind.ADOPT,
            self.entity_id,
            new_owner_context_id=self.payload.new_owner_context_id,
            new_owner_namespace_id=self.payload.new_owner_namespace_id,
        )


Operation = Annotated[
    Union[
        CreateOperation,
        MoveOperation,
        ResizeOperation,
        MinimizeOperation,
        RestoreOperation,
        CloseOperation,
        FocusOperation,
        AdoptOperation,
    ],
    Field(discriminator="op"),
]

_operation_adapter: TypeAdapter = TypeAdapter(Operation)


def _first_error(error: ValidationError) -> str:
    errors = error.errors()
    if not errors:
        return str(error)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


def parse_operation(data: Union[Mapping[str, Any], _OperationBase]) -> _OperationBase:
    """Validate an operation request."""
    if isinstance(data, _OperationBase):
        return data
    if not isinstance(data, Mapping):
        raise InvalidOperationError(
            f"operation must be an object, got {type(data).__name__}"
        )
    data = {k: v for k, v in data.items() if not (k == "payload" and v is None)}
    try:
        return _operation_adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidOperationError(
            f"invalid operation: {_first_error(e)}",
            operation=str(data.get("op")) if data.get("op") is not None else None,
            entity_id=data.get("entityId"),
        ) from e


def to_intent(
    operation: _OperationBase,
    next_z_index: int = 0,
    source: Optional[str] = None,
) -> WriteIntent:
    """Turn a validated operation into a write intent in its priority lane."""
    op = operation.mutation_op
    return WriteIntent(
        delta=operation.delta(next_z_index),
        priority=OP_PRIORITY[op],
        source_operation=source or op.value,
        op=op,
        request_id=operation.request_id,
    )


# =============================================================================
# Channel messages
# =============================================================================

def new_correlation_id() -> str:
    return uuid.uuid4().hex


class ContextInfo(_WireModel):
    context_id: Optional[str] = Field(default=None, alias="contextId")
    namespace_id: Optional[str] = Field(default=None, alias="namespaceId")
    kind: ContextKind = ContextKind.PAGE


class HelloMessage(_WireModel):
    type: Literal["hello"] = "hello"
    context: ContextInfo


class HeartbeatMessage(_WireModel):
    type: Literal["heartbeat"] = "heartbeat"
    correlation_id: str = Field(default_factory=new_correlation_id, alias="correlationId")
    sent_at: float = Field(default_factory=time.time, alias="sentAt")


class HeartbeatAckMessage(_WireModel):
    type: Literal["heartbeat_ack"] = "heartbeat_ack"
    correlation_id: str = Field(alias="correlationId")
    live_contexts: List[str] = Field(default_factory=list, alias="liveContexts")


class OperationMessage(_WireModel):
    type: Literal["operation"] = "operation"
    request_id: str = Field(default_factory=new_correlation_id, alias="requestId")
    source_context_id: Optional[str] = Field(default=None, alias="sourceContextId")
    target_context_id: Optional[str] = Field(default=None, alias="targetContextId")
    operation: Operation


class OperationResultMessage(_WireModel):
    type: Literal["operation_result"] = "operation_result"
    request_id: str = Field(alias="requestId")
    target_context_id: Optional[str] = Field(default=None, alias="targetContextId")
    result: Dict[str, Any]


class ContextClosedMessage(_WireModel):
    type: Literal["context_closed"] = "context_closed"
    context_id: str = Field(alias="contextId")


Message = Annotated[
    Union[
        HelloMessage,
        HeartbeatMessage,
        HeartbeatAckMessage,
        OperationMessage,
        OperationResultMessage,
        ContextClosedMessage,
    ],
    Field(discriminator="type"),
]

_message_adapter: TypeAdapter = TypeAdapter(Message)

# Messages whose correlation ids are answered by a reply.
REPLY_TYPES = {"heartbeat_ack": "correlation_id", "operation_result": "request_id"}


def parse_message(data: Union[Mapping[str, Any], _WireModel]) -> _WireModel:
    """Validate a channel message."""
    if isinstance(data, _WireModel):
        return data
    if not isinstance(data, Mapping):
        raise InvalidOperationError(
            f"message must be an object, got {type(data).__name__}"
        )
    try:
        return _message_adapter.validate_python(dict(data))
    except ValidationError as e:
        raise InvalidOperationError(
            f"invalid message: {_first_error(e)}",
            operation=str(data.get("type")) if data.get("type") is not None else None,
        ) from e


def reply_key(message: _WireModel) -> Optional[str]:
    """Correlation id a reply message answers, if it is a reply."""
    attribute = REPLY_TYPES.get(getattr(message, "type", ""))
    return getattr(message, attribute) if attribute else None


__all__ = [
    "Operation",
    "CreateOperation",
    "MoveOperation",
    "ResizeOperation",
    "MinimizeOperation",
    "RestoreOperation",
    "CloseOperation",
    "FocusOperation",
    "AdoptOperation",
    "parse_operation",
    "to_intent",
    "Message",
    "ContextInfo",
    "HelloMessage",
    "HeartbeatMessage",
    "HeartbeatAckMessage",
    "OperationMessage",
    "OperationResultMessage",
    "ContextClosedMessage",
    "parse_message",
    "reply_key",
    "new_correlation_id",
]
