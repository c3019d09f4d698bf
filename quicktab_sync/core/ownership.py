"""
Ownership Filter
================

Decides whether an entity belongs to a context and whether an operation on
it is permitted. Every call site (submission, the commit-time re-check and
hydration) goes through :meth:`OwnershipFilter.evaluate`, so the rules are
applied identically everywhere.

Rule order:
    1. Legacy entity (no owner): ALLOW if the context knows its own id.
       Stamped with that context on its next successful mutation.
    2. Unknown self identity: DENY everything.
    3. Base rule: owner context id AND owner namespace id both match.

Privileged operations:
    CREATE   - needs only a resolved identity when the entity does not exist
    ADOPT    - current owner, or a coordinator context
    CLEANUP  - coordinator context only
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from .errors import OwnershipDeniedError
from .models import ContextIdentity, ContextKind, MutationOp, QuickTabEntity

logger = logging.getLogger(__name__)


class OwnershipVerdict(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class DenyReason(str, Enum):
    UNKNOWN_IDENTITY = "unknown_identity"
    NOT_OWNER = "not_owner"
    NAMESPACE_MISMATCH = "namespace_mismatch"
    PRIVILEGED_OPERATION = "privileged_operation"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class OwnershipDecision:
    verdict: OwnershipVerdict
    reason: Optional[DenyReason] = None
    detail: str = ""

    @property
    def allowed(self) -> bool:
        return self.verdict == OwnershipVerdict.ALLOW

    @classmethod
    def allow(cls, detail: str) -> OwnershipDecision:
        return cls(OwnershipVerdict.ALLOW, None, detail)

    @classmethod
    def deny(cls, reason: DenyReason, detail: str) -> OwnershipDecision:
        return cls(OwnershipVerdict.DENY, reason, detail)

    def raise_if_denied(
        self,
        entity_id: Optional[str],
        operation: str,
        revision: Optional[int] = None,
    ) -> None:
        if not self.allowed:
            raise OwnershipDeniedError(
                f"{self.reason.value}: {self.detail}",
                operation=operation,
                entity_id=entity_id,
                revision=revision,
            )

    def describe(self) -> str:
        if self.allowed:
            return self.detail
        return f"{self.reason.value}: {self.detail}"


class OwnershipFilter:
    """Stateless ownership rules plus allow/deny counters."""

    def __init__(self):
        self.total_allowed = 0
        self.total_denied = 0

    def evaluate(
        self,
        entity: Optional[QuickTabEntity],
        ctx: ContextIdentity,
        op: Optional[MutationOp] = None,
    ) -> OwnershipDecision:
        decision = self._evaluate(entity, ctx, op)
        if decision.allowed:
            self.total_allowed += 1
        else:
            self.total_denied += 1
        return decision

    def _evaluate(
        self,
        entity: Optional[QuickTabEntity],
        ctx: ContextIdentity,
        op: Optional[MutationOp],
    ) -> OwnershipDecision:
        if entity is None:
            if not ctx.is_resolved:
                return OwnershipDecision.deny(
                    DenyReason.UNKNOWN_IDENTITY, "own identity unresolved"
                )
            if op != MutationOp.CREATE:
                return OwnershipDecision.deny(DenyReason.NOT_FOUND, "entity does not exist")
            return OwnershipDecision.allow(f"create by {ctx.label}")

        if entity.is_legacy:
            if not ctx.is_resolved:
                return OwnershipDecision.deny(
                    DenyReason.UNKNOWN_IDENTITY, "legacy entity, own identity unresolved"
                )
            if (
                entity.owner_namespace_id is not None
                and entity.owner_namespace_id != ctx.namespace_id
            ):
                return OwnershipDecision.deny(
                    DenyReason.NAMESPACE_MISMATCH,
                    f"legacy entity in namespace {entity.owner_namespace_id}, "
                    f"context in {ctx.namespace_id}",
                )
            if op == MutationOp.CLEANUP and ctx.kind != ContextKind.COORDINATOR:
                return OwnershipDecision.deny(
                    DenyReason.PRIVILEGED_OPERATION, "cleanup is reserved to the coordinator"
                )
            return OwnershipDecision.allow("legacy entity, claimed by first writer")

        if not ctx.is_resolved:
            return OwnershipDecision.deny(
                DenyReason.UNKNOWN_IDENTITY, "own identity unresolved"
            )

        if op == MutationOp.CLEANUP:
            if ctx.kind == ContextKind.COORDINATOR:
                return OwnershipDecision.allow("coordinator cleanup")
            return OwnershipDecision.deny(
                DenyReason.PRIVILEGED_OPERATION, "cleanup is reserved to the coordinator"
            )

        if op == MutationOp.ADOPT and ctx.kind == ContextKind.COORDINATOR:
            return OwnershipDecision.allow("coordinator adoption")

        if entity.owner_context_id != ctx.context_id:
            return OwnershipDecision.deny(
                DenyReason.NOT_OWNER,
                f"owned by {entity.owner_context_id}, context is {ctx.context_id}",
            )
        if entity.owner_namespace_id != ctx.namespace_id:
            return OwnershipDecision.deny(
                DenyReason.NAMESPACE_MISMATCH,
                f"owned in namespace {entity.owner_namespace_id}, "
                f"context in {ctx.namespace_id}",
            )
        return OwnershipDecision.allow("owner match")

    def is_owned(self, entity: QuickTabEntity, ctx: ContextIdentity) -> bool:
        return self.evaluate(entity, ctx).allowed

    def can_mutate(
        self,
        entity: Optional[QuickTabEntity],
        ctx: ContextIdentity,
        op: MutationOp,
    ) -> OwnershipDecision:
        decision = self.evaluate(entity, ctx, op)
        if not decision.allowed:
            logger.info(
                f"[Ownership:{ctx.label}] DENY {op.value} on "
                f"{entity.id if entity else '?'}: {decision.describe()}"
            )
        return decision

    def get_stats(self) -> Dict[str, int]:
        return {"allowed": self.total_allowed, "denied": self.total_denied}


__all__ = [
    "OwnershipVerdict",
    "DenyReason",
    "OwnershipDecision",
    "OwnershipFilter",
]
