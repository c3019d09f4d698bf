"""
Hydration Pipeline
==================

Builds a context's local working set from the authoritative snapshot.

Each entity goes through the ownership filter with the context's *current*
identity; an entity that fails is left untouched in the snapshot (another
context may own it) and only excluded locally. One decision record is
emitted per entity so that every inclusion and exclusion can be audited.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import CorruptSnapshotError
from .models import ContextIdentity, QuickTabEntity, StateSnapshot
from .ownership import OwnershipFilter

logger = logging.getLogger(__name__)


class HydrationOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class HydrationDecision:
    entity_id: str
    outcome: HydrationOutcome
    reason: str
    context_id: Optional[str]
    revision: Optional[int]

    @property
    def accepted(self) -> bool:
        return self.outcome == HydrationOutcome.ACCEPTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entityId": self.entity_id,
            "outcome": self.outcome.value,
            "reason": self.reason,
            "contextId": self.context_id,
            "revision": self.revision,
        }


@dataclass
class HydrationResult:
    entities: List[QuickTabEntity]
    decisions: List[HydrationDecision]
    snapshot: Optional[StateSnapshot]
    from_cache: bool = False
    unavailable: bool = False
    completed_at: float = field(default_factory=time.time)

    @property
    def accepted(self) -> List[HydrationDecision]:
        return [d for d in self.decisions if d.accepted]

    @property
    def rejected(self) -> List[HydrationDecision]:
        return [d for d in self.decisions if not d.accepted]


class HydrationPipeline:
    """Ownership-filtered loading of the working set."""

    def __init__(self, ownership: Optional[OwnershipFilter] = None):
        self.ownership = ownership or OwnershipFilter()
        self.decisions: List[HydrationDecision] = []

    def hydrate(
        self, snapshot: Optional[StateSnapshot], ctx: ContextIdentity
    ) -> List[QuickTabEntity]:
        """Return the entities ``ctx`` owns, recording one decision per entity."""
        if snapshot is None:
            return []

        owned: List[QuickTabEntity] = []
        for entity_id in sorted(snapshot.entities):
            entity = snapshot.entities[entity_id]
            verdict = self.ownership.evaluate(entity, ctx)
            decision = HydrationDecision(
                entity_id=entity_id,
                outcome=(
                    HydrationOutcome.ACCEPTED if verdict.allowed else HydrationOutcome.REJECTED
                ),
                reason=verdict.describe(),
                context_id=ctx.context_id,
                revision=snapshot.revision,
            )
            self.decisions.append(decision)
            logger.debug(
                f"[Hydration:{ctx.label}] {decision.outcome.value.upper()} "
                f"{entity_id}: {decision.reason}",
                extra={"audit": decision.to_dict()},
            )
            if verdict.allowed:
                owned.append(entity)

        logger.info(
            f"[Hydration:{ctx.label}] Hydrated {len(owned)}/{len(snapshot)} entities "
            f"at revision {snapshot.revision}"
        )
        return owned

    async def load(self, store, ctx: ContextIdentity) -> HydrationResult:
        """Read the store (falling back to last-known-good) and hydrate.

        ``from_cache`` is set when the last-known-good snapshot was served;
        ``unavailable`` when the store was corrupt and no cache existed.
        """
        start = len(self.decisions)
        from_cache = False
        unavailable = False
        try:
            snapshot = await store.get()
            from_cache = bool(getattr(store, "needs_recovery", False))
        except CorruptSnapshotError as e:
            logger.error(
                f"[Hydration:{ctx.label}] No usable snapshot: {e.reason}",
                extra={"audit": e.to_record()},
            )
            snapshot = None
            unavailable = True

        entities = self.hydrate(snapshot, ctx)
        return HydrationResult(
            entities=entities,
            decisions=self.decisions[start:],
            snapshot=snapshot,
            from_cache=from_cache,
            unavailable=unavailable,
        )


__all__ = [
    "HydrationOutcome",
    "HydrationDecision",
    "HydrationResult",
    "HydrationPipeline",
]
