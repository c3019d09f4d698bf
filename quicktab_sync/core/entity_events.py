"""
Entity change events delivered to the rendering layer.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from enum import Enum
from typing import Callable, DefaultDict, Dict, List

from .models import QuickTabEntity

logger = logging.getLogger(__name__)

EntityListener = Callable[[QuickTabEntity, str], None]


class EntityEvent(str, Enum):
    CREATED = "entityCreated"
    UPDATED = "entityUpdated"
    REMOVED = "entityRemoved"


class EntityEventEmitter:
    """Synchronous fan-out; a failing listener never blocks the others."""

    def __init__(self, name: str = ""):
        self.name = name
        self._listeners: DefaultDict[EntityEvent, List[EntityListener]] = defaultdict(list)
        self.emitted: Dict[EntityEvent, int] = {event: 0 for event in EntityEvent}

    def on(self, event: EntityEvent, listener: EntityListener) -> Callable[[], None]:
        self._listeners[event].append(listener)

        def off() -> None:
            if listener in self._listeners[event]:
                self._listeners[event].remove(listener)

        return off

    def emit(self, event: EntityEvent, entity: QuickTabEntity, reason: str) -> None:
        self.emitted[event] += 1
        for listener in list(self._listeners[event]):
            try:
                listener(entity, reason)
            except Exception as e:
                logger.warning(
                    f"[EntityEvents:{self.name}] {event.value} listener error: {e}"
                )


__all__ = ["EntityEvent", "EntityEventEmitter"]
