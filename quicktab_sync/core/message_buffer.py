"""
Bounded outbox for channel messages.

Holds non-critical messages while the coordinator link is unusable. The
buffer has a hard size bound with a configurable overflow policy and a
per-message time-to-live; expired messages are discarded when the buffer
is touched or drained.

Usage:
    outbox = MessageOutbox(max_size=100, ttl_seconds=30.0, name="page:7")
    outbox.put(message)
    for message in outbox.drain():
        await channel.send(message)
"""

from __future__ import annotations

import enum
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Generic, List, Optional, TypeVar

from .config import OutboxConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OverflowPolicy(enum.Enum):
    """Policy to apply when the outbox is full.

    DROP_OLDEST - Discard the oldest message, then buffer the new one.
    DROP_NEWEST - Reject the new message.
    """

    DROP_OLDEST = "drop_oldest"
    DROP_NEWEST = "drop_newest"


@dataclass
class _Buffered(Generic[T]):
    item: T
    expires_at: float


class MessageOutbox(Generic[T]):
    """Bounded, TTL-limited FIFO buffer.

    Parameters
    ----------
    max_size:
        Maximum number of buffered messages.
    ttl_seconds:
        Lifetime of a buffered message.
    policy:
        What to do when the buffer is full.  See :class:`OverflowPolicy`.
    name:
        Label used in log messages.
    clock:
        Monotonic time source, replaceable in tests.
    """

    def __init__(
        self,
        max_size: int = 100,
        ttl_seconds: float = 30.0,
        policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST,
        name: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.policy = policy
        self.name = name
        self._clock = clock
        self._items: Deque[_Buffered[T]] = deque()

        self._dropped_count = 0
        self._expired_count = 0
        self._total_puts = 0
        self._total_drained = 0
        self._peak_size = 0

    @classmethod
    def from_config(cls, config: OutboxConfig, name: str = "") -> MessageOutbox:
        return cls(max_size=config.max_size, ttl_seconds=config.ttl_seconds, name=name)

    # -- Statistics -----------------------------------------------------------

    @property
    def dropped_count(self) -> int:
        """Number of messages dropped due to the overflow policy."""
        return self._dropped_count

    @property
    def expired_count(self) -> int:
        return self._expired_count

    def __len__(self) -> int:
        self._prune()
        return len(self._items)

    def get_stats(self) -> Dict[str, Any]:
        """Return a snapshot of outbox health metrics."""
        current_size = len(self)
        return {
            "name": self.name,
            "max_size": self.max_size,
            "ttl_seconds": self.ttl_seconds,
            "policy": self.policy.value,
            "current_size": current_size,
            "peak_size": self._peak_size,
            "total_puts": self._total_puts,
            "total_drained": self._total_drained,
            "dropped_count": self._dropped_count,
            "expired_count": self._expired_count,
        }

    # -- Internal helpers -----------------------------------------------------

    def _prune(self) -> None:
        now = self._clock()
        while self._items and self._items[0].expires_at <= now:
            self._items.popleft()
            self._expired_count += 1

    # -- Put / drain ----------------------------------------------------------

    def put(self, item: T) -> bool:
        """Buffer a message. Returns False if the new message was rejected."""
        self._prune()

        if len(self._items) >= self.max_size:
            if self.policy == OverflowPolicy.DROP_NEWEST:
                self._dropped_count += 1
                if self._dropped_count % 100 == 1:
                    logger.info(
                        "MessageOutbox '%s' rejected new message (total dropped: %d)",
                        self.name,
                        self._dropped_count,
                    )
                return False
            self._items.popleft()
            self._dropped_count += 1
            if self._dropped_count % 100 == 1:
                logger.info(
                    "MessageOutbox '%s' dropped oldest message (total dropped: %d)",
                    self.name,
                    self._dropped_count,
                )

        self._items.append(_Buffered(item, self._clock() + self.ttl_seconds))
        self._total_puts += 1
        if len(self._items) > self._peak_size:
            self._peak_size = len(self._items)
        return True

    def drain(self) -> List[T]:
        """Remove and return every unexpired message, oldest first."""
        self._prune()
        items = [buffered.item for buffered in self._items]
        self._items.clear()
        self._total_drained += len(items)
        return items

    def peek(self) -> Optional[T]:
        self._prune()
        return self._items[0].item if self._items else None

    def clear(self) -> None:
        self._items.clear()

    def __repr__(self) -> str:
        return (
            f"MessageOutbox(name={self.name!r}, max_size={self.max_size}, "
            f"policy={self.policy.value}, size={len(self._items)})"
        )


__all__ = ["MessageOutbox", "OverflowPolicy"]
