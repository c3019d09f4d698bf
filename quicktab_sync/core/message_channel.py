"""
Message channel interface and the in-process loopback implementation.

A channel is fire-and-forget: ``send`` returns once the message is handed
to the transport, replies arrive through ``on_message`` handlers.
``on_disconnect`` is best effort only and may never fire when the far side
is suspended abruptly; liveness is established by heartbeats, not by it.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Tuple, Union

from .errors import ChannelDeadError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]
DisconnectHandler = Callable[[], Union[None, Awaitable[None]]]


class MessageChannel(Protocol):
    """Transport between one context and the coordinator."""

    @property
    def is_connected(self) -> bool: ...

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def send(self, message: Dict[str, Any]) -> None: ...

    def on_message(self, handler: MessageHandler) -> None: ...

    def on_disconnect(self, handler: DisconnectHandler) -> None: ...


class HandlerSet:
    """Handlers invoked asynchronously, each isolated from the others."""

    def __init__(self, owner: str):
        self._owner = owner
        self._handlers: List[Callable[..., Any]] = []
        self._pending: Set[asyncio.Task] = set()

    def add(self, handler: Callable[..., Any]) -> None:
        self._handlers.append(handler)

    def __len__(self) -> int:
        return len(self._handlers)

    def dispatch(self, *args: Any) -> None:
        loop = asyncio.get_running_loop()
        for handler in list(self._handlers):
            loop.call_soon(self._invoke, handler, args)

    async def dispatch_now(self, *args: Any) -> None:
        """Invoke every handler and await async ones in order."""
        for handler in list(self._handlers):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception(f"[{self._owner}] Handler error: {e}")

    def _invoke(self, handler: Callable[..., Any], args: Tuple[Any, ...]) -> None:
        try:
            result = handler(*args)
        except Exception as e:
            logger.exception(f"[{self._owner}] Handler error: {e}")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._done)

    def _done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"[{self._owner}] Async handler failed: {task.exception()!r}",
                exc_info=task.exception(),
            )


class LoopbackChannel:
    """
    One end of an in-process channel pair.

    Messages are copied through JSON on the way across, so both ends only
    ever see wire-format dicts. Two switches simulate host behaviour:

    ``blackhole``       sent messages vanish silently (suspended host)
    ``refuse_connect``  ``connect()`` fails (host not available)
    """

    def __init__(self, name: str = "loopback"):
        self.name = name
        self.peer: Optional[LoopbackChannel] = None
        self._connected = False
        self._messages = HandlerSet(f"LoopbackChannel:{name}")
        self._disconnects = HandlerSet(f"LoopbackChannel:{name}")

        self.blackhole = False
        self.refuse_connect = False

        self.messages_sent = 0
        self.messages_received = 0
        self.messages_lost = 0
        self.connect_attempts = 0

    @classmethod
    def pair(cls, name: str = "loopback") -> Tuple[LoopbackChannel, LoopbackChannel]:
        """Create two linked ends, ``(client, server)``."""
        client = cls(f"{name}/client")
        server = cls(f"{name}/server")
        client.peer = server
        server.peer = client
        server._connected = True
        return client, server

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self.connect_attempts += 1
        await asyncio.sleep(0)
        if self.refuse_connect:
            raise ConnectionError(f"{self.name}: connection refused")
        if self.peer is None:
            raise ConnectionError(f"{self.name}: no peer")
        self._connected = True
        self.peer._connected = True

    async def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        peer = self.peer
        if peer is not None and peer._connected:
            peer._connected = False
            peer._disconnects.dispatch()

    async def send(self, message: Dict[str, Any]) -> None:
        if not self._connected or self.peer is None:
            raise ChannelDeadError(
                f"{self.name}: channel is not connected",
                operation=str(message.get("type")),
            )
        await asyncio.sleep(0)
        self.messages_sent += 1
        if self.blackhole or self.peer.blackhole:
            self.messages_lost += 1
            return
        self.peer._receive(json.loads(json.dumps(message)))

    def _receive(self, message: Dict[str, Any]) -> None:
        self.messages_received += 1
        self._messages.dispatch(message)

    def on_message(self, handler: MessageHandler) -> None:
        self._messages.add(handler)

    def on_disconnect(self, handler: DisconnectHandler) -> None:
        self._disconnects.add(handler)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "connected": self._connected,
            "messages_sent": self.messages_sent,
            "messages_received": self.messages_received,
            "messages_lost": self.messages_lost,
            "connect_attempts": self.connect_attempts,
        }


__all__ = ["MessageChannel", "LoopbackChannel", "HandlerSet"]
