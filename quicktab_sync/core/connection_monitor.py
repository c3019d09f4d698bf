"""
Connection Health Monitor
=========================

Owns the lifecycle of one context's message link to the coordinator.

States:
    DISCONNECTED  -> CONNECTING     connect attempted
    CONNECTING    -> CONNECTED      channel up and first heartbeat answered
    CONNECTING    -> CIRCUIT_OPEN   connect or first heartbeat failed
    CONNECTED     -> DEGRADED       one heartbeat miss (never opens on one)
    DEGRADED      -> CONNECTED      next heartbeat answered, counter reset
    DEGRADED      -> CIRCUIT_OPEN   threshold consecutive misses in the window
    CIRCUIT_OPEN  -> CONNECTING     health probe succeeded
    any           -> DISCONNECTED   explicit disconnect or peer hang-up

While the circuit is open, non-critical messages go to a bounded TTL
outbox (drop-oldest) and are flushed on reconnect; critical sends fail with
:class:`ChannelDeadError`. Probes back off from ``probe_base_delay`` up to
``probe_max_delay``.

Heartbeats and other requests are matched to replies by correlation id.
Reconnection is single-flight: concurrent triggers join the attempt that
is already running instead of opening a second channel.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from .backoff import BackoffPolicy
from .config import HeartbeatConfig, OutboxConfig
from .errors import (
    ChannelDeadError, ChannelTimeoutError, InvalidOperationError, SyncError
)
from .message_buffer import MessageOutbox
from .message_channel import HandlerSet, MessageChannel
from .models import ConnectionState, ContextIdentity
from .operations import (
    ContextInfo, HeartbeatMessage, HelloMessage, parse_message, reply_key
)

logger = logging.getLogger(__name__)

StateListener = Callable[[ConnectionState, ConnectionState], None]

TRANSITIONS: Dict[ConnectionState, Set[ConnectionState]] = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTED,
        ConnectionState.CIRCUIT_OPEN,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.CONNECTED: {ConnectionState.DEGRADED, ConnectionState.DISCONNECTED},
    ConnectionState.DEGRADED: {
        ConnectionState.CONNECTED,
        ConnectionState.CIRCUIT_OPEN,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.CIRCUIT_OPEN: {ConnectionState.CONNECTING, ConnectionState.DISCONNECTED},
}

_CHANNEL_ERRORS = (ConnectionError, OSError, SyncError, asyncio.TimeoutError)


class ConnectionHealthMonitor:
    """Heartbeat-driven health state machine for one message channel."""

    def __init__(
        self,
        channel: MessageChannel,
        identity: ContextIdentity,
        config: Optional[HeartbeatConfig] = None,
        outbox_config: Optional[OutboxConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        auto_reconnect: bool = True,
    ):
        self.channel = channel
        self.identity = identity
        self.config = config or HeartbeatConfig()
        self.outbox: MessageOutbox = MessageOutbox.from_config(
            outbox_config or OutboxConfig(), name=identity.label
        )
        self.auto_reconnect = auto_reconnect
        self._clock = clock
        self._probe_backoff = BackoffPolicy(self.config.probe_backoff())

        self._state = ConnectionState.DISCONNECTED
        self.history: List[ConnectionState] = [self._state]
        self._listeners: List[StateListener] = []
        self._handlers = HandlerSet(f"ConnectionMonitor:{identity.label}")

        self._pending: Dict[str, asyncio.Future] = {}
        self._failures: Deque[float] = deque()

        self._connect_task: Optional[asyncio.Task] = None
        self._probe_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._running = False

        self.total_heartbeats = 0
        self.total_heartbeat_failures = 0
        self.total_connect_attempts = 0
        self.total_joined_connects = 0
        self.total_probes = 0
        self.last_heartbeat_ok: Optional[float] = None
        self.live_contexts: List[str] = []

        channel.on_message(self._on_channel_message)
        channel.on_disconnect(self._on_channel_disconnect)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_available(self) -> bool:
        return self._state in (ConnectionState.CONNECTED, ConnectionState.DEGRADED)

    @property
    def _name(self) -> str:
        return self.identity.label

    def on_state_change(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def on_message(self, handler: Callable[[Any], Any]) -> None:
        """Receive every validated message that is not a reply."""
        self._handlers.add(handler)

    def _transition(self, new_state: ConnectionState) -> bool:
        old_state = self._state
        if old_state == new_state:
            return True
        if new_state not in TRANSITIONS[old_state]:
            logger.warning(
                f"[ConnectionMonitor:{self._name}] Ignoring invalid transition "
                f"{old_state.name} -> {new_state.name}"
            )
            return False

        self._state = new_state
        self.history.append(new_state)
        logger.info(
            f"[ConnectionMonitor:{self._name}] State transition: "
            f"{old_state.name} -> {new_state.name}"
        )

        for listener in list(self._listeners):
            try:
                listener(old_state, new_state)
            except Exception as e:
                logger.warning(f"[ConnectionMonitor:{self._name}] Callback error: {e}")
        return True

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, run_heartbeat: bool = True) -> bool:
        """Connect and, optionally, start the periodic heartbeat loop."""
        self._running = True
        connected = await self.connect()
        if run_heartbeat and (self._heartbeat_task is None or self._heartbeat_task.done()):
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        return connected

    async def stop(self) -> None:
        await self.disconnect()

    async def disconnect(self) -> None:
        self._running = False
        for task in (self._heartbeat_task, self._probe_task, self._connect_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._heartbeat_task = self._probe_task = self._connect_task = None
        spawned = [t for t in self._tasks if t is not asyncio.current_task()]
        for task in spawned:
            task.cancel()
        if spawned:
            await asyncio.gather(*spawned, return_exceptions=True)

        self._fail_pending("disconnected")
        try:
            await self.channel.disconnect()
        except _CHANNEL_ERRORS as e:
            logger.debug(f"[ConnectionMonitor:{self._name}] Disconnect error: {e}")
        self._transition(ConnectionState.DISCONNECTED)

    async def connect(self) -> bool:
        """Establish the link; concurrent callers share one attempt."""
        if self._state in (ConnectionState.CONNECTED, ConnectionState.DEGRADED):
            return True
        if self._connect_task is not None and not self._connect_task.done():
            self.total_joined_connects += 1
            return await asyncio.shield(self._connect_task)

        self._connect_task = asyncio.create_task(self._do_connect())
        return await asyncio.shield(self._connect_task)

    @property
    def reconnect_in_flight(self) -> bool:
        return self._connect_task is not None and not self._connect_task.done()

    async def _do_connect(self) -> bool:
        self.total_connect_attempts += 1
        if not self._transition(ConnectionState.CONNECTING):
            return False
        try:
            if not self.channel.is_connected:
                await self.channel.connect()
            await self.announce()
            await self._heartbeat_roundtrip()
        except _CHANNEL_ERRORS as e:
            logger.warning(f"[ConnectionMonitor:{self._name}] Connect failed: {e}")
            if self._state == ConnectionState.CONNECTING:
                self._open_circuit()
            return False

        self._failures.clear()
        if not self._transition(ConnectionState.CONNECTED):
            return False
        await self._flush_outbox()
        return True

    async def announce(self) -> None:
        """Tell the coordinator who this context is."""
        info = ContextInfo(
            context_id=self.identity.context_id,
            namespace_id=self.identity.namespace_id,
            kind=self.identity.kind,
        )
        await self.channel.send(HelloMessage(context=info).to_wire())

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"[ConnectionMonitor:{self._name}] Background task failed: {error}")

    def _on_channel_disconnect(self) -> None:
        if self._state not in (ConnectionState.CONNECTED, ConnectionState.DEGRADED):
            return
        logger.warning(f"[ConnectionMonitor:{self._name}] Peer closed the channel")
        self._fail_pending("peer disconnected")
        self._transition(ConnectionState.DISCONNECTED)
        if self._running and self.auto_reconnect:
            self._spawn(self.connect())

    # -------------------------------------------------------------------------
    # Heartbeats
    # -------------------------------------------------------------------------

    async def _heartbeat_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.config.interval)
                if self._state in (ConnectionState.CONNECTED, ConnectionState.DEGRADED):
                    await self.check_heartbeat()
                elif self._state == ConnectionState.DISCONNECTED and self.auto_reconnect:
                    await self.connect()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"[ConnectionMonitor:{self._name}] Heartbeat loop error: {e}")

    async def _heartbeat_roundtrip(self) -> None:
        self.total_heartbeats += 1
        ack = await self.request(HeartbeatMessage(), timeout=self.config.timeout)
        self.live_contexts = list(getattr(ack, "live_contexts", ()))

    async def check_heartbeat(self) -> bool:
        """Send one heartbeat and apply the outcome to the state machine."""
        try:
            await self._heartbeat_roundtrip()
        except (ChannelTimeoutError, ChannelDeadError) as e:
            self._record_failure(e)
            return False
        self._record_success()
        return True

    def _record_success(self) -> None:
        self.last_heartbeat_ok = self._clock()
        self._failures.clear()
        if self._state == ConnectionState.DEGRADED:
            self._transition(ConnectionState.CONNECTED)
            self._spawn(self._flush_outbox())

    def _record_failure(self, error: SyncError) -> None:
        now = self._clock()
        self.total_heartbeat_failures += 1
        self._failures.append(now)
        while self._failures and now - self._failures[0] > self.config.failure_window:
            self._failures.popleft()

        logger.warning(
            f"[ConnectionMonitor:{self._name}] Heartbeat failed "
            f"({len(self._failures)} consecutive): {error.reason}"
        )
        if self._state == ConnectionState.CONNECTED:
            self._transition(ConnectionState.DEGRADED)
        elif self._state == ConnectionState.DEGRADED:
            if len(self._failures) >= self.config.circuit_failure_threshold:
                self._open_circuit()

    def _open_circuit(self) -> None:
        if not self._transition(ConnectionState.CIRCUIT_OPEN):
            return
        self._fail_pending("circuit open")
        if self._probe_task is None or self._probe_task.done():
            self._probe_task = asyncio.create_task(self._probe_loop())

    # -------------------------------------------------------------------------
    # Probing
    # -------------------------------------------------------------------------

    async def _probe(self) -> bool:
        self.total_probes += 1
        try:
            if not self.channel.is_connected:
                await self.channel.connect()
            await self._heartbeat_roundtrip()
        except _CHANNEL_ERRORS as e:
            logger.debug(f"[ConnectionMonitor:{self._name}] Probe failed: {e}")
            return False
        return True

    async def _probe_loop(self) -> None:
        attempt = 0
        last = self._probe_backoff.max_attempts - 1
        try:
            while self._state == ConnectionState.CIRCUIT_OPEN:
                await asyncio.sleep(self._probe_backoff.delay_for(min(attempt, last)))
                if self._state != ConnectionState.CIRCUIT_OPEN:
                    break
                if await self._probe():
                    logger.info(
                        f"[ConnectionMonitor:{self._name}] Probe succeeded after "
                        f"{attempt + 1} attempt(s)"
                    )
                    await self.connect()
                attempt += 1
        except asyncio.CancelledError:
            pass

    # -------------------------------------------------------------------------
    # Messaging
    # -------------------------------------------------------------------------

    async def request(self, message, timeout: Optional[float] = None):
        """Send a message and wait for the reply carrying its correlation id."""
        key = getattr(message, "correlation_id", None) or getattr(message, "request_id")
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending[key] = future
        wait = timeout if timeout is not None else self.config.timeout
        try:
            await self.channel.send(message.to_wire())
            return await asyncio.wait_for(future, timeout=wait)
        except asyncio.TimeoutError:
            raise ChannelTimeoutError(
                f"no reply to {message.type} {key} within {wait}s",
                operation=message.type,
            ) from None
        finally:
            self._pending.pop(key, None)

    async def send(self, message: Dict[str, Any], critical: bool = False) -> bool:
        """Send now if the link is usable, otherwise buffer or fail.

        Returns True when the message went out, False when it was buffered.
        Critical messages are never buffered and raise ChannelDeadError.
        """
        if self.is_available:
            try:
                await self.channel.send(message)
                return True
            except _CHANNEL_ERRORS as e:
                if critical:
                    raise ChannelDeadError(
                        f"send failed: {e}", operation=str(message.get("type"))
                    ) from e
                logger.debug(f"[ConnectionMonitor:{self._name}] Send failed, buffering: {e}")
        elif critical:
            raise ChannelDeadError(
                f"link is {self._state.value}", operation=str(message.get("type"))
            )
        self.outbox.put(message)
        return False

    async def _flush_outbox(self) -> None:
        messages = self.outbox.drain()
        for index, message in enumerate(messages):
            try:
                await self.channel.send(message)
            except _CHANNEL_ERRORS as e:
                logger.warning(
                    f"[ConnectionMonitor:{self._name}] Outbox flush interrupted: {e}"
                )
                for remaining in messages[index:]:
                    self.outbox.put(remaining)
                return
        if messages:
            logger.info(
                f"[ConnectionMonitor:{self._name}] Flushed {len(messages)} buffered message(s)"
            )

    def _fail_pending(self, reason: str) -> None:
        for key, future in list(self._pending.items()):
            if not future.done():
                future.set_exception(ChannelDeadError(reason))
        self._pending.clear()

    def _on_channel_message(self, raw: Dict[str, Any]) -> None:
        try:
            message = parse_message(raw)
        except InvalidOperationError as e:
            logger.warning(f"[ConnectionMonitor:{self._name}] Dropping message: {e.reason}")
            return

        key = reply_key(message)
        if key is not None:
            future = self._pending.get(key)
            if future is not None and not future.done():
                future.set_result(message)
                return
            if message.type == "heartbeat_ack":
                logger.debug(f"[ConnectionMonitor:{self._name}] Late heartbeat ack {key}")
                return
        self._handlers.dispatch(message)

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        return {
            "context": self._name,
            "state": self._state.name,
            "consecutive_failures": len(self._failures),
            "pending_requests": len(self._pending),
            "live_contexts": self.live_contexts,
            "reconnect_in_flight": self.reconnect_in_flight,
            "background_tasks": len(self._tasks),
            "total_heartbeats": self.total_heartbeats,
            "total_heartbeat_failures": self.total_heartbeat_failures,
            "total_connect_attempts": self.total_connect_attempts,
            "total_joined_connects": self.total_joined_connects,
            "total_probes": self.total_probes,
            "outbox": self.outbox.get_stats(),
        }


__all__ = ["ConnectionHealthMonitor", "TRANSITIONS"]
