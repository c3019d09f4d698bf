"""
Coordinator Hub
===============

The long-lived coordinator context. Page and panel contexts connect to it
over a message channel; the hub

- answers heartbeats (correlation id echoed back, live contexts attached)
- tracks which contexts are alive from ``hello`` and disconnects
- routes panel operation requests to the context that owns the entity and
  relays the ``operation_result`` back by request id; a route whose target
  stays silent past the write deadline is failed back to the source as a
  timeout
- runs adoption requests itself when the owner is gone
- removes the entities of a departed context after a grace period, through
  its own write coordinator as ``cleanup`` intents

Peers are anything implementing the channel interface (``send``,
``on_message``, ``on_disconnect``): the server end of a loopback pair or a
websocket connection accepted by the coordinator server.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .core.config import CoordinatorConfig, SyncEngineConfig
from .core.errors import InvalidOperationError, SyncError
from .core.models import ContextIdentity, ContextKind, WriteFailureKind, WriteResult
from .core.operations import (
    AdoptOperation,
    ContextClosedMessage,
    ContextInfo,
    HeartbeatAckMessage,
    HeartbeatMessage,
    HelloMessage,
    OperationMessage,
    OperationResultMessage,
    parse_message,
)
from .core.state_store import PersistenceBackend
from .core.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

COORDINATOR_CONTEXT_ID = "coordinator"


@dataclass
class Peer:
    peer_id: int
    channel: Any
    context: Optional[ContextInfo] = None
    connected_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    messages_received: int = 0

    @property
    def context_id(self) -> Optional[str]:
        return self.context.context_id if self.context else None


@dataclass
class _Route:
    request_id: str
    source: Peer
    target_context_id: Optional[str]
    operation: str
    entity_id: str
    source_context_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)


class CoordinatorHub:
    """Message hub plus the coordinator's own sync engine."""

    def __init__(
        self,
        backend: PersistenceBackend,
        config: Optional[CoordinatorConfig] = None,
        engine_config: Optional[SyncEngineConfig] = None,
        context_id: str = COORDINATOR_CONTEXT_ID,
    ):
        self.config = config or CoordinatorConfig()
        self.identity = ContextIdentity(context_id, None, ContextKind.COORDINATOR)
        self.engine = SyncEngine(self.identity, backend, config=engine_config)

        self._peer_ids = itertools.count(1)
        self._peers: Dict[int, Peer] = {}
        self._routes: Dict[str, _Route] = {}
        self._cleanup_timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._reaper_task: Optional[asyncio.Task] = None
        self._running = False

        engine_config = self.engine.config
        self.route_timeout = (
            engine_config.writes.write_timeout + engine_config.heartbeat.timeout
        )

        self.total_heartbeats = 0
        self.total_routed = 0
        self.total_cleanups = 0
        self.total_invalid = 0
        self.total_expired_routes = 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        await self.engine.start(connect=False)
        self._running = True
        self._reaper_task = asyncio.create_task(self._reaper_loop())
        logger.info(f"[CoordinatorHub:{self.identity.context_id}] Started")

    async def stop(self) -> None:
        self._running = False
        if self._reaper_task and not self._reaper_task.done():
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
        self._reaper_task = None
        for timer in self._cleanup_timers.values():
            timer.cancel()
        self._cleanup_timers.clear()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.engine.close()
        logger.info(f"[CoordinatorHub:{self.identity.context_id}] Stopped")

    # -------------------------------------------------------------------------
    # Peers
    # -------------------------------------------------------------------------

    def attach(self, channel: Any) -> Peer:
        """Start serving one connected channel."""
        peer = Peer(peer_id=next(self._peer_ids), channel=channel)
        self._peers[peer.peer_id] = peer
        channel.on_message(lambda raw, peer=peer: self.handle_message(peer, raw))
        channel.on_disconnect(lambda peer=peer: self.detach(peer))
        logger.debug(f"[CoordinatorHub] Peer {peer.peer_id} attached")
        return peer

    def detach(self, peer: Peer) -> None:
        if self._peers.pop(peer.peer_id, None) is None:
            return
        context_id = peer.context_id
        logger.info(
            f"[CoordinatorHub] Peer {peer.peer_id} ({context_id or 'anonymous'}) detached"
        )
        for request_id, route in list(self._routes.items()):
            if route.source is peer:
                self._routes.pop(request_id, None)
        if context_id and context_id not in self.live_contexts:
            self._schedule_cleanup(context_id)

    @property
    def live_contexts(self) -> List[str]:
        return sorted(
            {peer.context_id for peer in self._peers.values() if peer.context_id}
            | {self.identity.context_id}
        )

    def reap_idle_peers(self, max_idle: Optional[float] = None) -> List[Peer]:
        """Detach peers silent for longer than ``max_idle`` seconds.

        A suspended host never reports its disconnect; silence is the only
        signal that its context is gone.
        """
        limit = max_idle if max_idle is not None else self.config.peer_idle_timeout
        now = time.time()
        idle = [p for p in self._peers.values() if now - p.last_seen > limit]
        for peer in idle:
            logger.warning(
                f"[CoordinatorHub] Peer {peer.peer_id} ({peer.context_id}) silent for "
                f"{now - peer.last_seen:.1f}s, detaching"
            )
            self.detach(peer)
        return idle

    def expire_routes(self, max_age: Optional[float] = None) -> List[_Route]:
        """Drop routes whose target never replied and fail them back to the source."""
        limit = max_age if max_age is not None else self.route_timeout
        now = time.time()
        expired = [r for r in self._routes.values() if now - r.created_at > limit]
        for route in expired:
            self._routes.pop(route.request_id, None)
            self.total_expired_routes += 1
            logger.warning(
                f"[CoordinatorHub] No result from {route.target_context_id} for "
                f"{route.operation} {route.entity_id} after {now - route.created_at:.1f}s"
            )
            result = WriteResult.failed(
                route.request_id,
                route.operation,
                WriteFailureKind.TIMEOUT,
                f"owner {route.target_context_id} did not answer within {limit}s",
                entity_id=route.entity_id,
            )
            reply = OperationResultMessage(
                request_id=route.request_id,
                target_context_id=route.source_context_id,
                result=result.to_dict(),
            )
            task = asyncio.ensure_future(self._send(route.source, reply))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return expired

    async def _reaper_loop(self) -> None:
        intervals = [self.route_timeout / 2]
        if self.config.peer_idle_timeout > 0:
            intervals.append(self.config.peer_idle_timeout / 3)
        interval = max(min(intervals), 0.01)
        while self._running:
            try:
                await asyncio.sleep(interval)
                if self.config.peer_idle_timeout > 0:
                    self.reap_idle_peers()
                self.expire_routes()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"[CoordinatorHub] Reaper error: {e}")

    def _peer_for(self, context_id: str) -> Optional[Peer]:
        for peer in self._peers.values():
            if peer.context_id == context_id:
                return peer
        return None

    async def _send(self, peer: Peer, message) -> bool:
        try:
            await peer.channel.send(message.to_wire())
            return True
        except (ConnectionError, OSError, SyncError) as e:
            logger.warning(f"[CoordinatorHub] Send to peer {peer.peer_id} failed: {e}")
            return False

    # -------------------------------------------------------------------------
    # Orphan cleanup
    # -------------------------------------------------------------------------

    def _schedule_cleanup(self, context_id: str) -> None:
        if not self._running or context_id in self._cleanup_timers:
            return
        loop = asyncio.get_running_loop()
        self._cleanup_timers[context_id] = loop.call_later(
            self.config.orphan_grace_seconds, self._run_cleanup, context_id
        )
        logger.debug(
            f"[CoordinatorHub] Cleanup for {context_id} in "
            f"{self.config.orphan_grace_seconds}s"
        )

    def _cancel_cleanup(self, context_id: str) -> None:
        timer = self._cleanup_timers.pop(context_id, None)
        if timer is not None:
            timer.cancel()
            logger.debug(f"[CoordinatorHub] {context_id} came back, cleanup cancelled")

    def _run_cleanup(self, context_id: str) -> None:
        self._cleanup_timers.pop(context_id, None)
        if context_id in self.live_contexts:
            return
        task = asyncio.ensure_future(self.cleanup_context(context_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def cleanup_context(self, context_id: str) -> List[WriteResult]:
        results = await self.engine.cleanup_orphans(self.live_contexts, owners=[context_id])
        self.total_cleanups += sum(1 for r in results if r.succeeded)
        return results

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    async def handle_message(self, peer: Peer, raw: Dict[str, Any]) -> None:
        peer.last_seen = time.time()
        peer.messages_received += 1
        if peer.peer_id not in self._peers:
            # Reaped while silent, but the channel is still delivering.
            self._peers[peer.peer_id] = peer
            if peer.context_id:
                self._cancel_cleanup(peer.context_id)
        try:
            message = parse_message(raw)
        except InvalidOperationError as e:
            self.total_invalid += 1
            logger.warning(f"[CoordinatorHub] Invalid message from peer {peer.peer_id}: {e.reason}")
            return

        if isinstance(message, HeartbeatMessage):
            self.total_heartbeats += 1
            ack = HeartbeatAckMessage(
                correlation_id=message.correlation_id,
                live_contexts=self.live_contexts,
            )
            await self._send(peer, ack)
        elif isinstance(message, HelloMessage):
            self._on_hello(peer, message.context)
        elif isinstance(message, OperationMessage):
            await self._route_operation(peer, message)
        elif isinstance(message, OperationResultMessage):
            await self._relay_result(message)
        elif isinstance(message, ContextClosedMessage):
            if peer.context_id == message.context_id:
                peer.context = None
            if message.context_id not in self.live_contexts:
                self._schedule_cleanup(message.context_id)

    def _on_hello(self, peer: Peer, context: ContextInfo) -> None:
        previous = peer.context_id
        peer.context = context
        if context.context_id:
            self._cancel_cleanup(context.context_id)
        logger.info(
            f"[CoordinatorHub] Peer {peer.peer_id} is {context.kind.value}:"
            f"{context.context_id or 'unresolved'}"
        )
        if previous and previous != context.context_id and previous not in self.live_contexts:
            self._schedule_cleanup(previous)

    async def _route_operation(self, source: Peer, message: OperationMessage) -> None:
        operation = message.operation
        target_id = message.target_context_id
        if target_id is None:
            entity = self.engine.snapshot.get(operation.entity_id) if self.engine.snapshot is not None else None
            target_id = entity.owner_context_id if entity else None

        target = self._peer_for(target_id) if target_id else None
        if target is not None and target is not source:
            self._routes[message.request_id] = _Route(
                message.request_id,
                source,
                target_id,
                operation=operation.op,
                entity_id=operation.entity_id,
                source_context_id=message.source_context_id,
            )
            forwarded = message.model_copy(update={"target_context_id": target_id})
            if await self._send(target, forwarded):
                self.total_routed += 1
                return
            self._routes.pop(message.request_id, None)

        if isinstance(operation, AdoptOperation) or target_id == self.identity.context_id:
            result = await self.engine.submit(operation)
        else:
            result = WriteResult.failed(
                message.request_id,
                operation.op,
                WriteFailureKind.NOT_FOUND,
                f"owner {target_id or 'unknown'} of {operation.entity_id} is not connected",
                entity_id=operation.entity_id,
            )
        reply = OperationResultMessage(
            request_id=message.request_id,
            target_context_id=message.source_context_id,
            result=result.to_dict(),
        )
        await self._send(source, reply)

    async def _relay_result(self, message: OperationResultMessage) -> None:
        route = self._routes.pop(message.request_id, None)
        if route is None:
            logger.debug(f"[CoordinatorHub] No route for result {message.request_id}")
            return
        await self._send(route.source, message)

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        return {
            "peers": len(self._peers),
            "live_contexts": self.live_contexts,
            "pending_routes": len(self._routes),
            "total_expired_routes": self.total_expired_routes,
            "pending_cleanups": sorted(self._cleanup_timers),
            "total_heartbeats": self.total_heartbeats,
            "total_routed": self.total_routed,
            "total_cleanups": self.total_cleanups,
            "total_invalid": self.total_invalid,
            "engine": self.engine.get_stats(),
        }


__all__ = ["CoordinatorHub", "Peer", "COORDINATOR_CONTEXT_ID"]
