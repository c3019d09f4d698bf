#!/usr/bin/env python3
"""
Quick Tab Coordinator Server
============================

Runs the coordinator hub behind an aiohttp web application.

Endpoints:
    GET /ws       - websocket link for page and panel contexts
    GET /health   - liveness check with current revision and live contexts
    GET /stats    - full hub statistics

Usage:
    python -m quicktab_sync.coordinator_server --port 8765 --state-dir ./state
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from aiohttp import web

from .coordinator_hub import CoordinatorHub
from .core.config import CoordinatorConfig, SyncEngineConfig
from .core.errors import ChannelDeadError
from .core.message_channel import DisconnectHandler, HandlerSet, MessageHandler
from .core.state_store import FileBackend
from .logging_config import configure_logging

logger = logging.getLogger(__name__)

HUB_KEY = web.AppKey("hub", CoordinatorHub)


class WebSocketPeerChannel:
    """Server side of one accepted websocket, as seen by the hub."""

    def __init__(self, ws: web.WebSocketResponse, remote: Optional[str] = None):
        self.ws = ws
        self.remote = remote or "?"
        self._messages = HandlerSet(f"WebSocketPeer:{self.remote}")
        self._disconnects = HandlerSet(f"WebSocketPeer:{self.remote}")

    @property
    def is_connected(self) -> bool:
        return not self.ws.closed

    async def connect(self) -> None:
        return None

    async def disconnect(self) -> None:
        if not self.ws.closed:
            await self.ws.close()

    async def send(self, message: Dict[str, Any]) -> None:
        if self.ws.closed:
            raise ChannelDeadError(
                f"peer {self.remote} is gone", operation=str(message.get("type"))
            )
        try:
            await self.ws.send_json(message)
        except (ConnectionResetError, RuntimeError) as e:
            raise ChannelDeadError(
                f"send to {self.remote} failed: {e}", operation=str(message.get("type"))
            ) from e

    def on_message(self, handler: MessageHandler) -> None:
        self._messages.add(handler)

    def on_disconnect(self, handler: DisconnectHandler) -> None:
        self._disconnects.add(handler)

    async def serve(self) -> None:
        """Feed frames to the hub until the socket closes."""
        try:
            async for msg in self.ws:
                if msg.type == web.WSMsgType.TEXT:
                    try:
                        data = msg.json()
                    except ValueError:
                        logger.debug(f"[WebSocket] Non-JSON frame from {self.remote}")
                        continue
                    await self._messages.dispatch_now(data)
                elif msg.type == web.WSMsgType.ERROR:
                    logger.debug(f"[WebSocket] Error: {self.ws.exception()}")
        finally:
            await self._disconnects.dispatch_now()


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    hub = request.app[HUB_KEY]
    ws = web.WebSocketResponse()
    await ws.prepare(request)

    channel = WebSocketPeerChannel(ws, request.remote)
    peer = hub.attach(channel)
    logger.info(f"[WebSocket] Peer {peer.peer_id} connected from {channel.remote}")
    try:
        await channel.serve()
    except Exception as e:
        logger.debug(f"[WebSocket] Connection error: {e}")
    logger.info(f"[WebSocket] Peer {peer.peer_id} disconnected")
    return ws


async def health_check(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    snapshot = hub.engine.snapshot
    return web.json_response({
        "status": "ok",
        "revision": snapshot.revision if snapshot is not None else None,
        "entities": len(snapshot) if snapshot is not None else 0,
        "live_contexts": hub.live_contexts,
        "needs_recovery": hub.engine.store.needs_recovery,
    })


async def get_stats(request: web.Request) -> web.Response:
    return web.json_response(request.app[HUB_KEY].get_stats())


async def _start_hub(app: web.Application) -> None:
    await app[HUB_KEY].start()


async def _stop_hub(app: web.Application) -> None:
    await app[HUB_KEY].stop()


def create_app(hub: CoordinatorHub) -> web.Application:
    """Create the application; the hub starts and stops with it."""
    app = web.Application()
    app[HUB_KEY] = hub
    app.router.add_get('/ws', websocket_handler)
    app.router.add_get('/health', health_check)
    app.router.add_get('/stats', get_stats)
    app.on_startup.append(_start_hub)
    app.on_cleanup.append(_stop_hub)
    return app


async def start_server(
    hub: CoordinatorHub, host: str, port: int
) -> web.AppRunner:
    app = create_app(hub)
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"{'='*60}")
    logger.info(f" Quick Tab Coordinator")
    logger.info(f"{'='*60}")
    logger.info(f" WebSocket:   ws://{host}:{port}/ws")
    logger.info(f" Health:      http://{host}:{port}/health")
    logger.info(f" Storage key: {hub.engine.store.key}")
    logger.info(f"{'='*60}")
    return runner


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    defaults = CoordinatorConfig()
    parser = argparse.ArgumentParser(description="Quick tab coordinator server")
    parser.add_argument("--host", default=defaults.host)
    parser.add_argument("--port", type=int, default=defaults.port)
    parser.add_argument("--state-dir", type=Path, default=defaults.state_dir)
    parser.add_argument("--log-level", default=None)
    return parser.parse_args(argv)


async def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.log_level)

    config = CoordinatorConfig(host=args.host, port=args.port, state_dir=args.state_dir)
    backend = FileBackend(config.state_dir)
    hub = CoordinatorHub(backend, config=config, engine_config=SyncEngineConfig())

    runner = await start_server(hub, config.host, config.port)
    await backend.start()
    try:
        await asyncio.Event().wait()
    finally:
        await backend.stop()
        await runner.cleanup()
        logger.info("Server stopped")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    run()
