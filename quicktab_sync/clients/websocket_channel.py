"""
WebSocket message channel (aiohttp client).

Implements the message channel interface over one websocket to the
coordinator server. Incoming text frames are decoded as JSON and handed to
``on_message`` handlers; when the socket closes without ``disconnect()``
having been called, ``on_disconnect`` handlers run.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from ..core.errors import ChannelDeadError
from ..core.message_channel import DisconnectHandler, HandlerSet, MessageHandler

logger = logging.getLogger(__name__)


class WebSocketChannel:
    """Client end of the coordinator link."""

    def __init__(
        self,
        url: str,
        connect_timeout: float = 5.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.url = url
        self.connect_timeout = connect_timeout
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False

        self._messages = HandlerSet(f"WebSocketChannel:{url}")
        self._disconnects = HandlerSet(f"WebSocketChannel:{url}")

        self.messages_sent = 0
        self.messages_received = 0
        self.connect_attempts = 0

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def connect(self) -> None:
        if self.is_connected:
            return
        self.connect_attempts += 1
        self._closing = False
        session = await self._get_session()
        try:
            self._ws = await asyncio.wait_for(
                session.ws_connect(self.url, autoping=True),
                timeout=self.connect_timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ConnectionError(f"websocket connect to {self.url} failed: {e}") from e

        self._reader = asyncio.create_task(self._read_loop(self._ws))
        logger.info(f"[WebSocketChannel] Connected to {self.url}")

    async def disconnect(self) -> None:
        self._closing = True
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        self._reader = None
        self._ws = None
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
            self._session = None

    async def send(self, message: Dict[str, Any]) -> None:
        if not self.is_connected:
            raise ChannelDeadError(
                f"websocket to {self.url} is not open", operation=str(message.get("type"))
            )
        try:
            await self._ws.send_json(message)
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as e:
            raise ChannelDeadError(
                f"websocket send failed: {e}", operation=str(message.get("type"))
            ) from e
        self.messages_sent += 1

    def on_message(self, handler: MessageHandler) -> None:
        self._messages.add(handler)

    def on_disconnect(self, handler: DisconnectHandler) -> None:
        self._disconnects.add(handler)

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except json.JSONDecodeError:
                        logger.debug("[WebSocketChannel] Dropping non-JSON frame")
                        continue
                    self.messages_received += 1
                    self._messages.dispatch(data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.debug(f"[WebSocketChannel] Error: {ws.exception()}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"[WebSocketChannel] Connection error: {e}")
        finally:
            if not self._closing:
                logger.warning(f"[WebSocketChannel] Connection to {self.url} lost")
                self._disconnects.dispatch()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "connected": self.is_connected,
            "messages_sent": self.messages_sent,
            "messages_received": self.messages_received,
            "connect_attempts": self.connect_attempts,
        }


__all__ = ["WebSocketChannel"]
