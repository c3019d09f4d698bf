"""Network transports for the coordinator link."""

from .websocket_channel import WebSocketChannel

__all__ = ["WebSocketChannel"]
