"""WebSocket event handlers package."""

from chat_server.websocket.handlers.chat_handler import ChatHandler

__all__ = ['ChatHandler']
