"""WebSocket module for real-time chat.

This module provides:
- WebSocketHub: handshake authentication and connection lifecycle
- PresenceTracker: online state by live connection count
- RoomMembershipManager: conversation and user rooms
- Broadcaster: room fanout behind a swappable interface
"""

from chat_server.websocket.event_emitter import EventEmitter, Broadcaster, SocketIOBroadcaster
from chat_server.websocket.hub import WebSocketHub
from chat_server.websocket.presence import PresenceTracker
from chat_server.websocket.rooms import RoomMembershipManager

__all__ = [
    'EventEmitter', 'Broadcaster', 'SocketIOBroadcaster',
    'WebSocketHub', 'PresenceTracker', 'RoomMembershipManager',
]
