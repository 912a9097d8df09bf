"""Room broadcast for real-time chat events.

Everything that pushes an event to clients goes through a Broadcaster, so
the fanout logic never talks to Socket.IO directly. The Socket.IO
implementation also covers multi-process deployments: when the server is
created with a message queue, `SocketIO.emit` publishes through it.

Usage:
    broadcaster = SocketIOBroadcaster(socketio)
    broadcaster.emit_to_room(conversation_room(cid), EventEmitter.MESSAGE_RECEIVED, data)
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Set

from chat_server.exception.ChatError import TransportError

logger = logging.getLogger(__name__)

NAMESPACE = '/'


def conversation_room(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def user_room(user_id: str) -> str:
    return f"user:{user_id}"


class EventEmitter:
    """Event name constants shared by the hub, handlers and routes."""

    # Client -> server
    JOIN_CONVERSATION = 'join_conversation'
    LEAVE_CONVERSATION = 'leave_conversation'
    SEND_MESSAGE = 'send_message'
    START_TYPING = 'start_typing'
    STOP_TYPING = 'stop_typing'

    # Server -> client
    MESSAGE_RECEIVED = 'message_received'
    MESSAGE_UPDATED = 'message_updated'
    MESSAGE_DELETED = 'message_deleted'
    CONVERSATION_UPDATED = 'conversation_updated'
    USER_TYPING = 'user_typing'
    USER_STOPPED_TYPING = 'user_stopped_typing'
    PRESENCE_UPDATED = 'presence_updated'
    ERROR = 'error'


class Broadcaster(ABC):
    """Addressing layer over live connections."""

    @abstractmethod
    def emit_to_room(self, room: str, event: str, data: Dict[str, Any],
                     skip_sid: Optional[str] = None) -> None:
        """Deliver `event` to every connection in `room` except `skip_sid`.

        Raises TransportError when the event could not be handed off.
        """

    @abstractmethod
    def add_to_room(self, sid: str, room: str) -> None:
        ...

    @abstractmethod
    def remove_from_room(self, sid: str, room: str) -> None:
        ...

    @abstractmethod
    def rooms_of(self, sid: str) -> Set[str]:
        ...


class SocketIOBroadcaster(Broadcaster):
    def __init__(self, socketio, namespace: str = NAMESPACE):
        self.socketio = socketio
        self.namespace = namespace

    def emit_to_room(self, room, event, data, skip_sid=None):
        try:
            self.socketio.emit(event, data, to=room, skip_sid=skip_sid, namespace=self.namespace)
        except Exception as e:
            raise TransportError(f"Failed to emit {event} to {room}: {e}") from e
        logger.debug("Emitted '%s' to room %s", event, room)

    def add_to_room(self, sid, room):
        self.socketio.server.enter_room(sid, room, namespace=self.namespace)

    def remove_from_room(self, sid, room):
        self.socketio.server.leave_room(sid, room, namespace=self.namespace)

    def rooms_of(self, sid):
        try:
            return set(self.socketio.server.rooms(sid, namespace=self.namespace))
        except (KeyError, TypeError):
            return set()
