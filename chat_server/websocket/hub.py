"""Socket.IO connection lifecycle.

Authenticates the handshake, keeps `sid -> user` for the life of each
connection, drives the presence tracker and auto-joins rooms. Chat events
are registered by ChatHandler.
"""
import logging
import threading
from typing import Dict, Any, Optional, List

from flask import Flask, request
from flask_socketio import SocketIO, emit, ConnectionRefusedError

from chat_server.exception.AuthenticationError import AuthenticationError
from chat_server.exception.ChatError import StoreUnavailable, TransportError
from chat_server.utils.time_utils import utc_now, to_iso
from chat_server.websocket.event_emitter import EventEmitter, conversation_room

logger = logging.getLogger(__name__)


def _extract_token(auth) -> Optional[str]:
    token = None
    if auth and isinstance(auth, dict):
        token = auth.get('token')
    if not token:
        header = request.headers.get('Authorization', '')
        if header.startswith('Bearer '):
            token = header.split(' ', 1)[1].strip()
    if not token:
        token = request.args.get('token')
    return token or None


class WebSocketHub:
    """Owns the live connections of one Socket.IO server."""

    def __init__(self, socketio: SocketIO, authenticator, presence, rooms, broadcaster, store):
        self.socketio = socketio
        self.authenticator = authenticator
        self.presence = presence
        self.rooms = rooms
        self.broadcaster = broadcaster
        self.store = store
        self.connected_users: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._chat_handler = None

    def init_app(self, app: Flask, service):
        from chat_server.websocket.handlers.chat_handler import ChatHandler

        self.app = app
        self._register_handlers()
        self._chat_handler = ChatHandler(self.socketio, self, self.rooms, service, self.broadcaster)
        self._chat_handler.register_handlers()
        logger.debug("WS_HUB: initialized (async_mode=%s)", getattr(self.socketio, 'async_mode', '?'))

    def get_user(self, sid: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            info = self.connected_users.get(sid)
        return info['user'] if info else None

    def sessions_for(self, user_id: str):
        return self.presence.sids_for(user_id)

    def _register_handlers(self):

        @self.socketio.on_error_default
        def default_error_handler(e):
            logger.exception("WS error on sid=%s: %s", getattr(request, 'sid', None), e)

        @self.socketio.on('connect')
        def handle_connect(auth=None):
            sid = request.sid
            try:
                user = self.authenticator.authenticate(_extract_token(auth))
            except AuthenticationError as e:
                logger.warning("WS handshake rejected: sid=%s, reason=%s", sid, e.message)
                raise ConnectionRefusedError(e.message)

            user_id = user['id']
            # The connection map and the presence count change together, so a
            # disconnect arriving while rooms load always sees a tracked sid.
            with self._lock:
                self.connected_users[sid] = {'user': user, 'connected_at': utc_now()}
                became_online = self.presence.track(user_id, sid)
            logger.info("WS connected: user=%s, sid=%s", user_id, sid)

            conversation_ids = self._join_initial_rooms(sid, user_id)
            if not self.is_connected(sid):
                logger.info("WS sid=%s of user %s closed during connect", sid, user_id)
                return False
            if became_online:
                change = self.presence.sync(user_id)
                if change:
                    self._broadcast_presence(change, conversation_ids)
            return True

        @self.socketio.on('disconnect')
        def handle_disconnect(reason=None):
            self.connection_lost(request.sid, reason)

    def is_connected(self, sid: str) -> bool:
        with self._lock:
            return sid in self.connected_users

    def connection_lost(self, sid: str, reason=None):
        """Forget a connection and, on the user's last one, mark them offline."""
        with self._lock:
            info = self.connected_users.pop(sid, None)
            if not info:
                return
            user_id = info['user']['id']
            became_offline = self.presence.untrack(user_id, sid)
        logger.info("WS disconnected: user=%s, sid=%s, reason=%s", user_id, sid, reason)
        if not became_offline:
            return
        change = self.presence.sync(user_id)
        if change:
            try:
                conversation_ids = self.store.find_conversation_ids_for_user(user_id)
            except StoreUnavailable:
                logger.error("Could not load conversations of %s for presence broadcast", user_id)
                return
            self._broadcast_presence(change, conversation_ids)

    def _join_initial_rooms(self, sid: str, user_id: str) -> List[str]:
        try:
            return self.rooms.join_initial_rooms(sid, user_id)
        except StoreUnavailable:
            logger.error("Failed to load conversations for user %s on connect", user_id)
            emit(EventEmitter.ERROR, {'message': 'Failed to load conversations'})
            return []

    def _broadcast_presence(self, change: Dict[str, Any], conversation_ids: List[str]):
        payload = {
            'userId': change['userId'],
            'isOnline': change['isOnline'],
            'lastSeen': to_iso(change['lastSeen']),
        }
        for conversation_id in conversation_ids:
            try:
                self.broadcaster.emit_to_room(conversation_room(conversation_id), EventEmitter.PRESENCE_UPDATED, payload)
            except TransportError as e:
                logger.error("Presence broadcast to %s failed: %s", conversation_id, e)


def init_websocket_hub(app: Flask, socketio: SocketIO, service, **components) -> WebSocketHub:
    """Create the hub for `socketio` and register all Socket.IO handlers."""
    hub = WebSocketHub(socketio, **components)
    hub.init_app(app, service)
    return hub
