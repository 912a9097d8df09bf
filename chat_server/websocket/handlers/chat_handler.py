"""WebSocket chat handler.

Client -> server events:
    join_conversation(conversationId)
    leave_conversation(conversationId)
    send_message({conversationId, content, type?, replyToId?})
    start_typing(conversationId)
    stop_typing(conversationId)

Every handler runs on an authenticated connection; the handshake in
WebSocketHub refuses anything else. Failures are reported to the caller
only, as an `error({message})` event plus a `{"success": false}` ack.
"""
import logging
from typing import Any, Dict, Optional

from flask import request
from flask_socketio import emit

from chat_server.exception.ChatError import ChatError, TransportError
from chat_server.websocket.event_emitter import EventEmitter, conversation_room

logger = logging.getLogger(__name__)


def _conversation_id(data) -> Optional[str]:
    """Events accept either a bare id or {"conversationId": id}."""
    if isinstance(data, dict):
        data = data.get('conversationId')
    if isinstance(data, str) and data:
        return data
    return None


class ChatHandler:
    """Handler for WebSocket chat events."""

    def __init__(self, socketio, hub, rooms, service, broadcaster):
        self.socketio = socketio
        self.hub = hub
        self.rooms = rooms
        self.service = service
        self.broadcaster = broadcaster

    def _fail(self, message: str) -> Dict[str, Any]:
        emit(EventEmitter.ERROR, {'message': message})
        return {'success': False, 'error': message}

    def register_handlers(self):
        """Register all chat WebSocket event handlers."""

        @self.socketio.on(EventEmitter.JOIN_CONVERSATION)
        def handle_join_conversation(data=None):
            sid = request.sid
            user = self.hub.get_user(sid)
            conversation_id = _conversation_id(data)
            if not user or not conversation_id:
                return {'success': True, 'joined': False}
            try:
                joined = self.rooms.join_conversation(sid, user['id'], conversation_id)
            except ChatError as e:
                logger.error("join_conversation %s failed for %s: %s", conversation_id, user['id'], e.message)
                return self._fail(e.message)
            return {'success': True, 'joined': joined}

        @self.socketio.on(EventEmitter.LEAVE_CONVERSATION)
        def handle_leave_conversation(data=None):
            self.rooms.leave_conversation(request.sid, _conversation_id(data))
            return {'success': True}

        @self.socketio.on(EventEmitter.SEND_MESSAGE)
        def handle_send_message(data=None):
            user = self.hub.get_user(request.sid)
            if not user:
                return self._fail('Not authenticated')
            if not isinstance(data, dict):
                return self._fail('Invalid message payload')
            try:
                message, _ = self.service.send_message(
                    user['id'],
                    data.get('conversationId'),
                    data.get('content'),
                    message_type=data.get('type'),
                    reply_to_id=data.get('replyToId'),
                )
            except ChatError as e:
                logger.warning("send_message rejected for user %s: %s", user['id'], e.message)
                return self._fail(e.message)
            except Exception:
                logger.exception("send_message failed for user %s", user['id'])
                return self._fail('Failed to send message')
            return {'success': True, 'message': message}

        @self.socketio.on(EventEmitter.START_TYPING)
        def handle_start_typing(data=None):
            user = self.hub.get_user(request.sid)
            conversation_id = _conversation_id(data)
            if user and conversation_id:
                self._relay_typing(EventEmitter.USER_TYPING, conversation_id, {
                    'userId': user['id'],
                    'username': user.get('username'),
                    'conversationId': conversation_id,
                })

        @self.socketio.on(EventEmitter.STOP_TYPING)
        def handle_stop_typing(data=None):
            user = self.hub.get_user(request.sid)
            conversation_id = _conversation_id(data)
            if user and conversation_id:
                self._relay_typing(EventEmitter.USER_STOPPED_TYPING, conversation_id, {
                    'userId': user['id'],
                    'conversationId': conversation_id,
                })

    def _relay_typing(self, event: str, conversation_id: str, payload: Dict[str, Any]):
        sid = request.sid
        # Only connections already in the room may signal into it
        if not self.rooms.is_joined(sid, conversation_id):
            return
        try:
            self.broadcaster.emit_to_room(conversation_room(conversation_id), event, payload, skip_sid=sid)
            logger.debug("Relayed %s in %s from %s", event, conversation_id, sid)
        except TransportError as e:
            logger.error("Typing relay %s in %s failed: %s", event, conversation_id, e)
