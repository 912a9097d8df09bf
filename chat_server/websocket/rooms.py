"""Conversation membership -> Socket.IO room membership."""
import logging
from typing import Iterable, List

from chat_server.websocket.event_emitter import conversation_room, user_room

logger = logging.getLogger(__name__)


class RoomMembershipManager:

    def __init__(self, store, broadcaster):
        self.store = store
        self.broadcaster = broadcaster

    def join_initial_rooms(self, sid: str, user_id: str) -> List[str]:
        """Join the private user room, then one room per conversation of the user.

        Returns the conversation ids joined. Store errors propagate after the
        private room has been joined.
        """
        self.broadcaster.add_to_room(sid, user_room(user_id))
        conversation_ids = self.store.find_conversation_ids_for_user(user_id)
        for conversation_id in conversation_ids:
            self.broadcaster.add_to_room(sid, conversation_room(conversation_id))
        logger.info("Connection %s of user %s joined %d conversation rooms", sid, user_id, len(conversation_ids))
        return conversation_ids

    def join_conversation(self, sid: str, user_id: str, conversation_id) -> bool:
        """Join a conversation room after re-checking membership. Non-members are ignored."""
        if not conversation_id or not isinstance(conversation_id, str):
            return False
        if not self.store.is_member(user_id, conversation_id):
            logger.debug("User %s is not a member of %s, join ignored", user_id, conversation_id)
            return False
        self.broadcaster.add_to_room(sid, conversation_room(conversation_id))
        logger.debug("Connection %s joined %s", sid, conversation_room(conversation_id))
        return True

    def leave_conversation(self, sid: str, conversation_id) -> None:
        if not conversation_id or not isinstance(conversation_id, str):
            return
        room = conversation_room(conversation_id)
        if room in self.broadcaster.rooms_of(sid):
            self.broadcaster.remove_from_room(sid, room)
            logger.debug("Connection %s left %s", sid, room)

    def is_joined(self, sid: str, conversation_id: str) -> bool:
        return conversation_room(conversation_id) in self.broadcaster.rooms_of(sid)

    def subscribe_users(self, user_ids: Iterable[str], conversation_id: str, sessions) -> int:
        """Join every live connection of the given users to a (new) conversation room.

        `sessions` is a callable returning the live sids of a user.
        """
        room = conversation_room(conversation_id)
        joined = 0
        for user_id in user_ids:
            for sid in sessions(user_id):
                self.broadcaster.add_to_room(sid, room)
                joined += 1
        logger.debug("Subscribed %d live connections to %s", joined, room)
        return joined

    def unsubscribe_users(self, user_ids: Iterable[str], conversation_id: str, sessions) -> int:
        """Take every live connection of the given users out of a conversation room."""
        left = 0
        for user_id in user_ids:
            for sid in sessions(user_id):
                if self.is_joined(sid, conversation_id):
                    self.broadcaster.remove_from_room(sid, conversation_room(conversation_id))
                    left += 1
        logger.debug("Unsubscribed %d live connections from %s", left, conversation_room(conversation_id))
        return left
