"""Messaging service layer.

One code path turns a send-intent into a persisted, broadcast message; the
Socket.IO `send_message` handler and the REST endpoints both call
`MessagingService.send_message` and only differ in how they report the
result. Edits, soft deletes, conversation creation and group membership
changes live here too so that every re-broadcast goes through the same
Broadcaster.
"""
import logging
from datetime import timedelta
from typing import Optional, Dict, Any, List, Tuple, Callable, Iterable

from flask import current_app

from config import config as default_config
from chat_server.exception.ChatError import (
    NotFoundOrUnauthorized, ForbiddenError, ValidationError, StoreUnavailable, TransportError
)
from chat_server.messaging.models import (
    Message, Conversation, MessageType, sender_projection, member_projection
)
from chat_server.utils.generator import generate_message_id, generate_conversation_id
from chat_server.utils.locks import KeyedLock
from chat_server.utils.time_utils import utc_now
from chat_server.websocket.event_emitter import EventEmitter, conversation_room

logger = logging.getLogger(__name__)

CLIENT_MESSAGE_TYPES = (MessageType.TEXT, MessageType.IMAGE, MessageType.FILE)
GROUP_NAME_MAX_LENGTH = 100


class MessagingService:
    """High-level messaging operations."""

    def __init__(self, store, broadcaster, rooms=None, sessions: Optional[Callable[[str], Iterable[str]]] = None,
                 settings=None):
        self.store = store
        self.broadcaster = broadcaster
        self.rooms = rooms
        self.sessions = sessions
        self.settings = settings or default_config
        # Held from the message insert through its broadcast, so a room sees
        # messages in commit order.
        self._conversation_locks = KeyedLock()

    # =========================================================================
    # Validation
    # =========================================================================

    def _clean_content(self, content) -> str:
        if not isinstance(content, str):
            raise ValidationError("Message content is required")
        content = content.strip()
        if not content:
            raise ValidationError("Message content cannot be empty")
        max_length = self.settings.MESSAGE_MAX_LENGTH
        if len(content) > max_length:
            raise ValidationError(f"Message content cannot exceed {max_length} characters")
        return content

    @staticmethod
    def _parse_type(message_type) -> MessageType:
        if message_type is None:
            return MessageType.TEXT
        parsed = MessageType.parse(message_type)
        if parsed not in CLIENT_MESSAGE_TYPES:
            raise ValidationError("Invalid message type")
        return parsed

    @staticmethod
    def _require_id(value, field: str) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{field} is required")
        return value.strip()

    def _require_member(self, user_id: str, conversation_id: str) -> None:
        if not self.store.is_member(user_id, conversation_id):
            raise NotFoundOrUnauthorized()

    def _require_group(self, user_id: str, conversation_id: str) -> Dict[str, Any]:
        doc = self.store.get_conversation(conversation_id)
        if not doc or not doc.get('is_group') or user_id not in doc.get('member_ids', []):
            raise NotFoundOrUnauthorized("Group conversation not found or unauthorized")
        return doc

    @staticmethod
    def _clean_group_name(name) -> str:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Group name is required")
        name = name.strip()
        if len(name) > GROUP_NAME_MAX_LENGTH:
            raise ValidationError(f"Group name cannot exceed {GROUP_NAME_MAX_LENGTH} characters")
        return name

    @staticmethod
    def _clean_user_ids(user_ids) -> List[str]:
        if not isinstance(user_ids, list) or not user_ids or not all(isinstance(u, str) and u for u in user_ids):
            raise ValidationError("userIds must be a non-empty list of user ids")
        return list(dict.fromkeys(user_ids))

    @staticmethod
    def _pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
        total_pages = (total + limit - 1) // limit
        return {
            'page': page,
            'limit': limit,
            'total': total,
            'totalPages': total_pages,
            'hasNext': page < total_pages,
            'hasPrev': page > 1,
        }

    # =========================================================================
    # Hydration
    # =========================================================================

    def _sender_docs(self, user_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        return {d['_id']: d for d in self.store.find_users_by_ids(set(user_ids))}

    def _reply_projection(self, reply_doc: Dict[str, Any], users: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
        sender_id = reply_doc.get('sender_id')
        sender_doc = users.get(sender_id) or self.store.find_user_by_id(sender_id)
        return {
            'id': str(reply_doc['_id']),
            'content': reply_doc.get('content'),
            'senderId': sender_id,
            'isDeleted': bool(reply_doc.get('is_deleted', False)),
            'sender': sender_projection(sender_doc),
        }

    def hydrate_message(self, message: Message, users: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, Any]:
        """Client shape of a message: sender projection and replyTo included."""
        users = users if users is not None else {}
        sender_doc = users.get(message.sender_id) or self.store.find_user_by_id(message.sender_id)
        reply_to = None
        if message.reply_to_id:
            reply_doc = self.store.find_message_by_id(message.reply_to_id)
            if reply_doc:
                reply_to = self._reply_projection(reply_doc, users)
        return message.to_dict(sender=sender_projection(sender_doc), reply_to=reply_to)

    def build_conversation_summary(self, conversation_doc: Dict[str, Any]) -> Dict[str, Any]:
        conversation = Conversation.from_doc(conversation_doc)
        member_docs = self.store.find_users_by_ids(conversation.member_ids)
        users = {d['_id']: d for d in member_docs}

        last_doc = None
        if conversation.last_message_id:
            last_doc = self.store.find_message_by_id(conversation.last_message_id)
        if last_doc is None:
            last_doc = self.store.get_last_message(conversation.conversation_id)
        last_message = self.hydrate_message(Message.from_doc(last_doc), users) if last_doc else None

        return conversation.to_dict(
            members=[member_projection(d) for d in member_docs],
            last_message=last_message,
        )

    def _summary_for(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        doc = self.store.get_conversation(conversation_id)
        return self.build_conversation_summary(doc) if doc else None

    # =========================================================================
    # Broadcast
    # =========================================================================

    def _broadcast(self, conversation_id: str, event: str, data: Dict[str, Any]) -> bool:
        try:
            self.broadcaster.emit_to_room(conversation_room(conversation_id), event, data)
            return True
        except TransportError as e:
            logger.error("Broadcast of %s to conversation %s failed: %s", event, conversation_id, e)
            return False

    def _subscribe_members(self, member_ids: List[str], conversation_id: str) -> None:
        if self.rooms is None or self.sessions is None:
            return
        try:
            self.rooms.subscribe_users(member_ids, conversation_id, self.sessions)
        except Exception:
            logger.exception("Subscribing live connections to conversation %s failed", conversation_id)

    def _unsubscribe_members(self, member_ids: List[str], conversation_id: str) -> None:
        if self.rooms is None or self.sessions is None:
            return
        try:
            self.rooms.unsubscribe_users(member_ids, conversation_id, self.sessions)
        except Exception:
            logger.exception("Unsubscribing live connections from conversation %s failed", conversation_id)

    # =========================================================================
    # Messages
    # =========================================================================

    def send_message(
        self,
        sender_id: str,
        conversation_id,
        content,
        message_type=None,
        reply_to_id=None,
    ) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
        """Validate, persist and broadcast a message.

        Returns (message, conversation_summary). Anything raised happens
        before the message is written. Once the write commits, failures to
        bump the conversation, hydrate or broadcast are logged and the
        message is still returned; the summary is None if it could not be
        built.
        """
        conversation_id = self._require_id(conversation_id, 'conversationId')
        content = self._clean_content(content)
        parsed_type = self._parse_type(message_type)

        self._require_member(sender_id, conversation_id)

        if reply_to_id is not None:
            reply_to_id = self._require_id(reply_to_id, 'replyToId')
            reply_doc = self.store.find_message_by_id(reply_to_id)
            if (not reply_doc or reply_doc.get('is_deleted')
                    or reply_doc.get('conversation_id') != conversation_id):
                raise ValidationError("Reply target not found in this conversation")

        message = Message(
            message_id=generate_message_id(),
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            message_type=parsed_type,
            reply_to_id=reply_to_id,
        )
        return self._commit(message)

    def _commit(self, message: Message) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
        with self._conversation_locks.hold(message.conversation_id):
            self.store.create_message(message)
            logger.info("Message %s committed to conversation %s by %s",
                        message.message_id, message.conversation_id, message.sender_id)
            return self._after_commit(message)

    def _post_system_message(self, conversation_id: str, actor_id: str,
                             content: str) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
        message = Message(
            message_id=generate_message_id(),
            conversation_id=conversation_id,
            sender_id=actor_id,
            content=content,
            message_type=MessageType.SYSTEM,
        )
        return self._commit(message)

    def _after_commit(self, message: Message) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
        conversation_id = message.conversation_id
        try:
            self.store.touch_conversation(conversation_id, last_message_id=message.message_id)
        except StoreUnavailable:
            logger.error("Could not bump conversation %s after message %s", conversation_id, message.message_id)

        try:
            message_data = self.hydrate_message(message)
        except StoreUnavailable:
            logger.error("Could not hydrate message %s, broadcasting bare message", message.message_id)
            message_data = message.to_dict()

        try:
            summary = self._summary_for(conversation_id)
        except StoreUnavailable:
            logger.error("Could not build summary for conversation %s", conversation_id)
            summary = None

        self._broadcast(conversation_id, EventEmitter.MESSAGE_RECEIVED, message_data)
        if summary is not None:
            self._broadcast(conversation_id, EventEmitter.CONVERSATION_UPDATED, summary)
        return message_data, summary

    def get_messages(self, user_id: str, conversation_id: str, page: int = 1,
                     limit: Optional[int] = None) -> Dict[str, Any]:
        self._require_member(user_id, conversation_id)
        limit = limit or self.settings.MESSAGES_PAGE_SIZE
        docs, total = self.store.get_conversation_messages(conversation_id, page=page, limit=limit)
        users = self._sender_docs(d.get('sender_id') for d in docs)
        messages = [self.hydrate_message(Message.from_doc(d), users) for d in docs]
        return {'messages': messages, 'pagination': self._pagination(page, limit, total)}

    def _own_message(self, user_id: str, message_id: str, action: str) -> Dict[str, Any]:
        doc = self.store.find_message_by_id(message_id)
        if not doc or not self.store.is_member(user_id, doc.get('conversation_id')):
            raise NotFoundOrUnauthorized("Message not found")
        if doc.get('sender_id') != user_id:
            raise ForbiddenError(f"You can only {action} your own messages")
        return doc

    def edit_message(self, user_id: str, message_id: str, content) -> Dict[str, Any]:
        content = self._clean_content(content)
        doc = self._own_message(user_id, message_id, 'edit')
        if doc.get('is_deleted'):
            raise ValidationError("Cannot edit a deleted message")
        window = timedelta(minutes=self.settings.MESSAGE_EDIT_WINDOW_MINUTES)
        created_at = doc.get('created_at')
        if created_at is not None and utc_now() - created_at > window:
            raise ForbiddenError("Message can no longer be edited")

        updated = self.store.update_message_content(message_id, content)
        if not updated or updated.get('is_deleted'):
            raise NotFoundOrUnauthorized("Message not found")
        message_data = self.hydrate_message(Message.from_doc(updated))
        logger.info("Message %s edited by %s", message_id, user_id)
        self._broadcast(message_data['conversationId'], EventEmitter.MESSAGE_UPDATED, message_data)
        return message_data

    def delete_message(self, user_id: str, message_id: str) -> Dict[str, Any]:
        doc = self._own_message(user_id, message_id, 'delete')
        conversation_id = doc.get('conversation_id')
        payload = {'messageId': message_id, 'conversationId': conversation_id}
        if doc.get('is_deleted'):
            return payload
        self.store.soft_delete_message(message_id, self.settings.DELETED_MESSAGE_PLACEHOLDER)
        logger.info("Message %s deleted by %s", message_id, user_id)
        self._broadcast(conversation_id, EventEmitter.MESSAGE_DELETED, payload)
        return payload

    # =========================================================================
    # Conversations
    # =========================================================================

    def list_conversations(self, user_id: str, page: int = 1, limit: Optional[int] = None) -> Dict[str, Any]:
        """Caller's conversations, most recently active first, one page at a time."""
        limit = limit or self.settings.CONVERSATIONS_PAGE_SIZE
        docs = self.store.find_conversations_for_user(user_id, page=page, limit=limit)
        total = self.store.count_conversations_for_user(user_id)
        return {
            'conversations': [self.build_conversation_summary(d) for d in docs],
            'pagination': self._pagination(page, limit, total),
        }

    def get_conversation_for_user(self, user_id: str, conversation_id: str) -> Dict[str, Any]:
        doc = self.store.get_conversation(conversation_id)
        if not doc or user_id not in doc.get('member_ids', []):
            raise NotFoundOrUnauthorized()
        return self.build_conversation_summary(doc)

    def _announce_conversation(self, conversation: Conversation) -> Dict[str, Any]:
        self._subscribe_members(conversation.member_ids, conversation.conversation_id)
        summary = self._summary_for(conversation.conversation_id)
        self._broadcast(conversation.conversation_id, EventEmitter.CONVERSATION_UPDATED, summary)
        return summary

    def create_direct_conversation(self, user_id: str, other_user_id) -> Tuple[Dict[str, Any], bool]:
        """Return (summary, created). An existing pair conversation is reused.

        If the caller had left the pair conversation they are added back.
        """
        other_user_id = self._require_id(other_user_id, 'userId')
        if other_user_id == user_id:
            raise ValidationError("Cannot create a conversation with yourself")
        if not self.store.find_user_by_id(other_user_id):
            raise NotFoundOrUnauthorized("User not found")

        existing = self.store.find_direct_conversation(user_id, other_user_id)
        if existing:
            if user_id not in existing.get('member_ids', []):
                rejoined = self.store.add_members(existing['_id'], [user_id])
                logger.info("User %s rejoined direct conversation %s", user_id, existing['_id'])
                return self._announce_conversation(Conversation.from_doc(rejoined)), False
            return self.build_conversation_summary(existing), False

        conversation = Conversation(
            conversation_id=generate_conversation_id(),
            member_ids=[user_id, other_user_id],
            is_group=False,
            created_by=user_id,
        )
        stored = self.store.create_conversation(conversation)
        if stored['_id'] != conversation.conversation_id:
            # Lost a race with a concurrent create for the same pair
            return self.build_conversation_summary(stored), False
        logger.info("Direct conversation %s created by %s", conversation.conversation_id, user_id)
        return self._announce_conversation(conversation), True

    def create_group_conversation(self, user_id: str, name, user_ids) -> Dict[str, Any]:
        name = self._clean_group_name(name)
        member_ids = list(dict.fromkeys([user_id] + self._clean_user_ids(user_ids)))
        max_members = self.settings.GROUP_MAX_MEMBERS
        if len(member_ids) > max_members:
            raise ValidationError(f"A group can have at most {max_members} members")
        users = self._sender_docs(member_ids)
        if len(users) != len(member_ids):
            raise ValidationError("One or more users not found")

        conversation = Conversation(
            conversation_id=generate_conversation_id(),
            member_ids=member_ids,
            is_group=True,
            name=name,
            created_by=user_id,
        )
        self.store.create_conversation(conversation)

        creator = users[user_id]
        system_message = Message(
            message_id=generate_message_id(),
            conversation_id=conversation.conversation_id,
            sender_id=user_id,
            content=f'{creator.get("username")} created the group "{name}"',
            message_type=MessageType.SYSTEM,
        )
        self.store.create_message(system_message)
        self.store.touch_conversation(conversation.conversation_id, last_message_id=system_message.message_id)
        logger.info("Group conversation %s created by %s with %d members",
                    conversation.conversation_id, user_id, len(member_ids))
        return self._announce_conversation(conversation)

    # =========================================================================
    # Group membership
    # =========================================================================

    def add_members(self, user_id: str, conversation_id: str, user_ids) -> Dict[str, Any]:
        """Add users to a group the caller belongs to and subscribe their live connections."""
        requested = self._clean_user_ids(user_ids)
        doc = self._require_group(user_id, conversation_id)
        current = doc.get('member_ids', [])

        new_ids = [u for u in requested if u not in current]
        if not new_ids:
            raise ValidationError("All users are already members of this group")
        max_members = self.settings.GROUP_MAX_MEMBERS
        if len(current) + len(new_ids) > max_members:
            raise ValidationError(f"A group can have at most {max_members} members")
        new_users = self.store.find_users_by_ids(new_ids)
        if len(new_users) != len(new_ids):
            raise ValidationError("Some users not found")

        self.store.add_members(conversation_id, new_ids)
        self._subscribe_members(new_ids, conversation_id)
        logger.info("User %s added %d members to conversation %s", user_id, len(new_ids), conversation_id)

        actor = self.store.find_user_by_id(user_id) or {}
        names = ', '.join(_display_name(u) for u in new_users)
        _, summary = self._post_system_message(
            conversation_id, user_id, f'{actor.get("username")} added {names} to the group')
        return summary if summary is not None else self._summary_for(conversation_id)

    def remove_member(self, user_id: str, conversation_id: str, member_id: str) -> Optional[Dict[str, Any]]:
        """Remove a member from a group.

        Members may remove themselves; the group creator may remove anyone.
        The removed user's live connections leave the room before the
        announcement goes out. Returns the new summary, or None when the
        group was deleted because nobody is left.
        """
        doc = self._require_group(user_id, conversation_id)
        if member_id not in doc.get('member_ids', []):
            raise ValidationError("User is not a member of this group")
        if member_id != user_id and doc.get('created_by') != user_id:
            raise ForbiddenError("Unauthorized to remove this member")

        removed = self.store.find_user_by_id(member_id) or {'_id': member_id}
        updated = self.store.remove_member(conversation_id, member_id)
        self._unsubscribe_members([member_id], conversation_id)
        logger.info("User %s removed %s from conversation %s", user_id, member_id, conversation_id)

        if not updated or not updated.get('member_ids'):
            self.store.delete_conversation(conversation_id)
            logger.info("Group conversation %s deleted, no members left", conversation_id)
            return None

        action = 'left' if member_id == user_id else 'was removed from'
        _, summary = self._post_system_message(
            conversation_id, user_id, f'{_display_name(removed)} {action} the group')
        return summary if summary is not None else self._summary_for(conversation_id)

    def rename_group(self, user_id: str, conversation_id: str, name) -> Dict[str, Any]:
        name = self._clean_group_name(name)
        self._require_group(user_id, conversation_id)
        self.store.rename_conversation(conversation_id, name)
        logger.info("Conversation %s renamed by %s", conversation_id, user_id)

        actor = self.store.find_user_by_id(user_id) or {}
        _, summary = self._post_system_message(
            conversation_id, user_id, f'{actor.get("username")} changed the group name to "{name}"')
        return summary if summary is not None else self._summary_for(conversation_id)

    def leave_conversation(self, user_id: str, conversation_id: str) -> bool:
        """Leave a group or drop a direct conversation from the caller's list.

        Returns True for a group. A conversation with no members left is
        deleted.
        """
        doc = self.store.get_conversation(conversation_id)
        if not doc or user_id not in doc.get('member_ids', []):
            raise NotFoundOrUnauthorized()
        if doc.get('is_group'):
            self.remove_member(user_id, conversation_id, user_id)
            return True

        updated = self.store.remove_member(conversation_id, user_id)
        self._unsubscribe_members([user_id], conversation_id)
        logger.info("User %s left direct conversation %s", user_id, conversation_id)
        if not updated or not updated.get('member_ids'):
            self.store.delete_conversation(conversation_id)
            logger.info("Direct conversation %s deleted, no members left", conversation_id)
        return False


def _display_name(user_doc: Dict[str, Any]) -> str:
    return user_doc.get('display_name') or user_doc.get('username') or str(user_doc.get('_id'))


def get_messaging_service() -> MessagingService:
    """Service bound to the current Flask app."""
    return current_app.extensions['chat']['service']
