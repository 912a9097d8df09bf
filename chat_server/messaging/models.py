"""Messaging data models.

Collections:
- users: identities plus presence fields (is_online, last_seen)
- conversations: direct (exactly 2 members) or group (1-50 members)
- messages: persisted chat messages, soft-deleted in place

Documents are stored with snake_case keys; `to_dict()` renders the camelCase
shape sent to clients over REST and Socket.IO.
"""
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum

from chat_server.utils.time_utils import utc_now, to_iso


class MessageType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    FILE = "FILE"
    SYSTEM = "SYSTEM"

    @classmethod
    def parse(cls, value) -> Optional['MessageType']:
        """Return the matching member (case-insensitive) or None."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


class Message:
    """Message document structure."""

    def __init__(
        self,
        message_id: str,
        conversation_id: str,
        sender_id: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        reply_to_id: Optional[str] = None,
        is_edited: bool = False,
        is_deleted: bool = False,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.message_id = message_id
        self.conversation_id = conversation_id
        self.sender_id = sender_id
        self.content = content
        self.message_type = MessageType(message_type)
        self.reply_to_id = reply_to_id
        self.is_edited = is_edited
        self.is_deleted = is_deleted
        self.created_at = created_at or utc_now()
        self.updated_at = updated_at or self.created_at

    def to_dict(self, sender: Optional[Dict[str, Any]] = None,
                reply_to: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = {
            'id': self.message_id,
            'conversationId': self.conversation_id,
            'senderId': self.sender_id,
            'content': self.content,
            'type': self.message_type.value,
            'replyToId': self.reply_to_id,
            'isEdited': self.is_edited,
            'isDeleted': self.is_deleted,
            'createdAt': to_iso(self.created_at),
            'updatedAt': to_iso(self.updated_at),
            'sender': sender,
        }
        if self.reply_to_id:
            data['replyTo'] = reply_to
        return data

    def to_db_doc(self) -> Dict[str, Any]:
        return {
            '_id': self.message_id,
            'conversation_id': self.conversation_id,
            'sender_id': self.sender_id,
            'content': self.content,
            'type': self.message_type.value,
            'reply_to_id': self.reply_to_id,
            'is_edited': self.is_edited,
            'is_deleted': self.is_deleted,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> 'Message':
        return cls(
            message_id=str(doc.get('_id')),
            conversation_id=doc.get('conversation_id'),
            sender_id=doc.get('sender_id'),
            content=doc.get('content'),
            message_type=MessageType.parse(doc.get('type')) or MessageType.TEXT,
            reply_to_id=doc.get('reply_to_id'),
            is_edited=bool(doc.get('is_edited', False)),
            is_deleted=bool(doc.get('is_deleted', False)),
            created_at=doc.get('created_at'),
            updated_at=doc.get('updated_at'),
        )


class Conversation:
    """Conversation document structure."""

    def __init__(
        self,
        conversation_id: str,
        member_ids: List[str],
        is_group: bool = False,
        name: Optional[str] = None,
        created_by: Optional[str] = None,
        last_message_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.conversation_id = conversation_id
        # Membership is a set; keep first-seen order for stable output
        self.member_ids = list(dict.fromkeys(member_ids))
        self.is_group = is_group
        self.name = name
        self.created_by = created_by
        self.last_message_id = last_message_id
        self.created_at = created_at or utc_now()
        self.updated_at = updated_at or self.created_at

    def to_dict(self, members: Optional[List[Dict[str, Any]]] = None,
                last_message: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return {
            'id': self.conversation_id,
            'isGroup': self.is_group,
            'name': self.name,
            'createdBy': self.created_by,
            'members': members if members is not None else [{'id': m} for m in self.member_ids],
            'lastMessage': last_message,
            'createdAt': to_iso(self.created_at),
            'updatedAt': to_iso(self.updated_at),
        }

    def to_db_doc(self) -> Dict[str, Any]:
        doc = {
            '_id': self.conversation_id,
            'is_group': self.is_group,
            'name': self.name,
            'member_ids': self.member_ids,
            'created_by': self.created_by,
            'last_message_id': self.last_message_id,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
        }
        if not self.is_group:
            doc['direct_key'] = direct_key(*self.member_ids)
        return doc

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> 'Conversation':
        return cls(
            conversation_id=str(doc.get('_id')),
            member_ids=doc.get('member_ids', []),
            is_group=bool(doc.get('is_group', False)),
            name=doc.get('name'),
            created_by=doc.get('created_by'),
            last_message_id=doc.get('last_message_id'),
            created_at=doc.get('created_at'),
            updated_at=doc.get('updated_at'),
        )


# =============================================================================
# User projections
# =============================================================================

def auth_projection(user_doc: Dict[str, Any]) -> Dict[str, Any]:
    """Identity attached to an authenticated connection or request."""
    return {
        'id': str(user_doc.get('_id')),
        'email': user_doc.get('email'),
        'username': user_doc.get('username'),
        'displayName': user_doc.get('display_name'),
        'avatar': user_doc.get('avatar'),
        'isOnline': bool(user_doc.get('is_online', False)),
    }


def sender_projection(user_doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Display fields embedded in every broadcast message."""
    if not user_doc:
        return None
    return {
        'id': str(user_doc.get('_id')),
        'username': user_doc.get('username'),
        'displayName': user_doc.get('display_name'),
        'avatar': user_doc.get('avatar'),
    }


def member_projection(user_doc: Dict[str, Any]) -> Dict[str, Any]:
    """Member entry of a conversation summary, including presence."""
    data = sender_projection(user_doc)
    data['isOnline'] = bool(user_doc.get('is_online', False))
    data['lastSeen'] = to_iso(user_doc.get('last_seen'))
    return data


def direct_key(user_a: str, user_b: str) -> str:
    """Order-independent key for the unique direct conversation of a pair."""
    return ':'.join(sorted((user_a, user_b)))
