"""Chat store: persistence for users, conversations and messages.

Wraps a pymongo database (or anything exposing the same collection API,
such as mongomock in tests). Driver failures surface as StoreUnavailable
so callers above this layer never see pymongo exceptions.
"""
import functools
import logging
from typing import Optional, Dict, Any, List, Iterable, Tuple

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError, DuplicateKeyError

from chat_server.exception.ChatError import StoreUnavailable
from chat_server.messaging.models import Message, Conversation, direct_key
from chat_server.utils.time_utils import utc_now

logger = logging.getLogger(__name__)


def _store_call(func):
    """Translate driver errors into StoreUnavailable."""
    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except PyMongoError as e:
            logger.error("Store operation %s failed: %s", func.__name__, e)
            raise StoreUnavailable() from e
    return wrapper


class ChatStore:
    USERS = 'users'
    CONVERSATIONS = 'conversations'
    MESSAGES = 'messages'

    def __init__(self, db):
        self.db = db

    @property
    def users(self):
        return self.db[self.USERS]

    @property
    def conversations(self):
        return self.db[self.CONVERSATIONS]

    @property
    def messages(self):
        return self.db[self.MESSAGES]

    @_store_call
    def ensure_indexes(self):
        self.conversations.create_index([('member_ids', ASCENDING), ('updated_at', DESCENDING)])
        self.messages.create_index([('conversation_id', ASCENDING), ('created_at', DESCENDING)])
        self.conversations.create_index('direct_key', unique=True, sparse=True)
        self.users.create_index('username')
        logger.info("Chat store indexes ensured")

    # =========================================================================
    # Users
    # =========================================================================

    @_store_call
    def find_user_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.users.find_one({'_id': user_id})

    @_store_call
    def find_users_by_ids(self, user_ids: Iterable[str]) -> List[Dict[str, Any]]:
        ids = list(user_ids)
        if not ids:
            return []
        docs = {d['_id']: d for d in self.users.find({'_id': {'$in': ids}})}
        # Preserve requested order
        return [docs[i] for i in ids if i in docs]

    @_store_call
    def update_user_presence(self, user_id: str, is_online: bool, last_seen=None) -> bool:
        result = self.users.update_one(
            {'_id': user_id},
            {'$set': {'is_online': bool(is_online), 'last_seen': last_seen or utc_now()}}
        )
        return result.matched_count > 0

    # =========================================================================
    # Conversations
    # =========================================================================

    @_store_call
    def find_conversations_for_user(self, user_id: str, page: int = 1,
                                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
        cursor = self.conversations.find({'member_ids': user_id}).sort('updated_at', DESCENDING)
        if limit:
            cursor = cursor.skip((page - 1) * limit).limit(limit)
        return list(cursor)

    @_store_call
    def count_conversations_for_user(self, user_id: str) -> int:
        return self.conversations.count_documents({'member_ids': user_id})

    @_store_call
    def find_conversation_ids_for_user(self, user_id: str) -> List[str]:
        cursor = self.conversations.find({'member_ids': user_id}, {'_id': 1})
        return [str(d['_id']) for d in cursor]

    @_store_call
    def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        return self.conversations.find_one({'_id': conversation_id})

    @_store_call
    def is_member(self, user_id: str, conversation_id: str) -> bool:
        doc = self.conversations.find_one({'_id': conversation_id, 'member_ids': user_id}, {'_id': 1})
        return doc is not None

    @_store_call
    def find_direct_conversation(self, user1: str, user2: str) -> Optional[Dict[str, Any]]:
        return self.conversations.find_one({'direct_key': direct_key(user1, user2)})

    @_store_call
    def create_conversation(self, conversation: Conversation) -> Dict[str, Any]:
        """Insert a conversation. For a direct pair that already exists, return the stored one."""
        doc = conversation.to_db_doc()
        try:
            self.conversations.insert_one(doc)
        except DuplicateKeyError:
            existing = self.conversations.find_one({'direct_key': doc.get('direct_key')})
            if existing is None:
                raise
            return existing
        return doc

    @_store_call
    def touch_conversation(self, conversation_id: str, last_message_id: Optional[str] = None) -> bool:
        updates = {'updated_at': utc_now()}
        if last_message_id:
            updates['last_message_id'] = last_message_id
        result = self.conversations.update_one({'_id': conversation_id}, {'$set': updates})
        return result.matched_count > 0

    @_store_call
    def add_members(self, conversation_id: str, user_ids: List[str]) -> Optional[Dict[str, Any]]:
        self.conversations.update_one(
            {'_id': conversation_id},
            {'$addToSet': {'member_ids': {'$each': list(user_ids)}}, '$set': {'updated_at': utc_now()}}
        )
        return self.conversations.find_one({'_id': conversation_id})

    @_store_call
    def remove_member(self, conversation_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        self.conversations.update_one(
            {'_id': conversation_id},
            {'$pull': {'member_ids': user_id}, '$set': {'updated_at': utc_now()}}
        )
        return self.conversations.find_one({'_id': conversation_id})

    @_store_call
    def rename_conversation(self, conversation_id: str, name: str) -> Optional[Dict[str, Any]]:
        self.conversations.update_one(
            {'_id': conversation_id},
            {'$set': {'name': name, 'updated_at': utc_now()}}
        )
        return self.conversations.find_one({'_id': conversation_id})

    @_store_call
    def delete_conversation(self, conversation_id: str) -> bool:
        """Remove a conversation together with its messages."""
        result = self.conversations.delete_one({'_id': conversation_id})
        self.messages.delete_many({'conversation_id': conversation_id})
        return result.deleted_count > 0

    # =========================================================================
    # Messages
    # =========================================================================

    @_store_call
    def create_message(self, message: Message) -> Dict[str, Any]:
        doc = message.to_db_doc()
        self.messages.insert_one(doc)
        return doc

    @_store_call
    def find_message_by_id(self, message_id: str) -> Optional[Dict[str, Any]]:
        return self.messages.find_one({'_id': message_id})

    @_store_call
    def get_conversation_messages(self, conversation_id: str, page: int = 1,
                                  limit: int = 50) -> Tuple[List[Dict[str, Any]], int]:
        """Return one page of non-deleted messages (oldest first) plus the total count."""
        query = {'conversation_id': conversation_id, 'is_deleted': False}
        total = self.messages.count_documents(query)
        cursor = (self.messages.find(query)
                  .sort([('created_at', DESCENDING), ('_id', DESCENDING)])
                  .skip((page - 1) * limit)
                  .limit(limit))
        docs = list(cursor)
        docs.reverse()
        return docs, total

    @_store_call
    def get_last_message(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        cursor = (self.messages.find({'conversation_id': conversation_id, 'is_deleted': False})
                  .sort('created_at', DESCENDING).limit(1))
        docs = list(cursor)
        return docs[0] if docs else None

    @_store_call
    def update_message_content(self, message_id: str, content: str) -> Optional[Dict[str, Any]]:
        self.messages.update_one(
            {'_id': message_id, 'is_deleted': False},
            {'$set': {'content': content, 'is_edited': True, 'updated_at': utc_now()}}
        )
        return self.messages.find_one({'_id': message_id})

    @_store_call
    def soft_delete_message(self, message_id: str, placeholder: str) -> Optional[Dict[str, Any]]:
        self.messages.update_one(
            {'_id': message_id},
            {'$set': {'is_deleted': True, 'content': placeholder, 'updated_at': utc_now()}}
        )
        return self.messages.find_one({'_id': message_id})
