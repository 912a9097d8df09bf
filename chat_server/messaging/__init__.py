"""Messaging module.

This module provides:
- Message / Conversation models and user projections
- ChatStore, the MongoDB-backed persistent store
- MessagingService, the single validate -> persist -> broadcast path
"""

from chat_server.messaging.models import Message, Conversation, MessageType
from chat_server.messaging.repository import ChatStore
from chat_server.messaging.service import MessagingService, get_messaging_service

__all__ = [
    'Message', 'Conversation', 'MessageType',
    'ChatStore',
    'MessagingService', 'get_messaging_service',
]
