"""Chat REST API routes.

Everything here goes through MessagingService, so a message posted over
REST is validated, persisted and broadcast exactly like one sent with the
`send_message` socket event.

Endpoints:
- GET    /api/conversations                   ?page=&limit=
- GET    /api/conversations/{id}
- POST   /api/conversations/direct            {userId}
- POST   /api/conversations/group             {name, userIds}
- PUT    /api/conversations/{id}              {name}
- DELETE /api/conversations/{id}
- POST   /api/conversations/{id}/members      {userIds}
- DELETE /api/conversations/{id}/members/{userId}
- GET    /api/conversations/{id}/messages     ?page=&limit=
- POST   /api/conversations/{id}/messages     {content, type?, replyToId?}
- PUT    /api/messages/{id}                   {content}
- DELETE /api/messages/{id}

`/api/messages/conversation/{id}` is kept as an alias of the
conversation-scoped message endpoints.
"""
import logging

from flask import Blueprint, request

from chat_server.exception.ChatError import ValidationError
from chat_server.messaging.service import get_messaging_service
from chat_server.utils.decorators import protected_route
from chat_server.utils.helpers import respond_success, parse_positive_int

logger = logging.getLogger(__name__)

chat_bp = Blueprint('chat', __name__, url_prefix='/api')

MAX_PAGE_SIZE = 100


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


# =============================================================================
# Conversations
# =============================================================================

@chat_bp.route('/conversations', methods=['GET'])
@protected_route
def list_conversations(current_user):
    service = get_messaging_service()
    page = parse_positive_int(request.args.get('page'), 1)
    limit = parse_positive_int(request.args.get('limit'), service.settings.CONVERSATIONS_PAGE_SIZE, MAX_PAGE_SIZE)
    result = service.list_conversations(current_user['id'], page=page, limit=limit)
    return respond_success({'data': result})


@chat_bp.route('/conversations/<conversation_id>', methods=['GET'])
@protected_route
def get_conversation(conversation_id, current_user):
    conversation = get_messaging_service().get_conversation_for_user(current_user['id'], conversation_id)
    return respond_success({'data': {'conversation': conversation}})


@chat_bp.route('/conversations/direct', methods=['POST'])
@protected_route
def create_direct_conversation(current_user):
    data = _json_body()
    conversation, created = get_messaging_service().create_direct_conversation(
        current_user['id'], data.get('userId'))
    return respond_success({'data': {'conversation': conversation}}, status=201 if created else 200)


@chat_bp.route('/conversations/group', methods=['POST'])
@protected_route
def create_group_conversation(current_user):
    data = _json_body()
    conversation = get_messaging_service().create_group_conversation(
        current_user['id'], data.get('name'), data.get('userIds'))
    return respond_success({'data': {'conversation': conversation}}, status=201)


@chat_bp.route('/conversations/<conversation_id>', methods=['PUT'])
@protected_route
def rename_group(conversation_id, current_user):
    data = _json_body()
    conversation = get_messaging_service().rename_group(current_user['id'], conversation_id, data.get('name'))
    return respond_success({'data': {'conversation': conversation}, 'message': 'Group updated successfully'})


@chat_bp.route('/conversations/<conversation_id>', methods=['DELETE'])
@protected_route
def leave_conversation(conversation_id, current_user):
    was_group = get_messaging_service().leave_conversation(current_user['id'], conversation_id)
    message = 'Left group successfully' if was_group else 'Conversation deleted successfully'
    return respond_success({'message': message})


@chat_bp.route('/conversations/<conversation_id>/members', methods=['POST'])
@protected_route
def add_members(conversation_id, current_user):
    data = _json_body()
    conversation = get_messaging_service().add_members(current_user['id'], conversation_id, data.get('userIds'))
    return respond_success({'data': {'conversation': conversation}, 'message': 'Members added successfully'})


@chat_bp.route('/conversations/<conversation_id>/members/<user_id>', methods=['DELETE'])
@protected_route
def remove_member(conversation_id, user_id, current_user):
    conversation = get_messaging_service().remove_member(current_user['id'], conversation_id, user_id)
    return respond_success({'data': {'conversation': conversation}, 'message': 'Member removed successfully'})


# =============================================================================
# Messages
# =============================================================================

@chat_bp.route('/conversations/<conversation_id>/messages', methods=['GET'])
@chat_bp.route('/messages/conversation/<conversation_id>', methods=['GET'])
@protected_route
def get_messages(conversation_id, current_user):
    service = get_messaging_service()
    page = parse_positive_int(request.args.get('page'), 1)
    limit = parse_positive_int(request.args.get('limit'), service.settings.MESSAGES_PAGE_SIZE, MAX_PAGE_SIZE)
    result = service.get_messages(current_user['id'], conversation_id, page=page, limit=limit)
    return respond_success({'data': result})


@chat_bp.route('/conversations/<conversation_id>/messages', methods=['POST'])
@chat_bp.route('/messages/conversation/<conversation_id>', methods=['POST'])
@protected_route
def send_message(conversation_id, current_user):
    data = _json_body()
    message, _ = get_messaging_service().send_message(
        current_user['id'],
        conversation_id,
        data.get('content'),
        message_type=data.get('type'),
        reply_to_id=data.get('replyToId'),
    )
    return respond_success({'data': {'message': message}}, status=201)


@chat_bp.route('/messages/<message_id>', methods=['PUT'])
@protected_route
def edit_message(message_id, current_user):
    data = _json_body()
    message = get_messaging_service().edit_message(current_user['id'], message_id, data.get('content'))
    return respond_success({'data': {'message': message}})


@chat_bp.route('/messages/<message_id>', methods=['DELETE'])
@protected_route
def delete_message(message_id, current_user):
    result = get_messaging_service().delete_message(current_user['id'], message_id)
    return respond_success({'message': 'Message deleted', 'data': result})
