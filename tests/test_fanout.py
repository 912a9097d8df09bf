import threading
import time

import pytest

from chat_server.exception.ChatError import (
    NotFoundOrUnauthorized, ValidationError, StoreUnavailable, TransportError
)
from chat_server.messaging.service import MessagingService
from chat_server.websocket.event_emitter import Broadcaster

from tests.conftest import OLD, auth_headers, events


class ListBroadcaster(Broadcaster):
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    def emit_to_room(self, room, event, data, skip_sid=None):
        if self.fail:
            raise TransportError('down')
        self.sent.append((room, event, data))

    def add_to_room(self, sid, room):
        pass

    def remove_from_room(self, sid, room):
        pass

    def rooms_of(self, sid):
        return set()


# =============================================================================
# Socket entry point
# =============================================================================

def test_happy_path(connect, db, users, c1):
    alice = connect('alice')
    bob = connect('bob')
    alice.get_received()
    bob.get_received()

    ack = alice.emit('send_message', {'conversationId': 'c1', 'content': 'hi'}, callback=True)

    assert ack['success'] is True
    stored = db.messages.find_one({'_id': ack['message']['id']})
    assert stored['sender_id'] == 'alice'
    assert stored['conversation_id'] == 'c1'
    assert stored['content'] == 'hi'
    assert stored['type'] == 'TEXT'
    assert db.conversations.find_one({'_id': 'c1'})['updated_at'] > OLD

    for sock in (alice, bob):
        received = sock.get_received()
        messages = events(received, 'message_received')
        summaries = events(received, 'conversation_updated')
        assert [m['id'] for m in messages] == [ack['message']['id']]
        assert messages[0]['sender'] == {'id': 'alice', 'username': 'alice', 'displayName': 'Alice', 'avatar': None}
        assert len(summaries) == 1
        assert summaries[0]['id'] == 'c1'
        assert summaries[0]['lastMessage']['id'] == ack['message']['id']
        assert {m['id'] for m in summaries[0]['members']} == {'alice', 'bob'}
        names = [pkt['name'] for pkt in received]
        assert names.index('message_received') < names.index('conversation_updated')


def test_conversation_list_puts_active_conversation_first(connect, client, users, c1, c2):
    alice = connect('alice')
    alice.emit('send_message', {'conversationId': 'c2', 'content': 'newest'}, callback=True)

    resp = client.get('/api/conversations', headers=auth_headers('alice'))

    assert [c['id'] for c in resp.get_json()['data']['conversations']] == ['c2', 'c1']


def test_self_echo_reaches_every_sender_connection_once(connect, users, c1):
    tab1 = connect('alice')
    tab2 = connect('alice')
    tab1.get_received()
    tab2.get_received()

    ack = tab1.emit('send_message', {'conversationId': 'c1', 'content': 'both tabs'}, callback=True)

    for tab in (tab1, tab2):
        ids = [m['id'] for m in events(tab.get_received(), 'message_received')]
        assert ids == [ack['message']['id']]


def test_unauthorized_send(connect, db, users, c1):
    alice = connect('alice')
    carol = connect('carol')
    alice.get_received()
    carol.get_received()

    ack = carol.emit('send_message', {'conversationId': 'c1', 'content': 'x'}, callback=True)

    assert ack['success'] is False
    assert db.messages.count_documents({}) == 0
    assert events(carol.get_received(), 'error') == [{'message': 'Conversation not found or unauthorized'}]
    assert alice.get_received() == []


def test_unknown_conversation_matches_non_member_error(connect, users, c1):
    carol = connect('carol')
    carol.get_received()
    carol.emit('send_message', {'conversationId': 'nope', 'content': 'x'})
    assert events(carol.get_received(), 'error') == [{'message': 'Conversation not found or unauthorized'}]


@pytest.mark.parametrize('content', ['', '   ', None, 'x' * 2001])
def test_invalid_content_rejected(connect, db, users, c1, content):
    alice = connect('alice')
    alice.get_received()

    ack = alice.emit('send_message', {'conversationId': 'c1', 'content': content}, callback=True)

    assert ack['success'] is False
    assert db.messages.count_documents({}) == 0
    assert len(events(alice.get_received(), 'error')) == 1


def test_content_is_trimmed_and_max_length_accepted(connect, db, users, c1):
    alice = connect('alice')
    ack = alice.emit('send_message', {'conversationId': 'c1', 'content': '  ' + 'y' * 2000 + '  '}, callback=True)
    assert ack['success'] is True
    assert db.messages.find_one({})['content'] == 'y' * 2000


def test_invalid_payload_reports_error(connect, users, c1):
    alice = connect('alice')
    alice.get_received()
    ack = alice.emit('send_message', 'just a string', callback=True)
    assert ack['success'] is False
    assert events(alice.get_received(), 'error') == [{'message': 'Invalid message payload'}]


def test_reply_is_hydrated(connect, users, c1):
    alice = connect('alice')
    bob = connect('bob')
    first = alice.emit('send_message', {'conversationId': 'c1', 'content': 'question'}, callback=True)
    bob.get_received()

    ack = bob.emit('send_message', {'conversationId': 'c1', 'content': 'answer',
                                    'replyToId': first['message']['id']}, callback=True)

    reply = ack['message']['replyTo']
    assert reply['id'] == first['message']['id']
    assert reply['content'] == 'question'
    assert reply['sender']['id'] == 'alice'
    assert events(bob.get_received(), 'message_received')[0]['replyTo']['id'] == first['message']['id']


def test_reply_to_deleted_message_rejected(connect, client, db, users, c1):
    alice = connect('alice')
    first = alice.emit('send_message', {'conversationId': 'c1', 'content': 'oops'}, callback=True)
    client.delete(f"/api/messages/{first['message']['id']}", headers=auth_headers('alice'))
    alice.get_received()

    ack = alice.emit('send_message', {'conversationId': 'c1', 'content': 're',
                                      'replyToId': first['message']['id']}, callback=True)

    assert ack['success'] is False
    assert db.messages.count_documents({}) == 1
    assert len(events(alice.get_received(), 'error')) == 1


def test_reply_to_foreign_conversation_rejected(connect, db, users, c1, c2):
    alice = connect('alice')
    other = alice.emit('send_message', {'conversationId': 'c2', 'content': 'to carol'}, callback=True)

    ack = alice.emit('send_message', {'conversationId': 'c1', 'content': 're',
                                      'replyToId': other['message']['id']}, callback=True)

    assert ack['success'] is False
    assert db.messages.count_documents({'conversation_id': 'c1'}) == 0


# =============================================================================
# REST entry point
# =============================================================================

def test_rest_send_broadcasts_like_socket_send(connect, client, db, users, c1):
    bob = connect('bob')
    bob.get_received()

    resp = client.post('/api/conversations/c1/messages', json={'content': ' via rest '},
                       headers=auth_headers('alice'))

    assert resp.status_code == 201
    message = resp.get_json()['data']['message']
    assert message['content'] == 'via rest'
    assert message['type'] == 'TEXT'
    received = bob.get_received()
    assert [m['id'] for m in events(received, 'message_received')] == [message['id']]
    assert events(received, 'conversation_updated')[0]['lastMessage']['id'] == message['id']
    assert db.conversations.find_one({'_id': 'c1'})['updated_at'] > OLD


def test_rest_legacy_path(client, users, c1):
    resp = client.post('/api/messages/conversation/c1', json={'content': 'legacy'},
                       headers=auth_headers('bob'))
    assert resp.status_code == 201


def test_rest_send_validation_matches_socket(client, db, users, c1):
    resp = client.post('/api/conversations/c1/messages', json={'content': '   '}, headers=auth_headers('alice'))
    assert resp.status_code == 400
    assert resp.get_json() == {'success': False, 'error': 'Message content cannot be empty'}

    resp = client.post('/api/conversations/c1/messages', json={'content': 'x'}, headers=auth_headers('carol'))
    assert resp.status_code == 404

    resp = client.post('/api/conversations/c1/messages', json={'content': 'x', 'type': 'SYSTEM'},
                       headers=auth_headers('alice'))
    assert resp.status_code == 400
    assert db.messages.count_documents({}) == 0


def test_rest_send_store_failure_is_503_and_nothing_broadcast(connect, client, store, users, c1, monkeypatch):
    bob = connect('bob')
    bob.get_received()

    def boom(message):
        raise StoreUnavailable()
    monkeypatch.setattr(store, 'create_message', boom)

    resp = client.post('/api/conversations/c1/messages', json={'content': 'lost'}, headers=auth_headers('alice'))

    assert resp.status_code == 503
    assert resp.get_json()['error'] == 'Service temporarily unavailable'
    assert bob.get_received() == []


# =============================================================================
# Service
# =============================================================================

def test_broadcast_failure_keeps_message(store, db, users, c1):
    service = MessagingService(store, ListBroadcaster(fail=True))

    message, summary = service.send_message('alice', 'c1', 'still saved')

    assert db.messages.find_one({'_id': message['id']})['content'] == 'still saved'
    assert summary['lastMessage']['id'] == message['id']


def test_service_broadcasts_to_conversation_room(store, users, c1):
    broadcaster = ListBroadcaster()
    service = MessagingService(store, broadcaster)

    message, _ = service.send_message('bob', 'c1', 'hello', message_type='text')

    assert [(room, event) for room, event, _ in broadcaster.sent] == [
        ('conversation:c1', 'message_received'),
        ('conversation:c1', 'conversation_updated'),
    ]
    assert message['type'] == 'TEXT'


def test_service_errors_are_typed(store, users, c1):
    service = MessagingService(store, ListBroadcaster())
    with pytest.raises(NotFoundOrUnauthorized):
        service.send_message('carol', 'c1', 'x')
    with pytest.raises(ValidationError):
        service.send_message('alice', 'c1', 'x', reply_to_id='missing')
    with pytest.raises(ValidationError):
        service.send_message('alice', None, 'x')


def test_concurrent_sends_reach_room_in_commit_order(store, users, c1, monkeypatch):
    broadcaster = ListBroadcaster()
    service = MessagingService(store, broadcaster)

    committed = []
    create = store.create_message

    def recording_create(message):
        committed.append(message.content)
        return create(message)
    monkeypatch.setattr(store, 'create_message', recording_create)

    first_touching = threading.Event()
    touch = store.touch_conversation

    def slow_first_touch(conversation_id, last_message_id=None):
        if not first_touching.is_set():
            first_touching.set()
            time.sleep(0.3)
        return touch(conversation_id, last_message_id=last_message_id)
    monkeypatch.setattr(store, 'touch_conversation', slow_first_touch)

    first = threading.Thread(target=service.send_message, args=('alice', 'c1', 'first'))
    second = threading.Thread(target=service.send_message, args=('bob', 'c1', 'second'))
    first.start()
    assert first_touching.wait(5)
    second.start()
    first.join(5)
    second.join(5)

    delivered = [data['content'] for _, event, data in broadcaster.sent if event == 'message_received']
    assert committed == ['first', 'second']
    assert delivered == committed
