from chat_server.messaging.models import Conversation

from tests.conftest import events


def _rooms(socketio, sock):
    sid = socketio.server.manager.sid_from_eio_sid(sock.eio_sid, '/')
    return set(socketio.server.rooms(sid, namespace='/'))


def test_connect_joins_user_and_conversation_rooms(connect, socketio, users, c1, c2):
    sock = connect('alice')
    rooms = _rooms(socketio, sock)
    assert {'user:alice', 'conversation:c1', 'conversation:c2'} <= rooms


def test_connect_skips_conversations_of_others(connect, socketio, users, c1, c2):
    sock = connect('bob')
    rooms = _rooms(socketio, sock)
    assert 'conversation:c1' in rooms
    assert 'conversation:c2' not in rooms


def test_join_conversation_non_member_is_silent(connect, socketio, users, c2):
    bob = connect('bob')
    bob.get_received()

    ack = bob.emit('join_conversation', 'c2', callback=True)

    assert ack == {'success': True, 'joined': False}
    assert 'conversation:c2' not in _rooms(socketio, bob)
    assert events(bob.get_received(), 'error') == []


def test_join_conversation_unknown_id_is_silent(connect, users):
    bob = connect('bob')
    bob.get_received()
    ack = bob.emit('join_conversation', 'does-not-exist', callback=True)
    assert ack['joined'] is False
    assert events(bob.get_received(), 'error') == []


def test_join_conversation_after_membership_added(connect, socketio, store, users):
    carol = connect('carol')
    store.create_conversation(Conversation('c9', ['alice', 'carol'], is_group=True, name='late'))

    ack = carol.emit('join_conversation', {'conversationId': 'c9'}, callback=True)

    assert ack['joined'] is True
    assert 'conversation:c9' in _rooms(socketio, carol)


def test_join_twice_is_idempotent(connect, socketio, users, c1):
    bob = connect('bob')
    bob.emit('join_conversation', 'c1', callback=True)
    bob.emit('join_conversation', 'c1', callback=True)
    assert 'conversation:c1' in _rooms(socketio, bob)


def test_leave_twice_and_before_join(connect, socketio, users, c1, c2):
    bob = connect('bob')
    before = _rooms(socketio, bob)

    assert bob.emit('leave_conversation', 'c2', callback=True) == {'success': True}
    assert _rooms(socketio, bob) == before

    bob.emit('leave_conversation', 'c1', callback=True)
    bob.emit('leave_conversation', 'c1', callback=True)
    assert 'conversation:c1' not in _rooms(socketio, bob)
    assert 'user:bob' in _rooms(socketio, bob)
    assert events(bob.get_received(), 'error') == []


def test_left_connection_stops_receiving(connect, users, c1):
    alice = connect('alice')
    bob = connect('bob')
    bob.emit('leave_conversation', 'c1')
    bob.get_received()

    alice.emit('send_message', {'conversationId': 'c1', 'content': 'anyone?'}, callback=True)

    assert events(bob.get_received(), 'message_received') == []


def test_room_isolation(connect, users, c1, c2):
    alice = connect('alice')
    bob = connect('bob')
    carol = connect('carol')
    bob.get_received()
    carol.get_received()

    alice.emit('send_message', {'conversationId': 'c1', 'content': 'for bob only'}, callback=True)

    assert len(events(bob.get_received(), 'message_received')) == 1
    assert events(carol.get_received(), 'message_received') == []
