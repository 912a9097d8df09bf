from datetime import datetime

import mongomock
import pytest

from chat_server.messaging.models import Conversation
from chat_server.messaging.repository import ChatStore
from chat_server.security.authentication import AuthSecurity
from server import create_app

TEST_SECRET = 'test-secret'
OLD = datetime(2024, 1, 1, 12, 0, 0)


class RecordingStore(ChatStore):
    """ChatStore that remembers every presence write."""

    def __init__(self, db):
        super().__init__(db)
        self.presence_writes = []

    def update_user_presence(self, user_id, is_online, last_seen=None):
        self.presence_writes.append((user_id, is_online))
        return super().update_user_presence(user_id, is_online, last_seen)


def make_user(db, user_id, username=None):
    doc = {
        '_id': user_id,
        'email': f'{user_id}@example.com',
        'username': username or user_id,
        'display_name': (username or user_id).title(),
        'avatar': None,
        'is_online': False,
        'last_seen': None,
    }
    db.users.insert_one(doc)
    return doc


def make_conversation(store, conversation_id, member_ids, is_group=False, name=None):
    conversation = Conversation(
        conversation_id=conversation_id,
        member_ids=member_ids,
        is_group=is_group,
        name=name,
        created_by=member_ids[0],
        created_at=OLD,
        updated_at=OLD,
    )
    return store.create_conversation(conversation)


def events(received, name):
    return [pkt['args'][0] for pkt in received if pkt['name'] == name]


@pytest.fixture(autouse=True)
def jwt_config():
    AuthSecurity.configure(secret_key=TEST_SECRET)
    yield
    AuthSecurity.configure(secret_key=None)


@pytest.fixture
def db():
    return mongomock.MongoClient().chat_test


@pytest.fixture
def store(db):
    return RecordingStore(db)


@pytest.fixture
def users(db):
    return {
        'alice': make_user(db, 'alice'),
        'bob': make_user(db, 'bob'),
        'carol': make_user(db, 'carol'),
    }


@pytest.fixture
def c1(store, users):
    """Direct conversation between alice and bob."""
    return make_conversation(store, 'c1', ['alice', 'bob'])


@pytest.fixture
def c2(store, users):
    """Direct conversation between alice and carol."""
    return make_conversation(store, 'c2', ['alice', 'carol'])


@pytest.fixture
def app_bundle(store):
    return create_app(store=store)


@pytest.fixture
def app(app_bundle):
    return app_bundle[0]


@pytest.fixture
def socketio(app_bundle):
    return app_bundle[1]


@pytest.fixture
def client(app):
    return app.test_client()


def token_for(user_id):
    return AuthSecurity.create_access_token(user_id)


def auth_headers(user_id):
    return {'Authorization': f'Bearer {token_for(user_id)}'}


@pytest.fixture
def connect(app, socketio):
    """Open an authenticated Socket.IO test connection for a user id."""
    opened = []

    def _connect(user_id=None, token=None, auth=None):
        if auth is None:
            auth = {'token': token if token is not None else token_for(user_id)}
        sock = socketio.test_client(app, auth=auth)
        opened.append(sock)
        return sock

    yield _connect
    for sock in opened:
        if sock.is_connected():
            sock.disconnect()


def rooms_of(socketio, sock):
    """Rooms a test client's connection is currently in."""
    sid = socketio.server.manager.sid_from_eio_sid(sock.eio_sid, '/')
    return set(socketio.server.rooms(sid, namespace='/'))
