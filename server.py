import argparse
import logging

from flask import Flask
from flask_cors import CORS
from flask_socketio import SocketIO

from config import config
from chat_server.messaging.repository import ChatStore
from chat_server.messaging.service import MessagingService
from chat_server.repository.mongo_helper import get_db
from chat_server.routes.chat import chat_bp
from chat_server.security.authentication import AuthSecurity, ConnectionAuthenticator
from chat_server.exception.ChatError import StoreUnavailable
from chat_server.utils.helpers import respond_success
from chat_server.utils.time_utils import utc_now, to_iso
from chat_server.websocket.event_emitter import SocketIOBroadcaster
from chat_server.websocket.hub import init_websocket_hub
from chat_server.websocket.presence import PresenceTracker
from chat_server.websocket.rooms import RoomMembershipManager

logger = logging.getLogger(__name__)


def configure_logging():
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format=config.LOG_FORMAT,
        datefmt=config.LOG_DATE_FORMAT,
    )


def configure_auth_from_config():
    """Configure AuthSecurity from config (JWT_SECRET is required)."""
    secret = config.JWT_SECRET
    if not secret:
        raise RuntimeError('JWT_SECRET environment variable is required')
    AuthSecurity.configure(
        secret_key=secret,
        algorithm=config.JWT_ALGORITHM,
        access_token_expire_minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES,
    )


def _socketio_origins(settings):
    origins = settings.CORS_ORIGINS_LIST
    return '*' if origins == ['*'] else origins


def create_app(store: ChatStore = None, settings=None):
    """Application factory used by main() and tests.

    Returns (app, socketio). A store is built from MONGO_URI unless one is
    passed in. Each call creates its own SocketIO server and components.
    """
    settings = settings or config
    app = Flask(__name__)
    CORS(app, origins=settings.CORS_ORIGINS_LIST)

    if store is None:
        store = ChatStore(get_db())
        try:
            store.ensure_indexes()
        except StoreUnavailable:
            logger.warning("Could not ensure chat indexes at startup")

    socketio = SocketIO(
        app,
        async_mode=settings.SOCKETIO_ASYNC_MODE,
        cors_allowed_origins=_socketio_origins(settings),
        message_queue=settings.SOCKETIO_MESSAGE_QUEUE,
    )
    broadcaster = SocketIOBroadcaster(socketio)
    authenticator = ConnectionAuthenticator(store)
    presence = PresenceTracker(store)
    rooms = RoomMembershipManager(store, broadcaster)

    hub = None
    service = MessagingService(store, broadcaster, rooms=rooms,
                               sessions=lambda user_id: hub.sessions_for(user_id), settings=settings)
    hub = init_websocket_hub(
        app, socketio, service,
        authenticator=authenticator, presence=presence, rooms=rooms, broadcaster=broadcaster, store=store,
    )

    app.extensions['chat'] = {
        'store': store,
        'service': service,
        'authenticator': authenticator,
        'presence': presence,
        'rooms': rooms,
        'broadcaster': broadcaster,
        'hub': hub,
        'socketio': socketio,
    }
    app.register_blueprint(chat_bp)

    @app.route('/health')
    def health():
        return respond_success({'status': 'ok', 'timestamp': to_iso(utc_now())})

    return app, socketio


def parse_args():
    parser = argparse.ArgumentParser(description='Run the chat realtime server')
    parser.add_argument('--port', type=int, default=config.PORT, help='TCP port to bind (default: 5000 or PORT env)')
    parser.add_argument('--host', default='0.0.0.0', help='Interface to bind')
    return parser.parse_args()


def main():
    configure_logging()
    config.validate_required()
    configure_auth_from_config()
    args = parse_args()
    app, socketio = create_app()
    logger.info('Starting %s with Socket.IO on port %s', config.APP_NAME, args.port)
    run_kwargs = {}
    if socketio.async_mode == 'threading':
        run_kwargs['allow_unsafe_werkzeug'] = True
    socketio.run(app, host=args.host, port=args.port, debug=config.DEBUG, **run_kwargs)


if __name__ == "__main__":
    main()
