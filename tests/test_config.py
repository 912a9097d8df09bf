import pytest

from config.settings import Config


@pytest.fixture
def cfg():
    return Config.reload()


def test_defaults(cfg, monkeypatch):
    for name in ('MESSAGE_MAX_LENGTH', 'GROUP_MAX_MEMBERS', 'PORT', 'CORS_ORIGINS', 'JWT_ALGORITHM'):
        monkeypatch.delenv(name, raising=False)
    assert cfg.MESSAGE_MAX_LENGTH == 2000
    assert cfg.GROUP_MAX_MEMBERS == 50
    assert cfg.DELETED_MESSAGE_PLACEHOLDER == '[Message deleted]'
    assert cfg.PORT == 5000
    assert cfg.JWT_ALGORITHM == 'HS256'
    assert cfg.CORS_ORIGINS_LIST == ['*']


def test_env_overrides_yaml(cfg, monkeypatch):
    monkeypatch.setenv('MESSAGE_MAX_LENGTH', '10')
    monkeypatch.setenv('CORS_ORIGINS', 'https://a.example, https://b.example')
    assert cfg.MESSAGE_MAX_LENGTH == 10
    assert cfg.CORS_ORIGINS_LIST == ['https://a.example', 'https://b.example']


def test_log_format_from_flags(cfg, monkeypatch):
    monkeypatch.delenv('LOG_PATTERN', raising=False)
    monkeypatch.setenv('LOG_INCLUDE_DATETIME', 'false')
    monkeypatch.setenv('LOG_INCLUDE_NAME', 'true')
    monkeypatch.setenv('LOG_INCLUDE_LEVEL', 'true')
    assert cfg.LOG_FORMAT == '%(name)s - %(levelname)s - %(message)s'


def test_validate_required_in_production(monkeypatch):
    monkeypatch.setenv('APP_ENV', 'prod')
    monkeypatch.delenv('FLASK_ENV', raising=False)
    monkeypatch.delenv('JWT_SECRET', raising=False)
    monkeypatch.delenv('MONGO_URI', raising=False)
    monkeypatch.delenv('CORS_ORIGINS', raising=False)
    cfg = Config.reload()
    try:
        with pytest.raises(RuntimeError, match='JWT_SECRET'):
            cfg.validate_required()
    finally:
        monkeypatch.delenv('APP_ENV')
        Config.reload()


def test_to_dict_masks_secrets(cfg, monkeypatch):
    monkeypatch.setenv('JWT_SECRET', 'super-secret')
    exported = cfg.to_dict()
    assert 'super-secret' not in repr(exported)
    assert exported['security']['jwt_secret_set'] is True


def test_message_length_setting_drives_validation(client, users, c1, monkeypatch):
    from tests.conftest import auth_headers
    monkeypatch.setenv('MESSAGE_MAX_LENGTH', '5')
    resp = client.post('/api/conversations/c1/messages', json={'content': 'too long'},
                       headers=auth_headers('alice'))
    assert resp.status_code == 400


class PinnedOrigins(Config):
    @property
    def CORS_ORIGINS(self):
        return 'https://chat.example'


def test_create_app_uses_passed_settings(store, monkeypatch):
    from server import create_app
    monkeypatch.delenv('CORS_ORIGINS', raising=False)
    settings = PinnedOrigins()

    app, socketio = create_app(store=store, settings=settings)
    client = app.test_client()

    allowed = client.get('/health', headers={'Origin': 'https://chat.example'})
    other = client.get('/health', headers={'Origin': 'https://elsewhere.example'})
    assert allowed.headers.get('Access-Control-Allow-Origin') == 'https://chat.example'
    assert 'Access-Control-Allow-Origin' not in other.headers
    assert socketio.server.eio.cors_allowed_origins == ['https://chat.example']
    assert app.extensions['chat']['service'].settings is settings
