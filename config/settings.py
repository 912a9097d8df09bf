"""Chat server settings.

Layers, later ones winning:
    config/config.base.yaml
    config/config.{dev,staging,prod}.yaml   (picked by FLASK_ENV / APP_ENV)
    config/config.local.yaml                (untracked, per machine)
    environment variables

    from config.settings import config
    config.MESSAGE_MAX_LENGTH
"""
import os
from pathlib import Path
from typing import Optional, Any, Dict
import yaml


CONFIG_DIR = Path(__file__).parent

ENV_ALIASES = {
    'dev': 'development',
    'development': 'development',
    'stage': 'staging',
    'staging': 'staging',
    'prod': 'production',
    'production': 'production',
}
ENV_FILES = {
    'development': 'config.dev.yaml',
    'staging': 'config.staging.yaml',
    'production': 'config.prod.yaml',
}
DEFAULT_ENV = 'development'

DEFAULT_MONGO_URI = 'mongodb://localhost:27017'


def _env_flag(name: str) -> Optional[bool]:
    """Parse a boolean environment variable, None when unset."""
    env_val = os.getenv(name, '').lower()
    if env_val:
        return env_val in ('1', 'true', 'yes')
    return None


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, 'r') as f:
        return yaml.safe_load(f) or {}


def _merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Config:
    """Process-wide settings; YAML is read once, env vars on every access."""

    _data: Dict[str, Any] = {}
    _loaded: bool = False
    _env: str = DEFAULT_ENV

    def __init__(self):
        if not Config._loaded:
            self._load()

    @staticmethod
    def _resolve_env() -> str:
        name = (os.getenv('FLASK_ENV') or os.getenv('APP_ENV') or DEFAULT_ENV).strip().lower()
        return ENV_ALIASES.get(name, DEFAULT_ENV)

    def _load(self):
        Config._env = self._resolve_env()
        data: Dict[str, Any] = {}
        for filename in ('config.base.yaml', ENV_FILES[Config._env], 'config.local.yaml'):
            data = _merge(data, _read_yaml(CONFIG_DIR / filename))
        Config._data = data
        Config._loaded = True

    @classmethod
    def reload(cls) -> 'Config':
        """Re-read the YAML layers (tests switch environments with this)."""
        cls._loaded = False
        cls._data = {}
        return cls()

    def _yaml(self, *keys, default=None) -> Any:
        node = Config._data
        for key in keys:
            if not isinstance(node, dict) or node.get(key) is None:
                return default
            node = node[key]
        return node

    def _str(self, env_name: Optional[str], *keys, default=None) -> Optional[str]:
        if env_name and os.getenv(env_name):
            return os.getenv(env_name)
        return self._yaml(*keys, default=default)

    def _int(self, env_name: str, *keys, default: int) -> int:
        env_val = os.getenv(env_name)
        if env_val:
            return int(env_val)
        return int(self._yaml(*keys, default=default))

    def _bool(self, env_name: str, *keys, default: bool) -> bool:
        flag = _env_flag(env_name)
        if flag is not None:
            return flag
        return bool(self._yaml(*keys, default=default))

    # ==========================================================================
    # Environment
    # ==========================================================================

    @property
    def CURRENT_ENV(self) -> str:
        return Config._env

    ENV = CURRENT_ENV

    @property
    def IS_DEV(self) -> bool:
        return Config._env == 'development'

    @property
    def IS_STAGING(self) -> bool:
        return Config._env == 'staging'

    @property
    def IS_PROD(self) -> bool:
        return Config._env == 'production'

    # ==========================================================================
    # Application
    # ==========================================================================

    @property
    def DEBUG(self) -> bool:
        return self._bool('FLASK_DEBUG', 'app', 'debug', default=False)

    @property
    def PORT(self) -> int:
        return self._int('PORT', 'app', 'port', default=5000)

    @property
    def APP_NAME(self) -> str:
        return self._str('APP_NAME', 'app', 'name', default='Chat Realtime API')

    @property
    def APP_VERSION(self) -> str:
        return str(self._yaml('app', 'version', default='1.0.0'))

    # ==========================================================================
    # Security
    # ==========================================================================

    @property
    def JWT_SECRET(self) -> Optional[str]:
        """Secret used to sign and verify bearer tokens."""
        return self._str('JWT_SECRET', 'security', 'jwt', 'secret')

    @property
    def JWT_ALGORITHM(self) -> str:
        return self._str('JWT_ALGORITHM', 'security', 'jwt', 'algorithm', default='HS256')

    @property
    def ACCESS_TOKEN_EXPIRE_MINUTES(self) -> int:
        """Access token lifetime, 7 days unless overridden."""
        return self._int('ACCESS_TOKEN_MINUTES', 'security', 'jwt', 'access_token_expire_minutes',
                         default=7 * 24 * 60)

    # ==========================================================================
    # Database
    # ==========================================================================

    @property
    def MONGO_URI(self) -> str:
        return self._str('MONGO_URI', 'database', 'mongo_uri', default=DEFAULT_MONGO_URI)

    @property
    def CHAT_DB_NAME(self) -> str:
        return self._str('CHAT_DB_NAME', 'database', 'name', default='chat_db')

    # ==========================================================================
    # CORS / Socket.IO
    # ==========================================================================

    @property
    def CORS_ORIGINS(self) -> str:
        return self._str('CORS_ORIGINS', 'cors', 'origins', default='*')

    @property
    def CORS_ORIGINS_LIST(self) -> list:
        origins = self.CORS_ORIGINS
        if origins == '*':
            return ['*']
        return [o.strip() for o in origins.split(',') if o.strip()]

    @property
    def SOCKETIO_ASYNC_MODE(self) -> str:
        return self._str('SOCKETIO_ASYNC_MODE', 'socketio', 'async_mode', default='threading')

    @property
    def SOCKETIO_MESSAGE_QUEUE(self) -> Optional[str]:
        """Shared pub/sub URL for multi-process room broadcast (e.g. redis://...)."""
        return self._str('SOCKETIO_MESSAGE_QUEUE', 'socketio', 'message_queue')

    # ==========================================================================
    # Chat
    # ==========================================================================

    @property
    def MESSAGE_MAX_LENGTH(self) -> int:
        return self._int('MESSAGE_MAX_LENGTH', 'chat', 'message_max_length', default=2000)

    @property
    def MESSAGE_EDIT_WINDOW_MINUTES(self) -> int:
        return self._int('MESSAGE_EDIT_WINDOW_MINUTES', 'chat', 'edit_window_minutes', default=15)

    @property
    def GROUP_MAX_MEMBERS(self) -> int:
        return self._int('GROUP_MAX_MEMBERS', 'chat', 'group_max_members', default=50)

    @property
    def MESSAGES_PAGE_SIZE(self) -> int:
        return self._int('MESSAGES_PAGE_SIZE', 'chat', 'page_size', default=50)

    @property
    def CONVERSATIONS_PAGE_SIZE(self) -> int:
        return self._int('CONVERSATIONS_PAGE_SIZE', 'chat', 'conversations_page_size', default=20)

    @property
    def DELETED_MESSAGE_PLACEHOLDER(self) -> str:
        return self._yaml('chat', 'deleted_placeholder', default='[Message deleted]')

    # ==========================================================================
    # Logging
    # ==========================================================================

    @property
    def LOG_DEBUG(self) -> bool:
        return self._bool('LOG_DEBUG', 'logging', 'debug', default=False)

    @property
    def LOG_LEVEL(self) -> str:
        env_val = os.getenv('LOG_LEVEL')
        if env_val:
            return env_val.upper()
        if self.LOG_DEBUG:
            return 'DEBUG'
        return str(self._yaml('logging', 'level', default='INFO')).upper()

    @property
    def LOG_PATTERN(self) -> Optional[str]:
        """Explicit format string; overrides the include_* flags when set."""
        return self._str('LOG_PATTERN', 'logging', 'pattern')

    @property
    def LOG_INCLUDE_DATETIME(self) -> bool:
        return self._bool('LOG_INCLUDE_DATETIME', 'logging', 'include_datetime', default=False)

    @property
    def LOG_INCLUDE_NAME(self) -> bool:
        return self._bool('LOG_INCLUDE_NAME', 'logging', 'include_name', default=False)

    @property
    def LOG_INCLUDE_LEVEL(self) -> bool:
        return self._bool('LOG_INCLUDE_LEVEL', 'logging', 'include_level', default=True)

    @property
    def LOG_DATE_FORMAT(self) -> str:
        return self._yaml('logging', 'date_format', default='%H:%M:%S')

    @property
    def LOG_FORMAT(self) -> str:
        if self.LOG_PATTERN:
            return self.LOG_PATTERN
        fields = [
            ('%(asctime)s', self.LOG_INCLUDE_DATETIME),
            ('%(name)s', self.LOG_INCLUDE_NAME),
            ('%(levelname)s', self.LOG_INCLUDE_LEVEL),
        ]
        return ' - '.join([f for f, enabled in fields if enabled] + ['%(message)s'])

    # ==========================================================================
    # Validation / export
    # ==========================================================================

    def validate_required(self) -> None:
        """Raise RuntimeError listing every unsafe production setting."""
        if not self.IS_PROD:
            return
        errors = []
        if not self.JWT_SECRET:
            errors.append('JWT_SECRET environment variable is required in production')
        if self.MONGO_URI == DEFAULT_MONGO_URI:
            errors.append('MONGO_URI must point at the production database')
        if self.CORS_ORIGINS == '*':
            errors.append('CORS_ORIGINS should not be "*" in production')
        if errors:
            raise RuntimeError('Configuration errors:\n' + '\n'.join(f'  - {e}' for e in errors))

    def to_dict(self) -> Dict[str, Any]:
        """Effective configuration with secrets masked."""
        return {
            'environment': self.CURRENT_ENV,
            'app': {'debug': self.DEBUG, 'port': self.PORT, 'name': self.APP_NAME, 'version': self.APP_VERSION},
            'security': {
                'jwt_algorithm': self.JWT_ALGORITHM,
                'access_token_expire_minutes': self.ACCESS_TOKEN_EXPIRE_MINUTES,
                'jwt_secret_set': bool(self.JWT_SECRET),
            },
            'database': {'mongo_uri': '***' if self.MONGO_URI else None, 'name': self.CHAT_DB_NAME},
            'cors': {'origins': self.CORS_ORIGINS},
            'socketio': {
                'async_mode': self.SOCKETIO_ASYNC_MODE,
                'message_queue': '***' if self.SOCKETIO_MESSAGE_QUEUE else None,
            },
            'chat': {
                'message_max_length': self.MESSAGE_MAX_LENGTH,
                'edit_window_minutes': self.MESSAGE_EDIT_WINDOW_MINUTES,
                'group_max_members': self.GROUP_MAX_MEMBERS,
                'page_size': self.MESSAGES_PAGE_SIZE,
                'conversations_page_size': self.CONVERSATIONS_PAGE_SIZE,
            },
            'logging': {'level': self.LOG_LEVEL, 'format': self.LOG_FORMAT},
        }


config = Config()


def get_env() -> str:
    return config.CURRENT_ENV


def is_dev() -> bool:
    return config.IS_DEV


def is_prod() -> bool:
    return config.IS_PROD
