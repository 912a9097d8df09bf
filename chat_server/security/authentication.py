import logging
from datetime import timedelta, datetime, timezone
from typing import Optional, Dict, Any

from jose import jwt, JWTError, ExpiredSignatureError

from chat_server.exception.AuthenticationError import AuthenticationError
from chat_server.exception.ChatError import StoreUnavailable
from chat_server.messaging.models import auth_projection

logger = logging.getLogger(__name__)


class AuthSecurity:
    secret_key = None
    algorithm = 'HS256'
    # Default: access token valid for 7 days
    access_token_expire_minutes = 7 * 24 * 60

    @classmethod
    def configure(cls, secret_key, algorithm='HS256', access_token_expire_minutes=7 * 24 * 60):
        cls.secret_key = secret_key
        cls.algorithm = algorithm
        cls.access_token_expire_minutes = access_token_expire_minutes

    @classmethod
    def encode_token(cls, data: dict, expires_delta: timedelta = None) -> str:
        to_encode = data.copy()
        expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=cls.access_token_expire_minutes))
        to_encode.update({"exp": expire})
        return jwt.encode(to_encode, cls.secret_key, algorithm=cls.algorithm)

    @classmethod
    def create_access_token(cls, user_id: str, expires_delta: timedelta = None) -> str:
        return cls.encode_token({'user_id': user_id}, expires_delta)

    @classmethod
    def decode_token(cls, token: str) -> dict:
        if not token or not isinstance(token, str) or token.count('.') != 2:
            raise AuthenticationError("Malformed or missing token")
        if not cls.secret_key:
            raise AuthenticationError("Token verification is not configured")
        try:
            return jwt.decode(token, cls.secret_key, algorithms=[cls.algorithm])
        except ExpiredSignatureError:
            raise AuthenticationError("Token expired")
        except JWTError as e:
            raise AuthenticationError(f"Invalid token: {e}")


class ConnectionAuthenticator:
    """Resolve a bearer token to a user projection.

    Shared by the Socket.IO handshake and the REST endpoints so both
    surfaces accept exactly the same tokens.
    """

    def __init__(self, store):
        self.store = store

    def authenticate(self, token: Optional[str]) -> Dict[str, Any]:
        if not token:
            raise AuthenticationError("Authentication error")
        payload = AuthSecurity.decode_token(token)
        user_id = payload.get('user_id')
        if not user_id:
            raise AuthenticationError("Invalid token: missing user_id claim")
        try:
            user_doc = self.store.find_user_by_id(str(user_id))
        except StoreUnavailable:
            logger.error("User lookup failed during authentication for user_id=%s", user_id)
            raise AuthenticationError("Authentication error")
        if not user_doc:
            logger.info("Authentication rejected: user %s not found", user_id)
            raise AuthenticationError("User not found")
        return auth_projection(user_doc)


def get_bearer_token(request) -> str:
    """Extract the Bearer token from the Authorization header."""
    auth_header = request.headers.get('Authorization')
    if not auth_header or not auth_header.startswith('Bearer '):
        raise AuthenticationError('Missing or invalid token')
    return auth_header.split(' ', 1)[1].strip()
