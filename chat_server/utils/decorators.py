"""Route decorators for error handling and authentication.

Usage:
    @chat_bp.route('/conversations')
    @handle_errors
    @require_auth
    def list_conversations(current_user):
        ...
"""
import functools
import logging
from typing import Callable

from flask import request, current_app

from chat_server.exception.AuthenticationError import AuthenticationError
from chat_server.exception.ChatError import ChatError, StoreUnavailable
from chat_server.security.authentication import get_bearer_token
from chat_server.utils.helpers import respond_error

logger = logging.getLogger(__name__)


def handle_errors(func: Callable) -> Callable:
    """Map exceptions raised by a route to the JSON error envelope.

    - AuthenticationError -> 401
    - ChatError subclasses -> their own status (400/403/404/503)
    - anything else -> 500 'Server error'
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except AuthenticationError as e:
            logger.warning("Unauthorized: %s", e.message)
            return respond_error(e.message, status=e.status)
        except StoreUnavailable as e:
            logger.error("Store unavailable in %s", func.__name__)
            return respond_error(e.message, status=e.status)
        except ChatError as e:
            logger.warning("%s in %s: %s", type(e).__name__, func.__name__, e.message)
            return respond_error(e.message, status=e.status)
        except Exception:
            logger.exception("Unexpected error in %s", func.__name__)
            return respond_error('Server error', status=500)
    return wrapper


def require_auth(func: Callable) -> Callable:
    """Resolve the bearer token to a user and inject it as `current_user`."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        authenticator = current_app.extensions['chat']['authenticator']
        kwargs['current_user'] = authenticator.authenticate(get_bearer_token(request))
        return func(*args, **kwargs)
    return wrapper


def log_request(func: Callable) -> Callable:
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger.debug("%s %s called", request.method, request.path)
        return func(*args, **kwargs)
    return wrapper


def protected_route(func: Callable) -> Callable:
    """Composite decorator: handle_errors + require_auth + log_request."""
    return handle_errors(require_auth(log_request(func)))
