"""Errors raised by the messaging core.

Each error carries the HTTP status used by the REST surface; the socket
surface only forwards the message text to the calling connection.
"""


class ChatError(Exception):
    """Base class for messaging failures that are reported to the caller."""
    status = 400

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class NotFoundOrUnauthorized(ChatError):
    """Conversation/message does not exist or the caller is not a member.

    Both cases share one error so callers learn nothing about whether it exists.
    """
    status = 404

    def __init__(self, message='Conversation not found or unauthorized'):
        super().__init__(message)


class ForbiddenError(ChatError):
    """Caller is a member but may not act on this resource (e.g. someone else's message)."""
    status = 403


class ValidationError(ChatError):
    status = 400


class StoreUnavailable(ChatError):
    """The persistent store could not complete a read or write."""
    status = 503

    def __init__(self, message='Service temporarily unavailable'):
        super().__init__(message)


class TransportError(ChatError):
    """A broadcast failed after the data was persisted. Logged, never surfaced."""
    status = 500
