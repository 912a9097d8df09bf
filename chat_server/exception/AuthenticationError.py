class AuthenticationError(Exception):
    """Raised when a bearer credential is missing, malformed, expired, or names an unknown user."""
    status = 401

    def __init__(self, message='Authentication error'):
        super().__init__(message)
        self.message = message
