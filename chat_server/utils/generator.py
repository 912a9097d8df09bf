import uuid


def generate_id() -> str:
    """Opaque identifier used as `_id` for users, conversations and messages."""
    return uuid.uuid4().hex


def generate_message_id() -> str:
    return generate_id()


def generate_conversation_id() -> str:
    return generate_id()
