"""Realtime chat: authenticated Socket.IO channel, presence, rooms and message fanout."""
