"""Presence tracking by live connection count.

A user is online while at least one authenticated connection is open.
The tracker keeps `user_id -> {sid}` in memory and writes `is_online` /
`last_seen` to the store only when the count crosses zero.

`track`/`untrack` only touch the in-memory map and never block, so the
hub can call them inside its own connection bookkeeping; `sync` does the
store write. `connection_opened`/`connection_closed` combine the two.
"""
import logging
import threading
from typing import Dict, Optional, Set

from chat_server.exception.ChatError import StoreUnavailable
from chat_server.utils.locks import KeyedLock
from chat_server.utils.time_utils import utc_now

logger = logging.getLogger(__name__)


class PresenceTracker:

    def __init__(self, store):
        self.store = store
        self._lock = threading.Lock()
        self._connections: Dict[str, Set[str]] = {}
        # Last state written per user; writes that would repeat it are skipped
        self._persisted: Dict[str, bool] = {}
        self._write_locks = KeyedLock()

    def connection_count(self, user_id: str) -> int:
        with self._lock:
            return len(self._connections.get(user_id, ()))

    def sids_for(self, user_id: str) -> Set[str]:
        with self._lock:
            return set(self._connections.get(user_id, ()))

    def is_online(self, user_id: str) -> bool:
        return self.connection_count(user_id) > 0

    def online_users(self) -> Set[str]:
        with self._lock:
            return {uid for uid, sids in self._connections.items() if sids}

    def track(self, user_id: str, sid: str) -> bool:
        """Add a connection. True when it is the user's first."""
        with self._lock:
            sids = self._connections.setdefault(user_id, set())
            if sid in sids:
                return False
            sids.add(sid)
            became_online = len(sids) == 1
        logger.debug("Connection %s opened for user %s (became_online=%s)", sid, user_id, became_online)
        return became_online

    def untrack(self, user_id: str, sid: str) -> bool:
        """Remove a connection. True when it was the user's last."""
        with self._lock:
            sids = self._connections.get(user_id)
            if not sids or sid not in sids:
                # Unknown or already-closed connection: count stays floored at zero
                logger.debug("Close for untracked connection %s of user %s ignored", sid, user_id)
                return False
            sids.discard(sid)
            if sids:
                return False
            del self._connections[user_id]
        return True

    def connection_opened(self, user_id: str, sid: str) -> Optional[dict]:
        """Register a connection. Returns the persisted presence on a 0->1 transition."""
        if not self.track(user_id, sid):
            return None
        return self.sync(user_id)

    def connection_closed(self, user_id: str, sid: str) -> Optional[dict]:
        """Unregister a connection. Returns the persisted presence on a 1->0 transition."""
        if not self.untrack(user_id, sid):
            return None
        return self.sync(user_id)

    def sync(self, user_id: str) -> Optional[dict]:
        """Write the user's current online state unless it is already stored.

        The write reflects the count at write time, so a reconnect racing an
        offline write can never leave the user stored as offline.
        """
        with self._write_locks.hold(user_id):
            online = self.is_online(user_id)
            if self._persisted.get(user_id) == online:
                return None
            last_seen = utc_now()
            try:
                self.store.update_user_presence(user_id, online, last_seen)
            except StoreUnavailable:
                logger.exception("Presence write failed for user %s (online=%s)", user_id, online)
                return None
            if online:
                self._persisted[user_id] = True
            else:
                self._persisted.pop(user_id, None)
            logger.info("User %s is now %s", user_id, "online" if online else "offline")
            return {'userId': user_id, 'isOnline': online, 'lastSeen': last_seen}
