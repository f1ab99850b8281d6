"""
sessions/manager.py -- Session lifecycle: issue, touch, invalidate.

Per identity the lifecycle is NONE -> ACTIVE -> (EXPIRED | INVALIDATED).
ACTIVE is a row in the session store whose expires_at lies in the future.
EXPIRED rows are removed the first time they are touched (or by the periodic
purge); INVALIDATED rows are removed immediately. Either way the token stops
resolving.

Single-session policy: issue() evicts every earlier session for the identity
before storing the new one, so logging in from a second location logs the
first one out. Two concurrent issue() calls for the same identity are
serialized on a striped per-identity lock; across processes the store's
UNIQUE(identity_id) + INSERT OR REPLACE gives last-writer-wins. Either way
exactly one session survives.

Tokens: secrets.token_urlsafe(32) (256 bits). Only HMAC(SECRET_KEY, token)
is stored. Logs identify a session by the first 8 hex chars of that HMAC,
never by the token.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from collections.abc import Callable

from auth.errors import SessionNotFound
from auth.hashing import session_key
from auth.models import Identity, Session
from auth.store import UserStore
from core.config import Settings, get_settings
from sessions.store import SessionStore

logger = logging.getLogger("jydoc.sessions")

# Identities share a fixed set of locks; two ids on one stripe only wait on each other.
_LOCK_STRIPES = 64


class SessionManager:
    """Issues and resolves bearer tokens bound to identities.

    clock is injectable so tests can move time forward without sleeping.
    """

    def __init__(
        self,
        store: SessionStore,
        users: UserStore,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._users = users
        self._settings = settings or get_settings()
        self._clock = clock
        self._locks = tuple(threading.Lock() for _ in range(_LOCK_STRIPES))

    @property
    def idle_timeout(self) -> int:
        return self._settings.session_idle_timeout

    def _key(self, token: str) -> str:
        return session_key(self._settings.secret_key, token)

    def _lock_for(self, identity_id: int) -> threading.Lock:
        return self._locks[identity_id % _LOCK_STRIPES]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def issue(self, identity: Identity) -> str:
        """Start a new session for identity and return its bearer token.

        Any session previously issued to the identity stops resolving.
        """
        token = secrets.token_urlsafe(32)
        key = self._key(token)
        with self._lock_for(identity.id):
            now = self._clock()
            evicted = self._store.delete_all_by_identity(identity.id)
            self._store.put(
                key,
                Session(key=key, identity_id=identity.id, created_at=now, last_access_at=now),
                ttl=self.idle_timeout,
            )
        if evicted:
            logger.info("Evicted %d earlier session(s) for identity %s", evicted, identity.id)
        logger.info("Issued session %s for identity %s", key[:8], identity.id)
        return token

    def touch(self, token: str | None) -> Identity | None:
        """Resolve token to its identity and slide the idle timeout forward.

        Returns None for an unknown, invalidated or expired token, and for a
        session whose identity no longer exists.
        """
        if not token:
            return None
        key = self._key(token)
        session = self._store.get(key)
        if session is None:
            return None

        now = self._clock()
        if session.expires_at <= now:
            self._store.delete(key)
            logger.info("Session %s expired for identity %s", key[:8], session.identity_id)
            return None
        if not self._store.refresh(key, now, self.idle_timeout):
            # Deleted or superseded between the read and the refresh.
            return None

        identity = self._users.get_by_id(session.identity_id)
        if identity is None:
            self._store.delete(key)
            logger.warning("Dropped session %s for missing identity %s", key[:8], session.identity_id)
        return identity

    def resolve(self, token: str | None) -> Identity:
        """Like touch() but raises SessionNotFound instead of returning None."""
        identity = self.touch(token)
        if identity is None:
            raise SessionNotFound()
        return identity

    def invalidate(self, token: str | None) -> None:
        """End one session (logout). Invalidating twice is a no-op."""
        if not token:
            return
        key = self._key(token)
        if self._store.delete(key):
            logger.info("Invalidated session %s", key[:8])

    def invalidate_all_for(self, identity_id: int) -> int:
        """End every session held by identity_id. Returns how many were ended."""
        with self._lock_for(identity_id):
            removed = self._store.delete_all_by_identity(identity_id)
        if removed:
            logger.info("Invalidated %d session(s) for identity %s", removed, identity_id)
        return removed

    # ------------------------------------------------------------------
    # Queries and housekeeping
    # ------------------------------------------------------------------

    def active_count(self, identity_id: int) -> int:
        return self._store.count_for(identity_id, self._clock())

    def purge_expired(self) -> int:
        """Drop every expired session. Returns rows removed."""
        removed = self._store.purge_expired(self._clock())
        if removed:
            logger.info("Purged %d expired session(s)", removed)
        return removed
