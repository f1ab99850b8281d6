"""
sessions/store.py -- SQLite-backed key-value store for login sessions.

Sessions live in their own database file so they survive process restarts and
can be shared by several worker processes on one host. Rows are keyed by the
HMAC of the bearer token (see auth/hashing.session_key); raw tokens never
reach this module.

Single-session guarantee at the storage level:
  identity_id is UNIQUE and put() uses INSERT OR REPLACE. SQLite's REPLACE
  conflict resolution deletes every row that collides on ANY unique
  constraint, so writing a new session for an identity atomically removes
  the previous one even when two processes race. The table can never hold
  two rows for one identity.

Thread safety: one connection is shared by all request threads, so every
statement runs under self._lock. Lock waits on the database file are bounded
by the sqlite3 busy timeout and surface as StoreUnavailable.

Usage:
    store = SessionStore("/var/lib/jydoc/sessions.db")
    store.put(key, Session(key=key, identity_id=7, created_at=now, last_access_at=now), ttl=1800)
    store.get(key)                       # Session or None
    store.delete_all_by_identity(7)      # logout everywhere
    store.purge_expired(time.time())     # call periodically to trim old rows
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

from auth.errors import StoreUnavailable
from auth.models import Session
from core.config import get_settings

logger = logging.getLogger("jydoc.sessions")

_DDL = """
CREATE TABLE IF NOT EXISTS sessions (
    session_key     TEXT PRIMARY KEY,
    identity_id     INTEGER NOT NULL UNIQUE,
    created_at      REAL NOT NULL,
    last_access_at  REAL NOT NULL,
    expires_at      REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_sessions_expires_at ON sessions (expires_at);
"""

_COLUMNS = "session_key, identity_id, created_at, last_access_at, expires_at"


class SessionStore:
    def __init__(self, db_path: Optional[str] = None, timeout: Optional[float] = None) -> None:
        settings = get_settings()
        db_path = str(db_path or settings.session_db_path)
        timeout = settings.store_timeout_seconds if timeout is None else timeout
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False, timeout=timeout)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_DDL)
        self._conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize access to the shared connection and commit or roll back as a unit."""
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.OperationalError as exc:
                logger.error("Session store unavailable: %s", exc)
                raise StoreUnavailable() from exc

    def put(self, key: str, session: Session, ttl: float) -> None:
        """Store session under key, expiring ttl seconds after its last access.

        Replaces any row with the same key or the same identity_id.
        """
        session.expires_at = session.last_access_at + ttl
        with self._transaction() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO sessions ({_COLUMNS}) VALUES (?, ?, ?, ?, ?)",  # noqa: S608
                (key, session.identity_id, session.created_at, session.last_access_at, session.expires_at),
            )

    def get(self, key: str) -> Optional[Session]:
        """Return the stored session for key, expired or not. None if absent."""
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM sessions WHERE session_key = ?",  # noqa: S608
                (key,),
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def refresh(self, key: str, last_access_at: float, ttl: float) -> bool:
        """Slide the expiry of a still-live session forward.

        The WHERE clause only matches a row that has not yet expired at
        last_access_at, so an expired or concurrently deleted session is
        never revived. Returns True if a row was refreshed.
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE sessions SET last_access_at = ?, expires_at = ? WHERE session_key = ? AND expires_at > ?",
                (last_access_at, last_access_at + ttl, key, last_access_at),
            )
        return cursor.rowcount > 0

    def delete(self, key: str) -> bool:
        """Remove one session. Returns False if it was already gone."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE session_key = ?", (key,))
        return cursor.rowcount > 0

    def delete_all_by_identity(self, identity_id: int) -> int:
        """Remove every session owned by identity_id. Returns rows removed."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE identity_id = ?", (identity_id,))
        return cursor.rowcount

    def count_for(self, identity_id: int, now: float) -> int:
        """Return the number of unexpired sessions held by identity_id."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM sessions WHERE identity_id = ? AND expires_at > ?",
                (identity_id, now),
            ).fetchone()
        return row[0]

    def purge_expired(self, now: float) -> int:
        """Delete all sessions that expired at or before now. Returns rows removed."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE expires_at <= ?", (now,))
        return cursor.rowcount

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def _row_to_session(row) -> Session:
    key, identity_id, created_at, last_access_at, expires_at = row
    return Session(
        key=key,
        identity_id=identity_id,
        created_at=created_at,
        last_access_at=last_access_at,
        expires_at=expires_at,
    )
