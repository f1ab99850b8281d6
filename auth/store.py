"""
auth/store.py -- SQLAlchemy Core persistence layer for identities and authorities.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_identity
is the mapper. Service and route code never touches SQL directly.

Race safety lives here, not in the service layer:
  users.username_key (lower-cased username) and users.email carry UNIQUE
  constraints. create_identity() inserts the user row and its role links in a
  single transaction and turns the IntegrityError of a lost race into
  DuplicateUsername / DuplicateEmail. Nothing is left half-written.

  authorities.name is UNIQUE. find_or_create_authority() does SELECT, then
  INSERT, and on IntegrityError re-SELECTs the row the winning caller wrote.
  Any number of concurrent callers converge on one record.

Availability:
  Every connection uses a bounded SQLite busy timeout. OperationalError (lock
  wait exceeded, unreadable file) is raised as StoreUnavailable so callers can
  retry; it is never mistaken for "user not found".

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or sessions/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from auth.errors import DuplicateEmail, DuplicateUsername, IdentityNotFound, StoreUnavailable
from auth.models import Authority, Identity
from core.config import get_settings

logger = logging.getLogger("jydoc.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(20), nullable=False),  # display form, case preserved
    Column("username_key", String(20), nullable=False, unique=True),  # lower(username)
    Column("email", String(255), nullable=False, unique=True),  # stored lower-cased
    Column("password_hash", Text, nullable=False),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("enabled", Boolean, nullable=False, server_default="1"),
    Column("account_non_expired", Boolean, nullable=False, server_default="1"),
    Column("account_non_locked", Boolean, nullable=False, server_default="1"),
    Column("credentials_non_expired", Boolean, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
    sqlite_autoincrement=True,
)

_authorities = Table(
    "authorities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
    sqlite_autoincrement=True,
)

_user_authorities = Table(
    "user_authorities",
    _metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("authority_id", Integer, ForeignKey("authorities.id"), primary_key=True),
)

# Columns update_identity() may touch. id, username and created_at are immutable.
_MUTABLE_FIELDS = frozenset(
    {
        "email",
        "password_hash",
        "first_name",
        "last_name",
        "enabled",
        "account_non_expired",
        "account_non_locked",
        "credentials_non_expired",
    }
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _duplicate_from(exc: IntegrityError) -> DuplicateUsername | DuplicateEmail | None:
    """Work out which UNIQUE constraint an insert/update tripped over."""
    message = str(exc.orig)
    if "users.email" in message:
        return DuplicateEmail()
    if "users.username_key" in message:
        return DuplicateUsername()
    return None


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for Identity and Authority records.

    Usage:
        store = UserStore()
        role = store.find_or_create_authority("ROLE_USER")
        alice = store.create_identity(Identity(username="alice", ...), [role])
        store.find_by_username_or_email("ALICE")
        store.close()
    """

    def __init__(self, db_url: str | None = None, timeout: float | None = None) -> None:
        settings = get_settings()
        db_url = db_url or settings.database_url
        timeout = settings.store_timeout_seconds if timeout is None else timeout
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = timeout
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        with self._connect(begin=True) as conn:
            _metadata.create_all(conn)

    @contextmanager
    def _connect(self, begin: bool = False) -> Iterator[Connection]:
        """Yield a connection, translating driver outages into StoreUnavailable.

        begin=True wraps the block in a transaction that commits on exit and
        rolls back on any exception.
        """
        try:
            if begin:
                with self.engine.begin() as conn:
                    yield conn
            else:
                with self.engine.connect() as conn:
                    yield conn
        except OperationalError as exc:
            logger.error("Auth store unavailable: %s", exc.orig)
            raise StoreUnavailable() from exc

    # ------------------------------------------------------------------
    # Identity queries
    # ------------------------------------------------------------------

    def get_by_id(self, identity_id: int) -> Identity | None:
        """Look up an identity by primary key. Returns None if not found."""
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == identity_id)).fetchone()
            return self._hydrate(conn, row)

    def get_by_username(self, username: str) -> Identity | None:
        """Look up an identity by username, ignoring case and surrounding blanks."""
        with self._connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username_key == username.strip().lower())).fetchone()
            return self._hydrate(conn, row)

    def find_by_username_or_email(self, credential: str) -> Identity | None:
        """Look up an identity by username OR email, case-insensitively.

        If one account's username equals another account's email, the
        username match wins so a login never lands on a different account
        than the one named.
        """
        key = credential.strip().lower()
        with self._connect() as conn:
            rows = conn.execute(
                _users.select().where(or_(_users.c.username_key == key, _users.c.email == key))
            ).fetchall()
            if not rows:
                return None
            row = next((r for r in rows if r.username_key == key), rows[0])
            return self._hydrate(conn, row)

    def exists_by_username(self, username: str) -> bool:
        with self._connect() as conn:
            found = conn.execute(
                select(_users.c.id).where(_users.c.username_key == username.strip().lower())
            ).first()
        return found is not None

    def exists_by_email(self, email: str) -> bool:
        with self._connect() as conn:
            found = conn.execute(select(_users.c.id).where(_users.c.email == email.strip().lower())).first()
        return found is not None

    def list_identities(self) -> list[Identity]:
        """Return all identities ordered by username. Admin-only operation."""
        with self._connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username_key)).fetchall()
            links = self._authorities_for(conn, [r.id for r in rows])
        return [_row_to_identity(r, links.get(r.id, frozenset())) for r in rows]

    def count_identities(self) -> int:
        with self._connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Identity writes
    # ------------------------------------------------------------------

    def create_identity(self, identity: Identity, authorities: Iterable[Authority]) -> Identity:
        """Insert an identity plus its authority links as one atomic unit.

        Raises DuplicateUsername / DuplicateEmail when a UNIQUE constraint
        fires, including when a concurrent registration won the race after
        the caller's pre-check. The transaction is rolled back first.
        """
        authorities = list(authorities)
        try:
            with self._connect(begin=True) as conn:
                result = conn.execute(
                    _users.insert().values(
                        username=identity.username,
                        username_key=identity.username.lower(),
                        email=identity.email,
                        password_hash=identity.password_hash,
                        first_name=identity.first_name,
                        last_name=identity.last_name,
                        enabled=identity.enabled,
                        account_non_expired=identity.account_non_expired,
                        account_non_locked=identity.account_non_locked,
                        credentials_non_expired=identity.credentials_non_expired,
                        created_at=_now_iso(),
                    )
                )
                identity_id = result.inserted_primary_key[0]
                for authority in authorities:
                    conn.execute(_user_authorities.insert().values(user_id=identity_id, authority_id=authority.id))
        except IntegrityError as exc:
            duplicate = _duplicate_from(exc)
            if duplicate is None:
                raise
            logger.info("Rejected duplicate %s on insert", duplicate.field)
            raise duplicate from exc

        created = self.get_by_id(identity_id)
        if created is None:
            raise IdentityNotFound("User not found after write.")
        return created

    def save(self, identity: Identity) -> Identity:
        """Persist every mutable column of an existing identity and return the stored form."""
        if identity.id is None:
            raise ValueError("save() needs a persisted identity; use create_identity() for new ones")
        updated = self.update_identity(
            identity.id,
            email=identity.email,
            password_hash=identity.password_hash,
            first_name=identity.first_name,
            last_name=identity.last_name,
            enabled=identity.enabled,
            account_non_expired=identity.account_non_expired,
            account_non_locked=identity.account_non_locked,
            credentials_non_expired=identity.credentials_non_expired,
        )
        stored = self.get_by_id(identity.id) if updated else None
        if stored is None:
            raise IdentityNotFound()
        return stored

    def update_identity(self, identity_id: int, **fields) -> bool:
        """Update mutable fields on an existing identity.

        Only keys in _MUTABLE_FIELDS are accepted; unknown keys raise
        ValueError rather than being ignored. Returns True if the identity
        exists, False if identity_id was not found.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown identity fields: {unknown!r}")
        if not fields:
            return self.get_by_id(identity_id) is not None
        try:
            with self._connect(begin=True) as conn:
                result = conn.execute(_users.update().where(_users.c.id == identity_id).values(**fields))
        except IntegrityError as exc:
            duplicate = _duplicate_from(exc)
            if duplicate is None:
                raise
            raise duplicate from exc
        return result.rowcount > 0

    def delete_identity(self, identity_id: int) -> bool:
        """Permanently delete an identity and its role links. Returns False if absent."""
        with self._connect(begin=True) as conn:
            conn.execute(_user_authorities.delete().where(_user_authorities.c.user_id == identity_id))
            result = conn.execute(_users.delete().where(_users.c.id == identity_id))
        return result.rowcount > 0

    def update_last_login(self, identity_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given identity."""
        with self._connect(begin=True) as conn:
            conn.execute(_users.update().where(_users.c.id == identity_id).values(last_login=_now_iso()))

    # ------------------------------------------------------------------
    # Authorities
    # ------------------------------------------------------------------

    def get_authority(self, name: str) -> Authority | None:
        with self._connect() as conn:
            row = conn.execute(_authorities.select().where(_authorities.c.name == name)).fetchone()
        return Authority(name=row.name, id=row.id) if row is not None else None

    def find_or_create_authority(self, name: str) -> Authority:
        """Return the authority called name, creating it if needed.

        Idempotent under concurrent callers: a loser of the INSERT race gets
        IntegrityError from the UNIQUE(name) constraint and reads back the
        winner's row instead of failing or duplicating it.
        """
        existing = self.get_authority(name)
        if existing is not None:
            return existing
        try:
            with self._connect(begin=True) as conn:
                result = conn.execute(_authorities.insert().values(name=name))
            logger.info("Created authority %s", name)
            return Authority(name=name, id=result.inserted_primary_key[0])
        except IntegrityError:
            logger.debug("Authority %s created concurrently; reusing it", name)
            existing = self.get_authority(name)
            if existing is None:
                raise
            return existing

    def seed_authorities(self, names: Iterable[str]) -> list[Authority]:
        """Ensure every named authority exists. Safe to call on every startup."""
        return [self.find_or_create_authority(name) for name in names]

    def grant_authority(self, identity_id: int, name: str) -> bool:
        """Attach an authority to an identity. Returns False if already held.

        Raises IdentityNotFound if the identity does not exist.
        """
        if self.get_by_id(identity_id) is None:
            raise IdentityNotFound()
        authority = self.find_or_create_authority(name)
        with self._connect(begin=True) as conn:
            result = conn.execute(
                _user_authorities.insert()
                .prefix_with("OR IGNORE")
                .values(user_id=identity_id, authority_id=authority.id)
            )
        return result.rowcount > 0

    def revoke_authority(self, identity_id: int, name: str) -> bool:
        authority = self.get_authority(name)
        if authority is None:
            return False
        with self._connect(begin=True) as conn:
            result = conn.execute(
                _user_authorities.delete().where(
                    (_user_authorities.c.user_id == identity_id) & (_user_authorities.c.authority_id == authority.id)
                )
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self._connect() as conn:
                conn.execute(text("SELECT 1"))
        except StoreUnavailable:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _hydrate(self, conn: Connection, row) -> Identity | None:
        if row is None:
            return None
        links = self._authorities_for(conn, [row.id])
        return _row_to_identity(row, links.get(row.id, frozenset()))

    @staticmethod
    def _authorities_for(conn: Connection, user_ids: list[int]) -> dict[int, frozenset[Authority]]:
        if not user_ids:
            return {}
        rows = conn.execute(
            select(_user_authorities.c.user_id, _authorities.c.id, _authorities.c.name)
            .join(_authorities, _authorities.c.id == _user_authorities.c.authority_id)
            .where(_user_authorities.c.user_id.in_(user_ids))
        ).fetchall()
        grouped: dict[int, set[Authority]] = {}
        for user_id, authority_id, name in rows:
            grouped.setdefault(user_id, set()).add(Authority(name=name, id=authority_id))
        return {user_id: frozenset(items) for user_id, items in grouped.items()}


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row, authorities: frozenset[Authority]) -> Identity:
    return Identity(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        first_name=row.first_name,
        last_name=row.last_name,
        enabled=bool(row.enabled),
        account_non_expired=bool(row.account_non_expired),
        account_non_locked=bool(row.account_non_locked),
        credentials_non_expired=bool(row.credentials_non_expired),
        authorities=authorities,
        created_at=row.created_at,
        last_login=row.last_login,
    )
