"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these only own the domain shape.

Layer rule: no imports from api/ or sessions/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Authority:
    """A named role, e.g. "ROLE_USER". Names are unique across the store."""

    name: str
    id: int | None = None


@dataclass
class Identity:
    """One registered principal.

    username keeps the case it was registered with (display form). Lookups
    and the uniqueness constraint both use the lower-cased form, so "Alice"
    and "alice" are the same account.

    email is stored trimmed and lower-cased.

    All four status flags must be True for authentication to succeed; see
    auth/state.evaluate() for the order in which they are checked.
    """

    username: str
    email: str
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    id: int | None = None
    enabled: bool = True
    account_non_expired: bool = True
    account_non_locked: bool = True
    credentials_non_expired: bool = True
    authorities: frozenset[Authority] = field(default_factory=frozenset)
    created_at: str | None = None
    last_login: str | None = None

    @property
    def authority_names(self) -> frozenset[str]:
        return frozenset(a.name for a in self.authorities)


@dataclass
class Registration:
    """Raw sign-up input, exactly as submitted. Validated by auth/validation.py."""

    username: str | None
    password: str | None
    email: str | None
    first_name: str | None
    last_name: str | None


@dataclass
class Session:
    """A server-side login grant.

    key is HMAC-SHA256(SECRET_KEY, token). The bearer token itself is handed
    to the client once by SessionManager.issue() and never persisted.

    Timestamps are epoch seconds. expires_at is last_access_at plus the idle
    timeout and moves forward on every successful touch().
    """

    key: str
    identity_id: int
    created_at: float
    last_access_at: float
    expires_at: float = 0.0


@dataclass(frozen=True)
class Principal:
    """Capability value handed to the authorization policy.

    Carries only what an allow/deny decision needs. Built from an Identity
    once per request and passed by value.
    """

    identity_id: int
    username: str
    authority_names: frozenset[str] = frozenset()

    @classmethod
    def of(cls, identity: Identity) -> Principal:
        return cls(identity_id=identity.id, username=identity.username, authority_names=identity.authority_names)
