"""
auth/hashing.py -- Password hashing and session key derivation.

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). bcrypt.gensalt() draws
       a fresh random salt on every call and embeds it in the output, so the
       same password hashed twice yields two different strings while
       checkpw() still verifies both. The cost factor makes brute force
       expensive for low-entropy secrets.

  Timing equalization [C1]: each hasher keeps a dummy hash computed once at
       construction with the same cost factor. burn() verifies against it so
       an unknown-username login costs the same as a wrong-password login and
       response time does not reveal whether an account exists.

  Session keys: tokens carry 256 bits of entropy, so the store only needs a
       deterministic keyed digest, HMAC-SHA256(SECRET_KEY, token), for an
       O(1) lookup. bcrypt's slowness is unnecessary there. A leaked session
       table cannot be replayed without SECRET_KEY.

Nothing in this module logs plaintext, hashes or tokens.
"""

from __future__ import annotations

import hashlib
import hmac

import bcrypt

_DUMMY_PASSWORD = "jydoc_timing_dummy"


class PasswordHasher:
    """One-way salted hash + verify for credentials.

    Usage:
        hasher = PasswordHasher(rounds=12)
        stored = hasher.hash("Secret1")
        hasher.verify("Secret1", stored)   # True
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        self._dummy_hash = self.hash(_DUMMY_PASSWORD)

    def hash(self, plain: str) -> str:
        """Return a bcrypt hash of the given plaintext password.

        Callers must reject passwords longer than 72 UTF-8 bytes first;
        current bcrypt releases raise ValueError for them instead of
        truncating silently. auth/validation.py enforces that limit.
        """
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str | None) -> bool:
        """Return True if the plaintext password matches the bcrypt hash.

        A missing or malformed hash, or an over-long password, is a mismatch.
        """
        if not plain or not hashed:
            return False
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            return False

    def burn(self, plain: str) -> None:
        """Spend one verify's worth of CPU against the dummy hash [C1]."""
        self.verify(plain or _DUMMY_PASSWORD, self._dummy_hash)


def session_key(secret_key: str, token: str) -> str:
    """Return HMAC-SHA256(secret_key, token) as a hex string."""
    return hmac.new(secret_key.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()
