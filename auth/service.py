"""
auth/service.py -- Registration, login, credential checks and account changes.

AuthenticationService orchestrates the leaf components:
  UserStore          -- identities and authorities (race safety lives there)
  PasswordHasher     -- bcrypt hash / verify
  auth/state.py      -- account state machine
  SessionManager     -- session issue / invalidation

Ordering rules for authenticate_by_credential() [C1]:
  1. Unknown user and wrong password raise the same InvalidCredentials, and
     an unknown user still pays for one bcrypt verify (timing equalization),
     so neither the error nor the latency reveals whether an account exists.
  2. Account state is evaluated only AFTER the password verified. A guesser
     without the password learns nothing about disabled/locked accounts;
     someone who knows the password is told why the login was refused.

Security-critical side effects:
  change_password() and delete_account() end every session of the identity,
  forcing re-login everywhere.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from auth import state
from auth.errors import DuplicateEmail, DuplicateUsername, IdentityNotFound, InvalidCredentials, ValidationError
from auth.hashing import PasswordHasher
from auth.models import Identity, Registration
from auth.store import UserStore
from auth.validation import validate_email, validate_password, validate_registration
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from sessions.manager import SessionManager

logger = logging.getLogger("jydoc.auth")

_STATUS_FLAGS = frozenset({"enabled", "account_non_expired", "account_non_locked", "credentials_non_expired"})


class AuthenticationService:
    def __init__(
        self,
        users: UserStore,
        sessions: SessionManager,
        hasher: PasswordHasher | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.settings = settings or get_settings()
        self.hasher = hasher or PasswordHasher(rounds=self.settings.bcrypt_rounds)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, candidate: Registration) -> Identity:
        """Create a new identity holding exactly the default authority.

        Raises ValidationError listing every bad field, or DuplicateUsername /
        DuplicateEmail. The existence checks below only give a fast, friendly
        answer; the UNIQUE constraints inside UserStore.create_identity()
        are what actually close the check-then-insert race.
        """
        clean = validate_registration(candidate, self.settings)

        if self.users.exists_by_username(clean.username):
            logger.info("Registration rejected: username taken")
            raise DuplicateUsername()
        if self.users.exists_by_email(clean.email):
            logger.info("Registration rejected: email taken")
            raise DuplicateEmail()

        default_role = self.users.find_or_create_authority(self.settings.default_authority_name)
        identity = Identity(
            username=clean.username,
            email=clean.email,
            password_hash=self.hasher.hash(clean.password),
            first_name=clean.first_name,
            last_name=clean.last_name,
        )
        created = self.users.create_identity(identity, [default_role])
        logger.info("Registered new user %s (id=%s)", created.username, created.id)
        return created

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate_by_credential(self, credential: str | None, password: str | None) -> Identity:
        """Verify a username-or-email plus password and return the identity.

        Raises InvalidCredentials, or one of AccountDisabled / AccountLocked /
        AccountExpired / CredentialsExpired once the password is known good.
        """
        normalized = (credential or "").strip().lower()
        password = password or ""
        identity = self.users.find_by_username_or_email(normalized) if normalized else None

        if identity is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            self.hasher.burn(password)
            logger.warning("Login failed: unknown credential")
            raise InvalidCredentials()
        if not self.hasher.verify(password, identity.password_hash):
            logger.warning("Login failed for %s: password mismatch", identity.username)
            raise InvalidCredentials()

        status = state.evaluate(identity)
        error = state.error_for(status)
        if error is not None:
            logger.warning("Login refused for %s: account %s", identity.username, status.value)
            raise error

        self.users.update_last_login(identity.id)
        logger.info("Login successful for %s", identity.username)
        return identity

    def login(self, credential: str | None, password: str | None) -> tuple[Identity, str]:
        """Authenticate and start a session. Returns (identity, bearer token)."""
        identity = self.authenticate_by_credential(credential, password)
        return identity, self.sessions.issue(identity)

    def logout(self, token: str | None) -> None:
        self.sessions.invalidate(token)

    # ------------------------------------------------------------------
    # Account changes
    # ------------------------------------------------------------------

    def change_password(self, identity_id: int, current_password: str | None, new_password: str | None) -> bool:
        """Replace the password after re-verifying the current one.

        Returns False, changing nothing, when the current password is wrong.
        Raises ValidationError if the new password breaks the policy. On
        success every existing session of the identity is invalidated.
        """
        identity = self._require(identity_id)
        if not self.hasher.verify(current_password or "", identity.password_hash):
            logger.warning("Password change failed for %s: current password mismatch", identity.username)
            return False

        validate_password(new_password, self.settings, field="new_password")
        self.users.update_identity(identity_id, password_hash=self.hasher.hash(new_password))
        ended = self.sessions.invalidate_all_for(identity_id)
        logger.info("Password changed for %s; %d session(s) ended", identity.username, ended)
        return True

    def delete_account(self, identity_id: int, password: str | None) -> bool:
        """Delete the identity after re-verifying its password.

        Returns False, deleting nothing, when the password is wrong.
        """
        identity = self._require(identity_id)
        if not self.hasher.verify(password or "", identity.password_hash):
            logger.warning("Account deletion failed for %s: password mismatch", identity.username)
            return False

        self.sessions.invalidate_all_for(identity_id)
        self.users.delete_identity(identity_id)
        # A request racing the delete could have issued a session in between.
        self.sessions.invalidate_all_for(identity_id)
        logger.info("Account deleted: %s", identity.username)
        return True

    def update_profile(
        self,
        identity_id: int,
        first_name: str | None = None,
        last_name: str | None = None,
        email: str | None = None,
    ) -> Identity:
        """Change display names and/or email. Username stays immutable.

        A changed email is normalized and must not belong to another account.
        """
        identity = self._require(identity_id)
        errors: dict[str, str] = {}
        updates: dict[str, str] = {}

        for field, value, message in (
            ("first_name", first_name, "First name is required"),
            ("last_name", last_name, "Last name is required"),
        ):
            if value is None:
                continue
            if not value.strip():
                errors[field] = message
            else:
                updates[field] = value.strip()

        if email is not None:
            try:
                normalized = validate_email(email)
            except ValidationError as exc:
                errors.update(exc.errors)
            else:
                if normalized != identity.email:
                    if self.users.exists_by_email(normalized):
                        raise DuplicateEmail()
                    updates["email"] = normalized

        if errors:
            raise ValidationError(errors)
        if updates:
            self.users.update_identity(identity_id, **updates)
            logger.info("Profile updated for %s (%s)", identity.username, ", ".join(sorted(updates)))
        return self._require(identity_id)

    def set_account_flags(self, identity_id: int, **flags: bool) -> Identity:
        """Administrative disable / lock / expire / re-enable.

        Accepts any of enabled, account_non_expired, account_non_locked,
        credentials_non_expired. If the account can no longer authenticate
        afterwards, its sessions are ended immediately.
        """
        unknown = set(flags) - _STATUS_FLAGS
        if unknown:
            raise ValidationError({name: "Unknown account flag" for name in sorted(unknown)})
        self._require(identity_id)
        if flags:
            self.users.update_identity(identity_id, **{k: bool(v) for k, v in flags.items()})

        updated = self._require(identity_id)
        status = state.evaluate(updated)
        if status is not state.AccountStatus.OK:
            self.sessions.invalidate_all_for(identity_id)
        logger.info("Account flags for %s set to %s", updated.username, status.value)
        return updated

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, identity_id: int) -> Identity:
        identity = self.users.get_by_id(identity_id)
        if identity is None:
            raise IdentityNotFound()
        return identity
