"""
auth/state.py -- Account state machine.

evaluate() is a pure function of the four status flags on an Identity. It
replaces exception-driven dispatch with a tagged result: the service decides
what to raise, and only after the password has been verified.

Check order is fixed: enabled -> not locked -> not expired -> credentials not
expired. The first failing condition wins.
"""

from __future__ import annotations

from enum import Enum

from auth.errors import AccountDisabled, AccountExpired, AccountLocked, AuthenticationFailed, CredentialsExpired
from auth.models import Identity


class AccountStatus(str, Enum):
    OK = "ok"
    DISABLED = "disabled"
    LOCKED = "locked"
    EXPIRED = "expired"
    CREDENTIALS_EXPIRED = "credentials_expired"


_ERRORS: dict[AccountStatus, type[AuthenticationFailed]] = {
    AccountStatus.DISABLED: AccountDisabled,
    AccountStatus.LOCKED: AccountLocked,
    AccountStatus.EXPIRED: AccountExpired,
    AccountStatus.CREDENTIALS_EXPIRED: CredentialsExpired,
}


def evaluate(identity: Identity) -> AccountStatus:
    """Return the account's status. No side effects."""
    if not identity.enabled:
        return AccountStatus.DISABLED
    if not identity.account_non_locked:
        return AccountStatus.LOCKED
    if not identity.account_non_expired:
        return AccountStatus.EXPIRED
    if not identity.credentials_non_expired:
        return AccountStatus.CREDENTIALS_EXPIRED
    return AccountStatus.OK


def error_for(status: AccountStatus) -> AuthenticationFailed | None:
    """Map a non-OK status to the error instance the service raises."""
    error_cls = _ERRORS.get(status)
    return error_cls() if error_cls is not None else None
