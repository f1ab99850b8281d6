"""Unit tests for auth/state.py -- account state machine."""

import pytest

from auth import state
from auth.errors import AccountDisabled, AccountExpired, AccountLocked, CredentialsExpired
from auth.models import Identity
from auth.state import AccountStatus


def _identity(**flags) -> Identity:
    return Identity(username="alice", email="a@x.com", password_hash="x", **flags)


def test_all_flags_true_is_ok():
    assert state.evaluate(_identity()) is AccountStatus.OK
    assert state.error_for(AccountStatus.OK) is None


@pytest.mark.parametrize(
    ("flags", "expected"),
    [
        ({"enabled": False}, AccountStatus.DISABLED),
        ({"account_non_locked": False}, AccountStatus.LOCKED),
        ({"account_non_expired": False}, AccountStatus.EXPIRED),
        ({"credentials_non_expired": False}, AccountStatus.CREDENTIALS_EXPIRED),
    ],
)
def test_single_failing_flag(flags, expected):
    assert state.evaluate(_identity(**flags)) is expected


@pytest.mark.parametrize(
    ("flags", "expected"),
    [
        # Every flag off: enabled is checked first.
        (
            {"enabled": False, "account_non_locked": False, "account_non_expired": False,
             "credentials_non_expired": False},
            AccountStatus.DISABLED,
        ),
        ({"account_non_locked": False, "account_non_expired": False}, AccountStatus.LOCKED),
        ({"account_non_expired": False, "credentials_non_expired": False}, AccountStatus.EXPIRED),
    ],
)
def test_first_failing_check_wins(flags, expected):
    assert state.evaluate(_identity(**flags)) is expected


@pytest.mark.parametrize(
    ("status", "error_cls"),
    [
        (AccountStatus.DISABLED, AccountDisabled),
        (AccountStatus.LOCKED, AccountLocked),
        (AccountStatus.EXPIRED, AccountExpired),
        (AccountStatus.CREDENTIALS_EXPIRED, CredentialsExpired),
    ],
)
def test_error_for_maps_status(status, error_cls):
    error = state.error_for(status)
    assert isinstance(error, error_cls)
    assert error.status_code == 401


def test_evaluate_has_no_side_effects():
    identity = _identity(enabled=False)
    state.evaluate(identity)
    state.evaluate(identity)
    assert identity.enabled is False
    assert identity.account_non_locked is True
