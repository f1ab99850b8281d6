"""
auth/validation.py -- Field-level checks for registration and password changes.

Every problem found is collected before raising, so the caller gets one
ValidationError listing each bad field instead of fixing them one at a time.
"""

from __future__ import annotations

import re

from auth.errors import ValidationError
from auth.models import Registration
from core.config import Settings

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9_+&*-]+(?:\.[a-zA-Z0-9_+&*-]+)*@(?:[a-zA-Z0-9-]+\.)+[a-zA-Z]{2,7}$")

_REQUIRED = {
    "username": "Username is required",
    "password": "Password is required",
    "email": "Email is required",
    "first_name": "First name is required",
    "last_name": "Last name is required",
}


def password_problem(password: str | None, settings: Settings) -> str | None:
    """Return a message describing why password fails the policy, or None."""
    if password is None or not password.strip():
        return "Password is required"
    if len(password) < settings.password_min_length:
        return f"Password must be at least {settings.password_min_length} characters"
    if len(password.encode("utf-8")) > settings.password_max_length:
        return f"Password must be at most {settings.password_max_length} bytes"
    if not re.search(settings.password_complexity_regex, password):
        return "Password must contain at least one letter and one number"
    return None


def validate_password(password: str | None, settings: Settings, field: str = "password") -> str:
    problem = password_problem(password, settings)
    if problem:
        raise ValidationError({field: problem})
    return password


def validate_email(email: str | None) -> str:
    """Return the normalized (trimmed, lower-cased) email or raise."""
    normalized = (email or "").strip().lower()
    if not normalized:
        raise ValidationError({"email": _REQUIRED["email"]})
    if not EMAIL_PATTERN.match(normalized):
        raise ValidationError({"email": "Invalid email format"})
    return normalized


def validate_registration(candidate: Registration, settings: Settings) -> Registration:
    """Check every field and return a normalized copy of the candidate.

    Normalization: all text fields trimmed, email lower-cased. The password
    is returned untouched; whitespace inside a password is significant.
    """
    errors: dict[str, str] = {}
    for name, message in _REQUIRED.items():
        value = getattr(candidate, name)
        if value is None or not str(value).strip():
            errors[name] = message

    username = (candidate.username or "").strip()
    if "username" not in errors:
        if not settings.username_min_length <= len(username) <= settings.username_max_length:
            errors["username"] = (
                f"Username must be {settings.username_min_length}-{settings.username_max_length} characters"
            )
        elif "@" in username:
            # Login accepts a username or an email, so the two must never overlap.
            errors["username"] = "Username must not contain '@'"

    if "password" not in errors:
        problem = password_problem(candidate.password, settings)
        if problem:
            errors["password"] = problem

    email = (candidate.email or "").strip().lower()
    if "email" not in errors and not EMAIL_PATTERN.match(email):
        errors["email"] = "Invalid email format"

    if errors:
        raise ValidationError(errors)

    return Registration(
        username=username,
        password=candidate.password,
        email=email,
        first_name=candidate.first_name.strip(),
        last_name=candidate.last_name.strip(),
    )
