"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The bearer token is read from, in priority order:
  1. The session cookie (Settings.session_cookie_name) -- set by login.
  2. Authorization: Bearer <token> header -- API clients.

resolve_request_identity() touches the session once per request and caches
the result on request.state; the policy middleware in api/main.py calls it
before routing, so route dependencies below never touch the store twice.

try_get_current_identity() is the soft variant (returns None on failure).
get_current_identity() wraps it and raises SessionNotFound (401).
require_role() wraps get_current_identity() and raises HTTP 403.

Layer rule: no imports from api/. auth/dependencies.py may import from
fastapi because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth import state
from auth.errors import SessionNotFound
from auth.models import Identity, Principal
from auth.policy import Decision, decide, role
from core.config import get_settings

_UNSET = object()


def extract_token(request: Request) -> str | None:
    """Return the raw bearer token carried by the request, if any."""
    token = request.cookies.get(get_settings().session_cookie_name)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def resolve_request_identity(request: Request) -> Identity | None:
    """Resolve (and refresh) the request's session, caching the answer.

    An identity whose account can no longer authenticate is treated as
    anonymous even if its session row still exists.
    """
    cached = getattr(request.state, "identity", _UNSET)
    if cached is not _UNSET:
        return cached

    identity = request.app.state.sessions.touch(extract_token(request))
    if identity is not None and state.evaluate(identity) is not state.AccountStatus.OK:
        identity = None
    request.state.identity = identity
    request.state.principal = Principal.of(identity) if identity is not None else None
    return identity


def try_get_current_identity(request: Request) -> Identity | None:
    """Return the authenticated Identity, or None. Never raises for bad tokens."""
    return resolve_request_identity(request)


def get_current_identity(request: Request) -> Identity:
    """Require authentication. Raises SessionNotFound (rendered as 401).

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(identity: Identity = Depends(get_current_identity)): ...
    """
    identity = try_get_current_identity(request)
    if identity is None:
        raise SessionNotFound()
    return identity


def require_role(role_name: str) -> Callable[[Request], Identity]:
    """Build a dependency that admits only identities holding role_name."""

    def dependency(request: Request) -> Identity:
        identity = get_current_identity(request)
        if decide(Principal.of(identity), role(role_name)) is Decision.DENY:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "You do not have access to this resource."},
            )
        return identity

    return dependency


def require_admin(request: Request) -> Identity:
    """Require the configured admin authority. 401 if anonymous, 403 otherwise."""
    return require_role(get_settings().admin_authority_name)(request)
