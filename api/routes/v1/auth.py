"""
api/routes/v1/auth.py -- Registration, login and self-service account endpoints.

Routes:
  POST   /api/v1/auth/register   -- create an account (public)
  POST   /api/v1/auth/login      -- password login; issues a session (public)
  POST   /api/v1/auth/logout     -- ends the caller's session (public)
  GET    /api/v1/auth/me         -- current identity (requires auth)
  PATCH  /api/v1/auth/profile    -- change names / email (requires auth)
  POST   /api/v1/auth/password   -- change password; ends all sessions (requires auth)
  DELETE /api/v1/auth/account    -- delete own account; ends all sessions (requires auth)

Security:
  [H2] POST /login is rate-limited per client IP (Settings.login_rate_limit).
  [C1] AuthenticationService.authenticate_by_credential() equalizes timing --
       never inline a store lookup + verify here.
  [M5] Cache-Control: no-store on every response that carries a token.
  Every AuthenticationFailed subclass is rendered by api/main.py as one
  generic bad_credentials error; the specific cause only reaches the logs.

Route handlers are plain def functions: bcrypt and SQLite calls block, so
FastAPI runs them in its threadpool instead of on the event loop.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AccountDeleteRequest,
    IdentityResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordChangeRequest,
    ProfilePatch,
    RegisterRequest,
)
from auth.dependencies import extract_token, get_current_identity
from auth.models import Identity, Registration
from auth.service import AuthenticationService
from core.config import get_settings

# Auth policy (enforced by the policy middleware and, for identity-bound
# routes, by get_current_identity):
# - POST   /auth/register, /auth/login, /auth/logout: public
# - everything else here: requires an authenticated session
router = APIRouter()


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


def _set_session_cookie(response: Response, token: str) -> None:
    """Write the session token as an httpOnly cookie.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    max_age matches the idle timeout; the server-side expiry is authoritative.
    """
    settings = get_settings()
    response.set_cookie(
        settings.session_cookie_name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.session_idle_timeout,
    )


def _clear_session_cookie(response: Response) -> None:
    response.delete_cookie(get_settings().session_cookie_name)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=IdentityResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> IdentityResponse:
    """Create a new account holding the default authority.

    Field problems come back as 400 validation_error with per-field messages;
    a taken username or email comes back as 409.
    """
    service: AuthenticationService = request.app.state.auth_service
    identity = service.register(
        Registration(
            username=body.username,
            password=body.password,
            email=body.email,
            first_name=body.first_name,
            last_name=body.last_name,
        )
    )
    return IdentityResponse.from_identity(identity)


@limiter.limit(_login_rate_limit)  # [H2] -- must be ABOVE @router so slowapi sees the raw function
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username-or-email and password; start a session.

    Any session the identity already held is ended (single-session policy).
    """
    service: AuthenticationService = request.app.state.auth_service
    identity, token = service.login(body.username, body.password)

    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- token type, not a password
            expires_in=get_settings().session_idle_timeout,
            username=identity.username,
            authorities=sorted(identity.authority_names),
        ).model_dump(),
    )
    _set_session_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """End the caller's session, if any, and clear the cookie. Idempotent."""
    service: AuthenticationService = request.app.state.auth_service
    service.logout(extract_token(request))
    resp = JSONResponse(content={"message": "Logged out."})
    _clear_session_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=IdentityResponse)
def me(current: Identity = Depends(get_current_identity)) -> IdentityResponse:
    """Return the currently authenticated identity."""
    return IdentityResponse.from_identity(current)


@router.patch("/auth/profile", response_model=IdentityResponse)
def update_profile(
    request: Request,
    body: ProfilePatch,
    current: Identity = Depends(get_current_identity),
) -> IdentityResponse:
    """Change first name, last name and/or email. Username cannot change."""
    service: AuthenticationService = request.app.state.auth_service
    updated = service.update_profile(
        current.id,
        first_name=body.first_name,
        last_name=body.last_name,
        email=body.email,
    )
    return IdentityResponse.from_identity(updated)


@router.post("/auth/password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    current: Identity = Depends(get_current_identity),
) -> JSONResponse:
    """Change the password. Every session, including this one, is ended."""
    service: AuthenticationService = request.app.state.auth_service
    if not service.change_password(current.id, body.current_password, body.new_password):
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_current_password", "message": "Current password is incorrect."},
        )
    resp = JSONResponse(content={"message": "Password changed. Please log in again."})
    _clear_session_cookie(resp)
    return resp


@router.delete("/auth/account", status_code=204)
def delete_account(
    request: Request,
    body: AccountDeleteRequest,
    current: Identity = Depends(get_current_identity),
) -> Response:
    """Delete the caller's account after re-checking the password."""
    service: AuthenticationService = request.app.state.auth_service
    if not service.delete_account(current.id, body.password):
        raise HTTPException(
            status_code=400,
            detail={"code": "invalid_password", "message": "Password is incorrect."},
        )
    resp = Response(status_code=204)
    _clear_session_cookie(resp)
    return resp
