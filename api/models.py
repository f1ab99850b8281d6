"""
API request and response models for JYDoc REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request models only bound sizes and strip whitespace; the field rules
(username length, password policy, email syntax) are enforced by
auth/validation.py so the same rules apply to every caller, and violations
come back as field-attributed ValidationError envelopes.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Identity

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    username: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=255)
    email: Optional[str] = Field(default=None, max_length=255)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login. username accepts a username or an email."""

    username: str = Field(max_length=255)
    password: str = Field(max_length=255)


class PasswordChangeRequest(BaseModel):
    """Request body for POST /api/v1/auth/password."""

    current_password: str = Field(max_length=255)
    new_password: str = Field(max_length=255)


class AccountDeleteRequest(BaseModel):
    """Request body for DELETE /api/v1/auth/account."""

    password: str = Field(max_length=255)


class ProfilePatch(BaseModel):
    """Request body for PATCH /api/v1/auth/profile. Omitted fields are left unchanged."""

    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    email: Optional[str] = Field(default=None, max_length=255)


class AccountFlagsPatch(BaseModel):
    """Request body for PATCH /api/v1/admin/users/{id}."""

    enabled: Optional[bool] = None
    account_non_expired: Optional[bool] = None
    account_non_locked: Optional[bool] = None
    credentials_non_expired: Optional[bool] = None


class AuthorityGrant(BaseModel):
    """Request body for POST /api/v1/admin/users/{id}/authorities."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=50, pattern=r"^ROLE_[A-Z0-9_]+$")


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class IdentityResponse(BaseModel):
    """Public view of an Identity. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    first_name: str
    last_name: str
    enabled: bool
    account_non_expired: bool
    account_non_locked: bool
    credentials_non_expired: bool
    authorities: list[str]
    created_at: str
    last_login: Optional[str] = None

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityResponse":
        """Factory Method: the mapping lives next to the output model."""
        return cls(
            id=identity.id,
            username=identity.username,
            email=identity.email,
            first_name=identity.first_name,
            last_name=identity.last_name,
            enabled=identity.enabled,
            account_non_expired=identity.account_non_expired,
            account_non_locked=identity.account_non_locked,
            credentials_non_expired=identity.credentials_non_expired,
            authorities=sorted(identity.authority_names),
            created_at=identity.created_at or "",
            last_login=identity.last_login,
        )


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login.

    access_token is the session bearer token, also set as an httpOnly cookie
    for browsers. API clients send it back as Authorization: Bearer.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    username: str
    authorities: list[str]


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    fields maps a request field to its problem for validation and
    duplicate-registration errors.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    fields: Optional[dict[str, str]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
