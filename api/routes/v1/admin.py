"""
api/routes/v1/admin.py -- Administrative user management.

Routes (all require the admin authority):
  GET    /api/v1/admin/users                         -- list identities
  GET    /api/v1/admin/users/{id}                    -- one identity
  PATCH  /api/v1/admin/users/{id}                    -- enable / disable / lock / expire
  POST   /api/v1/admin/users/{id}/authorities        -- grant a role
  DELETE /api/v1/admin/users/{id}/authorities/{name} -- revoke a role

[M4] An admin cannot disable, lock or expire their own account, nor revoke
their own admin authority -- that would leave no recovery path without DB
access.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import AccountFlagsPatch, AuthorityGrant, IdentityResponse
from auth.dependencies import require_admin
from auth.errors import IdentityNotFound
from auth.models import Identity
from auth.service import AuthenticationService
from auth.store import UserStore
from core.config import get_settings

router = APIRouter()


@router.get("/admin/users", response_model=list[IdentityResponse])
def list_users(request: Request, current: Identity = Depends(require_admin)) -> list[IdentityResponse]:
    """List all identities ordered by username."""
    user_store: UserStore = request.app.state.user_store
    return [IdentityResponse.from_identity(i) for i in user_store.list_identities()]


@router.get("/admin/users/{identity_id}", response_model=IdentityResponse)
def get_user(request: Request, identity_id: int, current: Identity = Depends(require_admin)) -> IdentityResponse:
    user_store: UserStore = request.app.state.user_store
    identity = user_store.get_by_id(identity_id)
    if identity is None:
        raise IdentityNotFound()
    return IdentityResponse.from_identity(identity)


@router.patch("/admin/users/{identity_id}", response_model=IdentityResponse)
def update_flags(
    request: Request,
    identity_id: int,
    body: AccountFlagsPatch,
    current: Identity = Depends(require_admin),
) -> IdentityResponse:
    """Change account status flags. Turning any flag off ends the target's sessions."""
    service: AuthenticationService = request.app.state.auth_service
    flags = body.model_dump(exclude_none=True)
    if not flags:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    if identity_id == current.id and not all(flags.values()):
        raise HTTPException(
            status_code=400,
            detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
        )
    return IdentityResponse.from_identity(service.set_account_flags(identity_id, **flags))


@router.post("/admin/users/{identity_id}/authorities", response_model=IdentityResponse, status_code=201)
def grant_authority(
    request: Request,
    identity_id: int,
    body: AuthorityGrant,
    current: Identity = Depends(require_admin),
) -> IdentityResponse:
    """Grant a role, creating the authority if it does not exist yet. Idempotent."""
    user_store: UserStore = request.app.state.user_store
    user_store.grant_authority(identity_id, body.name)
    return IdentityResponse.from_identity(user_store.get_by_id(identity_id))


@router.delete("/admin/users/{identity_id}/authorities/{name}", status_code=204)
def revoke_authority(
    request: Request,
    identity_id: int,
    name: str,
    current: Identity = Depends(require_admin),
) -> Response:
    user_store: UserStore = request.app.state.user_store
    if identity_id == current.id and name == get_settings().admin_authority_name:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_demotion", "message": "You cannot revoke your own admin role."},
        )
    if user_store.get_by_id(identity_id) is None:
        raise IdentityNotFound()
    if not user_store.revoke_authority(identity_id, name):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "The user does not hold that role."},
        )
    return Response(status_code=204)
