"""
tests/test_api_admin.py -- Integration tests for the /api/v1/admin routes.

Coverage:
  - role gate: 401 anonymous, 403 for ROLE_USER, 200 for ROLE_ADMIN
  - listing and fetching identities
  - disabling an account ends its session immediately
  - admins cannot deactivate or demote themselves
  - granting and revoking authorities; grants apply on the next request
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

USERS = "/api/v1/admin/users"


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def tokens(api_client: TestClient, make_user, login) -> dict:
    """Log in an admin ("root") and a regular user ("alice").

    Cookies are cleared afterwards so each request authenticates only with
    the bearer header it passes.
    """
    root = make_user("root", admin=True)
    alice = make_user("alice")
    result = {"root": login("root"), "alice": login("alice"), "root_id": root.id, "alice_id": alice.id}
    api_client.cookies.clear()
    return result


def test_admin_routes_require_authentication(api_client: TestClient) -> None:
    resp = api_client.get(USERS)
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_regular_user_is_forbidden(api_client: TestClient, tokens) -> None:
    resp = api_client.get(USERS, headers=_bearer(tokens["alice"]))
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


def test_admin_lists_users(api_client: TestClient, tokens) -> None:
    resp = api_client.get(USERS, headers=_bearer(tokens["root"]))
    assert resp.status_code == 200
    assert [u["username"] for u in resp.json()] == ["alice", "root"]


def test_admin_gets_single_user(api_client: TestClient, tokens) -> None:
    resp = api_client.get(f"{USERS}/{tokens['alice_id']}", headers=_bearer(tokens["root"]))
    assert resp.status_code == 200
    assert resp.json()["username"] == "alice"
    assert api_client.get(f"{USERS}/9999", headers=_bearer(tokens["root"])).status_code == 404


def test_disabling_user_ends_session(api_client: TestClient, tokens) -> None:
    resp = api_client.patch(f"{USERS}/{tokens['alice_id']}", json={"enabled": False}, headers=_bearer(tokens["root"]))
    assert resp.status_code == 200
    assert resp.json()["enabled"] is False
    assert api_client.get("/api/v1/auth/me", headers=_bearer(tokens["alice"])).status_code == 401
    login = api_client.post("/api/v1/auth/login", json={"username": "alice", "password": "Secret1"})
    assert login.status_code == 401


def test_empty_flag_patch_is_rejected(api_client: TestClient, tokens) -> None:
    resp = api_client.patch(f"{USERS}/{tokens['alice_id']}", json={}, headers=_bearer(tokens["root"]))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "no_changes"


def test_admin_cannot_lock_self(api_client: TestClient, tokens) -> None:
    resp = api_client.patch(
        f"{USERS}/{tokens['root_id']}", json={"account_non_locked": False}, headers=_bearer(tokens["root"])
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "self_deactivation"


def test_grant_takes_effect_on_next_request(api_client: TestClient, tokens) -> None:
    assert api_client.get(USERS, headers=_bearer(tokens["alice"])).status_code == 403
    resp = api_client.post(
        f"{USERS}/{tokens['alice_id']}/authorities", json={"name": "ROLE_ADMIN"}, headers=_bearer(tokens["root"])
    )
    assert resp.status_code == 201
    assert "ROLE_ADMIN" in resp.json()["authorities"]
    assert api_client.get(USERS, headers=_bearer(tokens["alice"])).status_code == 200


def test_grant_rejects_malformed_role_name(api_client: TestClient, tokens) -> None:
    resp = api_client.post(
        f"{USERS}/{tokens['alice_id']}/authorities", json={"name": "admin"}, headers=_bearer(tokens["root"])
    )
    assert resp.status_code == 422


def test_revoke_authority(api_client: TestClient, tokens) -> None:
    headers = _bearer(tokens["root"])
    url = f"{USERS}/{tokens['alice_id']}/authorities"
    api_client.post(url, json={"name": "ROLE_MODERATOR"}, headers=headers)
    assert api_client.delete(f"{url}/ROLE_MODERATOR", headers=headers).status_code == 204
    assert api_client.delete(f"{url}/ROLE_MODERATOR", headers=headers).status_code == 404


def test_admin_cannot_revoke_own_admin_role(api_client: TestClient, tokens) -> None:
    resp = api_client.delete(f"{USERS}/{tokens['root_id']}/authorities/ROLE_ADMIN", headers=_bearer(tokens["root"]))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "self_demotion"
