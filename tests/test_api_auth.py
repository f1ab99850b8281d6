"""
tests/test_api_auth.py -- Integration tests for the /api/v1/auth routes.

These tests exercise the full stack: FastAPI routing -> policy middleware ->
session resolution -> AuthenticationService -> SQLite stores -> response
model serialization and the shared error envelope.

Coverage:
  - register: 201 happy path, field-attributed 400, 409 duplicates
  - login: cookie + bearer token, no-store, generic 401 for every failure
  - single-session policy over HTTP
  - logout, me, profile, password change, account deletion
  - tokens are never echoed in error bodies

Fixtures used (from conftest.py):
  - api_client: TestClient over the real app with tmp_path SQLite stores
  - make_user: registers "<name>" with password "Secret1"
  - login: POST /login helper returning the access token
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from core.config import get_settings

REGISTER = "/api/v1/auth/register"
LOGIN = "/api/v1/auth/login"
ME = "/api/v1/auth/me"


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _register_body(**overrides) -> dict:
    body = {"username": "alice", "password": "Secret1", "email": "a@x.com", "first_name": "A", "last_name": "L"}
    body.update(overrides)
    return body


class TestRegister:
    def test_register_returns_201(self, api_client: TestClient) -> None:
        resp = api_client.post(REGISTER, json=_register_body())
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["username"] == "alice"
        assert data["email"] == "a@x.com"
        assert data["authorities"] == ["ROLE_USER"]
        assert data["enabled"] is True
        assert "password_hash" not in data

    def test_register_reports_every_bad_field(self, api_client: TestClient) -> None:
        resp = api_client.post(REGISTER, json={"username": "ab", "password": "abc", "email": "nope"})
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert set(error["fields"]) == {"username", "password", "email", "first_name", "last_name"}

    def test_duplicate_username_is_409(self, api_client: TestClient) -> None:
        api_client.post(REGISTER, json=_register_body())
        resp = api_client.post(REGISTER, json=_register_body(username="ALICE", email="other@x.com"))
        assert resp.status_code == 409
        error = resp.json()["error"]
        assert error["code"] == "duplicate_username"
        assert "username" in error["fields"]

    def test_duplicate_email_is_409(self, api_client: TestClient) -> None:
        api_client.post(REGISTER, json=_register_body())
        resp = api_client.post(REGISTER, json=_register_body(username="alice2", email="A@X.COM"))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "duplicate_email"


class TestLogin:
    def test_login_sets_cookie_and_returns_token(self, api_client: TestClient, make_user) -> None:
        make_user("alice")
        resp = api_client.post(LOGIN, json={"username": "ALICE", "password": "Secret1"})
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["username"] == "alice"
        assert data["authorities"] == ["ROLE_USER"]
        assert data["expires_in"] == get_settings().session_idle_timeout
        assert resp.headers["cache-control"] == "no-store"
        assert resp.cookies.get(get_settings().session_cookie_name) == data["access_token"]

    def test_cookie_authenticates_following_requests(self, api_client: TestClient, make_user, login) -> None:
        make_user("alice")
        login("alice")
        resp = api_client.get(ME)
        assert resp.status_code == 200
        assert resp.json()["username"] == "alice"

    def test_bearer_header_authenticates(self, api_client: TestClient, make_user, login) -> None:
        make_user("alice")
        token = login("alice")
        api_client.cookies.clear()
        assert api_client.get(ME, headers=_bearer(token)).json()["username"] == "alice"

    def test_login_by_email(self, api_client: TestClient, make_user) -> None:
        make_user("alice", email="a@x.com")
        resp = api_client.post(LOGIN, json={"username": "A@x.com", "password": "Secret1"})
        assert resp.status_code == 200

    def test_failures_share_one_generic_body(self, api_client: TestClient, make_user, service) -> None:
        alice = make_user("alice")
        make_user("bob")
        service.set_account_flags(alice.id, enabled=False)

        unknown = api_client.post(LOGIN, json={"username": "nobody", "password": "Secret1"})
        wrong = api_client.post(LOGIN, json={"username": "bob", "password": "Wrong99"})
        disabled = api_client.post(LOGIN, json={"username": "alice", "password": "Secret1"})

        for resp in (unknown, wrong, disabled):
            assert resp.status_code == 401
            assert resp.json() == {"error": {"code": "bad_credentials", "message": "Invalid username or password."}}

    def test_malformed_body_is_422_without_values(self, api_client: TestClient) -> None:
        resp = api_client.post(LOGIN, json={"username": "alice"})
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert "password" in error["fields"]

    def test_second_login_evicts_first_session(self, api_client: TestClient, make_user, login) -> None:
        make_user("alice")
        first = login("alice")
        second = login("alice")
        api_client.cookies.clear()
        assert api_client.get(ME, headers=_bearer(first)).status_code == 401
        assert api_client.get(ME, headers=_bearer(second)).status_code == 200


class TestSession:
    def test_me_requires_authentication(self, api_client: TestClient) -> None:
        resp = api_client.get(ME)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_unknown_token_is_not_echoed(self, api_client: TestClient) -> None:
        token = "made-up-token-value-1234567890"
        resp = api_client.get(ME, headers=_bearer(token))
        assert resp.status_code == 401
        assert token not in resp.text

    def test_logout_ends_session(self, api_client: TestClient, make_user, login) -> None:
        make_user("alice")
        token = login("alice")
        resp = api_client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert api_client.get(ME).status_code == 401
        assert api_client.get(ME, headers=_bearer(token)).status_code == 401

    def test_logout_without_session_is_ok(self, api_client: TestClient) -> None:
        assert api_client.post("/api/v1/auth/logout").status_code == 200


class TestAccountChanges:
    def test_update_profile(self, api_client: TestClient, make_user, login) -> None:
        make_user("alice")
        login("alice")
        resp = api_client.patch("/api/v1/auth/profile", json={"last_name": "Liddell", "email": "ALICE@x.com"})
        assert resp.status_code == 200, resp.text
        assert resp.json()["last_name"] == "Liddell"
        assert resp.json()["email"] == "alice@x.com"

    def test_change_password_wrong_current(self, api_client: TestClient, make_user, login) -> None:
        make_user("alice")
        login("alice")
        resp = api_client.post(
            "/api/v1/auth/password", json={"current_password": "nope", "new_password": "NewPass2"}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_current_password"
        # Session survives a failed attempt
        assert api_client.get(ME).status_code == 200

    def test_change_password_weak_new(self, api_client: TestClient, make_user, login) -> None:
        make_user("alice")
        login("alice")
        resp = api_client.post(
            "/api/v1/auth/password", json={"current_password": "Secret1", "new_password": "weak"}
        )
        assert resp.status_code == 400
        assert "new_password" in resp.json()["error"]["fields"]

    def test_change_password_forces_relogin(self, api_client: TestClient, make_user, login) -> None:
        make_user("alice")
        token = login("alice")
        resp = api_client.post(
            "/api/v1/auth/password", json={"current_password": "Secret1", "new_password": "NewPass2"}
        )
        assert resp.status_code == 200
        assert api_client.get(ME, headers=_bearer(token)).status_code == 401
        assert api_client.post(LOGIN, json={"username": "alice", "password": "Secret1"}).status_code == 401
        login("alice", "NewPass2")

    def test_delete_account(self, api_client: TestClient, make_user, login, user_store) -> None:
        alice = make_user("alice")
        token = login("alice")

        wrong = api_client.request("DELETE", "/api/v1/auth/account", json={"password": "nope"})
        assert wrong.status_code == 400
        assert user_store.get_by_id(alice.id) is not None

        resp = api_client.request("DELETE", "/api/v1/auth/account", json={"password": "Secret1"})
        assert resp.status_code == 204
        assert user_store.get_by_id(alice.id) is None
        assert api_client.get(ME, headers=_bearer(token)).status_code == 401


class TestStoreOutage:
    def test_session_store_outage_is_503(self, api_client: TestClient, monkeypatch) -> None:
        from auth.errors import StoreUnavailable

        def unavailable(token):
            raise StoreUnavailable()

        monkeypatch.setattr(api_client.app.state.sessions, "touch", unavailable)
        resp = api_client.get(ME, headers=_bearer("some-token"))
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "store_unavailable"

    def test_user_store_outage_during_login_is_503(self, api_client: TestClient, monkeypatch) -> None:
        from auth.errors import StoreUnavailable

        def unavailable(credential):
            raise StoreUnavailable()

        monkeypatch.setattr(api_client.app.state.user_store, "find_by_username_or_email", unavailable)
        resp = api_client.post(LOGIN, json={"username": "alice", "password": "Secret1"})
        assert resp.status_code == 503
        assert resp.headers["retry-after"] == "1"
