"""
tests/test_api_auth.py -- Integration tests for the /api/v1/auth routes.

These tests exercise the full stack: FastAPI routing -> middleware ->
AuthSessionController -> SessionStore/UserStore -> response models and
exception handlers. Every token/session failure must surface as the same
401 "unauthenticated" envelope.

Fixtures used (from conftest.py):
  - client: module TestClient with an empty cookie jar
  - api_client: (client, admin_token, admin_id)
  - registered: factory that registers a fresh account and returns (email, body)
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from api.main import app

PASSWORD = "correct horse battery"


def _login(client: TestClient, email: str, password: str = PASSWORD):
    return client.post("/api/v1/auth/login", json={"email": email, "password": password})


class TestLogin:
    def test_login_sets_cookies_and_returns_tokens(self, client: TestClient, registered) -> None:
        email, _ = registered()
        resp = _login(client, email)
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["user"]["email"] == email
        assert data["user"]["role"] == "user"
        assert data["user"]["subscription_tier"] == "free"
        assert data["tokens"]["token_type"] == "bearer"
        assert 0 < data["tokens"]["expires_in"] <= 3600
        assert isinstance(data["session_id"], int)
        assert resp.headers["cache-control"] == "no-store"
        assert client.cookies.get("access_token") == data["tokens"]["access_token"]
        assert client.cookies.get("refresh_token") == data["tokens"]["refresh_token"]

    def test_cookies_are_http_only(self, client: TestClient, registered) -> None:
        email, _ = registered()
        set_cookies = _login(client, email).headers.get_list("set-cookie")
        assert len(set_cookies) == 2
        assert all("httponly" in c.lower() and "samesite=lax" in c.lower() for c in set_cookies)

    def test_email_is_case_insensitive(self, client: TestClient, registered) -> None:
        email, _ = registered()
        assert _login(client, email.upper()).status_code == 200

    def test_wrong_password_and_unknown_email_look_the_same(self, client: TestClient, registered) -> None:
        email, _ = registered()
        wrong_pw = _login(client, email, "not the password")
        unknown = _login(client, "nobody@example.com")
        assert wrong_pw.status_code == unknown.status_code == 401
        assert wrong_pw.json() == unknown.json()
        assert wrong_pw.json()["error"]["code"] == "bad_credentials"
        assert "access_token" not in client.cookies

    def test_malformed_email_is_422(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/login", json={"email": "not-an-email", "password": "x"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestRegister:
    def test_register_returns_201_and_logs_in(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/auth/register",
            json={"email": "New.Person@Example.com", "password": PASSWORD, "full_name": "New Person"},
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["user"]["email"] == "new.person@example.com"
        assert data["user"]["full_name"] == "New Person"
        assert data["user"]["last_sign_in_at"] is not None
        assert "access_token" in client.cookies

    def test_duplicate_email_is_409(self, client: TestClient, registered) -> None:
        email, _ = registered()
        resp = client.post("/api/v1/auth/register", json={"email": email, "password": PASSWORD})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_short_password_is_422(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/register", json={"email": "short@example.com", "password": "abc"})
        assert resp.status_code == 422


class TestMe:
    def test_me_with_cookie(self, client: TestClient, registered) -> None:
        email, _ = registered()
        _login(client, email)
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 200
        assert resp.json()["user"]["email"] == email

    def test_me_with_bearer(self, client: TestClient, api_client) -> None:
        _client, token, uid = api_client
        resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.json()["user"]["id"] == uid
        assert resp.json()["user"]["role"] == "admin"

    def test_me_without_token(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthenticated"

    def test_me_with_refresh_token_is_401(self, client: TestClient, registered) -> None:
        _, body = registered()
        resp = client.get(
            "/api/v1/auth/me", headers={"Authorization": f"Bearer {body['tokens']['refresh_token']}"}
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthenticated"

    def test_me_with_garbage_token_is_401(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not.a.jwt"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthenticated"

    def test_me_for_deleted_user_is_404(self, client: TestClient, registered) -> None:
        _, body = registered("doomed")
        app.state.user_store.delete_user(body["user"]["id"])
        resp = client.get(
            "/api/v1/auth/me", headers={"Authorization": f"Bearer {body['tokens']['access_token']}"}
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "user_not_found"


class TestRefresh:
    def test_refresh_from_cookie(self, client: TestClient, registered) -> None:
        email, _ = registered()
        login = _login(client, email).json()
        resp = client.post("/api/v1/auth/refresh")
        assert resp.status_code == 200
        data = resp.json()
        assert data["session_id"] == login["session_id"]
        assert data["tokens"]["refresh_token"] == login["tokens"]["refresh_token"]
        assert resp.headers["cache-control"] == "no-store"

    def test_refresh_from_body(self, client: TestClient, registered) -> None:
        _, body = registered()
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": body["tokens"]["refresh_token"]})
        assert resp.status_code == 200
        new_access = resp.json()["tokens"]["access_token"]
        me = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {new_access}"})
        assert me.status_code == 200

    def test_refresh_without_token_is_400(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/refresh")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "missing_refresh_token"

    def test_refresh_with_access_token_is_401(self, client: TestClient, registered) -> None:
        _, body = registered()
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": body["tokens"]["access_token"]})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthenticated"

    def test_refresh_with_garbage_is_401(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": "garbage"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthenticated"


class TestLogout:
    def test_logout_kills_refresh_token(self, client: TestClient, registered) -> None:
        _, body = registered()
        refresh_token = body["tokens"]["refresh_token"]
        resp = client.post("/api/v1/auth/logout", json={"refresh_token": refresh_token})
        assert resp.status_code == 200
        assert resp.json()["success"] is True
        again = client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token})
        assert again.status_code == 401

    def test_logout_with_cookie_clears_cookies(self, client: TestClient, registered) -> None:
        email, _ = registered()
        _login(client, email)
        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        cleared = resp.headers.get_list("set-cookie")
        assert any(c.startswith("access_token=") for c in cleared)
        assert any(c.startswith("refresh_token=") for c in cleared)

    def test_logout_without_token_is_still_200(self, client: TestClient) -> None:
        assert client.post("/api/v1/auth/logout").status_code == 200

    def test_logout_twice_is_200(self, client: TestClient, registered) -> None:
        _, body = registered()
        payload = {"refresh_token": body["tokens"]["refresh_token"]}
        assert client.post("/api/v1/auth/logout", json=payload).status_code == 200
        assert client.post("/api/v1/auth/logout", json=payload).status_code == 200


class TestSessions:
    def test_lists_active_sessions_newest_first(self, client: TestClient, registered) -> None:
        email, first = registered()
        second = _login(client, email).json()
        resp = client.get("/api/v1/auth/sessions")
        assert resp.status_code == 200
        ids = [s["id"] for s in resp.json()]
        assert ids == [second["session_id"], first["session_id"]]
        assert all("refresh_token" not in s for s in resp.json())

    def test_requires_auth(self, client: TestClient) -> None:
        assert client.get("/api/v1/auth/sessions").status_code == 401


class TestDocs:
    def test_docs_require_auth(self, client: TestClient) -> None:
        assert client.get("/docs").status_code == 401

    def test_docs_with_token(self, client: TestClient, admin_headers) -> None:
        assert client.get("/docs", headers=admin_headers).status_code == 200
