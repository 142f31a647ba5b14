"""Integration tests for the HTTP surface.

Tests the complete flow through the app including:
- Registration and login
- Token refresh rotation and expiry
- Logout
- Profile read and update
- Admin-only user listing and deactivation
- Rate limiting, sanitization, and health checks
"""

import pytest
from fastapi.testclient import TestClient

from authkernel.app import create_app
from authkernel.service.runtime import Runtime

PASSWORD = "TestPassword123!"


def _register(client, email="ada@example.com", role=None, **overrides):
    body = {
        "email": email,
        "password": PASSWORD,
        "firstName": "Ada",
        "lastName": "Lovelace",
    }
    if role:
        body["role"] = role
    body.update(overrides)
    return client.post("/api/auth/register", json=body)


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def registered(client):
    response = _register(client)
    assert response.status_code == 201
    return response.json()["data"]


@pytest.fixture
def admin(client):
    response = _register(client, email="root@example.com", role="ADMIN")
    assert response.status_code == 201
    return response.json()["data"]


class TestRegister:
    def test_register_returns_token_pair(self, client):
        response = _register(client, email="Ada@Example.COM")

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["tokenType"] == "Bearer"
        assert data["expiresIn"] == 24 * 3600
        assert data["accessToken"] and data["refreshToken"]
        assert data["user"]["email"] == "ada@example.com"
        assert data["user"]["role"] == "USER"
        assert data["user"]["isActive"] is True
        assert "password" not in response.text
        assert "passwordHash" not in data["user"]

    def test_duplicate_email_conflicts(self, client, registered):
        response = _register(client)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    @pytest.mark.parametrize(
        "overrides,field",
        [
            ({"password": "short1!"}, "password"),
            ({"password": "alllowercase123!"}, "password"),
            ({"email": "not-an-email"}, "email"),
            ({"firstName": "A"}, "firstName"),
            ({"lastName": "L4vel4ce"}, "lastName"),
            ({"role": "ROOT"}, "role"),
        ],
    )
    def test_validation_failures(self, client, overrides, field):
        response = _register(client, **overrides)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert any(d["field"] == field for d in error["details"])

    def test_markup_in_names_is_escaped(self, client):
        response = _register(client, lastName="O'Brien")

        assert response.status_code == 201
        assert response.json()["data"]["user"]["lastName"] == "O&#x27;Brien"


class TestLogin:
    def test_login_success(self, client, registered):
        response = client.post(
            "/api/auth/login", json={"email": "ada@example.com", "password": PASSWORD}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["id"] == registered["user"]["id"]
        assert data["user"]["lastLogin"] is not None

    @pytest.mark.parametrize(
        "email,password",
        [("ada@example.com", "WrongPassword1!"), ("nobody@example.com", PASSWORD)],
    )
    def test_login_failures_identical(self, client, registered, email, password):
        response = client.post("/api/auth/login", json={"email": email, "password": password})

        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "unauthorized",
            "message": "Invalid credentials",
            "details": None,
        }


class TestRefresh:
    def test_refresh_rotates(self, client, registered):
        old = registered["refreshToken"]

        response = client.post("/api/auth/refresh", json={"refreshToken": old})
        assert response.status_code == 200
        new = response.json()["data"]["refreshToken"]
        assert new != old

        replay = client.post("/api/auth/refresh", json={"refreshToken": old})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "unauthorized"

    def test_expired_refresh_token(self, client, registered, clock):
        clock.advance(days=7, seconds=1)

        response = client.post(
            "/api/auth/refresh", json={"refreshToken": registered["refreshToken"]}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_expired"

    def test_session_lifecycle(self, client, registered):
        login = client.post(
            "/api/auth/login", json={"email": "ada@example.com", "password": PASSWORD}
        )
        assert login.status_code == 200
        login_token = login.json()["data"]["refreshToken"]

        # Logging in again leaves the registration session alone
        from_register = client.post(
            "/api/auth/refresh", json={"refreshToken": registered["refreshToken"]}
        )
        assert from_register.status_code == 200

        rotated = client.post("/api/auth/refresh", json={"refreshToken": login_token})
        assert rotated.status_code == 200
        current = rotated.json()["data"]["refreshToken"]

        stale = client.post("/api/auth/refresh", json={"refreshToken": login_token})
        assert stale.status_code == 401

        logout = client.post("/api/auth/logout", json={"refreshToken": current})
        assert logout.status_code == 200

        after_logout = client.post("/api/auth/refresh", json={"refreshToken": current})
        assert after_logout.status_code == 401
        assert after_logout.json()["error"]["code"] == "unauthorized"

    def test_missing_refresh_token(self, client):
        response = client.post("/api/auth/refresh", json={})

        assert response.status_code == 400


class TestLogout:
    def test_logout_revokes(self, client, registered):
        token = registered["refreshToken"]

        response = client.post("/api/auth/logout", json={"refreshToken": token})
        assert response.status_code == 200
        assert response.json()["data"] == {"message": "Logged out successfully"}

        assert client.post("/api/auth/refresh", json={"refreshToken": token}).status_code == 401

    def test_logout_unknown_token_succeeds(self, client):
        response = client.post("/api/auth/logout", json={"refreshToken": "never-issued"})

        assert response.status_code == 200


class TestProfile:
    def test_get_profile(self, client, registered):
        response = client.get("/api/auth/profile", headers=_auth(registered["accessToken"]))

        assert response.status_code == 200
        assert response.json()["data"]["email"] == "ada@example.com"

    @pytest.mark.parametrize(
        "headers",
        [{}, {"Authorization": "Bearer not.a.token"}, {"Authorization": "Basic abc"}],
    )
    def test_unauthenticated(self, client, headers):
        response = client.get("/api/auth/profile", headers=headers)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_expired_access_token(self, client, registered, clock):
        clock.advance(hours=24)

        response = client.get("/api/auth/profile", headers=_auth(registered["accessToken"]))

        assert response.status_code == 401

    def test_update_profile(self, client, registered):
        response = client.put(
            "/api/auth/profile",
            json={"firstName": "Augusta"},
            headers=_auth(registered["accessToken"]),
        )

        assert response.status_code == 200
        assert response.json()["data"]["firstName"] == "Augusta"
        assert response.json()["data"]["lastName"] == "Lovelace"

    def test_update_requires_a_field(self, client, registered):
        response = client.put(
            "/api/auth/profile", json={}, headers=_auth(registered["accessToken"])
        )

        assert response.status_code == 400

    def test_update_password_then_login(self, client, registered):
        client.put(
            "/api/auth/profile",
            json={"password": "NewPassword456!"},
            headers=_auth(registered["accessToken"]),
        )

        old = client.post("/api/auth/login", json={"email": "ada@example.com", "password": PASSWORD})
        new = client.post(
            "/api/auth/login", json={"email": "ada@example.com", "password": "NewPassword456!"}
        )
        assert old.status_code == 401
        assert new.status_code == 200

    def test_update_email_conflict(self, client, registered, admin):
        response = client.put(
            "/api/auth/profile",
            json={"email": "root@example.com"},
            headers=_auth(registered["accessToken"]),
        )

        assert response.status_code == 409


class TestAdmin:
    def test_admin_lists_users(self, client, registered, admin):
        response = client.get("/api/auth/users", headers=_auth(admin["accessToken"]))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["count"] == 2
        assert {u["email"] for u in data["users"]} == {"ada@example.com", "root@example.com"}

    def test_super_admin_allowed(self, client):
        root = _register(client, email="super@example.com", role="SUPER_ADMIN").json()["data"]

        response = client.get("/api/auth/users", headers=_auth(root["accessToken"]))

        assert response.status_code == 200

    def test_non_admin_forbidden(self, client, registered):
        response = client.get("/api/auth/users", headers=_auth(registered["accessToken"]))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_anonymous_unauthorized(self, client):
        assert client.get("/api/auth/users").status_code == 401

    def test_deactivate_user(self, client, registered, admin):
        user_id = registered["user"]["id"]

        response = client.post(
            f"/api/auth/users/{user_id}/deactivate", headers=_auth(admin["accessToken"])
        )
        assert response.status_code == 200
        assert response.json()["data"]["isActive"] is False

        refresh = client.post(
            "/api/auth/refresh", json={"refreshToken": registered["refreshToken"]}
        )
        assert refresh.status_code == 401
        login = client.post(
            "/api/auth/login", json={"email": "ada@example.com", "password": PASSWORD}
        )
        assert login.status_code == 401

        # Access tokens already issued stay usable until they expire
        profile = client.get("/api/auth/profile", headers=_auth(registered["accessToken"]))
        assert profile.status_code == 200
        assert profile.json()["data"]["isActive"] is False

    def test_deactivate_unknown_user(self, client, admin):
        response = client.post(
            "/api/auth/users/missing/deactivate", headers=_auth(admin["accessToken"])
        )

        assert response.status_code == 404

    def test_deactivate_requires_admin(self, client, registered):
        response = client.post(
            f"/api/auth/users/{registered['user']['id']}/deactivate",
            headers=_auth(registered["accessToken"]),
        )

        assert response.status_code == 403


class TestRateLimiting:
    @pytest.fixture
    def limited_client(self, settings_factory, clock):
        runtime = Runtime(
            settings_factory(auth_rate_limit_max_requests=3), use_cache=False, clock=clock
        )
        return TestClient(create_app(runtime))

    def test_auth_routes_limited(self, limited_client, clock):
        first = _register(limited_client)
        assert first.status_code == 201
        assert first.headers["RateLimit-Limit"] == "3"
        assert first.headers["RateLimit-Remaining"] == "2"
        assert first.headers["RateLimit-Reset"] == "900"

        body = {"email": "ada@example.com", "password": PASSWORD}
        assert limited_client.post("/api/auth/login", json=body).status_code == 200
        assert limited_client.post("/api/auth/login", json=body).status_code == 200

        blocked = limited_client.post("/api/auth/login", json=body)
        assert blocked.status_code == 429
        assert blocked.json()["error"]["message"] == (
            "Too many authentication attempts, please try again later"
        )
        assert blocked.headers["Retry-After"] == "900"

        clock.advance(minutes=15)
        assert limited_client.post("/api/auth/login", json=body).status_code == 200

    def test_other_classes_unaffected(self, limited_client):
        body = {"email": "ada@example.com", "password": PASSWORD}
        for _ in range(4):
            limited_client.post("/api/auth/login", json=body)

        assert limited_client.get("/api/auth/profile").status_code == 401


class TestHttpPlumbing:
    def test_request_id_echoed(self, client):
        response = client.post(
            "/api/auth/login",
            json={"email": "ada@example.com", "password": PASSWORD},
            headers={"X-Request-ID": "req-123"},
        )

        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_security_headers(self, client):
        response = client.get("/healthz")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "no-store" in response.headers["Cache-Control"]

    def test_health(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["status"] == "healthy"
        assert body["checks"]["redis"]["status"] == "not_configured"

    def test_operator_keys_stripped(self, client):
        response = client.post(
            "/api/auth/login",
            json={"email": "ada@example.com", "password": {"$ne": ""}},
        )

        assert response.status_code == 400

    def test_structured_json_body_is_sanitized(self, client, runtime):
        response = client.post(
            "/api/auth/register",
            content=(
                b'{"email": "ada@example.com", "password": "TestPassword123!",'
                b' "firstName": "Ada", "lastName": "O\'Brien"}'
            ),
            headers={"Content-Type": "application/vnd.api+json"},
        )

        assert response.status_code == 201
        assert runtime.store.get_user_by_email("ada@example.com").last_name == "O&#x27;Brien"

    def test_deeply_nested_body_is_a_bad_request(self, client):
        response = client.post(
            "/api/auth/login",
            content=b"[" * 100000 + b"]" * 100000,
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_oversized_body_rejected(self, settings_factory, clock):
        runtime = Runtime(settings_factory(max_body_bytes=128), use_cache=False, clock=clock)
        client = TestClient(create_app(runtime))

        response = _register(client, lastName="x" * 200)

        assert response.status_code == 413
        assert response.json()["error"]["code"] == "payload_too_large"
        assert response.headers["X-Request-ID"]
