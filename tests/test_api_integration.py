"""End-to-end tests through the FastAPI app.

Walks the full lifecycle: register, verify, login, profile, scores,
settings, refresh, logout and password reset.
"""

import pytest
from fastapi.testclient import TestClient

from dichoptic import app as app_module
from dichoptic.service.runtime import get_runtime

EMAIL = "player@example.com"
PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email=EMAIL, password=PASSWORD):
    return client.post("/auth/register", json={"email": email, "password": password})


def _verification_token(email=EMAIL):
    return get_runtime().store.get_user_by_email(email).verification_token


def _login(client, email=EMAIL, password=PASSWORD):
    return client.post("/auth/login", json={"email": email, "password": password})


@pytest.fixture
def tokens(client):
    _register(client)
    client.post("/auth/verify-email", json={"token": _verification_token()})
    response = _login(client)
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def auth_headers(tokens):
    return {"Authorization": f"Bearer {tokens['access_token']}"}


class TestRegistration:
    def test_register_returns_user_summary(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["message"] == "User created successfully"
        assert body["user"]["email"] == EMAIL
        assert "password" not in str(body)

    def test_duplicate_register_is_400_conflict(self, client):
        _register(client)
        response = _register(client)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "conflict"

    def test_short_password_is_validation_error(self, client):
        response = _register(client, password="12345")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_bad_email_is_validation_error(self, client):
        response = _register(client, email="not-an-email")
        assert response.status_code == 400


class TestLoginFlow:
    def test_unverified_login(self, client):
        _register(client)

        response = _login(client)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "email_not_verified"

    def test_wrong_password(self, client):
        _register(client)

        response = _login(client, password="WrongPassword!")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"
        assert response.json()["error"]["message"] == "Invalid credentials"

    def test_unknown_email_matches_wrong_password(self, client, tokens):
        wrong_password = _login(client, password="WrongPassword!")
        unknown_email = _login(client, email="ghost@example.com")

        assert wrong_password.status_code == unknown_email.status_code == 401
        assert wrong_password.json()["error"] == unknown_email.json()["error"]

    def test_verify_with_bad_token(self, client):
        response = client.post("/auth/verify-email", json={"token": "bogus"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_token"

    def test_login_returns_token_pair(self, tokens):
        assert tokens["access_token"]
        assert tokens["refresh_token"]

    def test_profile(self, client, auth_headers):
        response = client.get("/auth/profile", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["email"] == EMAIL
        assert body["id"] == get_runtime().store.get_user_by_email(EMAIL).id
        assert body["exp"] > body["iat"]

    def test_profile_requires_token(self, client):
        response = client.get("/auth/profile")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_resend_after_verification(self, client, tokens):
        response = client.post("/auth/resend-verification", json={"email": EMAIL})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "already_verified"

    def test_resend_unknown_email(self, client):
        response = client.post("/auth/resend-verification", json={"email": "ghost@example.com"})
        assert response.status_code == 404


class TestRefreshAndLogout:
    def test_refresh_issues_access_token(self, client, tokens):
        response = client.post("/auth/refresh", json={"refreshToken": tokens["refresh_token"]})

        assert response.status_code == 200
        new_access = response.json()["access_token"]
        profile = client.get("/auth/profile", headers={"Authorization": f"Bearer {new_access}"})
        assert profile.status_code == 200

    def test_refresh_with_invalid_token(self, client):
        response = client.post("/auth/refresh", json={"refreshToken": "garbage"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_logout_revokes_refresh(self, client, tokens, auth_headers):
        response = client.post("/auth/logout", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["message"] == "Logged out successfully"

        refresh = client.post("/auth/refresh", json={"refreshToken": tokens["refresh_token"]})
        assert refresh.status_code == 401


class TestPasswordReset:
    def test_forgot_password_same_reply_for_unknown(self, client, tokens):
        known = client.post("/auth/forgot-password", json={"email": EMAIL})
        unknown = client.post("/auth/forgot-password", json={"email": "ghost@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()

    def test_reset_password_round_trip(self, client, tokens):
        client.post("/auth/forgot-password", json={"email": EMAIL})
        reset_token = get_runtime().store.get_user_by_email(EMAIL).reset_token

        response = client.post(
            "/auth/reset-password", json={"token": reset_token, "password": "NewPassword456"}
        )

        assert response.status_code == 200
        assert _login(client).status_code == 401
        assert _login(client, password="NewPassword456").status_code == 200

    def test_reset_password_bad_token(self, client):
        response = client.post(
            "/auth/reset-password", json={"token": "nope", "password": "NewPassword456"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_token"


class TestScores:
    def test_submit_and_list(self, client, auth_headers):
        for value in (10, 30, 20):
            response = client.post(
                "/scores",
                json={"game": "tetris", "score": value, "date": "2024-05-01", "time": "10:00:00"},
                headers=auth_headers,
            )
            assert response.status_code == 200

        response = client.get("/scores/tetris", headers=auth_headers)

        assert response.status_code == 200
        entries = response.json()
        assert [e["score"] for e in entries] == [30, 20, 10]
        assert entries[0]["userId"] == get_runtime().store.get_user_by_email(EMAIL).id
        assert client.get("/scores/snake", headers=auth_headers).json() == []

    def test_zero_score_returns_null(self, client, auth_headers):
        response = client.post(
            "/scores",
            json={"game": "snake", "score": 0, "date": "2024-05-01", "time": "10:00:00"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json() is None

    def test_unknown_game(self, client, auth_headers):
        response = client.get("/scores/pong", headers=auth_headers)
        assert response.status_code == 400

    def test_scores_require_auth(self, client):
        assert client.get("/scores/tetris").status_code == 401


class TestSettings:
    def test_settings_absent_then_saved(self, client, auth_headers):
        assert client.get("/settings", headers=auth_headers).json() is None

        response = client.put(
            "/settings",
            json={"leftEyeColor": "#00ff00", "rightEyeColor": "#FF00FF", "eyeDominance": "right-active"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["leftEyeColor"] == "#00FF00"
        assert body["eyeDominance"] == "right-active"
        assert client.get("/settings", headers=auth_headers).json() == body

    def test_invalid_colour(self, client, auth_headers):
        response = client.put(
            "/settings",
            json={"leftEyeColor": "red", "rightEyeColor": "#FF00FF", "eyeDominance": "left-active"},
            headers=auth_headers,
        )
        assert response.status_code == 400


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["checks"]["database"] == "memory"
    assert body["checks"]["redis"] == "not_configured"
