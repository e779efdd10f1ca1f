"""Integration tests for the server-rendered pages and CSRF enforcement."""

import re

import pytest
from fastapi.testclient import TestClient

from citadel import app as app_module
from citadel.service.runtime import get_runtime

EMAIL = "a@b.com"
PASSWORD = "Abcd1234!"

_CSRF_FIELD = re.compile(r'name="csrf_token" value="([^"]+)"')


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _csrf_from(response) -> str:
    match = _CSRF_FIELD.search(response.text)
    assert match, "page did not embed a CSRF token"
    assert response.cookies.get("csrf_token") == match.group(1)
    return match.group(1)


def _login(client, email=EMAIL, password=PASSWORD):
    token = _csrf_from(client.get("/login"))
    return client.post(
        "/login",
        data={"email": email, "password": password, "csrf_token": token},
        follow_redirects=False,
    )


@pytest.fixture
def registered(client):
    get_runtime().users.register(EMAIL, PASSWORD)


class TestRegisterPage:
    def test_form_renders_with_token(self, client):
        response = client.get("/register")
        assert response.status_code == 200
        assert "text/html" in response.headers["content-type"]
        _csrf_from(response)

    def test_each_render_rotates_the_token(self, client):
        assert _csrf_from(client.get("/register")) != _csrf_from(client.get("/register"))

    def test_register_signs_in_and_flashes(self, client):
        token = _csrf_from(client.get("/register"))
        response = client.post(
            "/register",
            data={"email": EMAIL, "password": PASSWORD, "csrf_token": token},
            follow_redirects=False,
        )
        assert response.status_code == 303
        assert response.headers["location"] == "/"
        assert response.cookies.get("session_token")

        home = client.get("/")
        assert "Registration successful!" in home.text
        assert re.search(r"Signed in as a-[0-9a-f]{6} \(a@b\.com\)", home.text)

    def test_invalid_registration_rerenders(self, client):
        token = _csrf_from(client.get("/register"))
        response = client.post(
            "/register",
            data={"email": "nope", "password": PASSWORD, "csrf_token": token},
        )
        assert response.status_code == 400
        assert "invalid email format" in response.text


class TestLoginPage:
    def test_login_flash_shows_once(self, client, registered):
        response = _login(client)
        assert response.status_code == 303
        assert response.headers["location"] == "/"

        first = client.get("/")
        assert "Login successful!" in first.text
        second = client.get("/")
        assert "Login successful!" not in second.text
        assert "Signed in as" in second.text

    def test_bad_credentials_rerender(self, client, registered):
        response = _login(client, password="Wrong123!")
        assert response.status_code == 401
        assert "Invalid email or password" in response.text
        assert "session_token" not in response.cookies

    def test_anonymous_home(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert "Sign in" in response.text


class TestLogout:
    def test_logout_destroys_session(self, client, registered):
        _login(client)
        session_token = client.cookies.get("session_token")
        token = _csrf_from(client.get("/"))
        response = client.post("/logout", data={"csrf_token": token}, follow_redirects=False)
        assert response.status_code == 303
        assert response.headers["location"] == "/login"
        assert get_runtime().sessions.resolve(session_token) is None

    def test_logout_without_session_redirects_to_login(self, client):
        token = _csrf_from(client.get("/login"))
        response = client.post("/logout", data={"csrf_token": token}, follow_redirects=False)
        assert response.status_code == 303
        assert response.headers["location"] == "/login"


class TestCsrf:
    def test_form_post_without_token_is_forbidden(self, client, registered):
        client.get("/login")
        response = client.post("/login", data={"email": EMAIL, "password": PASSWORD})
        assert response.status_code == 403
        assert response.json()["error"] == {
            "code": "forbidden",
            "message": "missing or invalid CSRF token",
            "details": None,
        }

    def test_mismatched_token_is_forbidden(self, client, registered):
        client.get("/login")
        response = client.post(
            "/login", data={"email": EMAIL, "password": PASSWORD, "csrf_token": "forged"}
        )
        assert response.status_code == 403

    def test_header_token_is_accepted(self, client, registered):
        token = _csrf_from(client.get("/login"))
        response = client.post(
            "/login",
            data={"email": EMAIL, "password": PASSWORD},
            headers={"X-CSRF-Token": token},
            follow_redirects=False,
        )
        assert response.status_code == 303

    def test_cookie_authenticated_api_post_needs_token(self, client, registered):
        _login(client)
        response = client.post("/v1/auth/refresh", json={"refresh_token": "x"})
        assert response.status_code == 403

    def test_bearer_requests_are_exempt(self, client, registered):
        _login(client)
        response = client.post(
            "/v1/auth/refresh",
            json={"refresh_token": "x"},
            headers={"Authorization": "Bearer whatever"},
        )
        assert response.status_code == 401

    def test_get_is_never_checked(self, client, registered):
        _login(client)
        assert client.get("/").status_code == 200


class TestForgotPasswordPage:
    def test_form_has_guards(self, client):
        response = client.get("/forgot-password")
        assert 'name="render_time"' in response.text
        assert 'name="website"' in response.text
        _csrf_from(response)

    def test_submission_is_generic(self, client, registered):
        token = _csrf_from(client.get("/forgot-password"))
        response = client.post(
            "/forgot-password",
            data={"email": EMAIL, "csrf_token": token},
        )
        assert response.status_code == 200
        assert "If an account with that email exists" in response.text

    def test_honeypot(self, client, registered):
        token = _csrf_from(client.get("/forgot-password"))
        response = client.post(
            "/forgot-password",
            data={"email": EMAIL, "website": "http://spam.example", "csrf_token": token},
        )
        assert response.status_code == 200
        assert "If an account with that email exists" in response.text
        assert get_runtime().store.reset_attempts == []


class TestResetPasswordPage:
    def test_invalid_link(self, client):
        response = client.get("/reset-password", params={"token": "bogus"})
        assert response.status_code == 400
        assert "invalid or expired reset token" in response.text

    def test_reset_via_form(self, client, registered):
        runtime = get_runtime()
        user = runtime.store.get_user_by_email(EMAIL)
        reset_token = runtime.store.create_password_reset(user.id).token

        page = client.get("/reset-password", params={"token": reset_token})
        assert page.status_code == 200
        token = _csrf_from(page)

        response = client.post(
            "/reset-password",
            data={
                "token": reset_token,
                "password": "Newpass123!",
                "confirm_password": "Newpass123!",
                "csrf_token": token,
            },
        )
        assert response.status_code == 200
        assert "Password reset successfully!" in response.text
        assert _login(client, password="Newpass123!").status_code == 303

    def test_mismatched_confirmation(self, client, registered):
        runtime = get_runtime()
        user = runtime.store.get_user_by_email(EMAIL)
        reset_token = runtime.store.create_password_reset(user.id).token
        token = _csrf_from(client.get("/reset-password", params={"token": reset_token}))
        response = client.post(
            "/reset-password",
            data={
                "token": reset_token,
                "password": "Newpass123!",
                "confirm_password": "Different123!",
                "csrf_token": token,
            },
        )
        assert response.status_code == 400
        assert "Passwords do not match" in response.text
