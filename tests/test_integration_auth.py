"""Integration tests for the JSON authentication API.

Covers registration, login, token refresh, logout revocation, ``/v1/me`` and
the password reset endpoints, end to end through the FastAPI app.
"""

import re

import pytest
from fastapi.testclient import TestClient

from citadel import app as app_module
from citadel.service.runtime import get_runtime, reset_runtime_for_tests
from citadel.storage.errors import CacheUnavailableError, StoreUnavailableError

EMAIL = "a@b.com"
PASSWORD = "Abcd1234!"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email=EMAIL, password=PASSWORD, **extra):
    return client.post("/v1/auth/register", json={"email": email, "password": password, **extra})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegister:
    def test_register_returns_token_pair(self, client):
        response = _register(client)
        assert response.status_code == 201
        body = response.json()
        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == 300
        assert body["access_token"].count(".") == 2
        assert body["refresh_token"]
        assert body["user"]["email"] == EMAIL
        assert re.fullmatch(r"a-[0-9a-f]{6}", body["user"]["username"])
        assert "password_hash" not in body["user"]
        assert "salt" not in body["user"]

    def test_register_with_explicit_username(self, client):
        body = _register(client, username="alice", first_name="Alice").json()
        assert body["user"]["username"] == "alice"
        assert body["user"]["first_name"] == "Alice"

    def test_duplicate_email_conflicts(self, client):
        assert _register(client).status_code == 201
        response = _register(client, email="A@B.COM", username="another")
        assert response.status_code == 409
        assert response.json()["error"] == {
            "code": "conflict",
            "message": "Unable to create account",
            "details": None,
        }

    def test_duplicate_username_gets_same_message(self, client):
        _register(client, username="alice")
        response = _register(client, email="other@b.com", username="alice")
        assert response.status_code == 409
        assert response.json()["error"]["message"] == "Unable to create account"

    def test_shared_local_part_gets_a_distinct_default_username(self, client):
        first = _register(client, email="alice@x.com")
        second = _register(client, email="alice@y.com")
        assert first.status_code == 201
        assert second.status_code == 201
        assert first.json()["user"]["username"] == "alice"
        assert re.fullmatch(r"alice-[0-9a-f]{6}", second.json()["user"]["username"])

    def test_default_username_does_not_take_an_explicit_one(self, client):
        assert _register(client, email="bob@x.com").status_code == 201
        response = _register(client, email="carol@x.com", username="bob")
        assert response.status_code == 409

    def test_weak_password(self, client):
        response = _register(client, password="password")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_malformed_body(self, client):
        response = client.post("/v1/auth/register", json={"email": EMAIL})
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid request body"


class TestLogin:
    def test_login_succeeds(self, client):
        _register(client)
        response = client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD})
        assert response.status_code == 200
        body = response.json()
        assert body["user"]["last_login"] is not None

    def test_wrong_password_and_unknown_email_look_alike(self, client):
        _register(client)
        wrong = client.post("/v1/auth/login", json={"email": EMAIL, "password": "Wrong123!"})
        unknown = client.post("/v1/auth/login", json={"email": "x@y.com", "password": PASSWORD})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["error"]["message"] == "Invalid email or password"

    def test_empty_credentials(self, client):
        response = client.post("/v1/auth/login", json={"email": "", "password": ""})
        assert response.status_code == 400


class TestSessionLifecycle:
    def test_register_me_logout_me(self, client):
        tokens = _register(client).json()
        me = client.get("/v1/me", headers=_bearer(tokens["access_token"]))
        assert me.status_code == 200
        assert me.json() == {
            "user_id": tokens["user"]["user_id"],
            "email": EMAIL,
            "username": tokens["user"]["username"],
        }

        logout = client.post("/v1/auth/logout", headers=_bearer(tokens["access_token"]))
        assert logout.status_code == 204
        assert logout.content == b""

        after = client.get("/v1/me", headers=_bearer(tokens["access_token"]))
        assert after.status_code == 401
        assert after.json()["error"]["message"] == "invalid or expired token"

    def test_logout_revokes_refresh_tokens(self, client):
        tokens = _register(client).json()
        client.post("/v1/auth/logout", headers=_bearer(tokens["access_token"]))
        response = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert response.status_code == 401

    def test_refresh_rotates(self, client):
        tokens = _register(client).json()
        rotated = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert rotated.status_code == 200
        new_tokens = rotated.json()
        assert new_tokens["refresh_token"] != tokens["refresh_token"]
        assert client.get("/v1/me", headers=_bearer(new_tokens["access_token"])).status_code == 200

        replay = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["message"] == "Invalid or expired refresh token"

    def test_query_token_only_on_the_event_stream(self, client):
        tokens = _register(client).json()
        response = client.get("/v1/me", params={"token": tokens["access_token"]})
        assert response.status_code == 401

        stream = client.get("/v1/me/events", params={"token": tokens["access_token"]})
        assert stream.status_code == 200
        assert stream.headers["content-type"].startswith("text/event-stream")
        assert stream.text.startswith("event: identity\ndata: ")
        assert EMAIL in stream.text

    def test_query_token_not_accepted_for_logout(self, client):
        tokens = _register(client).json()
        response = client.post("/v1/auth/logout", params={"token": tokens["access_token"]})
        assert response.status_code == 401
        assert client.get("/v1/me", headers=_bearer(tokens["access_token"])).status_code == 200

    def test_event_stream_rejects_bad_query_token(self, client):
        response = client.get("/v1/me/events", params={"token": "not.a.jwt"})
        assert response.status_code == 401

    @pytest.mark.parametrize(
        "headers",
        [
            {},
            {"Authorization": "Basic dXNlcjpwYXNz"},
            {"Authorization": "Bearer"},
            {"Authorization": "Bearer not.a.jwt"},
        ],
    )
    def test_every_bad_credential_gets_one_message(self, client, headers):
        response = client.get("/v1/me", headers=headers)
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid or expired token"

    def test_bearer_scheme_is_case_insensitive(self, client):
        tokens = _register(client).json()
        response = client.get("/v1/me", headers={"Authorization": f"bearer {tokens['access_token']}"})
        assert response.status_code == 200

    def test_cache_outage_is_503_not_401(self, client, monkeypatch):
        tokens = _register(client).json()

        async def down(jti):
            raise CacheUnavailableError("is_blacklisted", ConnectionError("refused"))

        monkeypatch.setattr(get_runtime().cache, "is_blacklisted", down)
        response = client.get("/v1/me", headers=_bearer(tokens["access_token"]))
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "service_unavailable"


class TestPasswordResetApi:
    def test_forgot_is_generic(self, client):
        _register(client)
        known = client.post("/v1/auth/password/forgot", json={"email": EMAIL})
        unknown = client.post("/v1/auth/password/forgot", json={"email": "x@y.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()

    def test_forgot_rate_limit(self, client):
        for _ in range(3):
            assert client.post("/v1/auth/password/forgot", json={"email": EMAIL}).status_code == 200
        response = client.post("/v1/auth/password/forgot", json={"email": EMAIL})
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"

    def test_reset_flow(self, client):
        _register(client)
        runtime = get_runtime()
        user = runtime.store.get_user_by_email(EMAIL)
        token = runtime.store.create_password_reset(user.id).token

        mismatch = client.post(
            "/v1/auth/password/reset",
            json={"token": token, "password": "Newpass123!", "confirm_password": "Other123!"},
        )
        assert mismatch.status_code == 400
        assert mismatch.json()["error"]["message"] == "Passwords do not match"

        body = {"token": token, "password": "Newpass123!", "confirm_password": "Newpass123!"}
        assert client.post("/v1/auth/password/reset", json=body).status_code == 200
        assert client.post("/v1/auth/password/reset", json=body).status_code == 400

        old = client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD})
        new = client.post("/v1/auth/login", json={"email": EMAIL, "password": "Newpass123!"})
        assert old.status_code == 401
        assert new.status_code == 200


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["cache"]["status"] == "healthy"
        assert body["version"] == app_module.__version__
        assert "timestamp" in body

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class RecordingEmail:
    def __init__(self):
        self.sent = []

    def send_password_reset(self, to_email, token):
        self.sent.append((to_email, token))
        return True


class TestForgotPasswordDelivery:
    def test_email_is_sent_after_the_response(self, client, monkeypatch):
        _register(client)
        email = RecordingEmail()
        monkeypatch.setattr(get_runtime().password_resets, "email", email)
        response = client.post("/v1/auth/password/forgot", json={"email": EMAIL})
        assert response.status_code == 200
        assert [to for to, _ in email.sent] == [EMAIL]
        assert get_runtime().store.get_valid_password_reset(email.sent[0][1]) is not None

    def test_unknown_email_sends_nothing(self, client, monkeypatch):
        email = RecordingEmail()
        monkeypatch.setattr(get_runtime().password_resets, "email", email)
        client.post("/v1/auth/password/forgot", json={"email": "nobody@b.com"})
        assert email.sent == []


class TestClientAddress:
    def _forgot(self, client, i, forwarded):
        return client.post(
            "/v1/auth/password/forgot",
            json={"email": f"user{i}@b.com"},
            headers={"X-Forwarded-For": forwarded},
        )

    def test_spoofed_forwarded_for_does_not_escape_the_ip_limit(self, client):
        statuses = [self._forgot(client, i, f"203.0.113.{i}").status_code for i in range(11)]
        assert statuses[:10] == [200] * 10
        assert statuses[10] == 429

    def test_forwarded_for_is_honoured_from_a_trusted_proxy(self, client, monkeypatch):
        monkeypatch.setenv("TRUSTED_PROXIES", "testclient, 10.0.0.0/8")
        reset_runtime_for_tests()
        statuses = [self._forgot(client, i, f"203.0.113.{i}").status_code for i in range(11)]
        assert statuses == [200] * 11
        assert {a.ip_address for a in get_runtime().store.reset_attempts} == {
            f"203.0.113.{i}" for i in range(11)
        }


class TestStoreOutage:
    def test_unreachable_store_is_503(self, client, monkeypatch):
        _register(client)

        def down(email):
            raise StoreUnavailableError("get_user_by_email", ConnectionError("refused"))

        monkeypatch.setattr(get_runtime().store, "get_user_by_email", down)
        response = client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD})
        assert response.status_code == 503
        assert response.json()["error"] == {
            "code": "service_unavailable",
            "message": "service unavailable",
            "details": None,
        }


class TestChangePassword:
    def _change(self, client, token, current=PASSWORD, new="Newpass123!", confirm=None):
        return client.post(
            "/v1/auth/password/change",
            json={
                "current_password": current,
                "new_password": new,
                "confirm_password": new if confirm is None else confirm,
            },
            headers=_bearer(token),
        )

    def test_change_password(self, client):
        tokens = _register(client).json()
        response = self._change(client, tokens["access_token"])
        assert response.status_code == 200
        assert response.json() == {"message": "Password changed successfully"}

        old = client.post("/v1/auth/login", json={"email": EMAIL, "password": PASSWORD})
        new = client.post("/v1/auth/login", json={"email": EMAIL, "password": "Newpass123!"})
        assert old.status_code == 401
        assert new.status_code == 200

    def test_wrong_current_password(self, client):
        tokens = _register(client).json()
        response = self._change(client, tokens["access_token"], current="Wrong123!")
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Current password is incorrect"

    def test_mismatched_confirmation(self, client):
        tokens = _register(client).json()
        response = self._change(client, tokens["access_token"], confirm="Other123!")
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Passwords do not match"

    def test_requires_a_bearer_token(self, client):
        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": PASSWORD, "new_password": "Newpass123!", "confirm_password": "Newpass123!"},
        )
        assert response.status_code == 401
