"""Tests for the error envelope format and exception mapping.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import psycopg
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from psycopg_pool import PoolTimeout
from pydantic import ValidationError

from citadel.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from citadel.api.schemas import Envelope, ErrorBody
from citadel.service.errors import (
    ConflictError,
    CredentialError,
    RateLimitedError,
    ServiceUnavailableError,
)
from citadel.storage.errors import (
    CacheUnavailableError,
    ConstraintViolation,
    StoreUnavailableError,
)
from citadel.storage.postgres import _store_op


class TestErrorBody:
    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")

    def test_envelope_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(code="rate_limited", message="Too many requests"),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()
        assert dumped["error"]["code"] == "rate_limited"
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status, code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (429, "rate_limited"),
            (500, "server_error"),
            (503, "service_unavailable"),
        ],
    )
    def test_status_maps_to_stable_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_every_mapped_code_is_a_valid_error_code(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")

    def test_error_response_null_details(self):
        response = _error_response(404, "Not found", details=None)
        data = json.loads(response.body.decode())
        assert response.status_code == 404
        assert data["error"]["details"] is None
        assert "request_id" in data


def _app_raising(exc: Exception) -> TestClient:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_service_error_renders_its_status_and_code(self):
        response = _app_raising(RateLimitedError("slow down")).get("/boom")
        assert response.status_code == 429
        body = response.json()
        assert body["status"] == "error"
        assert body["error"] == {"code": "rate_limited", "message": "slow down", "details": None}

    def test_constraint_violation_does_not_name_the_column(self):
        exc = ConstraintViolation("duplicate key users_email_key", {"field": "email"})
        response = _app_raising(exc).get("/boom")
        assert response.status_code == 409
        assert response.json()["error"]["message"] == "Unable to create account"
        assert "email" not in response.text

    def test_conflict_error_keeps_message(self):
        response = _app_raising(ConflictError("Unable to create account")).get("/boom")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_credential_error_is_masked(self):
        response = _app_raising(CredentialError("scrypt: memory limit exceeded")).get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["message"] == "internal server error"

    def test_cache_outage_is_503(self):
        exc = CacheUnavailableError("is_blacklisted", ConnectionError("refused"))
        response = _app_raising(exc).get("/boom")
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "service_unavailable"

    def test_store_outage_is_503(self):
        exc = StoreUnavailableError("get_user_by_email", ConnectionError("refused"))
        response = _app_raising(exc).get("/boom")
        assert response.status_code == 503
        assert response.json()["error"] == {
            "code": "service_unavailable",
            "message": "service unavailable",
            "details": None,
        }

    def test_service_unavailable_default_message(self):
        response = _app_raising(ServiceUnavailableError()).get("/boom")
        assert response.status_code == 503
        assert response.json()["error"]["message"] == "service unavailable"

    def test_uncaught_exception_hides_detail(self):
        response = _app_raising(RuntimeError("db password is hunter2")).get("/boom")
        assert response.status_code == 500
        assert response.json()["error"]["message"] == "internal server error"
        assert "hunter2" not in response.text

    def test_unknown_route_is_enveloped_404(self):
        client = _app_raising(RuntimeError("unused"))
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestStoreOperationWrapper:
    @pytest.mark.parametrize(
        "error",
        [psycopg.OperationalError("connection refused"), PoolTimeout("couldn't get a connection")],
    )
    def test_connection_failures_become_store_unavailable(self, error):
        @_store_op("get_user")
        def query():
            raise error

        with pytest.raises(StoreUnavailableError) as exc_info:
            query()
        assert exc_info.value.operation == "get_user"
        assert exc_info.value.cause is error

    def test_other_errors_pass_through(self):
        @_store_op("get_user")
        def query():
            raise psycopg.errors.UniqueViolation("duplicate key")

        with pytest.raises(psycopg.errors.UniqueViolation):
            query()

    def test_results_are_returned(self):
        assert _store_op("noop")(lambda: 42)() == 42
