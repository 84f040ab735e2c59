"""Tests for the error envelope format and exception mapping.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "path": "<request path>",
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from antares import app as app_module
from antares.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    error_response,
    register_exception_handlers,
)
from antares.api.schemas import Envelope, ErrorBody
from antares.service.errors import (
    AccountLockedError,
    ServiceError,
    SessionExpiredError,
    UpstreamUnavailableError,
)
from antares.storage.errors import ConstraintViolation, StoreUnavailable


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        """ErrorBody requires code and message fields."""
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.message == "Invalid credentials"
        assert error.details is None

    def test_error_body_with_details_list(self):
        """ErrorBody accepts list details."""
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_error_body_missing_code_raises(self):
        """ErrorBody without code raises ValidationError."""
        with pytest.raises(ValidationError):
            ErrorBody(message="Error occurred")

    def test_error_body_unknown_code_raises(self):
        """Codes outside the stable taxonomy are rejected."""
        with pytest.raises(ValidationError):
            ErrorBody(code="rate_limited", message="Too many requests")

    @pytest.mark.parametrize(
        "code",
        [
            "invalid_credentials",
            "account_locked",
            "token_invalid",
            "session_expired",
            "invalid_password",
            "upstream_unavailable",
        ],
    )
    def test_auth_codes_accepted(self, code):
        assert ErrorBody(code=code, message="m").code == code


class TestEnvelope:
    """Tests for the Envelope model with error support."""

    def test_envelope_ok_status(self):
        """Envelope accepts 'ok' status with data."""
        envelope = Envelope(status="ok", data={"user_id": "123"})

        assert envelope.status == "ok"
        assert envelope.data == {"user_id": "123"}
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        """Envelope auto-generates request_id if not provided."""
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        """Envelope rejects invalid status values."""
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    """Tests for HTTP status to error code mapping."""

    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (410, "session_expired"),
            (429, "account_locked"),
            (503, "upstream_unavailable"),
            (500, "server_error"),
        ],
    )
    def test_status_mapping(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        """Unknown status codes default to 'server_error'."""
        assert _error_code_for_status(418) == "server_error"

    def test_mapped_codes_are_valid_error_body_codes(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="m")


class TestErrorResponseFactory:
    """Tests for the error_response helper function."""

    def test_error_response_basic(self):
        response = error_response(401, "Invalid credentials", path="/x")

        assert response.status_code == 401
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["details"] is None
        assert data["path"] == "/x"
        assert data["request_id"]

    def test_error_response_custom_code_and_headers(self):
        response = error_response(
            429, "locked", {"remaining_seconds": 5}, code="account_locked",
            headers={"Retry-After": "5"},
        )
        assert response.headers["Retry-After"] == "5"
        data = json.loads(response.body.decode())
        assert data["error"]["details"] == {"remaining_seconds": 5}


def _raising_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/store-down")
    async def store_down():
        raise StoreUnavailable("postgres", "connection refused")

    @app.get("/locked")
    async def locked():
        raise AccountLockedError(42)

    @app.get("/expired")
    async def expired():
        raise SessionExpiredError()

    @app.get("/upstream")
    async def upstream():
        raise UpstreamUnavailableError()

    @app.get("/custom")
    async def custom():
        raise ServiceError("teapot", status_code=400, error_code="validation_error")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return app


class TestExceptionHandlers:
    """Domain and storage exceptions map onto envelope responses."""

    @pytest.fixture
    def client(self):
        return TestClient(_raising_app(), raise_server_exceptions=False)

    def test_constraint_violation(self, client):
        response = client.get("/conflict")
        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "email"}

    def test_store_unavailable(self, client):
        response = client.get("/store-down")
        assert response.status_code == 503
        body = response.json()
        assert body["error"]["code"] == "upstream_unavailable"
        assert "connection refused" not in body["error"]["message"]

    def test_account_locked_sets_retry_after(self, client):
        response = client.get("/locked")
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.json()["error"]["details"] == {"remaining_seconds": 42}

    def test_session_expired(self, client):
        response = client.get("/expired")
        assert response.status_code == 410
        assert response.json()["error"]["code"] == "session_expired"

    def test_upstream_unavailable(self, client):
        assert client.get("/upstream").status_code == 503

    def test_service_error_custom(self, client):
        response = client.get("/custom")
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "teapot"

    def test_unhandled_exception_hides_details(self, client):
        response = client.get("/boom")
        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert "secret internals" not in json.dumps(body)

    def test_unknown_route_is_not_found(self, client):
        response = client.get("/missing")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


class TestAppEnvelope:
    """Envelope fields on real application responses."""

    def test_request_id_echoed(self):
        client = TestClient(app_module.app, base_url="https://testserver")
        response = client.get("/antares/users/me", headers={"X-Request-ID": "req-123"})
        assert response.status_code == 401
        assert response.headers["X-Request-ID"] == "req-123"
        body = response.json()
        assert body["request_id"] == "req-123"
        assert body["path"] == "/antares/users/me"
