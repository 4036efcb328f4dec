"""Tests for the error envelope format and exception handlers.

Every error response has the shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from authgate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from authgate.api.schemas import Envelope, ErrorBody
from authgate.identity.errors import ErrorKind, IdentityProviderError
from authgate.service.errors import InconsistencyError, MigrationFailedError
from authgate.storage.errors import ConstraintViolation, StorageUnavailable


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="invalid_credentials", message="Invalid email or password")

        assert error.code == "invalid_credentials"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )

        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        """Only the stable vocabulary may reach clients."""
        with pytest.raises(ValidationError):
            ErrorBody(code="EMAIL_EXISTS", message="raw provider code")

    def test_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"user_id": "123"})

        assert envelope.data == {"user_id": "123"}
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")

        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    """HTTP status to stable error code."""

    def test_known_statuses(self):
        assert _error_code_for_status(400) == "validation_error"
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(409) == "conflict"
        assert _error_code_for_status(503) == "dependency_unavailable"

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_every_mapped_code_is_valid(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")

        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["request_id"]

    def test_empty_details_become_null(self):
        data = json.loads(_error_response(404, "Not found", details={}).body.decode())

        assert data["error"]["details"] is None


def _app_raising(exc: Exception) -> TestClient:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    """Domain and storage exceptions rendered as envelopes."""

    def test_constraint_violation_is_conflict(self):
        client = _app_raising(ConstraintViolation("email already exists", {"field": "email"}))

        response = client.get("/boom")

        assert response.status_code == 409
        assert response.json()["error"]["details"] == {"field": "email"}

    def test_storage_unavailable_hides_detail(self):
        client = _app_raising(StorageUnavailable("connection to 10.0.0.5 refused"))

        response = client.get("/boom")

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "dependency_unavailable"
        assert "10.0.0.5" not in response.text

    def test_service_error_keeps_code_and_detail(self):
        client = _app_raising(
            InconsistencyError("contact support", detail={"support_code": "ERR_ORPHAN_ACCOUNT"})
        )

        response = client.get("/boom")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "account_inconsistency"
        assert response.json()["error"]["details"]["support_code"] == "ERR_ORPHAN_ACCOUNT"

    def test_migration_failure_is_500(self):
        response = _app_raising(MigrationFailedError("try again")).get("/boom")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "migration_failed"

    def test_unhandled_exception_is_generic(self):
        response = _app_raising(RuntimeError("SELECT * FROM app_user failed")).get("/boom")

        assert response.status_code == 500
        assert response.json()["error"]["message"] == "internal server error"

    def test_identity_provider_error_is_mapped(self):
        exc = IdentityProviderError(ErrorKind.RATE_LIMITED, raw_code="TOO_MANY_ATTEMPTS_TRY_LATER")

        response = _app_raising(exc).get("/boom")

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert "TOO_MANY_ATTEMPTS" not in response.text
