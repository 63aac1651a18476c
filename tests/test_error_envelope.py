"""Tests for the error envelope format and exception handlers.

Every error response has the shape::

    {
        "status": "error",
        "data": null,
        "error": {"code": "<kind>", "message": "<text>", "details": <object|array|null>},
        "request_id": "<id>"
    }
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from qcauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from qcauth.api.schemas import Envelope, ErrorBody
from qcauth.service.errors import (
    ErrorKind,
    InternalError,
    InvalidCredentialsError,
    NotFoundError,
    ServiceError,
    TokenExpiredError,
)
from qcauth.storage.errors import ConstraintViolation


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthenticated", message="authentication required")
        assert error.code == "unauthenticated"
        assert error.details is None

    def test_error_body_accepts_list_details(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    @pytest.mark.parametrize("kind", list(ErrorKind))
    def test_every_error_kind_is_a_valid_code(self, kind):
        assert ErrorBody(code=kind.value, message="x").code == kind.value

    def test_unknown_code_rejected(self):
        """Codes outside the stable set never reach clients."""
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error", message="boom")

    def test_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="not_found")


class TestEnvelope:
    def test_envelope_error_status(self):
        envelope = Envelope(status="error", error=ErrorBody(code="unauthorized", message="no"))
        assert envelope.error.code == "unauthorized"
        assert envelope.data is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_request_id_custom(self):
        assert Envelope(status="ok", request_id="custom-id-123").request_id == "custom-id-123"

    @pytest.mark.parametrize("status", ["pending", "success", ""])
    def test_envelope_invalid_status_raises(self, status):
        with pytest.raises(ValidationError):
            Envelope(status=status)


class TestErrorCodeMapping:
    """HTTP status to error code mapping for framework-raised errors."""

    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthenticated"),
            (403, "unauthorized"),
            (404, "not_found"),
            (405, "validation_error"),
            (409, "conflict"),
            (422, "validation_error"),
            (429, "rate_limited"),
            (500, "internal_error"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    @pytest.mark.parametrize("status", [418, 503, 999])
    def test_unknown_status_defaults_to_internal_error(self, status):
        assert _error_code_for_status(status) == "internal_error"

    def test_mapped_codes_are_error_kinds(self):
        valid = {kind.value for kind in ErrorKind}
        assert set(_STATUS_TO_CODE.values()) <= valid


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "authentication required")
        assert response.status_code == 401
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthenticated"
        assert "request_id" in data

    def test_error_response_custom_code(self):
        response = _error_response(400, "token has expired", code="token_expired")
        data = json.loads(response.body.decode())
        assert data["error"]["code"] == "token_expired"

    def test_error_response_list_details(self):
        response = _error_response(400, "Multiple errors", details=[{"field": "a"}, {"field": "b"}])
        data = json.loads(response.body.decode())
        assert len(data["error"]["details"]) == 2


@pytest.fixture
def failing_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/service/{name}")
    def raise_service(name: str):
        errors = {
            "credentials": InvalidCredentialsError(
                "no account for x@example.com", detail={"email": "x@example.com"}
            ),
            "expired": TokenExpiredError("token has expired", detail={"token": "abc"}),
            "missing": NotFoundError("role not found", detail={"role_id": "r1"}),
            "internal": InternalError("database password rejected"),
            "custom": ServiceError("locked out", kind=ErrorKind.RATE_LIMITED, status_code=429),
        }
        raise errors[name]

    @app.get("/constraint")
    def raise_constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/crash")
    def crash():
        raise RuntimeError("unexpected")

    @app.get("/typed")
    def typed(limit: int):
        return {"limit": limit}

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_invalid_credentials_message_is_redacted(self, failing_client):
        resp = failing_client.get("/service/credentials")
        assert resp.status_code == 401
        assert resp.json()["error"] == {
            "code": "invalid_credentials",
            "message": "invalid credentials",
            "details": None,
        }

    def test_internal_error_is_redacted(self, failing_client):
        resp = failing_client.get("/service/internal")
        assert resp.status_code == 500
        error = resp.json()["error"]
        assert error["message"] == "internal server error"
        assert "password" not in resp.text

    def test_kind_maps_to_status_and_code(self, failing_client):
        resp = failing_client.get("/service/expired")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "token_expired"

        resp = failing_client.get("/service/missing")
        assert resp.status_code == 404
        assert resp.json()["error"]["details"] == {"role_id": "r1"}

    def test_explicit_status_override(self, failing_client):
        resp = failing_client.get("/service/custom")
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"

    def test_constraint_violation_is_conflict(self, failing_client):
        resp = failing_client.get("/constraint")
        assert resp.status_code == 409
        assert resp.json()["error"]["details"] == {"field": "email"}

    def test_uncaught_exception(self, failing_client):
        resp = failing_client.get("/crash")
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "internal_error"
        assert "unexpected" not in resp.text

    def test_request_validation(self, failing_client):
        resp = failing_client.get("/typed", params={"limit": "many"})
        assert resp.status_code == 422
        [detail] = resp.json()["error"]["details"]
        assert detail["loc"] == ["query", "limit"]

    def test_method_not_allowed(self, failing_client):
        resp = failing_client.post("/constraint")
        assert resp.status_code == 405
        assert resp.json()["error"]["code"] == "validation_error"
