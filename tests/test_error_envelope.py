"""Tests for the error envelope format and exception-to-status mapping.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<STABLE_CODE>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from teamcrm.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
    status_for_auth_error,
)
from teamcrm.api.schemas import Envelope, ErrorBody
from teamcrm.service.errors import AuthError, AuthErrorCode, AuthErrorKind
from teamcrm.storage.errors import ConstraintViolation


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_required_fields(self):
        error = ErrorBody(code="UNAUTHORIZED", message="Authentication required")
        assert error.code == "UNAUTHORIZED"
        assert error.details is None

    def test_details_accept_list(self):
        error = ErrorBody(
            code="VALIDATION_ERROR",
            message="Invalid request",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_unknown_code_rejected(self):
        """Only stable codes may reach clients."""
        with pytest.raises(ValidationError):
            ErrorBody(code="unauthorized", message="lowercase codes are not stable")

    @pytest.mark.parametrize("code", [c.value for c in AuthErrorCode])
    def test_every_auth_code_is_accepted(self, code):
        assert ErrorBody(code=code, message="x").code == code


class TestEnvelope:
    def test_error_envelope_shape(self):
        envelope = Envelope(status="error", error=ErrorBody(code="NOT_FOUND", message="missing"))
        dumped = envelope.model_dump()

        assert dumped["status"] == "error"
        assert dumped["data"] is None
        assert dumped["error"]["code"] == "NOT_FOUND"
        assert dumped["request_id"]

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="failed")


class TestStatusMapping:
    def test_status_to_code_table(self):
        assert _STATUS_TO_CODE[400] == "VALIDATION_ERROR"
        assert _STATUS_TO_CODE[405] == "METHOD_NOT_ALLOWED"
        assert _error_code_for_status(418) == "SERVER_ERROR"

    def test_error_response_uses_explicit_code(self):
        response = _error_response(409, "conflict", {"field": "email"}, code="CONFLICT")

        assert response.status_code == 409
        assert b'"CONFLICT"' in response.body

    @pytest.mark.parametrize(
        "code,kind,status",
        [
            (AuthErrorCode.EMAIL_EXISTS, AuthErrorKind.STATE, 400),
            (AuthErrorCode.INVALID_INVITE, AuthErrorKind.STATE, 400),
            (AuthErrorCode.RESET_TOKEN_EXPIRED, AuthErrorKind.STATE, 400),
            (AuthErrorCode.USER_NOT_FOUND, AuthErrorKind.STATE, 400),
            (AuthErrorCode.INVALID_CREDENTIALS, AuthErrorKind.CREDENTIAL, 401),
            (AuthErrorCode.REFRESH_TOKEN_EXPIRED, AuthErrorKind.CREDENTIAL, 401),
            (AuthErrorCode.NO_REFRESH_TOKEN, AuthErrorKind.CREDENTIAL, 401),
            (AuthErrorCode.UNAUTHORIZED, AuthErrorKind.CREDENTIAL, 401),
            (AuthErrorCode.INSUFFICIENT_PERMISSIONS, AuthErrorKind.PERMISSION, 403),
        ],
    )
    def test_auth_error_kinds(self, code, kind, status):
        exc = AuthError(code, "message")

        assert exc.kind == kind
        assert status_for_auth_error(exc) == status


class _Payload(BaseModel):
    count: int


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/auth-error/{code}")
    async def raise_auth_error(code: str):
        raise AuthError(AuthErrorCode(code), f"{code} happened")

    @app.get("/conflict")
    async def raise_conflict():
        raise ConstraintViolation("duplicate email", {"field": "email"})

    @app.get("/boom")
    async def raise_uncaught():
        raise RuntimeError("secret internals")

    @app.post("/payload")
    async def accept_payload(body: _Payload):
        return {"count": body.count}

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_auth_error_envelope(self, client):
        response = client.get("/auth-error/INVITE_EXPIRED")

        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "INVITE_EXPIRED",
            "message": "INVITE_EXPIRED happened",
            "details": None,
        }

    def test_permission_error_is_403(self, client):
        response = client.get("/auth-error/INSUFFICIENT_PERMISSIONS")

        assert response.status_code == 403

    def test_constraint_violation_is_409(self, client):
        response = client.get("/conflict")

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "CONFLICT"
        assert error["details"] == {"field": "email"}

    def test_validation_error_is_400_with_field_details(self, client):
        response = client.post("/payload", json={"count": "many"})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"][0]["field"] == "count"

    def test_unknown_route_is_404_envelope(self, client):
        response = client.get("/nowhere")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_wrong_method_is_405_envelope(self, client):
        response = client.delete("/conflict")

        assert response.status_code == 405
        assert response.json()["error"]["code"] == "METHOD_NOT_ALLOWED"

    def test_uncaught_exception_hides_internals(self, client):
        response = client.get("/boom")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "SERVER_ERROR"
        assert "secret" not in error["message"]
