"""Every failure leaves the API as the same envelope.

    {"status": "error",
     "error": {"code": ..., "message": ..., "details": ...},
     "request_id": ...}
"""

import json
import uuid

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from bynd.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from bynd.api.schemas import ERROR_CODES, Envelope, ErrorBody
from bynd.service.errors import (
    EmailConflict,
    InvalidCredentials,
    StorageUnavailable,
    TokenExpired,
)
from bynd.storage.errors import ConstraintViolation, StoreUnavailable


class TestEnvelopeModels:
    @pytest.mark.parametrize("details", [None, {"field": "email"}, [{"loc": ["body", "email"]}]])
    def test_details_accept_object_list_or_null(self, details):
        body = ErrorBody(code="validation_error", message="bad input", details=details)
        assert body.details == details

    def test_code_is_required_and_closed(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="no code")
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_every_known_code_is_accepted(self):
        for code in ERROR_CODES:
            assert ErrorBody(code=code, message="x").code == code

    def test_request_id_defaults_to_uuid(self):
        envelope = Envelope(status="ok", data={"id": "u1"})
        assert uuid.UUID(envelope.request_id)
        assert envelope.error is None

    def test_status_is_ok_or_error(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (429, "rate_limited"),
            (500, "server_error"),
            (503, "service_unavailable"),
        ],
    )
    def test_mapping(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unmapped_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_mapped_codes_are_valid_error_body_codes(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")


class TestErrorResponse:
    def test_code_derived_from_status(self):
        response = _error_response(401, "missing bearer token")

        payload = json.loads(response.body)
        assert response.status_code == 401
        assert payload["status"] == "error"
        assert payload["error"] == {
            "code": "unauthorized",
            "message": "missing bearer token",
            "details": None,
        }
        assert payload["request_id"]

    def test_error_response_headers(self):
        response = _error_response(429, "slow down", headers={"Retry-After": "5"})
        assert response.headers["Retry-After"] == "5"


def _app_raising(exc: Exception) -> TestClient:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    """Domain and storage exceptions map to stable envelopes."""

    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (InvalidCredentials(), 401, "unauthorized"),
            (TokenExpired(), 401, "unauthorized"),
            (EmailConflict(), 409, "conflict"),
            (StorageUnavailable("storage timed out"), 503, "service_unavailable"),
            (StoreUnavailable("down", backend="postgres"), 503, "service_unavailable"),
            (ConstraintViolation("email already exists", {"field": "email"}), 409, "conflict"),
            (RuntimeError("kaboom"), 500, "server_error"),
        ],
    )
    def test_handler_mapping(self, exc, status, code):
        response = _app_raising(exc).get("/boom")

        assert response.status_code == status
        assert response.json()["status"] == "error"
        assert response.json()["error"]["code"] == code

    def test_unhandled_error_hides_message(self):
        response = _app_raising(RuntimeError("secret internals")).get("/boom")
        assert "secret internals" not in response.text

    def test_unauthorized_carries_bearer_challenge(self):
        response = _app_raising(TokenExpired()).get("/boom")
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json()["error"]["message"] == "token expired"

    def test_conflict_has_no_challenge(self):
        response = _app_raising(EmailConflict()).get("/boom")
        assert "WWW-Authenticate" not in response.headers
        assert response.json()["error"]["message"] == "email already registered"
