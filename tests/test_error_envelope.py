"""Tests for the error envelope format and service error mapping.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<error kind>", "message": "<message key>", "details": ...},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from pydantic import ValidationError

from authflow.api.error_handling import (
    ERROR_STATUS,
    _error_code_for_status,
    _error_response,
    status_for,
)
from authflow.api.schemas import Envelope, ErrorBody
from authflow.logging import _processors, _redact_pii, correlation_id_var
from authflow.service import errors as service_errors


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="invalid_token", message="invalidToken")
        assert error.details is None

    def test_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="no code")

    def test_envelope_status_is_constrained(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestStatusMapping:
    @pytest.mark.parametrize(
        "exc_cls, status",
        [
            (service_errors.AuthenticationFailed, 401),
            (service_errors.AccountNotActivated, 401),
            (service_errors.InvalidVerificationCode, 400),
            (service_errors.InvalidRecoveryCode, 400),
            (service_errors.InvalidToken, 400),
            (service_errors.TokenExpired, 401),
            (service_errors.EmailInUse, 409),
            (service_errors.UsernameInUse, 409),
            (service_errors.UserNotFound, 500),
        ],
    )
    def test_every_kind_has_a_status(self, exc_cls, status):
        exc = exc_cls()
        assert status_for(exc) == status
        assert ERROR_STATUS[exc.error_code] == status

    def test_table_covers_all_exported_errors(self):
        kinds = {
            getattr(service_errors, name).error_code
            for name in service_errors.__all__
            if name != "ServiceError"
        }
        assert kinds == set(ERROR_STATUS)

    def test_unlisted_kind_uses_exception_status(self):
        exc = service_errors.ServiceError("boom", status_code=418, error_code="teapot")
        assert status_for(exc) == 418

    def test_message_defaults_to_message_key(self):
        assert str(service_errors.TokenExpired()) == "tokenExpired"
        assert service_errors.InvalidToken("custom").message == "custom"


class TestErrorResponse:
    def test_envelope_shape(self):
        response = _error_response(409, "emailInUse", {"field": "email"}, code="email_in_use")
        body = json.loads(response.body)

        assert response.status_code == 409
        assert body["status"] == "error"
        assert body["data"] is None
        assert body["error"] == {
            "code": "email_in_use",
            "message": "emailInUse",
            "details": {"field": "email"},
        }
        assert body["request_id"]

    def test_code_derived_from_status(self):
        body = json.loads(_error_response(401, "nope").body)
        assert body["error"]["code"] == "unauthorized"
        assert _error_code_for_status(599) == "server_error"


class TestLogRedaction:
    def test_sensitive_values_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "x",
                "email": "alice@example.com",
                "refresh_token": "eyJhbGciOiJIUzUxMiJ9.payload.sig",
                "new_email": "bob@example.com",
            },
        )
        assert event["email"] == "al***om"
        assert "payload" not in event["refresh_token"]
        assert event["new_email"] == "bo***om"

    def test_metadata_keys_are_left_alone(self):
        event = _redact_pii(
            None,
            "info",
            {"event": "x", "error_code": "invalid_token", "token_type": "refresh", "user_id": 12},
        )
        assert event["error_code"] == "invalid_token"
        assert event["token_type"] == "refresh"
        assert event["user_id"] == 12

    def test_json_chain_renders_masked_event_with_request_id(self):
        reset = correlation_id_var.set("req-123")
        try:
            event = {"event": "password_reset_requested", "user_id": 7, "email": "alice@example.com"}
            for processor in _processors(json_output=True):
                event = processor(None, "info", event)
        finally:
            correlation_id_var.reset(reset)

        line = json.loads(event)
        assert line["event"] == "password_reset_requested"
        assert line["level"] == "info"
        assert line["correlation_id"] == "req-123"
        assert line["email"] == "al***om"
        assert "timestamp" in line
