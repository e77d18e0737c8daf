import pytest
from pydantic import ValidationError

from authflow.api import schemas


def test_envelope_generates_request_id():
    first = schemas.Envelope(status="ok")
    second = schemas.Envelope(status="ok")
    assert first.request_id != second.request_id


def test_signup_request_normalizes_email():
    req = schemas.SignupRequest(email=" User@Example.com ", name="user.one", password="Password1")
    assert req.email == "user@example.com"


@pytest.mark.parametrize(
    "payload",
    [
        {"email": "invalid", "name": "ok", "password": "Password1"},
        {"email": "a@example", "name": "ok", "password": "Password1"},
        {"email": "a@example.com", "name": "has space", "password": "Password1"},
        {"email": "a@example.com", "name": "", "password": "Password1"},
        {"email": "a@example.com", "name": "ok", "password": "Short1"},
        {"email": "a@example.com", "name": "ok", "password": "x" * 129},
    ],
)
def test_signup_request_rejects_bad_input(payload):
    with pytest.raises(ValidationError):
        schemas.SignupRequest(**payload)


def test_token_request_bounds():
    with pytest.raises(ValidationError):
        schemas.TokenRequest(token="")
    with pytest.raises(ValidationError):
        schemas.TokenRequest(token="t" * (schemas.MAX_TOKEN_LENGTH + 1))


def test_two_factor_request_requires_code():
    with pytest.raises(ValidationError):
        schemas.TwoFactorLoginRequest(email="a@example.com", password="pw")
    req = schemas.TwoFactorLoginRequest(email="A@example.com", password="pw", code="123456")
    assert req.email == "a@example.com"


def test_profile_update_fields_are_optional():
    req = schemas.ProfileUpdateRequest()
    assert req.name is None and req.requested_new_email is None
    with pytest.raises(ValidationError):
        schemas.ProfileUpdateRequest(requested_new_email="nope")


def test_auth_response_never_carries_refresh_token():
    assert "refresh_token" not in schemas.AuthResponse.model_fields
