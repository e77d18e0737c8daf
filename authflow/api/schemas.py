from __future__ import annotations

import re
import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

MAX_TOKEN_LENGTH = 2048


class ErrorBody(BaseModel):
    """Error envelope body carrying the stable error kind."""

    code: str
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_name(value: str) -> str:
    if not 1 <= len(value) <= 64:
        raise ValueError("name must be between 1 and 64 characters")
    if not _NAME_PATTERN.match(value):
        raise ValueError("name may only contain letters, digits, '.', '_' and '-'")
    return value


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TwoFactorLoginRequest(LoginRequest):
    code: str = Field(..., min_length=1, max_length=32)


class SignupRequest(BaseModel):
    email: str
    name: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("name")
    @classmethod
    def _validate_signup_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class ForgottenPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgotten_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetRequest(BaseModel):
    email: str
    token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)
    password: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = None
    requested_new_email: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _validate_profile_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value) if value is not None else None

    @field_validator("requested_new_email")
    @classmethod
    def _validate_profile_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


class AuthResponse(BaseModel):
    user_id: int
    two_factor_required: bool
    access_token: Optional[str] = None


class AccessTokenResponse(BaseModel):
    access_token: str


class UserResponse(BaseModel):
    id: int
    email: str
    name: str
    email_verified: bool
    two_factor_enabled: bool
    requested_new_email: Optional[str] = None


class RecoveryCodesResponse(BaseModel):
    recovery_codes: List[str]


class MessageResponse(BaseModel):
    message: str
