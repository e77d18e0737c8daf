from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each subclass carries a stable ``error_code`` (the machine-readable kind)
    and a ``message_key`` the transport layer can hand to a localizer. The
    HTTP status for each kind is decided by
    :mod:`authflow.api.error_handling`; ``status_code`` here is only the
    fallback for kinds the transport table does not list.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    message_key: str = "validationError"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.message_key
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationFailed(ServiceError):
    """Bad credentials. Never says which factor was wrong."""

    status_code = 401
    error_code = "authentication_failed"
    message_key = "badCredentials"


class AccountNotActivated(ServiceError):
    status_code = 401
    error_code = "account_not_activated"
    message_key = "accountNotActivated"


class InvalidVerificationCode(ServiceError):
    error_code = "invalid_verification_code"
    message_key = "invalidVerificationCode"


class InvalidRecoveryCode(ServiceError):
    error_code = "invalid_recovery_code"
    message_key = "invalidRecoveryCode"


class InvalidToken(ServiceError):
    """Token record is absent or does not match; the flow must restart."""

    error_code = "invalid_token"
    message_key = "invalidToken"


class TokenExpired(ServiceError):
    """Token record exists but its signature expired or its subject mismatched."""

    status_code = 401
    error_code = "token_expired"
    message_key = "tokenExpired"


class EmailInUse(ServiceError):
    status_code = 409
    error_code = "email_in_use"
    message_key = "emailInUse"


class UsernameInUse(ServiceError):
    status_code = 409
    error_code = "username_in_use"
    message_key = "usernameInUse"


class UserNotFound(ServiceError):
    """A record points at a user that no longer exists (data-integrity fault)."""

    status_code = 500
    error_code = "user_not_found"
    message_key = "userNotFound"


__all__ = [
    "ServiceError",
    "AuthenticationFailed",
    "AccountNotActivated",
    "InvalidVerificationCode",
    "InvalidRecoveryCode",
    "InvalidToken",
    "TokenExpired",
    "EmailInUse",
    "UsernameInUse",
    "UserNotFound",
]
