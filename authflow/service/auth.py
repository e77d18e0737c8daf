from __future__ import annotations

import asyncio
import hmac
import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol

from authflow.config import Settings
from authflow.logging import get_logger
from authflow.service.errors import (
    AccountNotActivated,
    AuthenticationFailed,
    EmailInUse,
    InvalidRecoveryCode,
    InvalidToken,
    InvalidVerificationCode,
    TokenExpired,
    UserNotFound,
    UsernameInUse,
)
from authflow.service.tokens import ExpiredToken, TokenCodec, TokenError
from authflow.storage.errors import ConstraintViolation
from authflow.storage.models import SINGLE_USE_TOKEN_TYPES, StoredToken, TokenType, User

logger = get_logger(__name__)

Clock = Callable[[], datetime]


class AuthStore(Protocol):
    """User repository and token store, as provided by the storage backends."""

    def create_user(
        self,
        email: str,
        name: str,
        *,
        email_verified: bool = False,
        two_factor_enabled: bool = False,
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def email_exists(self, email: str) -> bool: ...

    def name_exists(self, name: str) -> bool: ...

    def save_user(self, user: User) -> User: ...

    def delete_user(self, user_id: int) -> bool: ...

    def save_token(self, user_id: int, value: str, token_type: TokenType) -> StoredToken: ...

    def find_token(self, value: str, token_type: TokenType) -> Optional[StoredToken]: ...

    def find_token_for_user(
        self, user_id: int, token_type: TokenType
    ) -> Optional[StoredToken]: ...

    def delete_token(self, token: StoredToken) -> None: ...

    def pop_token(self, value: str, token_type: TokenType) -> Optional[StoredToken]: ...

    def pop_token_for_user(
        self, user_id: int, token_type: TokenType, value: str
    ) -> Optional[StoredToken]: ...

    def delete_user_tokens(
        self, user_id: int, token_type: Optional[TokenType] = None
    ) -> int: ...


class CodeStore(Protocol):
    async def issue_code(self, user_id: int, ttl_seconds: int) -> str: ...

    async def is_code_valid(self, user_id: int, code: str) -> bool: ...

    async def consume_code(self, user_id: int, code: str) -> bool: ...

    async def set_recovery_codes(self, user_id: int, codes: List[str]) -> None: ...

    async def is_recovery_code_valid(self, user_id: int, code: str) -> bool: ...

    async def delete_recovery_code(self, user_id: int, code: str) -> None: ...

    async def consume_recovery_code(self, user_id: int, code: str) -> bool: ...

    async def clear(self, user_id: int) -> None: ...


class CredentialVerifier(Protocol):
    def verify(self, email: str, password: str) -> int: ...

    def save_password(self, user_id: int, password: str) -> None: ...


class EmailDispatcher(Protocol):
    def send_account_activation(
        self, to_email: str, token: str, locale: Optional[str] = None
    ) -> bool: ...

    def send_password_reset(
        self, to_email: str, token: str, locale: Optional[str] = None
    ) -> bool: ...

    def send_email_change_confirmation(
        self,
        new_email: str,
        old_email: str,
        token: str,
        locale: Optional[str] = None,
    ) -> bool: ...

    def send_two_factor_code(
        self, to_email: str, code: str, locale: Optional[str] = None
    ) -> bool: ...


@dataclass
class LoginResult:
    """Outcome of a login step.

    ``two_factor_required`` mirrors the user's 2FA flag. Tokens are only
    present once the user is fully authenticated; a result without them is
    the pending second-factor state.
    """

    user_id: int
    two_factor_required: bool
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return self.access_token is not None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    """Login, second factor, refresh and email-link token flows.

    The service holds no per-login state: the second-factor step asks for the
    credentials again instead of keeping a pending session server side. The
    token store and the code store are the only shared mutable state, and
    every consume step goes through their atomic pop/consume operations.
    """

    def __init__(
        self,
        store: AuthStore,
        codes: CodeStore,
        settings: Settings,
        *,
        verifier: CredentialVerifier,
        emailer: EmailDispatcher,
        codec: Optional[TokenCodec] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store: AuthStore = store
        self.codes = codes
        self.settings = settings
        self.verifier = verifier
        self.emailer = emailer
        self.clock = clock or _utcnow
        self.codec = codec or TokenCodec(settings.token_secret, clock=self.clock)
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)
        self.verification_ttl = timedelta(
            minutes=settings.verification_token_ttl_minutes
        )
        self.logger = logger

    # login flows
    def _authenticate(self, email: str, password: str) -> User:
        user_id = self.verifier.verify(email, password)
        user = self.store.get_user_by_email(email)
        if user is None or user.id != user_id:
            self.logger.error("login_user_missing", user_id=user_id)
            raise UserNotFound(detail={"user_id": user_id})
        if not user.email_verified:
            self.logger.info("login_account_not_activated", user_id=user.id)
            raise AccountNotActivated()
        return user

    async def login(self, email: str, password: str) -> LoginResult:
        user = self._authenticate(email, password)
        if user.two_factor_enabled:
            self.logger.info("login_two_factor_pending", user_id=user.id)
            return LoginResult(user_id=user.id, two_factor_required=True)
        return self.issue_token_set(user)

    async def request_two_factor_code(
        self, email: str, password: str, locale: Optional[str] = None
    ) -> None:
        """Mail a one-time login code to a 2FA user who passed the first step.

        Credentials are checked again, like the verify step. Users without
        2FA get no code.
        """
        user = self._authenticate(email, password)
        if not user.two_factor_enabled:
            self.logger.info("two_factor_code_not_required", user_id=user.id)
            return
        code = await self.issue_two_factor_code(user)
        await asyncio.to_thread(self.emailer.send_two_factor_code, user.email, code, locale)
        self.logger.info("two_factor_code_sent", user_id=user.id)

    async def verify_two_factor(self, email: str, password: str, code: str) -> LoginResult:
        user = self._authenticate(email, password)
        if not await self.codes.consume_code(user.id, code):
            self.logger.info("two_factor_code_rejected", user_id=user.id)
            raise InvalidVerificationCode()
        return self.issue_token_set(user)

    async def login_with_recovery_code(
        self, email: str, password: str, code: str
    ) -> LoginResult:
        user = self._authenticate(email, password)
        if not await self.codes.consume_recovery_code(user.id, code):
            self.logger.info("recovery_code_rejected", user_id=user.id)
            raise InvalidRecoveryCode()
        self.logger.info("recovery_code_consumed", user_id=user.id)
        return self.issue_token_set(user)

    def issue_token_set(self, user: User) -> LoginResult:
        access_token = self.codec.issue(user.id, self.access_ttl)
        refresh_token = self.codec.issue(user.id, self.refresh_ttl)
        self.store.save_token(user.id, refresh_token, TokenType.REFRESH)
        self.logger.info("tokens_issued", user_id=user.id)
        return LoginResult(
            user_id=user.id,
            two_factor_required=user.two_factor_enabled,
            access_token=access_token,
            refresh_token=refresh_token,
        )

    async def refresh_access_token(self, refresh_token: str) -> str:
        """Exchange a stored refresh token for a new access token.

        The refresh token itself is not rotated.
        """
        record = self.store.find_token(refresh_token, TokenType.REFRESH)
        if record is None:
            raise TokenExpired()
        try:
            subject = self.codec.validate(refresh_token)
        except TokenError as exc:
            self.logger.info(
                "refresh_token_rejected", user_id=record.user_id, reason=type(exc).__name__
            )
            raise TokenExpired()
        if subject != record.user_id:
            self.logger.warning(
                "refresh_token_owner_mismatch", user_id=record.user_id, subject=subject
            )
            raise TokenExpired()
        if self.store.get_user(subject) is None:
            self.logger.warning("refresh_token_user_missing", user_id=subject)
            raise TokenExpired()
        return self.codec.issue(subject, self.access_ttl)

    async def logout(self, refresh_token: Optional[str]) -> None:
        if not refresh_token:
            return
        record = self.store.pop_token(refresh_token, TokenType.REFRESH)
        if record is not None:
            self.logger.info("logout", user_id=record.user_id)

    # email-link tokens
    def _issue_persisted_token(self, user: User, token_type: TokenType) -> str:
        if (
            self.settings.supersede_verification_tokens
            and token_type in SINGLE_USE_TOKEN_TYPES
        ):
            superseded = self.store.delete_user_tokens(user.id, token_type)
            if superseded:
                self.logger.info(
                    "verification_tokens_superseded",
                    user_id=user.id,
                    token_type=token_type.value,
                    count=superseded,
                )
        value = self.codec.issue(user.id, self.verification_ttl)
        self.store.save_token(user.id, value, token_type)
        return value

    def _check_token(self, value: str, token_type: TokenType) -> tuple[StoredToken, User]:
        """Validate a presented email-link token without consuming it.

        Store absence is ``InvalidToken``; a bad or expired signature is
        ``TokenExpired`` and leaves the record in place.
        """
        record = self.store.find_token(value, token_type) if value else None
        if record is None:
            raise InvalidToken()
        try:
            subject = self.codec.validate(value)
        except ExpiredToken:
            self.logger.info(
                "verification_token_expired",
                user_id=record.user_id,
                token_type=token_type.value,
            )
            raise TokenExpired()
        except TokenError as exc:
            self.logger.warning(
                "verification_token_rejected",
                user_id=record.user_id,
                token_type=token_type.value,
                reason=type(exc).__name__,
            )
            raise TokenExpired()
        if subject != record.user_id:
            raise TokenExpired()
        user = self.store.get_user(record.user_id)
        if user is None:
            self.logger.error(
                "verification_token_user_missing",
                user_id=record.user_id,
                token_type=token_type.value,
            )
            raise UserNotFound(detail={"user_id": record.user_id})
        return record, user

    def _consume(self, value: str, token_type: TokenType) -> StoredToken:
        record = self.store.pop_token(value, token_type)
        if record is None:
            # Another request consumed it between the check and the pop
            raise InvalidToken()
        return record

    def _restore(self, record: StoredToken, action: str) -> None:
        """Put a consumed token back after the write it guarded failed."""
        self.logger.error(
            "token_write_failed",
            user_id=record.user_id,
            token_type=record.token_type.value,
            action=action,
        )
        self.store.save_token(record.user_id, record.value, record.token_type)

    async def request_account_activation(
        self, user: User, locale: Optional[str] = None
    ) -> str:
        token = self._issue_persisted_token(user, TokenType.ACCOUNT_ACTIVATION)
        await asyncio.to_thread(self.emailer.send_account_activation, user.email, token, locale)
        self.logger.info("account_activation_requested", user_id=user.id)
        return token

    async def activate_account(self, token: str) -> User:
        _, user = self._check_token(token, TokenType.ACCOUNT_ACTIVATION)
        record = self._consume(token, TokenType.ACCOUNT_ACTIVATION)
        try:
            user = self.store.save_user(replace(user, email_verified=True))
        except Exception:
            self._restore(record, "activate_account")
            raise
        self.logger.info("account_activated", user_id=user.id)
        return user

    async def _record_email_change(
        self, user: User, new_email: Optional[str], locale: Optional[str]
    ) -> tuple[User, Optional[str]]:
        if not new_email or new_email == user.email:
            return user, None
        if self.store.email_exists(new_email):
            raise EmailInUse()
        user = self.store.save_user(replace(user, requested_new_email=new_email))
        token = self._issue_persisted_token(user, TokenType.EMAIL_UPDATE)
        await asyncio.to_thread(
            self.emailer.send_email_change_confirmation, new_email, user.email, token, locale
        )
        self.logger.info("email_change_requested", user_id=user.id)
        return user, token

    async def request_email_change(
        self, user: User, new_email: Optional[str], locale: Optional[str] = None
    ) -> Optional[str]:
        """Record ``new_email`` as requested and mail a confirmation link to it.

        Returns ``None`` when there is nothing to change.
        """
        _, token = await self._record_email_change(user, new_email, locale)
        return token

    async def confirm_email_change(self, token: str) -> User:
        _, user = self._check_token(token, TokenType.EMAIL_UPDATE)
        new_email = user.requested_new_email
        if not new_email:
            raise InvalidToken()
        if self.store.email_exists(new_email):
            raise EmailInUse()
        record = self._consume(token, TokenType.EMAIL_UPDATE)
        try:
            user = self.store.save_user(
                replace(user, email=new_email, requested_new_email=None)
            )
        except ConstraintViolation:
            self._restore(record, "confirm_email_change")
            raise EmailInUse()
        except Exception:
            self._restore(record, "confirm_email_change")
            raise
        self.logger.info("email_change_confirmed", user_id=user.id)
        return user

    async def request_password_reset(
        self, email: str, locale: Optional[str] = None
    ) -> Optional[str]:
        """Issue a reset token and mail it.

        Unknown addresses return ``None`` so callers can answer identically
        for known and unknown accounts.
        """
        user = self.store.get_user_by_email(email)
        if user is None:
            self.logger.info("password_reset_unknown_email")
            return None
        if not user.email_verified:
            raise AccountNotActivated()
        token = self._issue_persisted_token(user, TokenType.FORGOTTEN_PASSWORD)
        await asyncio.to_thread(self.emailer.send_password_reset, user.email, token, locale)
        self.logger.info("password_reset_requested", user_id=user.id)
        return token

    async def reset_password(self, email: str, token: str, new_password: str) -> User:
        user = self.store.get_user_by_email(email)
        if user is None:
            raise InvalidToken()
        record = self.store.find_token_for_user(user.id, TokenType.FORGOTTEN_PASSWORD)
        if record is None or not hmac.compare_digest(
            record.value.encode(), (token or "").encode()
        ):
            raise InvalidToken()
        try:
            subject = self.codec.validate(token)
        except TokenError as exc:
            self.logger.info(
                "password_reset_token_rejected", user_id=user.id, reason=type(exc).__name__
            )
            raise TokenExpired()
        if subject != user.id:
            raise TokenExpired()
        record = self.store.pop_token_for_user(user.id, TokenType.FORGOTTEN_PASSWORD, token)
        if record is None:
            raise InvalidToken()
        try:
            self.verifier.save_password(user.id, new_password)
        except Exception:
            self._restore(record, "reset_password")
            raise
        revoked = self.store.delete_user_tokens(user.id, TokenType.REFRESH)
        self.logger.info("password_reset_completed", user_id=user.id, revoked_sessions=revoked)
        return user

    # account management
    async def register_user(
        self, email: str, name: str, password: str, locale: Optional[str] = None
    ) -> User:
        if self.store.email_exists(email):
            raise EmailInUse()
        if self.store.name_exists(name):
            raise UsernameInUse()
        try:
            user = self.store.create_user(email, name)
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "name":
                raise UsernameInUse()
            raise EmailInUse()
        self.verifier.save_password(user.id, password)
        self.logger.info("user_registered", user_id=user.id)
        await self.request_account_activation(user, locale)
        return user

    async def change_password(
        self, user: User, current_password: str, new_password: str
    ) -> User:
        self.verifier.verify(user.email, current_password)
        self.verifier.save_password(user.id, new_password)
        self.logger.info("password_changed", user_id=user.id)
        return user

    def _generate_recovery_codes(self) -> List[str]:
        return [secrets.token_hex(5) for _ in range(self.settings.recovery_code_count)]

    async def enable_two_factor(self, user: User) -> List[str]:
        """Turn on 2FA and return a fresh set of recovery codes.

        The plain codes are only available from this return value.
        """
        codes = self._generate_recovery_codes()
        await self.codes.set_recovery_codes(user.id, codes)
        self.store.save_user(replace(user, two_factor_enabled=True))
        self.logger.info("two_factor_enabled", user_id=user.id)
        return codes

    async def disable_two_factor(self, user: User) -> User:
        await self.codes.clear(user.id)
        user = self.store.save_user(replace(user, two_factor_enabled=False))
        self.logger.info("two_factor_disabled", user_id=user.id)
        return user

    async def issue_two_factor_code(self, user: User) -> str:
        return await self.codes.issue_code(
            user.id, self.settings.two_factor_code_ttl_seconds
        )

    async def update_profile(
        self,
        user: User,
        *,
        name: Optional[str] = None,
        requested_new_email: Optional[str] = None,
        locale: Optional[str] = None,
    ) -> User:
        if name and name != user.name:
            if self.store.name_exists(name):
                raise UsernameInUse()
            try:
                user = self.store.save_user(replace(user, name=name))
            except ConstraintViolation:
                raise UsernameInUse()
        user, _ = await self._record_email_change(user, requested_new_email, locale)
        return user

    async def cancel_account(self, user: User) -> None:
        self.store.delete_user_tokens(user.id)
        await self.codes.clear(user.id)
        self.store.delete_user(user.id)
        self.logger.info("account_cancelled", user_id=user.id)
