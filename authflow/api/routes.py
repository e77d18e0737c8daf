from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from authflow.api.schemas import (
    AccessTokenResponse,
    AuthResponse,
    Envelope,
    ForgottenPasswordRequest,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetRequest,
    ProfileUpdateRequest,
    RecoveryCodesResponse,
    SignupRequest,
    TokenRequest,
    TwoFactorLoginRequest,
    UserResponse,
)
from authflow.logging import get_logger
from authflow.service.auth import LoginResult
from authflow.service.runtime import get_runtime
from authflow.service.tokens import TokenError
from authflow.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/auth")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _locale(request: Request) -> Optional[str]:
    header = request.headers.get("Accept-Language")
    if not header:
        return None
    primary = header.split(",", 1)[0].split(";", 1)[0].strip()
    return primary or None


def _set_refresh_cookie(response: Response, refresh_token: str) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        settings.refresh_cookie_name,
        refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def _clear_refresh_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        settings.refresh_cookie_name,
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


def _auth_envelope(result: LoginResult, response: Response) -> Envelope:
    # Refresh token travels only in the cookie, access token only in the body
    if result.refresh_token:
        _set_refresh_cookie(response, result.refresh_token)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=result.user_id,
            two_factor_required=result.two_factor_required,
            access_token=result.access_token,
        ),
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        email_verified=user.email_verified,
        two_factor_enabled=user.two_factor_enabled,
        requested_new_email=user.requested_new_email,
    )


def _refresh_cookie_value(request: Request) -> Optional[str]:
    return request.cookies.get(get_runtime().settings.refresh_cookie_name)


async def get_current_user(authorization: Optional[str] = Header(None)) -> User:
    """Resolve the bearer access token to its user."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    token = authorization.split(" ", 1)[1].strip()
    runtime = get_runtime()
    try:
        user_id = runtime.codec.validate(token)
    except TokenError as exc:
        logger.info("access_token_rejected", reason=type(exc).__name__)
        raise _http_error("unauthorized", "invalid access token", status_code=401)
    user = runtime.store.get_user(user_id)
    if user is None:
        raise _http_error("unauthorized", "invalid access token", status_code=401)
    return user


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    When the account has two-factor authentication enabled no tokens are
    issued; the client asks for a code with ``/auth/login/code`` and continues
    with ``/auth/login/verify``, or uses ``/auth/login/recovery-code``.
    """
    result = await get_runtime().auth.login(body.email, body.password)
    return _auth_envelope(result, response)


@router.post("/login/code", response_model=Envelope, tags=["auth"])
async def login_code(body: LoginRequest, request: Request):
    """Mail a one-time login code to the account's address."""
    await get_runtime().auth.request_two_factor_code(
        body.email, body.password, _locale(request)
    )
    return Envelope(status="ok", data=MessageResponse(message="twoFactorCodeSent"))


@router.post("/login/verify", response_model=Envelope, tags=["auth"])
async def login_verify(body: TwoFactorLoginRequest, response: Response):
    result = await get_runtime().auth.verify_two_factor(
        body.email, body.password, body.code
    )
    return _auth_envelope(result, response)


@router.post("/login/recovery-code", response_model=Envelope, tags=["auth"])
async def login_recovery_code(body: TwoFactorLoginRequest, response: Response):
    result = await get_runtime().auth.login_with_recovery_code(
        body.email, body.password, body.code
    )
    return _auth_envelope(result, response)


@router.post("/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(request: Request):
    """Exchange the refresh-token cookie for a new access token."""
    value = _refresh_cookie_value(request)
    if not value:
        raise _http_error("token_expired", "tokenExpired", status_code=401)
    access_token = await get_runtime().auth.refresh_access_token(value)
    return Envelope(status="ok", data=AccessTokenResponse(access_token=access_token))


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    await get_runtime().auth.logout(_refresh_cookie_value(request))
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data=MessageResponse(message="loggedOut"))


@router.post("/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request):
    user = await get_runtime().auth.register_user(
        body.email, body.name, body.password, locale=_locale(request)
    )
    return Envelope(status="ok", data=_user_response(user))


@router.post("/activate-account", response_model=Envelope, tags=["auth"])
async def activate_account(body: TokenRequest):
    user = await get_runtime().auth.activate_account(body.token)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/confirm-email-change", response_model=Envelope, tags=["auth"])
async def confirm_email_change(body: TokenRequest):
    user = await get_runtime().auth.confirm_email_change(body.token)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/forgotten-password", response_model=Envelope, tags=["auth"])
async def forgotten_password(body: ForgottenPasswordRequest, request: Request):
    await get_runtime().auth.request_password_reset(body.email, locale=_locale(request))
    return Envelope(status="ok", data=MessageResponse(message="passwordResetEmailSent"))


@router.post("/password-reset", response_model=Envelope, tags=["auth"])
async def password_reset(body: PasswordResetRequest):
    await get_runtime().auth.reset_password(body.email, body.token, body.password)
    return Envelope(status="ok", data=MessageResponse(message="passwordWasReset"))


@router.get("/me", response_model=Envelope, tags=["account"])
async def me(user: User = Depends(get_current_user)):
    return Envelope(status="ok", data=_user_response(user))


@router.patch("/me", response_model=Envelope, tags=["account"])
async def update_profile(
    body: ProfileUpdateRequest,
    request: Request,
    user: User = Depends(get_current_user),
):
    user = await get_runtime().auth.update_profile(
        user,
        name=body.name,
        requested_new_email=body.requested_new_email,
        locale=_locale(request),
    )
    return Envelope(status="ok", data=_user_response(user))


@router.delete("/me", response_model=Envelope, tags=["account"])
async def cancel_account(response: Response, user: User = Depends(get_current_user)):
    await get_runtime().auth.cancel_account(user)
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data=MessageResponse(message="accountCancelled"))


@router.post("/me/password", response_model=Envelope, tags=["account"])
async def change_password(
    body: PasswordChangeRequest, user: User = Depends(get_current_user)
):
    await get_runtime().auth.change_password(
        user, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=MessageResponse(message="passwordUpdated"))


@router.post("/me/two-factor", response_model=Envelope, tags=["account"])
async def enable_two_factor(user: User = Depends(get_current_user)):
    codes = await get_runtime().auth.enable_two_factor(user)
    return Envelope(status="ok", data=RecoveryCodesResponse(recovery_codes=codes))


@router.delete("/me/two-factor", response_model=Envelope, tags=["account"])
async def disable_two_factor(user: User = Depends(get_current_user)):
    user = await get_runtime().auth.disable_two_factor(user)
    return Envelope(status="ok", data=_user_response(user))
