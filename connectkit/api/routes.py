from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path

from connectkit.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    ValidateTokenRequest,
    VerifyEmailRequest,
    _validate_email,
    _validate_username,
)
from connectkit.logging import get_logger
from connectkit.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])


@dataclass(frozen=True)
class Principal:
    user_id: str
    user: dict
    access_token: str


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_user(authorization: Optional[str] = Header(None)) -> Principal:
    token = _bearer_token(authorization)
    if not token:
        raise _http_error("unauthorized", "Access token required", status_code=401)
    result = await get_runtime().auth.validate_token(token)
    if not result["valid"]:
        raise _http_error("unauthorized", "Invalid or expired token", status_code=401)
    return Principal(user_id=result["user"]["id"], user=result["user"], access_token=token)


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest):
    """Create an account and queue its email verification ticket.

    Raises:
        400: If the payload fails validation
        409: If the email or username is already registered
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        email=body.email,
        username=body.username,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
    )
    return Envelope(status="ok", data=result)


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest):
    """Authenticate with email and password and return a token pair.

    Raises:
        401: If credentials are invalid
        403: If email verification is required and pending
        423: If the account is locked after repeated failures
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=result)


@router.post("/refresh", response_model=Envelope)
async def refresh(body: RefreshRequest):
    """Rotate a refresh token; the presented token is revoked."""
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=result)


@router.post("/logout", response_model=Envelope)
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: Principal = Depends(get_user),
):
    runtime = get_runtime()
    result = await runtime.auth.logout(
        principal.user_id,
        principal.access_token,
        body.refresh_token if body else None,
    )
    return Envelope(status="ok", data=result)


@router.post("/logout-all", response_model=Envelope)
async def logout_all(principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    result = await runtime.auth.logout_all(principal.user_id)
    return Envelope(status="ok", data=result)


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: ForgotPasswordRequest):
    """Start a password reset; the response is identical for unknown emails."""
    runtime = get_runtime()
    result = await runtime.auth.forgot_password(body.email)
    return Envelope(status="ok", data=result)


@router.post("/reset-password", response_model=Envelope)
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    result = await runtime.auth.reset_password(
        body.token, body.password, body.confirm_password
    )
    return Envelope(status="ok", data=result)


@router.post("/change-password", response_model=Envelope)
async def change_password(
    body: ChangePasswordRequest, principal: Principal = Depends(get_user)
):
    runtime = get_runtime()
    result = await runtime.auth.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        body.confirm_password,
    )
    return Envelope(status="ok", data=result)


@router.post("/verify-email", response_model=Envelope)
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    result = await runtime.auth.verify_email(body.token)
    return Envelope(status="ok", data=result)


@router.post("/resend-verification", response_model=Envelope)
async def resend_verification(body: ResendVerificationRequest):
    runtime = get_runtime()
    result = await runtime.auth.resend_email_verification(body.email)
    return Envelope(status="ok", data=result)


@router.get("/profile", response_model=Envelope)
async def profile(principal: Principal = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data={"user": runtime.auth.get_profile(principal.user_id)})


@router.post("/validate", response_model=Envelope)
async def validate(body: ValidateTokenRequest):
    """Report whether an access token is currently accepted."""
    runtime = get_runtime()
    result = await runtime.auth.validate_token(body.token)
    return Envelope(status="ok", data=result)


@router.get("/status", response_model=Envelope)
async def status(authorization: Optional[str] = Header(None)):
    token = _bearer_token(authorization)
    if not token:
        return Envelope(status="ok", data={"authenticated": False, "user": None})
    result = await get_runtime().auth.validate_token(token)
    return Envelope(
        status="ok",
        data={"authenticated": result["valid"], "user": result["user"]},
    )


@router.get("/check-email/{email}", response_model=Envelope)
async def check_email(email: str = Path(..., max_length=254)):
    try:
        normalized = _validate_email(email)
    except ValueError as exc:
        raise _http_error("validation_error", str(exc), status_code=400)
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data={"email": normalized, "available": runtime.auth.check_email_available(normalized)},
    )


@router.get("/check-username/{username}", response_model=Envelope)
async def check_username(username: str = Path(..., max_length=50)):
    try:
        normalized = _validate_username(username)
    except ValueError as exc:
        raise _http_error("validation_error", str(exc), status_code=400)
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data={
            "username": normalized,
            "available": runtime.auth.check_username_available(normalized),
        },
    )


@router.get("/password-requirements", response_model=Envelope)
async def password_requirements():
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.auth.password_requirements())
