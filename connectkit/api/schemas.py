from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from connectkit.service.auth import PASSWORD_MAX_LENGTH, PASSWORD_MIN_LENGTH


def _normalize_unicode(value: str) -> str:
    """Normalize a string with NFKC after stripping spoofing characters.

    Removes zero-width characters and bidi overrides, then folds
    compatibility characters so lookalike addresses compare equal.
    """
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)

    # U+202A-U+202E, U+2066-U+2069
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "locked",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def _validate_username(value: str) -> str:
    """3-50 characters: letters, digits, underscores and hyphens."""
    value = value.strip()
    if len(value) < 3:
        raise ValueError("username must be at least 3 characters")
    if len(value) > 50:
        raise ValueError("username must be at most 50 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username must contain only letters, numbers, underscores, and hyphens")
    return value


def _validate_password_strength(value: str) -> str:
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
    if not re.search(r"[a-z]", value):
        raise ValueError("password must contain a lowercase letter")
    if not re.search(r"[A-Z]", value):
        raise ValueError("password must contain an uppercase letter")
    if not re.search(r"\d", value):
        raise ValueError("password must contain a number")
    return value


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterRequest(_CamelModel):
    email: str
    username: str
    password: str
    first_name: str = Field(default="", alias="firstName", max_length=100)
    last_name: str = Field(default="", alias="lastName", max_length=100)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _strip_names(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class LoginRequest(_CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(_CamelModel):
    refresh_token: str = Field(..., alias="refreshToken", min_length=1, max_length=2048)


class LogoutRequest(_CamelModel):
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken", max_length=2048)


class ForgotPasswordRequest(_CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(_CamelModel):
    token: str = Field(..., min_length=1, max_length=256)
    password: str
    confirm_password: str = Field(..., alias="confirmPassword")

    @field_validator("password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(
        ..., alias="currentPassword", min_length=1, max_length=PASSWORD_MAX_LENGTH
    )
    new_password: str = Field(..., alias="newPassword")
    confirm_password: str = Field(..., alias="confirmPassword")

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class VerifyEmailRequest(_CamelModel):
    token: str = Field(..., min_length=1, max_length=256)


class ResendVerificationRequest(_CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_resend_email(cls, value: str) -> str:
        return _validate_email(value)


class ValidateTokenRequest(_CamelModel):
    token: str = Field(..., min_length=1, max_length=4096)
