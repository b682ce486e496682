from __future__ import annotations

import hmac
import secrets
from datetime import timedelta
from typing import Any, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from connectkit.config import Settings
from connectkit.logging import fingerprint, get_logger
from connectkit.service.errors import (
    AccountLockedError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
)
from connectkit.service.outbox import TicketOutbox
from connectkit.service.tokens import ACCESS, REFRESH, TokenIssuer, TokenPair
from connectkit.storage.models import User, utcnow
from connectkit.storage.redis_cache import EMAIL_VERIFICATION, PASSWORD_RESET, RedisCache

logger = get_logger(__name__)

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
PASSWORD_SPECIAL_CHARS = "@$!%*?&"

REGISTERED_MESSAGE = "Registration successful. Please check your email to verify your account."
RESET_REQUESTED_MESSAGE = (
    "If an account with that email exists, a password reset link has been sent."
)
VERIFICATION_REQUESTED_MESSAGE = (
    "If an account with that email exists, a verification email has been sent."
)


class CredentialStore(Protocol):
    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: str = "",
        phone: Optional[str] = None,
        role: str = "user",
        is_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def set_verification_token(self, user_id: str, token: str) -> Optional[User]: ...

    def verify_email(self, token: str) -> Optional[User]: ...

    def record_login_attempt(
        self,
        user_id: str,
        success: bool,
        *,
        max_attempts: int = 5,
        lockout_minutes: int = 30,
    ) -> Optional[User]: ...

    def set_password_reset_token(self, user_id: str, token: str, expires_at) -> Optional[User]: ...

    def get_user_by_password_reset_token(self, token: str) -> Optional[User]: ...

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]: ...

    def cleanup_expired_tokens(self) -> int: ...

    def unlock_expired_accounts(self) -> int: ...


class AuthService:
    """Credential checks, token lifecycle and single-use tickets.

    All cross-request state lives in the token cache; the service itself
    keeps nothing between calls, so several API workers can share one cache.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: RedisCache,
        settings: Settings,
        *,
        issuer: Optional[TokenIssuer] = None,
        outbox: Optional[TicketOutbox] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.tokens = issuer or TokenIssuer(settings)
        self.outbox = outbox or TicketOutbox()
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # -- helpers ---------------------------------------------------------

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash:
            self.logger.warning("password_record_missing", user_id=user.id)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    @staticmethod
    def _generate_ticket_token() -> str:
        return secrets.token_hex(32)

    async def _put_ticket(self, kind: str, token: str, user: User, ttl_seconds: int) -> None:
        payload = {
            "userId": user.id,
            "email": user.email,
            "createdAt": utcnow().isoformat(),
        }
        await self.cache.set_ticket(kind, token, payload, ttl_seconds)
        self.outbox.record(kind, user.email, token, utcnow() + timedelta(seconds=ttl_seconds))

    async def _issue_verification(self, user: User) -> None:
        token = self._generate_ticket_token()
        self.store.set_verification_token(user.id, token)
        await self._put_ticket(
            EMAIL_VERIFICATION,
            token,
            user,
            self.settings.email_verification_ttl_hours * 3600,
        )

    async def _start_session(self, user: User) -> TokenPair:
        pair = self.tokens.issue_pair(user)
        await self.cache.register_access_token(
            user.id, pair.access.jti, pair.access.expires_at, pair.access.ttl_seconds
        )
        await self.cache.set_refresh_token(user.id, pair.refresh.token, pair.refresh.ttl_seconds)
        return pair

    async def _blacklist_presented(self, user_id: str, token: Optional[str], reason: str) -> bool:
        if not token:
            return False
        payload = self.tokens.decode_unverified(token)
        if not payload or not payload.get("jti"):
            return False
        if payload.get("sub") != user_id:
            self.logger.warning("logout_token_subject_mismatch", user_id=user_id)
            return False
        return await self.cache.blacklist_token(
            payload["jti"],
            self.tokens.remaining_seconds(payload),
            user_id=user_id,
            exp=payload.get("exp"),
            reason=reason,
        )

    async def _invalidate_all_tokens(self, user_id: str, reason: str) -> int:
        """Blacklist every outstanding access token and the refresh token."""
        revoked = 0
        now = self.tokens.now()
        for jti, exp in (await self.cache.list_access_tokens(user_id)).items():
            if await self.cache.blacklist_token(
                jti, exp - now, user_id=user_id, exp=exp, reason=reason
            ):
                revoked += 1
        stored_refresh = await self.cache.get_refresh_token(user_id)
        if stored_refresh:
            payload = self.tokens.decode_unverified(stored_refresh)
            if payload and payload.get("jti"):
                if await self.cache.blacklist_token(
                    payload["jti"],
                    self.tokens.remaining_seconds(payload),
                    user_id=user_id,
                    exp=payload.get("exp"),
                    reason=reason,
                ):
                    revoked += 1
        await self.cache.delete_refresh_token(user_id)
        await self.cache.clear_access_tokens(user_id)
        self.logger.info("user_tokens_invalidated", user_id=user_id, reason=reason, revoked=revoked)
        return revoked

    # -- operations ------------------------------------------------------

    async def register(
        self,
        email: str,
        username: str,
        password: str,
        first_name: str = "",
        last_name: str = "",
        phone: Optional[str] = None,
    ) -> dict[str, Any]:
        # Duplicate errors propagate before any ticket is written
        user = self.store.create_user(
            email,
            username,
            self._hash_password(password),
            first_name=first_name,
            last_name=last_name,
            phone=phone,
        )
        await self._issue_verification(user)
        self.logger.info("user_registered", user_id=user.id)
        return {
            "user": user.to_public(),
            "message": REGISTERED_MESSAGE,
        }

    async def login(self, email: str, password: str) -> dict[str, Any]:
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.warning(
                "login_failed", reason="unknown_user", account_hash=fingerprint(email)
            )
            raise InvalidCredentialsError()

        if user.is_locked():
            retry_after = user.lock_remaining_seconds()
            self.logger.warning("login_blocked", user_id=user.id, retry_after=retry_after)
            raise AccountLockedError(locked_until=user.locked_until, retry_after=retry_after)

        if not self._verify_password(user, password):
            updated = self.store.record_login_attempt(
                user.id,
                False,
                max_attempts=self.settings.max_login_attempts,
                lockout_minutes=self.settings.lockout_minutes,
            )
            self.logger.warning(
                "login_failed",
                reason="bad_password",
                user_id=user.id,
                attempts=updated.failed_login_attempts if updated else None,
            )
            raise InvalidCredentialsError()

        if not user.is_active:
            self.logger.warning("login_failed", reason="inactive", user_id=user.id)
            raise InvalidCredentialsError()

        if self.settings.require_email_verification and not user.is_verified:
            self.logger.info("login_blocked_unverified", user_id=user.id)
            raise EmailNotVerifiedError()

        user = (
            self.store.record_login_attempt(
                user.id,
                True,
                max_attempts=self.settings.max_login_attempts,
                lockout_minutes=self.settings.lockout_minutes,
            )
            or user
        )
        pair = await self._start_session(user)
        self.logger.info("login_successful", user_id=user.id)
        return {
            "user": user.to_public(),
            "accessToken": pair.access.token,
            "refreshToken": pair.refresh.token,
            "expiresIn": pair.access.ttl_seconds,
        }

    async def refresh(self, refresh_token: str) -> dict[str, Any]:
        payload = self.tokens.decode(refresh_token, expected_type=REFRESH)
        if not payload:
            raise InvalidTokenError("Invalid refresh token")
        if await self.cache.is_token_blacklisted(payload["jti"]):
            self.logger.warning("refresh_token_reused", user_id=payload.get("sub"))
            raise InvalidTokenError("Invalid refresh token")

        user_id = payload["sub"]
        stored = await self.cache.get_refresh_token(user_id)
        if not stored or not hmac.compare_digest(stored.encode(), refresh_token.encode()):
            self.logger.warning("refresh_token_not_current", user_id=user_id)
            raise InvalidTokenError("Invalid refresh token")

        user = self.store.get_user(user_id)
        if not user or not user.is_active:
            raise InvalidTokenError("Invalid refresh token")

        # Only the caller that wins the claim may rotate
        claimed = await self.cache.claim_token(
            payload["jti"],
            self.tokens.remaining_seconds(payload),
            user_id=user_id,
            exp=payload.get("exp"),
            reason="rotated",
        )
        if not claimed:
            self.logger.warning("refresh_token_reused", user_id=user_id)
            raise InvalidTokenError("Invalid refresh token")
        pair = await self._start_session(user)
        self.logger.info("token_refreshed", user_id=user_id)
        return {
            "accessToken": pair.access.token,
            "refreshToken": pair.refresh.token,
            "expiresIn": pair.access.ttl_seconds,
        }

    async def logout(
        self,
        user_id: str,
        access_token: str,
        refresh_token: Optional[str] = None,
    ) -> dict[str, str]:
        await self._blacklist_presented(user_id, access_token, "logout")
        await self._blacklist_presented(user_id, refresh_token, "logout")
        await self.cache.delete_refresh_token(user_id)
        self.logger.info("user_logged_out", user_id=user_id)
        return {"message": "Logged out successfully"}

    async def logout_all(self, user_id: str) -> dict[str, str]:
        await self._invalidate_all_tokens(user_id, "logout_all")
        return {"message": "Logged out from all devices successfully"}

    async def forgot_password(self, email: str) -> dict[str, Any]:
        result: dict[str, Any] = {"message": RESET_REQUESTED_MESSAGE}
        user = self.store.get_user_by_email(email)
        if not user or not user.is_active:
            self.logger.info("password_reset_requested_unknown")
            return result
        token = self._generate_ticket_token()
        ttl_seconds = self.settings.password_reset_ttl_hours * 3600
        self.store.set_password_reset_token(
            user.id, token, utcnow() + timedelta(seconds=ttl_seconds)
        )
        await self._put_ticket(PASSWORD_RESET, token, user, ttl_seconds)
        self.logger.info("password_reset_requested", user_id=user.id)
        return result

    async def reset_password(
        self, token: str, new_password: str, confirm_password: str
    ) -> dict[str, str]:
        if new_password != confirm_password:
            raise InvalidCredentialsError("Passwords do not match")
        ticket = await self.cache.get_ticket(PASSWORD_RESET, token)
        if not ticket:
            self.logger.warning("password_reset_invalid_token")
            raise InvalidTokenError("Invalid or expired reset token")
        user = self.store.get_user_by_password_reset_token(token)
        if not user:
            self.logger.warning("password_reset_user_missing", user_id=ticket.get("userId"))
            raise InvalidTokenError("Invalid or expired reset token")

        self.store.update_password(user.id, self._hash_password(new_password))
        await self.cache.delete_ticket(PASSWORD_RESET, token)
        await self._invalidate_all_tokens(user.id, "password_reset")
        self.logger.info("password_reset_completed", user_id=user.id)
        return {"message": "Password reset successfully"}

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        confirm_password: str,
    ) -> dict[str, str]:
        if new_password != confirm_password:
            raise InvalidCredentialsError("Passwords do not match")
        user = self.store.get_user(user_id)
        if not user or not self._verify_password(user, current_password):
            self.logger.warning("password_change_rejected", user_id=user_id)
            raise InvalidCredentialsError("Current password is incorrect")

        self.store.update_password(user.id, self._hash_password(new_password))
        await self._invalidate_all_tokens(user.id, "password_change")
        self.logger.info("password_changed", user_id=user.id)
        return {"message": "Password changed successfully"}

    async def verify_email(self, token: str) -> dict[str, str]:
        ticket = await self.cache.get_ticket(EMAIL_VERIFICATION, token)
        if not ticket:
            self.logger.warning("email_verification_invalid_token")
            raise InvalidTokenError("Invalid or expired verification token")
        user = self.store.verify_email(token)
        if not user:
            self.logger.warning("email_verification_missing_user", user_id=ticket.get("userId"))
            raise InvalidTokenError("Invalid or expired verification token")
        await self.cache.delete_ticket(EMAIL_VERIFICATION, token)
        self.logger.info("email_verified", user_id=user.id)
        return {"message": "Email verified successfully"}

    async def resend_email_verification(self, email: str) -> dict[str, Any]:
        user = self.store.get_user_by_email(email)
        if not user:
            return {"message": VERIFICATION_REQUESTED_MESSAGE}
        if user.is_verified:
            return {"message": "Email is already verified."}
        if user.verification_token:
            await self.cache.delete_ticket(EMAIL_VERIFICATION, user.verification_token)
        await self._issue_verification(user)
        self.logger.info("email_verification_resent", user_id=user.id)
        return {"message": "Verification email sent."}

    async def validate_token(self, token: str) -> dict[str, Any]:
        """Resolve an access token to its user; never raises."""
        invalid: dict[str, Any] = {"valid": False, "user": None}
        try:
            payload = self.tokens.decode(token, expected_type=ACCESS)
            if not payload:
                return invalid
            if await self.cache.is_token_blacklisted(payload["jti"]):
                return invalid
            user = self.store.get_user(payload["sub"])
            if not user or not user.is_active:
                return invalid
            return {"valid": True, "user": user.to_token_subject()}
        except Exception as exc:
            self.logger.error(
                "token_validation_error", error=str(exc), error_type=type(exc).__name__
            )
            return invalid

    async def cleanup(self) -> dict[str, int]:
        expired = unlocked = 0
        try:
            expired = self.store.cleanup_expired_tokens()
            unlocked = self.store.unlock_expired_accounts()
            self.logger.info(
                "auth_cleanup_completed", expired_count=expired, unlocked_count=unlocked
            )
        except Exception as exc:
            self.logger.error(
                "auth_cleanup_failed", error=str(exc), error_type=type(exc).__name__
            )
            expired = unlocked = 0
        return {"expiredTokens": expired, "unlockedAccounts": unlocked}

    # -- lookups ---------------------------------------------------------

    def check_email_available(self, email: str) -> bool:
        return self.store.get_user_by_email(email) is None

    def check_username_available(self, username: str) -> bool:
        return self.store.get_user_by_username(username) is None

    def get_profile(self, user_id: str) -> dict[str, Any]:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        profile = user.to_public()
        profile.update(
            {
                "phone": user.phone,
                "lastLoginAt": user.last_login_at.isoformat() if user.last_login_at else None,
                "createdAt": user.created_at.isoformat() if user.created_at else None,
            }
        )
        return profile

    @staticmethod
    def password_requirements() -> dict[str, Any]:
        return {
            "minLength": PASSWORD_MIN_LENGTH,
            "maxLength": PASSWORD_MAX_LENGTH,
            "requireUppercase": True,
            "requireLowercase": True,
            "requireNumbers": True,
            "requireSpecialChars": False,
            "allowedSpecialChars": PASSWORD_SPECIAL_CHARS,
        }
