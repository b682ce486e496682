"""HS256 JWT minting and decoding for access and refresh tokens.

Two decode paths exist:

* :meth:`TokenIssuer.decode` checks algorithm, signature, issuer, audience
  and expiry, and is the only path that may grant access.
* :meth:`TokenIssuer.decode_unverified` only parses the payload and is used
  for bookkeeping on tokens the caller already holds (logout blacklisting).
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from connectkit.config import Settings
from connectkit.logging import get_logger
from connectkit.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


def decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def read_claims(token: Any) -> Optional[dict[str, Any]]:
    """Parse a JWT payload without checking the signature or expiry."""
    if not isinstance(token, str):
        return None
    parts = token.split(".")
    if len(parts) != 3:
        return None
    try:
        payload = json.loads(decode_segment(parts[1]))
    except (ValueError, TypeError):
        return None
    return payload if isinstance(payload, dict) else None


@dataclass(frozen=True)
class IssuedToken:
    token: str
    jti: str
    expires_at: int
    ttl_seconds: int


@dataclass(frozen=True)
class TokenPair:
    access: IssuedToken
    refresh: IssuedToken


class TokenIssuer:
    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
        leeway_seconds: int = 0,
    ) -> None:
        self.settings = settings
        self._clock = clock
        self._leeway = leeway_seconds

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    @property
    def refresh_ttl_seconds(self) -> int:
        return self.settings.refresh_token_ttl_days * 24 * 60 * 60

    def now(self) -> int:
        return int(self._clock())

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _issue(self, claims: dict[str, Any], ttl_seconds: int) -> IssuedToken:
        issued_at = self.now()
        expires_at = issued_at + ttl_seconds
        jti = str(uuid.uuid4())
        payload = {
            **claims,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": issued_at,
            "exp": expires_at,
            "jti": jti,
        }
        return IssuedToken(
            token=self.encode(payload),
            jti=jti,
            expires_at=expires_at,
            ttl_seconds=ttl_seconds,
        )

    def issue_access_token(self, user: User) -> IssuedToken:
        claims = {
            "sub": user.id,
            "email": user.email,
            "username": user.username,
            "role": user.role,
            "isActive": user.is_active,
            "isVerified": user.is_verified,
            "type": ACCESS,
        }
        return self._issue(claims, self.access_ttl_seconds)

    def issue_refresh_token(self, user_id: str) -> IssuedToken:
        return self._issue({"sub": user_id, "type": REFRESH}, self.refresh_ttl_seconds)

    def issue_pair(self, user: User) -> TokenPair:
        return TokenPair(
            access=self.issue_access_token(user),
            refresh=self.issue_refresh_token(user.id),
        )

    def decode(
        self, token: str, *, expected_type: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        """Return the payload of a correctly signed, unexpired token, else None."""
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm to block alg-confusion tokens
        try:
            header = json.loads(decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock() - self._leeway:
            return None
        if not payload.get("sub") or not payload.get("jti"):
            return None
        if expected_type and payload.get("type") != expected_type:
            logger.warning(
                "jwt_type_mismatch",
                token_type=payload.get("type"),
                expected_type=expected_type,
            )
            return None
        return payload

    def decode_unverified(self, token: str) -> Optional[dict[str, Any]]:
        """Parse the payload without checking the signature or expiry."""
        return read_claims(token)

    def remaining_seconds(self, payload: dict[str, Any]) -> int:
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return 0
        return max(int(exp_ts - self._clock()), 0)
