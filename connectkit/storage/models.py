from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    username: str
    password_hash: str = field(default="", repr=False)
    role: str = "user"
    first_name: str = ""
    last_name: str = ""
    phone: Optional[str] = None
    is_active: bool = True
    is_verified: bool = False
    verification_token: Optional[str] = field(default=None, repr=False)
    reset_password_token: Optional[str] = field(default=None, repr=False)
    reset_password_expires: Optional[datetime] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if not self.locked_until:
            return False
        return self.locked_until > (now or utcnow())

    def lock_remaining_seconds(self, now: Optional[datetime] = None) -> int:
        if not self.locked_until:
            return 0
        remaining = (self.locked_until - (now or utcnow())).total_seconds()
        return max(int(remaining), 0)

    def to_public(self) -> dict:
        """Public projection; never includes the password hash or tokens."""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "role": self.role,
            "isVerified": self.is_verified,
        }

    def to_token_subject(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "role": self.role,
            "isVerified": self.is_verified,
        }
