from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from connectkit.logging import get_logger
from connectkit.storage.errors import DuplicateEmailError, DuplicateUsernameError
from connectkit.storage.models import User, utcnow


class MemoryStore:
    """In-memory credential store persisted as JSON under ``fs_root``."""

    def __init__(self, fs_root: str = "/tmp/connectkit") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock so helpers can re-enter while a caller holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _live_users(self) -> List[User]:
        return [u for u in self.users.values() if u.deleted_at is None]

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
    ) -> User:
        normalized_email = email.strip().lower()
        normalized_username = username.strip().lower()
        with self._data_lock:
            if any(u.email == normalized_email for u in self._live_users()):
                raise DuplicateEmailError(normalized_email)
            if any(u.username == normalized_username for u in self._live_users()):
                raise DuplicateUsernameError(normalized_username)
            user = User(
                id=str(uuid.uuid4()),
                email=normalized_email,
                username=normalized_username,
                password_hash=password_hash,
                role=role,
                first_name=first_name,
                last_name=last_name,
                phone=phone,
                is_verified=is_verified,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.deleted_at is not None:
                return None
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self._live_users() if u.email == normalized), None)

    def get_user_by_username(self, username: str) -> Optional[User]:
        normalized = username.strip().lower()
        with self._data_lock:
            return next(
                (u for u in self._live_users() if u.username == normalized), None
            )

    def soft_delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.get_user(user_id)
            if not user:
                return False
            now = utcnow()
            user.deleted_at = now
            user.is_active = False
            user.updated_at = now
            self._persist_state()
            return True

    def set_verification_token(self, user_id: str, token: str) -> Optional[User]:
        with self._data_lock:
            user = self.get_user(user_id)
            if not user:
                return None
            user.verification_token = token
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def verify_email(self, token: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self._live_users() if u.verification_token == token), None
            )
            if not user:
                return None
            user.is_verified = True
            user.verification_token = None
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def record_login_attempt(
        self,
        user_id: str,
        success: bool,
        *,
        max_attempts: int = 5,
        lockout_minutes: int = 30,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.get_user(user_id)
            if not user:
                return None
            now = utcnow()
            if success:
                user.failed_login_attempts = 0
                user.locked_until = None
                user.last_login_at = now
            else:
                if user.locked_until and user.locked_until <= now:
                    user.failed_login_attempts = 0
                    user.locked_until = None
                user.failed_login_attempts += 1
                if user.failed_login_attempts >= max_attempts:
                    user.locked_until = now + timedelta(minutes=lockout_minutes)
            user.updated_at = now
            self._persist_state()
            return user

    def set_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.get_user(user_id)
            if not user:
                return None
            user.reset_password_token = token
            user.reset_password_expires = expires_at
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def get_user_by_password_reset_token(self, token: str) -> Optional[User]:
        now = utcnow()
        with self._data_lock:
            return next(
                (
                    u
                    for u in self._live_users()
                    if u.reset_password_token == token
                    and u.reset_password_expires is not None
                    and u.reset_password_expires > now
                ),
                None,
            )

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        """Store a new hash and clear reset and lockout state."""
        with self._data_lock:
            user = self.get_user(user_id)
            if not user:
                return None
            user.password_hash = password_hash
            user.reset_password_token = None
            user.reset_password_expires = None
            user.failed_login_attempts = 0
            user.locked_until = None
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def cleanup_expired_tokens(self) -> int:
        now = utcnow()
        with self._data_lock:
            cleared = 0
            for user in self.users.values():
                if user.reset_password_expires and user.reset_password_expires <= now:
                    user.reset_password_token = None
                    user.reset_password_expires = None
                    user.updated_at = now
                    cleared += 1
            if cleared:
                self._persist_state()
            return cleared

    def unlock_expired_accounts(self) -> int:
        now = utcnow()
        with self._data_lock:
            unlocked = 0
            for user in self.users.values():
                if user.locked_until and user.locked_until <= now:
                    user.locked_until = None
                    user.failed_login_attempts = 0
                    user.updated_at = now
                    unlocked += 1
            if unlocked:
                self._persist_state()
            return unlocked

    def verify_connection(self) -> None:
        """Assert the state directory is usable."""
        self._state_path()

    def _persist_state(self) -> None:
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Read directly instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "password_hash": user.password_hash,
            "role": user.role,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "phone": user.phone,
            "is_active": user.is_active,
            "is_verified": user.is_verified,
            "verification_token": user.verification_token,
            "reset_password_token": user.reset_password_token,
            "reset_password_expires": self._serialize_datetime(user.reset_password_expires),
            "failed_login_attempts": user.failed_login_attempts,
            "locked_until": self._serialize_datetime(user.locked_until),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "deleted_at": self._serialize_datetime(user.deleted_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            username=data["username"],
            password_hash=data.get("password_hash", ""),
            role=data.get("role", "user"),
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            phone=data.get("phone"),
            is_active=data.get("is_active", True),
            is_verified=data.get("is_verified", False),
            verification_token=data.get("verification_token"),
            reset_password_token=data.get("reset_password_token"),
            reset_password_expires=self._deserialize_datetime(
                data.get("reset_password_expires")
            ),
            failed_login_attempts=data.get("failed_login_attempts", 0),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_at=self._deserialize_datetime(data["created_at"]) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
            deleted_at=self._deserialize_datetime(data.get("deleted_at")),
        )
