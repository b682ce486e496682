from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from connectkit.logging import get_logger
from connectkit.storage.errors import (
    ConstraintViolation,
    DuplicateEmailError,
    DuplicateUsernameError,
)
from connectkit.storage.models import User, utcnow

_USER_COLUMNS = (
    "id, email, username, password_hash, role, first_name, last_name, phone, "
    "is_active, is_verified, verification_token, reset_password_token, "
    "reset_password_expires, failed_login_attempts, locked_until, last_login_at, "
    "created_at, updated_at, deleted_at"
)


class PostgresStore:
    """Postgres-backed credential store over the ``users`` table."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT to_regclass(%s) AS oid", ("public.users",)
            ).fetchone()
        if not row or not row.get("oid"):
            raise RuntimeError(
                "Missing required Postgres table: users. Apply sql/001_users.sql first."
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            password_hash=row.get("password_hash") or "",
            role=str(row.get("role") or "user"),
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            phone=row.get("phone"),
            is_active=row.get("is_active", True),
            is_verified=row.get("is_verified", False),
            verification_token=row.get("verification_token"),
            reset_password_token=row.get("reset_password_token"),
            reset_password_expires=row.get("reset_password_expires"),
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            deleted_at=row.get("deleted_at"),
        )

    def _fetch_user(self, where: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE {where} AND deleted_at IS NULL",
                params,
            ).fetchone()
        return self._row_to_user(row) if row else None

    def _update_user(self, set_clause: str, where: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE users
                SET {set_clause}, updated_at = now()
                WHERE {where} AND deleted_at IS NULL
                RETURNING {_USER_COLUMNS}
                """,
                params,
            ).fetchone()
        return self._row_to_user(row) if row else None

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (email, username, password_hash, role, first_name,
                                       last_name, phone, is_verified)
                    VALUES (%s, %s, %s, %s::user_role, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        normalized_email,
                        normalized_username,
                        password_hash,
                        role,
                        first_name,
                        last_name,
                        phone,
                        is_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            if "username" in constraint:
                raise DuplicateUsernameError(normalized_username) from exc
            if "email" in constraint:
                raise DuplicateEmailError(normalized_email) from exc
            raise ConstraintViolation("user already exists", {"constraint": constraint}) from exc
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id = %s", (user_id,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email = %s", (email.strip().lower(),))

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("username = %s", (username.strip().lower(),))

    def soft_delete_user(self, user_id: str) -> bool:
        user = self._update_user(
            "deleted_at = now(), is_active = false", "id = %s", (user_id,)
        )
        return user is not None

    def set_verification_token(self, user_id: str, token: str) -> Optional[User]:
        return self._update_user("verification_token = %s", "id = %s", (token, user_id))

    def verify_email(self, token: str) -> Optional[User]:
        return self._update_user(
            "is_verified = true, verification_token = NULL",
            "verification_token = %s",
            (token,),
        )

    def record_login_attempt(
        self,
        user_id: str,
        success: bool,
        *,
        max_attempts: int = 5,
        lockout_minutes: int = 30,
    ) -> Optional[User]:
        if success:
            return self._update_user(
                "failed_login_attempts = 0, locked_until = NULL, last_login_at = now()",
                "id = %s",
                (user_id,),
            )
        lock_until = utcnow() + timedelta(minutes=lockout_minutes)
        return self._update_user(
            """
            failed_login_attempts = CASE
                WHEN locked_until <= now() THEN 1
                ELSE failed_login_attempts + 1
            END,
            locked_until = CASE
                WHEN (CASE WHEN locked_until <= now() THEN 1
                           ELSE failed_login_attempts + 1 END) >= %s THEN %s
                WHEN locked_until <= now() THEN NULL
                ELSE locked_until
            END
            """,
            "id = %s",
            (max_attempts, lock_until, user_id),
        )

    def set_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> Optional[User]:
        return self._update_user(
            "reset_password_token = %s, reset_password_expires = %s",
            "id = %s",
            (token, expires_at, user_id),
        )

    def get_user_by_password_reset_token(self, token: str) -> Optional[User]:
        return self._fetch_user(
            "reset_password_token = %s AND reset_password_expires > now()", (token,)
        )

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        return self._update_user(
            """
            password_hash = %s,
            reset_password_token = NULL,
            reset_password_expires = NULL,
            failed_login_attempts = 0,
            locked_until = NULL
            """,
            "id = %s",
            (password_hash, user_id),
        )

    def cleanup_expired_tokens(self) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE users
                SET reset_password_token = NULL, reset_password_expires = NULL, updated_at = now()
                WHERE reset_password_expires IS NOT NULL AND reset_password_expires <= now()
                """
            )
            return cur.rowcount or 0

    def unlock_expired_accounts(self) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE users
                SET locked_until = NULL, failed_login_attempts = 0, updated_at = now()
                WHERE locked_until IS NOT NULL AND locked_until <= now()
                """
            )
            return cur.rowcount or 0
