from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateEmailError(ConstraintViolation):
    """Raised when registering an email that already belongs to a user."""

    def __init__(self, email: Optional[str] = None):
        super().__init__("email already exists", {"field": "email"})
        self.email = email


class DuplicateUsernameError(ConstraintViolation):
    """Raised when registering a username that is already taken."""

    def __init__(self, username: Optional[str] = None):
        super().__init__("username already exists", {"field": "username"})
        self.username = username


__all__ = ["ConstraintViolation", "DuplicateEmailError", "DuplicateUsernameError"]
