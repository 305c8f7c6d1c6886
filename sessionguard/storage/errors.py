from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or reference constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateUserError(ConstraintViolation):
    """Email or username already belongs to another user."""

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class UnknownUserError(ConstraintViolation):
    """Session operation referenced a user that does not exist."""


__all__ = ["ConstraintViolation", "DuplicateUserError", "UnknownUserError"]
