from __future__ import annotations

from typing import Any, Dict, Optional


class IdentityStoreError(Exception):
    """Raised when the identity store rejects a request or cannot be reached."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.detail = detail or {}


class ConstraintViolation(IdentityStoreError):
    """Raised when the identity store refuses a duplicate identifier."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=409, detail=detail)


__all__ = ["IdentityStoreError", "ConstraintViolation"]
