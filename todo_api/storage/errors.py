from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """Raised when the database or the token cache cannot be reached.

    Fatal to the request; callers do not retry inline.
    """

    def __init__(self, backend: str, operation: str):
        super().__init__(f"{backend} unavailable during {operation}")
        self.backend = backend
        self.operation = operation


__all__ = ["ConstraintViolation", "StoreUnavailable"]
