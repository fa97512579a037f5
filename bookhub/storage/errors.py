from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StaleWriteError(Exception):
    """Raised when a conditional write finds a different version than expected."""

    def __init__(self, key: str, expected: Optional[int], actual: Optional[int]):
        super().__init__(f"stale write for {key}: expected version {expected}, found {actual}")
        self.key = key
        self.expected = expected
        self.actual = actual


__all__ = ["ConstraintViolation", "StaleWriteError"]
