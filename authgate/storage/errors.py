from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or check constraint is violated.

    Race-resolution code catches this to re-read the winning row; ``detail``
    names the offending field (``{"field": "email"}``).
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class StorageUnavailable(Exception):
    """Raised when the backing database cannot be reached."""


__all__ = ["ConstraintViolation", "StorageUnavailable"]
