from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or reference constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class BackingStoreUnavailable(Exception):
    """The shared counter/registry store could not be reached or answered garbage."""


__all__ = ["ConstraintViolation", "BackingStoreUnavailable"]
