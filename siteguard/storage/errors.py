from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailableError(Exception):
    """Raised when the backing store cannot be reached or fails mid-operation.

    Callers decide whether to degrade (treat as "no principal" / skip a check)
    or fail closed.
    """

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        message = f"store unavailable during {operation}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.operation = operation
        self.cause = cause


__all__ = ["ConstraintViolation", "StoreUnavailableError"]
