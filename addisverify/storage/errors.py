from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for storage-layer failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(StorageError):
    """The durable account store did not answer within its bounds."""


class CacheUnavailable(StorageError):
    """The challenge cache did not answer within its bounds."""


__all__ = ["StorageError", "StoreUnavailable", "CacheUnavailable"]
