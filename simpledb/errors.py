"""
Error types for SimpleDB.

This module defines all exception types raised by the store and feed:
- SimpleDbError: Base exception
- StoreOpenError: The database file could not be opened
- StoreNotOpenError: Operation on a store that is not open
- WriteContentionError: Busy/locked persisted past the retry budget
- DecodeError: A stored value could not be decoded
- ChangeFeedError: Change feed lifecycle misuse

Invariants:
    - All errors inherit from SimpleDbError
    - Errors include context for debugging
    - Engine errors are chained, never swallowed
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SimpleDbError(Exception):
    """Base exception for all SimpleDB errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SIMPLEDB_ERROR"
        self.details = details or {}


class StoreOpenError(SimpleDbError):
    """The database file could not be opened.

    Raised when:
    - The path is empty
    - The directory cannot be created
    - The engine rejects the file
    """

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code="STORE_OPEN_ERROR", details={"path": path})
        self.path = path


class StoreNotOpenError(SimpleDbError):
    """A read or write was attempted before open() succeeded, or after close()."""

    def __init__(self, message: str = "SimpleDatabase is not open. Call open(...) first.") -> None:
        super().__init__(message, code="STORE_NOT_OPEN")


class WriteContentionError(SimpleDbError):
    """The engine kept reporting busy/locked after all retries.

    Attributes:
        attempts: Number of attempts made, including the first
    """

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message, code="WRITE_CONTENTION", details={"attempts": attempts})
        self.attempts = attempts


class DecodeError(SimpleDbError):
    """A stored value could not be decoded into the requested shape."""

    def __init__(self, message: str, shape: Any = None) -> None:
        super().__init__(message, code="DECODE_ERROR", details={"shape": repr(shape)})
        self.shape = shape


class ChangeFeedError(SimpleDbError):
    """Change feed lifecycle misuse (e.g. starting a poller twice)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CHANGE_FEED_ERROR")
