"""
Session service error hierarchy and result type.

Provides:
- SessionServiceError: base for all session/authorization failures
- RemoteStoreError: remote record store unreachable or timed out
- InvalidPathError: record path rejected before any request is made
- StorageError: local key-value persistence failed
- MalformedSessionError: persisted session could not be decoded
- ConfigurationError: invalid service configuration
- ErrorKind / Result: explicit "could not determine" vs "denied" outcomes
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    TRANSIENT_REMOTE = "transient_remote"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    MALFORMED_DATA = "malformed_data"
    DENIED = "denied"
    UNAUTHENTICATED = "unauthenticated"
    NOT_ELIGIBLE = "not_eligible"
    PROGRAMMER_ERROR = "programmer_error"


class SessionServiceError(Exception):
    """Base exception for session service failures."""

    error_code = "SESSION_SERVICE_ERROR"
    kind = ErrorKind.PROGRAMMER_ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.error_code, "message": self.message}


class RemoteStoreError(SessionServiceError):
    """
    Raised when the remote record store cannot be reached.

    Covers network failures, non-success HTTP status and bounded-wait timeouts.
    """

    error_code = "REMOTE_STORE_UNAVAILABLE"
    kind = ErrorKind.TRANSIENT_REMOTE

    def __init__(self, path: str, detail: str, cause: Optional[Exception] = None):
        self.path = path
        self.detail = detail
        self.cause = cause
        super().__init__(f"Remote store request failed for {path}: {detail}")

    def to_dict(self) -> dict:
        return {"error": self.error_code, "message": self.detail, "path": self.path}


class InvalidPathError(RemoteStoreError):
    """Raised when a record path contains characters the store rejects."""

    error_code = "INVALID_RECORD_PATH"
    kind = ErrorKind.MALFORMED_DATA


class StorageError(SessionServiceError):
    """Raised when the local key-value store fails."""

    error_code = "LOCAL_STORAGE_FAILED"
    kind = ErrorKind.STORAGE_UNAVAILABLE

    def __init__(self, key: str, detail: str):
        self.key = key
        self.detail = detail
        super().__init__(f"Local storage operation failed for {key}: {detail}")


class MalformedSessionError(SessionServiceError):
    """Raised when a persisted session record cannot be decoded."""

    error_code = "MALFORMED_SESSION"
    kind = ErrorKind.MALFORMED_DATA

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> dict:
        d: dict = {"error": self.error_code, "message": self.message}
        if self.field is not None:
            d["field"] = self.field
        return d


class ConfigurationError(SessionServiceError):
    """Raised when service configuration is invalid."""

    error_code = "INVALID_CONFIGURATION"


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of an operation that may fail without raising."""

    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ErrorKind, detail: Optional[str] = None) -> "Result[T]":
        return cls(error=error, detail=detail)

    @classmethod
    def from_exception(cls, exc: SessionServiceError) -> "Result[T]":
        return cls(error=exc.kind, detail=exc.message)

    def unwrap_or(self, default: T) -> T:
        if self.error is not None or self.value is None:
            return default
        return self.value
