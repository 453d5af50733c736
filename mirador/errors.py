"""Error taxonomy shared by the backends, orchestrator and registry."""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """Coarse classification surfaced to the UI layer."""

    CONNECTION = "connection"
    DATABASE = "database"
    VALIDATION = "validation"
    STORAGE = "storage"


class MiradorError(RuntimeError):
    """Base error carrying an engine code and the raw driver detail."""

    kind = FailureKind.DATABASE

    def __init__(self, message: str, code: str | None = None, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.detail = detail


class ConnectionBackendError(MiradorError):
    """Raised when a backend cannot establish or validate a connection."""

    kind = FailureKind.CONNECTION


class DatabaseError(MiradorError):
    """Raised when a statement fails on an established connection."""

    kind = FailureKind.DATABASE


class RequestValidationError(MiradorError):
    """Raised when a fetch/search/export request is malformed."""

    kind = FailureKind.VALIDATION


class StorageError(MiradorError):
    """Raised when the registry cannot provision its data directory."""

    kind = FailureKind.STORAGE


def error_code(exc: BaseException) -> str | None:
    """Best-effort extraction of the engine-specific error code."""

    sqlstate = getattr(exc, "sqlstate", None)
    if sqlstate:
        return str(sqlstate)
    sqlite_name = getattr(exc, "sqlite_errorname", None)
    if sqlite_name:
        return str(sqlite_name)
    if exc.args and isinstance(exc.args[0], int):
        return str(exc.args[0])
    code = getattr(exc, "code", None)
    if isinstance(code, (str, int)):
        return str(code)
    return None


__all__ = [
    "ConnectionBackendError",
    "DatabaseError",
    "FailureKind",
    "MiradorError",
    "RequestValidationError",
    "StorageError",
    "error_code",
]
