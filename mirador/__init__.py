"""Core services for browsing PostgreSQL, MySQL and SQLite from the terminal."""

from __future__ import annotations

from .backends import (
    ConnectionBackend,
    MySQLBackend,
    PostgresBackend,
    SQLiteBackend,
    create_backend,
)
from .errors import (
    ConnectionBackendError,
    DatabaseError,
    FailureKind,
    MiradorError,
    RequestValidationError,
    StorageError,
)
from .models import (
    ColumnInfo,
    ConnectionConfig,
    DBType,
    PoolOptions,
    QueryResult,
    SortConfig,
    SortDirection,
    TableRef,
)
from .orchestrator import (
    ExportOptions,
    FetchSkipped,
    OperationFailure,
    QueryOrchestrator,
    SearchResult,
    TablePage,
)
from .registry import ConnectionInfo, ConnectionRegistry, LoadConnectionsResult, QueryHistoryItem
from .session import SessionManager, SessionState

__version__ = "0.1.0"

__all__ = [
    "ColumnInfo",
    "ConnectionBackend",
    "ConnectionBackendError",
    "ConnectionConfig",
    "ConnectionInfo",
    "ConnectionRegistry",
    "DBType",
    "DatabaseError",
    "ExportOptions",
    "FailureKind",
    "FetchSkipped",
    "LoadConnectionsResult",
    "MiradorError",
    "MySQLBackend",
    "OperationFailure",
    "PoolOptions",
    "PostgresBackend",
    "QueryHistoryItem",
    "QueryOrchestrator",
    "QueryResult",
    "RequestValidationError",
    "SQLiteBackend",
    "SearchResult",
    "SessionManager",
    "SessionState",
    "SortConfig",
    "SortDirection",
    "StorageError",
    "TablePage",
    "TableRef",
    "__version__",
    "create_backend",
]
