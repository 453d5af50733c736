"""Shared dataclasses used across backend, session and orchestrator modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

Row = Mapping[str, Any]


class DBType(str, Enum):
    """Database engines supported by the backends."""

    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    SQLITE = "sqlite"

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    DBType.POSTGRESQL: "PostgreSQL",
    DBType.MYSQL: "MySQL",
    DBType.SQLITE: "SQLite",
}


@dataclass(frozen=True, slots=True)
class PoolOptions:
    """Sizing and timeout knobs for a backend's pool (seconds)."""

    max_size: int = 10
    idle_timeout: float = 30.0
    connect_timeout: float = 10.0
    close_timeout: float = 5.0


@dataclass(frozen=True, slots=True)
class ConnectionConfig:
    """Everything a backend needs to open its pool."""

    type: DBType
    connection_string: str
    pool: PoolOptions = field(default_factory=PoolOptions)


@dataclass(frozen=True, slots=True)
class QueryResult:
    """Normalized query output shared by all engines."""

    rows: tuple[dict[str, Any], ...]
    row_count: int
    fields: tuple[str, ...] | None = None


@dataclass(frozen=True, slots=True)
class TableRef:
    """A table or view addressed by the orchestrator."""

    name: str
    schema: str | None = None
    kind: str = "table"

    @property
    def refresh_key(self) -> str:
        if self.schema:
            return f"{self.schema}|{self.name}"
        return self.name

    @property
    def label(self) -> str:
        return f"{self.schema}.{self.name}" if self.schema else self.name


@dataclass(frozen=True, slots=True)
class ColumnInfo:
    """Column metadata surfaced by introspection."""

    name: str
    data_type: str = "text"
    nullable: bool = True
    is_primary_key: bool = False


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"
    OFF = "off"


@dataclass(frozen=True, slots=True)
class SortConfig:
    """Server-side ordering requested by the data preview."""

    column: str | None = None
    direction: SortDirection = SortDirection.OFF

    @property
    def active(self) -> bool:
        return bool(self.column) and self.direction is not SortDirection.OFF


__all__ = [
    "ColumnInfo",
    "ConnectionConfig",
    "DBType",
    "PoolOptions",
    "QueryResult",
    "Row",
    "SortConfig",
    "SortDirection",
    "TableRef",
]
