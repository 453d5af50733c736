"""Saved connections and query history persisted as JSON under the data directory."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .errors import StorageError
from .identifiers import (
    ID_MAX_LENGTH,
    ID_MIN_LENGTH,
    ID_PATTERN,
    ensure_unique_id,
    generate_connection_id,
    name_format_error,
)
from .models import ConnectionConfig, DBType, PoolOptions

LOG = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".mirador"
CONNECTIONS_FILE = "connections.json"
HISTORY_FILE = "query-history.json"

DRIVER_ALIASES: dict[str, DBType] = {
    "postgres": DBType.POSTGRESQL,
    "postgresql": DBType.POSTGRESQL,
    "pg": DBType.POSTGRESQL,
    "mysql": DBType.MYSQL,
    "sqlite": DBType.SQLITE,
    "sqlite3": DBType.SQLITE,
}

_EMPTY = object()


def utc_timestamp() -> str:
    """Current time as an ISO-8601 string with millisecond precision."""

    return datetime.now(tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConnectionInfo(_Record):
    """A saved connection profile."""

    id: str
    name: str
    type: DBType
    connection_string: str = Field(min_length=1)
    created_at: str
    updated_at: str

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        if not ID_MIN_LENGTH <= len(value) <= ID_MAX_LENGTH or not ID_PATTERN.match(value):
            raise ValueError("malformed connection id")
        return value

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        error = name_format_error(value)
        if error:
            raise ValueError(error)
        return value

    @field_validator("created_at", "updated_at")
    @classmethod
    def _check_timestamp(cls, value: str) -> str:
        parse_timestamp(value)
        return value

    def to_config(self, pool: PoolOptions | None = None) -> ConnectionConfig:
        return ConnectionConfig(
            type=self.type,
            connection_string=self.connection_string,
            pool=pool or PoolOptions(),
        )


class QueryHistoryItem(_Record):
    """One executed statement, newest entries first in the history file."""

    id: str
    connection_id: str
    query: str
    executed_at: str
    duration_ms: int | float
    row_count: int
    error: str | None = None


class LegacyConnection(BaseModel):
    """Shape written by older releases."""

    name: str | None = None
    driver: str
    connection_str: str = Field(min_length=1)


@dataclass(frozen=True, slots=True)
class NormalizedEntry:
    connection: ConnectionInfo
    normalized: bool


@dataclass(slots=True)
class LoadConnectionsResult:
    connections: list[ConnectionInfo] = field(default_factory=list)
    normalized: int = 0
    skipped: int = 0


def normalize_connection_entry(entry: object, *, now: str | None = None) -> NormalizedEntry | None:
    """Validate ``entry`` against the current schema, then the legacy one."""

    try:
        return NormalizedEntry(ConnectionInfo.model_validate(entry), normalized=False)
    except ValidationError:
        pass
    try:
        legacy = LegacyConnection.model_validate(entry)
    except ValidationError:
        return None
    db_type = DRIVER_ALIASES.get(legacy.driver.strip().lower())
    if db_type is None:
        LOG.warning("Skipping legacy connection with unsupported driver %r.", legacy.driver)
        return None
    timestamp = now or utc_timestamp()
    name = legacy.name
    if name is None or name_format_error(name):
        name = f"{db_type.label} connection"
    try:
        connection = ConnectionInfo(
            id=generate_connection_id(),
            name=name,
            type=db_type,
            connection_string=legacy.connection_str,
            created_at=timestamp,
            updated_at=timestamp,
        )
    except ValidationError:
        LOG.warning("Unable to normalize legacy connection entry.")
        return None
    return NormalizedEntry(connection, normalized=True)


def dedupe_connections(connections: Sequence[ConnectionInfo]) -> tuple[list[ConnectionInfo], int]:
    """Collapse entries sharing (type, connection string) onto the newest one."""

    positions: dict[tuple[DBType, str], int] = {}
    kept: list[ConnectionInfo] = []
    dropped = 0
    for connection in connections:
        key = (connection.type, connection.connection_string)
        index = positions.get(key)
        if index is None:
            positions[key] = len(kept)
            kept.append(connection)
            continue
        dropped += 1
        if parse_timestamp(connection.updated_at) > parse_timestamp(kept[index].updated_at):
            kept[index] = connection
    return kept, dropped


def assign_unique_ids(connections: Sequence[ConnectionInfo]) -> tuple[list[ConnectionInfo], int]:
    """Re-key every entry whose id was already used by an earlier entry."""

    kept: list[ConnectionInfo] = []
    seen: set[str] = set()
    reassigned = 0
    for connection in connections:
        if connection.id in seen:
            new_id = ensure_unique_id(connection.id, [*connections, *kept])
            connection = connection.model_copy(update={"id": new_id})
            reassigned += 1
        seen.add(connection.id)
        kept.append(connection)
    return kept, reassigned


def append_history(
    history: Sequence[QueryHistoryItem],
    item: QueryHistoryItem,
    limit: int = 100,
) -> list[QueryHistoryItem]:
    return [item, *history][:limit]


class ConnectionRegistry:
    """Loads and saves ``connections.json`` and ``query-history.json``."""

    def __init__(self, data_dir: Path | str = DEFAULT_DATA_DIR) -> None:
        self._data_dir = Path(data_dir).expanduser()

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    @property
    def connections_path(self) -> Path:
        return self._data_dir / CONNECTIONS_FILE

    @property
    def history_path(self) -> Path:
        return self._data_dir / HISTORY_FILE

    async def load_connections(self) -> LoadConnectionsResult:
        await self._ensure_dir()
        raw = await self._read_json(self.connections_path)
        if raw is _EMPTY:
            return LoadConnectionsResult()
        if not isinstance(raw, list):
            LOG.warning("Ignoring %s: expected a JSON array.", self.connections_path)
            return LoadConnectionsResult(skipped=1)

        result = LoadConnectionsResult()
        now = utc_timestamp()
        valid: list[ConnectionInfo] = []
        for entry in raw:
            normalized = normalize_connection_entry(entry, now=now)
            if normalized is None:
                result.skipped += 1
                LOG.warning("Skipping invalid saved connection entry.")
                continue
            if normalized.normalized:
                result.normalized += 1
            valid.append(normalized.connection)
        result.connections, duplicates = dedupe_connections(valid)
        if duplicates:
            LOG.warning("Dropped %d duplicate saved connection(s).", duplicates)
        result.skipped += duplicates
        result.connections, reassigned = assign_unique_ids(result.connections)
        if reassigned:
            LOG.warning("Assigned new ids to %d saved connection(s) with clashing ids.", reassigned)
        result.normalized += reassigned
        return result

    async def save_connections(
        self,
        connections: Sequence[ConnectionInfo],
        ensure_dir: bool = True,
    ) -> None:
        ids = [connection.id for connection in connections]
        if len(set(ids)) != len(ids):
            clashing = sorted({conn_id for conn_id in ids if ids.count(conn_id) > 1})
            raise ValueError(f"Connection ids must be unique; duplicated: {', '.join(clashing)}")
        if ensure_dir:
            await self._ensure_dir()
        payload = [connection.model_dump(mode="json", by_alias=True) for connection in connections]
        await asyncio.to_thread(_write_atomic, self.connections_path, json.dumps(payload, indent=2))

    async def load_query_history(self) -> list[QueryHistoryItem]:
        await self._ensure_dir()
        raw = await self._read_json(self.history_path)
        if raw is _EMPTY or not isinstance(raw, list):
            return []
        items: list[QueryHistoryItem] = []
        for entry in raw:
            try:
                items.append(QueryHistoryItem.model_validate(entry))
            except ValidationError:
                LOG.debug("Dropping malformed query history entry.")
        return items

    async def save_query_history(
        self,
        items: Sequence[QueryHistoryItem],
        ensure_dir: bool = True,
    ) -> None:
        if ensure_dir:
            await self._ensure_dir()
        payload = [item.model_dump(mode="json", by_alias=True, exclude_none=True) for item in items]
        await asyncio.to_thread(_write_atomic, self.history_path, json.dumps(payload, indent=2))

    async def _ensure_dir(self) -> None:
        try:
            await asyncio.to_thread(self._data_dir.mkdir, parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(
                f"Failed to ensure data directory {self._data_dir}: {exc}",
                detail=str(exc),
            ) from exc

    async def _read_json(self, path: Path) -> Any:
        text = await asyncio.to_thread(_read_text, path)
        if text is None or not text.strip():
            return _EMPTY
        return json.loads(text)


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def _write_atomic(path: Path, content: str) -> None:
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


__all__ = [
    "CONNECTIONS_FILE",
    "ConnectionInfo",
    "ConnectionRegistry",
    "DEFAULT_DATA_DIR",
    "DRIVER_ALIASES",
    "HISTORY_FILE",
    "LegacyConnection",
    "LoadConnectionsResult",
    "NormalizedEntry",
    "QueryHistoryItem",
    "append_history",
    "assign_unique_ids",
    "dedupe_connections",
    "normalize_connection_entry",
    "parse_timestamp",
    "utc_timestamp",
]
