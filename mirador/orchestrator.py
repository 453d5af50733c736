"""Fetch/search/export orchestration driven by UI events.

The orchestrator turns view-level intents (show a page, search, export, run a
statement) into backend calls. At most one table fetch per refresh key is in
flight; a second trigger while one is pending is dropped rather than queued.
Failures never escape as exceptions: they come back as ``OperationFailure``
values the UI layer can render.
"""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Protocol, Sequence

from pydantic import BaseModel, Field, ValidationError

from . import sqlbuild
from .errors import FailureKind, MiradorError, RequestValidationError
from .identifiers import generate_connection_id
from .models import ColumnInfo, ConnectionConfig, QueryResult, SortConfig, TableRef
from .registry import QueryHistoryItem, utc_timestamp
from .session import SessionManager

LOG = logging.getLogger(__name__)

ExportFormat = Literal["csv", "json", "toon"]


@dataclass(frozen=True, slots=True)
class OperationFailure:
    """Typed failure returned in place of a result."""

    kind: FailureKind
    message: str
    code: str | None = None
    detail: str | None = None


@dataclass(frozen=True, slots=True)
class FetchSkipped:
    """Returned when a fetch for the same refresh key is still running, or when
    the key was cleared before this fetch finished and its rows were discarded."""

    key: str


@dataclass(frozen=True, slots=True)
class TablePage:
    """One page of table rows."""

    table: TableRef
    rows: tuple[dict[str, Any], ...]
    fields: tuple[str, ...]
    offset: int
    limit: int
    has_more_rows: bool
    sort: SortConfig = field(default_factory=SortConfig)


@dataclass(frozen=True, slots=True)
class SearchResult:
    """Search hits for one page; ``cleared`` marks an empty-term reset."""

    rows: tuple[dict[str, Any], ...] = ()
    total_count: int = 0
    has_more: bool = False
    offset: int = 0
    term: str = ""
    cleared: bool = False

    @classmethod
    def cleared_state(cls) -> SearchResult:
        return cls(cleared=True)


class ExportOptions(BaseModel):
    """Options forwarded to the export collaborator."""

    format: ExportFormat = "csv"
    include_headers: bool = True
    filename: str | None = None
    output_dir: str | None = None
    max_rows: int | None = Field(default=None, gt=0)


@dataclass(frozen=True, slots=True)
class ExportRows:
    """An explicit, already-materialized row set to export."""

    rows: tuple[Mapping[str, Any], ...]
    columns: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class ExportPayload:
    rows: tuple[Mapping[str, Any], ...]
    columns: tuple[str, ...]
    options: ExportOptions


@dataclass(frozen=True, slots=True)
class ExportResult:
    row_count: int
    columns: tuple[str, ...]
    location: str | None = None


class Exporter(Protocol):
    """Collaborator that serializes rows and writes them somewhere."""

    async def export(self, payload: ExportPayload) -> str | None:
        """Persist the payload; returns a location (e.g. a path) if any."""


@dataclass(frozen=True, slots=True)
class QueryRun:
    """Outcome of free-form SQL plus the history entry describing it."""

    outcome: QueryResult | OperationFailure
    history_item: QueryHistoryItem


@dataclass(slots=True)
class RefreshEntry:
    in_flight: bool = False
    last_completed: datetime | None = None
    token: int = 0


class RefreshGuard:
    """Lookup table of in-flight flags and completion stamps per refresh key.

    Every fetch that gets past ``try_begin`` holds a token. Discarding or
    clearing entries invalidates outstanding tokens, so a fetch that outlives
    its entry cannot bring it back.
    """

    def __init__(self) -> None:
        self._entries: dict[str, RefreshEntry] = {}
        self._tokens = itertools.count(1)

    def try_begin(self, key: str) -> int | None:
        """Mark ``key`` in flight; returns the run's token, or None if already running."""

        entry = self._entries.setdefault(key, RefreshEntry())
        if entry.in_flight:
            return None
        entry.in_flight = True
        entry.token = next(self._tokens)
        return entry.token

    def finish(self, key: str, token: int) -> bool:
        """Close the run holding ``token``; False when its entry was dropped meanwhile."""

        entry = self._entries.get(key)
        if entry is None or entry.token != token:
            return False
        entry.in_flight = False
        entry.last_completed = datetime.now(tz=timezone.utc)
        return True

    def entry(self, key: str) -> RefreshEntry | None:
        return self._entries.get(key)

    def is_in_flight(self, key: str) -> bool:
        entry = self._entries.get(key)
        return bool(entry and entry.in_flight)

    def discard(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._entries


class QueryOrchestrator:
    """Coordinates pagination, sorting, search and export against backends."""

    def __init__(self, session: SessionManager, *, default_limit: int = 50) -> None:
        self._session = session
        self._default_limit = default_limit
        self._guard = RefreshGuard()
        self._previews: dict[str, TablePage] = {}
        self._selected: TableRef | None = None

    @property
    def refresh_guard(self) -> RefreshGuard:
        return self._guard

    @property
    def selected_table(self) -> TableRef | None:
        return self._selected

    def select_table(self, table: TableRef | None) -> TablePage | None:
        """Switch the selected table; returns its cached preview, if any."""

        previous = self._selected
        if previous is not None and (table is None or previous.refresh_key != table.refresh_key):
            self._guard.discard(previous.refresh_key)
        self._selected = table
        if table is None:
            return None
        return self._previews.get(table.refresh_key)

    def cached_page(self, table: TableRef) -> TablePage | None:
        return self._previews.get(table.refresh_key)

    def invalidate(self, table: TableRef) -> None:
        """Forget the cached preview and refresh state for ``table``."""

        self._previews.pop(table.refresh_key, None)
        self._guard.discard(table.refresh_key)

    async def clear_connection(self) -> None:
        """Drop all per-table state and close the active backend."""

        self._guard.clear()
        self._previews.clear()
        self._selected = None
        await self._session.disconnect()

    async def fetch_tables(self, config: ConnectionConfig) -> list[TableRef] | OperationFailure:
        try:
            backend = await self._session.backend_for(config)
            result = await backend.query(sqlbuild.tables_query(config.type))
        except (MiradorError, ValidationError, OSError) as exc:
            return _classify(exc)
        return [
            TableRef(
                name=str(row["table_name"]),
                schema=_optional_str(row.get("table_schema")),
                kind="view" if "view" in str(row.get("table_type", "")).lower() else "table",
            )
            for row in result.rows
        ]

    async def fetch_columns(
        self,
        config: ConnectionConfig,
        table: TableRef,
    ) -> list[ColumnInfo] | OperationFailure:
        try:
            _validate_table(table)
            backend = await self._session.backend_for(config)
            sql, params = sqlbuild.columns_query(table, config.type)
            result = await backend.query(sql, params)
        except (MiradorError, ValidationError, OSError) as exc:
            return _classify(exc)
        return [
            ColumnInfo(
                name=str(row["column_name"]),
                data_type=str(row.get("data_type") or ""),
                nullable=str(row.get("is_nullable", "YES")).upper() == "YES",
                is_primary_key=bool(row.get("is_primary_key")),
            )
            for row in result.rows
        ]

    async def fetch_table_data(
        self,
        config: ConnectionConfig,
        table: TableRef,
        *,
        offset: int = 0,
        limit: int | None = None,
        sort: SortConfig | None = None,
    ) -> TablePage | FetchSkipped | OperationFailure:
        """Fetch one page; dropped if the same table is already being fetched."""

        limit = self._default_limit if limit is None else limit
        sort = sort or SortConfig()
        try:
            _validate_table(table)
            _validate_window(offset, limit)
        except RequestValidationError as exc:
            return _classify(exc)

        key = table.refresh_key
        token = self._guard.try_begin(key)
        if token is None:
            LOG.debug("Fetch for %s already in flight; dropping request", key)
            return FetchSkipped(key)
        try:
            backend = await self._session.backend_for(config)
            sql, params = sqlbuild.select_page(table, config.type, offset=offset, limit=limit, sort=sort)
            result = await backend.query(sql, params)
        except (MiradorError, ValidationError, OSError) as exc:
            return _classify(exc)
        finally:
            current = self._guard.finish(key, token)

        if not current:
            LOG.debug("Discarding page for %s; its refresh state was cleared mid-fetch", key)
            return FetchSkipped(key)
        page = TablePage(
            table=table,
            rows=result.rows,
            fields=result.fields or _fields_from_rows(result.rows),
            offset=offset,
            limit=limit,
            has_more_rows=len(result.rows) == limit,
            sort=sort,
        )
        self._previews[key] = page
        return page

    async def search_table_rows(
        self,
        config: ConnectionConfig,
        table: TableRef,
        columns: Sequence[ColumnInfo],
        *,
        term: str,
        offset: int = 0,
        limit: int | None = None,
        sort: SortConfig | None = None,
    ) -> SearchResult | OperationFailure:
        """Server-side substring search; blank terms clear the search instead."""

        if not term or not term.strip():
            return SearchResult.cleared_state()
        limit = self._default_limit if limit is None else limit
        try:
            _validate_table(table)
            _validate_window(offset, limit)
            where, where_params = sqlbuild.search_predicate(columns, term, config.type)
            if not where:
                raise RequestValidationError(f"No searchable columns for {table.label}.")
            backend = await self._session.backend_for(config)
            count_sql, count_params = sqlbuild.count_rows(
                table, config.type, where=where, params=where_params
            )
            counted = await backend.query(count_sql, count_params)
            page_sql, page_params = sqlbuild.select_page(
                table,
                config.type,
                offset=offset,
                limit=limit,
                sort=sort,
                where=where,
                params=where_params,
            )
            result = await backend.query(page_sql, page_params)
        except (MiradorError, ValidationError, OSError) as exc:
            return _classify(exc)

        total = _total_from(counted)
        return SearchResult(
            rows=result.rows,
            total_count=total,
            has_more=offset + len(result.rows) < total,
            offset=offset,
            term=term.strip(),
        )

    async def export_table_data(
        self,
        config: ConnectionConfig | None,
        target: TableRef | ExportRows,
        options: ExportOptions | Mapping[str, Any],
        exporter: Exporter,
        *,
        sort: SortConfig | None = None,
    ) -> ExportResult | OperationFailure:
        """Read the target in full (or up to ``max_rows``) and hand it to ``exporter``."""

        try:
            if not isinstance(options, ExportOptions):
                options = ExportOptions.model_validate(options)
            if isinstance(target, ExportRows):
                rows, columns = target.rows, target.columns
            else:
                _validate_table(target)
                if config is None:
                    raise RequestValidationError("No active connection to export from.")
                backend = await self._session.backend_for(config)
                sql, params = sqlbuild.select_all(
                    target, config.type, sort=sort, max_rows=options.max_rows
                )
                result = await backend.query(sql, params)
                rows = result.rows
                columns = result.fields or _fields_from_rows(result.rows)
            location = await exporter.export(
                ExportPayload(rows=tuple(rows), columns=tuple(columns), options=options)
            )
        except (MiradorError, ValidationError, OSError) as exc:
            return _classify(exc)
        return ExportResult(row_count=len(rows), columns=tuple(columns), location=location)

    async def run_query(
        self,
        config: ConnectionConfig,
        sql: str,
        *,
        connection_id: str,
        params: Sequence[Any] = (),
    ) -> QueryRun:
        """Execute free-form SQL and describe the run as a history entry."""

        started = time.perf_counter()
        executed_at = utc_timestamp()
        outcome: QueryResult | OperationFailure
        try:
            if not sql.strip():
                raise RequestValidationError("Provide SQL to execute.")
            backend = await self._session.backend_for(config)
            outcome = await backend.query(sql, params)
        except (MiradorError, ValidationError, OSError) as exc:
            outcome = _classify(exc)
        duration_ms = int((time.perf_counter() - started) * 1000)
        failed = isinstance(outcome, OperationFailure)
        item = QueryHistoryItem(
            id=generate_connection_id(),
            connection_id=connection_id,
            query=sql,
            executed_at=executed_at,
            duration_ms=duration_ms,
            row_count=0 if failed else outcome.row_count,
            error=outcome.message if failed else None,
        )
        return QueryRun(outcome=outcome, history_item=item)


def filter_rows(rows: Sequence[Mapping[str, Any]], term: str) -> list[Mapping[str, Any]]:
    """Client-side quick filter over rows already on screen; order is preserved."""

    needle = term.strip().lower()
    if not needle:
        return list(rows)
    return [
        row
        for row in rows
        if any(value is not None and needle in str(value).lower() for value in row.values())
    ]


def _classify(exc: Exception) -> OperationFailure:
    if isinstance(exc, MiradorError):
        return OperationFailure(kind=exc.kind, message=exc.message, code=exc.code, detail=exc.detail)
    if isinstance(exc, ValidationError):
        return OperationFailure(
            kind=FailureKind.VALIDATION,
            message="Invalid request options.",
            detail=str(exc),
        )
    return OperationFailure(kind=FailureKind.STORAGE, message="Storage operation failed.", detail=str(exc))


def _validate_table(table: TableRef) -> None:
    if not table.name or not table.name.strip():
        raise RequestValidationError("A table name is required.")


def _validate_window(offset: int, limit: int) -> None:
    if offset < 0:
        raise RequestValidationError(f"Offset must not be negative (got {offset}).")
    if limit <= 0:
        raise RequestValidationError(f"Limit must be positive (got {limit}).")


def _fields_from_rows(rows: Sequence[Mapping[str, Any]]) -> tuple[str, ...]:
    if not rows:
        return ()
    return tuple(str(key) for key in rows[0].keys())


def _total_from(result: QueryResult) -> int:
    if not result.rows:
        return 0
    row = result.rows[0]
    value = row.get("total", next(iter(row.values()), 0))
    return int(value or 0)


def _optional_str(value: object) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


__all__ = [
    "ExportOptions",
    "ExportPayload",
    "ExportResult",
    "ExportRows",
    "Exporter",
    "FetchSkipped",
    "OperationFailure",
    "QueryOrchestrator",
    "QueryRun",
    "RefreshEntry",
    "RefreshGuard",
    "SearchResult",
    "TablePage",
    "filter_rows",
]
