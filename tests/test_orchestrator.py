"""Tests for fetch/search/export orchestration."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from mirador.errors import ConnectionBackendError, DatabaseError, FailureKind
from mirador.models import (
    ColumnInfo,
    ConnectionConfig,
    DBType,
    QueryResult,
    SortConfig,
    SortDirection,
    TableRef,
)
from mirador.orchestrator import (
    ExportOptions,
    ExportPayload,
    ExportRows,
    FetchSkipped,
    OperationFailure,
    QueryOrchestrator,
    SearchResult,
    TablePage,
    filter_rows,
)
from mirador.session import SessionManager


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


CONFIG = ConnectionConfig(type=DBType.POSTGRESQL, connection_string="postgres://localhost/shop")
USERS = TableRef(name="users", schema="public")
USER_COLUMNS = (
    ColumnInfo(name="id", data_type="integer", nullable=False, is_primary_key=True),
    ColumnInfo(name="email", data_type="character varying"),
)


def _rows(count: int, start: int = 1) -> tuple[dict[str, Any], ...]:
    return tuple({"id": index, "email": f"user{index}@example.com"} for index in range(start, start + count))


class _StubBackend:
    def __init__(self) -> None:
        self.config = CONFIG
        self.connected = False
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.responses: list[QueryResult] = []
        self.gate: asyncio.Event | None = None
        self.error: Exception | None = None
        self.connect_error: Exception | None = None
        self.close_calls = 0

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def query(self, sql: str, params=()) -> QueryResult:  # type: ignore[no-untyped-def]
        self.calls.append((sql, tuple(params)))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.responses:
            return self.responses.pop(0)
        return QueryResult(rows=(), row_count=0, fields=())

    async def execute(self, sql: str, params=()) -> None:  # type: ignore[no-untyped-def]
        await self.query(sql, params)

    async def close(self) -> None:
        self.close_calls += 1
        self.connected = False


class _StubExporter:
    def __init__(self, error: Exception | None = None) -> None:
        self.payloads: list[ExportPayload] = []
        self.error = error

    async def export(self, payload: ExportPayload) -> str | None:
        if self.error is not None:
            raise self.error
        self.payloads.append(payload)
        return f"/tmp/export.{payload.options.format}"


def _orchestrator(backend: _StubBackend, **kwargs: Any) -> QueryOrchestrator:
    def _factory(config: ConnectionConfig) -> _StubBackend:
        backend.config = config
        return backend

    return QueryOrchestrator(SessionManager(backend_factory=_factory), **kwargs)


def _result(rows: tuple[dict[str, Any], ...]) -> QueryResult:
    return QueryResult(rows=rows, row_count=len(rows), fields=("id", "email"))


@pytest.mark.anyio
async def test_full_page_reports_more_rows() -> None:
    backend = _StubBackend()
    backend.responses = [_result(_rows(50)), _result(_rows(30, start=51))]
    orchestrator = _orchestrator(backend)

    first = await orchestrator.fetch_table_data(CONFIG, USERS, offset=0, limit=50)
    second = await orchestrator.fetch_table_data(CONFIG, USERS, offset=50, limit=50)

    assert isinstance(first, TablePage)
    assert first.has_more_rows is True
    assert len(first.rows) == 50
    assert first.fields == ("id", "email")
    assert isinstance(second, TablePage)
    assert second.has_more_rows is False
    assert second.offset == 50
    assert backend.calls[0] == ('SELECT * FROM "public"."users" LIMIT ? OFFSET ?', (50, 0))
    assert backend.calls[1][1] == (50, 50)


@pytest.mark.anyio
async def test_overlapping_fetch_for_same_table_is_dropped() -> None:
    backend = _StubBackend()
    backend.gate = asyncio.Event()
    backend.responses = [_result(_rows(5))]
    orchestrator = _orchestrator(backend)

    pending = asyncio.create_task(orchestrator.fetch_table_data(CONFIG, USERS))
    await asyncio.sleep(0)
    skipped = await orchestrator.fetch_table_data(CONFIG, USERS)

    assert skipped == FetchSkipped(USERS.refresh_key)
    assert orchestrator.refresh_guard.is_in_flight("public|users")

    backend.gate.set()
    page = await pending

    assert isinstance(page, TablePage)
    assert len(backend.calls) == 1
    entry = orchestrator.refresh_guard.entry("public|users")
    assert entry is not None
    assert entry.in_flight is False
    assert entry.last_completed is not None


@pytest.mark.anyio
async def test_fetch_finishing_after_clear_connection_leaves_no_state() -> None:
    backend = _StubBackend()
    backend.gate = asyncio.Event()
    backend.responses = [_result(_rows(1))]
    orchestrator = _orchestrator(backend)

    pending = asyncio.create_task(orchestrator.fetch_table_data(CONFIG, USERS))
    await asyncio.sleep(0)
    await orchestrator.clear_connection()
    backend.gate.set()
    outcome = await pending

    assert outcome == FetchSkipped(USERS.refresh_key)
    assert orchestrator.cached_page(USERS) is None
    assert USERS.refresh_key not in orchestrator.refresh_guard
    assert orchestrator.select_table(USERS) is None


@pytest.mark.anyio
async def test_superseded_fetch_does_not_release_newer_fetch() -> None:
    backend = _StubBackend()
    backend.gate = asyncio.Event()
    backend.responses = [_result(_rows(1)), _result(_rows(2))]
    orchestrator = _orchestrator(backend)

    stale = asyncio.create_task(orchestrator.fetch_table_data(CONFIG, USERS))
    await asyncio.sleep(0)
    orchestrator.invalidate(USERS)
    fresh = asyncio.create_task(orchestrator.fetch_table_data(CONFIG, USERS))
    await asyncio.sleep(0)

    assert len(backend.calls) == 2
    assert orchestrator.refresh_guard.is_in_flight(USERS.refresh_key)

    backend.gate.set()
    stale_outcome, fresh_outcome = await asyncio.gather(stale, fresh)

    assert stale_outcome == FetchSkipped(USERS.refresh_key)
    assert isinstance(fresh_outcome, TablePage)
    assert len(fresh_outcome.rows) == 2
    assert orchestrator.cached_page(USERS) is fresh_outcome
    assert orchestrator.refresh_guard.is_in_flight(USERS.refresh_key) is False


@pytest.mark.anyio
async def test_fetches_for_different_tables_run_independently() -> None:
    backend = _StubBackend()
    backend.gate = asyncio.Event()
    orchestrator = _orchestrator(backend)

    first = asyncio.create_task(orchestrator.fetch_table_data(CONFIG, USERS))
    second = asyncio.create_task(orchestrator.fetch_table_data(CONFIG, TableRef(name="orders", schema="public")))
    await asyncio.sleep(0)
    backend.gate.set()
    results = await asyncio.gather(first, second)

    assert all(isinstance(result, TablePage) for result in results)
    assert len(backend.calls) == 2


@pytest.mark.anyio
async def test_fetch_applies_sort_and_caches_preview() -> None:
    backend = _StubBackend()
    backend.responses = [_result(_rows(3))]
    orchestrator = _orchestrator(backend)
    sort = SortConfig(column="email", direction=SortDirection.DESC)

    page = await orchestrator.fetch_table_data(CONFIG, USERS, sort=sort)

    assert isinstance(page, TablePage)
    assert backend.calls[0][0] == 'SELECT * FROM "public"."users" ORDER BY "email" DESC LIMIT ? OFFSET ?'
    assert orchestrator.cached_page(USERS) is page


@pytest.mark.anyio
async def test_database_failure_is_typed_and_releases_guard() -> None:
    backend = _StubBackend()
    backend.error = DatabaseError("PostgreSQL query failed.", "42P01", 'relation "users" does not exist')
    orchestrator = _orchestrator(backend)

    failure = await orchestrator.fetch_table_data(CONFIG, USERS)

    assert isinstance(failure, OperationFailure)
    assert failure.kind is FailureKind.DATABASE
    assert failure.code == "42P01"
    assert failure.detail == 'relation "users" does not exist'
    assert orchestrator.refresh_guard.is_in_flight(USERS.refresh_key) is False


@pytest.mark.anyio
async def test_connection_failure_is_typed() -> None:
    backend = _StubBackend()
    backend.connect_error = ConnectionBackendError("Failed to connect to PostgreSQL database.", "08001")
    orchestrator = _orchestrator(backend)

    failure = await orchestrator.fetch_table_data(CONFIG, USERS)

    assert isinstance(failure, OperationFailure)
    assert failure.kind is FailureKind.CONNECTION
    assert backend.calls == []


@pytest.mark.anyio
async def test_invalid_window_fails_validation_without_querying() -> None:
    backend = _StubBackend()
    orchestrator = _orchestrator(backend)

    negative = await orchestrator.fetch_table_data(CONFIG, USERS, offset=-1)
    empty = await orchestrator.fetch_table_data(CONFIG, USERS, limit=0)
    nameless = await orchestrator.fetch_table_data(CONFIG, TableRef(name="  "))

    for failure in (negative, empty, nameless):
        assert isinstance(failure, OperationFailure)
        assert failure.kind is FailureKind.VALIDATION
    assert backend.calls == []
    assert "public|users" not in orchestrator.refresh_guard


@pytest.mark.anyio
async def test_blank_search_clears_without_querying() -> None:
    backend = _StubBackend()
    orchestrator = _orchestrator(backend)

    for term in ("", "   "):
        result = await orchestrator.search_table_rows(CONFIG, USERS, USER_COLUMNS, term=term)
        assert result == SearchResult.cleared_state()
        assert result.cleared is True

    assert backend.calls == []
    assert orchestrator._session.backend is None


@pytest.mark.anyio
async def test_search_counts_then_pages_textual_columns() -> None:
    backend = _StubBackend()
    backend.responses = [
        QueryResult(rows=({"total": 3},), row_count=1, fields=("total",)),
        _result(_rows(2)),
    ]
    orchestrator = _orchestrator(backend)

    result = await orchestrator.search_table_rows(CONFIG, USERS, USER_COLUMNS, term="  Ali ", limit=2)

    assert isinstance(result, SearchResult)
    assert result.total_count == 3
    assert result.has_more is True
    assert result.term == "Ali"
    count_sql, count_params = backend.calls[0]
    page_sql, page_params = backend.calls[1]
    assert count_sql.startswith('SELECT COUNT(*) AS total FROM "public"."users" WHERE ')
    assert 'LOWER(CAST("email" AS TEXT)) LIKE ?' in count_sql
    assert 'CAST("id"' not in count_sql
    assert count_params == ("%ali%",)
    assert page_sql.endswith("LIMIT ? OFFSET ?")
    assert page_params == ("%ali%", 2, 0)


@pytest.mark.anyio
async def test_search_last_page_has_no_more() -> None:
    backend = _StubBackend()
    backend.responses = [
        QueryResult(rows=({"total": 3},), row_count=1),
        _result(_rows(1, start=3)),
    ]
    orchestrator = _orchestrator(backend)

    result = await orchestrator.search_table_rows(CONFIG, USERS, USER_COLUMNS, term="user", offset=2, limit=2)

    assert isinstance(result, SearchResult)
    assert result.has_more is False
    assert result.offset == 2


@pytest.mark.anyio
async def test_search_escapes_like_wildcards() -> None:
    backend = _StubBackend()
    orchestrator = _orchestrator(backend)

    await orchestrator.search_table_rows(CONFIG, USERS, USER_COLUMNS, term="50%_off")

    assert backend.calls[0][1] == ("%50!%!_off%",)


@pytest.mark.anyio
async def test_export_reads_table_up_to_max_rows() -> None:
    backend = _StubBackend()
    backend.responses = [_result(_rows(10))]
    exporter = _StubExporter()
    orchestrator = _orchestrator(backend)

    result = await orchestrator.export_table_data(
        CONFIG, USERS, {"format": "json", "max_rows": 10}, exporter
    )

    assert not isinstance(result, OperationFailure)
    assert result.row_count == 10
    assert result.columns == ("id", "email")
    assert result.location == "/tmp/export.json"
    assert backend.calls == [('SELECT * FROM "public"."users" LIMIT ?', (10,))]
    assert exporter.payloads[0].options.format == "json"


@pytest.mark.anyio
async def test_export_of_explicit_rows_skips_backend() -> None:
    backend = _StubBackend()
    exporter = _StubExporter()
    orchestrator = _orchestrator(backend)
    rows = ExportRows(rows=({"a": 1}, {"a": 2}), columns=("a",))

    result = await orchestrator.export_table_data(None, rows, ExportOptions(), exporter)

    assert not isinstance(result, OperationFailure)
    assert result.row_count == 2
    assert backend.calls == []
    assert exporter.payloads[0].options.include_headers is True


@pytest.mark.anyio
async def test_export_rejects_unknown_format() -> None:
    orchestrator = _orchestrator(_StubBackend())

    failure = await orchestrator.export_table_data(CONFIG, USERS, {"format": "xml"}, _StubExporter())

    assert isinstance(failure, OperationFailure)
    assert failure.kind is FailureKind.VALIDATION


@pytest.mark.anyio
async def test_export_write_failure_is_a_storage_failure() -> None:
    orchestrator = _orchestrator(_StubBackend())

    failure = await orchestrator.export_table_data(
        CONFIG, USERS, ExportOptions(), _StubExporter(error=PermissionError("read-only volume"))
    )

    assert isinstance(failure, OperationFailure)
    assert failure.kind is FailureKind.STORAGE
    assert "read-only volume" in (failure.detail or "")


@pytest.mark.anyio
async def test_selecting_another_table_forgets_refresh_state() -> None:
    backend = _StubBackend()
    backend.responses = [_result(_rows(2))]
    orchestrator = _orchestrator(backend)
    orders = TableRef(name="orders", schema="public")

    assert orchestrator.select_table(USERS) is None
    page = await orchestrator.fetch_table_data(CONFIG, USERS)
    assert "public|users" in orchestrator.refresh_guard

    orchestrator.select_table(orders)

    assert "public|users" not in orchestrator.refresh_guard
    assert orchestrator.select_table(USERS) is page


@pytest.mark.anyio
async def test_clear_connection_drops_state_and_disconnects() -> None:
    backend = _StubBackend()
    orchestrator = _orchestrator(backend)
    orchestrator.select_table(USERS)
    await orchestrator.fetch_table_data(CONFIG, USERS)

    await orchestrator.clear_connection()

    assert backend.close_calls == 1
    assert orchestrator.selected_table is None
    assert orchestrator.cached_page(USERS) is None
    assert "public|users" not in orchestrator.refresh_guard


@pytest.mark.anyio
async def test_fetch_tables_and_columns_map_introspection_rows() -> None:
    backend = _StubBackend()
    backend.responses = [
        QueryResult(
            rows=(
                {"table_schema": "public", "table_name": "users", "table_type": "BASE TABLE"},
                {"table_schema": "public", "table_name": "active_users", "table_type": "VIEW"},
            ),
            row_count=2,
        ),
        QueryResult(
            rows=(
                {"column_name": "id", "data_type": "integer", "is_nullable": "NO", "is_primary_key": True},
                {"column_name": "email", "data_type": "text", "is_nullable": "YES", "is_primary_key": False},
            ),
            row_count=2,
        ),
    ]
    orchestrator = _orchestrator(backend)

    tables = await orchestrator.fetch_tables(CONFIG)
    columns = await orchestrator.fetch_columns(CONFIG, TableRef(name="users"))

    assert tables == [
        TableRef(name="users", schema="public"),
        TableRef(name="active_users", schema="public", kind="view"),
    ]
    assert columns == [
        ColumnInfo(name="id", data_type="integer", nullable=False, is_primary_key=True),
        ColumnInfo(name="email", data_type="text", nullable=True, is_primary_key=False),
    ]
    assert backend.calls[1][1] == ("public", "users")


@pytest.mark.anyio
async def test_run_query_records_history_item() -> None:
    backend = _StubBackend()
    backend.responses = [_result(_rows(4))]
    orchestrator = _orchestrator(backend)

    run = await orchestrator.run_query(CONFIG, "SELECT * FROM users", connection_id="conn-0001")

    assert isinstance(run.outcome, QueryResult)
    assert run.history_item.row_count == 4
    assert run.history_item.connection_id == "conn-0001"
    assert run.history_item.error is None
    assert run.history_item.duration_ms >= 0


@pytest.mark.anyio
async def test_run_query_failure_is_recorded() -> None:
    orchestrator = _orchestrator(_StubBackend())

    run = await orchestrator.run_query(CONFIG, "   ", connection_id="conn-0001")

    assert isinstance(run.outcome, OperationFailure)
    assert run.outcome.kind is FailureKind.VALIDATION
    assert run.history_item.row_count == 0
    assert run.history_item.error == "Provide SQL to execute."


def test_filter_rows_matches_any_value_case_insensitively() -> None:
    rows = [
        {"id": 1, "email": "Alice@example.com"},
        {"id": 2, "email": None},
        {"id": 12, "email": "bob@example.com"},
    ]

    assert filter_rows(rows, "ALICE") == [rows[0]]
    assert filter_rows(rows, "2") == [rows[1], rows[2]]
    assert filter_rows(rows, "  ") == rows
