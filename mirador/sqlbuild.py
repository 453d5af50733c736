"""Dialect-aware SQL builders for paging, searching and introspection."""

from __future__ import annotations

from typing import Any, Sequence

from sqlglot import exp

from .models import ColumnInfo, DBType, SortConfig, SortDirection, TableRef

_DIALECTS: dict[DBType, str] = {
    DBType.POSTGRESQL: "postgres",
    DBType.MYSQL: "mysql",
    DBType.SQLITE: "sqlite",
}

_TEXT_CASTS: dict[DBType, str] = {
    DBType.POSTGRESQL: "TEXT",
    DBType.MYSQL: "CHAR",
    DBType.SQLITE: "TEXT",
}

_TEXTUAL_TYPE_HINTS = ("char", "text", "string", "clob", "json", "uuid", "enum", "set")

LIKE_ESCAPE = "!"

_TABLES_QUERIES: dict[DBType, str] = {
    DBType.POSTGRESQL: """
        SELECT table_schema, table_name, table_type
        FROM information_schema.tables
        WHERE table_schema NOT IN ('pg_catalog', 'information_schema')
        ORDER BY table_schema, table_name
    """,
    DBType.MYSQL: """
        SELECT TABLE_SCHEMA AS table_schema, TABLE_NAME AS table_name, TABLE_TYPE AS table_type
        FROM information_schema.tables
        WHERE TABLE_SCHEMA = DATABASE()
        ORDER BY TABLE_NAME
    """,
    DBType.SQLITE: """
        SELECT 'main' AS table_schema, name AS table_name, type AS table_type
        FROM sqlite_master
        WHERE type IN ('table', 'view') AND name NOT LIKE 'sqlite_%'
        ORDER BY name
    """,
}

_COLUMNS_QUERIES: dict[DBType, str] = {
    DBType.POSTGRESQL: """
        SELECT c.column_name, c.data_type, c.is_nullable,
            EXISTS (
                SELECT 1
                FROM information_schema.table_constraints tc
                JOIN information_schema.key_column_usage k
                    ON tc.constraint_name = k.constraint_name
                    AND tc.table_schema = k.table_schema
                    AND tc.table_name = k.table_name
                WHERE tc.constraint_type = 'PRIMARY KEY'
                    AND tc.table_schema = c.table_schema
                    AND tc.table_name = c.table_name
                    AND k.column_name = c.column_name
            ) AS is_primary_key
        FROM information_schema.columns c
        WHERE c.table_schema = ? AND c.table_name = ?
        ORDER BY c.ordinal_position
    """,
    DBType.MYSQL: """
        SELECT COLUMN_NAME AS column_name, DATA_TYPE AS data_type,
            IS_NULLABLE AS is_nullable, COLUMN_KEY = 'PRI' AS is_primary_key
        FROM information_schema.columns
        WHERE TABLE_SCHEMA = COALESCE(?, DATABASE()) AND TABLE_NAME = ?
        ORDER BY ORDINAL_POSITION
    """,
    DBType.SQLITE: """
        SELECT name AS column_name, type AS data_type,
            CASE WHEN "notnull" = 0 THEN 'YES' ELSE 'NO' END AS is_nullable,
            pk > 0 AS is_primary_key
        FROM pragma_table_info(?)
        ORDER BY cid
    """,
}


def quote_table(table: TableRef, db_type: DBType) -> str:
    """Render ``schema.table`` with the engine's identifier quoting."""

    node = exp.table_(table.name, db=table.schema or None, quoted=True)
    return node.sql(dialect=_DIALECTS[db_type])


def quote_column(name: str, db_type: DBType) -> str:
    return exp.to_identifier(name, quoted=True).sql(dialect=_DIALECTS[db_type])


def order_clause(sort: SortConfig | None, db_type: DBType) -> str:
    if sort is None or not sort.active:
        return ""
    direction = "DESC" if sort.direction is SortDirection.DESC else "ASC"
    return f" ORDER BY {quote_column(sort.column or '', db_type)} {direction}"


def select_page(
    table: TableRef,
    db_type: DBType,
    *,
    offset: int,
    limit: int,
    sort: SortConfig | None = None,
    where: str = "",
    params: Sequence[Any] = (),
) -> tuple[str, tuple[Any, ...]]:
    """Bounded ``SELECT *`` for one page of a table."""

    sql = f"SELECT * FROM {quote_table(table, db_type)}"
    if where:
        sql += f" WHERE {where}"
    sql += order_clause(sort, db_type)
    sql += " LIMIT ? OFFSET ?"
    return sql, (*params, limit, offset)


def select_all(
    table: TableRef,
    db_type: DBType,
    *,
    sort: SortConfig | None = None,
    max_rows: int | None = None,
) -> tuple[str, tuple[Any, ...]]:
    """Unbounded (or capped) read used by exports."""

    sql = f"SELECT * FROM {quote_table(table, db_type)}{order_clause(sort, db_type)}"
    if max_rows is None:
        return sql, ()
    return f"{sql} LIMIT ?", (max_rows,)


def count_rows(
    table: TableRef,
    db_type: DBType,
    *,
    where: str = "",
    params: Sequence[Any] = (),
) -> tuple[str, tuple[Any, ...]]:
    sql = f"SELECT COUNT(*) AS total FROM {quote_table(table, db_type)}"
    if where:
        sql += f" WHERE {where}"
    return sql, tuple(params)


def search_predicate(
    columns: Sequence[ColumnInfo],
    term: str,
    db_type: DBType,
) -> tuple[str, tuple[Any, ...]]:
    """Case-insensitive substring match ORed across the textual columns.

    Tables without any textual column fall back to casting every column.
    """

    targets = [column for column in columns if is_textual(column)] or list(columns)
    if not targets:
        return "", ()
    pattern = f"%{escape_like(term.strip().lower())}%"
    cast = _TEXT_CASTS[db_type]
    clauses = [
        f"LOWER(CAST({quote_column(column.name, db_type)} AS {cast})) LIKE ? ESCAPE '{LIKE_ESCAPE}'"
        for column in targets
    ]
    return "(" + " OR ".join(clauses) + ")", (pattern,) * len(clauses)


def escape_like(term: str) -> str:
    for char in (LIKE_ESCAPE, "%", "_"):
        term = term.replace(char, LIKE_ESCAPE + char)
    return term


def is_textual(column: ColumnInfo) -> bool:
    data_type = column.data_type.lower()
    return any(hint in data_type for hint in _TEXTUAL_TYPE_HINTS)


def tables_query(db_type: DBType) -> str:
    return _TABLES_QUERIES[db_type]


def columns_query(table: TableRef, db_type: DBType) -> tuple[str, tuple[Any, ...]]:
    if db_type is DBType.SQLITE:
        return _COLUMNS_QUERIES[db_type], (table.name,)
    schema = table.schema
    if schema is None and db_type is DBType.POSTGRESQL:
        schema = "public"
    return _COLUMNS_QUERIES[db_type], (schema, table.name)


__all__ = [
    "columns_query",
    "count_rows",
    "escape_like",
    "is_textual",
    "order_clause",
    "quote_column",
    "quote_table",
    "search_predicate",
    "select_all",
    "select_page",
    "tables_query",
]
