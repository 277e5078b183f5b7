"""Read-only SQL Server access: schema discovery plus guarded query execution.

Generated SQL goes through two independent steps before it reaches the driver:
:func:`validate_readonly_query` rejects anything that is not a single read-only
statement, then :func:`enforce_row_limit` bounds what is left with a ``TOP``
clause.
"""

from __future__ import annotations

import asyncio
import base64
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from datachat.core.errors import QueryExecutionError, QueryValidationError
from datachat.log import get_logger

logger = get_logger(__name__)

DEFAULT_SCHEMA = "dbo"

PROHIBITED_PATTERNS = (
    r"\bINSERT\b",
    r"\bUPDATE\b",
    r"\bDELETE\b",
    r"\bDROP\b",
    r"\bTRUNCATE\b",
    r"\bALTER\b",
    r"\bCREATE\b",
    r"\bINTO\b",
    r"\bMERGE\b",
    r"\bEXEC\b",
    r"\bEXECUTE\b",
    r"\bGRANT\b",
    r"\bREVOKE\b",
    r"\bDENY\b",
    r"\bBACKUP\b",
    r"\bRESTORE\b",
    r"\bSHUTDOWN\b",
    r"\bKILL\b",
    r"\bxp_",
    r"\bsp_",
)
_PROHIBITED = [(p, re.compile(p, re.IGNORECASE)) for p in PROHIBITED_PATTERNS]

_SELECT = re.compile(r"\bSELECT\b", re.IGNORECASE)
_QUALIFIER = re.compile(r"\s+(?:DISTINCT|ALL)\b", re.IGNORECASE)
_TOP = re.compile(r"\s+TOP\s*\(?\s*(\d+)\s*\)?", re.IGNORECASE)
_TABLE_NAME = re.compile(r"^[\w.\[\]]+$")


def validate_readonly_query(sql: str | None) -> None:
    """Raise :class:`QueryValidationError` unless *sql* is one read-only statement."""
    if sql is None or not sql.strip():
        raise QueryValidationError("Query cannot be empty")

    normalized = sql.strip().upper()
    if not (normalized.startswith("SELECT") or normalized.startswith("WITH")):
        raise QueryValidationError("Only SELECT queries are allowed")

    for pattern, regex in _PROHIBITED:
        if regex.search(normalized):
            raise QueryValidationError(f"Query contains prohibited keyword matching pattern: {pattern}")

    # a single trailing terminator is fine, anything else is statement stacking
    if ";" in sql.rstrip()[:-1]:
        raise QueryValidationError("Multiple SQL statements are not allowed")


def _outer_selects(sql: str) -> list[re.Match[str]]:
    """SELECT keywords outside any parentheses: the main query and its set-operation branches."""
    return [m for m in _SELECT.finditer(sql) if sql.count("(", 0, m.start()) == sql.count(")", 0, m.start())]


def _bound_select(sql: str, select: re.Match[str], max_rows: int) -> str:
    pos = select.end()
    qualifier = _QUALIFIER.match(sql, pos)
    if qualifier:
        pos = qualifier.end()

    top = _TOP.match(sql, pos)
    if top:
        if int(top.group(1)) <= max_rows:
            return sql
        return f"{sql[: top.start()]} TOP {max_rows}{sql[top.end():]}"
    return f"{sql[:pos]} TOP {max_rows}{sql[pos:]}"


def enforce_row_limit(sql: str, max_rows: int) -> str:
    """Bound every outermost SELECT to *max_rows* rows.

    That is the main SELECT (after any CTEs) plus each branch joined to it by
    ``UNION``, ``INTERSECT`` or ``EXCEPT``. An existing ``TOP n`` above the
    ceiling is lowered to it, one at or below is kept. Without one,
    ``TOP max_rows`` is inserted after ``SELECT`` (and after ``DISTINCT``/``ALL``
    when present).
    """
    for select in reversed(_outer_selects(sql)):
        sql = _bound_select(sql, select, max_rows)
    return sql


def parse_table_name(name: str) -> tuple[str, str]:
    """Split ``[schema].[table]`` style names. Defaults the schema to ``dbo``.

    With more than two parts (``db.schema.table``) the last two are used.
    """
    parts = [p for p in name.replace("[", "").replace("]", "").strip().split(".") if p]
    if not parts:
        raise QueryValidationError("Table name cannot be empty")
    if len(parts) == 1:
        return DEFAULT_SCHEMA, parts[0]
    return parts[-2], parts[-1]


def sanitize_table_name(name: str) -> str:
    """Return *name* with every part bracketed, or raise if it has unsafe characters."""
    if not name or not _TABLE_NAME.match(name):
        raise QueryValidationError(f"Invalid table name: {name}")
    parts = [p for p in name.replace("[", "").replace("]", "").split(".") if p]
    if not parts:
        raise QueryValidationError(f"Invalid table name: {name}")
    return ".".join(f"[{p}]" for p in parts)


def to_serializable(value: Any) -> Any:
    """Convert driver values into JSON- and spreadsheet-friendly Python values."""
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return str(value)
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


@dataclass(frozen=True, slots=True)
class ColumnInfo:
    name: str
    data_type: str
    is_nullable: bool
    max_length: int | None = None
    is_primary_key: bool = False


@dataclass(frozen=True, slots=True)
class ForeignKeyInfo:
    column: str
    referenced_table: str
    referenced_column: str


@dataclass(frozen=True, slots=True)
class ReferencedByInfo:
    referencing_table: str
    referencing_column: str
    local_column: str


@dataclass
class TableSchema:
    schema_name: str
    table_name: str
    columns: list[ColumnInfo] = field(default_factory=list)
    foreign_keys: list[ForeignKeyInfo] = field(default_factory=list)
    referenced_by: list[ReferencedByInfo] = field(default_factory=list)
    similar_tables: list[str] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.schema_name}.{self.table_name}"

    @property
    def primary_keys(self) -> list[str]:
        return [c.name for c in self.columns if c.is_primary_key]


@dataclass
class QueryResult:
    query: str
    columns: list[str]
    rows: list[dict[str, Any]]

    @property
    def row_count(self) -> int:
        return len(self.rows)


_LIST_TABLES_SQL = """
    SELECT TABLE_SCHEMA + '.' + TABLE_NAME AS FullName
    FROM INFORMATION_SCHEMA.TABLES
    WHERE TABLE_TYPE = 'BASE TABLE'
    ORDER BY TABLE_SCHEMA, TABLE_NAME
"""

_COLUMNS_SQL = """
    SELECT
        c.COLUMN_NAME,
        c.DATA_TYPE,
        c.IS_NULLABLE,
        c.CHARACTER_MAXIMUM_LENGTH,
        CASE WHEN pk.COLUMN_NAME IS NOT NULL THEN 1 ELSE 0 END AS IsPrimaryKey
    FROM INFORMATION_SCHEMA.COLUMNS c
    LEFT JOIN (
        SELECT ku.TABLE_SCHEMA, ku.TABLE_NAME, ku.COLUMN_NAME
        FROM INFORMATION_SCHEMA.TABLE_CONSTRAINTS tc
        JOIN INFORMATION_SCHEMA.KEY_COLUMN_USAGE ku
            ON tc.CONSTRAINT_NAME = ku.CONSTRAINT_NAME
            AND tc.TABLE_SCHEMA = ku.TABLE_SCHEMA
        WHERE tc.CONSTRAINT_TYPE = 'PRIMARY KEY'
    ) pk ON c.TABLE_SCHEMA = pk.TABLE_SCHEMA
        AND c.TABLE_NAME = pk.TABLE_NAME
        AND c.COLUMN_NAME = pk.COLUMN_NAME
    WHERE c.TABLE_SCHEMA = :schema AND c.TABLE_NAME = :table
    ORDER BY c.ORDINAL_POSITION
"""

_SIMILAR_TABLES_SQL = """
    SELECT TABLE_SCHEMA + '.' + TABLE_NAME AS FullName
    FROM INFORMATION_SCHEMA.TABLES
    WHERE TABLE_TYPE = 'BASE TABLE'
      AND (TABLE_NAME LIKE :contains OR TABLE_NAME LIKE :singular OR TABLE_NAME LIKE :plural)
    ORDER BY TABLE_NAME
"""

_FOREIGN_KEYS_SQL = """
    SELECT
        COL_NAME(fc.parent_object_id, fc.parent_column_id) AS ColumnName,
        OBJECT_SCHEMA_NAME(fc.referenced_object_id) + '.' + OBJECT_NAME(fc.referenced_object_id) AS ReferencedTable,
        COL_NAME(fc.referenced_object_id, fc.referenced_column_id) AS ReferencedColumn
    FROM sys.foreign_key_columns fc
    JOIN sys.tables t ON fc.parent_object_id = t.object_id
    WHERE OBJECT_SCHEMA_NAME(t.object_id) = :schema AND t.name = :table
"""

_REFERENCED_BY_SQL = """
    SELECT
        OBJECT_SCHEMA_NAME(fc.parent_object_id) + '.' + OBJECT_NAME(fc.parent_object_id) AS ReferencingTable,
        COL_NAME(fc.parent_object_id, fc.parent_column_id) AS ReferencingColumn,
        COL_NAME(fc.referenced_object_id, fc.referenced_column_id) AS LocalColumn
    FROM sys.foreign_key_columns fc
    JOIN sys.tables t ON fc.referenced_object_id = t.object_id
    WHERE OBJECT_SCHEMA_NAME(t.object_id) = :schema AND t.name = :table
"""


class RelationalQueryService:
    """Schema discovery and bounded read-only queries over one SQLAlchemy engine."""

    def __init__(
        self,
        engine: AsyncEngine,
        max_rows_per_query: int = 1000,
        query_timeout: float = 30,
        max_sample_rows: int = 10,
    ):
        self._engine = engine
        self._max_rows = max_rows_per_query
        self._timeout = query_timeout
        self._max_sample_rows = max_sample_rows

    @property
    def max_rows_per_query(self) -> int:
        return self._max_rows

    async def _fetch(
        self, sql: str, params: dict[str, Any] | None = None, limit: int | None = None
    ) -> tuple[list[str], list[tuple]]:
        try:
            async with asyncio.timeout(self._timeout):
                async with self._engine.connect() as conn:
                    result = await conn.execute(text(sql), params or {})
                    columns = list(result.keys())
                    fetched = result.fetchall() if limit is None else result.fetchmany(limit)
                    rows = [tuple(row) for row in fetched]
        except TimeoutError as e:
            raise QueryExecutionError(f"Query execution error: timed out after {self._timeout}s") from e
        except SQLAlchemyError as e:
            raise QueryExecutionError(f"Query execution error: {e}") from e
        return columns, rows

    async def list_tables(self) -> list[str]:
        _, rows = await self._fetch(_LIST_TABLES_SQL)
        tables = [row[0] for row in rows]
        logger.info("tables_listed", count=len(tables))
        return tables

    async def describe_table(self, table_name: str) -> TableSchema:
        """Columns, keys, and relationships of a table in both directions.

        When the table has no columns (usually a misspelled name) the schema
        carries ``similar_tables`` suggestions instead.
        """
        schema_name, table = parse_table_name(table_name)
        params = {"schema": schema_name, "table": table}
        schema = TableSchema(schema_name=schema_name, table_name=table)

        _, rows = await self._fetch(_COLUMNS_SQL, params)
        for name, data_type, nullable, max_length, is_pk in rows:
            schema.columns.append(
                ColumnInfo(
                    name=name,
                    data_type=data_type,
                    is_nullable=str(nullable).upper() == "YES",
                    max_length=max_length,
                    is_primary_key=bool(is_pk),
                )
            )

        if not schema.columns:
            logger.warning("table_columns_not_found", table=schema.full_name)
            _, similar = await self._fetch(
                _SIMILAR_TABLES_SQL,
                {
                    "contains": f"%{table}%",
                    "singular": f"{table.rstrip('s')}%",
                    "plural": f"{table}s%",
                },
            )
            schema.similar_tables = [row[0] for row in similar]

        _, fk_rows = await self._fetch(_FOREIGN_KEYS_SQL, params)
        schema.foreign_keys = [ForeignKeyInfo(*row) for row in fk_rows]

        _, ref_rows = await self._fetch(_REFERENCED_BY_SQL, params)
        schema.referenced_by = [ReferencedByInfo(*row) for row in ref_rows]

        logger.info(
            "table_described",
            table=schema.full_name,
            columns=len(schema.columns),
            primary_keys=len(schema.primary_keys),
            foreign_keys=len(schema.foreign_keys),
            referenced_by=len(schema.referenced_by),
        )
        return schema

    async def execute_readonly_query(self, sql: str, max_rows: int = 100, cap: int | None = None) -> QueryResult:
        """Validate, bound, and run *sql*.

        The effective row ceiling is ``min(max_rows, cap)`` where *cap* defaults
        to the configured per-query maximum; ``max_rows <= 0`` means the ceiling.
        """
        try:
            validate_readonly_query(sql)
        except QueryValidationError as e:
            logger.warning("query_validation_failed", error=str(e), query=sql)
            raise

        ceiling = cap or self._max_rows
        limit = ceiling if max_rows <= 0 else min(max_rows, ceiling)
        bounded = enforce_row_limit(sql.strip(), limit)

        columns, rows = await self._fetch(bounded, limit=limit)
        result = QueryResult(
            query=bounded,
            columns=columns,
            rows=[{c: to_serializable(v) for c, v in zip(columns, row)} for row in rows],
        )
        logger.info("query_executed", rows=result.row_count, limit=limit)
        return result

    async def sample_rows(self, table_name: str, sample_size: int = 5) -> QueryResult:
        sanitized = sanitize_table_name(table_name)
        size = min(max(sample_size, 1), self._max_sample_rows)
        sql = f"SELECT TOP {size} * FROM {sanitized}"

        columns, rows = await self._fetch(sql, limit=size)
        return QueryResult(
            query=sql,
            columns=columns,
            rows=[{c: to_serializable(v) for c, v in zip(columns, row)} for row in rows],
        )
