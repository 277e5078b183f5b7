"""Tools over the SQL Server database: discovery, read-only queries, export."""

from __future__ import annotations

from pydantic import Field

from datachat.ai.tools.base import ExportReference, TabularData, Tool, ToolArgs, ToolResult
from datachat.core.types import ResultKind
from datachat.log import get_logger
from datachat.services.export import ExportSink
from datachat.services.relational import RelationalQueryService

logger = get_logger(__name__)


class NoArgs(ToolArgs):
    pass


class TableNameArgs(ToolArgs):
    table_name: str = Field(
        description=(
            "The name of the table to describe, in format 'schema.table' "
            "(e.g., 'dbo.Customers') or just 'table' (assumes dbo schema)"
        )
    )


class ReadDataArgs(ToolArgs):
    query: str = Field(
        description=(
            "The SQL SELECT query to execute. Must be a valid SELECT statement. Do not include "
            "INSERT, UPDATE, DELETE, or other modifying statements."
        )
    )
    max_rows: int = Field(100, description="Maximum number of rows to return (default: 100, max: 1000)")


class SampleArgs(ToolArgs):
    table_name: str = Field(
        description="The name of the table to sample, in format 'schema.table' (e.g., 'dbo.Orders') or just 'table'"
    )
    sample_size: int = Field(5, description="Number of sample rows to return (default: 5, max: 10)")


class SqlExportArgs(ToolArgs):
    query: str = Field(description="The SQL SELECT query to execute and export. Must be a valid SELECT statement.")
    max_rows: int = Field(
        1000,
        description=(
            "Maximum number of rows to export (default: 1000, max: 10000). "
            "Use 0 for all rows up to max limit."
        ),
    )
    sheet_name: str = Field("Query Results", description="Optional name for the Excel worksheet (default: 'Query Results')")


class _SqlTool(Tool):
    def __init__(self, service: RelationalQueryService):
        self._service = service


class ListTablesTool(_SqlTool):
    args_model = NoArgs

    @property
    def name(self) -> str:
        return "list_tables"

    @property
    def description(self) -> str:
        return (
            "List all tables available in the SQL Server database. Returns table names in "
            "schema.table format. Use this first to discover what data is available."
        )

    async def run(self, args: NoArgs, caller: str | None) -> ToolResult:
        tables = await self._service.list_tables()
        return ToolResult.table_list(tables, "INFORMATION_SCHEMA.TABLES")


class DescribeTableTool(_SqlTool):
    args_model = TableNameArgs

    @property
    def name(self) -> str:
        return "describe_table"

    @property
    def description(self) -> str:
        return (
            "Get the schema and structure of a specific table. Returns column names, data types, "
            "nullability, primary keys, and relationships in both directions. Use this to "
            "understand what columns are available before writing queries."
        )

    async def run(self, args: TableNameArgs, caller: str | None) -> ToolResult:
        schema = await self._service.describe_table(args.table_name)
        return ToolResult.table_schema(schema, f"describe {schema.full_name}")


class ReadDataTool(_SqlTool):
    args_model = ReadDataArgs

    @property
    def name(self) -> str:
        return "read_data"

    @property
    def description(self) -> str:
        return (
            "Execute a read-only SQL SELECT query against the database. Only SELECT queries are "
            "allowed. The query will automatically be limited to prevent returning too many rows. "
            "Use this to retrieve data after understanding the schema."
        )

    async def run(self, args: ReadDataArgs, caller: str | None) -> ToolResult:
        result = await self._service.execute_readonly_query(args.query, max_rows=args.max_rows)
        return ToolResult.tabular(
            ResultKind.QUERY_RESULTS, TabularData(result.columns, result.rows), result.query
        )


class SampleDataTool(_SqlTool):
    args_model = SampleArgs

    @property
    def name(self) -> str:
        return "get_sample_data"

    @property
    def description(self) -> str:
        return (
            "Get a few sample rows from a table to understand what kind of data it contains. "
            "Useful for understanding data formats, values, and relationships before writing "
            "complex queries."
        )

    async def run(self, args: SampleArgs, caller: str | None) -> ToolResult:
        result = await self._service.sample_rows(args.table_name, args.sample_size)
        return ToolResult.tabular(
            ResultKind.SAMPLE_DATA, TabularData(result.columns, result.rows), result.query
        )


class SqlExportTool(_SqlTool):
    args_model = SqlExportArgs

    def __init__(self, service: RelationalQueryService, sink: ExportSink, export_cap: int = 10000):
        super().__init__(service)
        self._sink = sink
        self._cap = export_cap

    @property
    def name(self) -> str:
        return "export_to_excel"

    @property
    def description(self) -> str:
        return (
            "Export SQL query results to an Excel file. Use this when the user wants to download, "
            "export, or save query results to Excel/spreadsheet. Executes the query and exports "
            "the results in one step."
        )

    async def run(self, args: SqlExportArgs, caller: str | None) -> ToolResult:
        result = await self._service.execute_readonly_query(args.query, max_rows=args.max_rows, cap=self._cap)
        if not result.rows:
            return ToolResult.fail("Query returned no results to export")

        artifact = await self._sink.export_table(
            result.columns,
            result.rows,
            description=result.query,
            sheet_name=args.sheet_name,
        )
        logger.info("sql_export_completed", caller=caller, records=result.row_count)
        return ToolResult.export(
            ExportReference(artifact.file_id, artifact.file_name), result.row_count, result.query
        )


def relational_tool_catalog(
    service: RelationalQueryService, sink: ExportSink, export_cap: int = 10000
) -> list[Tool]:
    """Every SQL tool, in the order they are offered to the model."""
    return [
        ListTablesTool(service),
        DescribeTableTool(service),
        SampleDataTool(service),
        ReadDataTool(service),
        SqlExportTool(service, sink, export_cap),
    ]
