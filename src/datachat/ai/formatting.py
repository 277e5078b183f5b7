"""Render tool results as bounded plain text for the model."""

from __future__ import annotations

import json
from typing import Any

from datachat.ai.tools.base import ExportReference, TabularData, ToolResult
from datachat.core.types import ResultKind

MOVIE_PREVIEW = 10
DOCUMENT_PREVIEW = 10
SUGGESTION_LIMIT = 10


def format_tool_result(result: ToolResult | None, preview_rows: int = 20) -> str:
    """Deterministic text for one tool result.

    Tabular and grouped previews stop at *preview_rows* and say how many rows
    were left out.
    """
    if result is None:
        return "No result"
    if not result.success:
        return f"Error: {result.error}"

    match result.kind:
        case ResultKind.MOVIES:
            lines = _format_movies(result)
        case ResultKind.DOCUMENTS:
            lines = _format_documents(result)
        case ResultKind.GROUP_COUNTS:
            lines = _format_group_counts(result, preview_rows)
        case ResultKind.COUNT:
            lines = [f"Query: {result.query}", f"Total count: {result.payload}"]
        case ResultKind.EXPORT:
            lines = _format_export(result)
        case ResultKind.TABLE_LIST:
            lines = [f"Found {result.total_count} tables:"]
            lines += [f"  - {table}" for table in result.payload]
        case ResultKind.TABLE_SCHEMA:
            lines = _format_schema(result)
        case ResultKind.QUERY_RESULTS | ResultKind.SAMPLE_DATA:
            lines = _format_table(result, preview_rows)
        case _:
            lines = [f"Result type: {result.kind}", f"Total count: {result.total_count}"]

    return "\n".join(lines)


def _format_movies(result: ToolResult) -> list[str]:
    lines = [f"Query: {result.query}", f"Found {result.total_count} results:"]
    for movie in result.payload[:MOVIE_PREVIEW]:
        genres = ", ".join(movie.genres or [])
        rating = movie.imdb.rating_as_float if movie.imdb else None
        year = movie.year_as_int if movie.year_as_int is not None else "N/A"
        lines.append(
            f"- {movie.title} ({year}) - Genres: {genres} - IMDB: {rating:.1f}"
            if rating is not None
            else f"- {movie.title} ({year}) - Genres: {genres} - IMDB: N/A"
        )
    if result.total_count > MOVIE_PREVIEW:
        lines.append(f"... and {result.total_count - MOVIE_PREVIEW} more")
    return lines


def _format_documents(result: ToolResult) -> list[str]:
    lines = [f"Query: {result.query}", f"Found {result.total_count} documents:"]
    for doc in result.payload[:DOCUMENT_PREVIEW]:
        if "title" in doc:
            genres = doc.get("genres")
            genres = ", ".join(str(g) for g in genres) if isinstance(genres, list) else genres or ""
            lines.append(f"- {doc.get('title')} ({doc.get('year', 'N/A')}) - Genres: {genres}")
        else:
            lines.append(f"- {json.dumps(doc, ensure_ascii=False, default=str)}")
    if result.total_count > DOCUMENT_PREVIEW:
        lines.append(f"... and {result.total_count - DOCUMENT_PREVIEW} more")
    return lines


def _format_group_counts(result: ToolResult, preview_rows: int) -> list[str]:
    lines = [f"Query: {result.query}", f"Found {result.total_count} groups:"]
    for group in result.payload[:preview_rows]:
        if isinstance(group.value, int):
            lines.append(f"- Year {group.value}: {group.count} movies")
        else:
            lines.append(f"- {group.value}: {group.count}")
    if result.total_count > preview_rows:
        lines.append(f"... and {result.total_count - preview_rows} more groups")
    return lines


def _format_export(result: ToolResult) -> list[str]:
    reference: ExportReference = result.payload
    return [
        "Export created successfully!",
        f"File ID: {reference.file_id}",
        f"File Name: {reference.file_name}",
        f"Records exported: {result.total_count}",
        f"Query: {result.query}",
        "",
        "The user can download this file from the chat interface.",
    ]


def _format_schema(result: ToolResult) -> list[str]:
    schema = result.payload
    lines = [f"Table: {schema.full_name}"]

    if not schema.columns:
        lines += [
            "WARNING: No columns found for this table!",
            "This could mean:",
            "  - The table name is misspelled",
            "  - The table is in a different schema",
            "  - Insufficient permissions to view the table",
        ]
        if schema.similar_tables:
            lines += ["", "Did you mean one of these tables?"]
            lines += [f"  - {name}" for name in schema.similar_tables[:SUGGESTION_LIMIT]]
            lines += ["", "Please try describe_table with the correct table name."]
        return lines

    lines.append(f"Columns ({len(schema.columns)}):")
    for col in schema.columns:
        length = f"({col.max_length})" if col.max_length is not None else ""
        nullable = " (nullable)" if col.is_nullable else " (not null)"
        pk = " [PK]" if col.is_primary_key else ""
        lines.append(f"  - {col.name}: {col.data_type}{length}{nullable}{pk}")

    if schema.foreign_keys:
        lines.append("Foreign Keys (this table references):")
        lines += [f"  - {fk.column} -> {fk.referenced_table}.{fk.referenced_column}" for fk in schema.foreign_keys]

    if schema.referenced_by:
        lines.append("Referenced By (other tables that reference this table):")
        lines += [
            f"  - {ref.referencing_table}.{ref.referencing_column} -> {schema.table_name}.{ref.local_column}"
            for ref in schema.referenced_by
        ]
    return lines


def _cell(value: Any) -> str:
    return "NULL" if value is None else str(value)


def _format_table(result: ToolResult, preview_rows: int) -> list[str]:
    data: TabularData = result.payload
    lines = [f"Query: {result.query}", f"Returned {result.total_count} rows:"]
    if not data.columns:
        return lines

    lines.append(" | ".join(data.columns))
    lines.append("-" * sum(len(c) + 3 for c in data.columns))
    for row in data.rows[:preview_rows]:
        lines.append(" | ".join(_cell(row.get(c)) for c in data.columns))
    if len(data.rows) > preview_rows:
        lines.append(f"... and {len(data.rows) - preview_rows} more rows")
    return lines
