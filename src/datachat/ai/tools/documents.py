"""Tools over the MongoDB movie collection: generic query, fixed-shape searches, export."""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Any, Literal, Optional

from pydantic import Field, field_validator

from datachat.ai.tools.base import ExportReference, Tool, ToolArgs, ToolResult
from datachat.log import get_logger
from datachat.services.documents import (
    DocumentQueryService,
    describe,
    looks_like_group_counts,
    parse_movies,
    to_group_counts,
)
from datachat.services.export import ExportSink

logger = get_logger(__name__)

SEARCH_CAP = 50
YEAR_COUNT_CAP = 100


# ── generic query ─────────────────────────────────────────────────


class QueryOptions(ToolArgs):
    limit: int = Field(10, description="Maximum number of results to return (default: 10, max: 1000)")
    skip: int = Field(0, description="Number of documents to skip (default: 0)")
    sort: Optional[dict[str, Any]] = Field(
        None, description='Sort specification (e.g., {"year": -1} for descending by year)'
    )
    projection: Optional[dict[str, Any]] = Field(
        None, description='Fields to include/exclude (e.g., {"title": 1, "year": 1})'
    )


class MongoQueryArgs(ToolArgs):
    collection: Optional[str] = Field(None, description="MongoDB collection name (e.g., 'movies')")
    operation: Literal["find", "aggregate", "count"] = Field(
        description=(
            "MongoDB operation type: 'find' for simple queries, 'aggregate' for "
            "complex/grouping operations, 'count' for counting documents"
        )
    )
    query: Any = Field(
        default_factory=dict,
        description=(
            "MongoDB filter (for find/count) or pipeline array (for aggregate). "
            'For find: use a filter object like {"genres": "Action", "year": 2020}. '
            'For aggregate: use a pipeline array like [{"$match": {...}}, {"$group": {...}}]'
        ),
    )
    options: QueryOptions = Field(default_factory=QueryOptions, description="Optional query options")

    @field_validator("query", mode="before")
    @classmethod
    def _decode_json_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value) if value.strip() else {}
        return value if value is not None else {}

    @field_validator("options", mode="before")
    @classmethod
    def _default_options(cls, value: Any) -> Any:
        return value if value is not None else {}


class MongoQueryTool(Tool):
    """Runs model-written find/aggregate/count operations with type-safe year handling."""

    args_model = MongoQueryArgs

    def __init__(self, service: DocumentQueryService):
        self._service = service

    @property
    def name(self) -> str:
        return "execute_mongodb_query"

    @property
    def description(self) -> str:
        return (
            "Execute a MongoDB query against the movie database. Supports 'find' for "
            "filtering documents, 'aggregate' for grouping, counting per category, or other "
            "pipeline transformations, and 'count' for counting matching documents. Use this "
            "for any question about movies that needs data. The year field is normalized "
            "automatically, so filter and group on \"year\" as a number."
        )

    async def run(self, args: MongoQueryArgs, caller: str | None) -> ToolResult:
        options = args.options
        match args.operation:
            case "find":
                if not isinstance(args.query, dict):
                    return ToolResult.fail("For find operations, query must be a JSON object filter")
                documents, description = await self._service.find(
                    args.query,
                    limit=options.limit,
                    skip=options.skip,
                    sort=options.sort,
                    projection=options.projection,
                    collection=args.collection,
                )
                return self._classify(documents, description)
            case "aggregate":
                if not isinstance(args.query, list):
                    return ToolResult.fail("For aggregate operations, query must be a pipeline array")
                documents, description = await self._service.aggregate(
                    args.query, limit=options.limit, collection=args.collection
                )
                return self._classify(documents, description)
            case "count":
                if not isinstance(args.query, dict):
                    return ToolResult.fail("For count operations, query must be a JSON object filter")
                total, description = await self._service.count(args.query, collection=args.collection)
                return ToolResult.count(total, description)
        return ToolResult.fail(f"Unsupported operation: {args.operation}")

    @staticmethod
    def _classify(documents: list[dict[str, Any]], description: str) -> ToolResult:
        if looks_like_group_counts(documents):
            return ToolResult.group_counts(to_group_counts(documents), description)
        if documents and "title" in documents[0]:
            movies = parse_movies(documents)
            if movies:
                return ToolResult.movies(movies, description)
        return ToolResult.documents(documents, description)


# ── fixed-shape searches ──────────────────────────────────────────


def _limit_field(default: int, cap: int) -> Any:
    return Field(default, description=f"Maximum number of results to return (default: {default}, max: {cap})")


class GenreArgs(ToolArgs):
    genre: str = Field(description="The genre to search for (e.g., 'Action', 'Comedy', 'Drama', 'Horror', 'Short')")
    limit: int = _limit_field(10, SEARCH_CAP)


class YearArgs(ToolArgs):
    year: int = Field(description="The release year (e.g., 1995)")
    limit: int = _limit_field(10, SEARCH_CAP)


class YearRangeArgs(ToolArgs):
    start_year: int = Field(description="First year of the range, inclusive (e.g., 2000)")
    end_year: int = Field(description="Last year of the range, inclusive (e.g., 2010)")
    limit: int = _limit_field(10, SEARCH_CAP)


class GenreAndYearArgs(ToolArgs):
    genre: str = Field(description="The genre to search for (e.g., 'Action', 'Comedy')")
    year: int = Field(description="The release year (e.g., 2020)")
    limit: int = _limit_field(10, SEARCH_CAP)


class YearCountArgs(ToolArgs):
    start_year: Optional[int] = Field(None, description="Optional start year to filter results (e.g., 1990)")
    end_year: Optional[int] = Field(None, description="Optional end year to filter results (e.g., 2020)")
    limit: int = Field(50, description=f"Maximum number of year results to return (default: 50, max: {YEAR_COUNT_CAP})")


class _MovieSearchTool(Tool):
    def __init__(self, service: DocumentQueryService):
        self._service = service

    async def _search(self, filter_doc: dict[str, Any], limit: int) -> ToolResult:
        documents, description = await self._service.find(filter_doc, limit=limit, cap=SEARCH_CAP)
        return ToolResult.movies(parse_movies(documents), description)


class FindMoviesByGenreTool(_MovieSearchTool):
    args_model = GenreArgs

    @property
    def name(self) -> str:
        return "find_movies_by_genre"

    @property
    def description(self) -> str:
        return (
            "Find movies by genre. Use when the user filters by genre ONLY "
            "(e.g., 'show me some horror movies')."
        )

    async def run(self, args: GenreArgs, caller: str | None) -> ToolResult:
        return await self._search({"genres": args.genre}, args.limit)


class FindMoviesByYearTool(_MovieSearchTool):
    args_model = YearArgs

    @property
    def name(self) -> str:
        return "find_movies_by_year"

    @property
    def description(self) -> str:
        return (
            "Find movies released in one specific year. Use when the user filters by year ONLY "
            "(e.g., 'movies from 1994')."
        )

    async def run(self, args: YearArgs, caller: str | None) -> ToolResult:
        return await self._search({self._service.numeric_field: args.year}, args.limit)


class FindMoviesByYearRangeTool(_MovieSearchTool):
    args_model = YearRangeArgs

    @property
    def name(self) -> str:
        return "find_movies_by_year_range"

    @property
    def description(self) -> str:
        return (
            "Find movies released between two years, inclusive. Use when the user asks for a "
            "span of years (e.g., 'movies from the 90s', 'films between 2000 and 2005')."
        )

    async def run(self, args: YearRangeArgs, caller: str | None) -> ToolResult:
        if args.start_year > args.end_year:
            return ToolResult.fail("start_year must not be greater than end_year")
        field = self._service.numeric_field
        return await self._search({field: {"$gte": args.start_year, "$lte": args.end_year}}, args.limit)


class FindMoviesByGenreAndYearTool(_MovieSearchTool):
    args_model = GenreAndYearArgs

    @property
    def name(self) -> str:
        return "find_movies_by_genre_and_year"

    @property
    def description(self) -> str:
        return (
            "Find movies by BOTH genre AND year. Use this when the user wants to filter by genre "
            "and year together (e.g., 'action movies from 2020', 'comedy films in 1995')."
        )

    async def run(self, args: GenreAndYearArgs, caller: str | None) -> ToolResult:
        return await self._search({"genres": args.genre, self._service.numeric_field: args.year}, args.limit)


class CountMoviesPerYearTool(Tool):
    args_model = YearCountArgs

    def __init__(self, service: DocumentQueryService):
        self._service = service

    @property
    def name(self) -> str:
        return "count_movies_per_year"

    @property
    def description(self) -> str:
        return (
            "Get the count of movies available per year. Can return counts for all years or a "
            "range of years. Results are sorted by year. Use for 'how many movies per year' "
            "style questions."
        )

    async def run(self, args: YearCountArgs, caller: str | None) -> ToolResult:
        counts = await self._service.count_grouped_by_field(
            self._service.numeric_field,
            start=args.start_year,
            end=args.end_year,
            limit=args.limit,
            cap=YEAR_COUNT_CAP,
        )
        description = f"Movie counts per year ({_year_span(args.start_year, args.end_year)})"
        return ToolResult.group_counts(counts, description)


def _year_span(start: int | None, end: int | None) -> str:
    if start is None and end is None:
        return "all years"
    return f"{start if start is not None else 'earliest'}-{end if end is not None else 'latest'}"


# ── export ────────────────────────────────────────────────────────


class ExportType(StrEnum):
    MOVIES_BY_GENRE = "movies_by_genre"
    MOVIES_BY_YEAR = "movies_by_year"
    MOVIES_BY_YEAR_RANGE = "movies_by_year_range"
    MOVIES_BY_GENRE_AND_YEAR = "movies_by_genre_and_year"
    MOVIE_COUNTS = "movie_counts"


class MovieExportArgs(ToolArgs):
    export_type: ExportType = Field(
        description="The type of data to export. Use 'movies_by_genre_and_year' when filtering by BOTH genre AND year."
    )
    genre: Optional[str] = Field(
        None, description="Genre filter (required for movies_by_genre and movies_by_genre_and_year)"
    )
    year: Optional[int] = Field(
        None, description="Year filter (required for movies_by_year and movies_by_genre_and_year)"
    )
    start_year: Optional[int] = Field(None, description="Start year for range exports")
    end_year: Optional[int] = Field(None, description="End year for range exports")
    limit: int = Field(
        100,
        description=(
            "Maximum records to export. Use 0 for ALL records. Default: 100. "
            "IMPORTANT: When the user says 'all' or 'everything', set limit to 0."
        ),
    )


class MovieExportTool(Tool):
    """Runs one of the fixed movie queries and writes the result to a spreadsheet."""

    args_model = MovieExportArgs

    def __init__(self, service: DocumentQueryService, sink: ExportSink, export_cap: int = 50000):
        self._service = service
        self._sink = sink
        self._cap = export_cap

    @property
    def name(self) -> str:
        return "export_to_excel"

    @property
    def description(self) -> str:
        return (
            "Export movie query results to an Excel file. Use this DIRECTLY when the user asks "
            "to export, download, or save results to Excel/spreadsheet. Do NOT run a search "
            "first - just call this tool with the appropriate parameters."
        )

    def _scope(self, limit: int) -> str:
        return "all" if limit <= 0 else f"limit: {min(limit, self._cap)}"

    async def run(self, args: MovieExportArgs, caller: str | None) -> ToolResult:
        field = self._service.numeric_field
        scope = self._scope(args.limit)

        if args.export_type == ExportType.MOVIE_COUNTS:
            counts = await self._service.count_grouped_by_field(
                field, start=args.start_year, end=args.end_year, limit=args.limit, cap=self._cap
            )
            if not counts:
                return ToolResult.fail("No movie counts found to export")
            description = f"Movie counts by year ({_year_span(args.start_year, args.end_year)})"
            artifact = await self._sink.export_group_counts(counts, description)
            logger.info("movie_export_completed", caller=caller, export_type=args.export_type, records=len(counts))
            return ToolResult.export(ExportReference(artifact.file_id, artifact.file_name), len(counts), description)

        match args.export_type:
            case ExportType.MOVIES_BY_GENRE:
                if not args.genre:
                    return ToolResult.fail("Genre is required for movies_by_genre export")
                filter_doc: dict[str, Any] = {"genres": args.genre}
                description = f"Movies by genre: {args.genre} ({scope})"
            case ExportType.MOVIES_BY_YEAR:
                if args.year is None:
                    return ToolResult.fail("Year is required for movies_by_year export")
                filter_doc = {field: args.year}
                description = f"Movies by year: {args.year} ({scope})"
            case ExportType.MOVIES_BY_YEAR_RANGE:
                if args.start_year is None or args.end_year is None:
                    return ToolResult.fail("start_year and end_year are required for movies_by_year_range export")
                filter_doc = {field: {"$gte": args.start_year, "$lte": args.end_year}}
                description = f"Movies from {args.start_year} to {args.end_year} ({scope})"
            case ExportType.MOVIES_BY_GENRE_AND_YEAR:
                if not args.genre:
                    return ToolResult.fail("Genre is required for movies_by_genre_and_year export")
                if args.year is None:
                    return ToolResult.fail("Year is required for movies_by_genre_and_year export")
                filter_doc = {"genres": args.genre, field: args.year}
                description = f"Movies by genre: {args.genre} and year: {args.year} ({scope})"
            case _:
                return ToolResult.fail(f"Unknown export type: {args.export_type}")

        documents, query = await self._service.find(filter_doc, limit=args.limit, cap=self._cap)
        movies = parse_movies(documents)
        if not movies:
            return ToolResult.fail(f"No movies found to export for query: {describe(filter_doc)}")

        artifact = await self._sink.export_movies(movies, description)
        logger.info("movie_export_completed", caller=caller, export_type=args.export_type, records=len(movies))
        return ToolResult.export(ExportReference(artifact.file_id, artifact.file_name), len(movies), query)


def document_tool_catalog(
    service: DocumentQueryService, sink: ExportSink, export_cap: int = 50000
) -> list[Tool]:
    """Every document tool, in the order they are offered to the model."""
    return [
        MongoQueryTool(service),
        FindMoviesByGenreTool(service),
        FindMoviesByYearTool(service),
        FindMoviesByYearRangeTool(service),
        FindMoviesByGenreAndYearTool(service),
        CountMoviesPerYearTool(service),
        MovieExportTool(service, sink, export_cap),
    ]
