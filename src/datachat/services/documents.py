"""MongoDB query service with type-normalized handling of heterogeneous fields.

Legacy documents store some numeric attributes (the movie ``year``) either as a
number or as text. Filtering, sorting, or grouping on such a field directly
would split ``1999`` and ``"1999"`` into different buckets and skip half of the
matches, so every query that references it is rewritten to first derive a
numeric shadow field (``$convert`` to int, ``null`` when the value is not
numeric) and to operate on that field instead. The rewrite is applied the same
way to ``find``, ``aggregate``, and ``count`` so the three agree.
"""

from __future__ import annotations

import base64
import copy
import json
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from bson import Decimal128, ObjectId
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from datachat.log import get_logger

logger = get_logger(__name__)

DEFAULT_LIMIT = 10


def clamp_limit(requested: int | None, cap: int, default: int = DEFAULT_LIMIT) -> int:
    """Clamp a requested result count to ``[1, cap]``.

    ``None`` falls back to *default*. Zero or a negative value means "as many as
    allowed" and yields *cap*, never zero.
    """
    if requested is None:
        requested = default
    if requested <= 0 or requested > cap:
        return cap
    return requested


def _to_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _to_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


class ImdbInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    rating: Any = None
    votes: Any = None

    @property
    def rating_as_float(self) -> float | None:
        return _to_float(self.rating)

    @property
    def votes_as_int(self) -> int | None:
        return _to_int(self.votes)


class Movie(BaseModel):
    """Typed view of a movie document. Tolerates the mixed types found in the data."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str | None = Field(default=None, alias="_id")
    title: str | None = None
    year: Any = None
    genres: list[str] | None = None
    directors: list[str] | None = None
    cast: list[str] | None = None
    countries: list[str] | None = None
    runtime: Any = None
    rated: str | None = None
    plot: str | None = None
    imdb: ImdbInfo | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> str | None:
        return None if value is None else str(value)

    @property
    def year_as_int(self) -> int | None:
        return _to_int(self.year)

    @property
    def runtime_as_int(self) -> int | None:
        return _to_int(self.runtime)


@dataclass(frozen=True, slots=True)
class GroupCount:
    value: Any
    count: int


def to_serializable(value: Any) -> Any:
    """Convert BSON values into JSON-safe Python values, recursively."""
    if isinstance(value, dict):
        return {str(k): to_serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_serializable(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal128):
        return str(value.to_decimal())
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    return value


def parse_movies(documents: list[dict[str, Any]]) -> list[Movie]:
    """Parse documents into Movie records, skipping the ones that do not fit."""
    movies = []
    for doc in documents:
        try:
            movies.append(Movie.model_validate(doc))
        except ValidationError as e:
            logger.warning("movie_parse_failed", doc_id=doc.get("_id"), error=str(e))
    return movies


def looks_like_group_counts(documents: list[dict[str, Any]]) -> bool:
    if not documents:
        return False
    first = documents[0]
    return "_id" in first and ("count" in first or "MovieCount" in first) and len(first) <= 3


def to_group_counts(documents: list[dict[str, Any]]) -> list[GroupCount]:
    counts = []
    for doc in documents:
        value = doc.get("_id")
        if value is None:
            continue
        raw_count = doc.get("count", doc.get("MovieCount", 0))
        counts.append(GroupCount(value=value, count=_to_int(raw_count) or 0))
    return counts


def describe(value: Any) -> str:
    return json.dumps(to_serializable(value), ensure_ascii=False, default=str)


# ── shadow-field rewriting ────────────────────────────────────────


def shadow_field_name(field: str) -> str:
    return f"numeric{field[:1].upper()}{field[1:]}"


def shadow_stage(field: str, shadow: str) -> dict[str, Any]:
    """Pipeline stage deriving the numeric shadow of *field* (``null`` when not numeric)."""
    return {
        "$addFields": {
            shadow: {
                "$convert": {
                    "input": f"${field}",
                    "to": "int",
                    "onError": None,
                    "onNull": None,
                }
            }
        }
    }


def references_field(value: Any, field: str) -> bool:
    """True if *value* names *field* as a key or as a ``$field`` path anywhere."""
    if isinstance(value, dict):
        return any(k == field or references_field(v, field) for k, v in value.items())
    if isinstance(value, list):
        return any(references_field(v, field) for v in value)
    return value == f"${field}"


def rewrite_filter(filter_doc: dict[str, Any], field: str, shadow: str) -> dict[str, Any]:
    """Rename *field* keys to *shadow* throughout a query filter."""
    rewritten: dict[str, Any] = {}
    for key, value in filter_doc.items():
        new_key = shadow if key == field else key
        if isinstance(value, dict):
            rewritten[new_key] = rewrite_filter(value, field, shadow)
        elif isinstance(value, list):
            rewritten[new_key] = [
                rewrite_filter(item, field, shadow) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            rewritten[new_key] = value
    return rewritten


def rewrite_sort(sort: dict[str, Any], field: str, shadow: str) -> dict[str, Any]:
    return {(shadow if key == field else key): direction for key, direction in sort.items()}


def rewrite_expression(expr: Any, field: str, shadow: str) -> Any:
    """Replace ``$field`` path references with ``$shadow`` in an aggregation expression."""
    if isinstance(expr, dict):
        return {k: rewrite_expression(v, field, shadow) for k, v in expr.items()}
    if isinstance(expr, list):
        return [rewrite_expression(v, field, shadow) for v in expr]
    if expr == f"${field}":
        return f"${shadow}"
    return expr


def rewrite_match(filter_doc: dict[str, Any], field: str, shadow: str) -> dict[str, Any]:
    """Retarget a `$match` body: query-operator keys and `$expr` path references alike."""
    return rewrite_expression(rewrite_filter(filter_doc, field, shadow), field, shadow)


def rewrite_pipeline(pipeline: list[dict[str, Any]], field: str, shadow: str) -> list[dict[str, Any]]:
    """Insert the shadow stage before the first stage that uses *field* and retarget later stages."""
    if not references_field(pipeline, field):
        return copy.deepcopy(pipeline)

    rewritten: list[dict[str, Any]] = []
    converted = False
    for stage in pipeline:
        if not converted and references_field(stage, field):
            rewritten.append(shadow_stage(field, shadow))
            converted = True
        if not converted:
            rewritten.append(copy.deepcopy(stage))
            continue
        if "$match" in stage:
            rewritten.append({"$match": rewrite_match(stage["$match"], field, shadow)})
        elif "$sort" in stage:
            rewritten.append({"$sort": rewrite_sort(stage["$sort"], field, shadow)})
        else:
            rewritten.append(rewrite_expression(copy.deepcopy(stage), field, shadow))
    return rewritten


def bound_pipeline(pipeline: list[dict[str, Any]], limit: int, cap: int) -> list[dict[str, Any]]:
    """Clamp any ``$limit`` stage to *cap*; append ``$limit`` *limit* when none exists."""
    bounded = []
    has_limit = False
    for stage in pipeline:
        if "$limit" in stage:
            has_limit = True
            stage = {"$limit": clamp_limit(_to_int(stage["$limit"]), cap)}
        bounded.append(stage)
    if not has_limit:
        bounded.append({"$limit": limit})
    return bounded


class DocumentQueryService:
    """Stateless-per-call access to one MongoDB database."""

    def __init__(
        self,
        database: Any,
        default_collection: str = "movies",
        numeric_field: str = "year",
        max_limit: int = 1000,
    ):
        self._db = database
        self._default_collection = default_collection
        self._numeric_field = numeric_field
        self._shadow = shadow_field_name(numeric_field)
        self._max_limit = max_limit

    @property
    def numeric_field(self) -> str:
        return self._numeric_field

    @property
    def shadow_field(self) -> str:
        return self._shadow

    @property
    def max_limit(self) -> int:
        return self._max_limit

    def _collection(self, name: str | None) -> Any:
        return self._db[name or self._default_collection]

    def _collection_name(self, name: str | None) -> str:
        return name or self._default_collection

    async def _aggregate(self, collection: str | None, pipeline: list[dict[str, Any]]) -> list[dict[str, Any]]:
        cursor = await self._collection(collection).aggregate(pipeline)
        documents = await cursor.to_list()
        return [to_serializable(doc) for doc in documents]

    # ── fixed-shape queries ───────────────────────────────────────

    async def by_field_equals(
        self,
        field: str,
        value: Any,
        limit: int | None = None,
        cap: int | None = None,
        collection: str | None = None,
    ) -> list[dict[str, Any]]:
        documents, _ = await self.find({field: value}, limit=limit, cap=cap, collection=collection)
        return documents

    async def by_field_range(
        self,
        field: str,
        start: Any,
        end: Any,
        limit: int | None = None,
        cap: int | None = None,
        collection: str | None = None,
    ) -> list[dict[str, Any]]:
        documents, _ = await self.find(
            {field: {"$gte": start, "$lte": end}},
            limit=limit,
            cap=cap,
            collection=collection,
        )
        return documents

    async def count_grouped_by_field(
        self,
        field: str,
        start: int | None = None,
        end: int | None = None,
        limit: int | None = None,
        cap: int | None = None,
        unwind: bool = False,
        collection: str | None = None,
    ) -> list[GroupCount]:
        """Count documents per distinct value of *field*, sorted by value.

        The heterogeneous numeric field is grouped on its shadow, so ``1999``
        and ``"1999"`` land in one bucket. *start*/*end* bound the numeric field
        only. *unwind* expands array-valued fields (e.g. genres) first.
        """
        effective = clamp_limit(limit, cap or self._max_limit, default=50)
        pipeline: list[dict[str, Any]] = []
        group_key = f"${field}"

        if field == self._numeric_field:
            pipeline.append(shadow_stage(field, self._shadow))
            bounds: dict[str, Any] = {"$ne": None}
            if start is not None:
                bounds["$gte"] = start
            if end is not None:
                bounds["$lte"] = end
            pipeline.append({"$match": {self._shadow: bounds}})
            group_key = f"${self._shadow}"
        elif unwind:
            pipeline.append({"$unwind": f"${field}"})

        pipeline.extend(
            [
                {"$group": {"_id": group_key, "count": {"$sum": 1}}},
                {"$sort": {"_id": 1}},
                {"$limit": effective},
            ]
        )
        logger.info("group_count_pipeline", field=field, pipeline=describe(pipeline))
        documents = await self._aggregate(collection, pipeline)
        return to_group_counts(documents)

    # ── raw operations ────────────────────────────────────────────

    async def find(
        self,
        filter_doc: dict[str, Any],
        limit: int | None = None,
        skip: int = 0,
        sort: dict[str, Any] | None = None,
        projection: dict[str, Any] | None = None,
        cap: int | None = None,
        collection: str | None = None,
    ) -> tuple[list[dict[str, Any]], str]:
        """Run a filter query. Returns the documents and a readable query description."""
        effective = clamp_limit(limit, cap or self._max_limit)
        skip = max(skip, 0)
        name = self._collection_name(collection)
        field = self._numeric_field

        if references_field(filter_doc, field) or (sort and field in sort):
            pipeline: list[dict[str, Any]] = [
                shadow_stage(field, self._shadow),
                {"$match": rewrite_match(filter_doc, field, self._shadow)},
            ]
            if sort:
                pipeline.append({"$sort": rewrite_sort(sort, field, self._shadow)})
            if skip:
                pipeline.append({"$skip": skip})
            pipeline.append({"$limit": effective})
            if projection:
                pipeline.append({"$project": projection})
            pipeline.append({"$unset": self._shadow})

            documents = await self._aggregate(collection, pipeline)
            description = f"db.{name}.aggregate({describe(pipeline)}) /* find({describe(filter_doc)}) with {field} normalization */"
        else:
            cursor = self._collection(collection).find(filter_doc, projection)
            if sort:
                cursor = cursor.sort(list(sort.items()))
            if skip:
                cursor = cursor.skip(skip)
            cursor = cursor.limit(effective)
            documents = [to_serializable(doc) for doc in await cursor.to_list()]

            description = f"db.{name}.find({describe(filter_doc)})"
            if sort:
                description += f".sort({describe(sort)})"
            if skip:
                description += f".skip({skip})"
            description += f".limit({effective})"

        logger.info("find_executed", collection=name, count=len(documents))
        return documents, description

    async def aggregate(
        self,
        pipeline: list[dict[str, Any]],
        limit: int | None = None,
        cap: int | None = None,
        collection: str | None = None,
    ) -> tuple[list[dict[str, Any]], str]:
        effective_cap = cap or self._max_limit
        effective = clamp_limit(limit, effective_cap)
        name = self._collection_name(collection)

        rewritten = rewrite_pipeline(pipeline, self._numeric_field, self._shadow)
        bounded = bound_pipeline(rewritten, effective, effective_cap)
        documents = await self._aggregate(collection, bounded)

        logger.info("aggregate_executed", collection=name, count=len(documents))
        return documents, f"db.{name}.aggregate({describe(bounded)})"

    async def count(self, filter_doc: dict[str, Any], collection: str | None = None) -> tuple[int, str]:
        name = self._collection_name(collection)
        field = self._numeric_field

        if references_field(filter_doc, field):
            pipeline = [
                shadow_stage(field, self._shadow),
                {"$match": rewrite_match(filter_doc, field, self._shadow)},
                {"$count": "total"},
            ]
            documents = await self._aggregate(collection, pipeline)
            total = _to_int(documents[0].get("total")) if documents else 0
            description = f"db.{name}.countDocuments({describe(filter_doc)}) /* with {field} normalization */"
        else:
            total = await self._collection(collection).count_documents(filter_doc)
            description = f"db.{name}.countDocuments({describe(filter_doc)})"

        logger.info("count_executed", collection=name, total=total)
        return total or 0, description

    # ── discovery helpers ─────────────────────────────────────────

    async def list_collections(self) -> list[str]:
        return sorted(await self._db.list_collection_names())

    async def distinct_values(self, field: str, collection: str | None = None) -> list[Any]:
        pipeline = [
            {"$unwind": f"${field}"},
            {"$group": {"_id": f"${field}"}},
            {"$sort": {"_id": 1}},
        ]
        documents = await self._aggregate(collection, pipeline)
        return [doc["_id"] for doc in documents if doc.get("_id") not in (None, "")]

    async def distinct_numeric_values(self, collection: str | None = None) -> list[int]:
        """Distinct values of the numeric field, newest first."""
        pipeline = [
            shadow_stage(self._numeric_field, self._shadow),
            {"$match": {self._shadow: {"$ne": None}}},
            {"$group": {"_id": f"${self._shadow}"}},
            {"$sort": {"_id": -1}},
        ]
        documents = await self._aggregate(collection, pipeline)
        return [int(doc["_id"]) for doc in documents if doc.get("_id") is not None]
