"""Shared fakes: a scripted LLM, an in-memory Mongo collection, a scripted SQL engine."""

from __future__ import annotations

import asyncio
import copy
import operator
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

import pytest

from datachat.ai.client import ChatRequest, ChatResponse, LLMClient, LLMToolCall


# ── LLM ───────────────────────────────────────────────────────────


def text_reply(content: str | None) -> ChatResponse:
    return ChatResponse(success=True, content=content, finish_reason="stop")


def tool_reply(*calls: tuple[str, str, str], content: str = "") -> ChatResponse:
    """Build a tool-call response from ``(id, name, arguments_json)`` triples."""
    return ChatResponse(
        success=True,
        content=content,
        tool_calls=[LLMToolCall(id=i, name=n, arguments=a) for i, n, a in calls],
        finish_reason="tool_calls",
    )


class ScriptedLLMClient(LLMClient):
    """Returns canned responses in order and records every request it saw."""

    def __init__(self, responses: list[ChatResponse] | None = None, fragments: list[str] | None = None):
        self._responses = list(responses or [])
        self._fragments = list(fragments or [])
        self.requests: list[ChatRequest] = []

    async def chat(self, request: ChatRequest) -> ChatResponse:
        self.requests.append(
            ChatRequest(
                messages=copy.deepcopy(request.messages),
                tools=request.tools,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
            )
        )
        if not self._responses:
            return ChatResponse.fail("script exhausted")
        return self._responses.pop(0)

    async def stream_chat(self, request: ChatRequest, cancel_event: asyncio.Event | None = None) -> AsyncIterator[str]:
        self.requests.append(request)
        for fragment in self._fragments:
            if cancel_event and cancel_event.is_set():
                return
            yield fragment


# ── Mongo ─────────────────────────────────────────────────────────

_MISSING = object()


def _get_path(doc: dict[str, Any], path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _compare(op: str, left: Any, right: Any) -> bool:
    if left is _MISSING or left is None:
        return False
    try:
        match op:
            case "$gt":
                return left > right
            case "$gte":
                return left >= right
            case "$lt":
                return left < right
            case "$lte":
                return left <= right
    except TypeError:
        return False
    raise ValueError(op)


def _equals(value: Any, expected: Any) -> bool:
    if value is _MISSING:
        return expected is None
    if isinstance(value, list) and not isinstance(expected, list):
        return expected in value
    return value == expected


def matches(doc: dict[str, Any], filter_doc: dict[str, Any]) -> bool:
    for key, cond in filter_doc.items():
        if key == "$expr":
            if not evaluate(doc, cond):
                return False
            continue
        if key == "$and":
            if not all(matches(doc, sub) for sub in cond):
                return False
            continue
        if key == "$or":
            if not any(matches(doc, sub) for sub in cond):
                return False
            continue
        value = _get_path(doc, key)
        if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
            for op, arg in cond.items():
                if op == "$eq" and not _equals(value, arg):
                    return False
                if op == "$ne" and _equals(value, arg):
                    return False
                if op == "$in" and not any(_equals(value, a) for a in arg):
                    return False
                if op == "$nin" and any(_equals(value, a) for a in arg):
                    return False
                if op == "$exists" and (value is not _MISSING) != bool(arg):
                    return False
                if op in ("$gt", "$gte", "$lt", "$lte") and not _compare(op, value, arg):
                    return False
        elif not _equals(value, cond):
            return False
    return True


def _to_int(value: Any, on_error: Any, on_null: Any) -> Any:
    if value is None or value is _MISSING:
        return on_null
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return on_error
    return on_error


def evaluate(doc: dict[str, Any], expr: Any) -> Any:
    if isinstance(expr, str) and expr.startswith("$"):
        value = _get_path(doc, expr[1:])
        return None if value is _MISSING else value
    if isinstance(expr, dict) and "$convert" in expr:
        spec = expr["$convert"]
        assert spec["to"] == "int"
        return _to_int(evaluate(doc, spec["input"]), spec.get("onError"), spec.get("onNull"))
    if isinstance(expr, dict) and len(expr) == 1 and next(iter(expr)) in _EXPR_COMPARISONS:
        op, (left, right) = next(iter(expr.items()))
        return _EXPR_COMPARISONS[op](_sort_key(evaluate(doc, left)), _sort_key(evaluate(doc, right)))
    if isinstance(expr, dict):
        return {k: evaluate(doc, v) for k, v in expr.items()}
    return expr


def _sort_key(value: Any) -> tuple[int, Any]:
    if value is None or value is _MISSING:
        return (0, 0)
    if isinstance(value, (int, float)):
        return (1, value)
    return (2, str(value))


# aggregation comparisons order across types (null < numbers < strings) instead of failing
_EXPR_COMPARISONS = {
    "$eq": operator.eq,
    "$ne": operator.ne,
    "$gt": operator.gt,
    "$gte": operator.ge,
    "$lt": operator.lt,
    "$lte": operator.le,
}


def _sort(docs: list[dict[str, Any]], spec: list[tuple[str, int]]) -> list[dict[str, Any]]:
    for key, direction in reversed(spec):
        docs = sorted(docs, key=lambda d: _sort_key(_get_path(d, key)), reverse=direction < 0)
    return docs


def run_pipeline(docs: list[dict[str, Any]], pipeline: list[dict[str, Any]]) -> list[dict[str, Any]]:
    docs = copy.deepcopy(docs)
    for stage in pipeline:
        (name, arg), = stage.items()
        match name:
            case "$match":
                docs = [d for d in docs if matches(d, arg)]
            case "$addFields" | "$set":
                for d in docs:
                    for k, v in arg.items():
                        d[k] = evaluate(d, v)
            case "$unset":
                for d in docs:
                    for k in [arg] if isinstance(arg, str) else arg:
                        d.pop(k, None)
            case "$project":
                projected = []
                for d in docs:
                    if all(v in (0, False) for v in arg.values()):
                        projected.append({k: v for k, v in d.items() if k not in arg})
                    else:
                        out = {"_id": d.get("_id")} if arg.get("_id", 1) else {}
                        for k, v in arg.items():
                            if k == "_id":
                                continue
                            if v in (1, True):
                                value = _get_path(d, k)
                                if value is not _MISSING:
                                    out[k] = value
                            elif v not in (0, False):
                                out[k] = evaluate(d, v)
                        projected.append(out)
                docs = projected
            case "$group":
                groups: dict[Any, dict[str, Any]] = {}
                for d in docs:
                    key = evaluate(d, arg["_id"])
                    hashable = repr(key)
                    group = groups.setdefault(hashable, {"_id": key, **{f: 0 for f in arg if f != "_id"}})
                    for field, acc in arg.items():
                        if field == "_id":
                            continue
                        value = evaluate(d, acc["$sum"])
                        group[field] += value if isinstance(value, (int, float)) else 0
                docs = list(groups.values())
            case "$sort":
                docs = _sort(docs, list(arg.items()))
            case "$skip":
                docs = docs[arg:]
            case "$limit":
                docs = docs[:arg]
            case "$count":
                docs = [{arg: len(docs)}] if docs else []
            case "$unwind":
                path = arg[1:]
                unwound = []
                for d in docs:
                    values = _get_path(d, path)
                    if isinstance(values, list):
                        for v in values:
                            unwound.append({**d, path: v})
                    elif values is not _MISSING and values is not None:
                        unwound.append(d)
                docs = unwound
            case _:
                raise NotImplementedError(name)
    return docs


class FakeCursor:
    def __init__(self, docs: list[dict[str, Any]]):
        self._docs = docs

    def sort(self, spec: list[tuple[str, int]]) -> FakeCursor:
        self._docs = _sort(self._docs, spec)
        return self

    def skip(self, n: int) -> FakeCursor:
        self._docs = self._docs[n:]
        return self

    def limit(self, n: int) -> FakeCursor:
        self._docs = self._docs[:n] if n else self._docs
        return self

    async def to_list(self, length: int | None = None) -> list[dict[str, Any]]:
        return list(self._docs if length is None else self._docs[:length])


class FakeCollection:
    def __init__(self, docs: list[dict[str, Any]]):
        self.docs = docs
        self.pipelines: list[list[dict[str, Any]]] = []
        self.finds: list[dict[str, Any]] = []

    def find(self, filter_doc: dict[str, Any] | None = None, projection: dict[str, Any] | None = None) -> FakeCursor:
        filter_doc = filter_doc or {}
        self.finds.append(filter_doc)
        docs = [copy.deepcopy(d) for d in self.docs if matches(d, filter_doc)]
        if projection:
            docs = run_pipeline(docs, [{"$project": projection}])
        return FakeCursor(docs)

    async def aggregate(self, pipeline: list[dict[str, Any]]) -> FakeCursor:
        self.pipelines.append(pipeline)
        return FakeCursor(run_pipeline(self.docs, pipeline))

    async def count_documents(self, filter_doc: dict[str, Any]) -> int:
        return sum(1 for d in self.docs if matches(d, filter_doc))


class FakeDatabase:
    def __init__(self, collections: dict[str, FakeCollection]):
        self._collections = collections

    def __getitem__(self, name: str) -> FakeCollection:
        return self._collections.setdefault(name, FakeCollection([]))

    async def list_collection_names(self) -> list[str]:
        return list(self._collections)


MOVIES = [
    {"_id": 1, "title": "The Matrix", "year": 1999, "genres": ["Action", "Sci-Fi"], "imdb": {"rating": 8.7, "votes": 1500000}},
    {"_id": 2, "title": "Fight Club", "year": "1999", "genres": ["Drama"], "imdb": {"rating": 8.8, "votes": 1800000}},
    {"_id": 3, "title": "Gladiator", "year": 2000, "genres": ["Action", "Drama"], "imdb": {"rating": 8.5, "votes": ""}},
    {"_id": 4, "title": "Memento", "year": "2000", "genres": ["Mystery"], "imdb": {"rating": "8.4", "votes": 1100000}},
    {"_id": 5, "title": "Amelie", "year": "2001è", "genres": ["Comedy"], "imdb": {"rating": 8.3}},
    {"_id": 6, "title": "Heat", "year": 1995, "genres": ["Action", "Crime"], "imdb": {"rating": 8.3, "votes": 600000}},
]


@pytest.fixture
def movies_collection() -> FakeCollection:
    return FakeCollection(copy.deepcopy(MOVIES))


@pytest.fixture
def movie_db(movies_collection: FakeCollection) -> FakeDatabase:
    return FakeDatabase({"movies": movies_collection})


# ── SQL ───────────────────────────────────────────────────────────

Responder = Callable[[str, dict[str, Any]], tuple[list[str], list[tuple]]]


class FakeResult:
    def __init__(self, columns: list[str], rows: list[tuple]):
        self._columns = columns
        self._rows = rows

    def keys(self) -> list[str]:
        return self._columns

    def fetchall(self) -> list[tuple]:
        return self._rows

    def fetchmany(self, size: int) -> list[tuple]:
        return self._rows[:size]


class FakeConnection:
    def __init__(self, engine: ScriptedEngine):
        self._engine = engine

    async def execute(self, clause: Any, params: dict[str, Any] | None = None) -> FakeResult:
        sql = str(clause)
        self._engine.executed.append((sql, dict(params or {})))
        columns, rows = self._engine.responder(sql, params or {})
        return FakeResult(columns, rows)


class ScriptedEngine:
    """Duck-typed stand-in for ``AsyncEngine``: ``connect()`` then ``execute``."""

    def __init__(self, responder: Responder | None = None):
        self.responder: Responder = responder or (lambda sql, params: ([], []))
        self.executed: list[tuple[str, dict[str, Any]]] = []

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[FakeConnection]:
        yield FakeConnection(self)


@pytest.fixture
def engine() -> ScriptedEngine:
    return ScriptedEngine()
