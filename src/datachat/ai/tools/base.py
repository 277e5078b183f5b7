"""Abstract tool interface and the result types tools hand back to the orchestrator."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping

from pydantic import BaseModel, ConfigDict, ValidationError

from datachat.core.errors import DataChatError
from datachat.core.types import ResultKind
from datachat.log import get_logger

if TYPE_CHECKING:
    from datachat.services.documents import GroupCount, Movie
    from datachat.services.relational import TableSchema

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ExportReference:
    file_id: str
    file_name: str


@dataclass(frozen=True, slots=True)
class TabularData:
    columns: list[str]
    rows: list[dict[str, Any]]


@dataclass
class ToolResult:
    """Outcome of one tool execution.

    On success ``payload`` is populated and its type is determined by ``kind``:

    - DOCUMENTS: ``list[dict]``
    - MOVIES: ``list[Movie]``
    - GROUP_COUNTS: ``list[GroupCount]``
    - COUNT: ``int``
    - EXPORT: ``ExportReference``
    - TABLE_LIST: ``list[str]``
    - TABLE_SCHEMA: ``TableSchema``
    - QUERY_RESULTS / SAMPLE_DATA: ``TabularData``

    On failure only ``error`` is set.
    """

    success: bool
    kind: ResultKind | None = None
    payload: Any = None
    query: str | None = None
    total_count: int = 0
    error: str | None = None

    @classmethod
    def fail(cls, message: str) -> ToolResult:
        return cls(success=False, error=message)

    @classmethod
    def documents(cls, documents: list[dict[str, Any]], query: str) -> ToolResult:
        return cls(True, ResultKind.DOCUMENTS, documents, query, len(documents))

    @classmethod
    def movies(cls, movies: list[Movie], query: str) -> ToolResult:
        return cls(True, ResultKind.MOVIES, movies, query, len(movies))

    @classmethod
    def group_counts(cls, counts: list[GroupCount], query: str) -> ToolResult:
        return cls(True, ResultKind.GROUP_COUNTS, counts, query, len(counts))

    @classmethod
    def count(cls, total: int, query: str) -> ToolResult:
        return cls(True, ResultKind.COUNT, total, query, total)

    @classmethod
    def export(cls, reference: ExportReference, record_count: int, query: str) -> ToolResult:
        return cls(True, ResultKind.EXPORT, reference, query, record_count)

    @classmethod
    def table_list(cls, tables: list[str], query: str) -> ToolResult:
        return cls(True, ResultKind.TABLE_LIST, tables, query, len(tables))

    @classmethod
    def table_schema(cls, schema: TableSchema, query: str) -> ToolResult:
        return cls(True, ResultKind.TABLE_SCHEMA, schema, query, len(schema.columns))

    @classmethod
    def tabular(cls, kind: ResultKind, data: TabularData, query: str) -> ToolResult:
        return cls(True, kind, data, query, len(data.rows))


@dataclass
class ToolCall:
    """One model-requested invocation. ``id`` is the provider's correlation id."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    result: ToolResult | None = None

    @property
    def arguments_json(self) -> str:
        return json.dumps(self.arguments, ensure_ascii=False, default=str)


class ToolArgs(BaseModel):
    """Base model for tool arguments. Unknown keys from the model are ignored."""

    model_config = ConfigDict(extra="ignore")


def _clean_schema(schema: Any) -> Any:
    """Drop pydantic's generated ``title`` strings, which providers do not expect."""
    if isinstance(schema, dict):
        return {
            key: _clean_schema(value)
            for key, value in schema.items()
            if not (key == "title" and isinstance(value, str))
        }
    if isinstance(schema, list):
        return [_clean_schema(item) for item in schema]
    return schema


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err["loc"]) or "arguments"
        parts.append(f"{location}: {err['msg']}")
    return "; ".join(parts)


class Tool(ABC):
    """Base class for all LLM-callable tools.

    Subclasses declare an ``args_model`` and implement :meth:`run`. :meth:`execute`
    validates the raw arguments and converts every failure into a failed
    :class:`ToolResult`; it never raises for ordinary errors.
    """

    args_model: type[ToolArgs] = ToolArgs

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique tool name sent to the provider."""
        ...

    @property
    @abstractmethod
    def description(self) -> str:
        """When to use the tool, written for the model."""
        ...

    @property
    def input_schema(self) -> dict[str, Any]:
        """JSON Schema dict describing accepted parameters."""
        schema = _clean_schema(self.args_model.model_json_schema())
        return {
            "type": "object",
            "properties": schema.get("properties", {}),
            "required": schema.get("required", []),
        }

    async def execute(self, arguments: Mapping[str, Any], caller: str | None = None) -> ToolResult:
        try:
            args = self.args_model.model_validate(dict(arguments))
        except ValidationError as e:
            logger.warning("tool_arguments_invalid", tool=self.name, error=str(e))
            return ToolResult.fail(f"Invalid arguments for {self.name}: {_describe_validation_error(e)}")

        try:
            return await self.run(args, caller)
        except DataChatError as e:
            logger.warning("tool_rejected", tool=self.name, error=str(e))
            return ToolResult.fail(str(e))
        except Exception as e:
            logger.error("tool_execution_error", tool=self.name, error=str(e))
            return ToolResult.fail(f"Error executing {self.name}: {e}")

    @abstractmethod
    async def run(self, args: Any, caller: str | None) -> ToolResult:
        """Execute with validated arguments. *caller* is the opaque user identity."""
        ...

    def to_api_dict(self) -> dict[str, Any]:
        """Serialize to the chat-completions function declaration format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }
