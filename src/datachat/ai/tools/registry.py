"""Tool registry: the fixed, named tool set one orchestrator exposes to the model."""

from __future__ import annotations

from typing import Any, Iterable

from datachat.ai.tools.base import Tool
from datachat.core.errors import ConfigError, DuplicateToolError
from datachat.log import get_logger

logger = get_logger(__name__)


class ToolRegistry:
    """Registry of tools, built once at startup and read-only afterwards."""

    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise DuplicateToolError(tool.name)
        self._tools[tool.name] = tool
        logger.info("tool_registered", tool_name=tool.name)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def all(self) -> list[Tool]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools.keys())

    def schema_for_llm(self) -> list[dict[str, Any]]:
        return [tool.to_api_dict() for tool in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    @classmethod
    def from_catalog(cls, catalog: Iterable[Tool], names: list[str]) -> ToolRegistry:
        """Build a registry from a subset of *catalog*, in the order of *names*.

        An empty *names* list selects the whole catalog.
        """
        catalog = list(catalog)
        if not names:
            return cls(catalog)
        available = {tool.name: tool for tool in catalog}
        missing = [n for n in names if n not in available]
        if missing:
            raise ConfigError(
                f"Unknown tool(s) {', '.join(missing)}; available: {', '.join(available)}"
            )
        return cls(available[n] for n in names)
