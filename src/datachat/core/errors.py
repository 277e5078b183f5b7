"""Exception hierarchy shared across the package."""

from __future__ import annotations


class DataChatError(Exception):
    """Base class for all datachat errors."""


class ConfigError(DataChatError):
    """Configuration is missing or inconsistent."""


class DuplicateToolError(DataChatError):
    """A tool name was registered twice in the same registry."""

    def __init__(self, name: str):
        super().__init__(f"Tool '{name}' is already registered")
        self.name = name


class QueryValidationError(DataChatError):
    """A generated query was rejected before reaching the database."""


class QueryExecutionError(DataChatError):
    """The backend failed while running an already validated query."""
