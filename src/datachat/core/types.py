"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class Backend(StrEnum):
    DOCUMENTS = "documents"
    RELATIONAL = "relational"


class ResultKind(StrEnum):
    DOCUMENTS = "documents"
    MOVIES = "movies"
    GROUP_COUNTS = "group_counts"
    COUNT = "count"
    EXPORT = "export"
    TABLE_LIST = "table_list"
    TABLE_SCHEMA = "table_schema"
    QUERY_RESULTS = "query_results"
    SAMPLE_DATA = "sample_data"


class Outcome(StrEnum):
    ANSWERED = "answered"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"
