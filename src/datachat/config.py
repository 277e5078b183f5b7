"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from datachat.core.errors import ConfigError
from datachat.core.types import Backend


class LLMConfig(BaseModel):
    provider: Literal["openrouter", "azure_openai", "anthropic"] = "openrouter"
    api_key: str = ""
    base_url: str = "https://openrouter.ai/api/v1"
    model: str = "meta-llama/llama-3.1-8b-instruct:free"
    # Azure OpenAI only
    endpoint: Optional[str] = None
    deployment: Optional[str] = None
    api_version: str = "2024-02-15-preview"
    timeout: float = 120.0
    max_retries: int = 2
    app_name: str = "datachat"


class DocumentStoreConfig(BaseModel):
    uri: str = "mongodb://localhost:27017"
    database: str = "sample_mflix"
    collection: str = "movies"
    numeric_field: str = "year"
    max_limit: int = 1000
    export_max_rows: int = 50000


class RelationalStoreConfig(BaseModel):
    url: str = ""
    max_rows_per_query: int = 1000
    query_timeout: int = 30
    max_sample_rows: int = 10
    export_max_rows: int = 10000


class ExportConfig(BaseModel):
    retention_minutes: int = 30
    sweep_interval_minutes: int = 5


class SessionConfig(BaseModel):
    idle_expiry_minutes: int = 0  # 0 disables idle expiry


class AssistantConfig(BaseModel):
    id: str
    backend: Backend
    tools: list[str] = Field(default_factory=list)
    system_prompt: str = ""
    max_iterations: int = 5
    history_window: int = 10
    preview_rows: int = 20
    temperature: float = 0.3
    max_tokens: int = 4096


class ApiConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000


class AppConfig(BaseModel):
    log_level: str = "INFO"
    json_logs: bool = False
    llm: LLMConfig = Field(default_factory=LLMConfig)
    documents: Optional[DocumentStoreConfig] = None
    relational: Optional[RelationalStoreConfig] = None
    exports: ExportConfig = Field(default_factory=ExportConfig)
    sessions: SessionConfig = Field(default_factory=SessionConfig)
    assistants: list[AssistantConfig]
    api: ApiConfig = Field(default_factory=ApiConfig)

    @model_validator(mode="after")
    def _check_assistants(self) -> AppConfig:
        seen: set[str] = set()
        for assistant in self.assistants:
            if assistant.id in seen:
                raise ValueError(f"Duplicate assistant id: {assistant.id}")
            seen.add(assistant.id)
            if assistant.backend == Backend.DOCUMENTS and self.documents is None:
                raise ValueError(
                    f"Assistant '{assistant.id}' uses the documents backend "
                    "but no 'documents' section is configured"
                )
            if assistant.backend == Backend.RELATIONAL and self.relational is None:
                raise ValueError(
                    f"Assistant '{assistant.id}' uses the relational backend "
                    "but no 'relational' section is configured"
                )
        return self


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        value = os.environ.get(match.group(1))
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")
    data = yaml.safe_load(_interpolate_env_vars(raw_text))
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file is empty or not a mapping: {config_file}")

    return AppConfig(**data)
