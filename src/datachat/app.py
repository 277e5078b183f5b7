"""Application orchestrator - wires config, backends, tools, and assistants."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from datachat.ai.client import LLMClient, create_llm_client
from datachat.ai.orchestrator import QueryOrchestrator
from datachat.ai.prompts import default_prompt
from datachat.ai.tools.base import Tool
from datachat.ai.tools.documents import document_tool_catalog
from datachat.ai.tools.registry import ToolRegistry
from datachat.ai.tools.relational import relational_tool_catalog
from datachat.config import AppConfig, AssistantConfig
from datachat.core.errors import ConfigError
from datachat.core.session import SessionStore
from datachat.core.types import Backend
from datachat.log import get_logger
from datachat.services.connections import MongoConnection, SqlConnection
from datachat.services.documents import DocumentQueryService
from datachat.services.export import ExportSink
from datachat.services.relational import RelationalQueryService
from datachat.services.service_manager import ServiceManager
from datachat.services.sweeper import RetentionSweeper

logger = get_logger(__name__)


class DataChatApp:
    """Top-level application object.

    Backends can be injected (``document_db``, ``sql_engine``, ``llm_client``);
    otherwise they are created from config and owned by the service manager.
    """

    def __init__(
        self,
        config: AppConfig,
        llm_client: LLMClient | None = None,
        document_db: Any = None,
        sql_engine: AsyncEngine | None = None,
    ):
        self.config = config
        self.service_manager = ServiceManager()
        self.export_sink = ExportSink(retention=timedelta(minutes=config.exports.retention_minutes))
        self.llm_client = llm_client or create_llm_client(config.llm)

        self.document_service: DocumentQueryService | None = None
        if config.documents is not None:
            if document_db is None:
                connection = MongoConnection(config.documents)
                self.service_manager.add(connection)
                document_db = connection.database
            self.document_service = DocumentQueryService(
                document_db,
                default_collection=config.documents.collection,
                numeric_field=config.documents.numeric_field,
                max_limit=config.documents.max_limit,
            )

        self.relational_service: RelationalQueryService | None = None
        if config.relational is not None:
            if sql_engine is None:
                if not config.relational.url:
                    raise ConfigError("relational.url is required when the relational backend is configured")
                connection = SqlConnection(config.relational)
                self.service_manager.add(connection)
                sql_engine = connection.engine
            self.relational_service = RelationalQueryService(
                sql_engine,
                max_rows_per_query=config.relational.max_rows_per_query,
                query_timeout=config.relational.query_timeout,
                max_sample_rows=config.relational.max_sample_rows,
            )

        self.orchestrators: dict[str, QueryOrchestrator] = {
            assistant.id: self._build_orchestrator(assistant) for assistant in config.assistants
        }

        self.sweeper = RetentionSweeper(
            self.export_sink,
            session_stores=[o.sessions for o in self.orchestrators.values()],
            interval_minutes=config.exports.sweep_interval_minutes,
            session_idle_minutes=config.sessions.idle_expiry_minutes,
        )
        self.service_manager.add(self.sweeper)

    def tool_catalog(self, backend: Backend) -> list[Tool]:
        """All tools available for *backend*, before per-assistant selection."""
        match backend:
            case Backend.DOCUMENTS:
                if self.document_service is None:
                    raise ConfigError("documents backend is not configured")
                return document_tool_catalog(
                    self.document_service, self.export_sink, self.config.documents.export_max_rows
                )
            case Backend.RELATIONAL:
                if self.relational_service is None:
                    raise ConfigError("relational backend is not configured")
                return relational_tool_catalog(
                    self.relational_service, self.export_sink, self.config.relational.export_max_rows
                )
            case _:
                raise ConfigError(f"Unknown backend: {backend}")

    def _build_orchestrator(self, assistant: AssistantConfig) -> QueryOrchestrator:
        registry = ToolRegistry.from_catalog(self.tool_catalog(assistant.backend), assistant.tools)
        prompt = assistant.system_prompt or default_prompt(assistant.backend, registry.names())
        logger.info(
            "assistant_configured",
            assistant=assistant.id,
            backend=assistant.backend,
            tools=registry.names(),
        )
        return QueryOrchestrator(
            client=self.llm_client,
            registry=registry,
            sessions=SessionStore(),
            system_prompt=prompt,
            assistant_id=assistant.id,
            max_iterations=assistant.max_iterations,
            history_window=assistant.history_window,
            preview_rows=assistant.preview_rows,
            temperature=assistant.temperature,
            max_tokens=assistant.max_tokens,
        )

    def get_orchestrator(self, assistant_id: str) -> QueryOrchestrator | None:
        return self.orchestrators.get(assistant_id)

    async def start(self) -> None:
        await self.service_manager.start_all()
        logger.info("datachat_started", assistants=list(self.orchestrators))

    async def stop(self) -> None:
        await self.service_manager.stop_all()
        await self.llm_client.aclose()
        logger.info("datachat_stopped")
