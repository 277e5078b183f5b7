from __future__ import annotations

import pytest

from datachat.ai.prompts import MONGO_QUERY_PROMPT, MOVIE_TOOLS_PROMPT, SQL_PROMPT
from datachat.app import DataChatApp
from datachat.config import AppConfig
from datachat.core.errors import ConfigError
from datachat.core.types import Backend

from conftest import ScriptedLLMClient


def _config(**overrides) -> AppConfig:
    data = {
        "documents": {},
        "assistants": [
            {"id": "movies", "backend": "documents", "tools": ["find_movies_by_year"]},
            {"id": "mongo", "backend": "documents", "tools": ["execute_mongodb_query"], "max_iterations": 2},
        ],
    }
    data.update(overrides)
    return AppConfig(**data)


def test_each_assistant_gets_its_own_tools_and_sessions(movie_db):
    app = DataChatApp(_config(), llm_client=ScriptedLLMClient(), document_db=movie_db)

    movies, mongo = app.get_orchestrator("movies"), app.get_orchestrator("mongo")
    assert movies.registry.names() == ["find_movies_by_year"]
    assert mongo.registry.names() == ["execute_mongodb_query"]
    assert movies.sessions is not mongo.sessions
    assert app.get_orchestrator("missing") is None


def test_default_prompts_follow_tool_selection(movie_db):
    app = DataChatApp(_config(), llm_client=ScriptedLLMClient(), document_db=movie_db)
    assert app.get_orchestrator("movies").system_prompt == MOVIE_TOOLS_PROMPT
    assert app.get_orchestrator("mongo").system_prompt == MONGO_QUERY_PROMPT


def test_custom_prompt_wins(movie_db):
    config = _config(assistants=[{"id": "a", "backend": "documents", "system_prompt": "Be terse."}])
    app = DataChatApp(config, llm_client=ScriptedLLMClient(), document_db=movie_db)
    assert app.get_orchestrator("a").system_prompt == "Be terse."


def test_relational_assistant(engine):
    config = AppConfig(relational={}, assistants=[{"id": "sql", "backend": "relational"}])
    app = DataChatApp(config, llm_client=ScriptedLLMClient(), sql_engine=engine)
    assert app.get_orchestrator("sql").system_prompt == SQL_PROMPT
    assert "read_data" in app.get_orchestrator("sql").registry


def test_relational_without_url_or_engine():
    config = AppConfig(relational={}, assistants=[{"id": "sql", "backend": "relational"}])
    with pytest.raises(ConfigError, match="relational.url"):
        DataChatApp(config, llm_client=ScriptedLLMClient())


def test_unknown_tool_name_in_config(movie_db):
    config = _config(assistants=[{"id": "a", "backend": "documents", "tools": ["drop_database"]}])
    with pytest.raises(ConfigError, match="drop_database"):
        DataChatApp(config, llm_client=ScriptedLLMClient(), document_db=movie_db)


def test_catalog_for_unconfigured_backend(movie_db):
    app = DataChatApp(_config(), llm_client=ScriptedLLMClient(), document_db=movie_db)
    with pytest.raises(ConfigError):
        app.tool_catalog(Backend.RELATIONAL)


async def test_start_and_stop_run_the_sweeper(movie_db):
    llm = ScriptedLLMClient()
    app = DataChatApp(_config(), llm_client=llm, document_db=movie_db)
    await app.start()
    try:
        assert await app.sweeper.health_check()
    finally:
        await app.stop()
    assert not await app.sweeper.health_check()


def test_subpackages_are_namespace_directories():
    import datachat.ai
    import datachat.ai.tools
    import datachat.core
    import datachat.services

    for package in (datachat.ai, datachat.ai.tools, datachat.core, datachat.services):
        assert getattr(package, "__file__", None) is None
