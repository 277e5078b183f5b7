from __future__ import annotations

import httpx
import pytest

from datachat.api import create_app
from datachat.app import DataChatApp
from datachat.config import AppConfig
from datachat.services.export import XLSX_MEDIA_TYPE

from conftest import ScriptedEngine, ScriptedLLMClient, text_reply, tool_reply


@pytest.fixture
def config() -> AppConfig:
    return AppConfig(
        llm={"api_key": "unused"},
        documents={},
        relational={"url": "mssql+aioodbc://unused"},
        assistants=[
            {"id": "movies", "backend": "documents", "tools": ["find_movies_by_genre", "export_to_excel"]},
            {"id": "sql", "backend": "relational"},
        ],
    )


@pytest.fixture
def build(config, movie_db):
    """Return a factory producing an HTTP client around a scripted datachat app."""
    def _build(responses=(), fragments=(), responder=None):
        llm = ScriptedLLMClient(list(responses), list(fragments))
        engine = ScriptedEngine(responder)
        datachat = DataChatApp(config, llm_client=llm, document_db=movie_db, sql_engine=engine)
        app = create_app(datachat, manage_lifecycle=False)
        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")
        return client, datachat, llm

    return _build


async def test_list_assistants(build):
    client, _, _ = build()
    async with client:
        response = await client.get("/assistants")
    assert response.status_code == 200
    assert response.json() == [
        {"id": "movies", "tools": ["find_movies_by_genre", "export_to_excel"]},
        {"id": "sql", "tools": ["list_tables", "describe_table", "get_sample_data", "read_data", "export_to_excel"]},
    ]


async def test_health_lists_services(build):
    client, _, _ = build()
    async with client:
        response = await client.get("/health")
    assert response.status_code == 200
    assert "sweeper" in response.json()["services"]


async def test_chat_runs_tools_and_answers(build):
    client, _, llm = build(
        [tool_reply(("c1", "find_movies_by_genre", '{"genre": "Drama"}')), text_reply("Two dramas.")]
    )
    async with client:
        response = await client.post("/chat/movies", json={"question": "any dramas?"}, headers={"X-User-Id": "alice"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["outcome"] == "answered"
    assert body["answer"] == "Two dramas."
    call = body["tool_calls"][0]
    assert call["name"] == "find_movies_by_genre"
    assert call["arguments"] == {"genre": "Drama"}
    assert call["result_kind"] == "movies"
    assert call["total_count"] == 2
    assert len(llm.requests) == 2


async def test_unknown_assistant_is_404(build):
    client, _, _ = build()
    async with client:
        response = await client.post("/chat/nope", json={"question": "hi"})
    assert response.status_code == 404
    assert response.json()["detail"] == "Unknown assistant: nope"


async def test_empty_question_is_rejected(build):
    client, _, _ = build()
    async with client:
        response = await client.post("/chat/movies", json={"question": ""})
    assert response.status_code == 422


async def test_model_failure_is_reported_not_raised(build):
    client, _, _ = build()
    async with client:
        response = await client.post("/chat/movies", json={"question": "hi"})
    body = response.json()
    assert response.status_code == 200
    assert body["success"] is False
    assert body["outcome"] == "failed"
    assert body["error"] == "script exhausted"


async def test_export_then_download(build):
    client, datachat, _ = build(
        [
            tool_reply(("c1", "export_to_excel", '{"query": "SELECT Id, Name FROM Customers"}')),
            text_reply("Your file is ready."),
        ],
        responder=lambda sql, params: (["Id", "Name"], [(1, "Ann"), (2, "Bo")]),
    )
    async with client:
        answer = await client.post("/chat/sql", json={"question": "export customers"})
        call = answer.json()["tool_calls"][0]
        assert call["success"] is True
        assert call["query"] == "SELECT TOP 1000 Id, Name FROM Customers"

        download = await client.get(f"/exports/{call['file_id']}")

    assert download.status_code == 200
    assert download.headers["content-type"] == XLSX_MEDIA_TYPE
    assert download.headers["content-disposition"] == f'attachment; filename="{call["file_name"]}"'
    assert download.content == datachat.export_sink.get(call["file_id"]).data


async def test_unknown_export_is_404(build):
    client, _, _ = build()
    async with client:
        response = await client.get("/exports/does-not-exist")
    assert response.status_code == 404
    assert response.json()["detail"] == "Export not found or expired"


async def test_clear_session_is_per_user(build):
    client, _, _ = build([text_reply("hello")])
    async with client:
        await client.post("/chat/movies", json={"question": "hi"}, headers={"X-User-Id": "alice"})
        other = await client.delete("/chat/movies/session", headers={"X-User-Id": "bob"})
        mine = await client.delete("/chat/movies/session", headers={"X-User-Id": "alice"})
        again = await client.delete("/chat/movies/session", headers={"X-User-Id": "alice"})

    assert other.json() == {"cleared": False}
    assert mine.json() == {"cleared": True}
    assert again.json() == {"cleared": False}


async def test_stream_returns_text(build):
    client, datachat, _ = build(fragments=["Hel", "lo"])
    async with client:
        response = await client.post("/chat/movies/stream", json={"question": "hi"})

    assert response.status_code == 200
    assert response.text == "Hello"
    session = datachat.get_orchestrator("movies").sessions.get_or_create("anonymous")
    assert session.messages[-1].content == "Hello"
