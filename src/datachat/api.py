"""HTTP surface: ask, stream, clear session, download export."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from datachat import __version__
from datachat.ai.orchestrator import QueryOrchestrator
from datachat.app import DataChatApp
from datachat.log import get_logger

logger = get_logger(__name__)

ANONYMOUS_USER = "anonymous"


class AskRequest(BaseModel):
    question: str = Field(min_length=1)


class ToolCallView(BaseModel):
    id: str
    name: str
    arguments: dict[str, Any]
    success: bool | None = None
    result_kind: str | None = None
    total_count: int = 0
    query: str | None = None
    error: str | None = None
    file_id: str | None = None
    file_name: str | None = None


class AskResponse(BaseModel):
    success: bool
    outcome: str
    answer: str | None = None
    error: str | None = None
    tool_calls: list[ToolCallView] = Field(default_factory=list)


def _tool_call_view(call: Any) -> ToolCallView:
    result = call.result
    view = ToolCallView(id=call.id, name=call.name, arguments=call.arguments)
    if result is not None:
        view.success = result.success
        view.result_kind = result.kind.value if result.kind else None
        view.total_count = result.total_count
        view.query = result.query
        view.error = result.error
        file_id = getattr(result.payload, "file_id", None)
        if file_id:
            view.file_id = file_id
            view.file_name = result.payload.file_name
    return view


def get_datachat(request: Request) -> DataChatApp:
    return request.app.state.datachat


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    return x_user_id or ANONYMOUS_USER


def get_orchestrator(assistant_id: str, datachat: DataChatApp = Depends(get_datachat)) -> QueryOrchestrator:
    orchestrator = datachat.get_orchestrator(assistant_id)
    if orchestrator is None:
        raise HTTPException(status_code=404, detail=f"Unknown assistant: {assistant_id}")
    return orchestrator


def create_app(datachat: DataChatApp, manage_lifecycle: bool = True) -> FastAPI:
    """Build the FastAPI app around an already configured :class:`DataChatApp`."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if manage_lifecycle:
            await datachat.start()
        yield
        if manage_lifecycle:
            await datachat.stop()

    app = FastAPI(title="datachat", version=__version__, lifespan=lifespan)
    app.state.datachat = datachat

    @app.get("/health")
    async def health(dc: DataChatApp = Depends(get_datachat)) -> dict[str, Any]:
        services = await dc.service_manager.health_check_all()
        return {"status": "ok" if all(services.values()) else "degraded", "services": services}

    @app.get("/assistants")
    async def assistants(dc: DataChatApp = Depends(get_datachat)) -> list[dict[str, Any]]:
        return [{"id": o.assistant_id, "tools": o.registry.names()} for o in dc.orchestrators.values()]

    @app.post("/chat/{assistant_id}", response_model=AskResponse)
    async def ask(
        body: AskRequest,
        orchestrator: QueryOrchestrator = Depends(get_orchestrator),
        user_id: str = Depends(get_user_id),
    ) -> AskResponse:
        result = await orchestrator.ask(user_id, body.question)
        return AskResponse(
            success=result.success,
            outcome=result.outcome.value,
            answer=result.answer,
            error=result.error,
            tool_calls=[_tool_call_view(c) for c in result.tool_calls],
        )

    @app.post("/chat/{assistant_id}/stream")
    async def ask_stream(
        body: AskRequest,
        orchestrator: QueryOrchestrator = Depends(get_orchestrator),
        user_id: str = Depends(get_user_id),
    ) -> StreamingResponse:
        return StreamingResponse(
            orchestrator.stream_reply(user_id, body.question),
            media_type="text/plain; charset=utf-8",
        )

    @app.delete("/chat/{assistant_id}/session")
    async def clear_session(
        orchestrator: QueryOrchestrator = Depends(get_orchestrator),
        user_id: str = Depends(get_user_id),
    ) -> dict[str, bool]:
        return {"cleared": orchestrator.clear_session(user_id)}

    @app.get("/exports/{file_id}")
    async def download_export(file_id: str, dc: DataChatApp = Depends(get_datachat)) -> Response:
        artifact = dc.export_sink.get(file_id)
        if artifact is None:
            raise HTTPException(status_code=404, detail="Export not found or expired")
        return Response(
            content=artifact.data,
            media_type=artifact.media_type,
            headers={"Content-Disposition": f'attachment; filename="{artifact.file_name}"'},
        )

    return app
