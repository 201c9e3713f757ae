"""HTTP surface: chat streaming, tool decisions and the attachment side-channel."""

from __future__ import annotations

import logging
from typing import AsyncIterator
from urllib.parse import quote

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from chat_agent.agent_runtime import AgentRuntime
from chat_agent.config import Settings
from chat_agent.errors import StorageUnavailableError
from chat_agent.models import StreamEvent, ToolDecision
from chat_agent.streaming import encode_event
from chat_agent.uploads import FileStore, upload_key

LOGGER = logging.getLogger(__name__)


class DecisionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tool_call_id: str = Field(alias="toolCallId")
    approved: bool

    def to_decision(self) -> ToolDecision:
        return ToolDecision(tool_call_id=self.tool_call_id, approved=self.approved)


class ChatRequest(BaseModel):
    message: str | None = None
    decisions: list[DecisionIn] = Field(default_factory=list)


class DecisionsRequest(BaseModel):
    decisions: list[DecisionIn]


def create_app(runtime: AgentRuntime, settings: Settings, file_store: FileStore | None = None) -> FastAPI:
    """Build the FastAPI application around an already wired runtime."""

    app = FastAPI(title="chat-agent")

    def require_store() -> FileStore:
        if file_store is None:
            LOGGER.error("File store is not bound; set UPLOAD_DIR")
            raise StorageUnavailableError("Server configuration error: file store not available.")
        return file_store

    @app.exception_handler(StorageUnavailableError)
    async def storage_unavailable(request: Request, exc: StorageUnavailableError) -> PlainTextResponse:
        return PlainTextResponse(str(exc), status_code=500)

    @app.post("/api/chat/{conversation_id}")
    async def chat(conversation_id: str, body: ChatRequest) -> StreamingResponse:
        events = runtime.handle_message(
            conversation_id,
            text=body.message,
            decisions=[decision.to_decision() for decision in body.decisions],
        )
        return StreamingResponse(
            _frames(events),
            media_type="text/plain; charset=utf-8",
            headers={"X-Data-Stream": "v1"},
        )

    @app.get("/api/chat/{conversation_id}/messages")
    async def get_messages(conversation_id: str) -> dict:
        return {"messages": [message.to_dict() for message in runtime.history(conversation_id)]}

    @app.post("/api/chat/{conversation_id}/decisions")
    async def post_decisions(conversation_id: str, body: DecisionsRequest) -> dict:
        results = [
            {
                "toolCallId": decision.tool_call_id,
                "accepted": runtime.record_decision(conversation_id, decision.to_decision()),
            }
            for decision in body.decisions
        ]
        return {"decisions": results}

    @app.post("/api/chat/{conversation_id}/cancel")
    async def cancel(conversation_id: str) -> dict:
        return {"cancelled": runtime.cancel(conversation_id)}

    @app.api_route("/api/upload", methods=["PUT", "POST"])
    async def upload(request: Request, files: list[UploadFile] = File(default=[])) -> JSONResponse:
        store = require_store()
        base_url = settings.public_base_url or f"{request.url.scheme}://{request.url.netloc}"
        attachments = []
        for upload_file in files:
            data = await upload_file.read()
            try:
                stored = store.put(upload_file.filename or "", data, upload_file.content_type)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            attachments.append(
                {
                    "name": upload_file.filename,
                    "contentType": stored.content_type,
                    "url": f"{base_url.rstrip('/')}/{quote(stored.key)}",
                }
            )
        return JSONResponse({"attachments": attachments})

    @app.get("/uploads/{file_id}/{filename:path}")
    async def get_upload(file_id: str, filename: str) -> Response:
        store = require_store()
        try:
            stored = store.get(upload_key(file_id, filename))
        except ValueError as exc:
            raise HTTPException(
                status_code=400, detail="Invalid file path format. Expected /uploads/{id}/{filename}"
            ) from exc
        if stored is None:
            return PlainTextResponse("File not found.", status_code=404)
        return Response(content=stored.data, headers={"content-type": stored.content_type})

    @app.get("/check-open-ai-key")
    async def check_open_ai_key() -> dict:
        return {"success": bool(settings.openai_api_key)}

    return app


async def _frames(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield encode_event(event)
