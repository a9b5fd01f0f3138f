import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from .agent import get_service
from .errors import InvalidInputError, SessionBusyError, StoreUnavailableError
from .models import AgentState
from .services.chat_service import ChatService
from .services.message_store import close_message_store
from .settings import get_settings


def setup_server_logging(logs_dir: Path | None = None, level: str | None = None) -> logging.Logger:
    """Configure and return the server logger."""
    settings = get_settings()
    logs_dir = logs_dir or settings.log_dir
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("obsidianagent")
    if logger.handlers:
        return logging.getLogger("obsidianagent.server")

    logger.setLevel(level or settings.log_level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logging.getLogger("obsidianagent.server")


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


LOGGER = setup_server_logging()
settings = get_settings()

_chat_service: ChatService | None = None


def get_chat_service() -> ChatService:
    global _chat_service
    if _chat_service is None:
        service = get_service()
        _chat_service = ChatService(
            store=service.store, memory=service.memory, model=service.model
        )
    return _chat_service


class ChatRequest(BaseModel):
    session_id: str | None = None
    message: str = ""


class SessionCreateRequest(BaseModel):
    title: str | None = None


class TitleUpdateRequest(BaseModel):
    title: str = ""


def _resolve_session_id(session_id: str | None) -> str:
    if session_id and session_id.strip():
        return session_id.strip()
    return str(uuid.uuid4())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the message store and load tools at startup; close Redis on shutdown."""
    LOGGER.info("Starting agent service...")
    await get_service().startup()
    get_chat_service()
    LOGGER.info("Agent service ready")

    yield

    LOGGER.info("Shutting down...")
    await close_message_store()


app = FastAPI(
    title="ObsidianAgent",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_body(error: str, message: str) -> dict[str, Any]:
    return {
        "error": error,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.exception_handler(InvalidInputError)
async def invalid_input_handler(request: Request, exc: InvalidInputError) -> JSONResponse:
    LOGGER.warning("Validation error: %s", exc)
    return JSONResponse(status_code=400, content=_error_body("VALIDATION_ERROR", str(exc)))


@app.exception_handler(SessionBusyError)
async def session_busy_handler(request: Request, exc: SessionBusyError) -> JSONResponse:
    LOGGER.warning("Session busy: %s", exc)
    return JSONResponse(status_code=409, content=_error_body("SESSION_BUSY", str(exc)))


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(
    request: Request, exc: StoreUnavailableError
) -> JSONResponse:
    return JSONResponse(status_code=503, content=_error_body("STORE_UNAVAILABLE", str(exc)))


@app.get("/health")
async def health() -> dict[str, Any]:
    """Health check for load balancers and monitoring.

    Returns:
        dict[str, Any]: JSON response with status field.
    """
    return {"status": "ok"}


@app.post("/api/chat")
async def chat(request: ChatRequest) -> dict[str, Any]:
    """Run the agent to completion and return its final text."""
    session_id = _resolve_session_id(request.session_id)
    LOGGER.info("Chat request for session: %s", session_id)
    if not request.message or not request.message.strip():
        raise InvalidInputError("Message must not be empty")
    get_chat_service().schedule_title(session_id, request.message)
    result = await get_service().run(session_id, request.message)
    return {
        "session_id": session_id,
        "message": result.text,
        "status": "success" if result.state is AgentState.FINISHED else "error",
        "state": result.state.value,
        "steps": result.steps,
        "durable": result.durable,
        "timestamp": int(datetime.now(timezone.utc).timestamp() * 1000),
    }


@app.post("/api/chat/stream")
async def chat_stream(request: ChatRequest) -> StreamingResponse:
    """Server-sent events: one `data:` line per engine event, ending with done or error."""
    session_id = _resolve_session_id(request.session_id)
    LOGGER.info("Received stream chat request for session: %s", session_id)
    if not request.message or not request.message.strip():
        raise InvalidInputError("Message must not be empty")
    handle = await get_service().run_stream(session_id, request.message)
    get_chat_service().schedule_title(session_id, request.message)

    async def event_source() -> AsyncIterator[str]:
        try:
            async for event in handle:
                yield f"data: {json.dumps(event.to_dict())}\n\n"
        finally:
            # client gone or stream over; the run finishes on its own
            handle.detach()
            LOGGER.info("SSE stream closed for session: %s", session_id)

    return StreamingResponse(event_source(), media_type="text/event-stream")


@app.websocket("/ws/chat")
async def chat_ws(websocket: WebSocket) -> None:
    """WebSocket chat endpoint: client sends { session_id, message }, server streams events then done.

    Args:
        websocket: WebSocket connection from client.

    Expected Input (JSON):
        {
            "session_id": str - session identifier (generated when missing),
            "message": str - user query text
        }

    Response Format:
        Streams JSON objects with fields:
        - {"type": "thought", "step": int, "data": str} - model reasoning text
        - {"type": "tool", "step": int, "tool": str, "tool_call_id": str, "data": str} - tool result
        - {"type": "step", "step": int, "data": str} - step summary
        - {"type": "done", "session_id": str, "state": str, "steps": int, "durable": bool, "data": str}
        - {"type": "error", "data": str} - error message if applicable
    """
    await websocket.accept()
    handle = None
    try:
        raw = await websocket.receive_text()
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            LOGGER.error("Invalid WS payload (not JSON): %s", e)
            await websocket.send_json({"type": "error", "data": "Invalid JSON payload"})
            await websocket.close()
            return

        session_id = _resolve_session_id(str(payload.get("session_id") or ""))
        message = str(payload.get("message") or "").strip()

        if not message:
            await websocket.send_json({"type": "error", "data": "Empty message"})
            await websocket.close()
            return

        LOGGER.info("WS chat start session_id=%s", session_id)

        try:
            handle = await get_service().run_stream(session_id, message)
        except (InvalidInputError, SessionBusyError) as e:
            await websocket.send_json({"type": "error", "data": str(e)})
            await websocket.close()
            return
        get_chat_service().schedule_title(session_id, message)

        async for event in handle:
            await websocket.send_json(event.to_dict())
        await websocket.close()

    except WebSocketDisconnect:
        LOGGER.info("WS disconnect")
        if handle is not None:
            handle.detach()
    except (ConnectionError, TimeoutError, RuntimeError) as e:
        LOGGER.exception("Unexpected WS error: %s", e)
        if handle is not None:
            handle.detach()
        try:
            await websocket.send_json({"type": "error", "data": str(e)})
        except (OSError, RuntimeError, ValueError, TypeError):
            pass
        try:
            await websocket.close()
        except (OSError, RuntimeError):
            pass


@app.post("/api/chat/sessions")
async def create_session(request: SessionCreateRequest | None = None) -> dict[str, str]:
    session_id = await get_chat_service().create_session(request.title if request else None)
    LOGGER.info("Created new session: %s", session_id)
    return {"session_id": session_id}


@app.get("/api/chat/sessions")
async def list_sessions(limit: int = 100) -> list[dict[str, Any]]:
    return await get_chat_service().list_sessions(limit)


@app.get("/api/chat/sessions/{session_id}")
async def get_session(session_id: str) -> JSONResponse:
    details = await get_chat_service().get_session_details(session_id)
    if details is None:
        return JSONResponse(status_code=404, content=_error_body("NOT_FOUND", "Session not found"))
    return JSONResponse(content=details)


@app.put("/api/chat/sessions/{session_id}/title")
async def update_session_title(session_id: str, request: TitleUpdateRequest) -> dict[str, str]:
    title = await get_chat_service().update_title(session_id, request.title)
    return {"message": "Title updated", "title": title}


@app.delete("/api/chat/sessions/{session_id}")
async def delete_session(session_id: str) -> dict[str, str]:
    await get_chat_service().delete_session(session_id)
    return {"message": "Session deleted"}


@app.get("/api/chat/sessions/{session_id}/messages")
async def get_session_messages(session_id: str, limit: int = 50) -> list[dict[str, Any]]:
    return await get_chat_service().get_messages(session_id, limit)


@app.get("/api/chat/search")
async def search_messages(
    keyword: str, limit: int = 20, session_id: str | None = None
) -> list[dict[str, Any]]:
    return await get_chat_service().search_messages(keyword, limit, session_id=session_id)


@app.get("/api/chat/stats")
async def get_statistics() -> dict[str, Any]:
    return await get_chat_service().get_statistics()


def run() -> None:
    """Serve the API with uvicorn using HOST/PORT from settings."""
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
