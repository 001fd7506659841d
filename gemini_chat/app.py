from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse

from .attachment_validator import AttachmentValidator
from .config import Settings, load_settings
from .controller import ChatSessionController
from .errors import AttachmentErrorKind, AttachmentRejected, SessionNotFound, StreamInProgress
from .gemini_client import GeminiClient
from .models import (
    AVAILABLE_MODELS,
    Attachment,
    AttachmentUpload,
    ChatSession,
    ModelInfo,
    SessionListResponse,
    SessionSummary,
    StatusResponse,
    SubmitTurnRequest,
    UserSettings,
)
from .session_store import SessionStore
from .storage import JsonFileSlot, KeyValueSlot
from .stream_ingestor import StreamIngestor

BASE_DIR = Path(__file__).resolve().parent

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("gemini_chat").setLevel(log_level)
logger = logging.getLogger("gemini_chat.app")

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)


def _http_error(exc: Exception) -> HTTPException:
    """Purpose: Map domain errors to HTTP errors for API clients.
    Inputs/Outputs: Input is a ChatError subclass; output is an HTTPException.
    Side Effects / State: None.
    Dependencies: Error taxonomy in errors.py.
    Failure Modes: Unmapped errors become 500.
    If Removed: Validation and conflict errors surface as opaque 500 responses.
    Testing Notes: TOO_LARGE -> 413, UNSUPPORTED_TYPE -> 400, unknown session -> 404.
    """
    # Keep domain messages; only the status code is HTTP-specific.
    if isinstance(exc, AttachmentRejected):
        status = 413 if exc.kind is AttachmentErrorKind.TOO_LARGE else 400
        return HTTPException(status_code=status, detail={"kind": exc.kind.value, "message": str(exc)})
    if isinstance(exc, SessionNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, StreamInProgress):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _summaries(controller: ChatSessionController) -> SessionListResponse:
    return SessionListResponse(
        sessions=[
            SessionSummary(
                id=session.id,
                title=session.title,
                updated_at=session.updated_at,
                message_count=len(session.messages),
            )
            for session in controller.store.sessions
        ],
        current_session_id=controller.current_session_id,
    )


def create_app(
    settings: Optional[Settings] = None,
    ingestor: Optional[StreamIngestor] = None,
    slot: Optional[KeyValueSlot] = None,
) -> FastAPI:
    """Purpose: Wire settings, storage, streaming, and routes into a FastAPI app.
    Inputs/Outputs: Optional overrides for settings, ingestor, and slot; returns the app.
    Side Effects / State: Configures the Gemini SDK when a key is present; sessions are
        restored from the slot at startup (lifespan), not at construction.
    Dependencies: SessionStore, StreamIngestor, ChatSessionController.
    Failure Modes: Invalid environment values raise ValueError from load_settings.
    If Removed: No HTTP surface for the chat backend.
    Testing Notes: Inject a MemorySlot and a fake ingestor and drive it with TestClient.
    """
    # Build the object graph explicitly; nothing below reaches for globals.
    settings = settings or load_settings()
    store = SessionStore(slot or JsonFileSlot(settings.data_dir), key=settings.sessions_key)
    validator = AttachmentValidator(settings.max_attachment_bytes, settings.allowed_mime_types)
    controller = ChatSessionController(
        store,
        ingestor or StreamIngestor(GeminiClient(settings)),
        validator=validator,
    )
    user_settings = {"current": UserSettings(model=settings.default_model)}

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        session = controller.bootstrap()
        logger.info("bootstrap sessions=%d current=%s", len(store.sessions), session.id)
        yield

    app = FastAPI(title="Gemini Chat Backend", lifespan=lifespan)
    app.state.controller = controller

    @app.get("/api/status", response_model=StatusResponse)
    async def status() -> StatusResponse:
        return StatusResponse(configured=controller.is_configured())

    @app.get("/api/models", response_model=List[ModelInfo])
    async def list_models() -> List[ModelInfo]:
        return AVAILABLE_MODELS

    @app.get("/api/settings", response_model=UserSettings)
    async def get_settings() -> UserSettings:
        return user_settings["current"]

    @app.put("/api/settings", response_model=UserSettings)
    async def update_settings(request: UserSettings) -> UserSettings:
        user_settings["current"] = request
        return request

    @app.get("/api/sessions", response_model=SessionListResponse)
    async def list_sessions() -> SessionListResponse:
        return _summaries(controller)

    @app.post("/api/sessions", response_model=ChatSession)
    async def create_session() -> ChatSession:
        return controller.create_session()

    @app.delete("/api/sessions", response_model=ChatSession)
    async def clear_sessions() -> ChatSession:
        return controller.clear_history()

    @app.get("/api/sessions/{session_id}", response_model=ChatSession)
    async def get_session(session_id: str) -> ChatSession:
        session = controller.store.get(session_id)
        if session is None:
            raise _http_error(SessionNotFound(f"Unknown session: {session_id}"))
        return session

    @app.post("/api/sessions/{session_id}/select", response_model=ChatSession)
    async def select_session(session_id: str) -> ChatSession:
        try:
            return controller.select_session(session_id)
        except SessionNotFound as exc:
            raise _http_error(exc) from exc

    @app.delete("/api/sessions/{session_id}", response_model=SessionListResponse)
    async def delete_session(session_id: str) -> SessionListResponse:
        try:
            controller.delete_session(session_id)
        except SessionNotFound as exc:
            raise _http_error(exc) from exc
        return _summaries(controller)

    @app.post("/api/attachments", response_model=Attachment)
    async def add_attachment(upload: AttachmentUpload) -> Attachment:
        return _prepare_upload(controller, upload)

    @app.post("/api/sessions/{session_id}/messages")
    async def submit_message(session_id: str, request: SubmitTurnRequest) -> StreamingResponse:
        """Purpose: Submit a user turn and stream session snapshots as NDJSON.
        Inputs/Outputs: Input is text plus raw attachments; output streams one ChatSession
            JSON document per line after every state mutation.
        Side Effects / State: Runs ChatSessionController.submit_turn as a task.
        Dependencies: Controller listener hook bridged through an asyncio.Queue.
        Failure Modes: Unknown session 404, active stream 409, rejected attachment 400/413;
            streaming failures arrive as an error message inside the last snapshot.
        If Removed: Clients cannot chat.
        Testing Notes: Read all lines and check the last snapshot's messages.
        """
        # Reject everything checkable before the first message is constructed.
        if controller.store.get(session_id) is None:
            raise _http_error(SessionNotFound(f"Unknown session: {session_id}"))
        attachments = [_prepare_upload(controller, upload) for upload in request.attachments]

        queue: asyncio.Queue = asyncio.Queue()
        try:
            turn = controller.begin_turn(
                session_id,
                request.text,
                attachments,
                user_settings["current"],
                listener=queue.put_nowait,
            )
        except (SessionNotFound, StreamInProgress) as exc:
            raise _http_error(exc) from exc
        task = asyncio.create_task(turn)
        task.add_done_callback(lambda _: queue.put_nowait(None))

        async def events() -> AsyncIterator[str]:
            while True:
                session = await queue.get()
                if session is None:
                    break
                yield session.model_dump_json() + "\n"
            exc = None if task.cancelled() else task.exception()
            if exc is not None:
                logger.error("session=%s turn aborted: %s", session_id, exc)
                yield json.dumps({"error": str(exc)}) + "\n"

        return StreamingResponse(events(), media_type="application/x-ndjson")

    return app


def _prepare_upload(controller: ChatSessionController, upload: AttachmentUpload) -> Attachment:
    try:
        payload = base64.b64decode(upload.data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=400, detail="Attachment data is not valid base64") from exc
    try:
        return controller.add_attachment(upload.name, upload.mime_type, payload)
    except AttachmentRejected as exc:
        raise _http_error(exc) from exc


app = create_app()
