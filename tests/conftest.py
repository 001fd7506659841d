import asyncio
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, List, Optional

import pytest
from google.genai import errors as genai_errors

from gemini_chat.config import DEFAULT_ALLOWED_MIME_TYPES, Settings
from gemini_chat.controller import ChatSessionController
from gemini_chat.session_store import SessionStore
from gemini_chat.storage import MemorySlot
from gemini_chat.stream_ingestor import StreamIngestor


def make_chunk(text: Optional[str], sources: Optional[List[tuple]] = None) -> SimpleNamespace:
    """Build an SDK-shaped response chunk with optional (uri, title) grounding sources."""
    candidates = []
    if sources is not None:
        grounding = [SimpleNamespace(web=SimpleNamespace(uri=uri, title=title)) for uri, title in sources]
        candidates.append(SimpleNamespace(grounding_metadata=SimpleNamespace(grounding_chunks=grounding)))
    return SimpleNamespace(text=text, candidates=candidates)


class FakeGeminiClient:
    """Scripted stand-in for GeminiClient.stream_content."""

    def __init__(
        self,
        chunks: Optional[list] = None,
        error: Optional[Exception] = None,
        configured: bool = True,
        gate: Optional[asyncio.Event] = None,
        before_chunk: Optional[Callable[[int], None]] = None,
        stall: bool = False,
    ) -> None:
        self.chunks = list(chunks or [])
        self.error = error
        self.configured = configured
        self.gate = gate
        self.before_chunk = before_chunk
        self.stall = stall
        self.calls: List[dict] = []

    def is_configured(self) -> bool:
        return self.configured

    async def stream_content(self, contents, model=None, config=None):
        self.calls.append({"contents": contents, "model": model, "config": config})
        if self.gate is not None:
            await self.gate.wait()
        for index, chunk in enumerate(self.chunks):
            if self.before_chunk is not None:
                self.before_chunk(index)
            yield chunk
        if self.stall:
            await asyncio.sleep(3600)
        if self.error is not None:
            raise self.error


@pytest.fixture
def slot():
    return MemorySlot()


@pytest.fixture
def store(slot):
    return SessionStore(slot)


@pytest.fixture
def fake_client():
    return FakeGeminiClient()


@pytest.fixture
def controller(store, fake_client):
    controller = ChatSessionController(store, StreamIngestor(fake_client))
    controller.bootstrap()
    return controller


def make_settings(tmp_path: Path, api_key: str = "test-key") -> Settings:
    return Settings(
        gemini_api_key=api_key,
        default_model="gemini-3-flash-preview",
        data_dir=tmp_path / "data",
        sessions_key="gemini_chat_sessions",
        max_attachment_bytes=10 * 1024 * 1024,
        allowed_mime_types=DEFAULT_ALLOWED_MIME_TYPES,
        log_level="INFO",
    )


def api_error(code: int, message: str = "") -> genai_errors.APIError:
    """Build the SDK error the service raises for an HTTP status."""
    body = {"error": {"code": code, "message": message, "status": ""}}
    if code >= 500:
        return genai_errors.ServerError(code, body)
    return genai_errors.ClientError(code, body)
