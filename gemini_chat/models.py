from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_TITLE = "New Chat"


class GroundingWeb(BaseModel):
    """Web source referenced by a grounded model response."""
    model_config = ConfigDict(frozen=True)

    uri: str
    title: Optional[str] = None


class GroundingChunk(BaseModel):
    """Citation evidence attached to a model message."""
    model_config = ConfigDict(frozen=True)

    web: Optional[GroundingWeb] = None


class Attachment(BaseModel):
    """Validated, base64-encoded binary payload carried by a message."""
    model_config = ConfigDict(frozen=True)

    mime_type: str
    data: str
    name: Optional[str] = None


class Message(BaseModel):
    """One chat turn entry; model text is only mutated while streaming."""
    id: str
    role: Literal["user", "model"]
    text: str = ""
    timestamp: int
    is_error: bool = False
    grounding_sources: Optional[List[GroundingChunk]] = None
    attachments: Optional[List[Attachment]] = None


class ChatSession(BaseModel):
    """Persisted conversation with ordered messages and a derived title."""
    id: str
    title: str = DEFAULT_TITLE
    messages: List[Message] = Field(default_factory=list)
    created_at: int
    updated_at: int


class UserSettings(BaseModel):
    """Per-request generation options chosen by the user."""
    model: str = "gemini-3-flash-preview"
    enable_search: bool = False
    enable_thinking: bool = False
    thinking_budget: int = 1024


class Fragment(BaseModel):
    """Incremental unit of a streamed response."""
    text_delta: str = ""
    grounding_chunks_delta: Optional[List[GroundingChunk]] = None


class ModelInfo(BaseModel):
    """Selectable model entry for the settings picker."""
    id: str
    name: str
    description: str
    has_thinking: bool


AVAILABLE_MODELS: List[ModelInfo] = [
    ModelInfo(
        id="gemini-3-flash-preview",
        name="Gemini 3.0 Flash",
        description="Fast and versatile",
        has_thinking=False,
    ),
    ModelInfo(
        id="gemini-3-pro-preview",
        name="Gemini 3.0 Pro",
        description="Advanced reasoning",
        has_thinking=True,
    ),
]


class SessionSummary(BaseModel):
    """Lightweight session summary for sidebar listing."""
    id: str
    title: str
    updated_at: int
    message_count: int


class SessionListResponse(BaseModel):
    """Ordered session summaries plus the currently selected session."""
    sessions: List[SessionSummary]
    current_session_id: Optional[str] = None


class AttachmentUpload(BaseModel):
    """Raw attachment submitted by a client before validation."""
    name: Optional[str] = None
    mime_type: str
    data: str


class SubmitTurnRequest(BaseModel):
    """Request payload for submitting one user turn."""
    text: str
    attachments: List[AttachmentUpload] = Field(default_factory=list)


class StatusResponse(BaseModel):
    """Whether the generation service has credentials configured."""
    configured: bool
