from __future__ import annotations

from enum import Enum
from typing import Optional


class ChatError(Exception):
    """Base exception for chat backend errors."""


class AttachmentErrorKind(str, Enum):
    TOO_LARGE = "too_large"
    UNSUPPORTED_TYPE = "unsupported_type"


class AttachmentRejected(ChatError):
    """Attachment failed size/type policy and must not enter a message."""

    def __init__(self, kind: AttachmentErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class StreamErrorKind(str, Enum):
    UNCONFIGURED = "unconfigured"
    BAD_REQUEST = "bad_request"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


_STREAM_ERROR_MESSAGES = {
    StreamErrorKind.UNCONFIGURED: "API Key is missing. Please configure GEMINI_API_KEY.",
    StreamErrorKind.BAD_REQUEST: (
        "Bad Request (400). Please check your request, the model might not support "
        "this input or the image is too large."
    ),
    StreamErrorKind.UNAUTHORIZED: "Unauthorized (401/403). Invalid API Key or permissions.",
    StreamErrorKind.RATE_LIMITED: "Too Many Requests (429). You have hit the rate limit.",
    StreamErrorKind.SERVICE_UNAVAILABLE: (
        "Server Error (500/503). Google's services are currently experiencing issues."
    ),
    StreamErrorKind.TIMEOUT: "Timed out waiting for a response from Gemini.",
    StreamErrorKind.UNKNOWN: "An error occurred while communicating with Gemini.",
}


class StreamError(ChatError):
    """Classified failure that terminates a response stream."""

    def __init__(self, kind: StreamErrorKind, detail: Optional[str] = None) -> None:
        super().__init__(detail or _STREAM_ERROR_MESSAGES[kind])
        self.kind = kind
        self.detail = detail

    def human_message(self) -> str:
        """Return user-facing text; unknown failures keep the upstream message."""
        if self.kind is StreamErrorKind.UNKNOWN and self.detail:
            return self.detail
        return _STREAM_ERROR_MESSAGES[self.kind]


class PersistenceError(ChatError):
    """Durable slot could not be read or written."""


class SessionNotFound(ChatError):
    """No session exists with the requested id."""


class StreamInProgress(ChatError):
    """A response is already streaming into the session."""
