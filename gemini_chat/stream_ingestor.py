"""Request shaping and response folding for streamed Gemini replies.

Role:
    Turns session history plus the new user turn into SDK contents, opens one
    streaming call through GeminiClient, and yields Fragment values in exactly the
    order the service emits them. Every upstream failure terminates the stream as a
    single classified StreamError.

Request contract:
    - history entries flagged is_error, or with neither text nor attachments, are never sent.
    - each entry is {"role", "parts"}; attachments become inline_data parts (in order),
      followed by a text part when the text is non-empty.
    - the new turn always ends with its text part.
    - enable_search adds the google_search tool; enable_thinking only applies to "pro" models.
    - attachment data that is not valid base64 fails the turn as BAD_REQUEST.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, AsyncGenerator, Dict, List, Optional

from google.genai import errors as genai_errors
from google.genai import types

from .errors import StreamError, StreamErrorKind
from .gemini_client import GeminiClient
from .models import Attachment, Fragment, GroundingChunk, GroundingWeb, Message, UserSettings

logger = logging.getLogger("gemini_chat.stream")

PRO_MODEL_MARKER = "pro"


def _attachment_part(attachment: Attachment) -> Dict[str, Any]:
    return {
        "inline_data": {
            "mime_type": attachment.mime_type,
            "data": base64.b64decode(attachment.data),
        }
    }


def build_contents(
    history: List[Message],
    new_message_text: str,
    attachments: List[Attachment],
) -> List[Dict[str, Any]]:
    """Purpose: Map prior messages and the new turn to role/parts contents.
    Inputs/Outputs: Inputs are pre-turn history, new text, new attachments; returns contents.
    Side Effects / State: None; pure function.
    Dependencies: Used by StreamIngestor.stream.
    Failure Modes: Invalid base64 in an attachment raises binascii.Error.
    If Removed: The model receives no conversation context.
    Testing Notes: Error and empty messages are skipped; attachment parts precede text.
    """
    # Skip failed turns so error banners never become model context.
    contents: List[Dict[str, Any]] = []
    for message in history:
        if message.is_error:
            continue
        parts: List[Dict[str, Any]] = [_attachment_part(att) for att in message.attachments or []]
        if message.text:
            parts.append({"text": message.text})
        if not parts:
            # Placeholders left empty by a failed turn carry nothing to send.
            continue
        contents.append({"role": message.role, "parts": parts})

    new_parts = [_attachment_part(att) for att in attachments]
    new_parts.append({"text": new_message_text})
    contents.append({"role": "user", "parts": new_parts})
    return contents


def build_request_options(settings: UserSettings) -> Optional[types.GenerateContentConfig]:
    """Return the SDK request config for the given user settings, or None when nothing is set."""
    tools = [types.Tool(google_search=types.GoogleSearch())] if settings.enable_search else None
    thinking_config = None
    if settings.enable_thinking and PRO_MODEL_MARKER in settings.model:
        thinking_config = types.ThinkingConfig(thinking_budget=settings.thinking_budget)
    if tools is None and thinking_config is None:
        return None
    return types.GenerateContentConfig(tools=tools, thinking_config=thinking_config)


def classify_error(exc: BaseException) -> StreamError:
    """Purpose: Classify an SDK/network failure into a StreamErrorKind.
    Inputs/Outputs: Input is the raised exception; output is a StreamError.
    Side Effects / State: None.
    Dependencies: Reads the HTTP status of google.genai APIError, then the message text.
    Failure Modes: Unrecognized failures become UNKNOWN carrying the original message.
    If Removed: Users see raw SDK errors instead of actionable messages.
    Testing Notes: Cover 400, 401, 403, 429, 500, 503 codes and message-only fallbacks.
    """
    # Prefer the structured status code; fall back to status numbers in the message.
    if isinstance(exc, StreamError):
        return exc
    if isinstance(exc, genai_errors.APIError) and isinstance(exc.code, int):
        code = exc.code
        if code == 400:
            return StreamError(StreamErrorKind.BAD_REQUEST)
        if code in (401, 403):
            return StreamError(StreamErrorKind.UNAUTHORIZED)
        if code == 429:
            return StreamError(StreamErrorKind.RATE_LIMITED)
        if 500 <= code < 600:
            return StreamError(StreamErrorKind.SERVICE_UNAVAILABLE)

    message = str(exc)
    if "400" in message:
        return StreamError(StreamErrorKind.BAD_REQUEST)
    if "401" in message or "403" in message:
        return StreamError(StreamErrorKind.UNAUTHORIZED)
    if "429" in message:
        return StreamError(StreamErrorKind.RATE_LIMITED)
    if "500" in message or "503" in message:
        return StreamError(StreamErrorKind.SERVICE_UNAVAILABLE)
    return StreamError(StreamErrorKind.UNKNOWN, message or None)


def _chunk_text(chunk: Any) -> str:
    # Chunks without text parts report None, or raise ValueError on older SDK releases.
    try:
        text = chunk.text
    except (AttributeError, ValueError):
        return ""
    return text or ""


def _field(source: Any, name: str) -> Any:
    if isinstance(source, dict):
        return source.get(name)
    return getattr(source, name, None)


def _to_grounding_chunk(raw: Any) -> GroundingChunk:
    web = _field(raw, "web")
    uri = _field(web, "uri") if web is not None else None
    if not uri:
        return GroundingChunk(web=None)
    return GroundingChunk(web=GroundingWeb(uri=uri, title=_field(web, "title") or None))


def _chunk_grounding(chunk: Any) -> Optional[List[GroundingChunk]]:
    candidates = _field(chunk, "candidates") or []
    if not candidates:
        return None
    metadata = _field(candidates[0], "grounding_metadata")
    raw_chunks = _field(metadata, "grounding_chunks") if metadata is not None else None
    if not raw_chunks:
        return None
    return [_to_grounding_chunk(raw) for raw in raw_chunks]


def to_fragment(chunk: Any) -> Fragment:
    return Fragment(text_delta=_chunk_text(chunk), grounding_chunks_delta=_chunk_grounding(chunk))


class StreamIngestor:
    """Drive one streaming response and yield fragments in emission order."""

    def __init__(self, client: GeminiClient) -> None:
        self._client = client

    def is_configured(self) -> bool:
        return self._client.is_configured()

    async def stream(
        self,
        history: List[Message],
        new_message_text: str,
        attachments: List[Attachment],
        settings: UserSettings,
    ) -> AsyncGenerator[Fragment, None]:
        """Purpose: Stream a model reply for the new turn as Fragment values.
        Inputs/Outputs: Inputs are pre-turn history, new text/attachments, settings; yields Fragments.
        Side Effects / State: One network call through GeminiClient; no retries.
        Dependencies: build_contents, build_request_options, classify_error.
        Failure Modes: Raises StreamError(UNCONFIGURED) before any call when credentials
            are missing; any upstream failure is re-raised as a classified StreamError.
        If Removed: The controller cannot fold replies into sessions.
        Testing Notes: Feed fake chunks and raise google.genai APIError mid-stream.
        """
        # Fail fast without touching the network when no key is configured.
        if not self._client.is_configured():
            raise StreamError(StreamErrorKind.UNCONFIGURED)

        try:
            contents = build_contents(history, new_message_text, attachments)
        except binascii.Error as exc:
            logger.error("Gemini request rejected: attachment data is not base64 (%s)", exc)
            raise StreamError(StreamErrorKind.BAD_REQUEST, str(exc)) from exc
        config = build_request_options(settings)
        logger.debug(
            "stream start model=%s entries=%d search=%s thinking=%s",
            settings.model,
            len(contents),
            settings.enable_search,
            bool(config and config.thinking_config),
        )
        try:
            async for chunk in self._client.stream_content(contents, model=settings.model, config=config):
                yield to_fragment(chunk)
        except StreamError:
            raise
        except Exception as exc:
            error = classify_error(exc)
            logger.error("Gemini stream failed kind=%s detail=%s", error.kind.value, exc)
            raise error from exc
