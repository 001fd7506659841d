from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List, Optional

from google import genai
from google.genai import types

from .config import Settings


class GeminiClient:
    """Thin wrapper around the Gemini SDK client with streaming calls."""

    def __init__(self, settings: Settings) -> None:
        """Purpose: Build the Gemini SDK client when credentials are present.
        Inputs/Outputs: Input is Settings; no return value.
        Side Effects / State: Holds one genai.Client; no network I/O at construction.
        Dependencies: Uses google.genai and Settings from config.
        Failure Modes: None; a missing key leaves the client unconfigured.
        If Removed: Responses cannot be streamed from Gemini.
        Testing Notes: Missing key must report is_configured() == False.
        """
        # Build the client only when a key exists so the app still boots without one.
        self._settings = settings
        self._client: Optional[genai.Client] = None
        if settings.gemini_api_key:
            self._client = genai.Client(api_key=settings.gemini_api_key)

    def is_configured(self) -> bool:
        return self._client is not None

    def _model_name(self, model: Optional[str]) -> str:
        model_name = _normalize_model_name(model) or _normalize_model_name(self._settings.default_model)
        if not model_name:
            raise ValueError("Gemini model name is required")
        return model_name

    async def stream_content(
        self,
        contents: List[Dict[str, Any]],
        model: Optional[str] = None,
        config: Optional[types.GenerateContentConfig] = None,
    ) -> AsyncIterator[types.GenerateContentResponse]:
        """Purpose: Open a streaming generation call and yield raw SDK chunks.
        Inputs/Outputs: Inputs are role/parts contents, model id and optional config; yields chunks.
        Side Effects / State: Network I/O through client.aio.models.
        Dependencies: Uses genai.Client.aio.models.generate_content_stream.
        Failure Modes: RuntimeError when unconfigured; SDK errors (google.genai.errors)
            propagate unchanged to the caller.
        If Removed: StreamIngestor has no upstream source.
        Testing Notes: Patch aio.models.generate_content_stream and feed fake chunks.
        """
        if self._client is None:
            raise RuntimeError("Gemini client is not configured")
        response = await self._client.aio.models.generate_content_stream(
            model=self._model_name(model),
            contents=contents,
            config=config,
        )
        async for chunk in response:
            yield chunk


def _normalize_model_name(name: Optional[str]) -> str:
    """Purpose: Normalize model names by stripping prefix and whitespace.
    Inputs/Outputs: Input is a model name string; output is normalized name.
    Side Effects / State: None.
    Dependencies: None; used by GeminiClient.
    Failure Modes: Returns empty string for falsy input.
    If Removed: "models/"-prefixed names from clients would reach the SDK unchanged.
    Testing Notes: Ensure "models/foo" becomes "foo" and whitespace is trimmed.
    """
    # Strip "models/" prefix and whitespace.
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned
