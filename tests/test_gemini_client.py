from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from google.genai import types

from conftest import make_settings
from gemini_chat.gemini_client import GeminiClient, _normalize_model_name
from gemini_chat.models import UserSettings
from gemini_chat.stream_ingestor import build_request_options


class FakeResponse:
    def __init__(self, chunks):
        self._chunks = chunks

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk


def test_normalize_model_name():
    assert _normalize_model_name(" models/gemini-3-pro-preview ") == "gemini-3-pro-preview"
    assert _normalize_model_name(None) == ""


@pytest.mark.asyncio
async def test_missing_key_leaves_client_unconfigured(tmp_path):
    client = GeminiClient(make_settings(tmp_path, api_key=""))

    assert not client.is_configured()
    with pytest.raises(RuntimeError):
        async for _chunk in client.stream_content([]):
            pass


@pytest.mark.asyncio
async def test_stream_content_sends_typed_config_and_yields_chunks(tmp_path):
    chunks = [SimpleNamespace(text="a"), SimpleNamespace(text="b")]
    client = GeminiClient(make_settings(tmp_path))
    config = build_request_options(
        UserSettings(model="gemini-3-pro-preview", enable_search=True, enable_thinking=True)
    )
    contents = [{"role": "user", "parts": [{"text": "hi"}]}]

    with patch.object(
        client._client.aio.models,
        "generate_content_stream",
        AsyncMock(return_value=FakeResponse(chunks)),
    ) as generate:
        received = [
            chunk async for chunk in client.stream_content(contents, model="models/gemini-3-pro-preview", config=config)
        ]

    assert client.is_configured()
    assert received == chunks
    generate.assert_awaited_once_with(model="gemini-3-pro-preview", contents=contents, config=config)
    sent = generate.await_args.kwargs["config"]
    assert sent.tools == [types.Tool(google_search=types.GoogleSearch())]
    assert sent.thinking_config == types.ThinkingConfig(thinking_budget=1024)


@pytest.mark.asyncio
async def test_default_model_is_used_without_config(tmp_path):
    client = GeminiClient(make_settings(tmp_path))

    with patch.object(
        client._client.aio.models,
        "generate_content_stream",
        AsyncMock(return_value=FakeResponse([])),
    ) as generate:
        async for _chunk in client.stream_content([]):
            pass

    generate.assert_awaited_once_with(model="gemini-3-flash-preview", contents=[], config=None)
