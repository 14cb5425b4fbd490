from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import openai
import pytest

from taskpilot.config import AgentConfig
from taskpilot.errors import (
    ConfigurationError,
    ContextWindowExceededError,
    ProviderError,
    RateLimitedError,
)
from taskpilot.models import ImageBlock, Message, TextBlock
from taskpilot.providers import (
    DEFAULT_CONTEXT_WINDOW,
    OpenAICompatibleHandler,
    _to_openai,
    build_api_handler,
    model_info,
)

REQUEST = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")


def _text_chunk(content, reasoning=None):
    delta = SimpleNamespace(content=content, reasoning=reasoning)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta)], usage=None)


def _usage_chunk(prompt_tokens, completion_tokens):
    usage = SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
    return SimpleNamespace(choices=[], usage=usage)


async def _stream(*chunks):
    for chunk in chunks:
        yield chunk


async def _collect(handler):
    return [chunk async for chunk in handler.create_message("system", [Message(role="user", content=[TextBlock(text="hi")])])]


@pytest.fixture
def handler():
    return build_api_handler(AgentConfig(api_provider="openrouter", api_key="sk-test"))


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def test_unsupported_provider():
    with pytest.raises(ConfigurationError, match="Unsupported API provider: bedrock"):
        build_api_handler(AgentConfig(api_provider="bedrock", api_key="x"))


def test_missing_api_key(monkeypatch):
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)

    with pytest.raises(ConfigurationError, match="OPENROUTER_API_KEY"):
        build_api_handler(AgentConfig(api_provider="openrouter"))


def test_api_key_from_environment(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")

    handler = build_api_handler(AgentConfig(api_provider="openai", model="gpt-4o"))

    assert isinstance(handler, OpenAICompatibleHandler)
    assert handler.get_model().context_window == 128_000


def test_unknown_model_gets_default_window():
    info = model_info("vendor/unknown-model")

    assert info.id == "vendor/unknown-model"
    assert info.context_window == DEFAULT_CONTEXT_WINDOW


# ---------------------------------------------------------------------------
# Message conversion
# ---------------------------------------------------------------------------


def test_to_openai_user_message_with_image():
    message = Message(role="user", content=[TextBlock(text="look"), ImageBlock(data="aW1n", media_type="image/png")])

    assert _to_openai(message) == {
        "role": "user",
        "content": [
            {"type": "text", "text": "look"},
            {"type": "image_url", "image_url": {"url": "data:image/png;base64,aW1n"}},
        ],
    }


def test_to_openai_assistant_message_is_plain_text():
    message = Message(role="assistant", content=[TextBlock(text="one"), TextBlock(text="two")])

    assert _to_openai(message) == {"role": "assistant", "content": "one\ntwo"}


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stream_yields_text_reasoning_and_usage(handler):
    stream = _stream(
        _text_chunk(None, reasoning="thinking"),
        _text_chunk("Hello"),
        _text_chunk(" world"),
        _usage_chunk(1000, 500),
    )
    with patch.object(handler._client.chat.completions, "create", AsyncMock(return_value=stream)) as create:
        chunks = await _collect(handler)

    assert [(c.type, c.text) for c in chunks[:3]] == [
        ("reasoning", "thinking"),
        ("text", "Hello"),
        ("text", " world"),
    ]
    usage = chunks[3]
    assert (usage.type, usage.input_tokens, usage.output_tokens) == ("usage", 1000, 500)
    assert usage.total_cost == pytest.approx(1000 / 1e6 * 3.0 + 500 / 1e6 * 15.0)

    kwargs = create.await_args.kwargs
    assert kwargs["stream"] is True
    assert kwargs["messages"][0] == {"role": "system", "content": "system"}


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_rate_limit_is_translated(handler):
    response = httpx.Response(429, headers={"retry-after": "20"}, request=REQUEST)
    error = openai.RateLimitError("Too many requests", response=response, body=None)

    with patch.object(handler._client.chat.completions, "create", AsyncMock(side_effect=error)):
        with pytest.raises(RateLimitedError) as excinfo:
            await _collect(handler)

    assert excinfo.value.status_code == 429
    assert excinfo.value.retry_after == 20


@pytest.mark.asyncio
async def test_context_overflow_is_translated(handler):
    response = httpx.Response(400, request=REQUEST)
    error = openai.BadRequestError(
        "This model's maximum context length is 200000 tokens", response=response, body=None
    )

    with patch.object(handler._client.chat.completions, "create", AsyncMock(side_effect=error)):
        with pytest.raises(ContextWindowExceededError) as excinfo:
            await _collect(handler)

    assert excinfo.value.provider == "openrouter"
    assert excinfo.value.model == "anthropic/claude-3.5-sonnet"


@pytest.mark.asyncio
async def test_other_errors_are_provider_errors(handler):
    response = httpx.Response(500, request=REQUEST)
    error = openai.InternalServerError("upstream exploded", response=response, body=None)

    with patch.object(handler._client.chat.completions, "create", AsyncMock(side_effect=error)):
        with pytest.raises(ProviderError) as excinfo:
            await _collect(handler)

    assert not isinstance(excinfo.value, ContextWindowExceededError)
    assert excinfo.value.status_code == 500
