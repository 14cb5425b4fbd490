# providers.py
# LLM stream providers.
#
# A provider turns (system prompt, message view) into an async stream of
# StreamChunks tagged text / usage / reasoning, and translates vendor errors
# into ContextWindowExceededError, RateLimitedError or ProviderError.
#
# Providers are a registry keyed by name: adding one means registering a
# new ProviderSpec, not editing a branch.

import os
from dataclasses import dataclass
from typing import AsyncIterator, Protocol

import openai
import structlog
from dotenv import load_dotenv
from openai import AsyncOpenAI

from taskpilot.config import AgentConfig
from taskpilot.errors import (
    ConfigurationError,
    ContextWindowExceededError,
    ProviderError,
    RateLimitedError,
)
from taskpilot.models import ImageBlock, Message, ModelInfo, StreamChunk, TextBlock

load_dotenv()

logger = structlog.get_logger(__name__)

CONTEXT_OVERFLOW_MARKERS = ("maximum context length", "context window", "context_length_exceeded")

KNOWN_MODELS: dict[str, ModelInfo] = {
    "anthropic/claude-3.5-sonnet": ModelInfo(
        id="anthropic/claude-3.5-sonnet", name="Claude 3.5 Sonnet",
        context_window=200_000, input_price=3.0, output_price=15.0,
    ),
    "anthropic/claude-3.5-haiku": ModelInfo(
        id="anthropic/claude-3.5-haiku", name="Claude 3.5 Haiku",
        context_window=200_000, input_price=0.8, output_price=4.0,
    ),
    "gpt-4o": ModelInfo(
        id="gpt-4o", name="GPT-4o", context_window=128_000, input_price=2.5, output_price=10.0,
    ),
    "gpt-4o-mini": ModelInfo(
        id="gpt-4o-mini", name="GPT-4o mini", context_window=128_000, input_price=0.15, output_price=0.6,
    ),
}
DEFAULT_CONTEXT_WINDOW = 128_000


class ApiHandler(Protocol):
    def get_model(self) -> ModelInfo: ...

    def create_message(self, system_prompt: str, messages: list[Message]) -> AsyncIterator[StreamChunk]: ...


@dataclass(frozen=True)
class ProviderSpec:
    base_url: str | None
    api_key_env: str


PROVIDERS: dict[str, ProviderSpec] = {
    "openrouter": ProviderSpec(base_url="https://openrouter.ai/api/v1", api_key_env="OPENROUTER_API_KEY"),
    "openai": ProviderSpec(base_url=None, api_key_env="OPENAI_API_KEY"),
}


def model_info(model_id: str) -> ModelInfo:
    return KNOWN_MODELS.get(model_id) or ModelInfo(
        id=model_id, name=model_id, context_window=DEFAULT_CONTEXT_WINDOW
    )


def _to_openai(message: Message) -> dict:
    if message.role == "assistant":
        text = "\n".join(block.text for block in message.content if isinstance(block, TextBlock))
        return {"role": "assistant", "content": text}

    parts: list[dict] = []
    for block in message.content:
        if isinstance(block, TextBlock):
            parts.append({"type": "text", "text": block.text})
        elif isinstance(block, ImageBlock):
            parts.append(
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{block.media_type};base64,{block.data}"},
                }
            )
    return {"role": "user", "content": parts}


class OpenAICompatibleHandler:
    """
    Streams chat completions from any OpenAI-compatible endpoint.

    Example:
        handler = build_api_handler(AgentConfig(api_provider="openrouter"))
        async for chunk in handler.create_message(system_prompt, view):
            ...
    """

    def __init__(self, provider: str, config: AgentConfig, api_key: str, base_url: str | None) -> None:
        self._provider = provider
        self._config = config
        self._model = model_info(config.model)
        self._client = AsyncOpenAI(base_url=base_url, api_key=api_key)

    def get_model(self) -> ModelInfo:
        return self._model

    def _cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens / 1_000_000 * self._model.input_price
            + output_tokens / 1_000_000 * self._model.output_price
        )

    async def create_message(self, system_prompt: str, messages: list[Message]) -> AsyncIterator[StreamChunk]:
        try:
            stream = await self._client.chat.completions.create(
                model=self._config.model,
                messages=[{"role": "system", "content": system_prompt}]
                + [_to_openai(message) for message in messages],
                max_tokens=self._config.max_tokens,
                temperature=self._config.temperature,
                stream=True,
                stream_options={"include_usage": True},
            )
            async for chunk in stream:
                if chunk.choices:
                    delta = chunk.choices[0].delta
                    reasoning = getattr(delta, "reasoning", None)
                    if reasoning:
                        yield StreamChunk(type="reasoning", text=reasoning)
                    if delta.content:
                        yield StreamChunk(type="text", text=delta.content)
                if chunk.usage:
                    input_tokens = chunk.usage.prompt_tokens or 0
                    output_tokens = chunk.usage.completion_tokens or 0
                    yield StreamChunk(
                        type="usage",
                        input_tokens=input_tokens,
                        output_tokens=output_tokens,
                        total_cost=self._cost(input_tokens, output_tokens),
                    )
        except openai.APIError as exc:
            raise self._translate(exc) from exc

    def _translate(self, exc: openai.APIError) -> ProviderError:
        message = str(exc)
        if isinstance(exc, openai.RateLimitError):
            retry_after = exc.response.headers.get("retry-after")
            return RateLimitedError(
                self._provider, int(retry_after) if retry_after and retry_after.isdigit() else None
            )
        if isinstance(exc, openai.BadRequestError) and any(
            marker in message.lower() for marker in CONTEXT_OVERFLOW_MARKERS
        ):
            return ContextWindowExceededError(self._provider, self._config.model)
        status = exc.status_code if isinstance(exc, openai.APIStatusError) else None
        return ProviderError(message, status_code=status, provider=self._provider, model=self._config.model)


def build_api_handler(config: AgentConfig) -> ApiHandler:
    """Resolve the configured provider. Raises ConfigurationError when it cannot."""
    entry = PROVIDERS.get(config.api_provider)
    if entry is None:
        raise ConfigurationError(f"Unsupported API provider: {config.api_provider}")

    api_key = config.api_key or os.getenv(entry.api_key_env)
    if not api_key:
        raise ConfigurationError(
            f"Missing API key for {config.api_provider}: set api_key or {entry.api_key_env}"
        )

    logger.debug("api_handler_built", provider=config.api_provider, model=config.model)
    return OpenAICompatibleHandler(config.api_provider, config, api_key, config.base_url or entry.base_url)
