# =============================================================================
# Multi-Provider LLM Abstraction — Pluggable Text Generation
# =============================================================================
#
# Common interface for completions and streamed completions, with concrete
# implementations for Anthropic (Claude) and OpenAI-compatible APIs.
#
# DESIGN DECISION: Protocol (structural typing) over ABC, matching the
# VectorStore pattern. Tests pass an AsyncMock that has `complete()`.
#
# DESIGN DECISION: Native SDKs over framework wrappers. Anthropic takes the
# system prompt as a top-level kwarg; OpenAI takes it as the first message.
#
# DESIGN DECISION: Resilience lives in `generate()` / `stream_generate()`,
# not in the providers. SDK retries are disabled (max_retries=0); every call
# is bounded by settings.generation_timeout_seconds via asyncio.wait_for and
# retried once (tenacity) before GenerationError is raised. Callers that run
# their own retry policy (collaboration experts) pass attempts=1.
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        — complete(), stream()
#   ├── OpenAICompatibleProvider — complete(), stream()
#   ├── get_llm_provider()       — lazy singleton factory
#   ├── generate()               — timeout + single retry → LLMResponse
#   └── stream_generate()        — streamed text with the same guarantees
#                                   up to the first delta
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from plugin_engine.config import settings
from plugin_engine.errors import GenerationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """Standardised response from any LLM provider."""

    content: str
    model: str
    input_tokens: int
    output_tokens: int


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """
    LLM provider interface.

    `messages` are {"role": "user" | "assistant", "content": str} dicts;
    the system prompt is passed separately.
    """

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        ...

    def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """Anthropic Claude provider using the native async SDK."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
    ) -> None:
        from anthropic import AsyncAnthropic

        resolved_key = api_key or settings.llm_api_key or settings.anthropic_api_key
        if not resolved_key:
            raise GenerationError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = AsyncAnthropic(
            api_key=resolved_key,
            max_retries=0,
            timeout=settings.generation_timeout_seconds,
        )
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    def _kwargs(self, messages, system, temperature, max_tokens) -> dict:
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }
        # Anthropic: system prompt is a top-level kwarg, not a message
        if system:
            kwargs["system"] = system
        return kwargs

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        response = await self._client.messages.create(
            **self._kwargs(messages, system, temperature, max_tokens)
        )

        content = "".join(
            block.text for block in response.content if block.type == "text"
        )
        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        async with self._client.messages.stream(
            **self._kwargs(messages, system, temperature, max_tokens)
        ) as stream:
            async for text in stream.text_stream:
                if text:
                    yield text


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    Provider for any API that follows the OpenAI chat completions spec.

    Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        resolved_key = api_key or settings.llm_api_key or settings.openai_api_key
        if not resolved_key:
            raise GenerationError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY in .env"
            )

        client_kwargs: dict = {
            "api_key": resolved_key,
            "max_retries": 0,
            "timeout": settings.generation_timeout_seconds,
        }
        resolved_base_url = base_url or settings.llm_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    def _messages(self, messages, system) -> list[dict[str, str]]:
        # OpenAI: system prompt goes as the first message
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)
        return all_messages

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=self._messages(messages, system),
            max_tokens=max_tokens or self._max_tokens,
            temperature=self._temperature if temperature is None else temperature,
        )

        usage = response.usage
        return LLMResponse(
            content=response.choices[0].message.content or "",
            model=response.model or self._model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=self._messages(messages, system),
            max_tokens=max_tokens or self._max_tokens,
            temperature=self._temperature if temperature is None else temperature,
            stream=True,
        )
        async for chunk in response:
            if chunk.choices and chunk.choices[0].delta.content:
                yield chunk.choices[0].delta.content


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_provider: AnthropicProvider | OpenAICompatibleProvider | None = None


def get_llm_provider() -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Return the configured LLM provider (lazy singleton).

    - "anthropic" → AnthropicProvider
    - "openai_compatible" → OpenAICompatibleProvider
    """
    global _provider
    if _provider is None:
        if settings.llm_provider == "openai_compatible":
            _provider = OpenAICompatibleProvider()
        else:
            _provider = AnthropicProvider()
    return _provider


# ---------------------------------------------------------------------------
# Resilient Generation
# ---------------------------------------------------------------------------


def _log_retry(retry_state) -> None:
    logger.warning(
        "Generation failed (attempt %d), retrying: %r",
        retry_state.attempt_number,
        retry_state.outcome.exception(),
    )


async def generate(
    llm: LLMProvider,
    messages: list[dict[str, str]],
    system: str | None = None,
    temperature: float | None = None,
    max_tokens: int | None = None,
    attempts: int | None = None,
    timeout: float | None = None,
) -> LLMResponse:
    """
    Call `llm.complete()` with a per-attempt timeout and bounded retries.

    Raises:
        GenerationError: Every attempt failed or timed out.

    asyncio.CancelledError is never retried or wrapped; cancelling the caller
    aborts the in-flight request.
    """
    _attempts = attempts or settings.external_call_attempts
    _timeout = timeout or settings.generation_timeout_seconds

    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(_attempts),
            retry=retry_if_exception_type(Exception),
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                return await asyncio.wait_for(
                    llm.complete(
                        messages=messages,
                        system=system,
                        temperature=temperature,
                        max_tokens=max_tokens,
                    ),
                    timeout=_timeout,
                )
    except GenerationError:
        raise
    except Exception as exc:
        raise GenerationError(
            f"Text generation failed after {_attempts} attempt(s): {exc!r}"
        ) from exc
    raise GenerationError("Text generation produced no result")


async def stream_generate(
    llm: LLMProvider,
    messages: list[dict[str, str]],
    system: str | None = None,
    attempts: int | None = None,
    timeout: float | None = None,
) -> AsyncIterator[str]:
    """
    Yield generated text deltas.

    Each delta must arrive within the generation timeout. A failure before the
    first delta is retried like generate(); once text has been yielded a
    failure raises GenerationError, because the consumer has already seen it.
    """
    _attempts = attempts or settings.external_call_attempts
    _timeout = timeout or settings.generation_timeout_seconds

    for attempt_number in range(1, _attempts + 1):
        emitted = False
        iterator = llm.stream(messages=messages, system=system).__aiter__()
        try:
            while True:
                try:
                    delta = await asyncio.wait_for(iterator.__anext__(), timeout=_timeout)
                except StopAsyncIteration:
                    return
                emitted = True
                yield delta
        except GenerationError:
            raise
        except Exception as exc:
            if emitted or attempt_number == _attempts:
                raise GenerationError(
                    f"Streamed generation failed: {exc!r}"
                ) from exc
            logger.warning(
                "Streamed generation failed before first delta (attempt %d), "
                "retrying: %r", attempt_number, exc,
            )
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
