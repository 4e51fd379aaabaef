# =============================================================================
# Multi-Provider LLM Abstraction: the External Reasoning Service
# =============================================================================
#
# The rest of docflow treats the model as a black box with one contract:
# "given a system instruction and a user instruction, return text or fail".
# `ask_model()` is that contract. Everything above it (memory compression,
# workers, intent extraction) calls `ask_model()` and never an SDK.
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        Claude via native Anthropic SDK
#   ├── OpenAICompatibleProvider any OpenAI-compatible API
#   ├── get_llm_provider()       singleton for the reasoning model
#   ├── get_writing_provider()   singleton for the long-form writing model
#   └── ask_model()              deadline + error mapping around complete()
#
# DEADLINES:
# Every call is wrapped in asyncio.wait_for(settings.llm_timeout_seconds).
# Expiry raises UpstreamTimeoutError. Any other provider exception, or an
# empty reply, raises UpstreamError. Cancellation is never swallowed.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

from docflow.config import settings
from docflow.errors import UpstreamError, UpstreamTimeoutError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """
    Standardised response from any LLM provider.

    Normalises the different response formats (Anthropic vs OpenAI)
    into a single structure that downstream code can consume.
    """

    content: str           # The generated text
    model: str             # Model identifier (e.g., "claude-sonnet-4-6")
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """
    Protocol defining the LLM provider interface.

    Test doubles only need an async `complete()` with this signature.
    """

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: Conversation messages as dicts with "role" and "content".
            system: System prompt. Anthropic takes it as a top-level kwarg,
                OpenAI as a leading {"role": "system"} message.
            temperature: Override sampling temperature (default from config).
            max_tokens: Override max output tokens (default from config).
        """
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Anthropic Claude provider using the native async SDK.

    Anthropic takes system prompts as a top-level `system=` kwarg,
    NOT as a message with role "system".
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
    ) -> None:
        from anthropic import AsyncAnthropic

        resolved_key = api_key or settings.llm_api_key or settings.anthropic_api_key
        if not resolved_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = AsyncAnthropic(api_key=resolved_key)
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using Claude."""
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }
        if system:
            kwargs["system"] = system

        response = await self._client.messages.create(**kwargs)

        content = ""
        for block in response.content:
            if block.type == "text":
                content = block.text
                break

        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible (DeepSeek, Qwen, GLM-5, etc.)
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    Provider for any API that follows the OpenAI chat completions spec.

    Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
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
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
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

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using an OpenAI-compatible API."""
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        response = await self._client.chat.completions.create(
            model=self._model,
            messages=all_messages,
            max_tokens=max_tokens or self._max_tokens,
            temperature=self._temperature if temperature is None else temperature,
        )

        content = response.choices[0].message.content or ""
        usage = response.usage

        return LLMResponse(
            content=content,
            model=response.model or self._model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )


# ---------------------------------------------------------------------------
# Factory Functions
# ---------------------------------------------------------------------------

_provider: AnthropicProvider | OpenAICompatibleProvider | None = None
_writing_provider: AnthropicProvider | OpenAICompatibleProvider | None = None


def _build_provider(model: str | None = None) -> AnthropicProvider | OpenAICompatibleProvider:
    if settings.llm_provider == "openai_compatible":
        return OpenAICompatibleProvider(model=model)
    return AnthropicProvider(model=model)


def get_llm_provider() -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Lazy singleton for the reasoning model (`settings.llm_model`).

    Raises:
        ValueError: If no API key is configured for the chosen provider.
    """
    global _provider
    if _provider is None:
        _provider = _build_provider()
    return _provider


def get_writing_provider() -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Lazy singleton for the writing model.

    Shares the reasoning singleton when no separate writing model is set.
    """
    global _writing_provider
    if not settings.llm_writing_model or settings.llm_writing_model == settings.llm_model:
        return get_llm_provider()
    if _writing_provider is None:
        _writing_provider = _build_provider(model=settings.llm_writing_model)
    return _writing_provider


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def ask_model(
    llm: LLMProvider,
    system: str,
    user: str,
    *,
    max_tokens: int | None = None,
    timeout: float | None = None,
    label: str = "llm",
) -> str:
    """
    Send one system + user instruction pair and return the reply text.

    Args:
        llm: Provider to call.
        system: System instruction.
        user: User instruction.
        max_tokens: Override max output tokens.
        timeout: Deadline in seconds (default: settings.llm_timeout_seconds).
        label: Short name used in log lines and error messages.

    Returns:
        The stripped reply text (never empty).

    Raises:
        UpstreamTimeoutError: The deadline expired.
        UpstreamError: The provider raised, or returned an empty reply.
    """
    deadline = settings.llm_timeout_seconds if timeout is None else timeout

    try:
        response = await asyncio.wait_for(
            llm.complete(
                messages=[{"role": "user", "content": user}],
                system=system,
                max_tokens=max_tokens,
            ),
            timeout=deadline,
        )
    except asyncio.TimeoutError as exc:
        logger.warning("%s call timed out after %.1fs", label, deadline)
        raise UpstreamTimeoutError(f"{label} call timed out after {deadline:.1f}s") from exc
    except Exception as exc:
        logger.warning("%s call failed: %s", label, exc)
        raise UpstreamError(f"{label} call failed: {exc}") from exc

    text = (response.content or "").strip()
    if not text:
        raise UpstreamError(f"{label} returned an empty reply")

    logger.debug(
        "%s reply: %d chars (model=%s, tokens=%d/%d)",
        label, len(text), response.model, response.input_tokens, response.output_tokens,
    )
    return text
