# =============================================================================
# Unit Tests: LLM Call Wrapper
# =============================================================================
#
# ask_model() is the only way the rest of docflow talks to a model. These
# tests pin its error mapping with mock providers; no API keys needed.
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from docflow.errors import UpstreamError, UpstreamTimeoutError
from docflow.services.llm import AnthropicProvider, LLMResponse, OpenAICompatibleProvider, ask_model


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _response(content: str) -> LLMResponse:
    return LLMResponse(content=content, model="test-model", input_tokens=10, output_tokens=5)


class TestAskModel:
    """Tests for ask_model()."""

    def test_returns_stripped_text(self):
        mock_llm = AsyncMock()
        mock_llm.complete.return_value = _response("  hello  \n")

        assert _run(ask_model(mock_llm, "system", "user")) == "hello"

        call_kwargs = mock_llm.complete.call_args.kwargs
        assert call_kwargs["system"] == "system"
        assert call_kwargs["messages"] == [{"role": "user", "content": "user"}]

    def test_timeout_maps_to_upstream_timeout(self):
        async def slow(**kwargs):
            await asyncio.sleep(5)

        mock_llm = AsyncMock()
        mock_llm.complete.side_effect = slow

        with pytest.raises(UpstreamTimeoutError):
            _run(ask_model(mock_llm, "system", "user", timeout=0.05))

    def test_provider_exception_maps_to_upstream_error(self):
        mock_llm = AsyncMock()
        mock_llm.complete.side_effect = RuntimeError("connection reset")

        with pytest.raises(UpstreamError) as excinfo:
            _run(ask_model(mock_llm, "system", "user", label="scoring"))
        assert not isinstance(excinfo.value, UpstreamTimeoutError)
        assert "scoring" in str(excinfo.value)

    def test_empty_reply_is_an_upstream_error(self):
        mock_llm = AsyncMock()
        mock_llm.complete.return_value = _response("   ")

        with pytest.raises(UpstreamError):
            _run(ask_model(mock_llm, "system", "user"))

    def test_max_tokens_is_forwarded(self):
        mock_llm = AsyncMock()
        mock_llm.complete.return_value = _response("Title")

        _run(ask_model(mock_llm, "system", "user", max_tokens=64))
        assert mock_llm.complete.call_args.kwargs["max_tokens"] == 64


class TestProviders:
    """Providers refuse to start without credentials."""

    def test_anthropic_without_key_raises(self):
        with patch("docflow.services.llm.settings") as mock_settings:
            mock_settings.llm_api_key = None
            mock_settings.anthropic_api_key = ""
            with pytest.raises(ValueError, match="API key"):
                AnthropicProvider()

    def test_openai_compatible_without_key_raises(self):
        with patch("docflow.services.llm.settings") as mock_settings:
            mock_settings.llm_api_key = None
            mock_settings.openai_api_key = ""
            with pytest.raises(ValueError, match="API key"):
                OpenAICompatibleProvider()
