"""Tests for the LiteLLM client wrapper."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from starrecall.rag.llm_client import complete, provider_of, stream, validate_api_key


# ------------------------------------------------------------------
# validate_api_key
# ------------------------------------------------------------------


def test_validate_api_key_raises_if_missing(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(EnvironmentError, match="OPENAI_API_KEY"):
        validate_api_key("openai/gpt-4o-mini")


def test_validate_api_key_passes_if_set(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-key")
    validate_api_key("openai/gpt-4o-mini")


def test_validate_api_key_anthropic(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    with pytest.raises(EnvironmentError, match="ANTHROPIC_API_KEY"):
        validate_api_key("anthropic/claude-3-5-haiku-latest")


def test_validate_api_key_ollama_no_key_required():
    validate_api_key("ollama/llama3")


def test_validate_api_key_skipped_with_api_base(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    validate_api_key("openai/local-model", api_base="http://localhost:8080/v1")


def test_provider_of():
    assert provider_of("Anthropic/claude") == "anthropic"
    assert provider_of("gpt-4o") == "openai"


# ------------------------------------------------------------------
# complete() / stream()
# ------------------------------------------------------------------


def test_complete_returns_content():
    mock_response = MagicMock()
    mock_response.choices[0].message.content = "Try ripgrep."

    with patch("starrecall.rag.llm_client.litellm.completion", return_value=mock_response):
        result = complete("openai/gpt-4o-mini", [{"role": "user", "content": "Hi"}])

    assert result == "Try ripgrep."


def test_complete_returns_empty_string_on_none_content():
    mock_response = MagicMock()
    mock_response.choices[0].message.content = None

    with patch("starrecall.rag.llm_client.litellm.completion", return_value=mock_response):
        assert complete("openai/gpt-4o-mini", []) == ""


def test_complete_passes_params_to_litellm():
    mock_response = MagicMock()
    mock_response.choices[0].message.content = "ok"

    with patch("starrecall.rag.llm_client.litellm.completion", return_value=mock_response) as mock_call:
        complete("openai/gpt-4o-mini", [], max_tokens=50, temperature=0.0, api_base="http://x")

    kwargs = mock_call.call_args.kwargs
    assert kwargs["max_tokens"] == 50
    assert kwargs["temperature"] == 0.0
    assert kwargs["num_retries"] == 3
    assert kwargs["api_base"] == "http://x"


def _chunk(content):
    chunk = MagicMock()
    chunk.choices[0].delta.content = content
    return chunk


def test_stream_yields_non_empty_deltas():
    chunks = [_chunk("Hel"), _chunk(None), _chunk(""), _chunk("lo")]
    with patch("starrecall.rag.llm_client.litellm.completion", return_value=iter(chunks)) as mock_call:
        assert list(stream("openai/gpt-4o-mini", [])) == ["Hel", "lo"]
    assert mock_call.call_args.kwargs["stream"] is True
