"""Tests for LLM client."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from mailtriage.exceptions import CompletionError
from mailtriage.llm.client import AsyncLLMClient


def _response(*blocks, stop_reason="end_turn"):
    return SimpleNamespace(
        content=list(blocks),
        stop_reason=stop_reason,
        usage=SimpleNamespace(input_tokens=10, output_tokens=5),
    )


def _text(text):
    return SimpleNamespace(type="text", text=text)


def _tool_use(name, payload):
    return SimpleNamespace(type="tool_use", name=name, input=payload, id="toolu_1")


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key-123")
    c = AsyncLLMClient(api_key=None, max_retries=2)
    c._client = MagicMock()
    c._client.messages.create = AsyncMock()
    return c


def test_async_init_requires_api_key(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    with pytest.raises(CompletionError, match="API key is required"):
        AsyncLLMClient(api_key="")


def test_async_init_accepts_none_api_key_with_env(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key-123")
    client = AsyncLLMClient(api_key=None)
    assert client.model == "claude-haiku-4-5-20251001"


def test_generate_joins_text_blocks(client):
    client._client.messages.create.return_value = _response(_text("Hello "), _text("world"))
    result = asyncio.run(client.generate("system", "user"))
    assert result["text"] == "Hello world"
    assert result["input_tokens"] == 10
    _, kwargs = client._client.messages.create.call_args
    assert kwargs["messages"] == [{"role": "user", "content": "user"}]
    assert kwargs["system"] == "system"


def test_generate_with_tools_returns_tool_calls(client):
    client._client.messages.create.return_value = _response(
        _tool_use("email_analysis", {"slug": "x"}), stop_reason="tool_use",
    )
    result = asyncio.run(client.generate_with_tools(
        "system",
        [{"role": "user", "content": "hi"}],
        tools=[{"name": "email_analysis"}],
        tool_choice={"type": "tool", "name": "email_analysis"},
    ))
    assert result["tool_calls"] == [{"name": "email_analysis", "input": {"slug": "x"}, "id": "toolu_1"}]
    assert result["stop_reason"] == "tool_use"
    _, kwargs = client._client.messages.create.call_args
    assert kwargs["tool_choice"] == {"type": "tool", "name": "email_analysis"}


def test_generate_wraps_api_error(client):
    import anthropic

    client._client.messages.create.side_effect = anthropic.APIError(
        "boom", request=MagicMock(), body=None,
    )
    with pytest.raises(CompletionError, match="Claude API error"):
        asyncio.run(client.generate("system", "user"))


def test_generate_retries_timeouts_then_gives_up(client, monkeypatch):
    import anthropic

    sleep = AsyncMock()
    monkeypatch.setattr("mailtriage.llm.client.asyncio.sleep", sleep)
    client._client.messages.create.side_effect = anthropic.APITimeoutError(request=MagicMock())
    with pytest.raises(CompletionError, match="Failed after 2 retries"):
        asyncio.run(client.generate("system", "user"))
    assert client._client.messages.create.await_count == 2
    sleep.assert_awaited_once_with(1)


def _rate_limit_error():
    import anthropic

    response = MagicMock(status_code=429, headers={})
    return anthropic.RateLimitError("slow down", response=response, body=None)


def test_rate_limit_then_success(client, monkeypatch):
    sleep = AsyncMock()
    monkeypatch.setattr("mailtriage.llm.client.asyncio.sleep", sleep)
    client._client.messages.create.side_effect = [_rate_limit_error(), _response(_text("ok"))]

    assert asyncio.run(client.generate("system", "user"))["text"] == "ok"
    sleep.assert_awaited_once_with(2)


def test_single_attempt_does_not_back_off(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key-123")
    client = AsyncLLMClient(max_retries=1)
    client._client = MagicMock()
    client._client.messages.create = AsyncMock(side_effect=_rate_limit_error())
    sleep = AsyncMock()
    monkeypatch.setattr("mailtriage.llm.client.asyncio.sleep", sleep)

    with pytest.raises(CompletionError, match="Failed after 1 retries"):
        asyncio.run(client.generate("system", "user"))
    assert client._client.messages.create.await_count == 1
    sleep.assert_not_awaited()
