"""Tests for the OpenAI-compatible AI client."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import httpx
import pytest
from openai import APIConnectionError, OpenAIError

from partner.ai.client import AIClient, ClientSettings
from partner.ai.orchestration.errors import ModelCallError


def _response(content: str | None = "hi", tool_calls: list[Any] | None = None, finish_reason: str = "stop"):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    usage = SimpleNamespace(prompt_tokens=12, completion_tokens=3)
    return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason=finish_reason)], usage=usage)


def _tool_call(call_id: str | None, name: str, arguments: str | None):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


class _FakeCompletions:
    def __init__(self, outcomes: list[Any]):
        self._outcomes = list(outcomes)
        self.calls: list[dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class _FakeOpenAI:
    def __init__(self, outcomes: list[Any]):
        self.completions = _FakeCompletions(outcomes)
        self.chat = SimpleNamespace(completions=self.completions)
        self.closed = False

    async def close(self) -> None:
        self.closed = True


def _settings(**overrides: Any) -> ClientSettings:
    params: dict[str, Any] = {
        "base_url": "https://example.invalid/v1",
        "api_key": "test",
        "model": "gpt-test",
        "max_retries": 3,
        "retry_min_seconds": 0,
        "retry_max_seconds": 0,
    }
    params.update(overrides)
    return ClientSettings(**params)


def _connection_error() -> APIConnectionError:
    return APIConnectionError(request=httpx.Request("POST", "https://example.invalid/v1/chat/completions"))


@pytest.mark.asyncio
async def test_complete_parses_text_and_usage() -> None:
    fake = _FakeOpenAI([_response("Hello there")])
    client = AIClient(_settings(), client=fake)  # type: ignore[arg-type]

    reply = await client.complete([{"role": "user", "content": "hi"}])

    assert reply.text == "Hello there"
    assert reply.finish_reason == "stop"
    assert (reply.prompt_tokens, reply.completion_tokens) == (12, 3)
    assert not reply.has_tool_calls


@pytest.mark.asyncio
async def test_complete_parses_tool_calls_in_order() -> None:
    calls = [
        _tool_call("c1", "read_file", '{"path": "a"}'),
        _tool_call(None, "web_search", None),
        _tool_call("c3", "", "{}"),
    ]
    fake = _FakeOpenAI([_response(None, calls, "tool_calls")])
    client = AIClient(_settings(), client=fake)  # type: ignore[arg-type]

    reply = await client.complete([{"role": "user", "content": "hi"}])

    assert reply.text == ""
    assert [call.name for call in reply.tool_calls] == ["read_file", "web_search"]
    assert reply.tool_calls[0].parse_arguments() == {"path": "a"}
    assert reply.tool_calls[1].id.startswith("call_")
    assert reply.tool_calls[1].arguments == "{}"


@pytest.mark.asyncio
async def test_payload_omits_empty_tools_and_applies_overrides() -> None:
    fake = _FakeOpenAI([_response(), _response()])
    client = AIClient(_settings(temperature=0.7), client=fake)  # type: ignore[arg-type]
    tool = {"type": "function", "function": {"name": "x", "parameters": {"type": "object"}}}

    await client.complete([{"role": "user", "content": "hi"}], tools=[])
    await client.complete([{"role": "user", "content": "hi"}], tools=[tool], temperature=0.2, max_tokens=30)

    first, second = fake.completions.calls
    assert "tools" not in first
    assert first["temperature"] == 0.7
    assert "max_tokens" not in first
    assert second["tools"] == [tool]
    assert second["temperature"] == 0.2
    assert second["max_tokens"] == 30
    assert second["model"] == "gpt-test"


@pytest.mark.asyncio
async def test_transport_errors_are_retried() -> None:
    fake = _FakeOpenAI([_connection_error(), _connection_error(), _response("recovered")])
    client = AIClient(_settings(), client=fake)  # type: ignore[arg-type]

    reply = await client.complete([{"role": "user", "content": "hi"}])

    assert reply.text == "recovered"
    assert len(fake.completions.calls) == 3


@pytest.mark.asyncio
async def test_exhausted_retries_raise_model_call_error() -> None:
    fake = _FakeOpenAI([_connection_error(), _connection_error()])
    client = AIClient(_settings(max_retries=2), client=fake)  # type: ignore[arg-type]

    with pytest.raises(ModelCallError) as info:
        await client.complete([{"role": "user", "content": "hi"}])

    assert isinstance(info.value.cause, APIConnectionError)
    assert len(fake.completions.calls) == 2


@pytest.mark.asyncio
async def test_non_retryable_errors_fail_immediately() -> None:
    fake = _FakeOpenAI([OpenAIError("invalid model"), _response()])
    client = AIClient(_settings(), client=fake)  # type: ignore[arg-type]

    with pytest.raises(ModelCallError, match="invalid model"):
        await client.complete([{"role": "user", "content": "hi"}])

    assert len(fake.completions.calls) == 1


@pytest.mark.asyncio
async def test_no_choices_raise_model_call_error() -> None:
    fake = _FakeOpenAI([SimpleNamespace(choices=[], usage=None)])
    client = AIClient(_settings(), client=fake)  # type: ignore[arg-type]

    with pytest.raises(ModelCallError, match="no choices"):
        await client.complete([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_empty_messages_are_rejected() -> None:
    client = AIClient(_settings(), client=_FakeOpenAI([]))  # type: ignore[arg-type]

    with pytest.raises(ValueError):
        await client.complete([])


@pytest.mark.asyncio
async def test_aclose_closes_underlying_client() -> None:
    fake = _FakeOpenAI([])
    client = AIClient(_settings(), client=fake)  # type: ignore[arg-type]

    await client.aclose()

    assert fake.closed is True


def test_is_configured() -> None:
    assert _settings().is_configured
    assert not _settings(model="").is_configured
