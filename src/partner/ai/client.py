"""Async AI client wrapper built around OpenAI-compatible endpoints."""

from __future__ import annotations

import inspect
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Sequence, cast

import httpx
from openai import APIConnectionError, AsyncOpenAI, InternalServerError, OpenAIError, RateLimitError
from openai.types.chat import ChatCompletionMessageParam
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .orchestration.errors import ModelCallError
from .orchestration.types import ModelReply, ToolCall

LOGGER = logging.getLogger(__name__)

_RETRYABLE_ERRORS = (
    APIConnectionError,
    RateLimitError,
    InternalServerError,
    httpx.TimeoutException,
)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    temperature: float | None = 0.7
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.model)


class AIClient:
    """Async chat-completion client with retry semantics.

    Transport failures (connection drops, rate limits, 5xx, timeouts) are
    retried with exponential backoff. Whatever still fails afterwards is raised
    as :class:`ModelCallError` so the run loop can end the turn.
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ModelReply:
        """Run one non-streamed chat completion.

        Args:
            messages: Chat messages in OpenAI format.
            tools: Optional tool definitions; omitted entirely when empty.
            temperature: Overrides the configured temperature.
            max_tokens: Optional completion token limit.

        Returns:
            The normalized :class:`ModelReply`.

        Raises:
            ModelCallError: If the endpoint cannot produce a completion.
        """

        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            tools=tools,
            temperature=temperature if temperature is not None else self._settings.temperature,
            max_tokens=max_tokens,
        )
        LOGGER.debug(
            "Starting chat completion via %s with %s message(s) and %s tool(s)",
            self._settings.model,
            len(payload["messages"]),
            len(payload.get("tools", ())),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self._client.chat.completions.create(**payload)
        except (OpenAIError, httpx.HTTPError) as exc:
            LOGGER.warning("Chat completion failed: %s", exc)
            raise ModelCallError(str(exc) or exc.__class__.__name__, cause=exc) from exc
        return self._parse_response(response)

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key or "not-needed",
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(_RETRYABLE_ERRORS),
        )

    def _coerce_messages(self, messages: Iterable[Mapping[str, Any]]) -> List[ChatCompletionMessageParam]:
        normalized: List[ChatCompletionMessageParam] = []
        for message in messages:
            if isinstance(message, MutableMapping):
                normalized.append(cast(ChatCompletionMessageParam, dict(message)))
            else:
                try:
                    normalized.append(cast(ChatCompletionMessageParam, dict(message)))
                except TypeError as exc:
                    raise TypeError("Messages must be mapping-like objects") from exc
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[ChatCompletionMessageParam],
        tools: Sequence[Mapping[str, Any]] | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": list(messages),
        }
        if tools:
            payload["tools"] = [dict(tool) for tool in tools]
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        return payload

    def _parse_response(self, response: Any) -> ModelReply:
        choices = getattr(response, "choices", None) or []
        if not choices:
            raise ModelCallError("Model returned no choices")
        choice = choices[0]
        message = getattr(choice, "message", None)
        calls: list[ToolCall] = []
        for raw in getattr(message, "tool_calls", None) or ():
            function = getattr(raw, "function", None)
            name = getattr(function, "name", None) or ""
            if not name:
                continue
            calls.append(
                ToolCall(
                    id=getattr(raw, "id", None) or f"call_{uuid.uuid4().hex[:12]}",
                    name=name,
                    arguments=getattr(function, "arguments", None) or "{}",
                )
            )
        usage = getattr(response, "usage", None)
        return ModelReply(
            text=getattr(message, "content", None) or "",
            tool_calls=tuple(calls),
            finish_reason=getattr(choice, "finish_reason", None),
            prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
        )

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result
