"""
providers.py - AI provider clients.

A provider takes neutral conversation messages plus tool definitions and
returns a normalized AIResponse. Transport, HTTP and payload failures raise
ProviderError; the step executor turns that into a failed job.

Usage:
    provider = create_provider(get_ai_settings())
    response = provider.complete(messages, tools)
    for call in response.tool_calls:
        ...
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

from flowmachine.ai.request_builder import PROVIDER_ANTHROPIC, PROVIDER_OPENAI, RequestBuilder
from flowmachine.config.runtime_config import AISettings, get_provider_api_key
from flowmachine.runtime.errors import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)


@dataclass
class ToolCall:
    """A tool invocation proposed by the model."""

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass
class AIResponse:
    """Normalized model reply.

    Attributes:
        content: Assistant text (may be empty when only tools are called).
        tool_calls: Proposed tool calls in model order.
        finished: True when the model signalled it is done. False for tool
            calls and for text cut off by the output token limit.
    """

    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    finished: bool = True
    raw: Dict[str, Any] = field(default_factory=dict)


class ProviderClient(ABC):
    """Sends one request to a model and normalizes the reply."""

    name: str = ""

    @abstractmethod
    def complete(
        self,
        messages: Sequence[Dict[str, Any]],
        tools: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> AIResponse:
        ...


class _HttpProvider(ProviderClient):
    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        base_url: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        timeout_seconds: float = 60.0,
        client: Optional[httpx.Client] = None,
    ):
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = timeout_seconds
        self._client = client
        self._builder = RequestBuilder(self.name)

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self._timeout)
        return self._client

    def _headers(self) -> Dict[str, str]:
        raise NotImplementedError

    def _endpoint(self) -> str:
        raise NotImplementedError

    def _parse(self, body: Dict[str, Any]) -> AIResponse:
        raise NotImplementedError

    def complete(
        self,
        messages: Sequence[Dict[str, Any]],
        tools: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> AIResponse:
        if not self._api_key:
            raise ProviderError(f"No API key configured for provider '{self.name}'", context={"provider": self.name})

        payload = self._builder.build(
            messages, tools, model=self._model, temperature=self._temperature, max_tokens=self._max_tokens
        )
        url = self._base_url + self._endpoint()
        logger.debug("Sending %s request: %d messages, %d tools", self.name, len(messages), len(tools or []))
        try:
            response = self._get_client().post(url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.name} request failed: {e}", context={"provider": self.name}) from e

        if response.status_code >= 400:
            raise ProviderError(
                f"{self.name} returned HTTP {response.status_code}",
                status_code=response.status_code,
                context={"provider": self.name, "body": response.text[:500]},
            )
        try:
            body = response.json()
        except ValueError as e:
            raise ProviderError(f"{self.name} returned invalid JSON", context={"provider": self.name}) from e
        try:
            return self._parse(body)
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(
                f"Unexpected {self.name} response shape: {e}", context={"provider": self.name}
            ) from e


class OpenAIProvider(_HttpProvider):
    """OpenAI chat completions (and compatible endpoints)."""

    name = PROVIDER_OPENAI

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    def _endpoint(self) -> str:
        return "/chat/completions"

    def _parse(self, body: Dict[str, Any]) -> AIResponse:
        choice = body["choices"][0]
        message = choice.get("message") or {}
        calls: List[ToolCall] = []
        for raw in message.get("tool_calls") or []:
            function = raw.get("function") or {}
            arguments_text = function.get("arguments") or "{}"
            try:
                arguments = json.loads(arguments_text)
            except ValueError:
                logger.warning("Tool call %s has malformed arguments: %r", raw.get("id"), arguments_text)
                arguments = {}
            calls.append(ToolCall(id=raw["id"], name=function.get("name", ""), arguments=arguments or {}))
        finished = not calls and choice.get("finish_reason") not in ("tool_calls", "length")
        return AIResponse(content=message.get("content") or "", tool_calls=calls, finished=finished, raw=body)


class AnthropicProvider(_HttpProvider):
    """Anthropic messages API."""

    name = PROVIDER_ANTHROPIC

    def __init__(self, *args: Any, api_version: Optional[str] = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._api_version = api_version or "2023-06-01"

    def _headers(self) -> Dict[str, str]:
        return {"x-api-key": self._api_key or "", "anthropic-version": self._api_version}

    def _endpoint(self) -> str:
        return "/messages"

    def _parse(self, body: Dict[str, Any]) -> AIResponse:
        texts: List[str] = []
        calls: List[ToolCall] = []
        for block in body["content"]:
            if block.get("type") == "text":
                texts.append(block.get("text", ""))
            elif block.get("type") == "tool_use":
                calls.append(ToolCall(id=block["id"], name=block["name"], arguments=block.get("input") or {}))
        finished = not calls and body.get("stop_reason") not in ("tool_use", "max_tokens")
        return AIResponse(content="".join(texts), tool_calls=calls, finished=finished, raw=body)


def create_provider(settings: AISettings, client: Optional[httpx.Client] = None) -> ProviderClient:
    """Build the provider client selected by ``ai.provider``."""
    kwargs: Dict[str, Any] = {
        "api_key": get_provider_api_key(settings.provider),
        "model": settings.model,
        "temperature": settings.temperature,
        "max_tokens": settings.max_tokens,
        "timeout_seconds": settings.timeout_seconds,
        "client": client,
    }
    if settings.provider == PROVIDER_OPENAI:
        return OpenAIProvider(base_url=settings.base_url or "https://api.openai.com/v1", **kwargs)
    if settings.provider == PROVIDER_ANTHROPIC:
        return AnthropicProvider(
            base_url=settings.base_url or "https://api.anthropic.com/v1",
            api_version=settings.api_version,
            **kwargs,
        )
    raise ConfigurationError(f"Unsupported AI provider '{settings.provider}'")
