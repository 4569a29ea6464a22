"""
request_builder.py - Provider request payloads from neutral messages.

Conversation messages are kept in one neutral shape while the loop runs:

    {"role": "system" | "user" | "assistant" | "tool", "content": str}
    assistant messages may carry "tool_calls": [{"id", "name", "arguments"}]
    tool messages carry "tool_call_id" and "name"

This module translates that shape into the two supported wire formats:
OpenAI chat completions and Anthropic messages.

Usage:
    builder = RequestBuilder("openai")
    payload = builder.build(messages, tools, model="gpt-4o-mini")
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence

from flowmachine.runtime.errors import ConfigurationError

PROVIDER_OPENAI = "openai"
PROVIDER_ANTHROPIC = "anthropic"
SUPPORTED_PROVIDERS = (PROVIDER_OPENAI, PROVIDER_ANTHROPIC)


# =============================================================================
# OpenAI
# =============================================================================


def openai_tools(tools: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("parameters") or {"type": "object", "properties": {}},
            },
        }
        for t in tools
    ]


def openai_messages(messages: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    result: List[Dict[str, Any]] = []
    for message in messages:
        role = message["role"]
        if role == "tool":
            result.append(
                {
                    "role": "tool",
                    "tool_call_id": message["tool_call_id"],
                    "content": message.get("content") or "",
                }
            )
        elif role == "assistant" and message.get("tool_calls"):
            result.append(
                {
                    "role": "assistant",
                    "content": message.get("content") or None,
                    "tool_calls": [
                        {
                            "id": call["id"],
                            "type": "function",
                            "function": {
                                "name": call["name"],
                                "arguments": json.dumps(call.get("arguments") or {}),
                            },
                        }
                        for call in message["tool_calls"]
                    ],
                }
            )
        else:
            result.append({"role": role, "content": message.get("content") or ""})
    return result


# =============================================================================
# Anthropic
# =============================================================================


def anthropic_tools(tools: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "name": t["name"],
            "description": t.get("description", ""),
            "input_schema": t.get("parameters") or {"type": "object", "properties": {}},
        }
        for t in tools
    ]


def anthropic_messages(messages: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    """Split out system text and convert the rest into content blocks.

    Consecutive tool results are merged into one user turn, as the messages
    API requires strictly alternating roles.
    """
    system_parts: List[str] = []
    converted: List[Dict[str, Any]] = []

    for message in messages:
        role = message["role"]
        content = message.get("content") or ""
        if role == "system":
            if content:
                system_parts.append(content)
            continue

        if role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": message["tool_call_id"],
                "content": content,
            }
            previous = converted[-1] if converted else None
            if previous and previous["role"] == "user" and isinstance(previous["content"], list) and all(
                b.get("type") == "tool_result" for b in previous["content"]
            ):
                previous["content"].append(block)
            else:
                converted.append({"role": "user", "content": [block]})
            continue

        if role == "assistant" and message.get("tool_calls"):
            blocks: List[Dict[str, Any]] = []
            if content:
                blocks.append({"type": "text", "text": content})
            for call in message["tool_calls"]:
                blocks.append(
                    {"type": "tool_use", "id": call["id"], "name": call["name"], "input": call.get("arguments") or {}}
                )
            converted.append({"role": "assistant", "content": blocks})
            continue

        converted.append({"role": role, "content": content})

    return {"system": "\n\n".join(system_parts), "messages": converted}


# =============================================================================
# Builder
# =============================================================================


class RequestBuilder:
    """Builds provider payloads (model, temperature, max tokens, messages, tools)."""

    def __init__(self, provider: str):
        provider = (provider or "").lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise ConfigurationError(
                f"Unsupported AI provider '{provider}'",
                context={"supported": list(SUPPORTED_PROVIDERS)},
            )
        self.provider = provider

    def build(
        self,
        messages: Sequence[Dict[str, Any]],
        tools: Optional[Sequence[Dict[str, Any]]] = None,
        model: str = "",
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        tools = list(tools or [])
        if self.provider == PROVIDER_ANTHROPIC:
            converted = anthropic_messages(messages)
            payload: Dict[str, Any] = {
                "model": model,
                "max_tokens": max_tokens or 1024,
                "messages": converted["messages"],
            }
            if converted["system"]:
                payload["system"] = converted["system"]
            if tools:
                payload["tools"] = anthropic_tools(tools)
        else:
            payload = {"model": model, "messages": openai_messages(messages)}
            if max_tokens:
                payload["max_tokens"] = max_tokens
            if tools:
                payload["tools"] = openai_tools(tools)
                payload["tool_choice"] = "auto"

        if temperature is not None:
            payload["temperature"] = temperature
        return payload
