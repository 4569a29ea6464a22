"""
conversation.py - Bounded multi-turn tool-calling loop.

Each turn sends the accumulated history and the tool definitions to the
provider. Proposed tool calls are executed in model order and their results
appended as tool messages; the loop continues until one of:

- the model answers without tool calls and marks the reply final (``finished``);
  a text reply cut off by the token limit gets another turn and its parts
  are joined in ``final_text``
- a handler tool succeeds (``handler_completed``); the step's objective is met
- ``max_turns`` is reached (``truncated``); this is a normal completion and
  ``final_text`` holds the last text the model produced, possibly empty

Tool failures never end the loop; they are fed back as tool messages.
Provider failures (ProviderError) propagate to the caller.

Guards:
- a tool-call id that was already answered is not executed or appended again
- a call repeating an earlier (name, arguments) pair is soft-rejected with a
  correction message instead of being executed
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from flowmachine.ai.providers import AIResponse, ProviderClient, ToolCall
from flowmachine.ai.tools import AvailableTool, ToolResult, invoke_tool
from flowmachine.config.runtime_config import DEFAULT_MAX_TURNS, _clamp_max_turns

logger = logging.getLogger(__name__)


@dataclass
class ToolInvocation:
    """One executed (or rejected) tool call."""

    call: ToolCall
    result: ToolResult
    turn: int
    handler: Optional[str] = None
    duplicate: bool = False

    @property
    def is_handler_tool(self) -> bool:
        return self.handler is not None


@dataclass
class ConversationResult:
    """Outcome of a conversation.

    Attributes:
        final_text: Last assistant text (may be empty).
        messages: Full neutral message history, system messages included.
        turns: Provider calls made.
        truncated: The turn limit ended the loop.
        finished: The model gave a final answer or a handler tool completed.
        handler_completed: A handler tool succeeded.
        tool_results: Tool invocations in execution order.
        responses: Raw normalized provider replies, one per turn.
    """

    final_text: str = ""
    messages: List[Dict[str, Any]] = field(default_factory=list)
    turns: int = 0
    truncated: bool = False
    finished: bool = False
    handler_completed: bool = False
    tool_results: List[ToolInvocation] = field(default_factory=list)
    responses: List[AIResponse] = field(default_factory=list)


def _signature(name: str, arguments: Dict[str, Any]) -> Tuple[str, str]:
    return name, json.dumps(arguments or {}, sort_keys=True, default=str)


def duplicate_call_message(tool_name: str) -> str:
    return (
        f"The {tool_name} tool was already called with these exact parameters. "
        "Use the earlier result, call a different tool, or give your final answer."
    )


class ConversationLoop:
    """Runs a conversation against one provider with a fixed tool set."""

    def __init__(self, provider: ProviderClient, max_turns: int = DEFAULT_MAX_TURNS):
        self.provider = provider
        self.max_turns = _clamp_max_turns(int(max_turns))

    def run(self, messages: Sequence[Dict[str, Any]], tools: Sequence[AvailableTool] = ()) -> ConversationResult:
        history: List[Dict[str, Any]] = [dict(m) for m in messages]
        by_name = {t.name: t for t in tools}
        definitions = [t.tool.definition() for t in tools]

        result = ConversationResult(messages=history)
        answered_ids: Set[str] = set()
        executed: Set[Tuple[str, str]] = set()
        partial = ""

        for turn in range(1, self.max_turns + 1):
            response = self.provider.complete(history, definitions)
            result.turns = turn
            result.responses.append(response)
            if response.content:
                result.final_text = partial + response.content

            if not response.tool_calls:
                history.append({"role": "assistant", "content": response.content})
                if response.finished:
                    result.finished = True
                    logger.debug("Conversation finished on turn %d", turn)
                    break
                partial = result.final_text
                logger.debug("Reply on turn %d was cut off; continuing", turn)
                continue
            partial = ""

            calls = [c for c in response.tool_calls if c.id not in answered_ids]
            if len(calls) != len(response.tool_calls):
                logger.warning("Dropped %d already answered tool calls", len(response.tool_calls) - len(calls))
            history.append(
                {"role": "assistant", "content": response.content, "tool_calls": [c.to_dict() for c in calls]}
            )

            for call in calls:
                answered_ids.add(call.id)
                invocation = self._invoke(call, by_name.get(call.name), executed, turn)
                result.tool_results.append(invocation)
                history.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "name": call.name,
                        "content": self._tool_message(invocation),
                    }
                )
                if invocation.is_handler_tool and invocation.result.success:
                    result.handler_completed = True

            if result.handler_completed:
                result.finished = True
                logger.info("Handler tool completed on turn %d", turn)
                break
        else:
            result.truncated = True
            logger.warning("Conversation hit max turns limit (%d)", self.max_turns)

        return result

    def _invoke(
        self,
        call: ToolCall,
        available: Optional[AvailableTool],
        executed: Set[Tuple[str, str]],
        turn: int,
    ) -> ToolInvocation:
        if available is None:
            logger.warning("Model requested unknown tool '%s'", call.name)
            return ToolInvocation(
                call=call,
                result=ToolResult(success=False, tool_name=call.name, error=f"Unknown tool '{call.name}'"),
                turn=turn,
            )

        signature = _signature(call.name, call.arguments)
        if signature in executed:
            logger.info("Duplicate tool call prevented: %s", call.name)
            return ToolInvocation(
                call=call,
                result=ToolResult(success=False, tool_name=call.name, error=duplicate_call_message(call.name)),
                turn=turn,
                handler=available.tool.handler,
                duplicate=True,
            )
        executed.add(signature)

        tool_result = invoke_tool(available.tool, call.arguments, available.definition)
        logger.debug("Tool %s success=%s", call.name, tool_result.success)
        return ToolInvocation(call=call, result=tool_result, turn=turn, handler=available.tool.handler)

    @staticmethod
    def _tool_message(invocation: ToolInvocation) -> str:
        if invocation.duplicate:
            return invocation.result.error or ""
        return json.dumps(invocation.result.to_dict(), default=str)
