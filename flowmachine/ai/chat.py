"""
chat.py - Chat agent.

A conversational agent over the engine itself: it gets the chat identity
directive, global and chat-only tools (list_flows, run_flow) and runs the
same bounded conversation loop as AI steps.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence

from flowmachine.ai.conversation import ConversationLoop, ConversationResult
from flowmachine.ai.directives import DirectiveComposer, DirectiveContext, render_system_messages
from flowmachine.ai.providers import ProviderClient
from flowmachine.ai.tools import AGENT_CHAT, AvailableTool, ToolDiscovery
from flowmachine.config.runtime_config import DEFAULT_MAX_TURNS

logger = logging.getLogger(__name__)

CHAT_ROLES = ("user", "assistant")


class ChatAgent:
    def __init__(
        self,
        provider: ProviderClient,
        discovery: ToolDiscovery,
        composer: DirectiveComposer,
        max_turns: int = DEFAULT_MAX_TURNS,
    ):
        self._discovery = discovery
        self._composer = composer
        self.loop = ConversationLoop(provider, max_turns=max_turns)

    def tools(self) -> List[AvailableTool]:
        return [AvailableTool(tool=t, definition=dict(t.definition())) for t in self._discovery.discover(AGENT_CHAT)]

    def run(self, history: Sequence[Dict[str, Any]]) -> ConversationResult:
        """Answer the latest user message.

        Args:
            history: Prior user/assistant messages, oldest first. Other roles
                are dropped.
        """
        tools = self.tools()
        context = DirectiveContext(agent_type=AGENT_CHAT, tools=[t.tool for t in tools])
        system = render_system_messages(self._composer.compose(context))
        messages = [
            {"role": m["role"], "content": str(m.get("content") or "")} for m in history if m.get("role") in CHAT_ROLES
        ]
        result = self.loop.run(system + messages, tools)
        logger.info("Chat answered in %d turns (tools used: %d)", result.turns, len(result.tool_results))
        return result
