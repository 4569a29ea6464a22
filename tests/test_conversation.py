"""
Tests for the bounded tool-calling conversation loop.

These tests verify:
1. The loop ends on a final answer, a completed handler tool, or max turns
2. max_turns is clamped to its bounds
3. Already answered tool-call ids are dropped
4. Repeated identical calls are soft-rejected instead of executed
5. Tool failures are fed back; provider failures propagate
"""

import pytest

from flowmachine.ai.conversation import ConversationLoop, duplicate_call_message
from flowmachine.ai.providers import AIResponse, ToolCall
from flowmachine.ai.tools import AvailableTool, Tool, ToolResult
from flowmachine.runtime.errors import ProviderError
from flowmachine.runtime.types import FlowStepId

from conftest import RecordingPublishHandler, ScriptedProvider, text_reply, tool_reply


class CountingTool(Tool):
    name = "echo"
    description = "Echo the arguments"

    def __init__(self):
        self.executions = 0

    def execute(self, parameters, tool_definition):
        self.executions += 1
        return ToolResult(success=True, tool_name=self.name, data=dict(parameters))


def _available(tool, **definition):
    return AvailableTool(tool=tool, definition=dict(tool.definition(), **definition))


class TestTermination:
    """Tests for how conversations end."""

    def test_final_answer_finishes(self):
        """A reply without tool calls ends the loop."""
        provider = ScriptedProvider([text_reply("All done")])
        result = ConversationLoop(provider).run([{"role": "user", "content": "hi"}])

        assert result.finished is True
        assert result.truncated is False
        assert result.turns == 1
        assert result.final_text == "All done"
        assert result.messages[-1] == {"role": "assistant", "content": "All done"}

    def test_cut_off_reply_continues(self):
        """A text reply the model did not finish gets another turn and the parts are joined."""
        provider = ScriptedProvider(
            [AIResponse(content="Breaking: markets ", finished=False), text_reply("rally on rate cut")]
        )
        result = ConversationLoop(provider).run([{"role": "user", "content": "summarize"}])

        assert result.finished is True
        assert result.turns == 2
        assert len(provider.calls) == 2
        assert result.final_text == "Breaking: markets rally on rate cut"
        assert result.messages[-2] == {"role": "assistant", "content": "Breaking: markets "}

    def test_cut_off_replies_stop_at_max_turns(self):
        """Unfinished text replies still count against the turn limit."""
        provider = ScriptedProvider(fallback=AIResponse(content="more ", finished=False))
        result = ConversationLoop(provider, max_turns=2).run([{"role": "user", "content": "go"}])

        assert result.truncated is True
        assert result.finished is False
        assert result.final_text == "more more "

    def test_max_turns_truncates(self):
        """A model that keeps calling tools is stopped at max_turns."""
        counter = iter(range(100))

        def keep_calling(messages):
            n = next(counter)
            return tool_reply("echo", {"n": n}, call_id=f"call-{n}", content=f"step {n}")

        provider = ScriptedProvider(fallback=keep_calling)
        tool = CountingTool()
        result = ConversationLoop(provider, max_turns=3).run([{"role": "user", "content": "go"}], [_available(tool)])

        assert result.truncated is True
        assert result.finished is False
        assert result.turns == 3
        assert len(provider.calls) == 3
        assert tool.executions == 3
        assert result.final_text == "step 2"

    def test_max_turns_is_clamped(self):
        """Configured turn limits are kept within 1..50."""
        assert ConversationLoop(ScriptedProvider(), max_turns=500).max_turns == 50
        assert ConversationLoop(ScriptedProvider(), max_turns=0).max_turns == 1

    def test_handler_completion_stops_loop(self):
        """A successful handler tool completes the conversation immediately."""
        handler = RecordingPublishHandler()
        handler_tool = handler.tools({})[0]
        provider = ScriptedProvider([tool_reply("recorder_publish", {"content": "Tweet"}), text_reply("never sent")])
        tools = [_available(handler_tool, job_id="job-1", flow_step_id=FlowStepId("ps-2", "fl-1"))]

        result = ConversationLoop(provider).run([{"role": "user", "content": "go"}], tools)

        assert result.handler_completed is True
        assert result.finished is True
        assert result.turns == 1
        assert len(provider.calls) == 1
        assert [c.content for c in handler.published] == ["Tweet"]

    def test_failed_handler_tool_does_not_complete(self):
        """A failing handler tool is fed back and the loop continues."""
        handler_tool = RecordingPublishHandler(fail=True).tools({})[0]
        provider = ScriptedProvider([tool_reply("recorder_publish", {"content": "Tweet"}), text_reply("Gave up")])
        tools = [_available(handler_tool, job_id="job-1", flow_step_id=FlowStepId("ps-2", "fl-1"))]

        result = ConversationLoop(provider).run([{"role": "user", "content": "go"}], tools)
        assert result.handler_completed is False
        assert result.final_text == "Gave up"
        assert result.turns == 2

    def test_provider_error_propagates(self, failing_provider):
        """Provider failures are not swallowed by the loop."""
        with pytest.raises(ProviderError):
            ConversationLoop(failing_provider).run([{"role": "user", "content": "hi"}])


class TestToolCallGuards:
    """Tests for answered-id and duplicate-call guards."""

    def test_answered_ids_are_dropped(self):
        """A tool call id answered in an earlier turn is not executed again."""
        provider = ScriptedProvider(
            [
                tool_reply("echo", {"a": 1}, call_id="c1"),
                AIResponse(
                    tool_calls=[ToolCall("c1", "echo", {"a": 1}), ToolCall("c2", "echo", {"a": 2})],
                ),
                text_reply("done"),
            ]
        )
        tool = CountingTool()
        result = ConversationLoop(provider).run([{"role": "user", "content": "go"}], [_available(tool)])

        tool_ids = [m["tool_call_id"] for m in result.messages if m["role"] == "tool"]
        assert tool_ids == ["c1", "c2"]
        assert tool.executions == 2
        assert [i.call.id for i in result.tool_results] == ["c1", "c2"]

    def test_duplicate_call_is_soft_rejected(self):
        """The same tool with the same arguments runs once; the repeat gets a correction."""
        provider = ScriptedProvider(
            [
                tool_reply("echo", {"a": 1}, call_id="c1"),
                tool_reply("echo", {"a": 1}, call_id="c2"),
                text_reply("done"),
            ]
        )
        tool = CountingTool()
        result = ConversationLoop(provider).run([{"role": "user", "content": "go"}], [_available(tool)])

        assert tool.executions == 1
        assert result.tool_results[1].duplicate is True
        tool_messages = [m for m in result.messages if m["role"] == "tool"]
        assert tool_messages[1]["content"] == duplicate_call_message("echo")
        assert result.final_text == "done"

    def test_unknown_tool_is_reported(self):
        """Calls to tools that were not offered fail without ending the loop."""
        provider = ScriptedProvider([tool_reply("nope", {}), text_reply("ok")])
        result = ConversationLoop(provider).run([{"role": "user", "content": "go"}])

        assert result.tool_results[0].result.success is False
        assert result.tool_results[0].result.error == "Unknown tool 'nope'"
        assert result.final_text == "ok"

    def test_tool_definitions_sent_each_turn(self):
        """The provider receives the neutral tool definitions."""
        provider = ScriptedProvider([text_reply("x")])
        ConversationLoop(provider).run([{"role": "user", "content": "go"}], [_available(CountingTool())])
        assert [t["name"] for t in provider.calls[0]["tools"]] == ["echo"]
