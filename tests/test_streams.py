"""Tests for the backend stream protocol adapters."""
import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from llm.launcher import ProcessOutcome
from llm.streams import (
    ClaudeStreamParser,
    CodexStreamParser,
    EventKind,
    GeminiStreamParser,
    StreamEvent,
    StreamGranularity,
    get_parser,
)


def line(obj):
    return json.dumps(obj)


def claude_delta(text):
    return line({"type": "stream_event", "event": {"type": "content_block_delta", "delta": {"type": "text_delta", "text": text}}})


@pytest.mark.parametrize("parser", [ClaudeStreamParser(), GeminiStreamParser(), CodexStreamParser()])
@pytest.mark.parametrize("raw", ["", "not json", "{broken", "[1, 2]", "42", '"text"', line({"type": "unknown"})])
def test_garbage_lines_produce_no_events(parser, raw):
    assert parser.parse_line(raw) == []


def test_get_parser_rejects_unknown_backend():
    with pytest.raises(ValueError):
        get_parser("nope")
    assert get_parser("claude").granularity is StreamGranularity.TOKEN
    assert get_parser("codex").granularity is StreamGranularity.TURN


class TestClaude:
    parser = ClaudeStreamParser()

    def test_text_and_thinking_deltas(self):
        assert self.parser.parse_line(claude_delta("He")) == [StreamEvent.text_delta("He")]
        thinking = line({"type": "stream_event", "event": {"type": "content_block_delta", "delta": {"type": "thinking_delta", "thinking": "hmm"}}})
        assert self.parser.parse_line(thinking) == [StreamEvent.reasoning("hmm")]

    def test_tool_block_start(self):
        start = line({"type": "stream_event", "event": {"type": "content_block_start", "content_block": {"type": "tool_use", "name": "Read"}}})
        [event] = self.parser.parse_line(start)
        assert event.kind is EventKind.TOOL_INVOCATION
        assert event.name == "Read"

    def test_write_tool_carries_content(self):
        msg = line({"type": "assistant", "message": {"content": [
            {"type": "tool_use", "name": "Write", "input": {"file_path": "/x/_OUTPUT.md", "content": "# Doc"}},
        ]}})
        [event] = self.parser.parse_line(msg)
        assert event.name == "Write"
        assert event.hint == "/x/_OUTPUT.md"
        assert event.content == "# Doc"

    def test_assistant_text_is_full_text(self):
        msg = line({"type": "assistant", "message": {"content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]}})
        assert self.parser.parse_line(msg) == [StreamEvent.full_text("ab")]

    def test_result_reports_usage_cost_and_reason(self):
        msg = line({"type": "result", "subtype": "success", "usage": {"input_tokens": 5, "output_tokens": 7},
                    "total_cost_usd": 0.25, "stop_reason": "max_tokens"})
        usage, cost, terminal = self.parser.parse_line(msg)
        assert (usage.input_tokens, usage.output_tokens) == (5, 7)
        assert cost.amount == 0.25
        assert terminal.status == "success"
        assert terminal.finish_reason == "length"

    def test_error_result(self):
        [terminal] = self.parser.parse_line(line({"type": "result", "subtype": "error_during_execution", "is_error": True}))
        assert terminal.finish_reason == "error"


class TestGemini:
    parser = GeminiStreamParser()

    def test_message_delta_and_full(self):
        delta = line({"type": "message", "role": "assistant", "content": "Hel", "delta": True})
        full = line({"type": "message", "role": "assistant", "content": "Hello"})
        user = line({"type": "message", "role": "user", "content": "prompt"})
        assert self.parser.parse_line(delta) == [StreamEvent.text_delta("Hel")]
        assert self.parser.parse_line(full) == [StreamEvent.full_text("Hello")]
        assert self.parser.parse_line(user) == []

    def test_write_file_tool(self):
        msg = line({"type": "tool_use", "tool_name": "write_file", "parameters": {"file_path": "out.md", "content": "# Doc"}})
        [event] = self.parser.parse_line(msg)
        assert event.content == "# Doc"
        assert event.hint == "out.md"

    def test_result(self):
        usage, terminal = self.parser.parse_line(line({"type": "result", "status": "success", "stats": {"input_tokens": 3, "output_tokens": 4}}))
        assert usage.output_tokens == 4
        assert terminal.finish_reason == "stop"
        [terminal] = self.parser.parse_line(line({"type": "result", "status": "error"}))
        assert terminal.finish_reason == "error"


class TestCodex:
    parser = CodexStreamParser()

    def test_agent_message_is_full_text(self):
        msg = line({"type": "item.completed", "item": {"type": "agent_message", "text": "# Doc"}})
        assert self.parser.parse_line(msg) == [StreamEvent.full_text("# Doc")]

    def test_command_with_redirect_keeps_output(self):
        msg = line({"type": "item.completed", "item": {"type": "command_execution", "command": "cat > out.md", "aggregated_output": "# Doc"}})
        [event] = self.parser.parse_line(msg)
        assert event.content == "# Doc"
        plain = line({"type": "item.completed", "item": {"type": "command_execution", "command": "ls", "aggregated_output": "a b"}})
        assert self.parser.parse_line(plain)[0].content is None

    def test_turn_events(self):
        usage, terminal = self.parser.parse_line(line({"type": "turn.completed", "usage": {"input_tokens": 1, "output_tokens": 2}}))
        assert usage.input_tokens == 1
        assert terminal.finish_reason == "stop"
        assert self.parser.parse_line(line({"type": "turn.failed"}))[0].finish_reason == "error"


def test_outcome_joins_deltas_and_replaces_on_full_text():
    outcome = ProcessOutcome()
    parser = ClaudeStreamParser()
    for text in ("He", "ll", "o"):
        for event in parser.parse_line(claude_delta(text)):
            outcome.apply(event)
    assert outcome.text == "Hello"

    outcome.apply(StreamEvent.full_text("Final"))
    assert outcome.text == "Final"

    outcome.apply(StreamEvent.tool("Write", "out.md", "# Written"))
    assert outcome.write_content == "# Written"
    assert outcome.text == "Final"
