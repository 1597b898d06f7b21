"""Stream-json adapters for the supported backend CLIs.

Every backend prints one JSON object per line on stdout.  An adapter turns one
line into zero or more canonical :class:`StreamEvent` objects.  Adapters are
pure: a line that is not JSON, or has a shape we don't know, yields ``[]`` and
parsing simply continues with the next line.

Two families exist:

* **token-level** (claude) – text arrives as small ``text_delta`` fragments
  that are appended.
* **turn-level** (gemini, codex) – each assistant turn carries the complete
  message, which *replaces* anything accumulated before.
"""
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from core.logging import logger


class EventKind(str, Enum):
    """Canonical event kinds shared by every backend."""
    TEXT_DELTA = "text-delta"
    FULL_TEXT = "full-text"
    REASONING_DELTA = "reasoning-delta"
    TOOL_INVOCATION = "tool-invocation"
    USAGE_UPDATE = "usage-update"
    COST_UPDATE = "cost-update"
    TERMINAL = "terminal"


class StreamGranularity(str, Enum):
    TOKEN = "token"
    TURN = "turn"


@dataclass(frozen=True)
class StreamEvent:
    """One incremental unit of a backend response."""
    kind: EventKind
    text: str = ""
    name: Optional[str] = None
    hint: Optional[str] = None
    # Body of a file-write tool call, kept as an output fallback
    content: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    amount: Optional[float] = None
    status: Optional[str] = None
    finish_reason: Optional[str] = None

    @classmethod
    def text_delta(cls, text: str) -> "StreamEvent":
        return cls(EventKind.TEXT_DELTA, text=text)

    @classmethod
    def full_text(cls, text: str) -> "StreamEvent":
        return cls(EventKind.FULL_TEXT, text=text)

    @classmethod
    def reasoning(cls, text: str) -> "StreamEvent":
        return cls(EventKind.REASONING_DELTA, text=text)

    @classmethod
    def tool(cls, name: str, hint: Optional[str] = None, content: Optional[str] = None) -> "StreamEvent":
        return cls(EventKind.TOOL_INVOCATION, name=name, hint=hint or None, content=content or None)

    @classmethod
    def usage(cls, input_tokens: int, output_tokens: int) -> "StreamEvent":
        return cls(EventKind.USAGE_UPDATE, input_tokens=int(input_tokens or 0), output_tokens=int(output_tokens or 0))

    @classmethod
    def cost(cls, amount: float) -> "StreamEvent":
        return cls(EventKind.COST_UPDATE, amount=float(amount))

    @classmethod
    def terminal(cls, status: str, finish_reason: str) -> "StreamEvent":
        return cls(EventKind.TERMINAL, status=status, finish_reason=finish_reason)


# Input fields that make a useful one-line hint for a tool call
_HINT_FIELDS = ("file_path", "path", "pattern", "query", "command")


def _tool_hint(tool_input: Dict[str, Any]) -> str:
    for key in _HINT_FIELDS:
        value = tool_input.get(key)
        if value:
            return str(value)
    return ""


def _first_int(mapping: Dict[str, Any], *keys: str) -> int:
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return 0


class StreamParser(ABC):
    """Base class for a backend's line protocol."""

    granularity: StreamGranularity

    def parse_line(self, line: str) -> List[StreamEvent]:
        """Parse one stdout line. Never raises."""
        try:
            obj = json.loads(line)
        except (json.JSONDecodeError, TypeError, ValueError):
            logger.debug(f"Skipping non-JSON line: {line[:120]!r}")
            return []
        if not isinstance(obj, dict):
            return []
        try:
            return self._parse(obj)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.debug(f"Skipping malformed {type(self).__name__} event: {e}")
            return []

    @abstractmethod
    def _parse(self, obj: Dict[str, Any]) -> List[StreamEvent]:
        """Translate one decoded JSON object."""
        pass


class ClaudeStreamParser(StreamParser):
    """Claude Code ``--output-format stream-json --include-partial-messages``.

    Event types:
    - stream_event/content_block_delta/text_delta → token streaming
    - stream_event/content_block_delta/thinking_delta → reasoning
    - stream_event/content_block_start/tool_use → tool invocation starting
    - assistant message with tool_use content → tool names + input hint
    - assistant message with text content → full text (non-partial mode)
    - result → usage, cost, terminal
    """

    granularity = StreamGranularity.TOKEN

    def _parse(self, obj: Dict[str, Any]) -> List[StreamEvent]:
        kind = obj.get("type")

        if kind == "stream_event":
            evt = obj.get("event") or {}
            if evt.get("type") == "content_block_delta":
                delta = evt.get("delta") or {}
                if delta.get("type") == "text_delta" and delta.get("text"):
                    return [StreamEvent.text_delta(delta["text"])]
                if delta.get("type") == "thinking_delta" and delta.get("thinking"):
                    return [StreamEvent.reasoning(delta["thinking"])]
            if evt.get("type") == "content_block_start":
                block = evt.get("content_block") or {}
                if block.get("type") == "tool_use" and block.get("name"):
                    return [StreamEvent.tool(block["name"])]
            return []

        if kind == "assistant":
            content = (obj.get("message") or {}).get("content")
            if not isinstance(content, list):
                return []

            tools = [c for c in content if isinstance(c, dict) and c.get("type") == "tool_use"]
            if tools:
                names = ", ".join(str(t.get("name", "tool")) for t in tools)
                hint = ", ".join(filter(None, (_tool_hint(t.get("input") or {}) for t in tools)))
                write = next(
                    (t["input"]["content"] for t in tools
                     if t.get("name") == "Write" and (t.get("input") or {}).get("content")),
                    None,
                )
                return [StreamEvent.tool(names, hint, write)]

            text = "".join(
                c.get("text", "") for c in content
                if isinstance(c, dict) and c.get("type") == "text"
            )
            return [StreamEvent.full_text(text)] if text else []

        if kind == "result":
            events = []
            usage = obj.get("usage")
            if isinstance(usage, dict):
                events.append(StreamEvent.usage(
                    _first_int(usage, "input_tokens", "inputTokens"),
                    _first_int(usage, "output_tokens", "outputTokens"),
                ))
            if obj.get("total_cost_usd") is not None:
                events.append(StreamEvent.cost(obj["total_cost_usd"]))
            if obj.get("is_error"):
                reason = "error"
            elif obj.get("stop_reason") == "max_tokens":
                reason = "length"
            else:
                reason = "stop"
            events.append(StreamEvent.terminal(obj.get("subtype") or "success", reason))
            return events

        return []


class GeminiStreamParser(StreamParser):
    """Gemini CLI ``-o stream-json``: one full message per turn."""

    granularity = StreamGranularity.TURN

    def _parse(self, obj: Dict[str, Any]) -> List[StreamEvent]:
        kind = obj.get("type")

        if kind == "message" and obj.get("role") == "assistant" and obj.get("content"):
            if obj.get("delta"):
                return [StreamEvent.text_delta(obj["content"])]
            return [StreamEvent.full_text(obj["content"])]

        if kind in ("tool_use", "tool_call"):
            name = obj.get("tool_name") or obj.get("name") or obj.get("tool") or "tool"
            args = obj.get("args") or obj.get("parameters") or {}
            write = args.get("content") if name == "write_file" else None
            return [StreamEvent.tool(name, _tool_hint(args), write)]

        if kind == "result":
            events = []
            stats = obj.get("stats")
            if isinstance(stats, dict):
                events.append(StreamEvent.usage(
                    _first_int(stats, "input_tokens", "input"),
                    _first_int(stats, "output_tokens", "output"),
                ))
            status = obj.get("status") or "success"
            events.append(StreamEvent.terminal(status, "stop" if status == "success" else "error"))
            return events

        return []


class CodexStreamParser(StreamParser):
    """Codex ``exec --json``.

    Observed events: thread.started, turn.started/turn.completed (usage),
    item.started/item.completed (agent_message, reasoning,
    command_execution), error/turn.failed.
    """

    granularity = StreamGranularity.TURN

    def _parse(self, obj: Dict[str, Any]) -> List[StreamEvent]:
        kind = obj.get("type")
        item = obj.get("item") or {}

        if kind == "item.completed":
            if item.get("type") == "agent_message" and item.get("text"):
                return [StreamEvent.full_text(item["text"])]
            if item.get("type") == "reasoning" and item.get("text"):
                return [StreamEvent.reasoning(item["text"])]
            if item.get("type") == "command_execution" and item.get("aggregated_output"):
                output = item["aggregated_output"]
                # Shell redirects are how codex writes files
                writes_file = ">" in (item.get("command") or "")
                return [StreamEvent.tool("Bash", f"({len(output)} chars output)", output if writes_file else None)]
            return []

        if kind == "item.started" and item.get("type") == "command_execution":
            return [StreamEvent.tool("Bash", item.get("command"))]

        if kind == "turn.completed":
            events = []
            usage = obj.get("usage")
            if isinstance(usage, dict):
                events.append(StreamEvent.usage(usage.get("input_tokens") or 0, usage.get("output_tokens") or 0))
            events.append(StreamEvent.terminal("success", "stop"))
            return events

        if kind in ("turn.failed", "error"):
            return [StreamEvent.terminal("error", "error")]

        return []


# Adapter table, selected once per request by backend id
PARSERS: Dict[str, StreamParser] = {
    "claude": ClaudeStreamParser(),
    "gemini": GeminiStreamParser(),
    "codex": CodexStreamParser(),
}


def get_parser(backend_id: str) -> StreamParser:
    try:
        return PARSERS[backend_id]
    except KeyError:
        raise ValueError(f"No stream parser for backend: {backend_id}") from None
