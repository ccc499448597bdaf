"""Wire-level data types shared by the client and the conversation layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

FINISH_REASONS = ("stop", "eos", "tool_calls", "length")


def normalize_finish_reason(reason: Optional[str]) -> str:
    """Map a provider finish reason onto stop/eos/tool_calls/length."""
    if reason in FINISH_REASONS:
        return reason
    return "stop"


@dataclass
class Usage:
    """Token usage reported by the provider for one response."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Usage":
        prompt = int(data.get("prompt_tokens") or 0)
        completion = int(data.get("completion_tokens") or 0)
        total = int(data.get("total_tokens") or prompt + completion)
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


@dataclass
class ToolCall:
    """A function call requested by the model.

    ``arguments`` stays the raw JSON string the model produced; parsing it is
    the tool-call handler's job so that a malformed payload can be reported
    back to the model.
    """

    id: str
    name: str
    arguments: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to OpenAI tool_calls format."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_dict(cls, call: Dict[str, Any]) -> "ToolCall":
        """Parse from OpenAI tool_calls format."""
        func = call.get("function") or {}
        arguments = func.get("arguments", "")
        if not isinstance(arguments, str):
            arguments = "" if arguments is None else str(arguments)
        return cls(id=call.get("id", ""), name=func.get("name", ""), arguments=arguments)


@dataclass
class ChunkDelta:
    """Incremental assistant output carried by one stream chunk."""

    content: str = ""
    reasoning_content: str = ""
    tool_calls: Optional[List[ToolCall]] = None


@dataclass
class StreamChunk:
    """A single chunk from a streaming response.

    ``finish_reason`` is set on exactly one chunk per stream (the terminal
    one); completed tool calls are only ever attached to that chunk.
    """

    delta: ChunkDelta = field(default_factory=ChunkDelta)
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None

    @property
    def is_terminal(self) -> bool:
        return self.finish_reason is not None


@dataclass
class ChatResponse:
    """Response from a non-streaming request."""

    content: str = ""
    reasoning_content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"
    usage: Optional[Usage] = None

    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)
