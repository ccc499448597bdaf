"""Client for the Anthropic messages API.

Conversation history and tool schemas stay in chat-completions form
everywhere else; this module converts them on the way out and turns
``content_block`` events back into the same ``StreamChunk`` and
``ChatResponse`` types the rest of the code consumes.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from termpilot.llm.client import ChatOptions, LLMClient
from termpilot.llm.errors import LLMError
from termpilot.llm.types import ChatResponse, ChunkDelta, StreamChunk, ToolCall, Usage

logger = logging.getLogger(__name__)

MESSAGES_PATH = "/messages"
ANTHROPIC_VERSION = "2023-06-01"
INTERLEAVED_THINKING_BETA = "interleaved-thinking-2025-05-14"

# The messages API requires max_tokens on every request.
DEFAULT_MAX_TOKENS = 4096
DEFAULT_THINKING = {"thinking": {"type": "enabled", "budget_tokens": 10000}}

STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "tool_use": "tool_calls",
    "max_tokens": "length",
}


def parse_stop_reason(reason: Optional[str]) -> str:
    return STOP_REASONS.get(reason or "", "stop")


def to_anthropic_tools(tools: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Convert chat-completions function tools to messages-API tools."""
    converted = []
    for tool in tools:
        fn = tool.get("function") or {}
        if not fn.get("name"):
            continue
        converted.append(
            {
                "name": fn["name"],
                "description": fn.get("description", ""),
                "input_schema": fn.get("parameters") or {"type": "object", "properties": {}},
            }
        )
    return converted


def _tool_input(arguments: str) -> Dict[str, Any]:
    try:
        value = json.loads(arguments or "{}")
    except json.JSONDecodeError:
        logger.debug(f"Sending malformed tool arguments as an empty input: {arguments[:80]}")
        return {}
    return value if isinstance(value, dict) else {}


def to_anthropic_messages(messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Convert chat-completions messages to the messages-API shape.

    System messages are dropped (they travel in the top-level ``system``
    field).  Consecutive tool results are folded into a single user message
    of ``tool_result`` blocks; assistant tool calls become ``tool_use``
    blocks after any thinking and text blocks.
    """
    result: List[Dict[str, Any]] = []
    pending_results: List[Dict[str, Any]] = []

    for msg in messages:
        role = msg.get("role")
        if role == "system":
            continue
        if role == "tool":
            pending_results.append(
                {
                    "type": "tool_result",
                    "tool_use_id": msg.get("tool_call_id") or "",
                    "content": msg.get("content") or "",
                }
            )
            continue

        if pending_results:
            result.append({"role": "user", "content": pending_results})
            pending_results = []

        content = msg.get("content") or ""
        if role == "user":
            result.append({"role": "user", "content": content})
            continue

        tool_calls = msg.get("tool_calls") or []
        reasoning = msg.get("reasoning_content")
        if not tool_calls and not reasoning:
            result.append({"role": "assistant", "content": content})
            continue

        blocks: List[Dict[str, Any]] = []
        if reasoning:
            blocks.append({"type": "thinking", "thinking": reasoning})
        if content:
            blocks.append({"type": "text", "text": content})
        for call in tool_calls:
            fn = call.get("function") or {}
            blocks.append(
                {
                    "type": "tool_use",
                    "id": call.get("id", ""),
                    "name": fn.get("name", ""),
                    "input": _tool_input(fn.get("arguments", "")),
                }
            )
        result.append({"role": "assistant", "content": blocks})

    if pending_results:
        result.append({"role": "user", "content": pending_results})
    return result


class MessagesStreamDecoder:
    """Turns messages-API stream events into ``StreamChunk`` objects."""

    def __init__(self) -> None:
        self._blocks: Dict[int, Dict[str, Any]] = {}
        self._stop_reason: Optional[str] = None
        self._input_tokens = 0
        self._output_tokens = 0
        self.finished = False
        self.done = False

    def feed(self, event: Dict[str, Any]) -> List[StreamChunk]:
        kind = event.get("type")

        if kind == "message_start":
            usage = (event.get("message") or {}).get("usage") or {}
            self._input_tokens = int(usage.get("input_tokens") or 0)
            self._output_tokens = int(usage.get("output_tokens") or 0)

        elif kind == "content_block_start":
            block = event.get("content_block") or {}
            self._blocks[event.get("index", 0)] = {
                "type": block.get("type"),
                "id": block.get("id", ""),
                "name": block.get("name", ""),
                "input_parts": [],
            }

        elif kind == "content_block_delta":
            block = self._blocks.get(event.get("index", 0))
            delta = event.get("delta") or {}
            if block is None:
                return []
            delta_type = delta.get("type")
            if delta_type == "text_delta" and delta.get("text"):
                return [StreamChunk(delta=ChunkDelta(content=delta["text"]))]
            if delta_type == "thinking_delta" and delta.get("thinking"):
                return [StreamChunk(delta=ChunkDelta(reasoning_content=delta["thinking"]))]
            if delta_type == "input_json_delta" and delta.get("partial_json"):
                block["input_parts"].append(delta["partial_json"])

        elif kind == "message_delta":
            stop_reason = (event.get("delta") or {}).get("stop_reason")
            if stop_reason:
                self._stop_reason = stop_reason
            usage = event.get("usage") or {}
            if usage.get("output_tokens") is not None:
                self._output_tokens = int(usage["output_tokens"])

        elif kind == "message_stop":
            return [self._terminal()]

        elif kind == "error":
            error = event.get("error") or {}
            code = "server_error" if error.get("type") == "overloaded_error" else "api_error"
            raise LLMError(f"Stream error: {error.get('message') or 'unknown error'}", code=code)

        return []

    def _terminal(self) -> StreamChunk:
        self.finished = True
        self.done = True
        calls = [
            ToolCall(
                id=block["id"],
                name=block["name"],
                arguments="".join(block["input_parts"]) or "{}",
            )
            for _, block in sorted(self._blocks.items())
            if block["type"] == "tool_use" and block["id"] and block["name"]
        ]
        usage = Usage(
            prompt_tokens=self._input_tokens,
            completion_tokens=self._output_tokens,
            total_tokens=self._input_tokens + self._output_tokens,
        )
        if calls:
            return StreamChunk(delta=ChunkDelta(tool_calls=calls), finish_reason="tool_calls", usage=usage)
        return StreamChunk(finish_reason=parse_stop_reason(self._stop_reason), usage=usage)


class AnthropicClient(LLMClient):
    """Client for the Anthropic messages endpoint (``{base_url}/messages``)."""

    API_PATH = MESSAGES_PATH

    def _auth_headers(self) -> Dict[str, str]:
        headers = {
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }
        if self.model_config.supports_thinking:
            headers["anthropic-beta"] = INTERLEAVED_THINKING_BETA
        return headers

    def _tool_choice(self, required_tool: str, tools: List[Dict[str, Any]]) -> Any:
        choice = super()._tool_choice(required_tool, tools)
        if isinstance(choice, dict):
            return {"type": "tool", "name": choice["function"]["name"]}
        return {"type": "any"}

    def build_payload(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        options: Optional[ChatOptions] = None,
        stream: bool = False,
    ) -> Dict[str, Any]:
        options = options or ChatOptions()
        cfg = self.model_config
        wire_messages = list(messages)

        payload: Dict[str, Any] = {
            "model": cfg.name,
            "max_tokens": options.max_tokens or cfg.max_tokens or DEFAULT_MAX_TOKENS,
        }
        system = "\n\n".join(
            m["content"] for m in messages if m.get("role") == "system" and m.get("content")
        )
        if system:
            payload["system"] = system
        if cfg.temperature is not None:
            payload["temperature"] = cfg.temperature

        if tools and cfg.supports_tools:
            payload["tools"] = to_anthropic_tools(tools)
            if options.required_tool:
                if cfg.supports_tool_choice:
                    payload["tool_choice"] = self._tool_choice(options.required_tool, tools)
                elif cfg.supports_prefill:
                    wire_messages.append(self._prefill_message(options.required_tool))

        if stream:
            payload["stream"] = True

        if cfg.supports_thinking:
            enabled = cfg.thinking_enabled if options.thinking is None else options.thinking
            if enabled:
                payload.update(cfg.thinking_params.enabled or DEFAULT_THINKING)
            else:
                payload.update(cfg.thinking_params.disabled)

        if options.extra_body:
            payload.update(options.extra_body)

        payload["messages"] = to_anthropic_messages(wire_messages)
        return payload

    def _parse_response(self, data: Dict[str, Any]) -> ChatResponse:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise LLMError("Response contained no content blocks", code="protocol_error")

        text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        thinking = "".join(b.get("thinking", "") for b in blocks if b.get("type") == "thinking")
        tool_calls = [
            ToolCall(
                id=b.get("id", ""),
                name=b["name"],
                arguments=json.dumps(b.get("input") or {}, sort_keys=True, ensure_ascii=False),
            )
            for b in blocks
            if b.get("type") == "tool_use" and b.get("name")
        ]
        finish_reason = "tool_calls" if tool_calls else parse_stop_reason(data.get("stop_reason"))

        usage = None
        if data.get("usage"):
            prompt = int(data["usage"].get("input_tokens") or 0)
            completion = int(data["usage"].get("output_tokens") or 0)
            usage = Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)

        return ChatResponse(
            content=text,
            reasoning_content=thinking,
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            usage=usage,
        )

    def _stream_decoder(self) -> MessagesStreamDecoder:
        return MessagesStreamDecoder()
