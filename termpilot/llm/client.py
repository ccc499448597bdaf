"""LLM client using httpx for OpenAI-compatible chat-completions APIs.

Supports both blocking (``chat``) and streaming (``stream_chat``) modes.
The streaming path yields ``StreamChunk`` objects as SSE frames arrive;
tool-call fragments are accumulated per index and only handed out, fully
assembled, on the single terminal chunk.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import Future
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

import httpx

from termpilot.api.cancel import CancelToken
from termpilot.api.retry import RetryHandler
from termpilot.config.models import ModelConfig, RetryConfig, StreamConfig
from termpilot.llm.errors import ContextWindowExceeded, LLMError, RequestCancelled
from termpilot.llm.types import (
    ChatResponse,
    ChunkDelta,
    StreamChunk,
    ToolCall,
    Usage,
    normalize_finish_reason,
)

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/chat/completions"


@dataclass
class ChatOptions:
    """Per-request options."""

    cancel: Optional[CancelToken] = None
    # Tool id the model must call next (e.g. ``plan`` in plan mode).
    required_tool: Optional[str] = None
    max_tokens: Optional[int] = None
    # None keeps the model config's default.
    thinking: Optional[bool] = None
    extra_body: Dict[str, Any] = field(default_factory=dict)


def serialize_body(payload: Dict[str, Any]) -> bytes:
    """Serialize a request body with sorted keys.

    Byte-identical prefixes across requests let providers reuse their
    prompt-prefix cache.
    """
    return json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":")).encode(
        "utf-8"
    )


class ToolCallAccumulator:
    """Reassembles tool calls whose fields arrive fragmented across chunks."""

    def __init__(self) -> None:
        self._calls: Dict[int, Dict[str, Any]] = {}

    def add(self, deltas: List[Dict[str, Any]]) -> None:
        for tcd in deltas:
            idx = tcd.get("index", 0)
            fn = tcd.get("function") or {}
            acc = self._calls.setdefault(idx, {"id": "", "name": "", "arguments_parts": []})
            if tcd.get("id") and not acc["id"]:
                acc["id"] = tcd["id"]
            if fn.get("name") and not acc["name"]:
                acc["name"] = fn["name"]
            if fn.get("arguments"):
                acc["arguments_parts"].append(fn["arguments"])

    def __len__(self) -> int:
        return len(self._calls)

    def materialize(self) -> List[ToolCall]:
        """Completed calls in index order; entries without a function name are dropped.

        Providers that omit call ids get ``call_{ms}_{index}``.
        """
        now_ms = int(time.time() * 1000)
        calls = []
        for idx in sorted(self._calls):
            acc = self._calls[idx]
            if not acc["name"]:
                continue
            calls.append(
                ToolCall(
                    id=acc["id"] or f"call_{now_ms}_{idx}",
                    name=acc["name"],
                    arguments="".join(acc["arguments_parts"]),
                )
            )
        return calls


class ChatCompletionsDecoder:
    """Turns chat-completions stream frames into ``StreamChunk`` objects.

    ``finished`` is set once the terminal chunk has been produced; ``done``
    tells the reader to stop consuming frames.
    """

    def __init__(self) -> None:
        self.accumulator = ToolCallAccumulator()
        self.finished = False
        self.done = False

    def feed(self, frame: Dict[str, Any]) -> List[StreamChunk]:
        usage = Usage.from_dict(frame["usage"]) if frame.get("usage") else None

        choices = frame.get("choices") or []
        if not choices:
            return [StreamChunk(usage=usage)] if usage is not None else []

        choice = choices[0]
        delta = choice.get("delta") or {}
        if delta.get("tool_calls"):
            self.accumulator.add(delta["tool_calls"])

        chunk = StreamChunk(
            delta=ChunkDelta(
                content=delta.get("content") or "",
                reasoning_content=delta.get("reasoning_content") or "",
            ),
            usage=usage,
        )

        reason = choice.get("finish_reason")
        if reason and not self.finished:
            self.finished = True
            calls = self.accumulator.materialize()
            if calls:
                chunk.delta.tool_calls = calls
                chunk.finish_reason = "tool_calls"
            else:
                chunk.finish_reason = normalize_finish_reason(reason)
        return [chunk]


class StreamWatchdog:
    """Runs the connection and activity clocks for one streaming request.

    Until the first :meth:`touch` the deadline is ``connect_timeout`` after
    :meth:`start`; afterwards each ``touch`` pushes it to
    ``activity_timeout`` from now.  When a deadline passes, the callback
    given to ``start`` is called once from the watchdog thread.
    """

    def __init__(self, connect_timeout: float, activity_timeout: float):
        self.connect_timeout = connect_timeout
        self.activity_timeout = activity_timeout
        self._on_timeout: Callable[[], None] = lambda: None
        self._cond = threading.Condition()
        self._deadline = 0.0
        self._stopped = False
        self._received_data = False
        self.timed_out = False
        self.expired_phase: Optional[str] = None
        self._thread: Optional[threading.Thread] = None

    def start(self, on_timeout: Callable[[], None]) -> None:
        with self._cond:
            self._on_timeout = on_timeout
            self._deadline = time.monotonic() + self.connect_timeout
        self._thread = threading.Thread(target=self._run, name="stream-watchdog", daemon=True)
        self._thread.start()

    def touch(self) -> None:
        with self._cond:
            self._received_data = True
            self._deadline = time.monotonic() + self.activity_timeout
            self._cond.notify_all()

    def stop(self) -> None:
        with self._cond:
            self._stopped = True
            self._cond.notify_all()

    def _run(self) -> None:
        with self._cond:
            while not self._stopped:
                remaining = self._deadline - time.monotonic()
                if remaining <= 0:
                    self.timed_out = True
                    self.expired_phase = "activity" if self._received_data else "connect"
                    break
                self._cond.wait(remaining)
        if self.timed_out:
            logger.warning(f"Stream {self.expired_phase} timeout expired")
            self._on_timeout()

    def describe(self) -> str:
        if self.expired_phase == "connect":
            return f"No response within {self.connect_timeout:.0f}s"
        return f"No data received for {self.activity_timeout:.0f}s"


def _discard_response(pending: Future) -> None:
    """Close a response that arrived after its request was abandoned."""
    if pending.exception() is None:
        pending.result().close()


class LLMClient:
    """Client for an OpenAI-compatible chat-completions endpoint."""

    API_PATH = CHAT_COMPLETIONS_PATH

    def __init__(
        self,
        model: ModelConfig,
        retry: Optional[RetryConfig] = None,
        stream: Optional[StreamConfig] = None,
        api_key: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.model_config = model
        self.stream_config = stream or StreamConfig()
        self._retry = RetryHandler(retry or RetryConfig())
        self._api_key = api_key or model.get_api_key()

        self._request_count = 0
        self._input_tokens = 0
        self._output_tokens = 0

        self._client = httpx.Client(
            base_url=model.base_url,
            headers=self._auth_headers(),
            timeout=httpx.Timeout(
                connect=self.stream_config.connect_timeout,
                read=self.stream_config.activity_timeout,
                write=self.stream_config.connect_timeout,
                pool=self.stream_config.connect_timeout,
            ),
            transport=transport,
        )

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _tool_choice(self, required_tool: str, tools: List[Dict[str, Any]]) -> Any:
        """Force a single function when the tool has one, else require any call."""
        prefix = f"{required_tool}_"
        names = [
            t["function"]["name"]
            for t in tools
            if t.get("function", {}).get("name", "").startswith(prefix)
            or t.get("function", {}).get("name") == required_tool
        ]
        if len(names) == 1:
            return {"type": "function", "function": {"name": names[0]}}
        return "required"

    def _prefill_message(self, required_tool: str) -> Dict[str, Any]:
        opener = self.model_config.prefill_template.replace("{name}", f"{required_tool}_")
        return {"role": "assistant", "content": opener}

    def build_payload(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        options: Optional[ChatOptions] = None,
        stream: bool = False,
    ) -> Dict[str, Any]:
        """Assemble the JSON body for one request."""
        options = options or ChatOptions()
        cfg = self.model_config
        wire_messages = list(messages)

        payload: Dict[str, Any] = {"model": cfg.name}

        max_tokens = options.max_tokens or cfg.max_tokens
        if max_tokens:
            payload["max_tokens"] = max_tokens
        if cfg.temperature is not None:
            payload["temperature"] = cfg.temperature

        if tools and cfg.supports_tools:
            payload["tools"] = tools
            if options.required_tool:
                if cfg.supports_tool_choice:
                    payload["tool_choice"] = self._tool_choice(options.required_tool, tools)
                elif cfg.supports_prefill:
                    wire_messages.append(self._prefill_message(options.required_tool))

        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}

        if cfg.supports_thinking:
            enabled = cfg.thinking_enabled if options.thinking is None else options.thinking
            params = cfg.thinking_params.enabled if enabled else cfg.thinking_params.disabled
            payload.update(params)

        if options.extra_body:
            payload.update(options.extra_body)

        payload["messages"] = wire_messages
        return payload

    # ------------------------------------------------------------------
    # Response decoding
    # ------------------------------------------------------------------

    def _parse_response(self, data: Dict[str, Any]) -> ChatResponse:
        choices = data.get("choices") or []
        if not choices:
            raise LLMError("Response contained no choices", code="protocol_error")
        choice = choices[0]
        message = choice.get("message") or {}

        tool_calls = [
            ToolCall.from_dict(tc) for tc in message.get("tool_calls") or [] if tc.get("function")
        ]
        tool_calls = [tc for tc in tool_calls if tc.name]
        finish_reason = "tool_calls" if tool_calls else normalize_finish_reason(
            choice.get("finish_reason")
        )
        usage = Usage.from_dict(data["usage"]) if data.get("usage") else None

        return ChatResponse(
            content=message.get("content") or "",
            reasoning_content=message.get("reasoning_content") or "",
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            usage=usage,
        )

    def _stream_decoder(self) -> Any:
        return ChatCompletionsDecoder()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    @staticmethod
    def _is_context_window_error(status_code: int, error_msg: str) -> bool:
        """Detect context-window-exceeded errors from status code or message."""
        lowered = error_msg.lower()
        keywords = (
            "context_length_exceeded",
            "context window",
            "maximum context length",
            "context length",
            "too many tokens",
            "input is too long",
            "prompt is too long",
        )
        return status_code == 400 and any(kw in lowered for kw in keywords)

    def _raise_http_error(self, status_code: int, error_msg: str) -> None:
        """Map HTTP status to the appropriate LLMError and raise."""
        if self._is_context_window_error(status_code, error_msg):
            raise ContextWindowExceeded(f"HTTP {status_code}: {error_msg}")
        if status_code == 401:
            code = "authentication_error"
        elif status_code == 429:
            code = "rate_limit"
        elif status_code >= 500:
            code = "server_error"
        else:
            code = "api_error"
        raise LLMError(f"HTTP {status_code}: {error_msg}", code=code, status_code=status_code)

    def _send_in_background(self, request: httpx.Request) -> Future:
        """Send on a daemon thread so the caller can give up before headers arrive."""
        pending: Future = Future()

        def run() -> None:
            try:
                pending.set_result(self._client.send(request, stream=True))
            except Exception as e:  # re-raised by pending.result() on the caller's thread
                pending.set_exception(e)

        threading.Thread(target=run, name="llm-send", daemon=True).start()
        return pending

    @contextmanager
    def _open(
        self,
        payload: Dict[str, Any],
        cancel: Optional[CancelToken],
        watchdog: Optional[StreamWatchdog] = None,
    ) -> Iterator[httpx.Response]:
        """Send the request and yield the open response.

        Cancellation and watchdog expiry wake the header wait or close the
        response, which unblocks any reader; the resulting transport error
        is translated here.  A response that arrives after the request was
        abandoned is closed as soon as it lands.
        """
        if cancel is not None:
            cancel.raise_if_cancelled()

        response: Optional[httpx.Response] = None
        closed_by: List[str] = []
        wake = threading.Event()

        def abort(reason: str) -> None:
            closed_by.append(reason)
            wake.set()
            if watchdog is not None:
                watchdog.stop()
            if response is not None:
                response.close()

        remove_cancel_cb = cancel.add_callback(lambda: abort("cancel")) if cancel else (lambda: None)
        if watchdog is not None:
            watchdog.start(lambda: abort("timeout"))

        def translate(e: Exception) -> Exception:
            if cancel is not None and cancel.cancelled:
                return RequestCancelled()
            if "timeout" in closed_by and watchdog is not None:
                return LLMError(f"Stream timed out: {watchdog.describe()}", code="timeout")
            if isinstance(e, httpx.TimeoutException):
                return LLMError(f"Request timed out: {e}", code="timeout")
            if isinstance(e, httpx.ConnectError):
                return LLMError(f"Connection failed: {e}", code="connection_error")
            return LLMError(f"Transport error: {type(e).__name__}: {e}", code="connection_error")

        try:
            request = self._client.build_request("POST", self.API_PATH, content=serialize_body(payload))
            pending = self._send_in_background(request)
            pending.add_done_callback(lambda _: wake.set())
            wake.wait()

            if closed_by:
                pending.add_done_callback(_discard_response)
                raise translate(RuntimeError(closed_by[0]))

            try:
                response = pending.result()
            except httpx.HTTPError as e:
                raise translate(e) from e
            self._request_count += 1

            if closed_by:
                raise translate(RuntimeError(closed_by[0]))

            if response.status_code >= 300:
                body = response.read().decode("utf-8", errors="replace")
                try:
                    error_json = json.loads(body)
                    error_msg = (error_json.get("error") or {}).get("message") or body
                except (json.JSONDecodeError, AttributeError):
                    error_msg = body
                self._raise_http_error(response.status_code, error_msg)

            try:
                yield response
            except (httpx.HTTPError, httpx.StreamError) as e:
                raise translate(e) from e
        finally:
            if watchdog is not None:
                watchdog.stop()
            remove_cancel_cb()
            if response is not None:
                response.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def _chat_once(self, payload: Dict[str, Any], cancel: Optional[CancelToken]) -> ChatResponse:
        with self._open(payload, cancel) as resp:
            raw = resp.read()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise LLMError(f"Invalid JSON response: {e}", code="protocol_error") from e
        if not isinstance(data, dict):
            raise LLMError("Response body is not a JSON object", code="protocol_error")

        response = self._parse_response(data)
        self._track_usage(response.usage)
        return response

    def chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        options: Optional[ChatOptions] = None,
    ) -> ChatResponse:
        """Single-shot request, retried with exponential backoff.

        Cancellation propagates immediately as ``RequestCancelled``.
        """
        options = options or ChatOptions()
        payload = self.build_payload(messages, tools, options, stream=False)
        return self._retry.execute(self._chat_once, payload, options.cancel, cancel=options.cancel)

    def stream_chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        options: Optional[ChatOptions] = None,
    ) -> Iterator[StreamChunk]:
        """Stream a response as ``StreamChunk`` objects.

        The request is sent lazily on first iteration.  Exactly one chunk
        carries a ``finish_reason``; if the server never sends one, a
        ``stop`` chunk is synthesized when the stream ends.  Streaming
        failures are not retried since output may already be visible.
        """
        options = options or ChatOptions()
        payload = self.build_payload(messages, tools, options, stream=True)
        cancel = options.cancel
        watchdog = StreamWatchdog(
            self.stream_config.connect_timeout,
            self.stream_config.activity_timeout,
        )
        decoder = self._stream_decoder()

        with self._open(payload, cancel, watchdog) as resp:
            for raw_line in resp.iter_lines():
                watchdog.touch()
                if cancel is not None:
                    cancel.raise_if_cancelled()

                line = raw_line.strip()
                if not line.startswith("data:"):
                    continue
                data_str = line[5:].strip()
                if data_str == "[DONE]":
                    break

                try:
                    frame = json.loads(data_str)
                except json.JSONDecodeError:
                    logger.debug(f"Skipping malformed stream frame: {data_str[:80]}")
                    continue
                if not isinstance(frame, dict):
                    continue

                for chunk in decoder.feed(frame):
                    self._track_usage(chunk.usage)
                    yield chunk
                if decoder.done:
                    break

            # A reader unblocked by close() may just see end-of-stream.
            if cancel is not None:
                cancel.raise_if_cancelled()
            if watchdog.timed_out:
                raise LLMError(f"Stream timed out: {watchdog.describe()}", code="timeout")

        if not decoder.finished:
            yield StreamChunk(finish_reason="stop")

    # ------------------------------------------------------------------
    # Stats / lifecycle
    # ------------------------------------------------------------------

    def _track_usage(self, usage: Optional[Usage]) -> None:
        if usage is None:
            return
        self._input_tokens += usage.prompt_tokens
        self._output_tokens += usage.completion_tokens

    def get_stats(self) -> Dict[str, Any]:
        """Get usage statistics."""
        return {
            "request_count": self._request_count,
            "input_tokens": self._input_tokens,
            "output_tokens": self._output_tokens,
            "total_tokens": self._input_tokens + self._output_tokens,
        }

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "LLMClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False
