import json
import threading
import time

import httpx
import pytest

from conftest import content_frame, sse_body
from termpilot.api.cancel import CancelToken
from termpilot.config.models import RetryConfig, StreamConfig, ThinkingParams
from termpilot.llm.client import ChatOptions, LLMClient, ToolCallAccumulator, serialize_body
from termpilot.llm.errors import ContextWindowExceeded, LLMError, RequestCancelled


def _tool_delta(index, call_id=None, name=None, arguments=None):
    fn = {}
    if name:
        fn["name"] = name
    if arguments is not None:
        fn["arguments"] = arguments
    delta = {"index": index, "function": fn}
    if call_id:
        delta["id"] = call_id
    return delta


def _tool_frame(*deltas, finish_reason=None):
    return {"choices": [{"index": 0, "delta": {"tool_calls": list(deltas)}, "finish_reason": finish_reason}]}


def test_stream_text_and_usage(make_client):
    frames = [
        content_frame("Hel"),
        content_frame("lo"),
        content_frame("", finish_reason="stop"),
        {"choices": [], "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15}},
    ]
    client = make_client(lambda request: httpx.Response(200, content=sse_body(frames)))

    chunks = list(client.stream_chat([{"role": "user", "content": "hi"}]))

    assert "".join(c.delta.content for c in chunks) == "Hello"
    terminal = [c for c in chunks if c.is_terminal]
    assert len(terminal) == 1
    assert terminal[0].finish_reason == "stop"
    assert chunks[-1].usage.prompt_tokens == 12
    assert client.get_stats()["input_tokens"] == 12


def test_stream_tool_call_fragments_reassemble(make_client):
    frames = [
        _tool_frame(_tool_delta(0, "call_a", "git_status", ""), _tool_delta(1, "call_b", "file_read", '{"pa')),
        _tool_frame(_tool_delta(0, arguments="{}")),
        _tool_frame(_tool_delta(1, arguments='th": "a.py"}')),
        {"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]},
    ]
    client = make_client(lambda request: httpx.Response(200, content=sse_body(frames)))

    chunks = list(client.stream_chat([{"role": "user", "content": "x"}]))

    terminal = chunks[-1]
    assert terminal.finish_reason == "tool_calls"
    assert [(c.id, c.name, c.arguments) for c in terminal.delta.tool_calls] == [
        ("call_a", "git_status", "{}"),
        ("call_b", "file_read", '{"path": "a.py"}'),
    ]
    assert all(c.delta.tool_calls is None for c in chunks[:-1])


def test_accumulator_split_matches_single_chunk():
    whole = ToolCallAccumulator()
    whole.add([_tool_delta(0, "c0", "bash_run", '{"command": "ls -la"}')])

    split = ToolCallAccumulator()
    args = '{"command": "ls -la"}'
    split.add([_tool_delta(0, "c0", "bash_run")])
    for ch in args:
        split.add([_tool_delta(0, arguments=ch)])

    assert whole.materialize() == split.materialize()


def test_accumulator_generates_missing_ids():
    acc = ToolCallAccumulator()
    acc.add([_tool_delta(2, name="git_status", arguments="{}")])
    acc.add([_tool_delta(0, arguments="{}")])  # never named, dropped

    calls = acc.materialize()
    assert len(calls) == 1
    assert calls[0].id.startswith("call_") and calls[0].id.endswith("_2")


def test_stream_without_finish_reason_synthesizes_stop(make_client):
    frames = [content_frame("partial"), "not json at all", content_frame(" answer")]
    client = make_client(lambda request: httpx.Response(200, content=sse_body(frames, done=False)))

    chunks = list(client.stream_chat([{"role": "user", "content": "x"}]))

    assert "".join(c.delta.content for c in chunks) == "partial answer"
    assert [c.finish_reason for c in chunks if c.is_terminal] == ["stop"]
    assert chunks[-1].is_terminal


def test_cancelled_token_fails_before_request(make_client):
    sent = []

    def handler(request):
        sent.append(request)
        return httpx.Response(200, content=sse_body([content_frame("x", "stop")]))

    client = make_client(handler)
    cancel = CancelToken()
    cancel.cancel()

    with pytest.raises(RequestCancelled):
        list(client.stream_chat([{"role": "user", "content": "x"}], options=ChatOptions(cancel=cancel)))
    assert sent == []


def test_cancel_mid_stream_raises(make_client):
    frames = [content_frame(str(i)) for i in range(20)] + [content_frame("", "stop")]
    client = make_client(lambda request: httpx.Response(200, content=sse_body(frames)))
    cancel = CancelToken()

    received = []
    with pytest.raises(RequestCancelled):
        for chunk in client.stream_chat([{"role": "user", "content": "x"}], options=ChatOptions(cancel=cancel)):
            received.append(chunk)
            if len(received) == 2:
                cancel.cancel()
    assert len(received) == 2


def test_chat_retries_server_errors(make_client):
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(503, json={"error": {"message": "overloaded"}})
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"role": "assistant", "content": "done"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 5, "completion_tokens": 1},
            },
        )

    client = make_client(handler)
    response = client.chat([{"role": "user", "content": "x"}])

    assert response.content == "done"
    assert response.usage.total_tokens == 6
    assert len(attempts) == 3


def test_chat_gives_up_after_max_attempts(make_client):
    client = make_client(lambda request: httpx.Response(500, text="boom"))

    with pytest.raises(LLMError) as exc:
        client.chat([{"role": "user", "content": "x"}])
    assert exc.value.status_code == 500
    assert exc.value.code == "server_error"
    assert "HTTP 500" in str(exc.value)


def test_context_window_error_is_typed(make_client):
    body = {"error": {"message": "This model's maximum context length is 8192 tokens"}}
    client = make_client(lambda request: httpx.Response(400, json=body))

    with pytest.raises(ContextWindowExceeded):
        list(client.stream_chat([{"role": "user", "content": "x"}]))


def test_streaming_errors_are_not_retried(make_client):
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(502, text="bad gateway")

    client = make_client(handler)
    with pytest.raises(LLMError):
        list(client.stream_chat([{"role": "user", "content": "x"}]))
    assert len(attempts) == 1


def test_request_body_is_sorted_and_stable(make_client):
    bodies = []

    def handler(request):
        bodies.append(request.content)
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        return httpx.Response(200, content=sse_body([content_frame("ok", "stop")]))

    client = make_client(handler)
    tools = [{"type": "function", "function": {"name": "git_status", "parameters": {"type": "object"}}}]
    for _ in range(2):
        list(client.stream_chat([{"role": "user", "content": "héllo"}], tools))

    assert bodies[0] == bodies[1]
    payload = json.loads(bodies[0])
    assert payload["stream_options"] == {"include_usage": True}
    assert bodies[0] == serialize_body(payload)
    assert "héllo".encode("utf-8") in bodies[0]


def test_tool_choice_forces_single_function(make_client):
    client = make_client(lambda request: httpx.Response(200))
    tools = [
        {"type": "function", "function": {"name": "plan_read"}},
        {"type": "function", "function": {"name": "plan_write"}},
        {"type": "function", "function": {"name": "askuser_ask"}},
    ]

    payload = client.build_payload([], tools, ChatOptions(required_tool="askuser"))
    assert payload["tool_choice"] == {"type": "function", "function": {"name": "askuser_ask"}}

    payload = client.build_payload([], tools, ChatOptions(required_tool="plan"))
    assert payload["tool_choice"] == "required"


def test_prefill_used_without_tool_choice(make_client):
    client = make_client(lambda request: httpx.Response(200), supports_tool_choice=False, supports_prefill=True)
    tools = [{"type": "function", "function": {"name": "plan_write"}}]

    payload = client.build_payload([{"role": "user", "content": "x"}], tools, ChatOptions(required_tool="plan"))

    assert "tool_choice" not in payload
    assert payload["messages"][-1] == {"role": "assistant", "content": '<tool_call>\n{"name": "plan_'}


def test_thinking_params_merged(make_client):
    client = make_client(
        lambda request: httpx.Response(200),
        supports_thinking=True,
        thinking_enabled=True,
        thinking_params=ThinkingParams(enabled={"enable_thinking": True}, disabled={"enable_thinking": False}),
    )
    assert client.build_payload([], options=ChatOptions())["enable_thinking"] is True
    assert client.build_payload([], options=ChatOptions(thinking=False))["enable_thinking"] is False


def test_activity_timeout_aborts_stalled_stream(model_config):

    release = threading.Event()

    class Stalling(httpx.SyncByteStream):
        def __iter__(self):
            yield sse_body([content_frame("first")], done=False)
            release.wait(5)
            yield sse_body([content_frame("late", "stop")])

        def close(self):
            release.set()

    client = LLMClient(
        model_config,
        retry=RetryConfig(max_attempts=1, base_delay=0),
        stream=StreamConfig(connect_timeout=1, activity_timeout=0.2),
        transport=httpx.MockTransport(lambda request: httpx.Response(200, stream=Stalling())),
    )
    try:
        with pytest.raises(LLMError) as exc:
            list(client.stream_chat([{"role": "user", "content": "x"}]))
        assert exc.value.code == "timeout"
    finally:
        release.set()
        client.close()


@pytest.fixture
def slow_headers(model_config):
    """Client whose server holds the response headers until released."""
    release = threading.Event()
    clients = []

    def handler(request):
        release.wait(2)
        return httpx.Response(200, content=sse_body([content_frame("late", "stop")]))

    def factory(connect_timeout=5.0):
        client = LLMClient(
            model_config,
            retry=RetryConfig(max_attempts=1, base_delay=0),
            stream=StreamConfig(connect_timeout=connect_timeout, activity_timeout=5),
            transport=httpx.MockTransport(handler),
        )
        clients.append(client)
        return client

    yield factory
    release.set()
    for client in clients:
        client.close()


def test_connect_timeout_fires_before_headers_arrive(slow_headers):
    client = slow_headers(connect_timeout=0.2)

    started = time.monotonic()
    with pytest.raises(LLMError) as exc:
        list(client.stream_chat([{"role": "user", "content": "x"}]))

    assert exc.value.code == "timeout"
    assert time.monotonic() - started < 1


def test_cancel_interrupts_stream_waiting_for_headers(slow_headers):
    client = slow_headers()
    cancel = CancelToken()
    threading.Timer(0.1, cancel.cancel).start()

    started = time.monotonic()
    with pytest.raises(RequestCancelled):
        list(client.stream_chat([{"role": "user", "content": "x"}], options=ChatOptions(cancel=cancel)))

    assert time.monotonic() - started < 1


def test_cancel_interrupts_chat_waiting_for_headers(slow_headers):
    client = slow_headers()
    cancel = CancelToken()
    threading.Timer(0.1, cancel.cancel).start()

    started = time.monotonic()
    with pytest.raises(RequestCancelled):
        client.chat([{"role": "user", "content": "x"}], options=ChatOptions(cancel=cancel))

    assert time.monotonic() - started < 1
