import copy
import json
from types import SimpleNamespace

import httpx
import pytest

from termpilot.config.models import AppConfig, ModelConfig, RetryConfig, StreamConfig
from termpilot.core.session import Session
from termpilot.llm.client import LLMClient
from termpilot.llm.types import ChatResponse, ChunkDelta, StreamChunk, ToolCall, Usage
from termpilot.tools.executor import CommandExecutor
from termpilot.tools.handler import ToolCallHandler
from termpilot.tools.specs import discover_catalog


def sse_body(frames, done=True) -> bytes:
    """Encode frames as a chat-completions event stream."""
    parts = []
    for frame in frames:
        data = frame if isinstance(frame, str) else json.dumps(frame)
        parts.append(f"data: {data}\n\n")
    if done:
        parts.append("data: [DONE]\n\n")
    return "".join(parts).encode("utf-8")


def content_frame(text, finish_reason=None):
    return {"choices": [{"index": 0, "delta": {"content": text}, "finish_reason": finish_reason}]}


def text_round(text, usage=None):
    """Chunks of a model round that answers with plain text."""
    return [
        StreamChunk(delta=ChunkDelta(content=text)),
        StreamChunk(finish_reason="stop", usage=usage),
    ]


def tool_round(*calls, content=""):
    """Chunks of a model round that requests ``calls``."""
    return [
        StreamChunk(delta=ChunkDelta(content=content)),
        StreamChunk(delta=ChunkDelta(tool_calls=list(calls)), finish_reason="tool_calls"),
    ]


def call(name, arguments=None, call_id=None):
    return ToolCall(id=call_id or f"call_{name}", name=name, arguments=json.dumps(arguments or {}))


class ScriptedClient:
    """Stands in for LLMClient: each stream_chat call plays the next scripted round."""

    def __init__(self, rounds=(), summary="summary of the conversation"):
        self.rounds = list(rounds)
        self.summary = summary
        self.requests = []
        self.chat_requests = []

    def stream_chat(self, messages, tools=None, options=None):
        self.requests.append(
            SimpleNamespace(messages=copy.deepcopy(messages), tools=tools, options=options)
        )
        step = self.rounds.pop(0)
        if callable(step):
            step = step(options)
        for chunk in step:
            yield chunk

    def chat(self, messages, tools=None, options=None):
        self.chat_requests.append(SimpleNamespace(messages=copy.deepcopy(messages), options=options))
        return ChatResponse(content=self.summary)


@pytest.fixture
def model_config():
    return ModelConfig(
        name="test-model",
        base_url="http://llm.test/v1/",
        api_key="sk-test",
        context_window=32768,
    )


@pytest.fixture
def make_client(model_config):
    """Build an LLMClient whose HTTP layer is ``handler(request) -> httpx.Response``."""
    clients = []

    def factory(handler, **model_overrides):
        model = model_config.model_copy(update=model_overrides)
        client = LLMClient(
            model,
            retry=RetryConfig(max_attempts=3, base_delay=0),
            stream=StreamConfig(connect_timeout=5, activity_timeout=5),
            transport=httpx.MockTransport(handler),
        )
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.close()


@pytest.fixture
def app_config(tmp_path):
    return AppConfig(
        model=ModelConfig(name="test-model", api_key="sk-test"),
        paths={"cwd": str(tmp_path), "data_dir": str(tmp_path / ".data")},
    )


@pytest.fixture
def catalog():
    """Builtins plus bash and git installed; everything else missing."""
    found = {"bash": "/bin/bash", "git": "/usr/bin/git"}
    return discover_catalog(which=lambda exe: found.get(exe))


@pytest.fixture
def executor(tmp_path):
    return CommandExecutor(tmp_path, timeout=10)


@pytest.fixture
def handler(catalog, executor):
    return ToolCallHandler(catalog, executor, max_concurrent=4)


@pytest.fixture
def session():
    return Session(context_window=32768)


@pytest.fixture
def usage():
    def make(prompt=100, completion=20):
        return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion)

    return make
