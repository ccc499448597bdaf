import pytest

from conftest import ScriptedClient, call, text_round, tool_round
from termpilot.api.cancel import CancelToken
from termpilot.core.content import FileReference
from termpilot.core.message_queue import QueuedMessage
from termpilot.core.prompts import PLAN_MODE_NOTE
from termpilot.core.service import ContextFullError, ConversationService
from termpilot.core.session import SUMMARY_PREFIX, Message, Session
from termpilot.llm.errors import LLMError, RequestCancelled
from termpilot.llm.types import ChunkDelta, StreamChunk, Usage
from termpilot.output.events import NoticeEvent, StreamChunkEvent, StreamEndedEvent, ToolCallsEvent


@pytest.fixture
def make_service(catalog, handler, app_config, session):
    def factory(rounds=(), session=session, config=app_config, **kwargs):
        client = ScriptedClient(rounds, **kwargs)
        return ConversationService(client, session, catalog, handler, config), client

    return factory


def _message(content, message_id="msg_1", **kwargs):
    return QueuedMessage(id=message_id, content=content, **kwargs)


def test_text_turn(make_service, session, usage):
    service, client = make_service([text_round("Hi there", usage(200, 5))])
    events = []

    result = service.process(_message("hello"), emit=events.append)

    assert result.content == "Hi there"
    assert result.rounds == 1
    assert [m.role for m in session.get_history()] == ["user", "assistant"]
    assert session.actual_prompt_tokens == 200

    request = client.requests[0]
    assert request.messages[0]["role"] == "system"
    assert request.messages[-1] == {"role": "user", "content": "hello"}
    assert {t["function"]["name"] for t in request.tools} >= {"git_status", "bash_run", "plan_write"}
    assert request.options.required_tool is None

    assert [e.content for e in events if isinstance(e, StreamChunkEvent)] == ["Hi there"]
    assert isinstance(events[-1], StreamEndedEvent)


def test_tool_round_then_answer(make_service, session, tmp_path):
    service, client = make_service(
        [
            tool_round(call("file_write", {"path": "out.txt", "content": "x"}, "c1"), content="Writing."),
            text_round("Done."),
        ]
    )
    events = []

    result = service.process(_message("create out.txt"), emit=events.append)

    assert result.content == "Done."
    assert (result.rounds, result.tool_calls) == (2, 1)
    assert (tmp_path / "out.txt").read_text(encoding="utf-8") == "x"
    assert [m.role for m in session.get_history()] == ["user", "assistant", "tool", "assistant"]
    assert session.validate_messages().valid

    second = client.requests[1].messages
    assert second[-2]["tool_calls"][0]["id"] == "c1"
    assert second[-1]["role"] == "tool" and second[-1]["tool_call_id"] == "c1"
    assert any(isinstance(e, ToolCallsEvent) and e.names == ["file_write"] for e in events)


def test_request_schema_is_stable_across_rounds(make_service):
    service, client = make_service([tool_round(call("file_list", {}, "c1")), text_round("ok")])

    service.process(_message("list files"))

    assert client.requests[0].tools == client.requests[1].tools


def test_cancel_rolls_back_and_carries_partial(make_service, session):
    session.add_user_message("earlier")
    session.add_assistant_message(Message(role="assistant", content="answer"), Usage(50, 5, 55))

    def interrupted(options):
        yield StreamChunk(delta=ChunkDelta(content="Half an"))
        options.cancel.cancel()
        options.cancel.raise_if_cancelled()

    service, _ = make_service([tool_round(call("file_list", {}, "c1")), interrupted])

    with pytest.raises(RequestCancelled) as exc:
        service.process(_message("go"), cancel=CancelToken())

    assert exc.value.partial_content == "Half an"
    assert [m.content for m in session.get_history()] == ["earlier", "answer"]
    assert session.actual_prompt_tokens == 50


def test_provider_error_rolls_back(make_service, session):
    def failing(options):
        raise LLMError("HTTP 500: boom", code="server_error", status_code=500)
        yield  # pragma: no cover

    service, _ = make_service([failing])

    with pytest.raises(LLMError):
        service.process(_message("go"))
    assert len(session) == 0


def test_context_full_fails_before_any_request(make_service):
    small = Session(context_window=4000)
    service, client = make_service(session=small)

    with pytest.raises(ContextFullError) as exc:
        service.process(_message("a" * 20000))

    assert exc.value.code == "context_full"
    assert exc.value.projected_percent >= 100
    assert client.requests == []
    assert len(small) == 0


def test_compaction_runs_before_the_turn(make_service):
    small = Session(context_window=8000)
    small.add_user_message("long task")
    small.add_assistant_message(Message(role="assistant", content="long answer"), Usage(7000, 100, 7100))
    service, client = make_service([text_round("fresh start")], session=small, summary="user wanted X")
    events = []

    result = service.process(_message("continue"), emit=events.append)

    assert result.compacted
    assert len(client.chat_requests) == 1
    history = small.get_history()
    assert history[0].content == f"{SUMMARY_PREFIX}\nuser wanted X"
    assert [m.content for m in history[1:]] == ["continue", "fresh start"]
    assert any(isinstance(e, NoticeEvent) and "compacted" in e.message for e in events)


def test_max_rounds_stops_with_note(make_service, session, app_config):
    config = app_config.model_copy(update={"tools": app_config.tools.model_copy(update={"max_tool_rounds": 2})})
    service, _ = make_service(
        [tool_round(call("file_list", {}, "c1")), tool_round(call("file_list", {}, "c2"))], config=config
    )

    result = service.process(_message("loop"))

    assert result.finish_reason == "max_rounds"
    assert result.content == "[Stopped after 2 tool rounds without a final answer]"
    assert session.get_history()[-1].content == result.content
    assert session.validate_messages().valid


def test_enter_plan_mode_switches_following_rounds(make_service):
    seen = []

    def planning(options):
        seen.append(options.required_tool)
        return text_round("Here is the plan.")

    service, client = make_service([tool_round(call("enterplan_enter", {}, "c1")), planning])
    events = []

    service.process(_message("big refactor"), emit=events.append)

    assert service.plan_mode
    assert seen == ["plan"]
    assert PLAN_MODE_NOTE in client.requests[1].messages[0]["content"]
    assert PLAN_MODE_NOTE not in client.requests[0].messages[0]["content"]
    assert any(isinstance(e, NoticeEvent) and e.message == "Switched to plan mode" for e in events)


def test_plan_mode_message_filters_schema_without_tool_choice(make_service, app_config):
    model = app_config.model.model_copy(update={"supports_tool_choice": False})
    config = app_config.model_copy(update={"model": model})
    service, client = make_service([text_round("plan")], config=config)

    service.process(_message("design it", plan_mode=True))

    request = client.requests[0]
    assert request.options.required_tool is None
    assert {t["function"]["name"] for t in request.tools} == {
        "plan_append",
        "plan_edit",
        "plan_exit",
        "plan_read",
        "plan_read_lines",
        "plan_search",
        "plan_write",
    }


def test_file_reference_keeps_display_content(make_service, session, tmp_path):
    (tmp_path / "notes.md").write_text("remember", encoding="utf-8")
    service, client = make_service([text_round("ok")])

    service.process(_message("read @notes.md", files=[FileReference("notes.md")]))

    user = session.get_history()[0]
    assert user.display_content == "read @notes.md"
    assert user.content.startswith('<file path="notes.md">\nremember\n</file>')
