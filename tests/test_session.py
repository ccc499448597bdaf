from termpilot.core.session import SUMMARY_PREFIX, Message, Session
from termpilot.llm.types import Usage


def _assistant_with_calls(*ids):
    return Message(
        role="assistant",
        content="",
        tool_calls=[
            {"id": i, "type": "function", "function": {"name": "git_status", "arguments": "{}"}}
            for i in ids
        ],
    )


def _tool(call_id, content="ok"):
    return Message(role="tool", content=content, tool_call_id=call_id)


def test_messages_put_system_prompt_first(session):
    session.add_user_message("hi")
    session.set_system_prompt("be brief")

    messages = session.get_messages()
    assert messages[0] == {"role": "system", "content": "be brief"}
    assert messages[1] == {"role": "user", "content": "hi"}
    assert len(session) == 1


def test_display_content_stays_out_of_wire_format(session):
    session.add_user_message("<file path=\"a\">x</file>\n\nfile a", display_content="@a")

    assert session.get_messages() == [{"role": "user", "content": "<file path=\"a\">x</file>\n\nfile a"}]
    assert session.get_history()[0].display_content == "@a"


def test_usage_overwrites_prompt_and_accumulates_completion(session):
    session.add_user_message("a" * 400)
    estimated = session.get_used_tokens()
    assert estimated == 100

    session.add_assistant_message(Message(role="assistant", content="ok"), Usage(1000, 50, 1050))
    assert session.get_used_tokens() == 1050

    session.add_user_message("again")
    session.add_assistant_message(Message(role="assistant", content="ok"), Usage(1200, 30, 1230))
    assert session.actual_prompt_tokens == 1200
    assert session.actual_completion_tokens == 80
    assert session.get_used_tokens() == 1280


def test_status_flags_near_limit_and_full():
    session = Session(context_window=1000, near_limit_threshold=0.8, full_threshold=0.95)
    session.add_user_message("a" * 3400)  # 850 tokens

    status = session.get_status()
    assert status.is_near_limit
    assert not status.is_full
    assert status.available_tokens == 150


def test_reserve_ratio_reduces_available_tokens():
    session = Session(context_window=1000, reserve_ratio=0.25)
    session.add_user_message("a" * 400)  # 100 tokens
    assert session.get_available_tokens() == 650


def test_checkpoint_rollback_is_exact(session):
    session.add_user_message("first")
    session.add_assistant_message(Message(role="assistant", content="one"), Usage(100, 10, 110))
    cp = session.checkpoint()
    before_len = len(session)

    session.add_user_message("second")
    session.add_assistant_message(_assistant_with_calls("c1"), Usage(300, 20, 320))
    session.add_tool_message(_tool("c1"))
    session.rollback(cp)

    assert len(session) == before_len
    assert session.actual_prompt_tokens == 100
    assert session.actual_completion_tokens == 10


def test_should_compact_requires_two_real_messages():
    session = Session(context_window=1000)
    session.add_user_message("a" * 3600)

    result = session.should_compact(estimated_new_tokens=0, threshold=0.85)
    assert result.projected_percent >= 85
    assert not result.should_compact

    session.add_assistant_message(Message(role="assistant", content="ok"))
    assert session.should_compact(threshold=0.85).should_compact


def test_should_compact_reports_context_full():
    session = Session(context_window=1000)
    session.add_user_message("a" * 400)
    assert session.should_compact(estimated_new_tokens=950).is_context_full
    assert not session.should_compact(estimated_new_tokens=100).is_context_full


def test_compact_with_collapses_history(session):
    session.add_user_message("q")
    session.add_assistant_message(Message(role="assistant", content="a"), Usage(500, 50, 550))

    session.compact_with("we talked about things")

    history = session.get_history()
    assert len(history) == 1
    assert history[0].content.startswith(SUMMARY_PREFIX)
    assert session.actual_prompt_tokens == 0
    assert not session.should_compact(estimated_new_tokens=10**6).should_compact


def test_validate_detects_orphans(session):
    session.add_user_message("go")
    session.add_assistant_message(_assistant_with_calls("c1", "c2"))
    session.add_tool_message(_tool("c1"))
    session.add_tool_message(_tool("zz"))

    result = session.validate_messages()
    assert not result.valid
    assert len(result.errors) == 2


def test_repair_strips_unmatched_calls_and_results(session):
    session.add_user_message("go")
    session.add_assistant_message(_assistant_with_calls("c1", "c2"), Usage(100, 10, 110))
    session.add_tool_message(_tool("c1"))
    session.add_tool_message(_tool("zz"))

    assert session.repair_messages() == 2
    assert session.validate_messages().valid
    assert session.repair_messages() == 0

    assistant = session.get_history()[1]
    assert [tc["id"] for tc in assistant.tool_calls] == ["c1"]
    assert session.actual_prompt_tokens == 0


def test_repair_drops_tool_result_preceding_its_call(session):
    session.add_tool_message(_tool("c1"))
    session.add_assistant_message(_assistant_with_calls("c1"))
    session.add_tool_message(_tool("c1"))

    session.repair_messages()

    assert session.validate_messages().valid
    assert session.repair_messages() == 0
    assert [m.role for m in session.get_history()] == ["assistant", "tool"]


def test_save_partial_response_marks_interruption(session):
    session.save_partial_response("half an ans")
    assert session.get_history()[-1].content == "half an ans\n\n[Response interrupted]"

    session.save_partial_response("")
    assert len(session) == 1


def test_state_round_trip_preserves_history_and_counters(session):
    session.set_system_prompt("sys")
    session.add_user_message("hi", display_content="hi!")
    session.add_assistant_message(
        Message(role="assistant", content="hello", reasoning_content="thinking"), Usage(40, 5, 45)
    )

    restored = Session()
    restored.restore_from_state(session.get_internal_state())

    assert restored.get_messages() == session.get_messages()
    assert restored.get_history()[1].reasoning_content == "thinking"
    assert restored.get_used_tokens() == session.get_used_tokens()
