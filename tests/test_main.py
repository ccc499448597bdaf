import threading
import time
from concurrent.futures import CancelledError

import pytest

from conftest import call
from termpilot import main
from termpilot.api.cancel import CancelToken
from termpilot.llm.errors import RequestCancelled


@pytest.fixture
def typed(monkeypatch):
    """Feed ``console.input`` from a list of answers."""
    answers = []
    monkeypatch.setattr(main.console, "input", lambda prompt="": answers.pop(0))
    return answers


def test_question_is_answered_on_the_calling_thread(typed):
    prompter = main.ConsolePrompter()
    future = prompter.ask("Proceed?", ["Yes", "No"])
    assert not future.done()

    typed.append("2")
    prompter.answer_pending()

    assert future.result(timeout=0) == "No"


def test_free_text_answer_and_eof(typed, monkeypatch):
    prompter = main.ConsolePrompter()
    typed.append(" blue ")
    first = prompter.ask("Colour?", [])
    prompter.answer_pending()
    assert first.result(timeout=0) == "blue"

    def closed(prompt=""):
        raise EOFError

    monkeypatch.setattr(main.console, "input", closed)
    second = prompter.ask("Colour?", [])
    prompter.answer_pending()
    assert second.result(timeout=0) == ""


def test_withdraw_cancels_open_questions():
    prompter = main.ConsolePrompter()
    futures = [prompter.ask("One?", []), prompter.ask("Two?", [])]

    assert prompter.withdraw() == 2
    assert all(f.cancelled() for f in futures)
    prompter.answer_pending()


def test_stop_during_question_cancels_the_turn(handler):
    prompter = main.ConsolePrompter()
    cancel = CancelToken()
    outcome = []

    def worker():
        try:
            handler.handle_tool_calls(
                [call("askuser_ask", {"question": "Proceed?"})], on_ask_user=prompter.ask, cancel=cancel
            )
        except RequestCancelled as e:
            outcome.append(e)

    thread = threading.Thread(target=worker)
    thread.start()
    for _ in range(50):
        if prompter._open:
            break
        time.sleep(0.02)

    cancel.cancel()
    assert prompter.withdraw() == 1
    thread.join(2)

    assert not thread.is_alive()
    assert len(outcome) == 1


class IdleQueue:
    def __init__(self):
        self.stops = 0

    def wait_idle(self, timeout):
        return True

    def stop(self):
        self.stops += 1
        return 0


def test_ctrl_c_at_the_prompt_stops_the_turn(monkeypatch):
    def interrupted(prompt=""):
        raise KeyboardInterrupt

    monkeypatch.setattr(main.console, "input", interrupted)
    prompter = main.ConsolePrompter()
    answering = prompter.ask("Proceed?", [])
    queued = prompter.ask("And then?", [])
    queue = IdleQueue()

    main._wait(queue, prompter)

    assert queue.stops == 1
    with pytest.raises(CancelledError):
        answering.result(timeout=0)
    assert queued.cancelled()
