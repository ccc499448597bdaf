import sys

import httpx
import pytest

from termpilot.tools.catalog import ToolAction, ToolParameter
from termpilot.tools.executor import CommandExecutor, render_command

posix_only = pytest.mark.skipif(sys.platform.startswith("win"), reason="uses a POSIX shell")


class TestRenderCommand:
    def test_values_are_quoted_unless_raw(self):
        action = ToolAction(
            name="run",
            description="",
            parameters=[ToolParameter("script", ""), ToolParameter("args", "", raw=True)],
            command_template="{{execPath}} {{script}} {{args}}",
        )
        command = render_command(action, {"script": "my app.py", "args": "--verbose -n 3"}, "/usr/bin/python3")
        assert command == "/usr/bin/python3 'my app.py' --verbose -n 3"

    def test_missing_placeholders_are_dropped(self):
        action = ToolAction(
            name="diff",
            description="",
            parameters=[ToolParameter("path", "")],
            command_template="{{execPath}} diff -- {{path}}",
        )
        assert render_command(action, {}, "git") == "git diff --"

    def test_booleans_render_lowercase(self):
        action = ToolAction(name="x", description="", command_template="tool --flag={{flag}}")
        assert render_command(action, {"flag": True}) == "tool --flag=true"


def test_plan_file_round_trip(catalog, executor, tmp_path):
    plan = catalog.get("plan")

    assert executor.execute(plan, plan.get_action("read"), {}).stdout == "(no plan yet)"
    executor.execute(plan, plan.get_action("write"), {"content": "1. a\n"})
    executor.execute(plan, plan.get_action("append"), {"content": "2. b\n"})

    assert executor.execute(plan, plan.get_action("read"), {}).stdout == "1. a\n2. b\n"


def test_enter_plan_reports_mode_change(catalog, executor):
    tool = catalog.get("enterplan")
    result = executor.execute(tool, tool.get_action("enter"), {})
    assert result.success
    assert result.mode_change == "plan"


def test_file_actions(catalog, executor, tmp_path):
    tool = catalog.get("file")
    (tmp_path / "pkg").mkdir()

    written = executor.execute(tool, tool.get_action("write"), {"path": "pkg/a.txt", "content": "hello"})
    assert written.success
    assert executor.execute(tool, tool.get_action("read"), {"path": "pkg/a.txt"}).stdout == "hello"
    assert executor.execute(tool, tool.get_action("list"), {}).stdout == "pkg/"

    missing = executor.execute(tool, tool.get_action("read"), {"path": "nope.txt"})
    assert not missing.success
    assert missing.error == "File not found: nope.txt"


def test_web_fetch_strips_html(catalog, tmp_path):
    def respond(request):
        return httpx.Response(200, html="<html><body><h1>Title</h1><p>Body text</p></body></html>")

    http = httpx.Client(transport=httpx.MockTransport(respond))
    executor = CommandExecutor(tmp_path, http_client=http)
    tool = catalog.get("web")
    try:
        result = executor.execute(tool, tool.get_action("fetch"), {"url": "https://example.test/"})
    finally:
        http.close()

    assert result.stdout == "Title Body text"


def test_web_fetch_rejects_other_schemes(catalog, executor):
    tool = catalog.get("web")
    result = executor.execute(tool, tool.get_action("fetch"), {"url": "file:///etc/passwd"})
    assert not result.success


def test_invalid_number_fails_validation(catalog, executor):
    git = catalog.get("git")
    result = executor.execute(git, git.get_action("log"), {"count": "many"})
    assert not result.success
    assert result.error == "Parameter validation failed: Parameter count must be a number"


@posix_only
def test_run_command_captures_output(executor):
    result = executor.run_command("echo out; echo err 1>&2")
    assert result.success
    assert (result.stdout, result.stderr, result.exit_code) == ("out", "err", 0)


@posix_only
def test_run_command_non_zero_exit(executor):
    result = executor.run_command("echo nope; exit 3")
    assert not result.success
    assert result.exit_code == 3
    assert result.error == "Command failed with exit code 3"
    assert result.stdout == "nope"


@posix_only
def test_run_command_timeout(tmp_path):
    result = CommandExecutor(tmp_path, timeout=0.2).run_command("sleep 5")
    assert not result.success
    assert result.error == "Command execution timed out"


@posix_only
def test_run_command_uses_working_directory(executor, tmp_path):
    assert executor.run_command("pwd").stdout == str(tmp_path)


def test_plan_line_edit_and_search_actions(catalog, executor):
    plan = catalog.get("plan")
    run = lambda name, params: executor.execute(plan, plan.get_action(name), params)

    missing = run("read_lines", {})
    assert not missing.success
    assert missing.error == "No plan file exists yet"

    run("write", {"content": "1. draft\n2. build\n3. draft again\n"})

    assert run("read_lines", {"start_line": 2, "end_line": 3}).stdout == "[Lines 2-3 of 3]\n2. build\n3. draft again"
    assert run("read_lines", {"start_line": 3}).stdout == "[Lines 3-3 of 3]\n3. draft again"

    edited = run("edit", {"old_content": "draft", "new_content": "design"})
    assert edited.stdout == "Plan updated (1 replacement)"
    assert run("read", {}).stdout == "1. design\n2. build\n3. draft again\n"

    assert run("search", {"pattern": r"\d\. d", "regex": True}).stdout == (
        "1:1: 1. design\n3:1: 3. draft again"
    )


def test_file_edit_replaces_first_or_all(catalog, executor, tmp_path):
    tool = catalog.get("file")
    target = tmp_path / "notes.txt"
    target.write_text("a-a-a", encoding="utf-8")

    edit = tool.get_action("edit")

    first = executor.execute(tool, edit, {"path": "notes.txt", "old_content": "a", "new_content": "b"})
    assert first.stdout == "Replaced 1 occurrence in notes.txt"
    assert target.read_text(encoding="utf-8") == "b-a-a"

    every = executor.execute(
        tool, edit, {"path": "notes.txt", "old_content": "a", "new_content": "c", "replace_all": True}
    )
    assert every.stdout == "Replaced 2 occurrences in notes.txt"
    assert target.read_text(encoding="utf-8") == "b-c-c"

    absent = executor.execute(tool, edit, {"path": "notes.txt", "old_content": "zzz"})
    assert not absent.success
    assert absent.error == "Old content not found in file"
    assert target.read_text(encoding="utf-8") == "b-c-c"


def test_file_search_literal_regex_and_limit(catalog, executor, tmp_path):
    tool = catalog.get("file")
    (tmp_path / "app.py").write_text("x = 1\ny = x + 1\nprint(x.real)\n", encoding="utf-8")
    search = lambda params: executor.execute(tool, tool.get_action("search"), {"path": "app.py", **params})

    assert search({"pattern": "x."}).stdout == "3:7: print(x.real)"
    assert search({"pattern": r"x\b", "regex": True, "max_matches": 2}).stdout == "1:1: x = 1\n2:5: y = x + 1"
    assert search({"pattern": "nothing"}).stdout == "(no matches)"

    bad = search({"pattern": "(", "regex": True})
    assert not bad.success
    assert bad.error.startswith("Invalid regex:")


def test_file_read_lines_and_append_mode(catalog, executor, tmp_path):
    tool = catalog.get("file")
    write = tool.get_action("write")

    executor.execute(tool, write, {"path": "log.txt", "content": "one\n"})
    appended = executor.execute(tool, write, {"path": "log.txt", "content": "two\nthree\n", "mode": "append"})
    assert appended.stdout == "Appended 10 characters to log.txt"

    read_lines = tool.get_action("read_lines")
    result = executor.execute(tool, read_lines, {"path": "log.txt", "start_line": 2, "end_line": -1})
    assert result.stdout == "[Lines 2-3 of 3]\ntwo\nthree"

    unknown = executor.execute(tool, write, {"path": "log.txt", "content": "x", "mode": "prepend"})
    assert not unknown.success
    assert unknown.error == "Unknown write mode: prepend (expected overwrite or append)"
    assert (tmp_path / "log.txt").read_text(encoding="utf-8") == "one\ntwo\nthree\n"

    directory = executor.execute(tool, read_lines, {"path": "."})
    assert not directory.success
    assert directory.error == "Not a file: ."
