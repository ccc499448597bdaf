"""Tool execution.

External tools run as shell commands rendered from their action template;
builtin actions (plan file, file access, web fetch, plan mode switch) run
in-process.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx

from termpilot.tools.catalog import ToolAction, ToolDefinition, fill_defaults, validate_params

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")
PLAN_FILE = Path(".termpilot") / "plans" / "plan.md"
MAX_OUTPUT_CHARS = 100_000
MAX_FETCH_CHARS = 50_000
TAG_RE = re.compile(r"<[^>]+>")
DEFAULT_MAX_MATCHES = 100
WRITE_MODES = ("overwrite", "append")


@dataclass
class ExecutionResult:
    """Result of running one tool action."""

    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    error: Optional[str] = None
    # "plan" or "action" when the action switches the conversation mode.
    mode_change: Optional[str] = None

    @classmethod
    def ok(cls, stdout: str = "", mode_change: Optional[str] = None) -> "ExecutionResult":
        return cls(success=True, stdout=stdout, exit_code=0, mode_change=mode_change)

    @classmethod
    def fail(cls, error: str, stderr: str = "", exit_code: Optional[int] = None) -> "ExecutionResult":
        return cls(success=False, stderr=stderr, exit_code=exit_code, error=error)


def _format_value(value: Any, raw: bool) -> str:
    if isinstance(value, bool):
        text = "true" if value else "false"
    else:
        text = str(value)
    if raw or text == "":
        return text
    return shlex.quote(text)


def render_command(action: ToolAction, params: Dict[str, Any], exec_path: str = "") -> str:
    """Fill ``{{name}}`` placeholders of the action template.

    Values are shell-quoted unless the parameter is declared raw.
    Placeholders without a value are dropped and whitespace collapsed.
    """
    raw_names = {p.name for p in action.parameters if p.raw}

    def substitute(match: re.Match) -> str:
        name = match.group(1)
        if name == "execPath":
            return _format_value(exec_path, False) if exec_path else ""
        value = params.get(name)
        if value is None:
            return ""
        return _format_value(value, name in raw_names)

    rendered = PLACEHOLDER_RE.sub(substitute, action.command_template)
    return " ".join(rendered.split())


def _clip(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... [{len(text) - limit} characters omitted]"


def _as_int(value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    return int(float(value))


def _as_flag(value: Any) -> bool:
    return value is True or value == "true"


def read_lines(path: Path, params: Dict[str, Any]) -> str:
    """Lines ``start_line``..``end_line`` (1-based, inclusive, -1 for EOF) under a range header."""
    lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    total = len(lines)
    start = max(1, _as_int(params.get("start_line"), 1))
    end_line = _as_int(params.get("end_line"), -1)
    end = total if end_line == -1 else min(end_line, total)
    selected = lines[start - 1:end] if start <= total else []
    return "\n".join([f"[Lines {start}-{end} of {total}]", *selected])


def edit_file(path: Path, params: Dict[str, Any]) -> int:
    """Replace ``old_content`` with ``new_content``; returns the replacement count.

    Only the first occurrence is replaced unless ``replace_all`` is set.
    Raises ValueError when the old content does not occur.
    """
    old = str(params["old_content"])
    new = str(params.get("new_content") or "")
    if not old:
        raise ValueError("old_content must not be empty")
    text = path.read_text(encoding="utf-8")
    count = text.count(old)
    if count == 0:
        raise ValueError("Old content not found in file")
    if _as_flag(params.get("replace_all")):
        text = text.replace(old, new)
    else:
        text = text.replace(old, new, 1)
        count = 1
    path.write_text(text, encoding="utf-8")
    return count


def search_file(path: Path, params: Dict[str, Any]) -> str:
    """``line:column: text`` for each match, at most ``max_matches`` of them."""
    pattern = str(params["pattern"])
    try:
        compiled = re.compile(pattern if _as_flag(params.get("regex")) else re.escape(pattern))
    except re.error as e:
        raise ValueError(f"Invalid regex: {e}") from e
    limit = _as_int(params.get("max_matches"), DEFAULT_MAX_MATCHES)
    if limit <= 0:
        limit = DEFAULT_MAX_MATCHES

    matches: List[str] = []
    for lineno, line in enumerate(path.read_text(encoding="utf-8", errors="replace").splitlines(), 1):
        for match in compiled.finditer(line):
            matches.append(f"{lineno}:{match.start() + 1}: {line}")
            if len(matches) >= limit:
                return "\n".join(matches)
    return "\n".join(matches) or "(no matches)"


class CommandExecutor:
    """Runs resolved tool actions inside a working directory."""

    def __init__(self, cwd: Path | str, timeout: float = 120.0, http_client: Optional[httpx.Client] = None):
        self.cwd = Path(cwd)
        self.timeout = timeout
        self._http = http_client
        self._builtins: Dict[str, Callable[[Dict[str, Any]], ExecutionResult]] = {
            "__PLAN_READ__": self._plan_read,
            "__PLAN_READ_LINES__": lambda params: ExecutionResult.ok(read_lines(self._existing_plan(), params)),
            "__PLAN_WRITE__": self._plan_write,
            "__PLAN_APPEND__": self._plan_append,
            "__PLAN_EDIT__": self._plan_edit,
            "__PLAN_SEARCH__": lambda params: ExecutionResult.ok(search_file(self._existing_plan(), params)),
            "__PLAN_EXIT__": lambda params: ExecutionResult.ok("Exited plan mode", mode_change="action"),
            "__PLAN_ENTER__": lambda params: ExecutionResult.ok("Entered plan mode", mode_change="plan"),
            "__FILE_READ__": self._file_read,
            "__FILE_READ_LINES__": lambda params: ExecutionResult.ok(read_lines(self._existing_file(params), params)),
            "__FILE_WRITE__": self._file_write,
            "__FILE_EDIT__": self._file_edit,
            "__FILE_SEARCH__": lambda params: ExecutionResult.ok(search_file(self._existing_file(params), params)),
            "__FILE_LIST__": self._file_list,
            "__WEB_FETCH__": self._web_fetch,
        }

    @property
    def plan_path(self) -> Path:
        return self.cwd / PLAN_FILE

    def execute(self, tool: ToolDefinition, action: ToolAction, params: Dict[str, Any]) -> ExecutionResult:
        if not tool.installed:
            return ExecutionResult.fail(f"Tool {tool.name} is not installed")

        errors = validate_params(action, params)
        if errors:
            return ExecutionResult.fail(f"Parameter validation failed: {'; '.join(errors)}")
        params = fill_defaults(action, params)

        if action.is_builtin:
            handler = self._builtins.get(action.command_template)
            if handler is None:
                return ExecutionResult.fail(f"Unsupported builtin action: {tool.id}_{action.name}")
            try:
                return handler(params)
            except (OSError, ValueError) as e:
                return ExecutionResult.fail(str(e))

        command = render_command(action, params, tool.executable_path)
        return self.run_command(command, env=tool.env)

    def run_command(self, command: str, env: Optional[Dict[str, str]] = None) -> ExecutionResult:
        logger.debug(f"Running: {command}")
        run_env = {**os.environ, **(env or {})}
        try:
            result = subprocess.run(
                command,
                shell=True,
                cwd=str(self.cwd),
                env=run_env,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return ExecutionResult.fail("Command execution timed out")
        except OSError as e:
            return ExecutionResult.fail(str(e))

        stdout = _clip((result.stdout or "").strip())
        stderr = _clip((result.stderr or "").strip())
        if result.returncode != 0:
            return ExecutionResult(
                success=False,
                stdout=stdout,
                stderr=stderr,
                exit_code=result.returncode,
                error=f"Command failed with exit code {result.returncode}",
            )
        return ExecutionResult(success=True, stdout=stdout, stderr=stderr, exit_code=0)

    def _resolve(self, path: str) -> Path:
        p = Path(path).expanduser()
        return p if p.is_absolute() else self.cwd / p

    def _existing_file(self, params: Dict[str, Any]) -> Path:
        path = self._resolve(str(params["path"]))
        if not path.exists():
            raise FileNotFoundError(f"File not found: {params['path']}")
        if not path.is_file():
            raise IsADirectoryError(f"Not a file: {params['path']}")
        return path

    def _existing_plan(self) -> Path:
        if not self.plan_path.exists():
            raise FileNotFoundError("No plan file exists yet")
        return self.plan_path

    # Plan file

    def _plan_read(self, params: Dict[str, Any]) -> ExecutionResult:
        if not self.plan_path.exists():
            return ExecutionResult.ok("(no plan yet)")
        return ExecutionResult.ok(self.plan_path.read_text(encoding="utf-8"))

    def _plan_write(self, params: Dict[str, Any]) -> ExecutionResult:
        self.plan_path.parent.mkdir(parents=True, exist_ok=True)
        self.plan_path.write_text(str(params["content"]), encoding="utf-8")
        return ExecutionResult.ok(f"Plan written to {PLAN_FILE.as_posix()}")

    def _plan_append(self, params: Dict[str, Any]) -> ExecutionResult:
        self.plan_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.plan_path, "a", encoding="utf-8") as f:
            f.write(str(params["content"]))
        return ExecutionResult.ok(f"Appended to {PLAN_FILE.as_posix()}")

    def _plan_edit(self, params: Dict[str, Any]) -> ExecutionResult:
        replaced = edit_file(self._existing_plan(), params)
        return ExecutionResult.ok(f"Plan updated ({replaced} replacement{'s' if replaced != 1 else ''})")

    # Files

    def _file_read(self, params: Dict[str, Any]) -> ExecutionResult:
        path = self._existing_file(params)
        return ExecutionResult.ok(_clip(path.read_text(encoding="utf-8", errors="replace")))

    def _file_write(self, params: Dict[str, Any]) -> ExecutionResult:
        mode = str(params.get("mode") or "overwrite")
        if mode not in WRITE_MODES:
            return ExecutionResult.fail(f"Unknown write mode: {mode} (expected overwrite or append)")
        path = self._resolve(str(params["path"]))
        path.parent.mkdir(parents=True, exist_ok=True)
        content = str(params["content"])
        if mode == "append":
            with open(path, "a", encoding="utf-8") as f:
                f.write(content)
            return ExecutionResult.ok(f"Appended {len(content)} characters to {params['path']}")
        path.write_text(content, encoding="utf-8")
        return ExecutionResult.ok(f"Wrote {len(content)} characters to {params['path']}")

    def _file_edit(self, params: Dict[str, Any]) -> ExecutionResult:
        replaced = edit_file(self._existing_file(params), params)
        return ExecutionResult.ok(f"Replaced {replaced} occurrence{'s' if replaced != 1 else ''} in {params['path']}")

    def _file_list(self, params: Dict[str, Any]) -> ExecutionResult:
        path = self._resolve(str(params.get("path") or "."))
        if not path.is_dir():
            return ExecutionResult.fail(f"Not a directory: {params.get('path')}")
        entries = sorted(path.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
        lines = [f"{e.name}/" if e.is_dir() else e.name for e in entries]
        return ExecutionResult.ok("\n".join(lines))

    # Web

    def _web_fetch(self, params: Dict[str, Any]) -> ExecutionResult:
        url = str(params["url"])
        if not url.startswith(("http://", "https://")):
            return ExecutionResult.fail(f"Unsupported URL: {url}")
        try:
            if self._http is not None:
                response = self._http.get(url, timeout=self.timeout, follow_redirects=True)
            else:
                response = httpx.get(url, timeout=self.timeout, follow_redirects=True)
        except httpx.HTTPError as e:
            return ExecutionResult.fail(f"Fetch failed: {e}")
        if response.status_code >= 400:
            return ExecutionResult.fail(f"HTTP {response.status_code}", stderr=response.text[:500])
        text = response.text
        if "html" in response.headers.get("content-type", ""):
            text = " ".join(TAG_RE.sub(" ", text).split())
        return ExecutionResult.ok(_clip(text, MAX_FETCH_CHARS))
