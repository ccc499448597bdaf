"""Resolve and execute model-issued tool calls.

Every call yields exactly one tool-result message, in request order, so
the session never ends up with an unanswered ``tool_calls`` entry.
"""

from __future__ import annotations

import json
import logging
import time
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from termpilot.api.cancel import CancelToken
from termpilot.core.session import Message
from termpilot.llm.errors import RequestCancelled
from termpilot.llm.types import ToolCall
from termpilot.tools.catalog import TOOL_NAME_DELIMITER, ToolAction, ToolCatalog, ToolDefinition
from termpilot.tools.executor import CommandExecutor, ExecutionResult
from termpilot.tools.mask import ToolMaskState, is_tool_allowed, tool_not_allowed_error
from termpilot.tools.specs import ASK_USER_TOOL_ID

logger = logging.getLogger(__name__)

DEFAULT_ACTION = "default"
NO_OUTPUT = "Command completed successfully (no output)"

AskUserAnswer = Union[str, "Future[str]"]
AskUserCallback = Callable[[str, List[str]], AskUserAnswer]


@dataclass(frozen=True)
class ParsedToolName:
    tool_id: str
    action: str


def parse_tool_call_name(name: str) -> ParsedToolName:
    """Split ``{tool}_{action}`` at the first delimiter."""
    tool_id, sep, action = name.partition(TOOL_NAME_DELIMITER)
    if not sep:
        return ParsedToolName(tool_id=name, action=DEFAULT_ACTION)
    return ParsedToolName(tool_id=tool_id, action=action)


def _parse_options(raw: Any) -> List[str]:
    if raw is None or raw == "":
        return []
    if isinstance(raw, list):
        return [str(o) for o in raw]
    try:
        parsed = json.loads(str(raw))
    except json.JSONDecodeError:
        return [str(raw)]
    if isinstance(parsed, list):
        return [str(o) for o in parsed]
    return [str(parsed)]


def format_result(result: ExecutionResult) -> str:
    """Render stdout/stderr/exit code as the tool-result body."""
    if result.success:
        output = result.stdout
        if result.stderr:
            output = f"{output}\n{result.stderr}" if output else result.stderr
        return output or NO_OUTPUT

    lines = [f"Error: {result.error or 'Command failed'}"]
    if result.exit_code is not None and result.exit_code != 0:
        lines.append(f"Exit code: {result.exit_code}")
    if result.stdout:
        lines.append(result.stdout)
    if result.stderr:
        lines.append(f"stderr:\n{result.stderr}")
    return "\n".join(lines)


class ToolCallHandler:
    """Dispatches tool calls to the executor, or to the user for ``askuser``."""

    def __init__(self, catalog: ToolCatalog, executor: CommandExecutor, max_concurrent: int = 4):
        self.catalog = catalog
        self.executor = executor
        self.max_concurrent = max(1, max_concurrent)

    def handle_tool_calls(
        self,
        tool_calls: List[ToolCall],
        on_ask_user: Optional[AskUserCallback] = None,
        mask: Optional[ToolMaskState] = None,
        cancel: Optional[CancelToken] = None,
        on_mode_change: Optional[Callable[[str], None]] = None,
    ) -> List[Message]:
        """Execute ``tool_calls`` and return one tool message per call, in order.

        Calls run concurrently; ``askuser`` calls are answered on the calling
        thread while the others execute.

        Raises:
            RequestCancelled: If ``cancel`` fires before dispatch or while
                waiting for a user answer.
        """
        if not tool_calls:
            return []
        if cancel is not None:
            cancel.raise_if_cancelled()

        results: List[Optional[str]] = [None] * len(tool_calls)
        jobs: List[Tuple[int, ToolDefinition, ToolAction, Dict[str, Any]]] = []
        asks: List[Tuple[int, Dict[str, Any]]] = []

        for i, call in enumerate(tool_calls):
            resolved = self._resolve(call, mask)
            if isinstance(resolved, str):
                results[i] = resolved
                continue
            tool, action, params = resolved
            if tool.id == ASK_USER_TOOL_ID:
                asks.append((i, params))
            else:
                jobs.append((i, tool, action, params))

        mode_changes: List[Tuple[int, str]] = []
        with ThreadPoolExecutor(max_workers=self.max_concurrent) as pool:
            futures = {i: pool.submit(self._run, tool, action, params) for i, tool, action, params in jobs}

            for i, params in asks:
                results[i] = self._ask_user(params, on_ask_user, cancel)

            for i, future in futures.items():
                try:
                    text, mode_change = future.result()
                except Exception as e:
                    logger.exception(f"Tool call {tool_calls[i].name} crashed")
                    text, mode_change = f"Error: {e}", None
                results[i] = text
                if mode_change:
                    mode_changes.append((i, mode_change))

        if on_mode_change is not None:
            for _, mode in sorted(mode_changes):
                on_mode_change(mode)

        return [
            Message(role="tool", content=text if text is not None else "Error: No result", tool_call_id=call.id)
            for call, text in zip(tool_calls, results)
        ]

    def _resolve(
        self, call: ToolCall, mask: Optional[ToolMaskState]
    ) -> Union[str, Tuple[ToolDefinition, ToolAction, Dict[str, Any]]]:
        """Look up tool/action and parse arguments; a string return is an error result."""
        parsed = parse_tool_call_name(call.name)
        tool = self.catalog.get(parsed.tool_id)
        if tool is None:
            return f"Error: Tool not found: {parsed.tool_id}"
        if not tool.installed:
            hint = f"\nInstall hint: {tool.install_hint}" if tool.install_hint else ""
            return f"Error: Tool {tool.name} ({tool.id}) is not installed{hint}"
        if not is_tool_allowed(tool.id, mask):
            return tool_not_allowed_error(tool.id, mask)

        action = tool.get_action(parsed.action)
        if action is None:
            available = ", ".join(tool.action_names) or "none"
            return f"Error: Action {parsed.action!r} not found for tool {tool.id}. Available actions: {available}"

        try:
            params = json.loads(call.arguments) if call.arguments.strip() else {}
        except json.JSONDecodeError as e:
            return f"Error: Failed to parse arguments for {call.name}: {e}"
        if not isinstance(params, dict):
            return f"Error: Failed to parse arguments for {call.name}: expected a JSON object"
        return tool, action, params

    def _run(self, tool: ToolDefinition, action: ToolAction, params: Dict[str, Any]) -> Tuple[str, Optional[str]]:
        start = time.monotonic()
        result = self.executor.execute(tool, action, params)
        elapsed_ms = int((time.monotonic() - start) * 1000)
        if not result.success:
            logger.info(f"{tool.id}_{action.name} failed: {result.error}")
        return f"[{tool.name}:{action.name}] ({elapsed_ms}ms)\n{format_result(result)}", result.mode_change

    def _ask_user(
        self,
        params: Dict[str, Any],
        on_ask_user: Optional[AskUserCallback],
        cancel: Optional[CancelToken],
    ) -> str:
        question = str(params.get("question") or "").strip()
        if not question:
            return "Error: Missing required parameter: question"
        if on_ask_user is None:
            return "Error: Cannot ask the user in non-interactive mode; proceed with your best judgement"

        answer = on_ask_user(question, _parse_options(params.get("options")))
        if isinstance(answer, Future):
            answer = self._wait_answer(answer, cancel)
        return f"User answered: {answer}"

    @staticmethod
    def _wait_answer(future: "Future[str]", cancel: Optional[CancelToken]) -> str:
        # No timeout: a person may take arbitrarily long.
        while True:
            if cancel is not None and cancel.cancelled:
                future.cancel()
                raise RequestCancelled("Cancelled while waiting for user input")
            try:
                return future.result(timeout=0.1)
            except FutureTimeout:
                continue
            except CancelledError:
                raise RequestCancelled("Question withdrawn before it was answered")
