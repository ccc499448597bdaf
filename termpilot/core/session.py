"""Conversation session state.

``Session`` is the authoritative answer to two questions: how much of the
context window is left, and which messages go to the model next.  Token
counts start out as heuristic estimates and are replaced by provider-reported
usage as soon as a response carries it.
"""

from __future__ import annotations

import copy
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from termpilot.config.models import DEFAULT_CONTEXT_WINDOW
from termpilot.llm.types import Usage
from termpilot.utils.tokens import estimate_tokens

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "[Previous conversation summary]"
INTERRUPTED_SUFFIX = "\n\n[Response interrupted]"

# Extra tokens charged for the summary prefix after compaction.
SUMMARY_PREFIX_TOKENS = 30

DEFAULT_COMPACT_THRESHOLD = 0.85


@dataclass
class Message:
    """A message in the conversation history."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    display_content: Optional[str] = None  # user-facing text when content carries file payloads
    tool_calls: Optional[list[dict[str, Any]]] = None
    tool_call_id: Optional[str] = None
    reasoning_content: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to API format."""
        msg: dict[str, Any] = {"role": self.role, "content": self.content}

        if self.tool_calls:
            msg["tool_calls"] = self.tool_calls

        if self.tool_call_id:
            msg["tool_call_id"] = self.tool_call_id

        return msg

    def to_state(self) -> dict[str, Any]:
        """Convert to the persisted form (keeps display and reasoning text)."""
        state = self.to_dict()
        if self.display_content is not None:
            state["display_content"] = self.display_content
        if self.reasoning_content:
            state["reasoning_content"] = self.reasoning_content
        return state

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(
            role=data["role"],
            content=data.get("content") or "",
            display_content=data.get("display_content"),
            tool_calls=data.get("tool_calls") or None,
            tool_call_id=data.get("tool_call_id"),
            reasoning_content=data.get("reasoning_content"),
        )


@dataclass
class SessionMessage:
    """A message plus its token accounting."""

    message: Message
    tokens: int
    is_actual: bool = False
    timestamp: float = field(default_factory=time.time)

    def to_state(self) -> dict[str, Any]:
        return {
            "message": self.message.to_state(),
            "tokens": self.tokens,
            "is_actual": self.is_actual,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_state(cls, data: dict[str, Any]) -> "SessionMessage":
        return cls(
            message=Message.from_dict(data["message"]),
            tokens=int(data.get("tokens", 0)),
            is_actual=bool(data.get("is_actual", False)),
            timestamp=float(data.get("timestamp", time.time())),
        )


@dataclass(frozen=True)
class SessionCheckpoint:
    """Point-in-time snapshot used to undo the appends of an aborted round."""

    message_count: int
    actual_prompt_tokens: int
    actual_completion_tokens: int


@dataclass
class SessionStatus:
    used_tokens: int
    available_tokens: int
    usage_percent: float
    is_near_limit: bool
    is_full: bool
    message_count: int


@dataclass
class CompactCheckResult:
    should_compact: bool
    usage_percent: float
    projected_percent: float
    message_count: int
    real_message_count: int
    is_context_full: bool


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


def estimate_message_tokens(message: Message) -> int:
    """Estimate tokens for a message including any tool-call payload."""
    tokens = estimate_tokens(message.content)
    for tc in message.tool_calls or []:
        func = tc.get("function", {})
        tokens += estimate_tokens(func.get("name", ""))
        tokens += estimate_tokens(func.get("arguments", ""))
    return tokens


class Session:
    """Tracks one conversation's history and token budget."""

    def __init__(
        self,
        context_window: int = DEFAULT_CONTEXT_WINDOW,
        reserve_ratio: float = 0.0,
        near_limit_threshold: float = 0.8,
        full_threshold: float = 0.95,
    ):
        self.context_window = context_window
        self.reserve_ratio = reserve_ratio
        self.near_limit_threshold = near_limit_threshold
        self.full_threshold = full_threshold

        self._messages: list[SessionMessage] = []
        self._system_prompt: Optional[SessionMessage] = None
        self._actual_prompt_tokens = 0
        self._actual_completion_tokens = 0
        self._tools_token_estimate = 0

    @classmethod
    def from_config(cls, session_config: Any, context_window: int) -> "Session":
        """Build a session from ``SessionConfig`` and the model's window."""
        return cls(
            context_window=context_window,
            reserve_ratio=session_config.reserve_ratio,
            near_limit_threshold=session_config.near_limit_threshold,
            full_threshold=session_config.full_threshold,
        )

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def set_system_prompt(self, prompt: str) -> None:
        """Replace the system message. An empty prompt removes it."""
        if not prompt:
            self._system_prompt = None
            return
        self._system_prompt = SessionMessage(
            message=Message(role="system", content=prompt),
            tokens=estimate_tokens(prompt),
        )

    @property
    def system_prompt(self) -> Optional[str]:
        return self._system_prompt.message.content if self._system_prompt else None

    def set_tools_token_estimate(self, tokens: int) -> None:
        """Record the estimated size of the tool schema sent with each request."""
        self._tools_token_estimate = max(0, tokens)

    @property
    def tools_token_estimate(self) -> int:
        return self._tools_token_estimate

    def add_user_message(self, content: str, display_content: Optional[str] = None) -> None:
        self._messages.append(
            SessionMessage(
                message=Message(role="user", content=content, display_content=display_content),
                tokens=estimate_tokens(content),
            )
        )

    def add_assistant_message(self, message: Message, usage: Optional[Usage] = None) -> None:
        """Append an assistant message.

        Provider usage overwrites the cumulative prompt count (each prompt
        already contains all prior history) and adds to the completion count.
        """
        if usage is not None:
            estimated = self._estimated_total()
            self._actual_prompt_tokens = usage.prompt_tokens
            self._actual_completion_tokens += usage.completion_tokens
            if usage.prompt_tokens:
                logger.debug(
                    f"Usage reconciled: estimated {estimated} vs actual prompt {usage.prompt_tokens}"
                )
            tokens = usage.completion_tokens
        else:
            tokens = estimate_message_tokens(message)

        self._messages.append(
            SessionMessage(message=message, tokens=tokens, is_actual=usage is not None)
        )

    def add_tool_message(self, message: Message) -> None:
        self._messages.append(
            SessionMessage(message=message, tokens=estimate_tokens(message.content))
        )

    def save_partial_response(self, content: str, reasoning_content: Optional[str] = None) -> None:
        """Append an interrupted assistant response so it survives in history."""
        if not content and not reasoning_content:
            return
        self.add_assistant_message(
            Message(
                role="assistant",
                content=content + INTERRUPTED_SUFFIX,
                reasoning_content=reasoning_content or None,
            )
        )

    def clear(self) -> None:
        """Drop history, counters and the system prompt."""
        self._messages = []
        self._actual_prompt_tokens = 0
        self._actual_completion_tokens = 0
        self._system_prompt = None

    def update_context_window(self, context_window: int) -> None:
        self.context_window = context_window

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------

    def _estimated_total(self) -> int:
        total = self._tools_token_estimate
        if self._system_prompt:
            total += self._system_prompt.tokens
        for msg in self._messages:
            total += msg.tokens
        return total

    def get_used_tokens(self) -> int:
        """Actual cumulative usage when known, otherwise the heuristic total."""
        if self._actual_prompt_tokens > 0:
            return self._actual_prompt_tokens + self._actual_completion_tokens
        return self._estimated_total()

    def get_available_tokens(self) -> int:
        reserved = int(self.context_window * self.reserve_ratio)
        return max(0, self.context_window - self.get_used_tokens() - reserved)

    def get_status(self) -> SessionStatus:
        used = self.get_used_tokens()
        usage_percent = used / self.context_window * 100
        return SessionStatus(
            used_tokens=used,
            available_tokens=self.get_available_tokens(),
            usage_percent=usage_percent,
            is_near_limit=usage_percent >= self.near_limit_threshold * 100,
            is_full=usage_percent >= self.full_threshold * 100,
            message_count=len(self._messages),
        )

    @property
    def actual_prompt_tokens(self) -> int:
        return self._actual_prompt_tokens

    @property
    def actual_completion_tokens(self) -> int:
        return self._actual_completion_tokens

    def __len__(self) -> int:
        return len(self._messages)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def get_messages(self) -> list[dict[str, Any]]:
        """Messages in API format, system prompt first."""
        result: list[dict[str, Any]] = []
        if self._system_prompt:
            result.append(self._system_prompt.message.to_dict())
        for msg in self._messages:
            result.append(msg.message.to_dict())
        return result

    def get_history(self) -> list[Message]:
        """Conversation messages without the system prompt."""
        return [m.message for m in self._messages]

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def should_compact(
        self,
        estimated_new_tokens: int = 0,
        threshold: float = DEFAULT_COMPACT_THRESHOLD,
    ) -> CompactCheckResult:
        """Decide whether history should be summarised before the next message.

        Needs at least two non-summary messages so that a single huge first
        message, or the summary left by the previous compaction, never
        triggers it.
        """
        used = self.get_used_tokens()
        usage_percent = used / self.context_window * 100
        projected_percent = (used + estimated_new_tokens) / self.context_window * 100

        real_count = sum(
            1 for m in self._messages if not m.message.content.startswith(SUMMARY_PREFIX)
        )

        return CompactCheckResult(
            should_compact=projected_percent >= threshold * 100 and real_count >= 2,
            usage_percent=usage_percent,
            projected_percent=projected_percent,
            message_count=len(self._messages),
            real_message_count=real_count,
            is_context_full=projected_percent >= 100,
        )

    def compact_with(self, summary: str) -> None:
        """Replace all history with a single summary message."""
        self._actual_prompt_tokens = 0
        self._actual_completion_tokens = 0
        self._messages = [
            SessionMessage(
                message=Message(role="assistant", content=f"{SUMMARY_PREFIX}\n{summary}"),
                tokens=estimate_tokens(summary) + SUMMARY_PREFIX_TOKENS,
            )
        ]
        logger.info(f"Session compacted to summary ({self._messages[0].tokens} tokens)")

    # ------------------------------------------------------------------
    # Checkpoint / rollback
    # ------------------------------------------------------------------

    def checkpoint(self) -> SessionCheckpoint:
        return SessionCheckpoint(
            message_count=len(self._messages),
            actual_prompt_tokens=self._actual_prompt_tokens,
            actual_completion_tokens=self._actual_completion_tokens,
        )

    def rollback(self, checkpoint: SessionCheckpoint) -> None:
        """Drop every message appended after ``checkpoint`` and restore counters."""
        if len(self._messages) > checkpoint.message_count:
            removed = len(self._messages) - checkpoint.message_count
            del self._messages[checkpoint.message_count:]
            logger.info(f"Rolled back {removed} message(s)")
        self._actual_prompt_tokens = checkpoint.actual_prompt_tokens
        self._actual_completion_tokens = checkpoint.actual_completion_tokens

    # ------------------------------------------------------------------
    # Tool-call pairing
    # ------------------------------------------------------------------

    def _match_tool_calls(self) -> tuple[set[str], list[str]]:
        """Walk history in order pairing tool results with earlier tool calls.

        Returns the matched call ids and a list of violations.
        """
        pending: dict[str, int] = {}
        matched: set[str] = set()
        errors: list[str] = []

        for i, sm in enumerate(self._messages):
            msg = sm.message
            if msg.role == "assistant" and msg.tool_calls:
                for tc in msg.tool_calls:
                    pending[tc.get("id", "")] = i
            if msg.role == "tool" and msg.tool_call_id:
                if msg.tool_call_id in pending:
                    del pending[msg.tool_call_id]
                    matched.add(msg.tool_call_id)
                else:
                    errors.append(
                        f"Orphan tool result at index {i}: tool_call_id={msg.tool_call_id} "
                        f"has no matching tool_call"
                    )

        for call_id, index in pending.items():
            errors.append(
                f"Orphan tool_call at index {index}: tool_call_id={call_id} has no matching result"
            )

        return matched, errors

    def validate_messages(self) -> ValidationResult:
        """Report orphaned tool calls and tool results without changing anything."""
        _, errors = self._match_tool_calls()
        return ValidationResult(valid=not errors, errors=errors)

    def repair_messages(self) -> int:
        """Strip unmatched tool calls and drop orphaned tool results.

        Returns:
            Number of repaired entries (tool calls stripped plus tool
            messages removed). Zero when history was already consistent.
        """
        matched, errors = self._match_tool_calls()
        if not errors:
            return 0

        repaired = 0
        pending: set[str] = set()
        kept: list[SessionMessage] = []
        for sm in self._messages:
            msg = sm.message
            if msg.role == "assistant" and msg.tool_calls:
                valid_calls = [tc for tc in msg.tool_calls if tc.get("id", "") in matched]
                if len(valid_calls) < len(msg.tool_calls):
                    repaired += len(msg.tool_calls) - len(valid_calls)
                    msg.tool_calls = valid_calls or None
                pending.update(tc.get("id", "") for tc in valid_calls)
            if msg.role == "tool" and msg.tool_call_id:
                if msg.tool_call_id not in pending:
                    repaired += 1
                    continue
                pending.discard(msg.tool_call_id)
            kept.append(sm)

        self._messages = kept
        if repaired:
            self._actual_prompt_tokens = 0
            self._actual_completion_tokens = 0
            logger.warning(f"Repaired {repaired} unpaired tool message entries")
        return repaired

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def get_internal_state(self) -> dict[str, Any]:
        """Opaque snapshot for the session store."""
        return {
            "messages": [m.to_state() for m in self._messages],
            "system_prompt": self._system_prompt.to_state() if self._system_prompt else None,
            "actual_prompt_tokens": self._actual_prompt_tokens,
            "actual_completion_tokens": self._actual_completion_tokens,
        }

    def restore_from_state(self, state: dict[str, Any]) -> None:
        state = copy.deepcopy(state)
        self._messages = [SessionMessage.from_state(m) for m in state.get("messages", [])]
        system = state.get("system_prompt")
        self._system_prompt = SessionMessage.from_state(system) if system else None
        self._actual_prompt_tokens = int(state.get("actual_prompt_tokens", 0))
        self._actual_completion_tokens = int(state.get("actual_completion_tokens", 0))
