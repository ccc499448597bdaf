"""One conversational turn: user message in, model/tool rounds, answer out.

A turn is checkpointed before the user message is appended.  Any failure,
cancellation included, rolls the session back to that checkpoint so the
history never keeps half a turn.
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from termpilot.api.cancel import CancelToken
from termpilot.config.models import AppConfig
from termpilot.core.compaction import Compactor
from termpilot.core.content import ContentBuildResult, build_message_content
from termpilot.core.message_queue import QueuedMessage
from termpilot.core.prompts import build_system_prompt
from termpilot.core.session import Message, Session
from termpilot.llm.client import ChatOptions, LLMClient
from termpilot.llm.errors import LLMError, RequestCancelled
from termpilot.llm.types import ToolCall, Usage
from termpilot.output.events import (
    NoticeEvent,
    StreamChunkEvent,
    StreamEndedEvent,
    StreamStartedEvent,
    ToolCallsEvent,
)
from termpilot.tools.catalog import ToolCatalog, to_wire_schema
from termpilot.tools.handler import AskUserCallback, ToolCallHandler
from termpilot.tools.mask import (
    PLAN_MODE,
    ToolMaskOptions,
    ToolMaskState,
    build_tool_mask,
    detect_project_type,
    filter_tool_schema,
)
from termpilot.utils.tokens import estimate_tokens

logger = logging.getLogger(__name__)

MAX_ROUNDS_NOTE = "[Stopped after {rounds} tool rounds without a final answer]"


class ContextFullError(LLMError):
    """The message does not fit into the remaining context window."""

    def __init__(self, message: str, projected_percent: float):
        super().__init__(message, code="context_full")
        self.projected_percent = projected_percent


@dataclass
class StreamContent:
    """Accumulated output of one model round."""

    content: str = ""
    reasoning_content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: Optional[Usage] = None


@dataclass
class TurnResult:
    content: str = ""
    reasoning_content: str = ""
    finish_reason: str = "stop"
    usage: Optional[Usage] = None
    rounds: int = 0
    tool_calls: int = 0
    compacted: bool = False
    truncation_notice: str = ""


Emit = Callable[[Any], None]


class ConversationService:
    """Drives turns against one session."""

    def __init__(
        self,
        client: LLMClient,
        session: Session,
        catalog: ToolCatalog,
        handler: ToolCallHandler,
        config: AppConfig,
        on_ask_user: Optional[AskUserCallback] = None,
        compactor: Optional[Compactor] = None,
    ):
        self.client = client
        self.session = session
        self.catalog = catalog
        self.handler = handler
        self.config = config
        self.on_ask_user = on_ask_user
        self.compactor = compactor or Compactor(client)
        self.plan_mode = False
        self._partial: Optional[StreamContent] = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def tool_schema(self) -> List[Dict[str, Any]]:
        if not self.config.tools.enabled or not self.config.model.supports_tools:
            return []
        return to_wire_schema(self.catalog)

    def build_mask(self, user_input: str, project_type: str) -> Optional[ToolMaskState]:
        if not self.config.tools.enabled:
            return None
        model = self.config.model
        return build_tool_mask(
            ToolMaskOptions(
                user_input=user_input,
                project_type=project_type,
                plan_mode=self.plan_mode,
                installed_tools=self.catalog.installed_ids(),
                supports_tool_choice=model.supports_tool_choice,
                supports_prefill=model.supports_prefill,
                platform=sys.platform,
                filter_schema=self.config.tools.filter_schema,
            )
        )

    def _set_mode(self, mode: str, emit: Emit, message_id: str) -> None:
        plan = mode == PLAN_MODE
        if plan == self.plan_mode:
            return
        self.plan_mode = plan
        logger.info(f"Switched to {'plan' if plan else 'action'} mode")
        emit(NoticeEvent(message=f"Switched to {'plan' if plan else 'action'} mode", message_id=message_id))

    def _prepare_content(
        self, message: QueuedMessage, cancel: Optional[CancelToken], emit: Emit
    ) -> tuple[ContentBuildResult, bool]:
        cwd = self.config.working_directory
        built = build_message_content(message.content, message.files, cwd, self.session.get_available_tokens())
        if built.truncation_notice:
            emit(NoticeEvent(message=built.truncation_notice, message_id=message.id))

        threshold = self.config.session.compact_threshold
        compacted = False
        check = self.session.should_compact(built.estimated_tokens, threshold)
        if check.should_compact:
            emit(
                NoticeEvent(
                    message=f"Context at {check.projected_percent:.0f}%, compacting history",
                    message_id=message.id,
                )
            )
            freed = self.compactor.compact(self.session, cancel)
            compacted = True
            emit(NoticeEvent(message=f"History compacted ({freed} tokens freed)", message_id=message.id))
            check = self.session.should_compact(built.estimated_tokens, threshold)

        if check.is_context_full:
            raise ContextFullError(
                f"Message needs about {built.estimated_tokens} tokens and would bring the context to "
                f"{check.projected_percent:.0f}% of {self.session.context_window}. "
                "Compact the session or send a shorter message.",
                projected_percent=check.projected_percent,
            )
        return built, compacted

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    def process(self, message: QueuedMessage, cancel: Optional[CancelToken] = None, emit: Optional[Emit] = None) -> TurnResult:
        """Run one turn to completion.

        Raises:
            ContextFullError: The message does not fit, nothing was sent.
            RequestCancelled: ``cancel`` fired; the session is rolled back
                and ``partial_content`` carries the text streamed so far.
            LLMError: The provider failed; the session is rolled back.
        """
        emit = emit or (lambda event: None)
        cancel = cancel or CancelToken()
        self.plan_mode = self.plan_mode or message.plan_mode
        self._partial = None

        schema = self.tool_schema()
        self.session.set_tools_token_estimate(estimate_tokens(json.dumps(schema)) if schema else 0)
        self.session.set_system_prompt(self._system_prompt())

        cancel.raise_if_cancelled()
        built, compacted = self._prepare_content(message, cancel, emit)

        checkpoint = self.session.checkpoint()
        display = message.content if built.content != message.content else None
        self.session.add_user_message(built.content, display_content=display)

        try:
            result = self._run_rounds(message, schema, cancel, emit)
        except RequestCancelled as e:
            self.session.rollback(checkpoint)
            partial = self._partial
            logger.info(f"Turn {message.id} cancelled, session rolled back")
            raise RequestCancelled(str(e), partial_content=partial.content if partial else "") from e
        except BaseException:
            self.session.rollback(checkpoint)
            raise

        result.compacted = compacted
        result.truncation_notice = built.truncation_notice
        return result

    def _system_prompt(self) -> str:
        return build_system_prompt(self.config.working_directory, self.config.system_prompt, self.plan_mode)

    def _run_rounds(
        self,
        message: QueuedMessage,
        schema: List[Dict[str, Any]],
        cancel: CancelToken,
        emit: Emit,
    ) -> TurnResult:
        project_type = detect_project_type(self.config.working_directory)
        max_rounds = self.config.tools.max_tool_rounds
        tool_calls_made = 0
        last_usage: Optional[Usage] = None

        for round_no in range(1, max_rounds + 1):
            cancel.raise_if_cancelled()

            mask = self.build_mask(message.content, project_type)
            self.session.set_system_prompt(self._system_prompt())
            tools = filter_tool_schema(schema, mask) if mask and mask.use_dynamic_filtering else schema
            options = ChatOptions(cancel=cancel, required_tool=mask.required_tool if mask else None)

            emit(StreamStartedEvent(message_id=message.id, round=round_no))
            stream = self._stream_round(self.session.get_messages(), tools, options, message.id, emit)
            last_usage = stream.usage or last_usage

            if stream.finish_reason == "tool_calls" and stream.tool_calls:
                self.session.add_assistant_message(
                    Message(
                        role="assistant",
                        content=stream.content,
                        tool_calls=[tc.to_dict() for tc in stream.tool_calls],
                        reasoning_content=stream.reasoning_content or None,
                    ),
                    stream.usage,
                )
                emit(ToolCallsEvent(message_id=message.id, names=[tc.name for tc in stream.tool_calls]))
                results = self.handler.handle_tool_calls(
                    stream.tool_calls,
                    on_ask_user=self.on_ask_user,
                    mask=mask,
                    cancel=cancel,
                    on_mode_change=lambda mode: self._set_mode(mode, emit, message.id),
                )
                for result in results:
                    self.session.add_tool_message(result)
                tool_calls_made += len(stream.tool_calls)
                self._partial = None
                continue

            self.session.add_assistant_message(
                Message(
                    role="assistant",
                    content=stream.content,
                    reasoning_content=stream.reasoning_content or None,
                ),
                stream.usage,
            )
            emit(
                StreamEndedEvent(
                    message_id=message.id,
                    content=stream.content,
                    reasoning_content=stream.reasoning_content,
                    finish_reason=stream.finish_reason or "stop",
                )
            )
            return TurnResult(
                content=stream.content,
                reasoning_content=stream.reasoning_content,
                finish_reason=stream.finish_reason or "stop",
                usage=stream.usage,
                rounds=round_no,
                tool_calls=tool_calls_made,
            )

        note = MAX_ROUNDS_NOTE.format(rounds=max_rounds)
        logger.warning(f"Turn {message.id} hit the tool round limit ({max_rounds})")
        self.session.add_assistant_message(Message(role="assistant", content=note))
        emit(StreamEndedEvent(message_id=message.id, content=note, finish_reason="max_rounds"))
        return TurnResult(
            content=note,
            finish_reason="max_rounds",
            usage=last_usage,
            rounds=max_rounds,
            tool_calls=tool_calls_made,
        )

    def _stream_round(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        options: ChatOptions,
        message_id: str,
        emit: Emit,
    ) -> StreamContent:
        content = StreamContent()
        self._partial = content
        for chunk in self.client.stream_chat(messages, tools or None, options):
            delta = chunk.delta
            if delta.content or delta.reasoning_content:
                content.content += delta.content
                content.reasoning_content += delta.reasoning_content
                emit(
                    StreamChunkEvent(
                        message_id=message_id,
                        content=delta.content,
                        reasoning_content=delta.reasoning_content,
                    )
                )
            if chunk.usage is not None:
                content.usage = chunk.usage
            if chunk.is_terminal:
                content.finish_reason = chunk.finish_reason
                content.tool_calls = list(delta.tool_calls or [])
        return content
