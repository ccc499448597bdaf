"""History compaction.

When the next message would push usage over the compaction threshold the
conversation is summarized by the model and the session history is
replaced by that summary.
"""

from __future__ import annotations

import logging
from typing import Optional

from termpilot.api.cancel import CancelToken
from termpilot.core.session import Session
from termpilot.llm.client import ChatOptions, LLMClient
from termpilot.llm.errors import LLMError
from termpilot.utils.tokens import estimate_tokens

logger = logging.getLogger(__name__)

COMPACTION_PROMPT = """You are performing a CONTEXT CHECKPOINT COMPACTION. Summarize the conversation so far so that it can continue from the summary alone.

Include:
- What the user asked for and any preferences or constraints they stated
- Key decisions made and the reasoning behind them
- Files, commands and tools involved, and what changed
- Errors encountered and how they were resolved
- What remains to be done

Be concise and structured. Use bullet points. Write in the language the user writes in."""

SUMMARY_MAX_TOKENS = 4096


class CompactionError(LLMError):
    def __init__(self, message: str):
        super().__init__(message, code="compaction_failed")


class Compactor:
    """Summarizes a session through the model and collapses its history."""

    def __init__(self, client: LLMClient, max_tokens: int = SUMMARY_MAX_TOKENS):
        self.client = client
        self.max_tokens = max_tokens

    def summarize(self, session: Session, cancel: Optional[CancelToken] = None) -> str:
        messages = session.get_messages()
        messages.append({"role": "user", "content": COMPACTION_PROMPT})
        response = self.client.chat(
            messages,
            options=ChatOptions(cancel=cancel, max_tokens=self.max_tokens, thinking=False),
        )
        summary = response.content.strip()
        if not summary:
            raise CompactionError("Compaction failed: empty summary")
        return summary

    def compact(self, session: Session, cancel: Optional[CancelToken] = None) -> int:
        """Replace history with a model summary; returns tokens freed."""
        before = session.get_used_tokens()
        logger.info(f"Starting compaction ({len(session)} messages, {before} tokens)")
        summary = self.summarize(session, cancel)
        session.compact_with(summary)
        after = session.get_used_tokens()
        logger.info(f"Compaction complete: {estimate_tokens(summary)} token summary, {before} -> {after}")
        return max(0, before - after)
