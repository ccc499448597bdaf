"""Errors raised by the model client."""

from __future__ import annotations

from typing import Optional


class LLMError(Exception):
    """LLM API error."""

    def __init__(
        self,
        message: str,
        code: str = "unknown",
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


class ContextWindowExceeded(LLMError):
    """Raised when the request exceeds the model's context window."""

    def __init__(self, message: str, status_code: Optional[int] = 400):
        super().__init__(message, code="context_window_exceeded", status_code=status_code)


class RequestCancelled(Exception):
    """The caller cancelled the request. Never retried, never reported as a failure."""

    def __init__(self, message: str = "Request cancelled", partial_content: str = ""):
        super().__init__(message)
        # Assistant text streamed before the cancel, if any.
        self.partial_content = partial_content
