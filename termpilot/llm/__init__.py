"""Model clients for chat-completions and Anthropic messages APIs."""

from termpilot.llm.errors import ContextWindowExceeded, LLMError, RequestCancelled

__all__ = ["ContextWindowExceeded", "LLMError", "RequestCancelled"]
