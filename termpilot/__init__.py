"""
termpilot - a terminal AI assistant client.

Talks to OpenAI-compatible chat-completions or Anthropic messages APIs, exposes installed
command-line tools to the model and keeps the conversation inside a bounded
context window.

Heavy modules (core.service, core.message_queue, llm.client) are NOT
re-exported here.  Import them directly::

    from termpilot.core.message_queue import MessageQueue
    from termpilot.llm.client import LLMClient
"""

__version__ = "0.4.0"

from termpilot.utils.tokens import estimate_tokens

__all__ = [
    "estimate_tokens",
    "__version__",
]
