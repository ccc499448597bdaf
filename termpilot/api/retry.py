"""Retry logic with exponential backoff for non-streaming API calls."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from termpilot.api.cancel import CancelToken
from termpilot.config.models import RetryConfig
from termpilot.llm.errors import LLMError, RequestCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryState:
    """State of a retry operation."""

    attempt: int
    last_error: Optional[Exception]
    last_status_code: Optional[int]
    total_delay: float


class RetryHandler:
    """Handles retry logic with exponential backoff."""

    def __init__(self, config: RetryConfig):
        self.config = config

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the backoff delay.

        Args:
            attempt: Current attempt number (1-indexed)

        Returns:
            ``base_delay * 2^(attempt-1)`` seconds, capped at ``max_delay``
        """
        return min(self.config.base_delay * (2 ** (attempt - 1)), self.config.max_delay)

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Determine if we should retry based on the error.

        Any failure is retried except an explicit cancellation.
        """
        if attempt >= self.config.max_attempts:
            return False

        return not isinstance(error, RequestCancelled)

    def execute(
        self,
        func: Callable[..., T],
        *args: Any,
        cancel: Optional[CancelToken] = None,
        on_retry: Optional[Callable[[RetryState], None]] = None,
        **kwargs: Any,
    ) -> T:
        """Execute a function with retry logic.

        Args:
            func: Function to execute
            *args: Positional arguments for func
            cancel: Optional token; a cancelled token aborts the backoff wait
            on_retry: Optional callback called before each retry
            **kwargs: Keyword arguments for func

        Returns:
            Result of func

        Raises:
            The last exception if all retries fail
        """
        state = RetryState(attempt=0, last_error=None, last_status_code=None, total_delay=0)

        while True:
            state.attempt += 1
            if cancel is not None:
                cancel.raise_if_cancelled()

            try:
                return func(*args, **kwargs)
            except Exception as e:
                state.last_error = e

                if isinstance(e, LLMError):
                    state.last_status_code = e.status_code

                if not self.should_retry(e, state.attempt):
                    raise

                delay = self.calculate_delay(state.attempt)
                state.total_delay += delay
                logger.warning(
                    f"Request failed (attempt {state.attempt}/{self.config.max_attempts}): "
                    f"{type(e).__name__}: {e}; retrying in {delay:.1f}s"
                )

                if on_retry:
                    on_retry(state)

                if cancel is not None:
                    if cancel.wait(delay):
                        raise RequestCancelled("Request cancelled during retry backoff") from e
                elif delay > 0:
                    time.sleep(delay)
