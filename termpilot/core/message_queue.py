"""FIFO queue of user messages for one session.

A single worker thread takes one message at a time and hands it to the
processor (normally ``ConversationService.process``).  Messages enqueued
while a turn runs wait their turn; ``stop()`` cancels the running turn and
drops everything still waiting.

Progress is reported to one observer callable as the event dataclasses in
``termpilot.output.events``.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, List, Optional, Tuple

from termpilot.api.cancel import CancelToken
from termpilot.core.content import FileReference
from termpilot.llm.errors import RequestCancelled
from termpilot.output.events import (
    MessageCompletedEvent,
    MessageFailedEvent,
    MessageStartedEvent,
    QueueEmptyEvent,
    StoppedEvent,
)

logger = logging.getLogger(__name__)


@dataclass
class QueuedMessage:
    id: str
    content: str
    files: List[FileReference] = field(default_factory=list)
    plan_mode: bool = False
    created_at: float = field(default_factory=time.time)


Processor = Callable[[QueuedMessage, CancelToken, Callable[[Any], None]], Any]


class MessageQueue:
    """Serializes turns: at most one message is processed at a time."""

    def __init__(self, processor: Processor, observer: Optional[Callable[[Any], None]] = None):
        self._processor = processor
        self._observer = observer
        self._cond = threading.Condition()
        self._queue: Deque[QueuedMessage] = deque()
        self._counter = itertools.count(1)

        self._current: Optional[QueuedMessage] = None
        self._cancel: Optional[CancelToken] = None
        # Discard count of a stop() that hit a running turn; reported when it unwinds.
        # Set only while _cancel is, and taken together with clearing _cancel.
        self._pending_stop: Optional[int] = None
        self._stopped = False
        self._closed = False
        self._worker: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def enqueue(
        self,
        content: str,
        files: Optional[List[FileReference]] = None,
        plan_mode: bool = False,
    ) -> str:
        """Queue a message and return its id without waiting."""
        message = QueuedMessage(
            id=f"msg_{next(self._counter)}_{int(time.time() * 1000)}",
            content=content,
            files=list(files or []),
            plan_mode=plan_mode,
        )
        with self._cond:
            if self._closed:
                raise RuntimeError("Message queue is closed")
            self._stopped = False
            self._queue.append(message)
            self._ensure_worker()
            self._cond.notify_all()
        logger.debug(f"Enqueued {message.id}")
        return message.id

    def stop(self) -> int:
        """Cancel the running turn and drop queued messages.

        Returns:
            Number of queued messages discarded (the running one excluded).
        """
        with self._cond:
            discarded = len(self._queue)
            self._queue.clear()
            self._stopped = True
            cancel = self._cancel
            running = cancel is not None
            if running:
                self._pending_stop = discarded
            self._cond.notify_all()

        if cancel is not None:
            cancel.cancel("stopped by user")
        if not running:
            self._emit(StoppedEvent(discarded=discarded))
        logger.info(f"Queue stopped, {discarded} queued message(s) discarded")
        return discarded

    def clear(self) -> int:
        """Drop queued messages but let the running turn finish."""
        with self._cond:
            count = len(self._queue)
            self._queue.clear()
            self._cond.notify_all()
        return count

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    @property
    def queue_length(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def is_processing(self) -> bool:
        with self._cond:
            return self._current is not None

    @property
    def current_message_id(self) -> Optional[str]:
        with self._cond:
            return self._current.id if self._current else None

    def pending(self) -> List[QueuedMessage]:
        with self._cond:
            return list(self._queue)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is queued or running; False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._queue and self._current is None, timeout)

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Shut the worker down, cancelling whatever is still running."""
        with self._cond:
            busy = bool(self._queue) or self._current is not None
        if busy:
            self.stop()
        with self._cond:
            self._closed = True
            self._cond.notify_all()
            worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._worker is None or not self._worker.is_alive():
            self._worker = threading.Thread(target=self._run, name="termpilot-queue", daemon=True)
            self._worker.start()

    def _emit(self, event: Any) -> None:
        if self._observer is None:
            return
        try:
            self._observer(event)
        except Exception:
            logger.exception(f"Observer failed on {type(event).__name__}")

    def _next(self) -> Optional[Tuple[QueuedMessage, CancelToken]]:
        with self._cond:
            while not self._queue and not self._closed:
                self._cond.wait()
            if self._closed:
                return None
            message = self._queue.popleft()
            cancel = CancelToken()
            self._current = message
            self._cancel = cancel
            return message, cancel

    def _run(self) -> None:
        while True:
            item = self._next()
            if item is None:
                return
            message, cancel = item
            partial = self._process(message, cancel)

            # Past this point stop() no longer reaches the turn and reports itself.
            with self._cond:
                discarded = self._pending_stop
                self._pending_stop = None
                self._cancel = None
                drained = not self._queue
            if discarded is not None:
                self._emit(StoppedEvent(discarded=discarded, message_id=message.id, partial_content=partial))
            if drained:
                self._emit(QueueEmptyEvent())

            with self._cond:
                self._current = None
                self._cond.notify_all()

    def _process(self, message: QueuedMessage, cancel: CancelToken) -> str:
        """Run one turn; returns the partial answer when it was cancelled."""
        self._emit(MessageStartedEvent(message_id=message.id, content=message.content))

        partial = ""
        try:
            result = self._processor(message, cancel, self._emit)
        except RequestCancelled as e:
            partial = e.partial_content
            logger.info(f"{message.id} cancelled")
        except Exception as e:
            if cancel.cancelled:
                logger.info(f"{message.id} failed during cancellation: {e}")
            else:
                logger.error(f"{message.id} failed: {e}")
                self._emit(MessageFailedEvent(message_id=message.id, error=str(e), code=getattr(e, "code", "unknown")))
        else:
            usage = getattr(result, "usage", None)
            self._emit(
                MessageCompletedEvent(
                    message_id=message.id,
                    content=getattr(result, "content", ""),
                    usage=vars(usage) if usage is not None else None,
                )
            )
        return partial
