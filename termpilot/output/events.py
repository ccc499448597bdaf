"""Events emitted while the message queue drives a turn.

Every event is a dataclass with a fixed ``type`` tag, so an observer can
match on the class or serialize it straight to JSON.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union


@dataclass
class MessageStartedEvent:
    """A queued message left the queue and its turn began."""

    message_id: str
    content: str
    type: str = field(default="message.started", init=False)


@dataclass
class StreamStartedEvent:
    """A model round is about to stream."""

    message_id: str
    round: int = 1
    type: str = field(default="stream.started", init=False)


@dataclass
class StreamChunkEvent:
    """Incremental assistant output."""

    message_id: str
    content: str = ""
    reasoning_content: str = ""
    type: str = field(default="stream.chunk", init=False)


@dataclass
class ToolCallsEvent:
    """The model asked for tools; results follow in the session."""

    message_id: str
    names: List[str] = field(default_factory=list)
    type: str = field(default="stream.tool_calls", init=False)


@dataclass
class StreamEndedEvent:
    """The final model round of a turn finished streaming."""

    message_id: str
    content: str
    reasoning_content: str = ""
    finish_reason: str = "stop"
    type: str = field(default="stream.ended", init=False)


@dataclass
class MessageCompletedEvent:
    message_id: str
    content: str
    usage: Optional[Dict[str, int]] = None
    type: str = field(default="message.completed", init=False)


@dataclass
class MessageFailedEvent:
    message_id: str
    error: str
    code: str = "unknown"
    type: str = field(default="message.failed", init=False)


@dataclass
class StoppedEvent:
    """``stop()`` aborted the in-flight turn and dropped queued messages."""

    discarded: int
    message_id: Optional[str] = None
    partial_content: str = ""
    type: str = field(default="stopped", init=False)


@dataclass
class QueueEmptyEvent:
    type: str = field(default="queue.empty", init=False)


@dataclass
class NoticeEvent:
    """Informational message for the user (compaction, mode switch, ...)."""

    message: str
    message_id: Optional[str] = None
    type: str = field(default="notice", init=False)


QueueEvent = Union[
    MessageStartedEvent,
    StreamStartedEvent,
    StreamChunkEvent,
    ToolCallsEvent,
    StreamEndedEvent,
    MessageCompletedEvent,
    MessageFailedEvent,
    StoppedEvent,
    QueueEmptyEvent,
    NoticeEvent,
]

Observer = Callable[[Any], None]
