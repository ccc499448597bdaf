"""Queue events and their JSONL rendering."""

from termpilot.output.events import (
    MessageCompletedEvent,
    MessageFailedEvent,
    MessageStartedEvent,
    NoticeEvent,
    QueueEmptyEvent,
    StoppedEvent,
    StreamChunkEvent,
    StreamEndedEvent,
    StreamStartedEvent,
    ToolCallsEvent,
)
from termpilot.output.jsonl import emit

__all__ = [
    "MessageCompletedEvent",
    "MessageFailedEvent",
    "MessageStartedEvent",
    "NoticeEvent",
    "QueueEmptyEvent",
    "StoppedEvent",
    "StreamChunkEvent",
    "StreamEndedEvent",
    "StreamStartedEvent",
    "ToolCallsEvent",
    "emit",
]
