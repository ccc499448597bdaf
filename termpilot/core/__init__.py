"""Session state, persistence and turn processing."""

from termpilot.core.session import Message, Session, SessionCheckpoint

__all__ = ["Message", "Session", "SessionCheckpoint"]
