"""On-disk session persistence.

Layout under the sessions directory::

    index.json          {"version": 1, "active_session_id": ..., "sessions": [...]}
    <session-id>.json   {"info": {...}, "state": <Session.get_internal_state()>}

Every write goes to a ``.tmp`` sibling first and is then moved into place,
so a crash never leaves a half-written file behind.
"""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

from termpilot.core.session import Session

logger = logging.getLogger(__name__)

INDEX_VERSION = 1
INDEX_FILE = "index.json"
DEFAULT_SESSION_NAME = "New Session"
MAX_TITLE_LENGTH = 50

_FILE_REF_RE = re.compile(r"@[\w./\\-]+")


@dataclass
class SessionInfo:
    """Index entry describing one persisted session."""

    id: str
    name: str
    created_at: float
    updated_at: float
    token_usage: int = 0
    message_count: int = 0
    model_id: str = ""
    is_active: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionInfo":
        return cls(
            id=data["id"],
            name=data.get("name") or DEFAULT_SESSION_NAME,
            created_at=float(data.get("created_at", 0)),
            updated_at=float(data.get("updated_at", 0)),
            token_usage=int(data.get("token_usage", 0)),
            message_count=int(data.get("message_count", 0)),
            model_id=data.get("model_id", ""),
            is_active=bool(data.get("is_active", False)),
        )


def _write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp.replace(path)


def title_from_message(text: str) -> str:
    """Derive a session title from the first user message.

    First line only, ``@file`` references removed, capped at 50 characters.
    """
    title = text.strip().split("\n", 1)[0]
    title = _FILE_REF_RE.sub("", title).strip()
    if len(title) > MAX_TITLE_LENGTH:
        title = title[: MAX_TITLE_LENGTH - 3] + "..."
    return title or DEFAULT_SESSION_NAME


class SessionStore:
    """Persists sessions as JSON files keyed by session id."""

    def __init__(
        self,
        sessions_dir: Path,
        session_factory: Optional[Any] = None,
        model_id: str = "",
    ):
        self.sessions_dir = Path(sessions_dir)
        self.index_path = self.sessions_dir / INDEX_FILE
        self.model_id = model_id
        self._session_factory = session_factory or Session
        self._sessions: dict[str, SessionInfo] = {}
        self._active_session_id: Optional[str] = None
        self._initialized = False

    def initialize(self) -> None:
        """Load the index, rebuilding it from session files if it is unreadable."""
        if self._initialized:
            return
        self.sessions_dir.mkdir(parents=True, exist_ok=True)

        if self.index_path.exists():
            try:
                data = json.loads(self.index_path.read_text(encoding="utf-8"))
                if data.get("version") != INDEX_VERSION:
                    raise ValueError(f"unsupported index version {data.get('version')!r}")
                for raw in data.get("sessions", []):
                    info = SessionInfo.from_dict(raw)
                    self._sessions[info.id] = info
                self._active_session_id = data.get("active_session_id")
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Session index unreadable ({e}), rebuilding from files")
                self._rebuild_index()
        else:
            self._rebuild_index()

        if self._active_session_id not in self._sessions:
            self._active_session_id = None
        self._initialized = True

    def _rebuild_index(self) -> None:
        self._sessions = {}
        self._active_session_id = None
        for path in sorted(self.sessions_dir.glob("*.json")):
            if path.name == INDEX_FILE:
                continue
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                info = SessionInfo.from_dict(data["info"])
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unreadable session file {path.name}: {e}")
                continue
            info.is_active = False
            self._sessions[info.id] = info
        logger.info(f"Rebuilt session index with {len(self._sessions)} session(s)")
        self._save_index()

    def _save_index(self) -> None:
        payload = {
            "version": INDEX_VERSION,
            "active_session_id": self._active_session_id,
            "sessions": [asdict(info) for info in self._sessions.values()],
        }
        _write_json_atomic(self.index_path, payload)

    def _session_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    def _save_session_data(self, info: SessionInfo, state: dict[str, Any]) -> None:
        _write_json_atomic(self._session_path(info.id), {"info": asdict(info), "state": state})

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_sessions(self) -> list[SessionInfo]:
        """All sessions, most recently updated first."""
        return sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)

    def get_session_info(self, session_id: str) -> Optional[SessionInfo]:
        return self._sessions.get(session_id)

    @property
    def active_session_id(self) -> Optional[str]:
        return self._active_session_id

    def get_active_session(self) -> Optional[SessionInfo]:
        if not self._active_session_id:
            return None
        return self._sessions.get(self._active_session_id)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_session(self, name: Optional[str] = None) -> SessionInfo:
        now = time.time()
        info = SessionInfo(
            id=str(uuid.uuid4()),
            name=name or DEFAULT_SESSION_NAME,
            created_at=now,
            updated_at=now,
            model_id=self.model_id,
        )
        self._sessions[info.id] = info
        self._save_session_data(info, self._session_factory().get_internal_state())
        self._save_index()
        return info

    def load_session(self, session_id: str) -> Optional[Session]:
        """Restore a session; unpaired tool messages are repaired on the way in."""
        info = self._sessions.get(session_id)
        if info is None:
            return None

        path = self._session_path(session_id)
        if not path.exists():
            logger.warning(f"Session file not found: {session_id}")
            return None

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            session = self._session_factory()
            session.restore_from_state(data["state"])
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to load session {session_id}: {e}")
            return None

        repaired = session.repair_messages()
        if repaired:
            logger.warning(f"Session {session_id}: repaired {repaired} unpaired tool entries")
        return session

    def save_session(self, session: Session, session_id: str) -> None:
        info = self._sessions.get(session_id)
        if info is None:
            raise KeyError(f"Unknown session: {session_id}")

        status = session.get_status()
        info.updated_at = time.time()
        info.token_usage = status.used_tokens
        info.message_count = status.message_count
        if self.model_id:
            info.model_id = self.model_id

        self._save_session_data(info, session.get_internal_state())
        self._save_index()

    def rename_session(self, session_id: str, name: str) -> bool:
        info = self._sessions.get(session_id)
        if info is None:
            return False
        info.name = name
        info.updated_at = time.time()
        self._save_index()
        return True

    def delete_session(self, session_id: str) -> bool:
        """Delete a session. The active session cannot be deleted."""
        if session_id not in self._sessions or session_id == self._active_session_id:
            return False

        path = self._session_path(session_id)
        if path.exists():
            path.unlink()
        del self._sessions[session_id]
        self._save_index()
        return True

    def set_active_session_id(self, session_id: str) -> None:
        if session_id not in self._sessions:
            raise KeyError(f"Unknown session: {session_id}")
        for info in self._sessions.values():
            info.is_active = info.id == session_id
        self._active_session_id = session_id
        self._save_index()
