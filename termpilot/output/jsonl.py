"""
JSONL output for ``termpilot exec --json``.

Each queue event is printed to stdout as one JSON object per line, keyed
by its ``type`` tag (``message.started``, ``stream.chunk``, ``stopped``, ...).
"""

from __future__ import annotations

import json
import sys
import threading
from dataclasses import asdict
from typing import Any, Dict, TextIO

_lock = threading.Lock()


def emit(event: Any, stream: TextIO | None = None) -> None:
    """Emit one dataclass event as a JSON line."""
    try:
        data = asdict(event)
    except TypeError as e:
        data = {"type": "error", "message": f"Failed to emit event: {e}"}
    emit_raw(data, stream)


def emit_raw(data: Dict[str, Any], stream: TextIO | None = None) -> None:
    out = stream or sys.stdout
    line = json.dumps(data, ensure_ascii=False)
    with _lock:
        out.write(line + "\n")
        out.flush()
