"""Assemble the user message sent to the model.

``@path`` references are read from disk, wrapped in ``<file>`` /
``<directory>`` blocks and shrunk proportionally when they would not fit
into the remaining context.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from html import escape
from pathlib import Path
from typing import List, Optional

from termpilot.utils.tokens import estimate_tokens, truncate_files_proportionally

logger = logging.getLogger(__name__)

# Headroom kept free after the message and file blocks.
FILE_BUFFER_TOKENS = 500
CONTENT_OMITTED = "[Content omitted: not enough context space]"


@dataclass
class FileReference:
    path: str
    is_directory: bool = False


@dataclass
class FileContent:
    path: str
    content: str = ""
    is_directory: bool = False
    error: Optional[str] = None


@dataclass
class ContentBuildResult:
    content: str
    was_truncated: bool = False
    truncation_notice: str = ""
    file_summary: str = ""
    estimated_tokens: int = 0
    exceeds_available: bool = False


def read_file_contents(files: List[FileReference], cwd: Path | str) -> List[FileContent]:
    """Read referenced files; directories become a comma-separated listing."""
    results: List[FileContent] = []
    for ref in files:
        path = Path(ref.path)
        if not path.is_absolute():
            path = Path(cwd) / path
        try:
            if ref.is_directory:
                names = sorted(p.name for p in path.iterdir())
                results.append(FileContent(path=ref.path, content=", ".join(names), is_directory=True))
            else:
                text = path.read_text(encoding="utf-8", errors="replace")
                results.append(FileContent(path=ref.path, content=text))
        except OSError as e:
            logger.warning(f"Failed to read {ref.path}: {e}")
            results.append(
                FileContent(path=ref.path, is_directory=ref.is_directory, error=e.strerror or str(e))
            )
    return results


def format_files_as_xml(files: List[FileContent]) -> str:
    blocks = []
    for f in files:
        tag = "directory" if f.is_directory else "file"
        path = escape(f.path, quote=True)
        if f.error:
            blocks.append(f'<{tag} path="{path}" error="true">{escape(f.error, quote=False)}</{tag}>')
        elif f.is_directory:
            blocks.append(f'<{tag} path="{path}">{f.content}</{tag}>')
        else:
            blocks.append(f'<{tag} path="{path}">\n{f.content}\n</{tag}>')
    return "\n".join(blocks)


def transform_user_message(message: str, files: List[FileReference]) -> str:
    """Replace ``@path`` mentions with ``file path`` / ``directory path``."""
    result = message
    # Longest first so "@src/a.py" is not clobbered by "@src".
    for ref in sorted(files, key=lambda f: len(f.path), reverse=True):
        label = "directory" if ref.is_directory else "file"
        result = result.replace(f"@{ref.path}", f"{label} {ref.path}", 1)
    return result


def build_message_content(
    user_message: str,
    files: List[FileReference],
    cwd: Path | str,
    available_tokens: int,
) -> ContentBuildResult:
    if not files:
        tokens = estimate_tokens(user_message)
        return ContentBuildResult(
            content=user_message,
            estimated_tokens=tokens,
            exceeds_available=tokens > available_tokens,
        )

    read = read_file_contents(files, cwd)
    message = transform_user_message(user_message, files)
    available_for_files = available_tokens - estimate_tokens(message) - FILE_BUFFER_TOKENS

    was_truncated = False
    notice = ""
    readable = [{"path": f.path, "content": f.content} for f in read if not f.error]
    total_file_tokens = sum(estimate_tokens(f["content"]) for f in readable)

    if available_for_files <= 0:
        was_truncated = True
        notice = f"{len(files)} file(s) omitted: not enough context space"
        for f in read:
            if not f.error:
                f.content = CONTENT_OMITTED
    elif total_file_tokens > available_for_files:
        truncated = {t["path"]: t for t in truncate_files_proportionally(readable, available_for_files)}
        count = sum(1 for t in truncated.values() if t["was_truncated"])
        if count:
            was_truncated = True
            notice = f"{count} file(s) truncated to fit the context window"
        for f in read:
            if f.path in truncated:
                f.content = str(truncated[f.path]["content"])

    names = ", ".join(Path(f.path).name or f.path for f in files)
    content = f"{format_files_as_xml(read)}\n\n{message}"
    tokens = estimate_tokens(content)
    return ContentBuildResult(
        content=content,
        was_truncated=was_truncated,
        truncation_notice=notice,
        file_summary=f"{len(files)} file(s): {names}",
        estimated_tokens=tokens,
        exceeds_available=tokens > available_tokens,
    )
