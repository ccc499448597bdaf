"""Heuristic token estimation.

Counts are approximate and character-based; they are reconciled against
provider-reported usage whenever a response carries it.

Rules of thumb:
- CJK ideographs, kana and hangul: ~1.5 chars per token
- ASCII (including code punctuation): ~4 chars per token
- Everything else: ~2 chars per token
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, List

CJK_TOKENS_PER_CHAR = 0.67
ASCII_TOKENS_PER_CHAR = 0.25
OTHER_TOKENS_PER_CHAR = 0.5

DEFAULT_RESPONSE_RESERVE = 4096

_CJK_RANGES = (
    (0x4E00, 0x9FFF),  # CJK Unified Ideographs
    (0x3040, 0x30FF),  # Hiragana + Katakana
    (0xAC00, 0xD7AF),  # Hangul Syllables
)


def _is_cjk(code: int) -> bool:
    for lo, hi in _CJK_RANGES:
        if lo <= code <= hi:
            return True
    return False


def estimate_tokens(text: str) -> int:
    """Estimate token count for text.

    Args:
        text: Text to estimate tokens for.

    Returns:
        Estimated token count (ceiling of the per-character weights).
    """
    if not text:
        return 0

    tokens = 0.0
    for ch in text:
        code = ord(ch)
        if _is_cjk(code):
            tokens += CJK_TOKENS_PER_CHAR
        elif code < 128:
            tokens += ASCII_TOKENS_PER_CHAR
        else:
            tokens += OTHER_TOKENS_PER_CHAR

    return math.ceil(tokens)


def fits_in_context(
    content: str,
    context_window: int,
    reserve_tokens: int = DEFAULT_RESPONSE_RESERVE,
) -> bool:
    """Check whether content fits into the window once the response reserve is held back."""
    return estimate_tokens(content) <= context_window - reserve_tokens


@dataclass
class TruncateResult:
    """Result of a line-based truncation."""

    content: str
    was_truncated: bool
    original_lines: int
    kept_lines: int


def truncation_notice(total: int, kept: int) -> str:
    return f"[Content truncated: showing {kept} of {total} lines]"


def truncate_to_fit(content: str, max_tokens: int) -> TruncateResult:
    """Truncate text on line boundaries so it fits into ``max_tokens``.

    Whole lines are kept from the top until the budget runs out, then a
    notice with the kept/total line counts is appended.
    """
    lines = content.split("\n")
    original_lines = len(lines)

    if estimate_tokens(content) <= max_tokens:
        return TruncateResult(
            content=content,
            was_truncated=False,
            original_lines=original_lines,
            kept_lines=original_lines,
        )

    parts: List[str] = []
    kept = 0
    used = 0
    for line in lines:
        line_with_newline = line + "\n"
        line_tokens = estimate_tokens(line_with_newline)
        if used + line_tokens > max_tokens:
            break
        parts.append(line_with_newline)
        used += line_tokens
        kept += 1

    parts.append(truncation_notice(original_lines, kept))

    return TruncateResult(
        content="".join(parts),
        was_truncated=True,
        original_lines=original_lines,
        kept_lines=kept,
    )


def truncate_files_proportionally(
    files: List[Dict[str, str]],
    max_total_tokens: int,
) -> List[Dict[str, object]]:
    """Shrink several file bodies so that together they fit ``max_total_tokens``.

    Each file receives a share of the budget proportional to its own size.

    Args:
        files: ``{"path": ..., "content": ...}`` entries.
        max_total_tokens: Budget for all files together.

    Returns:
        ``{"path", "content", "was_truncated"}`` entries in input order.
    """
    sized = [(f, estimate_tokens(f["content"])) for f in files]
    total = sum(tokens for _, tokens in sized)

    if total <= max_total_tokens:
        return [
            {"path": f["path"], "content": f["content"], "was_truncated": False}
            for f in files
        ]

    ratio = max_total_tokens / total
    result: List[Dict[str, object]] = []
    for f, tokens in sized:
        allocated = math.floor(tokens * ratio)
        truncated = truncate_to_fit(f["content"], allocated)
        result.append(
            {
                "path": f["path"],
                "content": truncated.content,
                "was_truncated": truncated.was_truncated,
            }
        )
    return result
