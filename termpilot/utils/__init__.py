"""Utility functions."""

from termpilot.utils.tokens import (
    TruncateResult,
    estimate_tokens,
    fits_in_context,
    truncate_files_proportionally,
    truncate_to_fit,
)

__all__ = [
    "TruncateResult",
    "estimate_tokens",
    "fits_in_context",
    "truncate_files_proportionally",
    "truncate_to_fit",
]
