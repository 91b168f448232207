"""Error types surfaced to callers."""

from __future__ import annotations


class ValidationError(ValueError):
    """User-facing input error; raised before any state is mutated."""
