"""Duration and clock parsing/formatting helpers."""

from __future__ import annotations

import re

from tma_compensator.errors import ValidationError

_CLOCK_HHMM = re.compile(r"^\s*(\d{1,2})\s*:\s*(\d{2})\s*$")
_CLOCK_HHMMSS = re.compile(r"^\s*(\d{1,2})\s*:\s*(\d{2})(?:\s*:\s*(\d{2}))?\s*$")
_DIGITS = re.compile(r"^\d+$")

DURATION_FORMAT_MESSAGE = "Invalid format. Use MM:SS, HH:MM:SS or plain minutes (e.g. 12)."


def parse_duration(raw: str | None) -> int | None:
    """Parse ``"12"`` (minutes), ``"MM:SS"`` or ``"HH:MM:SS"`` into seconds.

    Returns ``None`` for anything else, including empty input.
    """

    text = str(raw or "").strip()
    if not text:
        return None

    if _DIGITS.match(text):
        return int(text) * 60

    parts = [part.strip() for part in text.split(":")]
    if len(parts) not in (2, 3) or not all(_DIGITS.match(part) for part in parts):
        return None

    if len(parts) == 3:
        hours, minutes, seconds = (int(part) for part in parts)
        if minutes > 59:
            return None
    else:
        hours = 0
        minutes, seconds = (int(part) for part in parts)

    if seconds > 59:
        return None
    return hours * 3600 + minutes * 60 + seconds


def require_duration(raw: str | None) -> int:
    """Like :func:`parse_duration` but raise :class:`ValidationError` on bad input."""

    seconds = parse_duration(raw)
    if seconds is None:
        raise ValidationError(DURATION_FORMAT_MESSAGE)
    return seconds


def parse_clock_hhmm(raw: str | None) -> int | None:
    match = _CLOCK_HHMM.match(str(raw or ""))
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        return None
    return hours * 3600 + minutes * 60


def parse_clock_hhmmss(raw: str | None) -> int | None:
    """Parse a wall-clock ``HH:MM:SS`` (or ``HH:MM``) into seconds since midnight."""

    match = _CLOCK_HHMMSS.match(str(raw or ""))
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    seconds = int(match.group(3)) if match.group(3) is not None else 0
    if hours > 23 or minutes > 59 or seconds > 59:
        return None
    return hours * 3600 + minutes * 60 + seconds


def seconds_to_time(total_seconds: float) -> str:
    value = int(abs(total_seconds))
    return f"{value // 3600:02d}:{(value % 3600) // 60:02d}:{value % 60:02d}"


def format_signed_time(total_seconds: float) -> str:
    value = int(total_seconds)
    sign = "+" if value > 0 else "-" if value < 0 else ""
    return f"{sign}{seconds_to_time(value)}"


def seconds_to_clock_hhmm(total_seconds: float) -> str:
    value = max(0, int(total_seconds))
    return f"{(value // 3600) % 24:02d}:{(value % 3600) // 60:02d}"


def seconds_to_human(total_seconds: float) -> str:
    """Short human duration: ``45s``, ``12 min``, ``1h 5m``, ``2h``."""

    value = max(0, int(total_seconds))
    if value < 60:
        return f"{value}s"
    minutes = value // 60
    if minutes < 60:
        return f"{minutes} min"
    hours, rem = divmod(minutes, 60)
    return f"{hours}h {rem}m" if rem else f"{hours}h"
