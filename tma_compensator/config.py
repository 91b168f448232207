"""Runtime settings and logging setup."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from typing import Mapping, Optional

from tma_compensator.schema import (
    BALANCE_MARGIN_SECONDS,
    DAILY_QUOTA,
    DEFAULT_SHIFT_START_SECONDS,
    SHIFT_TOTAL_SECONDS,
)

logger = logging.getLogger(__name__)

ENV_PREFIX = "TMA_COMP_"
GUIDE_MODES = ("conservative", "aggressive")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class Settings:
    """Tunable constants of one compensator session."""

    daily_quota: int = DAILY_QUOTA
    balance_margin_seconds: int = BALANCE_MARGIN_SECONDS
    shift_total_seconds: int = SHIFT_TOTAL_SECONDS
    default_shift_start_seconds: int = DEFAULT_SHIFT_START_SECONDS
    lunch_duration_seconds: int = 3600
    idle_start_after_ms: int = 4 * 60 * 1000
    idle_warn_after_ms: int = int(3.5 * 60 * 1000)
    idle_warn_interval_ms: int = 60 * 1000
    time_tracker_caps_enabled: bool = True
    guide_mode: str = "conservative"
    storage_path: Optional[str] = None
    log_level: str = "INFO"


_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _coerce(name: str, kind: type, raw: str):
    text = raw.strip()
    if kind is bool:
        lowered = text.lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ValueError(f"{name}: expected a boolean, got {raw!r}")
    if kind is int:
        value = int(text)
        if value < 0:
            raise ValueError(f"{name}: must be non-negative, got {value}")
        return value
    if name == "guide_mode" and text not in GUIDE_MODES:
        raise ValueError(f"guide_mode: expected one of {GUIDE_MODES}, got {raw!r}")
    if name == "storage_path":
        return text or None
    return text


_FIELD_TYPES = {
    "daily_quota": int,
    "balance_margin_seconds": int,
    "shift_total_seconds": int,
    "default_shift_start_seconds": int,
    "lunch_duration_seconds": int,
    "idle_start_after_ms": int,
    "idle_warn_after_ms": int,
    "idle_warn_interval_ms": int,
    "time_tracker_caps_enabled": bool,
    "guide_mode": str,
    "storage_path": str,
    "log_level": str,
}


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Defaults overridden by ``TMA_COMP_<FIELD>`` variables; bad values are ignored."""

    env = os.environ if environ is None else environ
    overrides = {}
    for item in fields(Settings):
        raw = env.get(ENV_PREFIX + item.name.upper())
        if raw is None:
            continue
        try:
            overrides[item.name] = _coerce(item.name, _FIELD_TYPES[item.name], raw)
        except ValueError as exc:
            logger.warning("Ignoring %s%s: %s", ENV_PREFIX, item.name.upper(), exc)
    return Settings(**overrides)


def configure_logging(level: str | int = "INFO") -> None:
    """Basic console logging for scripts and the demo app."""

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
