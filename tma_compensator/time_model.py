"""Shift and lunch window arithmetic plus the (optionally simulated) clock."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from tma_compensator.schema import SECONDS_PER_DAY, ShiftConfig

logger = logging.getLogger(__name__)

DEFAULT_SIM_SPEED = 60.0


def overlap(a_start: float, a_end: float, b_start: float, b_end: float) -> float:
    """Length of the intersection of ``[a_start, a_end)`` and ``[b_start, b_end)``."""

    return max(0, min(a_end, b_end) - max(a_start, b_start))


@dataclass(frozen=True)
class TimeModel:
    """Work-time view of one shift with an optional lunch window."""

    shift_start: int
    shift_end: int
    lunch_start: Optional[int] = None
    lunch_end: Optional[int] = None

    @classmethod
    def from_config(cls, config: ShiftConfig) -> "TimeModel":
        return cls(
            shift_start=config.shift_start_seconds,
            shift_end=config.shift_end_seconds,
            lunch_start=config.lunch_start_seconds,
            lunch_end=config.lunch_end_seconds,
        )

    @property
    def shift_duration(self) -> int:
        return max(0, self.shift_end - self.shift_start)

    def _clamp(self, now: float) -> float:
        return min(max(now, self.shift_start), self.shift_end)

    def lunch_within_shift(self) -> tuple[int, int] | None:
        """Lunch window clipped to the shift, or ``None`` when nothing remains."""

        if self.lunch_start is None or self.lunch_end is None:
            return None
        if self.lunch_end <= self.lunch_start:
            return None
        start = self._clamp(self.lunch_start)
        end = self._clamp(self.lunch_end)
        if end <= start:
            return None
        return int(start), int(end)

    def _lunch_overlap(self, start: float, end: float) -> float:
        lunch = self.lunch_within_shift()
        if lunch is None:
            return 0
        return overlap(start, end, lunch[0], lunch[1])

    def remaining_shift_seconds(self, now: float) -> int:
        if now >= self.shift_end:
            return 0
        if now < self.shift_start:
            return self.shift_duration
        return int(self.shift_end - now)

    def total_work_seconds(self) -> int:
        return int(max(0, self.shift_duration - self._lunch_overlap(self.shift_start, self.shift_end)))

    def elapsed_work_seconds(self, now: float) -> int:
        clamped = self._clamp(now)
        elapsed = (clamped - self.shift_start) - self._lunch_overlap(self.shift_start, clamped)
        return int(max(0, elapsed))

    def remaining_work_seconds(self, now: float) -> int:
        clamped = self._clamp(now)
        remaining = (self.shift_end - clamped) - self._lunch_overlap(clamped, self.shift_end)
        return int(max(0, remaining))

    def is_lunch_now(self, now: float) -> bool:
        if self.lunch_start is None or self.lunch_end is None:
            return False
        return self.lunch_start <= now < self.lunch_end

    def status(self, now: float) -> str:
        if now < self.shift_start:
            return "before_shift"
        if now >= self.shift_end:
            return "after_shift"
        if self.is_lunch_now(now):
            return "lunch"
        return "working"


class Clock:
    """Wall clock with an optional debug override for simulated days.

    ``now_seconds`` is seconds since local midnight; a debug value is always
    wrapped into ``[0, 86400)``. ``now_ms`` stays on real epoch time so running
    timers keep measuring real elapsed time.
    """

    def __init__(self, time_fn: Callable[[], float] = time.time):
        self._time_fn = time_fn
        self._debug_seconds: float | None = None
        self.sim_speed: float = DEFAULT_SIM_SPEED

    @property
    def debug_seconds(self) -> float | None:
        return self._debug_seconds

    def now_ms(self) -> int:
        return int(self._time_fn() * 1000)

    def now_iso(self) -> str:
        return datetime.fromtimestamp(self._time_fn()).astimezone().isoformat()

    def now_seconds(self) -> int:
        if self._debug_seconds is not None:
            return int(self._debug_seconds) % SECONDS_PER_DAY
        moment = datetime.fromtimestamp(self._time_fn())
        return moment.hour * 3600 + moment.minute * 60 + moment.second

    def set_debug_seconds(self, seconds: float) -> None:
        self._debug_seconds = float(seconds) % SECONDS_PER_DAY
        logger.debug("Debug clock set to %s", self._debug_seconds)

    def reset_debug(self) -> None:
        self._debug_seconds = None

    def advance_debug(self, real_seconds: float, speed: float | None = None) -> None:
        """Advance the simulated clock by ``real_seconds * speed``."""

        factor = speed if speed and speed > 0 else self.sim_speed
        if self._debug_seconds is None:
            self._debug_seconds = float(self.now_seconds())
        self._debug_seconds = (self._debug_seconds + max(0.0, real_seconds) * factor) % SECONDS_PER_DAY
