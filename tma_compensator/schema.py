"""Core data schema for ledger transactions, paused work and flow timers."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Optional

CONFERENCIA = "conferencia"
RETORNO = "retorno"
TIME_TRACKER_TYPE = "time_tracker"
TRANSACTION_TYPES = (CONFERENCIA, RETORNO, TIME_TRACKER_TYPE)

SOURCE_MODAL = "modal"
SOURCE_FLOW = "flow"

SECONDS_PER_DAY = 24 * 3600
SHIFT_TOTAL_SECONDS = 9 * 3600 + 48 * 60  # 09:48
DEFAULT_SHIFT_START_SECONDS = 8 * 3600
DAILY_QUOTA = 17
BALANCE_MARGIN_SECONDS = 600

HEAVY_ITEM = "Complexa"
INVOLUNTARY_IDLE_ITEM = "Ociosidade involuntaria"
LUNCH_ITEM = "Almoço"
BREAK_ITEM = "Pausa"

TIME_TRACKER_ITEMS = (
    BREAK_ITEM,
    LUNCH_ITEM,
    "Falha sistemica",
    "Ociosidade",
    "Processo interno",
    "Daily",
    # Hidden from the catalog buttons; used for auto-detected idle gaps.
    INVOLUNTARY_IDLE_ITEM,
)

_ZERO_WEIGHT_ITEMS = frozenset(
    {
        "Pausa",
        "Almoço",
        "Falha sistemica",
        "Falha sistêmica",
        "Ociosidade",
        "Ociosidade involuntaria",
        "Ociosidade involuntária",
        "Processo interno",
        "Daily",
        "Time Tracker",
    }
)


def quota_weight(item: str | None) -> int:
    """Return how many quota units one transaction of ``item`` is worth."""

    name = str(item or "").strip()
    if name in _ZERO_WEIGHT_ITEMS:
        return 0
    return 2 if name == HEAVY_ITEM else 1


def action_key(item: str | None, type_: str | None) -> str:
    """Build the ``item-type`` key shared by timers, paused work and statistics."""

    return f"{item or ''}-{type_ or ''}"


def compute_difference(time_spent: int, tma: int, type_: str) -> int:
    """Signed balance impact of one transaction; time-tracker entries never count."""

    if type_ == TIME_TRACKER_TYPE:
        return 0
    return int(time_spent) - int(tma)


def compute_credited_minutes(difference: int) -> int:
    # Half-up rounding on the absolute value.
    return int(math.floor(abs(difference) / 60 + 0.5))


@dataclass(frozen=True)
class Transaction:
    """One completed unit of work or time-tracker event.

    ``difference`` and ``credited_minutes`` are derived from
    ``(time_spent, tma, type)`` and cannot be set independently.
    """

    item: str
    type: str
    tma: int = 0
    time_spent: int = 0
    timestamp: str = ""
    source: str = SOURCE_MODAL
    id: Optional[str] = None
    created_at_iso: Optional[str] = None
    finish_status: Optional[str] = None
    assistant: Optional[dict] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.tma < 0:
            raise ValueError(f"tma must be non-negative, got {self.tma}")
        if self.time_spent < 0:
            raise ValueError(f"time_spent must be non-negative, got {self.time_spent}")

    @property
    def is_time_tracker(self) -> bool:
        return self.type == TIME_TRACKER_TYPE

    @property
    def difference(self) -> int:
        return compute_difference(self.time_spent, self.tma, self.type)

    @property
    def credited_minutes(self) -> int:
        return compute_credited_minutes(self.difference)

    @property
    def key(self) -> str:
        return action_key(self.item, self.type)

    @property
    def is_local(self) -> bool:
        """True while the record still carries its optimistic ``local-`` id."""

        return self.id is None or self.id.startswith("local-")

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "item": self.item,
            "type": self.type,
            "tma": self.tma,
            "timeSpent": self.time_spent,
            "difference": self.difference,
            "creditedMinutes": self.credited_minutes,
            "timestamp": self.timestamp,
            "source": self.source,
            "assistant": self.assistant,
        }
        if self.id:
            payload["id"] = self.id
        if self.created_at_iso:
            payload["createdAtIso"] = self.created_at_iso
        if self.finish_status:
            payload["finishStatus"] = self.finish_status
        return payload


@dataclass(frozen=True)
class PausedWorkEntry:
    """Suspended, not yet finalized work on one action key."""

    id: str
    item: str
    type: str
    tma: int
    accumulated_seconds: int
    updated_at_iso: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "item": self.item,
            "type": self.type,
            "tma": self.tma,
            "accumulatedSeconds": self.accumulated_seconds,
            "updatedAtIso": self.updated_at_iso,
        }


@dataclass(frozen=True)
class ActiveFlowTimer:
    """The single live timer; ``base_seconds`` carries time from a resumed pause."""

    key: str
    start_ms: int
    base_seconds: int
    item: str
    type: str
    tma: int
    auto_stop_at_ms: Optional[int] = None
    saved_at_iso: Optional[str] = None

    def total_seconds(self, now_ms: int) -> int:
        elapsed = (int(now_ms) - int(self.start_ms)) // 1000
        return max(0, int(self.base_seconds) + max(0, elapsed))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "key": self.key,
            "start": self.start_ms,
            "baseSeconds": self.base_seconds,
            "item": self.item,
            "type": self.type,
            "tma": self.tma,
        }
        if self.saved_at_iso:
            payload["savedAtIso"] = self.saved_at_iso
        if self.auto_stop_at_ms:
            payload["autoStopAtMs"] = self.auto_stop_at_ms
        return payload


@dataclass(frozen=True)
class AccountAction:
    """One button of the catalog: an account type (or time-tracker category) and its TMA."""

    item: str
    type: str
    tma_seconds: int
    label: str = ""

    @property
    def key(self) -> str:
        return action_key(self.item, self.type)

    @property
    def weight(self) -> int:
        return quota_weight(self.item)


@dataclass(frozen=True)
class ShiftConfig:
    """Shift and lunch window, all values in seconds since midnight."""

    shift_start_seconds: int = DEFAULT_SHIFT_START_SECONDS
    shift_total_seconds: int = SHIFT_TOTAL_SECONDS
    lunch_start_seconds: Optional[int] = None
    lunch_end_seconds: Optional[int] = None
    daily_quota: int = DAILY_QUOTA
    balance_margin_seconds: int = BALANCE_MARGIN_SECONDS

    @property
    def shift_end_seconds(self) -> int:
        return self.shift_start_seconds + self.shift_total_seconds

    @property
    def latest_shift_start_seconds(self) -> int:
        return SECONDS_PER_DAY - self.shift_total_seconds

    @property
    def has_lunch(self) -> bool:
        return self.lunch_start_seconds is not None and self.lunch_end_seconds is not None


def _account(item: str, conferencia_tma: int, retorno_tma: int) -> tuple[AccountAction, AccountAction]:
    return (
        AccountAction(item, CONFERENCIA, conferencia_tma, "Conferencia"),
        AccountAction(item, RETORNO, retorno_tma, "Retorno"),
    )


DEFAULT_ACCOUNT_CATALOG: tuple[AccountAction, ...] = (
    *_account("Sociedade Simples", 2132, 900),
    *_account(HEAVY_ITEM, 4860, 2700),
    *_account("Empresaria Limitada", 3032, 1440),
    *_account("Micro Empresario Individual", 1980, 900),
)

TIME_TRACKER_ACTIONS: tuple[AccountAction, ...] = tuple(
    AccountAction(item, TIME_TRACKER_TYPE, 0, item) for item in TIME_TRACKER_ITEMS
)

INVOLUNTARY_IDLE_ACTION = AccountAction(INVOLUNTARY_IDLE_ITEM, TIME_TRACKER_TYPE, 0, INVOLUNTARY_IDLE_ITEM)
INVOLUNTARY_IDLE_KEY = INVOLUNTARY_IDLE_ACTION.key

VALID_FLOW_KEYS = frozenset(action.key for action in (*DEFAULT_ACCOUNT_CATALOG, *TIME_TRACKER_ACTIONS))


def find_action(key: str) -> AccountAction | None:
    """Look up a catalog action (accounts and time-tracker categories) by key."""

    for action in (*DEFAULT_ACCOUNT_CATALOG, *TIME_TRACKER_ACTIONS):
        if action.key == key:
            return action
    return None
