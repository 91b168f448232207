"""Flow timer state machine: one live timer, pause/resume, auto-stop.

Starting a timer may need a user decision (switch away from a running timer,
click the running one again, resume paused work). Those cases return a
``FlowResult`` in ``blocked`` status carrying a :class:`DecisionRequest`; the
caller shows the options and calls ``request.resolve(choice)``, which runs
the suspended transition. The machine itself never waits on anything.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from tma_compensator.paused_work import PausedWorkStore
from tma_compensator.schema import (
    BREAK_ITEM,
    INVOLUNTARY_IDLE_ACTION,
    INVOLUNTARY_IDLE_KEY,
    LUNCH_ITEM,
    SOURCE_FLOW,
    TIME_TRACKER_TYPE,
    VALID_FLOW_KEYS,
    AccountAction,
    ActiveFlowTimer,
    Transaction,
    action_key,
)
from tma_compensator.storage import StateStorage
from tma_compensator.time_model import Clock

logger = logging.getLogger(__name__)

DEFAULT_AUTO_STOP_CAPS: dict[str, int] = {
    BREAK_ITEM: 15 * 60,
    LUNCH_ITEM: 60 * 60,
}

STARTED = "started"
STOPPED = "stopped"
BLOCKED = "blocked"
CANCELLED = "cancelled"
CONTINUED = "continued"


class TransactionSink(Protocol):
    """What the machine needs from the ledger (or the sync wrapper around it)."""

    def add_transaction(self, tx: Transaction) -> Transaction: ...

    def touch_activity(self, now_ms: int | None = None) -> None: ...


class FlowState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class DecisionKind(str, Enum):
    SWITCH_TIMER = "switch_timer"
    SAME_TIMER = "same_timer"
    PAUSED_ENTRIES = "paused_entries"


class Choice(str, Enum):
    FINALIZE_AND_START = "finalize_and_start"
    PARALYZE_AND_START = "paralyze_and_start"
    FINALIZE = "finalize"
    PARALYZE = "paralyze"
    CONTINUE = "continue"
    RESUME_LATEST = "resume_latest"
    START_FRESH = "start_fresh"
    CANCEL = "cancel"


@dataclass(frozen=True)
class DecisionRequest:
    """A pending three-way choice plus the continuation that applies it."""

    kind: DecisionKind
    options: tuple[Choice, ...]
    context: dict[str, Any]
    continuation: Callable[[Choice], "FlowResult"] = field(repr=False, compare=False)

    def resolve(self, choice: Choice | str) -> "FlowResult":
        picked = Choice(choice)
        if picked not in self.options:
            raise ValueError(f"{picked.value!r} is not an option for {self.kind.value}")
        return self.continuation(picked)


@dataclass
class StopOutcome:
    key: str
    item: str
    type: str
    tma: int
    total_seconds: int
    finalized: bool
    transaction: Optional[Transaction] = None
    paused_entry_id: Optional[str] = None


@dataclass
class FlowResult:
    status: str
    timer: Optional[ActiveFlowTimer] = None
    decision: Optional[DecisionRequest] = None
    stopped: list[StopOutcome] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return self.status == BLOCKED


class FlowTimerMachine:
    """Idle / Running(key) machine enforcing a single active timer."""

    def __init__(
        self,
        ledger: TransactionSink,
        paused: PausedWorkStore,
        clock: Clock | None = None,
        storage: StateStorage | None = None,
        auto_stop_caps: dict[str, int] | None = None,
        caps_enabled: bool = True,
        valid_keys: frozenset[str] = VALID_FLOW_KEYS,
    ):
        self.ledger = ledger
        self.paused = paused
        self.clock = clock if clock is not None else Clock()
        self.storage = storage if storage is not None else paused.storage
        self.auto_stop_caps = dict(DEFAULT_AUTO_STOP_CAPS if auto_stop_caps is None else auto_stop_caps)
        self.caps_enabled = caps_enabled
        self.valid_keys = valid_keys
        self.flow_mode_enabled = False
        self._active: ActiveFlowTimer | None = None
        self.counters = {"starts": 0, "stops": 0, "blocked_start_other": 0, "auto_stops": 0}

    # ---- Read-only views ----

    @property
    def active(self) -> ActiveFlowTimer | None:
        return self._active

    @property
    def active_key(self) -> str | None:
        return self._active.key if self._active else None

    @property
    def state(self) -> FlowState:
        return FlowState.RUNNING if self._active else FlowState.IDLE

    def total_seconds(self, now_ms: int | None = None) -> int:
        if self._active is None:
            return 0
        return self._active.total_seconds(now_ms if now_ms is not None else self.clock.now_ms())

    def is_action_disabled(self, key: str) -> bool:
        """In flow mode every other action is locked while a timer runs."""

        return bool(self.flow_mode_enabled and self._active and key != self._active.key)

    # ---- Lifecycle ----

    def restore(self) -> ActiveFlowTimer | None:
        """Reload mode and any persisted timer; an unknown timer key is discarded."""

        self.flow_mode_enabled = self.storage.get_flag("flow_mode")
        timer = self.storage.get_active_flow_timer()
        if timer is None:
            return None
        expected = action_key(timer.item, timer.type)
        if expected not in self.valid_keys or timer.key != expected:
            logger.warning("Discarding persisted timer with unknown key %r", timer.key)
            self.storage.clear_active_flow_timer()
            return None
        self._active = timer
        self.flow_mode_enabled = True
        self.storage.set_flag("flow_mode", True)
        logger.info("Restored running timer %s", timer.key)
        return timer

    def set_flow_mode(self, enabled: bool) -> bool:
        """Toggle flow mode; turning it off while a timer runs is refused."""

        if not enabled and self._active is not None:
            logger.info("Refusing to disable flow mode while %s is running", self._active.key)
            return False
        self.flow_mode_enabled = bool(enabled)
        self.storage.set_flag("flow_mode", self.flow_mode_enabled)
        return True

    # ---- Transitions ----

    def request_start(
        self,
        action: AccountAction,
        *,
        resume_entry_id: str | None = None,
        force_new: bool = False,
    ) -> FlowResult:
        """Start ``action`` or return the decision needed before it can start."""

        key = action.key
        running = self._active

        if running is not None and running.key != key:
            if running.key == INVOLUNTARY_IDLE_KEY:
                idle = self.stop(running.key, finalize=True)
                result = self.request_start(action, resume_entry_id=resume_entry_id, force_new=force_new)
                if idle is not None:
                    result.stopped.insert(0, idle)
                return result
            return self._block_switch(running, action, resume_entry_id, force_new)

        if running is not None:
            return self._block_same(running)

        if not resume_entry_id and not force_new and self.paused.count(key) > 0:
            return self._block_paused(action)

        base_seconds = 0
        if not force_new:
            entry = self.paused.get(key, resume_entry_id) if resume_entry_id else self.paused.latest(key)
            if entry is not None:
                base_seconds = entry.accumulated_seconds
                self.paused.pop(key, entry.id)
        return FlowResult(STARTED, timer=self._start(action, base_seconds=base_seconds))

    def _block_switch(
        self,
        running: ActiveFlowTimer,
        action: AccountAction,
        resume_entry_id: str | None,
        force_new: bool,
    ) -> FlowResult:
        self.counters["blocked_start_other"] += 1
        logger.info("Start of %s blocked: %s is running", action.key, running.key)

        def switch(choice: Choice) -> FlowResult:
            if choice is Choice.CANCEL:
                return FlowResult(CANCELLED, timer=self._active)
            outcome = self.stop(running.key, finalize=choice is Choice.FINALIZE_AND_START)
            result = self.request_start(action, resume_entry_id=resume_entry_id, force_new=force_new)
            if outcome is not None:
                result.stopped.insert(0, outcome)
            return result

        request = DecisionRequest(
            kind=DecisionKind.SWITCH_TIMER,
            options=(Choice.FINALIZE_AND_START, Choice.PARALYZE_AND_START, Choice.CANCEL),
            context={
                "running_key": running.key,
                "requested_key": action.key,
                "running_seconds": self.total_seconds(),
            },
            continuation=switch,
        )
        return FlowResult(BLOCKED, timer=running, decision=request)

    def _block_same(self, running: ActiveFlowTimer) -> FlowResult:
        def same(choice: Choice) -> FlowResult:
            if choice is Choice.CONTINUE:
                return FlowResult(CONTINUED, timer=self._active)
            outcome = self.stop(running.key, finalize=choice is Choice.FINALIZE)
            return FlowResult(STOPPED, stopped=[outcome] if outcome else [])

        request = DecisionRequest(
            kind=DecisionKind.SAME_TIMER,
            options=(Choice.FINALIZE, Choice.PARALYZE, Choice.CONTINUE),
            context={"running_key": running.key, "running_seconds": self.total_seconds(), "tma": running.tma},
            continuation=same,
        )
        return FlowResult(BLOCKED, timer=running, decision=request)

    def _block_paused(self, action: AccountAction) -> FlowResult:
        latest = self.paused.latest(action.key)

        def paused(choice: Choice) -> FlowResult:
            if choice is Choice.RESUME_LATEST and latest is not None:
                return self.request_start(action, resume_entry_id=latest.id)
            if choice is Choice.START_FRESH:
                return self.request_start(action, force_new=True)
            return FlowResult(CANCELLED)

        request = DecisionRequest(
            kind=DecisionKind.PAUSED_ENTRIES,
            options=(Choice.RESUME_LATEST, Choice.START_FRESH, Choice.CANCEL),
            context={
                "key": action.key,
                "paused_count": self.paused.count(action.key),
                "latest_seconds": latest.accumulated_seconds if latest else 0,
            },
            continuation=paused,
        )
        return FlowResult(BLOCKED, decision=request)

    def _start(self, action: AccountAction, base_seconds: int = 0, mark_activity: bool = True) -> ActiveFlowTimer:
        if self._active is not None:
            raise RuntimeError(f"Timer {self._active.key} is already running")

        now_ms = self.clock.now_ms()
        base = max(0, int(base_seconds))
        auto_stop_at_ms = None
        cap = self.auto_stop_caps.get(action.item)
        if self.caps_enabled and cap is not None and action.type == TIME_TRACKER_TYPE:
            auto_stop_at_ms = now_ms + max(0, cap - base) * 1000

        timer = ActiveFlowTimer(
            key=action.key,
            start_ms=now_ms,
            base_seconds=base,
            item=action.item,
            type=action.type,
            tma=max(0, int(action.tma_seconds)),
            auto_stop_at_ms=auto_stop_at_ms,
            saved_at_iso=self.clock.now_iso(),
        )
        if mark_activity:
            self.ledger.touch_activity(now_ms)
        self._active = timer
        self.storage.set_active_flow_timer(timer)
        self.counters["starts"] += 1
        logger.info("Started timer %s (base %ss)", timer.key, base)
        return timer

    def start_involuntary_idle(self) -> ActiveFlowTimer | None:
        """Start the reserved idle timer unless something is already running."""

        if self._active is not None:
            return None
        return self._start(INVOLUNTARY_IDLE_ACTION, mark_activity=False)

    def stop(
        self,
        key: str,
        finalize: bool,
        now_ms: int | None = None,
        finish_status: str | None = None,
    ) -> StopOutcome | None:
        """Stop the running ``key``: finalize into the ledger or paralyze into paused work."""

        timer = self._active
        if timer is None or timer.key != key:
            return None

        total = timer.total_seconds(now_ms if now_ms is not None else self.clock.now_ms())
        self._active = None
        self.storage.clear_active_flow_timer()
        self.counters["stops"] += 1
        logger.info("Stopped timer %s after %ss (finalize=%s)", key, total, finalize)

        outcome = StopOutcome(
            key=key,
            item=timer.item,
            type=timer.type,
            tma=timer.tma,
            total_seconds=total,
            finalized=finalize,
        )
        if finalize:
            outcome.transaction = self.ledger.add_transaction(
                Transaction(
                    item=timer.item,
                    type=timer.type,
                    tma=timer.tma,
                    time_spent=total,
                    timestamp=self.clock.now_iso(),
                    source=SOURCE_FLOW,
                    finish_status=finish_status,
                )
            )
        else:
            outcome.paused_entry_id = self.paused.push(key, timer.item, timer.type, timer.tma, total)
        return outcome

    def check_auto_stop(self, now_ms: int | None = None) -> FlowResult | None:
        """Finalize a capped timer once its deadline passed; a no-op otherwise."""

        timer = self._active
        if timer is None or not timer.auto_stop_at_ms:
            return None
        now = now_ms if now_ms is not None else self.clock.now_ms()
        if now < timer.auto_stop_at_ms:
            return None
        # Measure up to the deadline so a late tick never over-counts.
        outcome = self.stop(timer.key, finalize=True, now_ms=min(now, timer.auto_stop_at_ms))
        self.counters["auto_stops"] += 1
        logger.info("Auto-stopped %s at its cap", timer.key)
        return FlowResult(STOPPED, stopped=[outcome] if outcome else [])

    def reset(self) -> None:
        self._active = None
        self.storage.clear_active_flow_timer()
        self.flow_mode_enabled = False
        self.storage.set_flag("flow_mode", False)
