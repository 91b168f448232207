"""One worker's compensator session: wires storage, ledger, timers and guidance.

Everything is constructed explicitly; there is no module-level state. The UI
(or a script) owns a :class:`CompensatorSession` and drives ``tick()`` once a
second.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from tma_compensator.adapters.kv_store import JsonFileKeyValueStore, KeyValueStore
from tma_compensator.config import Settings
from tma_compensator.errors import ValidationError
from tma_compensator.export import build_export
from tma_compensator.flow_timer import FlowResult, FlowTimerMachine, StopOutcome
from tma_compensator.guidance import GuideMode, GuidePath, Recommendation, RecommendationTracker, guide_path, recommend
from tma_compensator.ledger import LedgerStore
from tma_compensator.pacing import compute_pacing
from tma_compensator.paused_work import PausedWorkStore
from tma_compensator.schema import (
    DEFAULT_ACCOUNT_CATALOG,
    HEAVY_ITEM,
    INVOLUNTARY_IDLE_KEY,
    SECONDS_PER_DAY,
    SOURCE_MODAL,
    AccountAction,
    ActiveFlowTimer,
    ShiftConfig,
    Transaction,
)
from tma_compensator.storage import StateStorage
from tma_compensator.sync import CloudMirror, SyncReconciler
from tma_compensator.time_model import Clock, TimeModel
from tma_compensator.timeutil import parse_clock_hhmm, require_duration, seconds_to_clock_hhmm, seconds_to_time

logger = logging.getLogger(__name__)

FINISH_CONCLUDED = "concluida"
FINISH_CLOSED = "encerrada"


@dataclass
class TickResult:
    auto_stop: Optional[FlowResult] = None
    idle_warning_seconds: Optional[int] = None
    idle_started: Optional[ActiveFlowTimer] = None


class CompensatorSession:
    def __init__(
        self,
        kv: KeyValueStore | None = None,
        clock: Clock | None = None,
        settings: Settings | None = None,
        cloud: CloudMirror | None = None,
        on_idle_warning: Callable[[int], Any] | None = None,
    ):
        self.settings = settings if settings is not None else Settings()
        self.clock = clock if clock is not None else Clock()
        if kv is None and self.settings.storage_path:
            kv = JsonFileKeyValueStore(self.settings.storage_path)
        self.storage = StateStorage(kv)
        self.ledger = LedgerStore(
            storage=self.storage,
            clock=self.clock,
            daily_quota=self.settings.daily_quota,
            balance_margin_seconds=self.settings.balance_margin_seconds,
        )
        self.paused = PausedWorkStore(self.storage)
        self.sync = SyncReconciler(self.ledger, cloud=cloud, on_settings=self.apply_cloud_settings)
        self.flow = FlowTimerMachine(
            self.sync,
            self.paused,
            clock=self.clock,
            storage=self.storage,
            caps_enabled=self.settings.time_tracker_caps_enabled,
        )
        self.tracker = RecommendationTracker(self.storage)
        self.on_idle_warning = on_idle_warning

        self.shift = ShiftConfig(
            shift_start_seconds=self.settings.default_shift_start_seconds,
            shift_total_seconds=self.settings.shift_total_seconds,
            daily_quota=self.settings.daily_quota,
            balance_margin_seconds=self.settings.balance_margin_seconds,
        )
        self.show_complexa = False
        self.dark_theme = False
        self.lunch_style_enabled = True
        self.time_tracker_mode = False
        self._started_ms = self.clock.now_ms()
        self._last_idle_warn_ms = 0

        self.reload_from_storage()

    # ---- Lifecycle ----

    def reload_from_storage(self) -> None:
        self.ledger.reload()
        if self.ledger.last_activity_ms is None:
            self.ledger.last_activity_ms = _latest_created_ms(self.ledger.transactions)

        stored_start = self.storage.get_shift_start_or_none()
        start = self.settings.default_shift_start_seconds if stored_start is None else stored_start
        lunch = self.storage.get_lunch_window_or_none()
        self.shift = dataclasses.replace(
            self.shift,
            shift_start_seconds=self._clamp_shift_start(start),
            lunch_start_seconds=lunch[0] if lunch else None,
            lunch_end_seconds=lunch[1] if lunch else None,
        )
        self.show_complexa = self.storage.get_flag("show_complexa")
        self.dark_theme = self.storage.get_flag("dark_theme")
        self.lunch_style_enabled = self.storage.get_lunch_style_enabled()
        self.flow.restore()
        self.tracker = RecommendationTracker(self.storage)

    def reset(self) -> None:
        """Start a fresh day: ledger, paused work, timer and follow counters are cleared."""

        self.sync.discard_queued()
        self.sync.pending.clear()
        self.flow.reset()
        self.ledger.reset()
        self.paused.clear()
        self.tracker.reset()
        self._started_ms = self.clock.now_ms()
        logger.info("Session reset")

    # ---- Views ----

    @property
    def model(self) -> TimeModel:
        return TimeModel.from_config(self.shift)

    @property
    def needs_onboarding(self) -> bool:
        return not self.shift.has_lunch

    def catalog(self) -> tuple[AccountAction, ...]:
        """Account actions offered to the worker; Complexa only when enabled."""

        if self.show_complexa:
            return DEFAULT_ACCOUNT_CATALOG
        return tuple(action for action in DEFAULT_ACCOUNT_CATALOG if action.item != HEAVY_ITEM)

    def settings_payload(self) -> dict[str, Any]:
        return {
            "shift_start_seconds": self.shift.shift_start_seconds,
            "lunch_start_seconds": self.shift.lunch_start_seconds,
            "lunch_end_seconds": self.shift.lunch_end_seconds,
            "show_complexa": self.show_complexa,
            "dark_theme_enabled": self.dark_theme,
            "lunch_style_enabled": self.lunch_style_enabled,
        }

    # ---- Settings ----

    def _clamp_shift_start(self, seconds: int) -> int:
        return min(max(0, int(seconds)), SECONDS_PER_DAY - self.settings.shift_total_seconds)

    def configure_shift(
        self,
        shift_start_hhmm: str | None,
        lunch_start_hhmm: str,
        show_complexa: bool = False,
    ) -> ShiftConfig:
        """Set shift start (default 08:00 when empty) and a one-hour lunch."""

        shift_start = self.settings.default_shift_start_seconds
        shift_raw = str(shift_start_hhmm or "").strip()
        if shift_raw:
            parsed = parse_clock_hhmm(shift_raw)
            if parsed is None:
                raise ValidationError("Invalid shift start format. Use HH:MM.")
            latest = SECONDS_PER_DAY - self.settings.shift_total_seconds
            if parsed > latest:
                raise ValidationError(f"Shift start is too late. Use a value up to {seconds_to_clock_hhmm(latest)}.")
            shift_start = parsed

        lunch_start = parse_clock_hhmm(lunch_start_hhmm)
        if lunch_start is None:
            raise ValidationError("Invalid lunch start format. Use HH:MM.")
        lunch_end = lunch_start + self.settings.lunch_duration_seconds

        self.shift = dataclasses.replace(
            self.shift,
            shift_start_seconds=shift_start,
            lunch_start_seconds=lunch_start,
            lunch_end_seconds=lunch_end,
        )
        self.storage.set_shift_start(shift_start)
        self.storage.set_lunch_window(lunch_start, lunch_end)
        self.set_show_complexa(show_complexa)

        analytics = self.storage.get_analytics()
        lunch_stats = analytics.setdefault("lunch", {})
        lunch_stats["configured_count"] = int(lunch_stats.get("configured_count", 0)) + 1
        self.storage.set_analytics(analytics)

        logger.info(
            "Shift configured: %s-%s, lunch %s",
            seconds_to_clock_hhmm(shift_start),
            seconds_to_clock_hhmm(self.shift.shift_end_seconds),
            seconds_to_clock_hhmm(lunch_start),
        )
        self.sync.push_settings(self.settings_payload())
        return self.shift

    def set_show_complexa(self, enabled: bool) -> None:
        self.show_complexa = bool(enabled)
        self.storage.set_flag("show_complexa", self.show_complexa)

    def set_dark_theme(self, enabled: bool) -> None:
        self.dark_theme = bool(enabled)
        self.storage.set_flag("dark_theme", self.dark_theme)
        self.sync.push_settings(self.settings_payload())

    def apply_cloud_settings(self, row: dict) -> None:
        """Apply a settings row pushed from the cloud without uploading it back."""

        with self.sync.remote_context():
            start = _int_or_none(row.get("shift_start_seconds"))
            lunch_start = _int_or_none(row.get("lunch_start_seconds"))
            lunch_end = _int_or_none(row.get("lunch_end_seconds"))

            shift_start = self._clamp_shift_start(start if start is not None else self.settings.default_shift_start_seconds)
            self.shift = dataclasses.replace(
                self.shift,
                shift_start_seconds=shift_start,
                lunch_start_seconds=max(0, lunch_start) if lunch_start is not None else None,
                lunch_end_seconds=max(0, lunch_end) if lunch_end is not None else None,
            )
            self.storage.set_shift_start(shift_start)
            if self.shift.has_lunch:
                self.storage.set_lunch_window(self.shift.lunch_start_seconds, self.shift.lunch_end_seconds)

            self.dark_theme = bool(row.get("dark_theme_enabled"))
            self.storage.set_flag("dark_theme", self.dark_theme)
            self.set_show_complexa(bool(row.get("show_complexa")))
            self.lunch_style_enabled = bool(row.get("lunch_style_enabled", True))
            self.storage.set_lunch_style_enabled(self.lunch_style_enabled)
        logger.info("Applied cloud settings")

    # ---- Manual entries ----

    def _resumed_entry(self, action: AccountAction, resume_entry_id: str | None):
        if not resume_entry_id:
            return None
        entry = self.paused.get(action.key, resume_entry_id)
        if entry is None:
            raise ValidationError("That paused entry no longer exists.")
        return entry

    def _end_involuntary_idle(self) -> Optional[StopOutcome]:
        if self.flow.active_key != INVOLUNTARY_IDLE_KEY:
            return None
        return self.flow.stop(INVOLUNTARY_IDLE_KEY, finalize=True)

    def _assistant_context(self) -> dict | None:
        key = self.tracker.state.get("last_key")
        if not key:
            return None
        return {"recommendedKey": key, "target": self.tracker.state.get("last_target")}

    def submit_manual_entry(
        self,
        action: AccountAction,
        raw_time: str | None,
        resume_entry_id: str | None = None,
        finish_status: str = FINISH_CONCLUDED,
    ) -> Transaction:
        """Record a finished account from typed time; the typed value is the total."""

        entry = self._resumed_entry(action, resume_entry_id)
        if not str(raw_time or "").strip() and entry is not None:
            seconds = entry.accumulated_seconds
        else:
            seconds = require_duration(raw_time)
            if entry is not None and seconds < entry.accumulated_seconds:
                raise ValidationError(
                    f"Total time cannot be less than the paused time ({seconds_to_time(entry.accumulated_seconds)})."
                )

        self._end_involuntary_idle()
        stored = self.sync.add_transaction(
            Transaction(
                item=action.item,
                type=action.type,
                tma=action.tma_seconds,
                time_spent=seconds,
                timestamp=self.clock.now_iso(),
                source=SOURCE_MODAL,
                finish_status=finish_status,
                assistant=self._assistant_context(),
            )
        )
        if entry is not None:
            self.paused.pop(action.key, entry.id)
        self.tracker.observe(stored, self.clock.now_ms())
        return stored

    def paralyze_manual_entry(
        self,
        action: AccountAction,
        raw_time: str | None,
        resume_entry_id: str | None = None,
    ) -> str:
        """Park typed time as paused work; returns the paused entry id."""

        entry = self._resumed_entry(action, resume_entry_id)
        if not str(raw_time or "").strip():
            if entry is None:
                raise ValidationError("Enter the time spent before pausing a new entry.")
            return entry.id

        seconds = require_duration(raw_time)
        if entry is not None:
            if seconds < entry.accumulated_seconds:
                raise ValidationError(
                    f"Total time cannot be less than the paused time ({seconds_to_time(entry.accumulated_seconds)})."
                )
            self.paused.update(action.key, entry.id, accumulated_seconds=seconds)
            return entry.id

        entry_id = self.paused.push(action.key, action.item, action.type, action.tma_seconds, seconds)
        if entry_id is None:
            raise ValidationError("Paused time must be greater than zero.")
        self.ledger.touch_activity()
        return entry_id

    # ---- Flow timer ----

    def _observe_stops(self, stopped: list[StopOutcome]) -> None:
        now_ms = self.clock.now_ms()
        for outcome in stopped:
            if outcome is not None and outcome.transaction is not None:
                self.tracker.observe(outcome.transaction, now_ms)

    def start_flow(
        self,
        action: AccountAction,
        resume_entry_id: str | None = None,
        force_new: bool = False,
    ) -> FlowResult:
        if not self.flow.flow_mode_enabled:
            self.flow.set_flow_mode(True)
        result = self.flow.request_start(action, resume_entry_id=resume_entry_id, force_new=force_new)
        self._observe_stops(result.stopped)
        return result

    def resolve(self, result: FlowResult, choice: str) -> FlowResult:
        """Answer a blocked start and record any transactions it finalized."""

        if result.decision is None:
            raise ValueError("Nothing to resolve: the start was not blocked")
        resolved = result.decision.resolve(choice)
        self._observe_stops(resolved.stopped)
        return resolved

    def stop_flow(self, finalize: bool, finish_status: str | None = None) -> StopOutcome | None:
        key = self.flow.active_key
        if key is None:
            return None
        if finalize and finish_status is None:
            finish_status = FINISH_CONCLUDED
        outcome = self.flow.stop(key, finalize=finalize, finish_status=finish_status)
        self._observe_stops([outcome])
        return outcome

    def set_flow_mode(self, enabled: bool) -> bool:
        return self.flow.set_flow_mode(enabled)

    def set_time_tracker_mode(self, enabled: bool) -> None:
        self.time_tracker_mode = bool(enabled)
        if not self.time_tracker_mode:
            self._end_involuntary_idle()

    def delete_transaction_at(self, index: int) -> Transaction | None:
        return self.sync.delete_transaction_at(index)

    # ---- Periodic driver ----

    def sync_cloud(self) -> bool:
        """Push queued cloud calls when driven from synchronous code."""

        return self.sync.drain()

    def tick(self) -> TickResult:
        now_ms = self.clock.now_ms()
        result = TickResult(auto_stop=self.flow.check_auto_stop(now_ms))
        if result.auto_stop is not None:
            self._observe_stops(result.auto_stop.stopped)
        if self.sync.has_pending_work:
            self.sync_cloud()

        if not self.time_tracker_mode or self.flow.active is not None:
            return result
        now = self.clock.now_seconds()
        if now < self.shift.shift_start_seconds or now >= self.shift.shift_end_seconds:
            return result

        last_activity = self.ledger.last_activity_ms or self._started_ms
        since = now_ms - last_activity
        if since < 0:
            return result

        start_after = self.settings.idle_start_after_ms
        if self.settings.idle_warn_after_ms <= since < start_after:
            if now_ms - self._last_idle_warn_ms > self.settings.idle_warn_interval_ms:
                self._last_idle_warn_ms = now_ms
                result.idle_warning_seconds = max(0, math.ceil((start_after - since) / 1000))
                logger.info("Involuntary idle starts in %ss", result.idle_warning_seconds)
                if self.on_idle_warning is not None:
                    self.on_idle_warning(result.idle_warning_seconds)

        if since >= start_after:
            result.idle_started = self.flow.start_involuntary_idle()
            logger.info("Started involuntary idle after %ss without activity", since // 1000)
        return result

    # ---- Guidance ----

    def recommend(self, mode: GuideMode | str | None = None, mark_shown: bool = True) -> Recommendation:
        rec = recommend(
            self.ledger.transactions,
            self.ledger.balance_seconds,
            self.ledger.quota_units_remaining,
            mode=mode or self.settings.guide_mode,
            catalog=self.catalog(),
        )
        if mark_shown:
            self.tracker.record_shown(rec, self.clock.now_ms())
        return rec

    def guide_path(self, mode: GuideMode | str | None = None) -> GuidePath:
        return guide_path(
            self.ledger.transactions,
            self.ledger.balance_seconds,
            self.ledger.quota_units_remaining,
            mode=mode or self.settings.guide_mode,
            catalog=self.catalog(),
        )

    def pacing(self) -> dict:
        return compute_pacing(
            self.ledger.transactions,
            self.ledger.balance_seconds,
            self.clock.now_seconds(),
            self.model,
            daily_quota=self.settings.daily_quota,
            balance_margin_seconds=self.settings.balance_margin_seconds,
        )

    def export_snapshot(self) -> dict:
        return build_export(self)


def _int_or_none(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _latest_created_ms(transactions) -> int | None:
    best = None
    for tx in transactions:
        if not tx.created_at_iso:
            continue
        try:
            stamp = int(datetime.fromisoformat(tx.created_at_iso.replace("Z", "+00:00")).timestamp() * 1000)
        except ValueError:
            continue
        best = stamp if best is None or stamp > best else best
    return best
