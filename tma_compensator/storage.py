"""Typed, namespaced accessors over a key-value store.

Every getter falls back to a documented default when the value is absent or
corrupt; nothing here raises into calling code.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from tma_compensator.adapters.kv_store import InMemoryKeyValueStore, KeyValueStore
from tma_compensator.normalize import (
    normalize_active_timer,
    normalize_paused_store,
    normalize_transactions,
)
from tma_compensator.schema import ActiveFlowTimer, PausedWorkEntry, Transaction

logger = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "tma_comp"

STORAGE_KEYS = {
    "balance": "balance",
    "transactions": "transactions",
    "last_registered_at_ms": "last_registered_at_ms",
    "lunch": "lunch",
    "lunch_style": "lunch_style",
    "shift_start": "shift_start",
    "show_complexa": "show_complexa",
    "dark_theme": "dark_theme",
    "paused_work": "paused_work",
    "flow_mode": "flow_mode",
    "active_flow_timer": "flow_active_timer",
    "analytics": "analytics",
}

_BOOL_FLAGS = ("show_complexa", "dark_theme", "flow_mode")


class StateStorage:
    """Persistence boundary for balance, transactions, paused work, timer and settings."""

    def __init__(self, kv: KeyValueStore | None = None, namespace: str = DEFAULT_NAMESPACE):
        self.kv = kv if kv is not None else InMemoryKeyValueStore()
        self.namespace = namespace

    def key(self, name: str) -> str:
        return f"{self.namespace}_{STORAGE_KEYS[name]}_v1"

    def _read(self, name: str) -> str | None:
        try:
            return self.kv.get(self.key(name))
        except Exception:  # noqa: BLE001
            logger.warning("Storage read failed for %s", name, exc_info=True)
            return None

    def _write(self, name: str, value: str) -> None:
        try:
            self.kv.set(self.key(name), value)
        except Exception:  # noqa: BLE001
            logger.warning("Storage write failed for %s", name, exc_info=True)

    def _remove(self, name: str) -> None:
        try:
            self.kv.remove(self.key(name))
        except Exception:  # noqa: BLE001
            logger.warning("Storage remove failed for %s", name, exc_info=True)

    def _read_json(self, name: str) -> Any:
        raw = self._read(name)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.debug("Corrupt JSON under %s, using default", name)
            return None

    def _write_json(self, name: str, value: Any) -> None:
        self._write(name, json.dumps(value, ensure_ascii=False))

    def _read_int(self, name: str) -> int | None:
        raw = self._read(name)
        if raw is None or not str(raw).strip():
            return None
        try:
            return int(float(raw))
        except (TypeError, ValueError, OverflowError):
            logger.debug("Corrupt integer under %s, using default", name)
            return None

    # ---- Ledger ----

    def get_balance_seconds(self) -> int:
        value = self._read_int("balance")
        return value if value is not None else 0

    def set_balance_seconds(self, value: int) -> None:
        self._write("balance", str(int(value)))

    def get_transactions(self) -> list[Transaction]:
        return normalize_transactions(self._read_json("transactions"))

    def set_transactions(self, transactions: list[Transaction]) -> None:
        self._write_json("transactions", [tx.to_dict() for tx in transactions])

    def get_last_registered_at_ms(self) -> int | None:
        value = self._read_int("last_registered_at_ms")
        return value if value and value > 0 else None

    def set_last_registered_at_ms(self, value: int) -> None:
        if value > 0:
            self._write("last_registered_at_ms", str(int(value)))

    # ---- Paused work and the active timer ----

    def get_paused_work(self) -> dict[str, list[PausedWorkEntry]]:
        """Normalized paused work; a repaired value is written back once.

        Ids and timestamps filled in for legacy or hand-edited entries must stay
        stable across reads, otherwise an id handed out by one read no longer
        matches on the next.
        """

        raw = self._read_json("paused_work")
        store = normalize_paused_store(raw)
        if raw is not None:
            payload = {key: [entry.to_dict() for entry in entries] for key, entries in store.items()}
            if payload != raw:
                logger.debug("Rewriting repaired paused work store")
                self._write_json("paused_work", payload)
        return store

    def set_paused_work(self, store: dict[str, list[PausedWorkEntry]]) -> None:
        payload = {key: [entry.to_dict() for entry in entries] for key, entries in store.items() if entries}
        self._write_json("paused_work", payload)

    def get_paused_work_raw(self) -> Any:
        return self._read_json("paused_work")

    def get_active_flow_timer(self) -> ActiveFlowTimer | None:
        return normalize_active_timer(self._read_json("active_flow_timer"))

    def set_active_flow_timer(self, timer: ActiveFlowTimer) -> None:
        self._write_json("active_flow_timer", timer.to_dict())

    def clear_active_flow_timer(self) -> None:
        self._remove("active_flow_timer")

    # ---- Shift / settings bundle ----

    def get_shift_start_or_none(self) -> int | None:
        return self._read_int("shift_start")

    def set_shift_start(self, seconds: int) -> None:
        self._write("shift_start", str(int(seconds)))

    def get_lunch_window_or_none(self) -> tuple[int, int] | None:
        payload = self._read_json("lunch")
        if not isinstance(payload, dict):
            return None
        try:
            start, end = int(payload["start"]), int(payload["end"])
        except (KeyError, TypeError, ValueError, OverflowError):
            return None
        return start, end

    def set_lunch_window(self, start: int, end: int) -> None:
        self._write_json("lunch", {"start": int(start), "end": int(end)})

    def get_flag(self, name: str) -> bool:
        if name not in _BOOL_FLAGS:
            raise KeyError(name)
        return self._read(name) == "1"

    def set_flag(self, name: str, enabled: bool) -> None:
        if name not in _BOOL_FLAGS:
            raise KeyError(name)
        self._write(name, "1" if enabled else "0")

    def get_lunch_style_enabled(self) -> bool:
        raw = self._read("lunch_style")
        if raw is None:
            return True
        try:
            return bool(json.loads(raw))
        except ValueError:
            return True

    def set_lunch_style_enabled(self, enabled: bool) -> None:
        self._write_json("lunch_style", bool(enabled))

    def get_analytics(self) -> dict:
        payload = self._read_json("analytics")
        return payload if isinstance(payload, dict) else {}

    def set_analytics(self, payload: dict) -> None:
        self._write_json("analytics", payload)

    def clear_all(self) -> None:
        for name in STORAGE_KEYS:
            self._remove(name)
