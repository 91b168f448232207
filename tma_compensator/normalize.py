"""Read-side normalization of stored and remote payloads.

There is exactly one function per stored shape. Each accepts whatever a store
or a remote row may hold (older schemas, hand-edited JSON, snake_case cloud
columns) and returns clean schema objects, dropping what cannot be repaired.
"""

from __future__ import annotations

import math
import secrets
import time
from datetime import datetime, timezone
from typing import Any

from tma_compensator.schema import TRANSACTION_TYPES, ActiveFlowTimer, PausedWorkEntry, Transaction

TRANSACTIONS_SCHEMA_VERSION = 1
# v1 stored a single object per key, v2 stores a chronological list.
PAUSED_WORK_SCHEMA_VERSION = 2
ACTIVE_TIMER_SCHEMA_VERSION = 1


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_paused_entry_id(now_ms: int | None = None) -> str:
    stamp = int(now_ms if now_ms is not None else time.time() * 1000)
    return f"{stamp}_{secrets.token_hex(4)}"


def _to_int(value: Any, default: int = 0) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return int(number)


def _pick(raw: dict, *names: str) -> Any:
    for name in names:
        value = raw.get(name)
        if value is not None:
            return value
    return None


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def normalize_transaction(raw: Any) -> Transaction | None:
    """Build a :class:`Transaction` from a stored or remote row.

    Accepts both the camelCase storage keys and the snake_case cloud columns.
    Stored ``difference``/``creditedMinutes`` are ignored; they are derived.
    """

    if not isinstance(raw, dict):
        return None
    item = _text(raw.get("item"))
    type_ = _text(raw.get("type"))
    if not item or type_ not in TRANSACTION_TYPES:
        return None

    assistant = raw.get("assistant")
    return Transaction(
        item=item,
        type=type_,
        tma=max(0, _to_int(raw.get("tma"))),
        time_spent=max(0, _to_int(_pick(raw, "timeSpent", "time_spent"))),
        timestamp=_text(_pick(raw, "timestamp", "client_timestamp")),
        source=_text(raw.get("source")) or "modal",
        id=_text(raw.get("id")) or None,
        created_at_iso=_text(_pick(raw, "createdAtIso", "created_at")) or None,
        finish_status=_text(_pick(raw, "finishStatus", "finish_status")) or None,
        assistant=assistant if isinstance(assistant, dict) else None,
    )


def normalize_transactions(raw: Any) -> list[Transaction]:
    if not isinstance(raw, list):
        return []
    out = []
    for row in raw:
        tx = normalize_transaction(row)
        if tx is not None:
            out.append(tx)
    return out


def _paused_entry(raw: Any) -> PausedWorkEntry | None:
    if not isinstance(raw, dict):
        return None
    item = _text(raw.get("item"))
    type_ = _text(raw.get("type"))
    seconds = max(0, _to_int(_pick(raw, "accumulatedSeconds", "accumulated_seconds")))
    if not item or not type_ or seconds <= 0:
        return None
    return PausedWorkEntry(
        id=_text(raw.get("id")) or make_paused_entry_id(),
        item=item,
        type=type_,
        tma=max(0, _to_int(raw.get("tma"))),
        accumulated_seconds=seconds,
        updated_at_iso=_text(_pick(raw, "updatedAtIso", "updated_at_iso")) or utc_now_iso(),
    )


def normalize_paused_store(raw: Any) -> dict[str, list[PausedWorkEntry]]:
    """Normalize a paused-work map to ``{key: [entries...]}``.

    A legacy single-object value becomes a one-element list; entries without
    item/type or with no accumulated time are pruned; empty keys disappear.
    """

    if not isinstance(raw, dict):
        return {}
    out: dict[str, list[PausedWorkEntry]] = {}
    for key, value in raw.items():
        if not key:
            continue
        values = value if isinstance(value, list) else [value]
        entries = [entry for entry in (_paused_entry(v) for v in values) if entry is not None]
        if entries:
            out[str(key)] = entries
    return out


def normalize_active_timer(raw: Any) -> ActiveFlowTimer | None:
    if not isinstance(raw, dict):
        return None
    key = _text(raw.get("key"))
    start_ms = _to_int(_pick(raw, "start", "start_ms"))
    item = _text(raw.get("item"))
    type_ = _text(raw.get("type"))
    if not key or start_ms <= 0 or not item or not type_:
        return None
    auto_stop = _to_int(_pick(raw, "autoStopAtMs", "auto_stop_at_ms"))
    return ActiveFlowTimer(
        key=key,
        start_ms=start_ms,
        base_seconds=max(0, _to_int(_pick(raw, "baseSeconds", "base_seconds"))),
        item=item,
        type=type_,
        tma=max(0, _to_int(raw.get("tma"))),
        auto_stop_at_ms=auto_stop if auto_stop > 0 else None,
        saved_at_iso=_text(raw.get("savedAtIso")) or None,
    )
