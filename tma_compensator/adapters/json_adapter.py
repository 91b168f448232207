"""JSON adapter for exported transaction files."""

from __future__ import annotations

import json
import math

from tma_compensator.schema import SOURCE_FLOW, SOURCE_MODAL, TRANSACTION_TYPES, Transaction

_REQUIRED_FIELDS = ("item", "type", "tma")
_VALID_SOURCES = {SOURCE_MODAL, SOURCE_FLOW}


def _seconds(value, label: str, index: int) -> int:
    try:
        number = float(value)
    except Exception as exc:  # noqa: BLE001
        raise ValueError(f"Item {index}: invalid {label}") from exc
    if not math.isfinite(number) or number < 0:
        raise ValueError(f"Item {index}: {label} must be non-negative")
    return int(number)


def _parse_item(item: dict, index: int) -> Transaction:
    if not isinstance(item, dict):
        raise ValueError(f"Item {index}: expected an object")

    missing = [field for field in _REQUIRED_FIELDS if item.get(field) in (None, "")]
    time_raw = item.get("timeSpent", item.get("time_spent"))
    if time_raw in (None, ""):
        missing.append("timeSpent")
    if missing:
        raise ValueError(f"Item {index}: missing required fields {missing}")

    type_ = str(item["type"]).strip()
    if type_ not in TRANSACTION_TYPES:
        raise ValueError(f"Item {index}: invalid type '{type_}'")

    source = str(item.get("source") or SOURCE_MODAL).strip()
    if source not in _VALID_SOURCES:
        raise ValueError(f"Item {index}: invalid source '{source}'")

    tx_id = item.get("id")
    created = item.get("createdAtIso", item.get("created_at"))
    finish = item.get("finishStatus", item.get("finish_status"))
    return Transaction(
        item=str(item["item"]).strip(),
        type=type_,
        tma=_seconds(item["tma"], "tma", index),
        time_spent=_seconds(time_raw, "timeSpent", index),
        timestamp=str(item.get("timestamp") or "").strip(),
        source=source,
        id=str(tx_id).strip() if tx_id else None,
        created_at_iso=str(created).strip() if created else None,
        finish_status=str(finish).strip() if finish else None,
    )


def parse_payload(payload) -> list[Transaction]:
    """Accept a bare list of transactions or a full export object."""

    if isinstance(payload, dict):
        payload = payload.get("transactions")
    if not isinstance(payload, list):
        raise ValueError("JSON payload must be a list of transactions or an export object")
    return [_parse_item(item, i) for i, item in enumerate(payload, start=1)]


def parse(file_path: str) -> list[Transaction]:
    """Parse JSON file into transactions."""

    with open(file_path, encoding="utf-8") as handle:
        payload = json.load(handle)
    return parse_payload(payload)
