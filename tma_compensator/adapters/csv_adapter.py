"""CSV adapter for transaction logs."""

from __future__ import annotations

import csv
from typing import Iterable

from tma_compensator.schema import SOURCE_FLOW, SOURCE_MODAL, TRANSACTION_TYPES, Transaction

_REQUIRED_FIELDS = ("item", "type", "tma", "time_spent")
_VALID_SOURCES = {SOURCE_MODAL, SOURCE_FLOW}

FIELDNAMES = [
    "id",
    "item",
    "type",
    "tma",
    "time_spent",
    "difference",
    "credited_minutes",
    "timestamp",
    "source",
    "created_at",
    "finish_status",
]


def _seconds(raw: str, label: str, row_number: int) -> int:
    try:
        value = int(float(raw))
    except Exception as exc:  # noqa: BLE001
        raise ValueError(f"Row {row_number}: invalid {label}") from exc
    if value < 0:
        raise ValueError(f"Row {row_number}: {label} must be non-negative")
    return value


def _parse_row(row: dict, row_number: int) -> Transaction:
    missing = [field for field in _REQUIRED_FIELDS if not (row.get(field) or "").strip()]
    if missing:
        raise ValueError(f"Row {row_number}: missing required fields {missing}")

    type_ = row["type"].strip()
    if type_ not in TRANSACTION_TYPES:
        raise ValueError(f"Row {row_number}: invalid type '{type_}'")

    source = (row.get("source") or "").strip() or SOURCE_MODAL
    if source not in _VALID_SOURCES:
        raise ValueError(f"Row {row_number}: invalid source '{source}'")

    return Transaction(
        item=row["item"].strip(),
        type=type_,
        tma=_seconds(row["tma"], "tma", row_number),
        time_spent=_seconds(row["time_spent"], "time_spent", row_number),
        timestamp=(row.get("timestamp") or "").strip(),
        source=source,
        id=(row.get("id") or "").strip() or None,
        created_at_iso=(row.get("created_at") or "").strip() or None,
        finish_status=(row.get("finish_status") or "").strip() or None,
    )


def parse(file_path: str) -> list[Transaction]:
    """Parse CSV file into a list of transactions; derived columns are ignored."""

    with open(file_path, newline="", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        if not reader.fieldnames:
            return []

        transactions: list[Transaction] = []
        for row_number, row in enumerate(reader, start=2):
            transactions.append(_parse_row(row, row_number))
        return transactions


def write(file_path: str, transactions: Iterable[Transaction]) -> int:
    """Write transactions as CSV; returns the number of rows written."""

    count = 0
    with open(file_path, "w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=FIELDNAMES)
        writer.writeheader()
        for tx in transactions:
            writer.writerow(
                {
                    "id": tx.id or "",
                    "item": tx.item,
                    "type": tx.type,
                    "tma": tx.tma,
                    "time_spent": tx.time_spent,
                    "difference": tx.difference,
                    "credited_minutes": tx.credited_minutes,
                    "timestamp": tx.timestamp,
                    "source": tx.source,
                    "created_at": tx.created_at_iso or "",
                    "finish_status": tx.finish_status or "",
                }
            )
            count += 1
    return count
