"""End-of-day JSON export."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from tma_compensator.timeutil import seconds_to_clock_hhmm

if TYPE_CHECKING:
    from tma_compensator.session import CompensatorSession

logger = logging.getLogger(__name__)

EXPORT_SCHEMA_VERSION = 3
APP_NAME = "TMA Compensator"


def build_export(session: "CompensatorSession", export_date: datetime | None = None) -> dict[str, Any]:
    """Versioned snapshot of settings, balance, quota, transactions and paused work."""

    exported_at = export_date or datetime.now(timezone.utc)
    shift = session.shift
    balance = session.ledger.balance_seconds
    margin = session.settings.balance_margin_seconds
    current = session.clock.now_seconds()

    return {
        "exportSchemaVersion": EXPORT_SCHEMA_VERSION,
        "exportDate": exported_at.isoformat(),
        "app": {"name": APP_NAME},
        "settings": {
            "balanceMarginSeconds": margin,
            "dailyQuota": session.settings.daily_quota,
            "shiftStartSeconds": shift.shift_start_seconds,
            "shiftEndSeconds": shift.shift_end_seconds,
            "lunchStartSeconds": shift.lunch_start_seconds,
            "lunchEndSeconds": shift.lunch_end_seconds,
            "showComplexa": session.show_complexa,
            "darkThemeEnabled": session.dark_theme,
            "flowMode": session.flow.flow_mode_enabled,
        },
        "snapshot": {
            "now": {"currentSeconds": current, "currentClock": seconds_to_clock_hhmm(current)},
            "balance": {
                "seconds": balance,
                "withinMargin": abs(balance) <= margin,
                "marginSeconds": margin,
            },
            "quota": {
                "doneTransactions": len(session.ledger.transactions),
                "doneUnits": session.ledger.quota_units_done,
                "remainingUnits": session.ledger.quota_units_remaining,
            },
        },
        "transactions": [tx.to_dict() for tx in session.ledger.transactions],
        "pausedWork": {
            key: [entry.to_dict() for entry in entries] for key, entries in session.paused.snapshot().items()
        },
    }


def export_filename(payload: dict[str, Any]) -> str:
    return f"TMA_Compensator_{str(payload['exportDate']).split('T')[0]}.json"


def write_export(payload: dict[str, Any], directory: str | Path) -> Path:
    out_dir = Path(directory)
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / export_filename(payload)
    out_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    logger.info("Saved export to %s", out_path)
    return out_path
