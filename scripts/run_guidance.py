"""Print a guidance report for an exported transactions file."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from tma_compensator.adapters import csv_adapter, json_adapter
from tma_compensator.config import configure_logging
from tma_compensator.guidance import GuideMode, guide_path, per_type_stats, recommend
from tma_compensator.ledger import sum_balance
from tma_compensator.schema import DAILY_QUOTA, quota_weight


def _load_transactions(path: Path):
    suffix = path.suffix.lower()
    if suffix == ".csv":
        return csv_adapter.parse(str(path))
    if suffix == ".json":
        return json_adapter.parse(str(path))
    raise ValueError("Unsupported input format, expected .csv or .json")


def _scored(item) -> dict:
    return {
        "key": item.action.key,
        "score": round(item.score, 2),
        "expected_diff_per_unit": round(item.expected_diff_per_unit, 2),
        "confidence": round(item.confidence, 3),
        "history": item.count,
    }


def build_report(transactions, mode: str, daily_quota: int = DAILY_QUOTA) -> dict:
    balance = sum_balance(transactions)
    remaining = max(0, daily_quota - sum(quota_weight(tx.item) for tx in transactions))
    stats = per_type_stats(transactions)
    rec = recommend(transactions, balance, remaining, mode=mode, stats=stats)
    path = guide_path(transactions, balance, remaining, mode=mode, stats=stats)
    return {
        "mode": rec.mode.value,
        "n_transactions": len(transactions),
        "balance_seconds": balance,
        "remaining_units": remaining,
        "target_diff_per_unit": round(rec.target, 2),
        "best": _scored(rec.best) if rec.best else None,
        "alternatives": [_scored(item) for item in rec.alternatives],
        "guide_path": [
            {
                "key": step.action.key,
                "weight": step.weight,
                "expected_diff": round(step.expected_diff, 2),
                "balance_after": round(step.balance_after, 2),
            }
            for step in path.steps
        ],
        "stats": {key: {"count": s.count, "avg_diff": round(s.avg_diff, 2)} for key, s in sorted(stats.items())},
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Run TMA compensator guidance on a transactions file")
    parser.add_argument("--data", required=True, help="Path to CSV/JSON transactions or export file")
    parser.add_argument("--mode", choices=[mode.value for mode in GuideMode], default=GuideMode.CONSERVATIVE.value)
    parser.add_argument("--quota", type=int, default=DAILY_QUOTA, help="Daily quota in units")
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()

    configure_logging(args.log_level)
    transactions = _load_transactions(Path(args.data))
    report = build_report(transactions, args.mode, daily_quota=args.quota)

    print(json.dumps(report, indent=2, ensure_ascii=False))

    outputs_dir = Path("outputs")
    outputs_dir.mkdir(parents=True, exist_ok=True)
    out_path = outputs_dir / "guidance_report.json"
    out_path.write_text(json.dumps(report, indent=2, ensure_ascii=False), encoding="utf-8")
    print(f"Saved guidance report to {out_path}")


if __name__ == "__main__":
    main()
