"""Pace and projection snapshot shown next to the recommendation."""

from __future__ import annotations

import math
from typing import Iterable

import numpy as np

from tma_compensator.schema import BALANCE_MARGIN_SECONDS, DAILY_QUOTA, Transaction, quota_weight
from tma_compensator.time_model import TimeModel
from tma_compensator.timeutil import format_signed_time, seconds_to_human

DAY_PARTS = {
    "pre": ("Before shift", "Warm up with simple accounts and keep the balance near 00:00:00."),
    "post": ("After shift", ""),
    "lunch": ("Lunch", "Lunch does not count as production."),
    "early": ("Early shift", "Build rhythm on the basics; conferencia first."),
    "mid": ("Mid shift", "Steer the balance: compensate with the actions that correct it."),
    "late": ("Late shift", "Close the quota without drifting outside the margin."),
}


def day_part(now: float, model: TimeModel) -> dict:
    """Classify ``now`` as pre / post / lunch / early / mid / late."""

    if now < model.shift_start:
        key = "pre"
    elif now > model.shift_end:
        key = "post"
    elif model.lunch_start is not None and model.lunch_end is not None and model.lunch_start <= now <= model.lunch_end:
        key = "lunch"
    else:
        total = model.total_work_seconds()
        ratio = model.elapsed_work_seconds(now) / total if total > 0 else 0.0
        key = "early" if ratio < 0.33 else "mid" if ratio < 0.66 else "late"
    label, note = DAY_PARTS[key]
    return {"key": key, "label": label, "note": note}


def compute_pacing(
    transactions: Iterable[Transaction],
    balance_seconds: int,
    now: float,
    model: TimeModel,
    daily_quota: int = DAILY_QUOTA,
    balance_margin_seconds: int = BALANCE_MARGIN_SECONDS,
) -> dict:
    """Quota progress, required pace and end-of-day balance projection."""

    txs = list(transactions)
    done_units = sum(quota_weight(tx.item) for tx in txs)
    remaining_units = max(0, daily_quota - done_units)

    total_work = model.total_work_seconds()
    elapsed_work = model.elapsed_work_seconds(now)
    remaining_work = model.remaining_work_seconds(now)

    expected_done_now = min(daily_quota, math.floor(elapsed_work / total_work * daily_quota)) if total_work > 0 else 0
    hours_left = remaining_work / 3600
    pace_needed = remaining_units / hours_left if hours_left > 0 else math.inf
    current_pace = done_units / (elapsed_work / 3600) if elapsed_work > 0 else 0.0
    projected_end = round(done_units / elapsed_work * total_work) if elapsed_work > 0 and total_work > 0 else done_units

    if remaining_units > 0:
        avg_diff_target = -balance_seconds / remaining_units
        avg_diff_min = (-balance_margin_seconds - balance_seconds) / remaining_units
        avg_diff_max = (balance_margin_seconds - balance_seconds) / remaining_units
    else:
        avg_diff_target = avg_diff_min = avg_diff_max = 0.0

    diffs = np.asarray([tx.difference for tx in txs], dtype=float)
    spent = np.asarray([tx.time_spent for tx in txs], dtype=float)
    sum_diff = float(diffs.sum()) if diffs.size else 0.0
    avg_diff_so_far = sum_diff / done_units if done_units > 0 else 0.0
    predicted_end = sum_diff + avg_diff_so_far * remaining_units

    return {
        "daily_quota": daily_quota,
        "day_part": day_part(now, model),
        "done_tx": len(txs),
        "done_units": done_units,
        "remaining_units": remaining_units,
        "expected_done_now": expected_done_now,
        "quota_delta": done_units - expected_done_now,
        "pace_per_hour_needed": pace_needed,
        "budget_per_account_seconds": remaining_work / remaining_units if remaining_units > 0 and remaining_work > 0 else 0.0,
        "avg_time_spent_seconds": float(spent.sum()) / done_units if done_units > 0 and spent.size else 0.0,
        "current_pace_per_hour": current_pace,
        "projected_end_count": min(projected_end, daily_quota),
        "avg_diff_target": avg_diff_target,
        "avg_diff_min": avg_diff_min,
        "avg_diff_max": avg_diff_max,
        "avg_diff_so_far": avg_diff_so_far,
        "predicted_end": predicted_end,
        "predicted_ok": abs(predicted_end) <= balance_margin_seconds,
        "target_direction": "faster" if avg_diff_target < 0 else "slower",
        "balance_text": format_signed_time(balance_seconds),
        "remaining_work_text": seconds_to_human(remaining_work),
        "within_margin_now": abs(balance_seconds) <= balance_margin_seconds,
    }
