"""Streamlit demo UI for the TMA compensator."""

from __future__ import annotations

import tempfile
from collections import Counter
from pathlib import Path
from typing import Any

from tma_compensator.adapters import csv_adapter, json_adapter
from tma_compensator.guidance import GuideMode, guide_path, per_type_stats, recommend
from tma_compensator.ledger import sum_balance
from tma_compensator.pacing import compute_pacing
from tma_compensator.schema import DAILY_QUOTA, ShiftConfig, quota_weight
from tma_compensator.time_model import TimeModel
from tma_compensator.timeutil import format_signed_time, parse_clock_hhmm

DEMO_EXPORT = "examples/sample_export.json"


def _parse_transactions_from_path(file_path: str) -> list:
    suffix = Path(file_path).suffix.lower()
    if suffix == ".csv":
        return csv_adapter.parse(file_path)
    if suffix == ".json":
        return json_adapter.parse(file_path)
    raise ValueError("Unsupported file type. Please use .csv or .json")


def _parse_uploaded(uploaded_file) -> list:
    suffix = Path(uploaded_file.name).suffix.lower()
    with tempfile.NamedTemporaryFile(delete=False, suffix=suffix) as handle:
        handle.write(uploaded_file.getbuffer())
        temp_path = handle.name
    return _parse_transactions_from_path(temp_path)


def _build_summary(transactions: list) -> dict[str, Any]:
    type_counts = Counter(tx.type for tx in transactions)
    return {
        "total_transactions": len(transactions),
        "quota_units": sum(quota_weight(tx.item) for tx in transactions),
        "type_counts": dict(type_counts),
        "flow_share_pct": (
            sum(1 for tx in transactions if tx.source == "flow") / len(transactions) * 100.0 if transactions else 0.0
        ),
    }


def run_engine(transactions: list, day: dict) -> dict[str, Any]:
    """Run guidance and pacing over ``transactions`` and return a UI-friendly payload."""

    shift = ShiftConfig(
        shift_start_seconds=day["shift_start"],
        lunch_start_seconds=day["lunch_start"],
        lunch_end_seconds=day["lunch_start"] + 3600,
        daily_quota=day["daily_quota"],
    )
    balance = sum_balance(transactions)
    summary = _build_summary(transactions)
    remaining = max(0, shift.daily_quota - summary["quota_units"])
    stats = per_type_stats(transactions)

    rec = recommend(transactions, balance, remaining, mode=day["mode"], stats=stats)
    path = guide_path(transactions, balance, remaining, mode=day["mode"], stats=stats)
    pacing = compute_pacing(
        transactions,
        balance,
        day["now"],
        TimeModel.from_config(shift),
        daily_quota=shift.daily_quota,
    )
    return {
        "summary": summary,
        "balance_seconds": balance,
        "balance_text": format_signed_time(balance),
        "remaining_units": remaining,
        "recommendation": rec,
        "guide_path": path,
        "pacing": pacing,
        "stats": stats,
    }


def main() -> None:
    import streamlit as st

    st.set_page_config(page_title="TMA Compensator Demo", layout="wide")
    st.title("TMA Compensator: Streamlit Demo")

    with st.sidebar:
        st.header("Controls")
        uploaded = st.file_uploader("Upload transactions or export", type=["csv", "json"])
        use_demo = st.checkbox("Load demo export", value=True)
        mode = st.selectbox("Guide mode", options=[m.value for m in GuideMode], index=0)
        shift_start = st.text_input("Shift start (HH:MM)", value="08:00")
        lunch_start = st.text_input("Lunch start (HH:MM)", value="12:00")
        now_clock = st.text_input("Current time (HH:MM)", value="13:50")
        daily_quota = st.number_input("Daily quota", min_value=1, max_value=40, value=DAILY_QUOTA, step=1)
        run = st.button("Run engine", type="primary")

    if not run:
        st.info("Configure inputs in the sidebar and click **Run engine**.")
        return

    try:
        if use_demo:
            transactions = json_adapter.parse(DEMO_EXPORT)
            data_source = f"demo export ({DEMO_EXPORT})"
        elif uploaded is not None:
            transactions = _parse_uploaded(uploaded)
            data_source = f"uploaded file ({uploaded.name})"
        else:
            st.error("Please upload a CSV/JSON file or enable 'Load demo export'.")
            return

        clocks = {name: parse_clock_hhmm(value) for name, value in (("shift", shift_start), ("lunch", lunch_start), ("now", now_clock))}
        invalid = [name for name, value in clocks.items() if value is None]
        if invalid:
            st.error(f"Invalid time for: {', '.join(invalid)}. Use HH:MM.")
            return

        day = {
            "shift_start": clocks["shift"],
            "lunch_start": clocks["lunch"],
            "now": clocks["now"],
            "daily_quota": int(daily_quota),
            "mode": mode,
        }
        result = run_engine(transactions, day)

        st.success(f"Loaded {len(transactions)} transactions from {data_source}.")

        st.subheader("A) Day Summary")
        summary = result["summary"]
        c1, c2, c3, c4 = st.columns(4)
        c1.metric("Transactions", summary["total_transactions"])
        c2.metric("Quota units", f"{summary['quota_units']} / {day['daily_quota']}")
        c3.metric("Balance", result["balance_text"])
        c4.metric("Flow share", f"{summary['flow_share_pct']:.1f}%")
        st.table([summary["type_counts"]])

        st.subheader("B) Recommendation")
        rec = result["recommendation"]
        if rec.best is None:
            st.write("No recommendation available.")
        else:
            r1, r2 = st.columns(2)
            r1.metric("Next action", rec.best.action.key)
            r2.metric("Target diff per unit", f"{rec.target:+.0f}s")
            st.table(
                [
                    {"key": item.action.key, "score": round(item.score, 1), "history": item.count}
                    for item in [rec.best, *rec.alternatives]
                ]
            )

        st.subheader("C) Guide Path")
        steps = result["guide_path"].steps
        st.write(" → ".join(step.action.key for step in steps) if steps else "No path available.")

        st.subheader("D) Pacing")
        pacing = result["pacing"]
        p1, p2, p3 = st.columns(3)
        p1.metric("Day part", pacing["day_part"]["label"])
        p2.metric("Expected done now", pacing["expected_done_now"])
        p3.metric("Predicted end balance", format_signed_time(pacing["predicted_end"]))
        if pacing["day_part"]["note"]:
            st.caption(pacing["day_part"]["note"])

    except ValueError as exc:
        st.error(f"Input error: {exc}")
    except Exception:
        st.error("Something went wrong while running the demo. Please verify the input format.")


if __name__ == "__main__":
    main()
