"""Recommendation engine steering the balance back toward zero.

Per-type history statistics feed a simple distance score: how far the
expected per-unit difference of an action is from the per-unit correction the
balance still needs, minus a confidence bonus for well-known actions, plus a
penalty for actions without history. Lower scores are better.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

import numpy as np

from tma_compensator.schema import DEFAULT_ACCOUNT_CATALOG, AccountAction, Transaction
from tma_compensator.storage import StateStorage

logger = logging.getLogger(__name__)

CONFIDENCE_BONUS_SECONDS = 90.0
FOLLOW_WINDOW_MS = 30 * 60 * 1000
ALTERNATIVES_COUNT = 3


class GuideMode(str, Enum):
    CONSERVATIVE = "conservative"
    AGGRESSIVE = "aggressive"


@dataclass(frozen=True)
class ModeProfile:
    max_steps: int
    unknown_penalty: float
    min_history_count: int

    @property
    def requires_history(self) -> bool:
        return self.min_history_count > 0


MODE_PROFILES: dict[GuideMode, ModeProfile] = {
    GuideMode.CONSERVATIVE: ModeProfile(max_steps=4, unknown_penalty=900.0, min_history_count=1),
    GuideMode.AGGRESSIVE: ModeProfile(max_steps=8, unknown_penalty=120.0, min_history_count=0),
}


@dataclass(frozen=True)
class TypeStats:
    key: str
    count: int
    avg_diff: float
    avg_abs_diff: float


def per_type_stats(transactions: Iterable[Transaction]) -> dict[str, TypeStats]:
    """Count and mean (absolute) difference per ``item-type`` key, time-tracker excluded."""

    diffs: dict[str, list[int]] = defaultdict(list)
    for tx in transactions:
        if tx.is_time_tracker:
            continue
        diffs[tx.key].append(tx.difference)

    stats = {}
    for key, values in diffs.items():
        arr = np.asarray(values, dtype=float)
        stats[key] = TypeStats(
            key=key,
            count=int(arr.size),
            avg_diff=float(np.mean(arr)),
            avg_abs_diff=float(np.mean(np.abs(arr))),
        )
    return stats


def avg_diff_target(balance_seconds: float, remaining_units: int) -> float:
    """Per-unit difference needed to land the balance on zero after ``remaining_units``."""

    if remaining_units <= 0:
        return 0.0
    return -float(balance_seconds) / remaining_units


@dataclass(frozen=True)
class ScoredAction:
    action: AccountAction
    score: float
    distance: float
    confidence: float
    expected_diff_per_unit: float
    expected_diff_total: float
    weight: int
    count: int

    @property
    def has_history(self) -> bool:
        return self.count > 0


def score_action(
    action: AccountAction,
    stats: dict[str, TypeStats],
    target: float,
    profile: ModeProfile,
) -> ScoredAction:
    weight = action.weight
    history = stats.get(action.key)
    has_history = history is not None and history.count > 0

    expected_total = history.avg_diff if has_history else 0.0
    expected_per_unit = expected_total / weight if has_history else 0.0
    distance = abs(expected_per_unit - target)
    confidence = min(1.0, float(np.log10(1 + history.count))) if has_history else 0.0
    penalty = 0.0 if has_history else profile.unknown_penalty

    return ScoredAction(
        action=action,
        score=distance - confidence * CONFIDENCE_BONUS_SECONDS + penalty,
        distance=distance,
        confidence=confidence,
        expected_diff_per_unit=expected_per_unit,
        expected_diff_total=expected_total,
        weight=weight,
        count=history.count if has_history else 0,
    )


def _weighted(catalog: Iterable[AccountAction]) -> list[AccountAction]:
    return [action for action in catalog if action.weight > 0]


def rank_actions(
    catalog: Iterable[AccountAction],
    stats: dict[str, TypeStats],
    target: float,
    profile: ModeProfile,
) -> list[ScoredAction]:
    """Score quota-bearing actions, honouring the history filter when it leaves anything."""

    candidates = _weighted(catalog)
    if profile.requires_history:
        known = [a for a in candidates if a.key in stats and stats[a.key].count >= profile.min_history_count]
        if known:
            candidates = known
    scored = [score_action(action, stats, target, profile) for action in candidates]
    return sorted(scored, key=lambda item: item.score)


@dataclass
class Recommendation:
    mode: GuideMode
    balance_seconds: int
    remaining_units: int
    target: float
    best: Optional[ScoredAction]
    alternatives: list[ScoredAction] = field(default_factory=list)
    ranked: list[ScoredAction] = field(default_factory=list)

    @property
    def signature(self) -> str | None:
        if self.best is None:
            return None
        return f"{self.mode.value}|{self.best.action.key}|{self.remaining_units}|{round(self.target)}"


def recommend(
    transactions: Iterable[Transaction],
    balance_seconds: int,
    remaining_units: int,
    mode: GuideMode | str = GuideMode.CONSERVATIVE,
    catalog: Iterable[AccountAction] = DEFAULT_ACCOUNT_CATALOG,
    stats: dict[str, TypeStats] | None = None,
) -> Recommendation:
    """Single-shot recommendation: best action plus the next three alternatives."""

    guide_mode = GuideMode(mode)
    profile = MODE_PROFILES[guide_mode]
    history = stats if stats is not None else per_type_stats(transactions)
    target = avg_diff_target(balance_seconds, remaining_units)
    ranked = rank_actions(catalog, history, target, profile)
    return Recommendation(
        mode=guide_mode,
        balance_seconds=int(balance_seconds),
        remaining_units=int(remaining_units),
        target=target,
        best=ranked[0] if ranked else None,
        alternatives=ranked[1 : 1 + ALTERNATIVES_COUNT],
        ranked=ranked,
    )


@dataclass(frozen=True)
class GuideStep:
    action: AccountAction
    weight: int
    score: float
    target: float
    expected_diff: float
    balance_after: float
    remaining_units_after: int


@dataclass
class GuidePath:
    mode: GuideMode
    start_balance: int
    start_units: int
    steps: list[GuideStep]
    final_balance: float

    @property
    def total_weight(self) -> int:
        return sum(step.weight for step in self.steps)


def guide_path(
    transactions: Iterable[Transaction],
    balance_seconds: int,
    remaining_units: int,
    mode: GuideMode | str = GuideMode.CONSERVATIVE,
    catalog: Iterable[AccountAction] = DEFAULT_ACCOUNT_CATALOG,
    stats: dict[str, TypeStats] | None = None,
) -> GuidePath:
    """Simulate up to ``max_steps`` greedy picks; advisory only.

    Actions heavier than the units left are never picked, so the summed
    weight of the path never exceeds ``remaining_units``.
    """

    guide_mode = GuideMode(mode)
    profile = MODE_PROFILES[guide_mode]
    history = stats if stats is not None else per_type_stats(transactions)
    actions = _weighted(catalog)

    balance = float(balance_seconds)
    units = max(0, int(remaining_units))
    steps: list[GuideStep] = []

    for _ in range(profile.max_steps):
        if units <= 0:
            break
        eligible = [a for a in actions if a.weight <= units]
        if profile.requires_history:
            eligible = [
                a for a in eligible if a.key in history and history[a.key].count >= profile.min_history_count
            ]
        if not eligible:
            break

        target = avg_diff_target(balance, units)
        best = min(
            (score_action(action, history, target, profile) for action in eligible),
            key=lambda item: item.score,
        )
        balance += best.expected_diff_total
        units -= best.weight
        steps.append(
            GuideStep(
                action=best.action,
                weight=best.weight,
                score=best.score,
                target=target,
                expected_diff=best.expected_diff_total,
                balance_after=balance,
                remaining_units_after=units,
            )
        )

    return GuidePath(
        mode=guide_mode,
        start_balance=int(balance_seconds),
        start_units=int(remaining_units),
        steps=steps,
        final_balance=balance,
    )


class RecommendationTracker:
    """Counts shown and followed recommendations; never influences scoring."""

    def __init__(self, storage: StateStorage | None = None):
        self.storage = storage
        saved = storage.get_analytics().get("assistant", {}) if storage is not None else {}
        self.state = {
            "shown": int(saved.get("shown", 0) or 0),
            "followed": int(saved.get("followed", 0) or 0),
            "per_type": dict(saved.get("per_type", {}) or {}),
            "last_signature": saved.get("last_signature"),
            "last_key": saved.get("last_key"),
            "last_shown_at_ms": saved.get("last_shown_at_ms"),
            "last_target": saved.get("last_target"),
        }

    def _bump(self, key: str, field_name: str) -> None:
        per_type = self.state["per_type"].setdefault(key, {"shown": 0, "followed": 0})
        per_type[field_name] = int(per_type.get(field_name, 0)) + 1

    def _save(self) -> None:
        if self.storage is None:
            return
        analytics = self.storage.get_analytics()
        analytics["assistant"] = self.state
        self.storage.set_analytics(analytics)

    def record_shown(self, recommendation: Recommendation, now_ms: int) -> bool:
        """Remember the top pick; counted once per distinct recommendation."""

        signature = recommendation.signature
        if signature is None or recommendation.best is None:
            return False
        key = recommendation.best.action.key
        self.state["last_key"] = key
        self.state["last_shown_at_ms"] = int(now_ms)
        self.state["last_target"] = recommendation.target
        if signature == self.state["last_signature"]:
            self._save()
            return False
        self.state["last_signature"] = signature
        self.state["shown"] += 1
        self._bump(key, "shown")
        self._save()
        return True

    def observe(self, tx: Transaction, now_ms: int) -> bool:
        """Mark ``tx`` as followed when it matches the last top pick shown within 30 minutes."""

        key = self.state.get("last_key")
        shown_at = self.state.get("last_shown_at_ms")
        if not key or shown_at is None or tx.key != key:
            return False
        if not 0 <= int(now_ms) - int(shown_at) <= FOLLOW_WINDOW_MS:
            return False
        self.state["followed"] += 1
        self._bump(key, "followed")
        self.state["last_key"] = None
        self._save()
        logger.debug("Recommendation %s followed", key)
        return True

    def reset(self) -> None:
        self.state.update(
            shown=0, followed=0, per_type={}, last_signature=None, last_key=None, last_shown_at_ms=None, last_target=None
        )
        self._save()
