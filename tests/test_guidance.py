import math

from tma_compensator.adapters.kv_store import InMemoryKeyValueStore
from tma_compensator.guidance import (
    CONFIDENCE_BONUS_SECONDS,
    MODE_PROFILES,
    GuideMode,
    RecommendationTracker,
    avg_diff_target,
    guide_path,
    per_type_stats,
    recommend,
    score_action,
)
from tma_compensator.schema import Transaction, find_action
from tma_compensator.storage import StateStorage


def sample_transactions():
    return [
        Transaction(item="Sociedade Simples", type="conferencia", tma=2132, time_spent=2232),
        Transaction(item="Sociedade Simples", type="conferencia", tma=2132, time_spent=2252),
        Transaction(item="Micro Empresario Individual", type="conferencia", tma=1980, time_spent=1780),
        Transaction(item="Pausa", type="time_tracker", tma=0, time_spent=900),
    ]


def test_per_type_stats_skips_time_tracker():
    stats = per_type_stats(sample_transactions())
    assert set(stats) == {"Sociedade Simples-conferencia", "Micro Empresario Individual-conferencia"}
    simples = stats["Sociedade Simples-conferencia"]
    assert simples.count == 2
    assert simples.avg_diff == 110.0
    assert stats["Micro Empresario Individual-conferencia"].avg_abs_diff == 200.0


def test_avg_diff_target():
    assert avg_diff_target(-300, 5) == 60
    assert avg_diff_target(120, 4) == -30
    assert avg_diff_target(500, 0) == 0


def test_score_confidence_bonus():
    txs = [Transaction(item="Sociedade Simples", type="retorno", tma=900, time_spent=960)] * 9
    scored = score_action(find_action("Sociedade Simples-retorno"), per_type_stats(txs), 60.0, MODE_PROFILES[GuideMode.CONSERVATIVE])
    assert scored.confidence == 1.0
    assert scored.score == -CONFIDENCE_BONUS_SECONDS


def test_unknown_action_pays_penalty():
    profile = MODE_PROFILES[GuideMode.AGGRESSIVE]
    scored = score_action(find_action("Complexa-conferencia"), {}, -4.0, profile)
    assert scored.expected_diff_per_unit == 0
    assert scored.score == 4.0 + profile.unknown_penalty


def test_conservative_recommends_known_actions_only():
    rec = recommend(sample_transactions(), balance_seconds=20, remaining_units=5, mode="conservative")
    assert rec.target == -4.0
    assert rec.best.action.key == "Sociedade Simples-conferencia"
    assert math.isclose(rec.best.score, 114 - math.log10(3) * 90)
    assert [item.action.key for item in rec.alternatives] == ["Micro Empresario Individual-conferencia"]


def test_aggressive_ties_keep_catalog_order():
    rec = recommend(sample_transactions(), balance_seconds=20, remaining_units=5, mode=GuideMode.AGGRESSIVE)
    assert rec.best.action.key == "Sociedade Simples-conferencia"
    assert [item.action.key for item in rec.alternatives] == [
        "Sociedade Simples-retorno",
        "Complexa-conferencia",
        "Complexa-retorno",
    ]
    assert all(item.action.weight > 0 for item in rec.ranked)


def test_conservative_falls_back_without_history():
    rec = recommend([], balance_seconds=0, remaining_units=17)
    assert rec.best is not None
    assert rec.best.action.key == "Sociedade Simples-conferencia"
    assert len(rec.alternatives) == 3


def test_guide_path_never_exceeds_remaining_units():
    history = sample_transactions() + [Transaction(item="Complexa", type="conferencia", tma=4860, time_spent=4700)]
    for mode in GuideMode:
        for remaining in range(0, 10):
            path = guide_path(history, balance_seconds=-250, remaining_units=remaining, mode=mode)
            assert path.total_weight <= remaining
            assert len(path.steps) <= MODE_PROFILES[mode].max_steps


def test_guide_path_applies_expected_difference():
    path = guide_path(sample_transactions(), balance_seconds=-300, remaining_units=2, mode="conservative")
    assert [step.action.key for step in path.steps] == ["Sociedade Simples-conferencia", "Sociedade Simples-conferencia"]
    assert path.steps[0].balance_after == -190
    assert path.final_balance == -80


def test_guide_path_conservative_needs_history():
    path = guide_path([], balance_seconds=0, remaining_units=5, mode="conservative")
    assert path.steps == []


def test_tracker_counts_shown_once_and_followed_in_window():
    storage = StateStorage(InMemoryKeyValueStore())
    tracker = RecommendationTracker(storage)
    rec = recommend(sample_transactions(), balance_seconds=20, remaining_units=5)

    assert tracker.record_shown(rec, now_ms=1_000)
    assert not tracker.record_shown(rec, now_ms=2_000)
    assert tracker.state["shown"] == 1

    follow = Transaction(item="Sociedade Simples", type="conferencia", tma=2132, time_spent=2100)
    assert tracker.observe(follow, now_ms=2_000 + 29 * 60 * 1000)
    assert tracker.state["followed"] == 1
    assert tracker.state["per_type"]["Sociedade Simples-conferencia"] == {"shown": 1, "followed": 1}

    reloaded = RecommendationTracker(storage)
    assert reloaded.state["shown"] == 1
    assert reloaded.state["followed"] == 1


def test_tracker_ignores_late_or_other_actions():
    tracker = RecommendationTracker()
    rec = recommend(sample_transactions(), balance_seconds=20, remaining_units=5)
    tracker.record_shown(rec, now_ms=0)
    other = Transaction(item="Micro Empresario Individual", type="conferencia", tma=1980, time_spent=1900)
    late = Transaction(item="Sociedade Simples", type="conferencia", tma=2132, time_spent=2100)
    assert not tracker.observe(other, now_ms=1_000)
    assert not tracker.observe(late, now_ms=31 * 60 * 1000)
    assert tracker.state["followed"] == 0
