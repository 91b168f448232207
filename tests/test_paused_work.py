import json

import pytest

from tma_compensator.adapters.kv_store import InMemoryKeyValueStore
from tma_compensator.paused_work import PausedWorkStore
from tma_compensator.storage import StateStorage

KEY = "Sociedade Simples-conferencia"


def make_store():
    return PausedWorkStore(StateStorage())


def test_push_and_latest():
    store = make_store()
    first = store.push(KEY, "Sociedade Simples", "conferencia", 2132, 300)
    second = store.push(KEY, "Sociedade Simples", "conferencia", 2132, 120)
    assert first and second and first != second
    assert store.count(KEY) == 2
    assert store.latest(KEY).id == second
    assert store.total_seconds() == 420


def test_push_rejects_empty_time():
    store = make_store()
    assert store.push(KEY, "Sociedade Simples", "conferencia", 2132, 0) is None
    assert store.push(KEY, "", "conferencia", 2132, 10) is None
    assert store.count(KEY) == 0


def test_pop_latest_and_by_id():
    store = make_store()
    first = store.push(KEY, "Sociedade Simples", "conferencia", 2132, 300)
    second = store.push(KEY, "Sociedade Simples", "conferencia", 2132, 120)
    assert store.pop(KEY, first).id == first
    assert store.pop(KEY, "missing") is None
    assert store.pop(KEY).id == second
    assert KEY not in store.snapshot()
    assert store.pop(KEY) is None


def test_update_merges_and_validates_fields():
    store = make_store()
    entry_id = store.push(KEY, "Sociedade Simples", "conferencia", 2132, 300)
    assert store.update(KEY, entry_id, accumulated_seconds=450)
    assert store.get(KEY, entry_id).accumulated_seconds == 450
    assert not store.update(KEY, "missing", accumulated_seconds=1)
    with pytest.raises(ValueError):
        store.update(KEY, entry_id, id="other")


def test_sorted_entries_newest_first():
    raw = {
        "A-conferencia": [{"id": "a", "item": "A", "type": "conferencia", "accumulatedSeconds": 5, "updatedAtIso": "2025-03-10T10:00:00+00:00"}],
        "B-retorno": [{"id": "b", "item": "B", "type": "retorno", "accumulatedSeconds": 7, "updatedAtIso": "2025-03-10T11:00:00+00:00"}],
    }
    store = PausedWorkStore(StateStorage(InMemoryKeyValueStore({"tma_comp_paused_work_v1": json.dumps(raw)})))
    assert [entry.id for _, entry in store.sorted_entries()] == ["b", "a"]
