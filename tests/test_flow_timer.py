import json

import pytest

from tma_compensator.adapters.kv_store import InMemoryKeyValueStore
from tma_compensator.flow_timer import (
    BLOCKED,
    CANCELLED,
    CONTINUED,
    STARTED,
    STOPPED,
    Choice,
    DecisionKind,
    FlowState,
    FlowTimerMachine,
)
from tma_compensator.ledger import LedgerStore
from tma_compensator.paused_work import PausedWorkStore
from tma_compensator.schema import INVOLUNTARY_IDLE_KEY, ActiveFlowTimer, find_action
from tma_compensator.storage import StateStorage
from tma_compensator.time_model import Clock

SIMPLES = find_action("Sociedade Simples-conferencia")
MEI = find_action("Micro Empresario Individual-conferencia")
PAUSA = find_action("Pausa-time_tracker")


class ManualTime:
    def __init__(self, start=1_741_600_000.0):
        self.now = start

    def __call__(self):
        return self.now


def make_machine(**kwargs):
    wall = ManualTime()
    clock = Clock(time_fn=wall)
    storage = StateStorage()
    ledger = LedgerStore(storage=storage, clock=clock)
    machine = FlowTimerMachine(ledger, PausedWorkStore(storage), clock=clock, storage=storage, **kwargs)
    return machine, ledger, wall


def test_start_from_idle():
    machine, _, _ = make_machine()
    assert machine.state is FlowState.IDLE
    result = machine.request_start(SIMPLES)
    assert result.status == STARTED
    assert machine.active_key == SIMPLES.key
    assert machine.state is FlowState.RUNNING
    assert machine.active.auto_stop_at_ms is None


def test_switch_is_blocked_then_finalize_and_start():
    machine, ledger, wall = make_machine()
    machine.request_start(SIMPLES)
    wall.now += 125

    result = machine.request_start(MEI)
    assert result.blocked
    assert result.decision.kind is DecisionKind.SWITCH_TIMER
    assert machine.active_key == SIMPLES.key
    assert machine.counters["blocked_start_other"] == 1

    resolved = result.decision.resolve(Choice.FINALIZE_AND_START)
    assert resolved.status == STARTED
    assert machine.active_key == MEI.key
    assert len(ledger.transactions) == 1
    tx = ledger.transactions[0]
    assert (tx.key, tx.time_spent, tx.source) == (SIMPLES.key, 125, "flow")


def test_switch_paralyze_and_cancel():
    machine, ledger, wall = make_machine()
    machine.request_start(SIMPLES)
    wall.now += 60

    cancelled = machine.request_start(MEI).decision.resolve("cancel")
    assert cancelled.status == CANCELLED
    assert machine.active_key == SIMPLES.key

    resolved = machine.request_start(MEI).decision.resolve(Choice.PARALYZE_AND_START)
    assert resolved.status == STARTED
    assert machine.paused.latest(SIMPLES.key).accumulated_seconds == 60
    assert ledger.transactions == ()


def test_same_timer_decision():
    machine, ledger, wall = make_machine()
    machine.request_start(SIMPLES)
    result = machine.request_start(SIMPLES)
    assert result.decision.kind is DecisionKind.SAME_TIMER
    assert result.decision.resolve(Choice.CONTINUE).status == CONTINUED
    assert machine.active_key == SIMPLES.key

    wall.now += 30
    stopped = machine.request_start(SIMPLES).decision.resolve(Choice.FINALIZE)
    assert stopped.status == STOPPED
    assert machine.active is None
    assert ledger.transactions[0].time_spent == 30


def test_invalid_choice_is_rejected():
    machine, _, _ = make_machine()
    machine.request_start(SIMPLES)
    decision = machine.request_start(SIMPLES).decision
    with pytest.raises(ValueError):
        decision.resolve(Choice.START_FRESH)


def test_resume_paused_entry_carries_base_seconds():
    machine, ledger, wall = make_machine()
    machine.request_start(SIMPLES)
    wall.now += 300
    machine.stop(SIMPLES.key, finalize=False)

    result = machine.request_start(SIMPLES)
    assert result.decision.kind is DecisionKind.PAUSED_ENTRIES
    assert result.decision.context["latest_seconds"] == 300

    resumed = result.decision.resolve(Choice.RESUME_LATEST)
    assert resumed.timer.base_seconds == 300
    assert machine.paused.count(SIMPLES.key) == 0

    wall.now += 20
    outcome = machine.stop(SIMPLES.key, finalize=True)
    assert outcome.total_seconds == 320
    assert ledger.transactions[0].time_spent == 320


def test_start_fresh_keeps_paused_entry():
    machine, _, wall = make_machine()
    machine.request_start(SIMPLES)
    wall.now += 300
    machine.stop(SIMPLES.key, finalize=False)
    fresh = machine.request_start(SIMPLES).decision.resolve(Choice.START_FRESH)
    assert fresh.timer.base_seconds == 0
    assert machine.paused.count(SIMPLES.key) == 1


def test_stop_of_other_key_is_none():
    machine, _, _ = make_machine()
    assert machine.stop(SIMPLES.key, finalize=True) is None
    machine.request_start(SIMPLES)
    assert machine.stop(MEI.key, finalize=True) is None


def test_auto_stop_measures_up_to_cap():
    machine, ledger, wall = make_machine()
    machine.request_start(PAUSA)
    assert machine.active.auto_stop_at_ms == machine.active.start_ms + 15 * 60 * 1000

    wall.now += 10 * 60
    assert machine.check_auto_stop() is None

    wall.now += 10 * 60
    result = machine.check_auto_stop()
    assert result.status == STOPPED
    assert ledger.transactions[0].time_spent == 15 * 60
    assert ledger.balance_seconds == 0
    assert machine.check_auto_stop() is None


def test_caps_can_be_disabled():
    machine, _, _ = make_machine(caps_enabled=False)
    machine.request_start(PAUSA)
    assert machine.active.auto_stop_at_ms is None


def test_involuntary_idle_is_finalized_silently():
    machine, ledger, wall = make_machine()
    assert machine.start_involuntary_idle() is not None
    assert ledger.last_activity_ms is None
    wall.now += 90

    result = machine.request_start(SIMPLES)
    assert result.status == STARTED
    assert result.stopped[0].key == INVOLUNTARY_IDLE_KEY
    assert ledger.transactions[0].time_spent == 90
    assert machine.start_involuntary_idle() is None


def test_flow_mode_cannot_be_disabled_while_running():
    machine, _, _ = make_machine()
    assert machine.set_flow_mode(True)
    machine.request_start(SIMPLES)
    assert machine.set_flow_mode(False) is False
    assert machine.flow_mode_enabled
    assert machine.is_action_disabled(MEI.key)
    assert not machine.is_action_disabled(SIMPLES.key)


def test_restore_discards_unknown_timer():
    machine, _, _ = make_machine()
    machine.storage.set_active_flow_timer(
        ActiveFlowTimer("Ghost-conferencia", start_ms=1, base_seconds=0, item="Ghost", type="conferencia", tma=0)
    )
    assert machine.restore() is None
    assert machine.storage.get_active_flow_timer() is None
    assert not machine.flow_mode_enabled


def test_restore_valid_timer_forces_flow_mode():
    machine, _, _ = make_machine()
    machine.request_start(SIMPLES)

    other = FlowTimerMachine(machine.ledger, machine.paused, clock=machine.clock, storage=machine.storage)
    restored = other.restore()
    assert restored.key == SIMPLES.key
    assert other.flow_mode_enabled
    assert machine.storage.get_flag("flow_mode")


def test_resume_latest_of_legacy_entry_without_id():
    legacy = {SIMPLES.key: {"item": SIMPLES.item, "type": SIMPLES.type, "tma": 2132, "accumulatedSeconds": 600}}
    kv = InMemoryKeyValueStore({"tma_comp_paused_work_v1": json.dumps(legacy)})
    wall = ManualTime()
    clock = Clock(time_fn=wall)
    storage = StateStorage(kv)
    ledger = LedgerStore(storage=storage, clock=clock)
    machine = FlowTimerMachine(ledger, PausedWorkStore(storage), clock=clock, storage=storage)

    resumed = machine.request_start(SIMPLES).decision.resolve(Choice.RESUME_LATEST)
    assert resumed.status == STARTED
    assert resumed.timer.base_seconds == 600
    assert machine.paused.count(SIMPLES.key) == 0
