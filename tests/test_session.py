import asyncio
import json

import pytest

from tma_compensator.adapters.kv_store import InMemoryKeyValueStore, JsonFileKeyValueStore
from tma_compensator.config import Settings
from tma_compensator.errors import ValidationError
from tma_compensator.export import write_export
from tma_compensator.flow_timer import BLOCKED, STARTED
from tma_compensator.schema import INVOLUNTARY_IDLE_KEY, find_action
from tma_compensator.session import CompensatorSession
from tma_compensator.time_model import Clock

SIMPLES = find_action("Sociedade Simples-conferencia")
MEI = find_action("Micro Empresario Individual-conferencia")


class ManualTime:
    def __init__(self, start=1_741_600_000.0):
        self.now = start

    def __call__(self):
        return self.now


class RecordingCloud:
    def __init__(self):
        self.settings = []
        self.inserted = []

    async def upsert_settings(self, payload):
        self.settings.append(payload)

    async def insert_transaction(self, tx):
        self.inserted.append(tx)
        return None

    async def delete_transaction(self, tx_id):
        return None


def make_session(kv=None, cloud=None, at_seconds=9 * 3600):
    wall = ManualTime()
    clock = Clock(time_fn=wall)
    clock.set_debug_seconds(at_seconds)
    return CompensatorSession(kv=kv, clock=clock, cloud=cloud), wall


def test_configure_shift_limits():
    session, _ = make_session()
    with pytest.raises(ValidationError, match="14:12"):
        session.configure_shift("14:13", "18:00")
    with pytest.raises(ValidationError):
        session.configure_shift("8h", "12:00")
    with pytest.raises(ValidationError):
        session.configure_shift("08:00", "25:00")

    shift = session.configure_shift("14:12", "18:00", show_complexa=True)
    assert shift.shift_end_seconds == 24 * 3600
    assert (shift.lunch_start_seconds, shift.lunch_end_seconds) == (64800, 68400)
    assert session.show_complexa
    assert not session.needs_onboarding


def test_empty_shift_start_uses_default():
    session, _ = make_session()
    shift = session.configure_shift("", "12:00")
    assert shift.shift_start_seconds == 8 * 3600
    assert session.storage.get_shift_start_or_none() == 8 * 3600


def test_manual_entry_records_difference():
    session, _ = make_session()
    tx = session.submit_manual_entry(SIMPLES, "36:40")
    assert tx.time_spent == 2200
    assert tx.difference == 68
    assert tx.credited_minutes == 1
    assert tx.finish_status == "concluida"
    assert session.ledger.balance_seconds == 68


def test_malformed_manual_entry_changes_nothing():
    session, _ = make_session()
    with pytest.raises(ValidationError):
        session.submit_manual_entry(SIMPLES, "36m40")
    assert session.ledger.transactions == ()


def test_resumed_entry_total_cannot_shrink():
    session, _ = make_session()
    entry_id = session.paralyze_manual_entry(SIMPLES, "10:00")
    with pytest.raises(ValidationError):
        session.submit_manual_entry(SIMPLES, "09:59", resume_entry_id=entry_id)
    assert session.paused.get(SIMPLES.key, entry_id).accumulated_seconds == 600


def test_resumed_entry_with_empty_time_uses_paused_seconds():
    session, _ = make_session()
    entry_id = session.paralyze_manual_entry(SIMPLES, "10:00")
    tx = session.submit_manual_entry(SIMPLES, "", resume_entry_id=entry_id)
    assert tx.time_spent == 600
    assert session.paused.count(SIMPLES.key) == 0


def test_paralyze_new_entry_requires_time():
    session, _ = make_session()
    with pytest.raises(ValidationError):
        session.paralyze_manual_entry(SIMPLES, "")
    entry_id = session.paralyze_manual_entry(SIMPLES, "05:00")
    assert session.paralyze_manual_entry(SIMPLES, "", resume_entry_id=entry_id) == entry_id
    assert session.paralyze_manual_entry(SIMPLES, "07:00", resume_entry_id=entry_id) == entry_id
    assert session.paused.get(SIMPLES.key, entry_id).accumulated_seconds == 420


def test_flow_switch_through_session():
    session, wall = make_session()
    assert session.start_flow(SIMPLES).status == STARTED
    assert session.flow.flow_mode_enabled
    wall.now += 2000

    blocked = session.start_flow(MEI)
    assert blocked.status == BLOCKED
    resolved = session.resolve(blocked, "finalize_and_start")
    assert resolved.status == STARTED
    assert session.ledger.transactions[0].time_spent == 2000

    wall.now += 100
    outcome = session.stop_flow(finalize=False)
    assert outcome.paused_entry_id
    assert session.stop_flow(finalize=True) is None
    assert session.set_flow_mode(False)


def test_tick_warns_then_starts_involuntary_idle():
    warnings = []
    session, wall = make_session()
    session.on_idle_warning = warnings.append
    session.set_time_tracker_mode(True)

    wall.now += 215
    assert session.tick().idle_warning_seconds == 25
    wall.now += 5
    assert session.tick().idle_warning_seconds is None
    assert warnings == [25]

    wall.now += 25
    result = session.tick()
    assert result.idle_started is not None
    assert session.flow.active_key == INVOLUNTARY_IDLE_KEY

    wall.now += 60
    session.submit_manual_entry(SIMPLES, "30:00")
    assert session.flow.active is None
    assert [tx.key for tx in session.ledger.transactions] == [SIMPLES.key, INVOLUNTARY_IDLE_KEY]
    assert session.ledger.transactions[1].time_spent == 60


def test_tick_does_nothing_outside_shift():
    session, wall = make_session(at_seconds=6 * 3600)
    session.set_time_tracker_mode(True)
    wall.now += 600
    assert session.tick().idle_started is None
    assert session.flow.active is None


def test_leaving_time_tracker_mode_ends_idle():
    session, wall = make_session()
    session.set_time_tracker_mode(True)
    wall.now += 300
    session.tick()
    session.set_time_tracker_mode(False)
    assert session.flow.active is None
    assert session.ledger.transactions[0].key == INVOLUNTARY_IDLE_KEY


def test_recommendation_followed_is_counted():
    session, _ = make_session()
    session.submit_manual_entry(SIMPLES, "36:40")
    rec = session.recommend()
    assert rec.best.action.key == SIMPLES.key
    assert all(item.action.item != "Complexa" for item in rec.ranked)

    tx = session.submit_manual_entry(SIMPLES, "35:00")
    assert tx.assistant == {"recommendedKey": SIMPLES.key, "target": rec.target}
    assert session.tracker.state["followed"] == 1


def test_pacing_and_guide_path():
    session, _ = make_session()
    session.configure_shift("08:00", "12:00")
    session.submit_manual_entry(SIMPLES, "36:40")
    assert session.pacing()["done_units"] == 1
    assert session.guide_path().total_weight <= session.ledger.quota_units_remaining


def test_export_snapshot(tmp_path):
    session, _ = make_session()
    session.configure_shift("08:00", "12:00", show_complexa=True)
    session.submit_manual_entry(SIMPLES, "36:40")
    session.paralyze_manual_entry(MEI, "12")

    payload = session.export_snapshot()
    assert payload["exportSchemaVersion"] == 3
    assert payload["settings"]["lunchStartSeconds"] == 12 * 3600
    assert payload["snapshot"]["balance"] == {"seconds": 68, "withinMargin": True, "marginSeconds": 600}
    assert payload["snapshot"]["quota"]["doneTransactions"] == 1
    assert payload["pausedWork"][MEI.key][0]["accumulatedSeconds"] == 720

    path = write_export(payload, tmp_path)
    assert path.name.startswith("TMA_Compensator_")
    assert json.loads(path.read_text(encoding="utf-8"))["transactions"][0]["timeSpent"] == 2200


def test_cloud_settings_apply_without_echo():
    cloud = RecordingCloud()
    session, _ = make_session(cloud=cloud)
    session.apply_cloud_settings(
        {
            "shift_start_seconds": 99999,
            "lunch_start_seconds": 45000,
            "lunch_end_seconds": 48600,
            "show_complexa": True,
            "dark_theme_enabled": True,
            "lunch_style_enabled": False,
        }
    )
    assert session.shift.shift_start_seconds == 24 * 3600 - Settings().shift_total_seconds
    assert session.show_complexa and session.dark_theme
    assert not session.lunch_style_enabled
    assert not session.sync.has_pending_work

    session.configure_shift("08:00", "12:00")
    asyncio.run(session.sync.flush())
    assert cloud.settings[-1]["lunch_start_seconds"] == 12 * 3600


def test_state_survives_new_session(tmp_path):
    kv = JsonFileKeyValueStore(tmp_path / "state.json")
    first, _ = make_session(kv=kv)
    first.configure_shift("09:00", "13:00", show_complexa=True)
    first.submit_manual_entry(SIMPLES, "36:40")
    first.start_flow(MEI)

    second, _ = make_session(kv=JsonFileKeyValueStore(tmp_path / "state.json"))
    assert second.ledger.balance_seconds == 68
    assert second.shift.shift_start_seconds == 9 * 3600
    assert second.show_complexa
    assert second.flow.active_key == MEI.key
    assert second.flow.flow_mode_enabled


def test_reset_clears_the_day():
    session, _ = make_session()
    session.configure_shift("08:00", "12:00")
    session.submit_manual_entry(SIMPLES, "36:40")
    session.paralyze_manual_entry(MEI, "12")
    session.start_flow(SIMPLES)
    session.reset()
    assert session.ledger.transactions == ()
    assert session.ledger.balance_seconds == 0
    assert session.paused.snapshot() == {}
    assert session.flow.active is None
    assert session.shift.lunch_start_seconds == 12 * 3600


class ConfirmingCloud(RecordingCloud):
    async def insert_transaction(self, tx):
        self.inserted.append(tx)
        return {**tx.to_dict(), "id": f"row-{len(self.inserted)}"}


def test_manual_resume_of_legacy_entry_without_id():
    legacy = {SIMPLES.key: {"item": SIMPLES.item, "type": SIMPLES.type, "tma": 2132, "accumulatedSeconds": 600}}
    kv = InMemoryKeyValueStore({"tma_comp_paused_work_v1": json.dumps(legacy)})
    session, _ = make_session(kv=kv)

    entry_id = session.paused.latest(SIMPLES.key).id
    assert session.paused.latest(SIMPLES.key).id == entry_id

    tx = session.submit_manual_entry(SIMPLES, "", resume_entry_id=entry_id)
    assert tx.time_spent == 600
    assert session.paused.count(SIMPLES.key) == 0


def test_tick_uploads_queued_cloud_calls():
    cloud = ConfirmingCloud()
    session, _ = make_session(cloud=cloud)
    session.submit_manual_entry(SIMPLES, "36:40")
    assert session.sync.has_pending_work

    session.tick()
    assert not session.sync.has_pending_work
    assert [tx.item for tx in cloud.inserted] == [SIMPLES.item]
    assert session.ledger.transactions[0].id == "row-1"
    assert session.ledger.balance_seconds == 68


def test_reset_discards_queued_cloud_calls():
    cloud = RecordingCloud()
    session, _ = make_session(cloud=cloud)
    session.submit_manual_entry(SIMPLES, "36:40")
    session.reset()
    assert not session.sync.has_pending_work
    assert not session.sync.pending
    session.tick()
    assert cloud.inserted == []
