"""Demo script for the TMA compensator core."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from tma_compensator.config import configure_logging
from tma_compensator.schema import TIME_TRACKER_ACTIONS, find_action
from tma_compensator.session import CompensatorSession
from tma_compensator.time_model import Clock


class ManualTime:
    def __init__(self, start: float):
        self.now = start

    def __call__(self) -> float:
        return self.now


def main() -> None:
    configure_logging("WARNING")
    wall = ManualTime(1_741_600_000.0)
    clock = Clock(time_fn=wall)
    clock.set_debug_seconds(9 * 3600)

    session = CompensatorSession(clock=clock)
    session.configure_shift("08:00", "12:00", show_complexa=True)

    simples = find_action("Sociedade Simples-conferencia")
    session.submit_manual_entry(simples, "36:40")
    print("After manual entry:", session.ledger.balance_seconds, "s")

    mei = find_action("Micro Empresario Individual-conferencia")
    session.start_flow(mei)
    wall.now += 1900
    session.stop_flow(finalize=True)
    print("After flow timer:", session.ledger.balance_seconds, "s")

    pause = TIME_TRACKER_ACTIONS[0]
    session.start_flow(pause)
    wall.now += 20 * 60
    tick = session.tick()
    print("Pause auto-stopped:", bool(tick.auto_stop))

    rec = session.recommend()
    print("Recommendation:", rec.best.action.key if rec.best else None)
    print("Alternatives:", [item.action.key for item in rec.alternatives])
    print("Guide path:", [step.action.key for step in session.guide_path().steps])
    print("Pacing:", {k: v for k, v in session.pacing().items() if k in ("done_units", "remaining_units", "avg_diff_target")})


if __name__ == "__main__":
    main()
