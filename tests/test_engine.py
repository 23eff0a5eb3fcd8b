from __future__ import annotations

import asyncio
import math

import httpx
import pytest

from backend.config import GameConfig
from backend.engine import (
    CashedOut,
    Crashed,
    InsufficientBalance,
    Phase,
    RoundEngine,
    RoundInProgress,
)
from backend.entropy import Draw, EntropySource
from backend.utils_fair import time_to_multiplier

DT = 1 / 30


def start(engine: RoundEngine) -> bool:
    return asyncio.run(engine.request_start())


def record(engine: RoundEngine) -> list:
    events = []
    engine.subscribe(events.append)
    return events


def settled(events: list) -> list:
    return [e for e in events if e.kind == "round_settled"]


def test_start_debits_wager_and_enters_running(make_engine, clock) -> None:
    engine = make_engine(12320)
    events = record(engine)

    assert start(engine) is True

    assert engine.phase is Phase.RUNNING
    assert engine.balance == 90
    assert engine.multiplier == 1.0
    assert engine.generation == 1
    assert [e.data["phase"] for e in events if e.kind == "state_changed"] == ["FETCHING_ENTROPY", "RUNNING"]
    assert math.isclose(engine.state.crash_multiplier, 0.94 * 65536 / 12321)


def test_fast_entropy_is_floored_to_minimum_fetch_time(make_engine, clock) -> None:
    engine = make_engine(0, min_fetch_seconds=0.6)
    start(engine)
    assert clock.sleeps == [pytest.approx(0.6)]


def test_slow_entropy_is_not_delayed_further(make_engine, clock) -> None:
    class SlowEntropy:
        async def draw(self) -> Draw:
            clock.now += 1.5
            return Draw(0, True)

    engine = make_engine(entropy=SlowEntropy(), min_fetch_seconds=0.6)
    start(engine)
    assert clock.sleeps == []
    assert engine.phase is Phase.RUNNING


def test_start_rejected_when_balance_too_low(make_engine) -> None:
    engine = make_engine(0, starting_balance=5)
    events = record(engine)

    with pytest.raises(InsufficientBalance):
        start(engine)

    assert engine.phase is Phase.IDLE
    assert engine.balance == 5
    assert events == []


def test_start_rejected_while_round_live(make_engine) -> None:
    engine = make_engine(0)
    start(engine)
    with pytest.raises(RoundInProgress):
        start(engine)
    assert engine.balance == 90


def test_scenario_crash_at_cap_without_cash_out(make_engine) -> None:
    engine = make_engine(0)
    events = record(engine)
    start(engine)
    assert engine.state.crash_multiplier == 25.0

    frames = 0
    while engine.phase is Phase.RUNNING:
        engine.update(DT)
        frames += 1
        assert frames < 10_000

    t_crash = time_to_multiplier(25.0, engine.k)
    assert frames * DT > t_crash - 1e-6
    assert (frames - 1) * DT < t_crash + 1e-6
    assert engine.phase is Phase.CRASHED
    assert engine.multiplier == 25.0
    assert engine.balance == 90
    [event] = settled(events)
    assert event.data["outcome"] == "crashed"
    assert event.data["payout"] == 0.0


def test_scenario_cash_out_at_two(make_engine) -> None:
    engine = make_engine(12320)
    start(engine)

    engine.update(time_to_multiplier(2.0, engine.k))
    outcome = engine.request_cash_out()

    assert isinstance(outcome, CashedOut)
    assert outcome.multiplier == pytest.approx(2.0)
    assert outcome.payout == pytest.approx(20.0)
    assert engine.balance == pytest.approx(110.0)
    assert engine.phase is Phase.CASHED_OUT
    assert engine.history[0].crash_multiplier == pytest.approx(5.0, abs=1e-3)
    assert engine.history[0].highlight is None


def test_scenario_remote_entropy_always_failing(make_engine) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async def play() -> RoundEngine:
        async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as cli:
            engine = make_engine(entropy=EntropySource(url="http://qrng.test", client=cli))
            assert await engine.request_start() is True
            return engine

    engine = asyncio.run(play())
    assert engine.phase is Phase.RUNNING
    assert engine.state.was_quantum is False

    while engine.phase is Phase.RUNNING:
        engine.update(1.0)
    assert engine.phase is Phase.CRASHED
    assert engine.history[0].was_quantum is False


def test_crash_wins_when_cash_out_lands_in_crashing_step(make_engine) -> None:
    engine = make_engine(30800)  # crash just above 2.0x
    events = record(engine)
    start(engine)

    engine.update(time_to_multiplier(2.1, engine.k))
    assert engine.phase is Phase.CRASHED
    assert engine.request_cash_out() is None

    assert engine.balance == 90
    assert [e.data["outcome"] for e in settled(events)] == ["crashed"]


def test_listener_cash_out_during_crashing_frame_is_rejected(make_engine) -> None:
    engine = make_engine(30800)
    attempts = []

    def greedy(event) -> None:
        if event.kind == "multiplier_changed" and event.data["multiplier"] >= 1.9:
            attempts.append(engine.request_cash_out())

    engine.subscribe(greedy)
    events = record(engine)
    start(engine)
    engine.update(time_to_multiplier(2.1, engine.k))

    assert attempts == [None]
    assert engine.balance == 90
    [event] = settled(events)
    assert event.data["outcome"] == "crashed"


def test_crash_at_one_beats_immediate_cash_out(make_engine) -> None:
    engine = make_engine(65535)
    start(engine)
    assert engine.state.crash_multiplier == 1.0

    assert engine.request_cash_out() is None
    assert engine.phase is Phase.CRASHED
    assert engine.balance == 90


def test_settlement_happens_exactly_once(make_engine) -> None:
    engine = make_engine(0, settle_display_seconds=100)
    events = record(engine)
    start(engine)
    engine.update(1.0)
    first = engine.request_cash_out()

    assert first is not None
    assert engine.request_cash_out() is None
    for _ in range(50):
        engine.update(1.0)

    assert engine.phase is Phase.CASHED_OUT
    assert len(settled(events)) == 1
    assert engine.balance == pytest.approx(90 + first.payout)


def test_settled_round_returns_to_idle_after_display_time(make_engine) -> None:
    engine = make_engine(65535, settle_display_seconds=1.6)
    start(engine)
    engine.update(DT)
    assert engine.phase is Phase.CRASHED

    engine.update(1.0)
    assert engine.phase is Phase.CRASHED
    engine.update(0.7)
    assert engine.phase is Phase.IDLE
    assert engine.multiplier == 1.0

    assert start(engine) is True
    assert engine.generation == 2
    assert engine.balance == 80


def test_aborted_fetch_discards_stale_entropy() -> None:
    async def scenario():
        gate = asyncio.Event()

        class GatedEntropy:
            async def draw(self) -> Draw:
                await gate.wait()
                return Draw(0, True)

        engine = RoundEngine(GameConfig(min_fetch_seconds=0), GatedEntropy())
        first = asyncio.create_task(engine.request_start())
        await asyncio.sleep(0)
        assert engine.phase is Phase.FETCHING_ENTROPY
        assert engine.balance == 90

        assert engine.abort() is True
        assert engine.phase is Phase.IDLE
        assert engine.balance == 100

        second = asyncio.create_task(engine.request_start())
        await asyncio.sleep(0)
        gate.set()
        return engine, await first, await second

    engine, first, second = asyncio.run(scenario())
    assert first is False
    assert second is True
    assert engine.phase is Phase.RUNNING
    assert engine.generation == 3
    assert engine.balance == 90


def test_abort_outside_fetch_is_noop(make_engine) -> None:
    engine = make_engine(0)
    assert engine.abort() is False
    start(engine)
    assert engine.abort() is False
    assert engine.phase is Phase.RUNNING


def test_failing_entropy_source_refunds_and_resets(make_engine) -> None:
    class BrokenEntropy:
        async def draw(self) -> Draw:
            raise RuntimeError("no entropy")

    engine = make_engine(entropy=BrokenEntropy())
    with pytest.raises(RuntimeError):
        start(engine)
    assert engine.phase is Phase.IDLE
    assert engine.balance == 100


def test_cash_out_outside_running_is_silent(make_engine) -> None:
    engine = make_engine(0)
    assert engine.request_cash_out() is None
    assert engine.phase is Phase.IDLE
    assert engine.balance == 100


def test_multiplier_never_exceeds_crash_point(make_engine) -> None:
    engine = make_engine(12320)
    seen = []
    engine.subscribe(lambda e: e.kind == "multiplier_changed" and seen.append(e.data["multiplier"]))
    start(engine)
    crash = engine.state.crash_multiplier
    while engine.phase is Phase.RUNNING:
        engine.update(0.37)

    assert max(seen) == crash
    assert all(a <= b for a, b in zip(seen, seen[1:]))


def test_tick_steps_advance_with_multiplier(make_engine) -> None:
    engine = make_engine(0)
    events = record(engine)
    start(engine)

    engine.update(time_to_multiplier(1.25, engine.k))
    engine.update(0.0)
    ticks = [e.data for e in events if e.kind == "multiplier_changed"]

    assert ticks[0]["tick_step"] == 12
    assert ticks[0]["ticked"] is True
    assert ticks[1]["tick_step"] == 12
    assert ticks[1]["ticked"] is False


def test_negative_dt_does_not_rewind(make_engine) -> None:
    engine = make_engine(0)
    start(engine)
    engine.update(5.0)
    before = engine.multiplier
    engine.update(-3.0)
    assert engine.multiplier == before


@pytest.mark.parametrize("target, highlight", [(24.995, "jackpot"), (12.0, "big"), (3.0, None)])
def test_history_highlights_big_cash_outs(make_engine, target: float, highlight) -> None:
    engine = make_engine(0)
    start(engine)
    engine.update(time_to_multiplier(target, engine.k))
    engine.request_cash_out()
    assert engine.history[0].highlight == highlight
    assert engine.history[0].crash_multiplier == 25.0


def test_history_keeps_latest_rounds_newest_first(make_engine) -> None:
    draws = list(range(30000, 30013))
    engine = make_engine(*draws, starting_balance=1000, settle_display_seconds=0)
    for _ in draws:
        start(engine)
        while engine.phase is Phase.RUNNING:
            engine.update(1.0)
        engine.update(0.0)
        assert engine.phase is Phase.IDLE

    history = engine.history
    assert len(history) == 12
    assert history[0].crash_multiplier == pytest.approx(0.94 * 65536 / 30013)
    assert history[-1].crash_multiplier == pytest.approx(0.94 * 65536 / 30002)


def test_snapshot_hides_crash_point_while_running(make_engine) -> None:
    engine = make_engine(12320)
    start(engine)
    engine.update(1.0)
    snap = engine.snapshot()

    assert snap["phase"] == "RUNNING"
    assert "crash_multiplier" not in str(snap)
    assert snap["balance"] == 90

    engine.request_cash_out()
    assert engine.snapshot()["outcome"]["outcome"] == "cashed_out"


def test_failing_listener_does_not_break_round(make_engine) -> None:
    engine = make_engine(0)

    def broken(event) -> None:
        raise ValueError("listener bug")

    engine.subscribe(broken)
    start(engine)
    engine.update(1.0)
    assert engine.request_cash_out() is not None


def test_unsubscribe_stops_events(make_engine) -> None:
    engine = make_engine(0)
    events = []
    unsubscribe = engine.subscribe(events.append)
    unsubscribe()
    start(engine)
    assert events == []


def test_crashed_outcome_shape() -> None:
    assert Crashed(3.0).to_dict() == {"outcome": "crashed", "payout": 0.0, "multiplier": 3.0}
