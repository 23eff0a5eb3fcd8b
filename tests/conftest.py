from __future__ import annotations

import pytest

from backend.config import GameConfig
from backend.engine import RoundEngine
from backend.entropy import Draw


class FixedEntropy:
    """Returns the given draws in order, repeating the last one."""

    def __init__(self, *values: int, quantum: bool = True) -> None:
        self.values = list(values) or [0]
        self.quantum = quantum
        self.calls = 0

    async def draw(self) -> Draw:
        value = self.values[min(self.calls, len(self.values) - 1)]
        self.calls += 1
        return Draw(value, self.quantum)


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_engine(clock):
    def _make(*values: int, entropy=None, **config) -> RoundEngine:
        source = entropy if entropy is not None else FixedEntropy(*values)
        return RoundEngine(GameConfig(**config), source, clock=clock, sleep=clock.sleep)

    return _make
