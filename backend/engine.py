# backend/engine.py — motor da rodada (uma sessão de jogo)
"""
Round engine.

One live round per session:

    IDLE -> FETCHING_ENTROPY -> RUNNING -> CASHED_OUT | CRASHED -> IDLE

The crash multiplier is drawn before RUNNING and never changes afterwards.
Each start bumps a generation counter; an entropy result is applied only if
the engine is still fetching for the same generation. Settlement happens at
most once per round because only a ``Running`` state can be settled and
settling replaces it.
"""

import asyncio
import logging
import math
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from .config import GameConfig
from .entropy import EntropySource
from .utils_fair import crash_multiplier, growth_rate, multiplier_at

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "IDLE"
    FETCHING_ENTROPY = "FETCHING_ENTROPY"
    RUNNING = "RUNNING"
    CASHED_OUT = "CASHED_OUT"
    CRASHED = "CRASHED"


class EngineError(Exception):
    """Base engine error"""


class InsufficientBalance(EngineError):
    """Balance below the wager"""


class RoundInProgress(EngineError):
    """Start requested while a round is live"""


# ------------------------------------------------------------------------------
# Resultados
# ------------------------------------------------------------------------------
@dataclass(frozen=True)
class CashedOut:
    payout: float
    multiplier: float
    crash_multiplier: float

    phase = Phase.CASHED_OUT

    def to_dict(self) -> Dict:
        return {
            "outcome": "cashed_out",
            "payout": self.payout,
            "multiplier": self.multiplier,
            "crash_multiplier": self.crash_multiplier,
        }


@dataclass(frozen=True)
class Crashed:
    multiplier: float

    phase = Phase.CRASHED

    def to_dict(self) -> Dict:
        return {"outcome": "crashed", "payout": 0.0, "multiplier": self.multiplier}


Outcome = Union[CashedOut, Crashed]


# ------------------------------------------------------------------------------
# Estados
# ------------------------------------------------------------------------------
@dataclass(frozen=True)
class Idle:
    phase = Phase.IDLE


@dataclass(frozen=True)
class FetchingEntropy:
    generation: int

    phase = Phase.FETCHING_ENTROPY


@dataclass
class Running:
    generation: int
    crash_multiplier: float
    was_quantum: bool
    elapsed: float = 0.0
    multiplier: float = 1.0

    phase = Phase.RUNNING


@dataclass
class Settled:
    outcome: Outcome
    was_quantum: bool
    display_remaining: float

    @property
    def phase(self) -> Phase:
        return self.outcome.phase


RoundState = Union[Idle, FetchingEntropy, Running, Settled]


@dataclass(frozen=True)
class HistoryEntry:
    crash_multiplier: float
    highlight: Optional[str] = None
    was_quantum: bool = False

    def to_dict(self) -> Dict:
        return {
            "crash_multiplier": self.crash_multiplier,
            "highlight": self.highlight,
            "quantum": self.was_quantum,
        }


@dataclass(frozen=True)
class EngineEvent:
    kind: str  # state_changed | multiplier_changed | round_settled
    data: Dict

    def to_dict(self) -> Dict:
        return {"type": self.kind, **self.data}


Listener = Callable[[EngineEvent], None]


class RoundEngine:
    def __init__(self, config: Optional[GameConfig] = None,
                 entropy: Optional[EntropySource] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep=asyncio.sleep):
        self.config = config or GameConfig()
        self.entropy = entropy or EntropySource()
        self.k = growth_rate(self.config.target_multiplier, self.config.target_time)
        self._clock = clock
        self._sleep = sleep

        self._state: RoundState = Idle()
        self._balance = float(self.config.starting_balance)
        self._generation = 0
        self._tick_step = 10
        self._history: deque = deque(maxlen=self.config.history_size)
        self._listeners: List[Listener] = []

    # ---------------------- leitura ----------------------
    @property
    def state(self) -> RoundState:
        return self._state

    @property
    def phase(self) -> Phase:
        return self._state.phase

    @property
    def balance(self) -> float:
        return self._balance

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def multiplier(self) -> float:
        st = self._state
        if isinstance(st, Running):
            return st.multiplier
        if isinstance(st, Settled):
            return st.outcome.multiplier
        return 1.0

    @property
    def history(self) -> List[HistoryEntry]:
        return list(self._history)

    def snapshot(self) -> Dict:
        st = self._state
        snap = {
            "phase": self.phase.value,
            "balance": self._balance,
            "multiplier": self.multiplier,
            "wager": self.config.wager,
            "max_multiplier": self.config.max_multiplier,
            "generation": self._generation,
            "history": [h.to_dict() for h in self._history],
        }
        if isinstance(st, Running):
            snap["elapsed"] = st.elapsed
        if isinstance(st, Settled):
            snap["outcome"] = st.outcome.to_dict()
        return snap

    # ---------------------- eventos ----------------------
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: str, **data):
        event = EngineEvent(kind, data)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("engine listener failed on %s", kind)

    def _set_state(self, state: RoundState):
        self._state = state
        self._emit("state_changed", phase=state.phase.value)

    def _publish_multiplier(self, x: float):
        step = math.floor(x * 10)
        ticked = step > self._tick_step
        if ticked:
            self._tick_step = step
        self._emit("multiplier_changed", multiplier=x, tick_step=step, ticked=ticked)

    # ---------------------- entrada ----------------------
    async def request_start(self) -> bool:
        """Debita a aposta, sorteia o crash e entra em RUNNING.

        Returns False when the entropy result arrived for a round that was
        aborted or superseded in the meantime.
        """
        if not isinstance(self._state, Idle):
            raise RoundInProgress(f"cannot start while {self.phase.value}")
        if self._balance < self.config.wager:
            raise InsufficientBalance(
                f"balance {self._balance:.2f} below wager {self.config.wager:.2f}")

        self._balance -= self.config.wager
        self._generation += 1
        gen = self._generation
        self._tick_step = 10
        self._set_state(FetchingEntropy(gen))
        logger.info("round %d: fetching entropy (balance %.2f)", gen, self._balance)

        started = self._clock()
        try:
            draw = await self.entropy.draw()
            crash = crash_multiplier(draw.value, self.config.house_edge, self.config.max_multiplier)
            remaining = self.config.min_fetch_seconds - (self._clock() - started)
            if remaining > 0:
                await self._sleep(remaining)
        except BaseException:
            if self._is_fetching(gen):
                self.abort()
            raise

        if not self._is_fetching(gen):
            logger.debug("round %d: discarding stale entropy", gen)
            return False

        self._set_state(Running(gen, crash, draw.was_quantum))
        logger.info("round %d: running (quantum=%s)", gen, draw.was_quantum)
        return True

    def _is_fetching(self, gen: int) -> bool:
        st = self._state
        return isinstance(st, FetchingEntropy) and st.generation == gen

    def abort(self) -> bool:
        """Cancela a rodada que ainda espera entropia e devolve a aposta."""
        if not isinstance(self._state, FetchingEntropy):
            return False
        self._balance += self.config.wager
        self._generation += 1
        self._set_state(Idle())
        return True

    def request_cash_out(self) -> Optional[CashedOut]:
        st = self._state
        if not isinstance(st, Running):
            return None
        if st.multiplier >= st.crash_multiplier:
            # crash reached at this multiplier already; it takes the round
            self._crash(st)
            return None
        outcome = CashedOut(
            payout=self.config.wager * st.multiplier,
            multiplier=st.multiplier,
            crash_multiplier=st.crash_multiplier,
        )
        self._balance += outcome.payout
        self._settle(st, outcome, self._highlight(st.multiplier))
        return outcome

    def update(self, dt: float):
        """Avança um quadro: curva do multiplicador, crash e timer pós-rodada."""
        dt = max(0.0, dt)
        st = self._state
        if isinstance(st, Running):
            st.elapsed += dt
            x = multiplier_at(st.elapsed, self.k, self.config.max_multiplier)
            if x >= st.crash_multiplier:
                self._crash(st)
                return
            st.multiplier = x
            self._publish_multiplier(x)
        elif isinstance(st, Settled):
            st.display_remaining -= dt
            if st.display_remaining <= 0:
                self._reset()

    # ---------------------- liquidação ----------------------
    def _crash(self, st: Running):
        st.multiplier = st.crash_multiplier
        self._settle(st, Crashed(st.crash_multiplier), None)

    def _settle(self, st: Running, outcome: Outcome, highlight: Optional[str]):
        if self._state is not st:
            return
        self._state = Settled(outcome, st.was_quantum, self.config.settle_display_seconds)
        self._history.appendleft(HistoryEntry(
            crash_multiplier=min(self.config.max_multiplier, st.crash_multiplier),
            highlight=highlight,
            was_quantum=st.was_quantum,
        ))
        logger.info("round %d: %s at %.2fx (balance %.2f)",
                    st.generation, outcome.phase.value, outcome.multiplier, self._balance)
        self._emit("state_changed", phase=outcome.phase.value)
        self._emit("multiplier_changed", multiplier=outcome.multiplier,
                   tick_step=math.floor(outcome.multiplier * 10), ticked=False)
        self._emit("round_settled", balance=self._balance, **outcome.to_dict())

    def _highlight(self, x: float) -> Optional[str]:
        if x >= self.config.max_multiplier - 0.01:
            return "jackpot"
        if x >= 10:
            return "big"
        return None

    def _reset(self):
        self._tick_step = 10
        self._set_state(Idle())
        self._publish_multiplier(1.0)
