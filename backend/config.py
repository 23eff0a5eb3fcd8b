# backend/config.py — constantes do jogo (fixas após a inicialização)
import os
from dataclasses import dataclass


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class GameConfig:
    wager: float = 10.0
    starting_balance: float = 100.0
    max_multiplier: float = 25.0
    house_edge: float = 0.06
    target_multiplier: float = 3.4
    target_time: float = 20.0
    min_fetch_seconds: float = 0.6
    settle_display_seconds: float = 1.6
    history_size: int = 12

    def __post_init__(self):
        if not 0.0 <= self.house_edge < 1.0:
            raise ValueError("house_edge must be in [0, 1)")
        if self.wager <= 0:
            raise ValueError("wager must be > 0")
        if self.starting_balance < 0:
            raise ValueError("starting_balance must be >= 0")
        if self.max_multiplier <= 1.0:
            raise ValueError("max_multiplier must be > 1")
        if self.target_multiplier <= 1.0:
            raise ValueError("target_multiplier must be > 1")
        if self.target_time <= 0:
            raise ValueError("target_time must be > 0")
        if self.min_fetch_seconds < 0 or self.settle_display_seconds < 0:
            raise ValueError("durations must be >= 0")
        if self.history_size < 1:
            raise ValueError("history_size must be >= 1")

    @classmethod
    def from_env(cls) -> "GameConfig":
        d = cls.__dataclass_fields__
        return cls(
            wager=_env_float("CRASH_WAGER", d["wager"].default),
            starting_balance=_env_float("CRASH_START_BALANCE", d["starting_balance"].default),
            max_multiplier=_env_float("CRASH_MAX_MULTIPLIER", d["max_multiplier"].default),
            house_edge=_env_float("CRASH_HOUSE_EDGE", d["house_edge"].default),
            target_multiplier=_env_float("CRASH_TARGET_MULTIPLIER", d["target_multiplier"].default),
            target_time=_env_float("CRASH_TARGET_TIME", d["target_time"].default),
            min_fetch_seconds=_env_float("CRASH_MIN_FETCH_SECONDS", d["min_fetch_seconds"].default),
            settle_display_seconds=_env_float("CRASH_SETTLE_SECONDS", d["settle_display_seconds"].default),
            history_size=_env_int("CRASH_HISTORY_SIZE", d["history_size"].default),
        )


# ------------------------------------------------------------------------------
# QRNG (Outshift) e loop do servidor
# ------------------------------------------------------------------------------
HOST = os.getenv("HOST", "0.0.0.0")
PORT = _env_int("PORT", 8000)


def dev_qrng_url(host: str = None, port: int = None) -> str:
    """URL do proxy /api/qrng deste mesmo servidor (modo dev)."""
    host = host or HOST
    if host in ("0.0.0.0", "::", ""):
        host = "127.0.0.1"
    if ":" in host:
        host = f"[{host}]"
    return f"http://{host}:{port or PORT}/api/qrng"


QRNG_DEV = _env_flag("QRNG_DEV")
DEV_QRNG_URL = dev_qrng_url()
QRNG_URL = os.getenv("QRNG_URL") or None
OUTSHIFT_URL = os.getenv("OUTSHIFT_URL", "https://api.qrng.outshift.com/api/v1/random_numbers")
OUTSHIFT_API_KEY = os.getenv("OUTSHIFT_API_KEY", "")
TICK_FPS = _env_float("TICK_FPS", 30.0)
