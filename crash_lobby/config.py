# config.py
"""
Game configuration.

Defaults are read from the environment once at import time; tests build
their own GameConfig with explicit overrides.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass
class GameConfig:
    # --- LOBBY ---
    min_participants: int = _env_int("LOBBY_MIN_PARTICIPANTS", 1)

    # --- TIMERS (ms) ---
    start_delay_ms: int = _env_int("LOBBY_START_DELAY_MS", 10_000)
    reset_delay_ms: int = _env_int("LOBBY_RESET_DELAY_MS", 5_000)
    retry_backoff_ms: int = _env_int("LOBBY_RETRY_BACKOFF_MS", 2_000)
    signature_timeout_ms: int = _env_int("LOBBY_SIGNATURE_TIMEOUT_MS", 15_000)

    # Minimum time the round MUST stay ACTIVE even if the crash is 1.00x,
    # so pollers see at least one ACTIVE snapshot.
    min_flight_ms: int = _env_int("LOBBY_MIN_FLIGHT_MS", 300)

    # --- LIMITS ---
    min_prediction: Decimal = Decimal("1.01")
    max_prediction: Decimal = Decimal("10.00")
    min_crash_point: Decimal = Decimal("1.00")
    max_crash_point: Decimal = Decimal("10.00")

    # --- FAIRNESS ---
    house_edge: Decimal = Decimal(os.getenv("LOBBY_HOUSE_EDGE", "0.01"))
    client_seed: str = os.getenv("LOBBY_CLIENT_SEED", "crash-lobby")

    # Multiplier = e^(speed_factor * ms); 0.0001 is ~6.9 seconds to 2.00x
    speed_factor: float = 0.0001

    # Finished rounds kept for /rounds/history
    history_size: int = _env_int("LOBBY_HISTORY_SIZE", 50)
