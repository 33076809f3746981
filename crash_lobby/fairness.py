# fairness.py
"""
Provably fair crash points.

Commit / reveal scheme:
1. When a round is created, a random server seed is generated and only its
   SHA-256 hash is published.
2. When the round goes ACTIVE, the crash point is derived from
   HMAC-SHA256(server_seed, "client_seed:nonce").
3. Once the round has crashed the server seed is revealed, so anyone can
   check both the hash commitment and the crash point.

Also holds the flight curve (time -> multiplier) used for the end timer and
the live multiplier in round snapshots.
"""

from __future__ import annotations

import hashlib
import hmac
import math
import secrets
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN

from crash_lobby.config import GameConfig

# 52 bits fit exactly in a double, the usual crash-game convention
_HASH_BITS = 52
_HASH_SPACE = Decimal(2 ** _HASH_BITS)

ONE = Decimal("1.00")


@dataclass(frozen=True)
class SeedCommitment:
    server_seed: str
    server_seed_hash: str
    client_seed: str
    nonce: int


def generate_server_seed(length: int = 32) -> str:
    """
    Cryptographically secure random server seed (hex).
    Used as the secret key in HMAC calculations.
    """
    return secrets.token_hex(length)


def hash_sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hmac_sha256(key: str, message: str) -> str:
    return hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def crash_point_from_hash(hash_hex: str, house_edge: Decimal, max_crash: Decimal) -> Decimal:
    """
    Map a hex digest to a crash point in [1.00, max_crash].

    The first 52 bits give r in [0, 1); crash = (1 - edge) / (1 - r).
    """
    r = Decimal(int(hash_hex[: _HASH_BITS // 4], 16)) / _HASH_SPACE
    crash = (Decimal(1) - house_edge) / (Decimal(1) - r)

    crash = max(crash, ONE)
    crash = min(crash, max_crash)
    return crash.quantize(Decimal("0.01"), rounding=ROUND_DOWN)


def verify_round(
    server_seed: str,
    server_seed_hash: str,
    client_seed: str,
    nonce: int,
    crash_point: Decimal,
    house_edge: Decimal,
    max_crash: Decimal,
) -> bool:
    """
    True if the revealed seed matches its published hash AND regenerates
    the claimed crash point.
    """
    if not hmac.compare_digest(hash_sha256(server_seed), server_seed_hash):
        return False
    digest = hmac_sha256(server_seed, f"{client_seed}:{nonce}")
    return crash_point_from_hash(digest, house_edge, max_crash) == crash_point


class ProvablyFair:
    """
    Seed commitments and crash points for a given configuration.
    Subclass and override crash_point() to pin outcomes in tests.
    """

    def __init__(self, config: GameConfig) -> None:
        self.client_seed = config.client_seed
        self.house_edge = config.house_edge
        self.max_crash = config.max_crash_point

    def commit(self, nonce: int) -> SeedCommitment:
        server_seed = generate_server_seed()
        return SeedCommitment(
            server_seed=server_seed,
            server_seed_hash=hash_sha256(server_seed),
            client_seed=self.client_seed,
            nonce=nonce,
        )

    def crash_point(self, commitment: SeedCommitment) -> Decimal:
        digest = hmac_sha256(commitment.server_seed, f"{commitment.client_seed}:{commitment.nonce}")
        return crash_point_from_hash(digest, self.house_edge, self.max_crash)

    def verify(self, commitment: SeedCommitment, crash_point: Decimal) -> bool:
        return verify_round(
            commitment.server_seed,
            commitment.server_seed_hash,
            commitment.client_seed,
            commitment.nonce,
            crash_point,
            self.house_edge,
            self.max_crash,
        )


# =====================================================
# FLIGHT CURVE
# =====================================================

def multiplier_at_ms(ms: float, speed_factor: float) -> Decimal:
    """
    Pure function: time -> multiplier.
    Formula: e^(speed_factor * ms)
    """
    if ms <= 0:
        return ONE
    growth = math.exp(speed_factor * ms)
    return Decimal(growth).quantize(Decimal("0.01"), rounding=ROUND_DOWN)


def flight_duration_ms(crash_point: Decimal, speed_factor: float) -> int:
    """
    Milliseconds for the curve to reach crash_point (inverse of multiplier_at_ms).
    """
    if crash_point <= ONE:
        return 0
    return math.ceil(math.log(float(crash_point)) / speed_factor)
