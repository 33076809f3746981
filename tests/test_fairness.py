from decimal import Decimal

import pytest

from crash_lobby.config import GameConfig
from crash_lobby.fairness import (
    ProvablyFair,
    crash_point_from_hash,
    flight_duration_ms,
    hash_sha256,
    hmac_sha256,
    multiplier_at_ms,
    verify_round,
)

D = Decimal
EDGE = D("0.01")
MAX = D("10.00")


def test_commitment_hash_matches_seed():
    fair = ProvablyFair(GameConfig(client_seed="table-1"))
    commitment = fair.commit(7)

    assert commitment.nonce == 7
    assert commitment.client_seed == "table-1"
    assert commitment.server_seed_hash == hash_sha256(commitment.server_seed)
    assert fair.commit(7).server_seed != commitment.server_seed


def test_crash_point_is_deterministic_and_in_range():
    fair = ProvablyFair(GameConfig())
    for nonce in range(1, 200):
        commitment = fair.commit(nonce)
        value = fair.crash_point(commitment)
        assert D("1.00") <= value <= MAX
        assert value == fair.crash_point(commitment)
        assert value == value.quantize(D("0.01"))


@pytest.mark.parametrize(
    "hash_hex,expected",
    [
        ("0" * 64, "1.00"),           # r = 0 -> 0.99, floored to 1.00
        ("8" + "0" * 63, "1.98"),     # r = 0.5 -> 0.99 / 0.5
        ("f" * 64, "10.00"),          # r -> 1, capped
    ],
)
def test_crash_point_from_hash(hash_hex, expected):
    assert crash_point_from_hash(hash_hex, EDGE, MAX) == D(expected)


def test_verify_round_accepts_honest_reveal():
    seed = "server-seed"
    digest = hmac_sha256(seed, "client:3")
    crash = crash_point_from_hash(digest, EDGE, MAX)

    assert verify_round(seed, hash_sha256(seed), "client", 3, crash, EDGE, MAX)


def test_verify_round_rejects_tampering():
    seed = "server-seed"
    digest = hmac_sha256(seed, "client:3")
    crash = crash_point_from_hash(digest, EDGE, MAX)

    assert not verify_round("other-seed", hash_sha256(seed), "client", 3, crash, EDGE, MAX)
    wrong = crash + D("0.01") if crash < MAX else crash - D("0.01")
    assert not verify_round(seed, hash_sha256(seed), "client", 3, wrong, EDGE, MAX)


def test_multiplier_curve():
    assert multiplier_at_ms(0, 0.0001) == D("1.00")
    assert multiplier_at_ms(-5, 0.0001) == D("1.00")
    # e^(0.0001 * 6932) ~= 2.0000
    assert multiplier_at_ms(6932, 0.0001) == D("2.00")


@pytest.mark.parametrize("crash", ["1.01", "1.50", "2.00", "7.77", "10.00"])
def test_flight_duration_reaches_crash(crash):
    ms = flight_duration_ms(D(crash), 0.0001)
    assert multiplier_at_ms(ms, 0.0001) >= D(crash)
    assert multiplier_at_ms(ms - 1, 0.0001) <= D(crash)


def test_flight_duration_instant_crash():
    assert flight_duration_ms(D("1.00"), 0.0001) == 0
