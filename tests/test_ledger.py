from decimal import Decimal

import pytest

from crash_lobby.config import GameConfig
from crash_lobby.errors import InvalidState, ValidationError
from crash_lobby.fairness import ProvablyFair
from crash_lobby.ledger import RoundLedger, RoundStatus, compute_payout

D = Decimal


@pytest.fixture()
def ledger():
    return RoundLedger(ProvablyFair(GameConfig()), max_crash_point=D("10.00"))


def to_active(ledger):
    ledger.add_or_update_participant("0xa", D("100"), D("2.00"))
    ledger.advance(RoundStatus.STARTING)
    ledger.advance(RoundStatus.ACTIVE)


def test_new_round_is_waiting_and_empty(ledger):
    rnd = ledger.current
    assert rnd.status == RoundStatus.WAITING
    assert rnd.participants == []
    assert rnd.crash_point is None
    assert rnd.nonce == 1
    assert len(rnd.commitment.server_seed_hash) == 64


def test_duplicate_join_updates_in_place(ledger):
    ledger.add_or_update_participant("0xa", D("10"), D("2.00"))
    ledger.add_or_update_participant("0xb", D("20"), D("3.00"))
    ledger.add_or_update_participant("0xa", D("15"), D("1.50"))

    participants = ledger.current.participants
    assert [p.address for p in participants] == ["0xa", "0xb"]
    assert participants[0].bet_amount == D("15")
    assert participants[0].predicted_multiplier == D("1.50")


def test_join_allowed_while_starting(ledger):
    ledger.add_or_update_participant("0xa", D("10"), D("2.00"))
    ledger.advance(RoundStatus.STARTING)
    ledger.add_or_update_participant("0xb", D("10"), D("2.00"))
    assert len(ledger.current.participants) == 2


def test_join_rejected_once_active(ledger):
    to_active(ledger)
    with pytest.raises(InvalidState):
        ledger.add_or_update_participant("0xb", D("10"), D("2.00"))


def test_cannot_leave_waiting_without_participants(ledger):
    with pytest.raises(InvalidState):
        ledger.advance(RoundStatus.STARTING)
    assert ledger.current.status == RoundStatus.WAITING


@pytest.mark.parametrize(
    "path,illegal",
    [
        ([], RoundStatus.ACTIVE),
        ([RoundStatus.STARTING], RoundStatus.WAITING),
        ([RoundStatus.STARTING, RoundStatus.ACTIVE], RoundStatus.STARTING),
        ([RoundStatus.STARTING, RoundStatus.ACTIVE], RoundStatus.CRASHED),
        ([RoundStatus.STARTING, RoundStatus.FAILED], RoundStatus.WAITING),
    ],
)
def test_no_backward_or_skipping_transitions(ledger, path, illegal):
    ledger.add_or_update_participant("0xa", D("10"), D("2.00"))
    for status in path:
        ledger.advance(status)
    before = ledger.current.status
    with pytest.raises(InvalidState):
        ledger.advance(illegal)
    assert ledger.current.status == before


def test_full_forward_path_is_recorded(ledger):
    to_active(ledger)
    ledger.set_crash_point(D("3.00"))
    ledger.advance(RoundStatus.SETTLING)
    ledger.compute_and_assign_payouts()
    ledger.advance(RoundStatus.RESET_PENDING)

    assert [s for s, _ in ledger.current.status_history] == [
        RoundStatus.WAITING,
        RoundStatus.STARTING,
        RoundStatus.ACTIVE,
        RoundStatus.CRASHED,
        RoundStatus.SETTLING,
        RoundStatus.RESET_PENDING,
    ]


def test_set_crash_point_requires_active(ledger):
    with pytest.raises(InvalidState):
        ledger.set_crash_point(D("2.00"))


def test_crash_point_is_set_once(ledger):
    to_active(ledger)
    ledger.set_crash_point(D("2.50"))
    assert ledger.current.status == RoundStatus.CRASHED
    assert ledger.current.crashed_at is not None

    with pytest.raises(InvalidState):
        ledger.set_crash_point(D("4.00"))
    assert ledger.current.crash_point == D("2.50")


@pytest.mark.parametrize("value", ["0.99", "10.01"])
def test_crash_point_range(ledger, value):
    to_active(ledger)
    with pytest.raises(ValidationError):
        ledger.set_crash_point(D(value))
    assert ledger.current.status == RoundStatus.ACTIVE


@pytest.mark.parametrize(
    "prediction,crash,expected",
    [
        ("2.00", "1.50", "0.00"),
        ("2.00", "3.00", "200.00"),
        ("2.00", "2.00", "200.00"),
        ("1.01", "1.00", "0.00"),
        ("10.00", "10.00", "1000.00"),
    ],
)
def test_payout_rule(prediction, crash, expected):
    assert compute_payout(D("100"), D(prediction), D(crash)) == D(expected)


def test_payout_rounds_down_to_cents():
    assert compute_payout(D("3.33"), D("1.01"), D("2.00")) == D("3.36")


def test_payouts_assigned_once(ledger):
    ledger.add_or_update_participant("0xa", D("100"), D("2.00"))
    ledger.add_or_update_participant("0xb", D("50"), D("5.00"))
    ledger.advance(RoundStatus.STARTING)
    ledger.advance(RoundStatus.ACTIVE)

    with pytest.raises(InvalidState):
        ledger.compute_and_assign_payouts()

    ledger.set_crash_point(D("3.00"))
    ledger.advance(RoundStatus.SETTLING)
    assert ledger.compute_and_assign_payouts() == {"0xa": D("200.00"), "0xb": D("0.00")}

    with pytest.raises(InvalidState):
        ledger.compute_and_assign_payouts()
    assert ledger.current.participant("0xa").payout == D("200.00")


def test_failing_after_payouts_voids_them(ledger):
    to_active(ledger)
    ledger.set_crash_point(D("3.00"))
    ledger.advance(RoundStatus.SETTLING)
    ledger.compute_and_assign_payouts()

    ledger.advance(RoundStatus.FAILED)

    rnd = ledger.current
    assert rnd.participant("0xa").payout is None
    assert rnd.payouts_assigned is False
    assert [p["payout"] for p in rnd.summary()["participants"]] == [None]


def test_lock_bets_drops_late_joiners_and_restores_amounts(ledger):
    ledger.add_or_update_participant("0xa", D("100"), D("2.00"))
    ledger.advance(RoundStatus.STARTING)
    debits = {"0xa": D("100")}
    ledger.add_or_update_participant("0xa", D("500"), D("3.00"))
    ledger.add_or_update_participant("0xlate", D("10"), D("2.00"))

    dropped = ledger.lock_bets(debits)

    assert dropped == ["0xlate"]
    assert ledger.current.dropped_addresses == ["0xlate"]
    assert ledger.current.summary()["droppedAddresses"] == ["0xlate"]
    a = ledger.current.participant("0xa")
    assert a.bet_amount == D("100")
    assert a.predicted_multiplier == D("3.00")


def test_reset_replaces_round(ledger):
    ledger.add_or_update_participant("0xa", D("100"), D("2.00"))
    old = ledger.current

    previous = ledger.reset()

    assert previous is old
    assert ledger.current is not old
    assert ledger.current.round_id != old.round_id
    assert ledger.current.status == RoundStatus.WAITING
    assert ledger.current.participants == []
    assert ledger.current.nonce == old.nonce + 1
    assert ledger.current.commitment.server_seed != old.commitment.server_seed
