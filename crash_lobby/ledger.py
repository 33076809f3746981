# ledger.py
"""
Round Ledger – authoritative in-memory state for the current round.

Responsibilities:
- Strict forward-only status machine
  (WAITING -> STARTING -> ACTIVE -> CRASHED -> SETTLING -> RESET_PENDING, or FAILED)
- Participant bookkeeping (one entry per address, insertion ordered)
- Crash point assignment and payout computation

No I/O and no timing decisions: the coordinator decides WHEN, the ledger
enforces WHAT is legal.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from crash_lobby.errors import InvalidState, ValidationError
from crash_lobby.fairness import ProvablyFair, SeedCommitment
from crash_lobby.utils import generate_unique_id, quantize_money

ZERO = Decimal("0.00")


class RoundStatus(str, Enum):
    WAITING = "WAITING"              # Accepting joins, start timer maybe armed
    STARTING = "STARTING"            # Session opening, bets being signed
    ACTIVE = "ACTIVE"                # Multiplier rising
    CRASHED = "CRASHED"              # Crash point revealed
    SETTLING = "SETTLING"            # Payouts computed, settlement in flight
    RESET_PENDING = "RESET_PENDING"  # Settled, waiting for reset timer
    FAILED = "FAILED"                # Collaborator gave up, reset follows


# ACTIVE -> CRASHED only happens through set_crash_point().
_TRANSITIONS: Dict[RoundStatus, Tuple[RoundStatus, ...]] = {
    RoundStatus.WAITING: (RoundStatus.STARTING,),
    RoundStatus.STARTING: (RoundStatus.ACTIVE, RoundStatus.FAILED),
    RoundStatus.ACTIVE: (RoundStatus.FAILED,),
    RoundStatus.CRASHED: (RoundStatus.SETTLING,),
    RoundStatus.SETTLING: (RoundStatus.RESET_PENDING, RoundStatus.FAILED),
    RoundStatus.RESET_PENDING: (),
    RoundStatus.FAILED: (),
}

JOINABLE = (RoundStatus.WAITING, RoundStatus.STARTING)


def compute_payout(bet_amount: Decimal, predicted_multiplier: Decimal, crash_point: Decimal) -> Decimal:
    """
    Pure payout rule: predictions at or below the crash point win bet x prediction.
    """
    if predicted_multiplier <= crash_point:
        return quantize_money(bet_amount * predicted_multiplier)
    return ZERO


@dataclass
class Participant:
    address: str
    bet_amount: Decimal
    predicted_multiplier: Decimal
    joined_at: float = field(default_factory=time.time)

    # Outcome
    payout: Optional[Decimal] = None

    def to_dict(self, reveal_bet: bool = True) -> Dict[str, Any]:
        return {
            "address": self.address,
            "betAmount": float(self.bet_amount) if reveal_bet else None,
            "predictedMultiplier": float(self.predicted_multiplier),
            "payout": float(self.payout) if self.payout is not None else None,
        }


@dataclass
class Round:
    round_id: str
    nonce: int
    commitment: SeedCommitment

    status: RoundStatus = RoundStatus.WAITING
    crash_point: Optional[Decimal] = None

    # Timing (wall clock, for display)
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    crashed_at: Optional[float] = None

    session_id: Optional[str] = None
    failure_reason: Optional[str] = None
    payouts_assigned: bool = False
    dropped_addresses: List[str] = field(default_factory=list)

    _participants: Dict[str, Participant] = field(default_factory=dict, repr=False)
    status_history: List[Tuple[RoundStatus, float]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.status_history:
            self.status_history.append((self.status, self.created_at))

    @property
    def participants(self) -> List[Participant]:
        return list(self._participants.values())

    def participant(self, address: str) -> Optional[Participant]:
        return self._participants.get(address)

    @property
    def crashed(self) -> bool:
        return self.crash_point is not None

    def summary(self) -> Dict[str, Any]:
        """Post-round record, everything revealed."""
        return {
            "roundId": self.round_id,
            "status": self.status.value,
            "nonce": self.nonce,
            "crashPoint": float(self.crash_point) if self.crash_point is not None else None,
            "serverSeedHash": self.commitment.server_seed_hash,
            "serverSeed": self.commitment.server_seed if self.crashed else None,
            "clientSeed": self.commitment.client_seed,
            "failureReason": self.failure_reason,
            "droppedAddresses": list(self.dropped_addresses),
            "participants": [p.to_dict() for p in self.participants],
            "statusHistory": [status.value for status, _ in self.status_history],
        }


class RoundLedger:
    """
    Owns the current Round. Replaced, never recycled, on reset().
    """

    def __init__(self, fairness: ProvablyFair, max_crash_point: Decimal, min_crash_point: Decimal = Decimal("1.00")) -> None:
        self._fairness = fairness
        self._max_crash = max_crash_point
        self._min_crash = min_crash_point
        self._nonce = 0
        self._round = self._new_round()

    @property
    def current(self) -> Round:
        return self._round

    def _new_round(self) -> Round:
        self._nonce += 1
        return Round(
            round_id=generate_unique_id(),
            nonce=self._nonce,
            commitment=self._fairness.commit(self._nonce),
        )

    # =====================================================
    # STATUS MACHINE
    # =====================================================

    def advance(self, target: RoundStatus) -> Round:
        rnd = self._round
        if target not in _TRANSITIONS[rnd.status]:
            raise InvalidState(f"Illegal transition {rnd.status.value} -> {target.value}")
        if rnd.status == RoundStatus.WAITING and not rnd._participants:
            raise InvalidState("Cannot leave WAITING without participants")
        if target == RoundStatus.FAILED:
            # nothing was paid out, the collaborator unwinds the debits
            for participant in rnd.participants:
                participant.payout = None
            rnd.payouts_assigned = False
        self._set_status(target)
        return rnd

    def _set_status(self, target: RoundStatus) -> None:
        self._round.status = target
        self._round.status_history.append((target, time.time()))

    # =====================================================
    # OPERATIONS
    # =====================================================

    def add_or_update_participant(self, address: str, bet_amount: Decimal, predicted_multiplier: Decimal) -> Participant:
        rnd = self._round
        if rnd.status not in JOINABLE:
            raise InvalidState(f"Round not accepting bets (Status: {rnd.status.value})")

        existing = rnd._participants.get(address)
        if existing:
            # dict keeps the original insertion slot on update
            existing.bet_amount = bet_amount
            existing.predicted_multiplier = predicted_multiplier
            return existing

        participant = Participant(address, bet_amount, predicted_multiplier)
        rnd._participants[address] = participant
        return participant

    def lock_bets(self, debits: Dict[str, Decimal]) -> List[str]:
        """
        Align participants with what was actually debited at session open.
        Late joiners are dropped and late bet changes reverted.

        Returns:
            Addresses that were dropped.
        """
        rnd = self._round
        if rnd.status != RoundStatus.STARTING:
            raise InvalidState(f"Bets can only be locked while STARTING (Status: {rnd.status.value})")

        dropped = [address for address in rnd._participants if address not in debits]
        for address in dropped:
            del rnd._participants[address]
        for address, amount in debits.items():
            participant = rnd._participants.get(address)
            if participant is not None:
                participant.bet_amount = amount
        rnd.dropped_addresses = dropped
        return dropped

    def set_crash_point(self, value: Decimal) -> Round:
        rnd = self._round
        if rnd.status != RoundStatus.ACTIVE:
            raise InvalidState(f"Crash point can only be set while ACTIVE (Status: {rnd.status.value})")
        if not (self._min_crash <= value <= self._max_crash):
            raise ValidationError(f"Crash point {value} outside [{self._min_crash}, {self._max_crash}]")

        rnd.crash_point = value
        rnd.crashed_at = time.time()
        self._set_status(RoundStatus.CRASHED)
        return rnd

    def compute_and_assign_payouts(self) -> Dict[str, Decimal]:
        rnd = self._round
        if rnd.status != RoundStatus.SETTLING:
            raise InvalidState(f"Payouts can only be computed while SETTLING (Status: {rnd.status.value})")
        if rnd.payouts_assigned:
            raise InvalidState("Payouts already assigned")

        payouts: Dict[str, Decimal] = {}
        for participant in rnd.participants:
            participant.payout = compute_payout(
                participant.bet_amount, participant.predicted_multiplier, rnd.crash_point
            )
            payouts[participant.address] = participant.payout
        rnd.payouts_assigned = True
        return payouts

    def reset(self) -> Round:
        """
        Discard the current round and start a fresh WAITING one.

        Returns:
            The discarded round.
        """
        previous = self._round
        self._round = self._new_round()
        return previous
