# coordinator.py
"""
Lobby Coordinator – round lifecycle orchestration.

Responsibilities:
- Decide WHEN a round moves: first joins arm the start timer, the start
  timer opens the session, the end timer crashes and settles, the reset
  timer starts the next round
- Drive the external session collaborator (open / sign / settle / end)
- Retry a rejected collaborator call once, then fail and reset the round
- Serialize every mutation behind one asyncio.Lock; collaborator calls are
  made OUTSIDE the lock and their results re-validated before being applied

Refunds are NOT handled here. When a round fails, the coordinator ends any
session it opened and the collaborator is responsible for unwinding the
debits it took.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from decimal import Decimal
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from crash_lobby.config import GameConfig
from crash_lobby.errors import CollaboratorError, ValidationError
from crash_lobby.fairness import ProvablyFair, flight_duration_ms, multiplier_at_ms
from crash_lobby.ledger import JOINABLE, Round, RoundLedger, RoundStatus
from crash_lobby.scheduler import TimerHandle, TimerScheduler
from crash_lobby.sessions import SessionCollaborator
from crash_lobby.utils import NumberType, format_multiplier, format_timestamp, to_decimal

logger = logging.getLogger("crash_lobby.coordinator")

# Statuses after which the crash point, seed and bets are public
REVEALED = (RoundStatus.CRASHED, RoundStatus.SETTLING, RoundStatus.RESET_PENDING)

START, END, RESET, RETRY = "start", "end", "reset", "retry"


class LobbyCoordinator:
    """
    Owns the RoundLedger and every timer armed against it.
    """

    def __init__(
        self,
        collaborator: SessionCollaborator,
        scheduler: TimerScheduler,
        config: Optional[GameConfig] = None,
        fairness: Optional[ProvablyFair] = None,
    ) -> None:
        self._config = config or GameConfig()
        self._collaborator = collaborator
        self._scheduler = scheduler
        self._fairness = fairness or ProvablyFair(self._config)
        self._ledger = RoundLedger(
            self._fairness,
            max_crash_point=self._config.max_crash_point,
            min_crash_point=self._config.min_crash_point,
        )
        self._lock = asyncio.Lock()
        self._timers: Dict[str, TimerHandle] = {}

        # Derived at STARTING -> ACTIVE, assigned to the round at ACTIVE -> CRASHED
        self._sealed_crash_point: Optional[Decimal] = None
        self._flight_started: Optional[float] = None
        self._credits: Dict[str, Decimal] = {}

        self._history: Deque[Round] = deque(maxlen=self._config.history_size)

    @property
    def config(self) -> GameConfig:
        return self._config

    @property
    def fairness(self) -> ProvablyFair:
        return self._fairness

    @property
    def current_round(self) -> Round:
        return self._ledger.current

    def armed_timers(self) -> List[str]:
        return [name for name, handle in self._timers.items() if handle.pending]

    # =====================================================
    # JOIN
    # =====================================================

    async def on_join(self, address: str, bet_amount: NumberType, predicted_multiplier: NumberType) -> Dict[str, Any]:
        """
        Add or update a bet on the current round.

        Raises:
            ValidationError: bad address, bet or prediction (nothing mutated).
            InvalidState: the round no longer accepts bets.
        """
        address, bet, prediction = self._validate_join(address, bet_amount, predicted_multiplier)

        async with self._lock:
            rnd = self._ledger.current
            self._ledger.add_or_update_participant(address, bet, prediction)
            logger.info(
                f"Round {rnd.round_id}: {address} bet {bet} on {format_multiplier(prediction)} "
                f"({len(rnd.participants)} participants)"
            )

            if (
                rnd.status == RoundStatus.WAITING
                and len(rnd.participants) >= self._config.min_participants
                and START not in self._timers
            ):
                self._arm(START, self._config.start_delay_ms, self.on_start_timer_fire)

            return {"round_id": rnd.round_id, "status": rnd.status}

    def _validate_join(self, address: str, bet_amount: NumberType, predicted_multiplier: NumberType):
        address = (address or "").strip().lower()
        if not address:
            raise ValidationError("Address is required")

        try:
            bet = to_decimal(bet_amount)
            prediction = to_decimal(predicted_multiplier)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        if bet <= 0:
            raise ValidationError("Bet must be positive")
        if bet != bet.quantize(Decimal("0.01")):
            raise ValidationError("Bet has more than 2 decimal places")

        low, high = self._config.min_prediction, self._config.max_prediction
        if not (low <= prediction <= high):
            raise ValidationError(f"Predicted multiplier must be within [{low}, {high}], got {prediction}")

        return address, bet, prediction

    # =====================================================
    # START: WAITING -> STARTING -> ACTIVE
    # =====================================================

    async def on_start_timer_fire(self) -> None:
        async with self._lock:
            self._timers.pop(START, None)
            rnd = self._ledger.current
            if rnd.status != RoundStatus.WAITING:
                logger.warning(f"Round {rnd.round_id}: start timer fired in {rnd.status.value}, ignoring")
                return
            self._transition(RoundStatus.STARTING)
            round_id = rnd.round_id

        await self._open_session(round_id, attempt=1)

    async def _open_session(self, round_id: str, attempt: int) -> None:
        async with self._lock:
            rnd = self._expect(round_id, RoundStatus.STARTING)
            if rnd is None:
                return
            self._timers.pop(RETRY, None)
            debits = {p.address: p.bet_amount for p in rnd.participants}

        # --- outside the lock ---
        try:
            session_id = await self._collaborator.open_session(list(debits), debits)
            try:
                await self._collaborator.collect_signatures(session_id, self._config.signature_timeout_ms)
            except Exception:
                await self._collaborator.end_session(session_id)
                raise
        except Exception as e:
            await self._on_collaborator_failure(round_id, RoundStatus.STARTING, attempt, e, self._open_session)
            return

        async with self._lock:
            rnd = self._expect(round_id, RoundStatus.STARTING)
            if rnd is not None:
                rnd.session_id = session_id
                for address in self._ledger.lock_bets(debits):
                    logger.warning(f"Round {round_id}: {address} joined after the session opened, bet dropped")
                self._activate(rnd)
                return

        logger.warning(f"Round {round_id}: session {session_id} confirmed for a stale round, ending it")
        await self._collaborator.end_session(session_id)

    def _activate(self, rnd: Round) -> None:
        self._transition(RoundStatus.ACTIVE)
        rnd.started_at = time.time()
        self._flight_started = self._scheduler.now()

        # Never before this point: participants have locked in their predictions
        self._sealed_crash_point = self._fairness.crash_point(rnd.commitment)

        flight = flight_duration_ms(self._sealed_crash_point, self._config.speed_factor)
        self._arm(END, max(flight, self._config.min_flight_ms), self.on_end_timer_fire)

    # =====================================================
    # END: ACTIVE -> CRASHED -> SETTLING -> RESET_PENDING
    # =====================================================

    async def on_end_timer_fire(self) -> None:
        async with self._lock:
            self._timers.pop(END, None)
            rnd = self._ledger.current
            if rnd.status != RoundStatus.ACTIVE:
                logger.warning(f"Round {rnd.round_id}: end timer fired in {rnd.status.value}, ignoring")
                return

            self._ledger.set_crash_point(self._sealed_crash_point)
            logger.info(f"Round {rnd.round_id}: CRASHED at {format_multiplier(rnd.crash_point)}")
            self._transition(RoundStatus.SETTLING)

            payouts = self._ledger.compute_and_assign_payouts()
            self._credits = {address: amount for address, amount in payouts.items() if amount > 0}
            round_id = rnd.round_id

        await self._finalize_settlement(round_id, attempt=1)

    async def _finalize_settlement(self, round_id: str, attempt: int) -> None:
        async with self._lock:
            rnd = self._expect(round_id, RoundStatus.SETTLING)
            if rnd is None:
                return
            self._timers.pop(RETRY, None)
            session_id, credits = rnd.session_id, dict(self._credits)

        try:
            await self._collaborator.finalize_settlement(session_id, credits)
        except Exception as e:
            await self._on_collaborator_failure(round_id, RoundStatus.SETTLING, attempt, e, self._finalize_settlement)
            return

        async with self._lock:
            rnd = self._expect(round_id, RoundStatus.SETTLING)
            if rnd is None:
                return
            self._transition(RoundStatus.RESET_PENDING)
            self._arm(RESET, self._config.reset_delay_ms, self.on_reset_timer_fire)

        await self._collaborator.end_session(session_id)

    # =====================================================
    # RESET
    # =====================================================

    async def on_reset_timer_fire(self) -> None:
        async with self._lock:
            self._timers.pop(RESET, None)
            rnd = self._ledger.current
            if rnd.status != RoundStatus.RESET_PENDING:
                logger.warning(f"Round {rnd.round_id}: reset timer fired in {rnd.status.value}, ignoring")
                return
            self._reset_locked()

    def _reset_locked(self) -> None:
        for name in list(self._timers):
            self._scheduler.cancel(self._timers.pop(name))

        previous = self._ledger.reset()
        self._history.append(previous)
        self._sealed_crash_point = None
        self._flight_started = None
        self._credits = {}

        current = self._ledger.current
        logger.info(
            f"Round {previous.round_id} archived ({previous.status.value}); "
            f"round {current.round_id} WAITING, seed hash {current.commitment.server_seed_hash[:16]}..."
        )

    # =====================================================
    # FAILURES
    # =====================================================

    async def _on_collaborator_failure(
        self,
        round_id: str,
        expected: RoundStatus,
        attempt: int,
        error: Exception,
        retry: Callable[[str, int], Awaitable[None]],
    ) -> None:
        if not isinstance(error, CollaboratorError):
            logger.error(f"Round {round_id}: unexpected collaborator error in {expected.value} step", exc_info=error)

        if attempt < 2:
            logger.warning(
                f"Round {round_id}: collaborator rejected {expected.value} step "
                f"(attempt {attempt}): {error}. Retrying in {self._config.retry_backoff_ms}ms"
            )
            async with self._lock:
                if self._expect(round_id, expected) is None:
                    return

                async def _retry() -> None:
                    await retry(round_id, attempt + 1)

                self._arm(RETRY, self._config.retry_backoff_ms, _retry)
            return

        logger.error(f"Round {round_id}: collaborator rejected {expected.value} step again: {error}. Failing round")
        await self._fail_round(round_id, expected, f"{type(error).__name__}: {error}")

    async def _fail_round(self, round_id: str, expected: RoundStatus, reason: str) -> None:
        async with self._lock:
            rnd = self._expect(round_id, expected)
            if rnd is None:
                return
            session_id = rnd.session_id
            rnd.failure_reason = reason
            self._transition(RoundStatus.FAILED)
            self._reset_locked()

        # Refunds belong to the collaborator; ending the session lets it unwind
        if session_id is not None:
            await self._collaborator.end_session(session_id)

    # =====================================================
    # HELPERS
    # =====================================================

    def _arm(self, name: str, delay_ms: int, callback: Callable[[], Awaitable[None]]) -> None:
        self._scheduler.cancel(self._timers.get(name))
        self._timers[name] = self._scheduler.schedule(delay_ms, callback, name=name)
        logger.info(f"Round {self._ledger.current.round_id}: {name} timer armed ({delay_ms}ms)")

    def _transition(self, target: RoundStatus) -> None:
        rnd = self._ledger.current
        source = rnd.status
        self._ledger.advance(target)
        logger.info(f"Round {rnd.round_id}: {source.value} -> {target.value}")

    def _expect(self, round_id: str, status: RoundStatus) -> Optional[Round]:
        """Current round if it is still `round_id` in `status`, else None (stale)."""
        rnd = self._ledger.current
        if rnd.round_id != round_id or rnd.status != status:
            logger.info(
                f"Discarding stale result for round {round_id} ({status.value}); "
                f"current is {rnd.round_id} ({rnd.status.value})"
            )
            return None
        return rnd

    async def shutdown(self) -> None:
        async with self._lock:
            for name in list(self._timers):
                self._scheduler.cancel(self._timers.pop(name))

    # =====================================================
    # READ MODELS
    # =====================================================

    def live_multiplier(self) -> Decimal:
        rnd = self._ledger.current
        if rnd.status in REVEALED:
            return rnd.crash_point
        if rnd.status != RoundStatus.ACTIVE or self._flight_started is None:
            return Decimal("1.00")

        elapsed_ms = (self._scheduler.now() - self._flight_started) * 1000
        current = multiplier_at_ms(elapsed_ms, self._config.speed_factor)
        # Hold just below the crash until the end timer reveals it
        return min(current, self._sealed_crash_point)

    def snapshot(self, viewer: Optional[str] = None) -> Dict[str, Any]:
        """
        Public view of the current round. Other players' bets stay hidden and
        the crash point / server seed stay sealed until the crash.
        """
        rnd = self._ledger.current
        revealed = rnd.status in REVEALED
        viewer = viewer.strip().lower() if viewer else None

        return {
            "roundId": rnd.round_id,
            "status": rnd.status.value,
            "acceptingBets": rnd.status in JOINABLE,
            "participants": [
                p.to_dict(reveal_bet=revealed or p.address == viewer) for p in rnd.participants
            ],
            "multiplier": float(self.live_multiplier()),
            "crashPoint": float(rnd.crash_point) if revealed else None,
            "nonce": rnd.nonce,
            "serverSeedHash": rnd.commitment.server_seed_hash,
            "serverSeed": rnd.commitment.server_seed if revealed else None,
            "droppedAddresses": list(rnd.dropped_addresses),
            "startedAt": format_timestamp(rnd.started_at),
            "crashedAt": format_timestamp(rnd.crashed_at),
        }

    def history(self) -> List[Dict[str, Any]]:
        return [rnd.summary() for rnd in reversed(self._history)]

    def find_round(self, round_id: str) -> Optional[Round]:
        for rnd in self._history:
            if rnd.round_id == round_id:
                return rnd
        return None
