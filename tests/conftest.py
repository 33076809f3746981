from decimal import Decimal
from typing import Dict, List, Sequence, Tuple

import pytest

from crash_lobby.config import GameConfig
from crash_lobby.coordinator import LobbyCoordinator
from crash_lobby.errors import SessionError, SettlementError, SignatureTimeoutError
from crash_lobby.fairness import ProvablyFair, SeedCommitment
from crash_lobby.scheduler import ManualScheduler
from crash_lobby.sessions import SessionCollaborator


class FakeCollaborator(SessionCollaborator):
    """Records every call; failures are queued per method."""

    def __init__(self) -> None:
        self.calls: List[Tuple] = []
        self.fail_open = 0
        self.fail_signatures = 0
        self.fail_settlement = 0
        self.opened: Dict[str, Dict[str, Decimal]] = {}
        self.settled: Dict[str, Dict[str, Decimal]] = {}
        self.ended: List[str] = []
        self._next = 0

    async def open_session(self, participants: Sequence[str], balance_debits: Dict[str, Decimal]) -> str:
        self.calls.append(("open_session", list(participants), dict(balance_debits)))
        if self.fail_open:
            self.fail_open -= 1
            raise SessionError("participant refused")
        self._next += 1
        session_id = f"session-{self._next}"
        self.opened[session_id] = dict(balance_debits)
        return session_id

    async def collect_signatures(self, session_id: str, timeout_ms: int) -> None:
        self.calls.append(("collect_signatures", session_id, timeout_ms))
        if self.fail_signatures:
            self.fail_signatures -= 1
            raise SignatureTimeoutError("missing signatures")

    async def finalize_settlement(self, session_id: str, balance_credits: Dict[str, Decimal]) -> None:
        self.calls.append(("finalize_settlement", session_id, dict(balance_credits)))
        if self.fail_settlement:
            self.fail_settlement -= 1
            raise SettlementError("settlement rejected")
        self.settled[session_id] = dict(balance_credits)

    async def end_session(self, session_id: str) -> None:
        self.calls.append(("end_session", session_id))
        self.ended.append(session_id)

    def names(self) -> List[str]:
        return [call[0] for call in self.calls]


class FixedCrash(ProvablyFair):
    """Real seed commitments, pinned crash point."""

    def __init__(self, config: GameConfig, crash_point: str = "1.50") -> None:
        super().__init__(config)
        self.value = Decimal(crash_point)
        self.derived: List[int] = []

    def crash_point(self, commitment: SeedCommitment) -> Decimal:
        self.derived.append(commitment.nonce)
        return self.value


@pytest.fixture()
def config() -> GameConfig:
    return GameConfig(
        min_participants=1,
        start_delay_ms=10_000,
        reset_delay_ms=5_000,
        retry_backoff_ms=2_000,
        signature_timeout_ms=15_000,
        min_flight_ms=300,
        history_size=10,
    )


@pytest.fixture()
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture()
def collaborator() -> FakeCollaborator:
    return FakeCollaborator()


@pytest.fixture()
def fairness(config) -> FixedCrash:
    return FixedCrash(config, "1.50")


@pytest.fixture()
def coordinator(collaborator, scheduler, config, fairness) -> LobbyCoordinator:
    return LobbyCoordinator(collaborator, scheduler, config, fairness)
