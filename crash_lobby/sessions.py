# sessions.py
"""
Session / settlement collaborator.

SessionCollaborator is the capability set the coordinator needs from the
state-channel SDK:
- open_session: lock bets as balance debits
- collect_signatures: wait until every participant has signed
- finalize_settlement: apply payouts as balance credits
- end_session: close the session (the backend unwinds unsettled debits)

LedgerSessionBackend implements it on top of the local SQL ledger in db.py,
using compensating transactions when a session cannot be opened cleanly.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Dict, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crash_lobby import db
from crash_lobby.db import SessionStatus, TransactionType
from crash_lobby.errors import SessionError, SettlementError, SignatureTimeoutError
from crash_lobby.utils import format_balance, generate_unique_id

logger = logging.getLogger("crash_lobby.sessions")


class SessionCollaborator:
    """Interface to the external session / settlement library."""

    async def open_session(self, participants: Sequence[str], balance_debits: Dict[str, Decimal]) -> str:
        """Returns a session id, or raises SessionError."""
        raise NotImplementedError

    async def collect_signatures(self, session_id: str, timeout_ms: int) -> None:
        """Raises SignatureTimeoutError if signatures are missing after timeout_ms."""
        raise NotImplementedError

    async def finalize_settlement(self, session_id: str, balance_credits: Dict[str, Decimal]) -> None:
        """Raises SettlementError."""
        raise NotImplementedError

    async def end_session(self, session_id: str) -> None:
        raise NotImplementedError


class LedgerSessionBackend(SessionCollaborator):
    """
    Standalone backend: accounts live in the local database and sign
    implicitly, so collect_signatures() only checks the session is live.
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def balance_of(self, address: str) -> Decimal:
        async with self._sessionmaker() as session:
            account = await db.get_or_create_account(session, address)
            return account.balance

    async def open_session(self, participants: Sequence[str], balance_debits: Dict[str, Decimal]) -> str:
        session_id = generate_unique_id(12)

        try:
            async with self._sessionmaker() as session:
                session.add(db.SettlementSession(id=session_id, status=SessionStatus.OPEN))
                await session.commit()

                # SAGA: debit everyone, refund the ones already taken if any debit fails
                debited: Dict[str, Decimal] = {}
                for address in participants:
                    amount = balance_debits.get(address, Decimal("0"))
                    try:
                        account = await db.get_or_create_account(session, address)
                        await db.debit(session, account, amount, session_id, reference="bet_entry")
                    except (ValueError, SQLAlchemyError) as e:
                        await session.rollback()
                        logger.warning(f"Session {session_id}: debit failed for {address} ({e}). Rolling back {len(debited)} debits.")
                        await self._refund_debits(session, session_id, debited, reference="bet_refund_open_failed")
                        await self._set_status(session, session_id, SessionStatus.CLOSED)
                        raise SessionError(f"Could not debit {address}: {e}") from e
                    debited[address] = amount
        except SQLAlchemyError as e:
            logger.error(f"Session {session_id}: database error while opening: {e}")
            raise SessionError(f"Session {session_id} could not be opened: {e}") from e

        logger.info(f"Session {session_id} opened with {len(debited)} debits")
        return session_id

    async def collect_signatures(self, session_id: str, timeout_ms: int) -> None:
        try:
            async with self._sessionmaker() as session:
                record = await db.get_settlement_session(session, session_id)
                if record is None:
                    raise SessionError(f"Unknown session {session_id}")
                if record.status != SessionStatus.OPEN:
                    raise SignatureTimeoutError(f"Session {session_id} is {record.status.value}, cannot collect signatures")
                record.status = SessionStatus.SIGNED
                await session.commit()
        except SQLAlchemyError as e:
            raise SessionError(f"Session {session_id}: could not record signatures: {e}") from e

    async def finalize_settlement(self, session_id: str, balance_credits: Dict[str, Decimal]) -> None:
        try:
            async with self._sessionmaker() as session:
                record = await db.get_settlement_session(session, session_id)
                if record is None or record.status != SessionStatus.SIGNED:
                    state = record.status.value if record else "missing"
                    raise SettlementError(f"Session {session_id} cannot be settled (status: {state})")

                for address, amount in balance_credits.items():
                    if amount <= 0:
                        continue
                    account = await db.get_or_create_account(session, address)
                    account = await db.credit(session, account, amount, session_id, reference="round_win")
                    logger.info(f"Session {session_id}: credited {address} {format_balance(amount)} (balance {format_balance(account.balance)})")

                await self._set_status(session, session_id, SessionStatus.SETTLED)
        except SQLAlchemyError as e:
            logger.error(f"Session {session_id}: database error while settling: {e}")
            raise SettlementError(f"Session {session_id} could not be settled: {e}") from e

    async def end_session(self, session_id: str) -> None:
        """
        Close the session. Bets of a session that never settled are refunded
        here; the coordinator relies on this for failed rounds.
        """
        try:
            async with self._sessionmaker() as session:
                record = await db.get_settlement_session(session, session_id)
                if record is None or record.status == SessionStatus.CLOSED:
                    return

                if record.status != SessionStatus.SETTLED:
                    bets = await db.list_session_transactions(session, session_id, TransactionType.BET)
                    debited = {tx.account.address: -tx.amount for tx in bets}
                    await self._refund_debits(session, session_id, debited, reference="bet_refund_unsettled")
                    logger.info(f"Session {session_id} ended unsettled, refunded {len(debited)} bets")

                await self._set_status(session, session_id, SessionStatus.CLOSED)
        except SQLAlchemyError as e:
            logger.error(f"Session {session_id}: database error while ending: {e}")
            raise SessionError(f"Session {session_id} could not be ended: {e}") from e

    async def _refund_debits(
        self,
        session: AsyncSession,
        session_id: str,
        debited: Dict[str, Decimal],
        reference: Optional[str] = None,
    ) -> None:
        for address, amount in debited.items():
            account = await db.get_or_create_account(session, address)
            await db.refund(session, account, amount, session_id, reference)

    async def _set_status(self, session: AsyncSession, session_id: str, status: SessionStatus) -> None:
        record = await db.get_settlement_session(session, session_id)
        record.status = status
        await session.commit()
