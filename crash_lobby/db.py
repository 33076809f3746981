# db.py
"""
Database Layer – local account ledger

Responsibilities:
- Async database engine & session lifecycle
- Account persistence (keyed by wallet address)
- Ledger-safe balance management (Decimal arithmetic)
- Settlement session records, transactions linked to them
- Append-only transaction history

Used by sessions.LedgerSessionBackend, the standalone stand-in for the
external state-channel SDK.
"""

from __future__ import annotations

import enum
import os
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    func,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)

# =====================================================
# CONFIG
# =====================================================

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite+aiosqlite:///./crash_lobby.db"
)

# Default starting balance for accounts seen for the first time
STARTING_BALANCE = Decimal(os.getenv("STARTING_BALANCE", "1000.00"))

DB_ECHO = os.getenv("DB_ECHO", "").lower() in ("1", "true", "yes")


# =====================================================
# BASE
# =====================================================

class Base(DeclarativeBase):
    pass


# =====================================================
# ENUMS
# =====================================================

class TransactionType(str, enum.Enum):
    BET = "bet"
    WIN = "win"
    REFUND = "refund"
    DEPOSIT = "deposit"


class SessionStatus(str, enum.Enum):
    OPEN = "open"        # Debits applied, waiting for signatures
    SIGNED = "signed"    # Bets locked
    SETTLED = "settled"  # Credits applied
    CLOSED = "closed"    # Ended; unsettled sessions are refunded first


# =====================================================
# MODELS
# =====================================================

class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    address: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        index=True,
        nullable=False,
    )

    # 18 digits total, 2 after decimal
    balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
        default=STARTING_BALANCE,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


class SettlementSession(Base):
    __tablename__ = "settlement_sessions"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )

    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus, name="session_status"),
        nullable=False,
        default=SessionStatus.OPEN,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    transactions: Mapped[List["Transaction"]] = relationship(
        back_populates="session",
        lazy="selectin",
    )


class Transaction(Base):
    """
    Immutable ledger record (append-only).
    Links balance movement to a settlement session.
    """

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, name="transaction_type"),
        nullable=False,
    )

    # Signed amount: -10.00 for bet, +20.00 for win
    amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
    )

    balance_after: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
    )

    session_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("settlement_sessions.id"),
        nullable=True,
        index=True,
    )

    reference: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    account: Mapped[Account] = relationship(lazy="selectin")
    session: Mapped[Optional[SettlementSession]] = relationship(back_populates="transactions")


# =====================================================
# ENGINE & SESSION
# =====================================================

def create_engine(url: str = DATABASE_URL, echo: bool = DB_ECHO) -> AsyncEngine:
    return create_async_engine(
        url,
        echo=echo,
        # SSL is required for hosted Postgres
        connect_args={"ssl": "require"} if "postgresql" in url else {},
    )


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """
    Creates all tables. Safe to run on every startup.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# =====================================================
# REPOSITORY HELPERS
# =====================================================

async def get_account(session: AsyncSession, address: str) -> Optional[Account]:
    result = await session.execute(
        select(Account).where(Account.address == address)
    )
    return result.scalar_one_or_none()


async def get_or_create_account(session: AsyncSession, address: str) -> Account:
    """
    Fetches an account or creates one with the starting balance.
    """
    account = await get_account(session, address)
    if account:
        return account

    account = Account(address=address, balance=STARTING_BALANCE)
    session.add(account)

    try:
        await session.commit()
        await session.refresh(account)
        return account
    except IntegrityError:
        # Created in parallel by another request
        await session.rollback()
        return await get_or_create_account(session, address)


async def apply_transaction(
    session: AsyncSession,
    account: Account,
    amount: Decimal,
    tx_type: TransactionType,
    session_id: Optional[str] = None,
    reference: Optional[str] = None,
) -> Account:
    """
    Atomic balance update + immutable ledger entry.

    Args:
        amount: the raw signed change to apply (negative for debits).

    Raises:
        ValueError: the balance would go negative.
    """
    # Row lock (Postgres/MySQL; ignored on SQLite)
    result = await session.execute(
        select(Account).where(Account.id == account.id).with_for_update()
    )
    account_locked = result.scalar_one()

    amount_quantized = amount.quantize(Decimal("0.01"))
    new_balance = account_locked.balance + amount_quantized

    if new_balance < 0:
        raise ValueError("Insufficient balance")

    account_locked.balance = new_balance
    account_locked.updated_at = datetime.now()

    tx = Transaction(
        account_id=account_locked.id,
        type=tx_type,
        amount=amount_quantized,
        balance_after=new_balance,
        session_id=session_id,
        reference=reference,
    )

    session.add(tx)
    await session.commit()
    await session.refresh(account_locked)

    return account_locked


# =====================================================
# CONVENIENCE WRAPPERS
# =====================================================

async def debit(
    session: AsyncSession,
    account: Account,
    amount: Decimal,
    session_id: Optional[str] = None,
    reference: Optional[str] = None,
) -> Account:
    """Deducts a bet."""
    return await apply_transaction(
        session, account, -abs(amount), TransactionType.BET, session_id, reference
    )


async def credit(
    session: AsyncSession,
    account: Account,
    amount: Decimal,
    session_id: Optional[str] = None,
    reference: Optional[str] = None,
) -> Account:
    """Pays out a win."""
    return await apply_transaction(
        session, account, abs(amount), TransactionType.WIN, session_id, reference
    )


async def refund(
    session: AsyncSession,
    account: Account,
    amount: Decimal,
    session_id: Optional[str] = None,
    reference: Optional[str] = None,
) -> Account:
    """Returns a bet that was never settled."""
    return await apply_transaction(
        session, account, abs(amount), TransactionType.REFUND, session_id, reference
    )


async def get_settlement_session(session: AsyncSession, session_id: str) -> Optional[SettlementSession]:
    return await session.get(SettlementSession, session_id)


async def list_session_transactions(
    session: AsyncSession,
    session_id: str,
    tx_type: Optional[TransactionType] = None,
) -> List[Transaction]:
    query = select(Transaction).where(Transaction.session_id == session_id)
    if tx_type is not None:
        query = query.where(Transaction.type == tx_type)
    result = await session.execute(query.order_by(Transaction.id))
    return list(result.scalars().all())
