from decimal import Decimal

from sqlalchemy import Column, Integer, BigInteger, String, ForeignKey, DateTime, Enum as SQLEnum
from sqlalchemy.sql import func
from app.core.clock import utcnow
from app.core.database import Base
import enum


class SavingsLockState(str, enum.Enum):
    ACTIVE = "active"
    MATURED = "matured"            # term elapsed, funds claimable
    WITHDRAWN = "withdrawn"        # principal + interest paid out
    BROKEN_EARLY = "broken_early"  # net of penalty paid out


class SavingsLock(Base):
    """
    Time-locked savings deposit.

    Principal sits in the savings escrow account until the lock is withdrawn
    at term or broken early.
    """
    __tablename__ = "savings_locks"

    id = Column(Integer, primary_key=True, index=True)
    owner_account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)

    principal_cents = Column(BigInteger, nullable=False)
    currency = Column(String(3), default="USD", nullable=False)
    interest_rate_bps = Column(Integer, nullable=False)  # annual, 300 = 3.00%
    term_months = Column(Integer, nullable=False)
    duration_days = Column(Integer, nullable=False)

    locked_at = Column(DateTime(timezone=True), nullable=False)
    unlocks_at = Column(DateTime(timezone=True), nullable=False, index=True)

    state = Column(SQLEnum(SavingsLockState), default=SavingsLockState.ACTIVE, nullable=False, index=True)

    # Amounts paid out on resolution
    interest_paid_cents = Column(BigInteger, nullable=True)
    penalty_cents = Column(BigInteger, nullable=True)

    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    release_transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    matured_at = Column(DateTime(timezone=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def interest_rate(self) -> Decimal:
        return Decimal(self.interest_rate_bps) / Decimal(10000)

    def __repr__(self):
        return f"<SavingsLock(id={self.id}, state={self.state}, principal_cents={self.principal_cents})>"
