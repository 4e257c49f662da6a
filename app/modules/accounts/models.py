from sqlalchemy import Column, Integer, BigInteger, Boolean, String, ForeignKey, DateTime, CheckConstraint, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.core.clock import utcnow
from app.core.database import Base
import enum


class AccountType(str, enum.Enum):
    """Account type enumeration"""
    WALLET = "wallet"
    FEE_COLLECTION = "fee_collection"
    GEOFENCE_ESCROW = "geofence_escrow"
    SAVINGS_ESCROW = "savings_escrow"
    INTEREST_EXPENSE = "interest_expense"


SYSTEM_ACCOUNT_TYPES = (
    AccountType.FEE_COLLECTION,
    AccountType.GEOFENCE_ESCROW,
    AccountType.SAVINGS_ESCROW,
    AccountType.INTEREST_EXPENSE,
)

# Funds savings interest; its balance runs negative by the interest paid out
OVERDRAFT_ACCOUNT_TYPES = (AccountType.INTEREST_EXPENSE,)


class AccountStatusEnum(str, enum.Enum):
    """Account status"""
    ACTIVE = "active"
    FROZEN = "frozen"
    CLOSED = "closed"


class Account(Base):
    """
    Ledger account.

    Balance is held in integer minor units and is only ever changed through
    LedgerStore.atomic_adjust. System accounts (fees, escrow, interest) have no
    owner; only the interest-expense account may go below zero.
    """
    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("allow_negative OR balance_cents >= 0", name="ck_accounts_balance_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    account_type = Column(SQLEnum(AccountType), default=AccountType.WALLET, nullable=False, index=True)
    currency = Column(String(3), default="USD", nullable=False)
    balance_cents = Column(BigInteger, default=0, nullable=False)
    version = Column(Integer, default=0, nullable=False)
    allow_negative = Column(Boolean, default=False, nullable=False)

    account_status = Column(SQLEnum(AccountStatusEnum), default=AccountStatusEnum.ACTIVE, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

    user = relationship("User", back_populates="accounts")

    def __repr__(self):
        return f"<Account(id={self.id}, type={self.account_type}, balance_cents={self.balance_cents})>"
