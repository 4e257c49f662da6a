from sqlalchemy import Column, Integer, BigInteger, String, ForeignKey, DateTime, Text, JSON, Enum as SQLEnum
from sqlalchemy.sql import func
from app.core.clock import utcnow
from app.core.database import Base
import enum


class TransactionType(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"
    GEOFENCE = "geofence"
    SAVINGS = "savings"
    REFUND = "refund"
    DISPUTE = "dispute"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Transaction(Base):
    """
    Immutable audit record of one logical balance-changing operation.

    Once completed, amount/fee/type never change; only the processor part of
    `details` may be extended, and refunds/disputes link back through
    parent_transaction_id.
    """
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    reference_code = Column(String(20), unique=True, nullable=False, index=True)

    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    counterpart_account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)
    counterpart_email = Column(String(255), nullable=True)

    transaction_type = Column(SQLEnum(TransactionType), nullable=False, index=True)
    status = Column(SQLEnum(TransactionStatus), default=TransactionStatus.PENDING, nullable=False, index=True)

    amount_cents = Column(BigInteger, nullable=False)
    fee_cents = Column(BigInteger, default=0, nullable=False)
    currency = Column(String(3), default="USD", nullable=False)

    # Dedup keys: caller idempotency key and payment-processor reference
    idempotency_key = Column(String(255), unique=True, nullable=True)
    external_reference = Column(String(255), unique=True, nullable=True, index=True)

    parent_transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)

    details = Column(JSON, nullable=False, default=dict)
    details_version = Column(Integer, default=1, nullable=False)
    description = Column(String(500), nullable=True)
    failure_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Transaction(id={self.id}, type={self.transaction_type}, status={self.status})>"
