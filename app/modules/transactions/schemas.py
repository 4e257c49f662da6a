from pydantic import BaseModel, EmailStr, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any

from app.core.money import from_cents
from app.modules.fees.engine import WithdrawalMethod
from app.modules.transactions.models import Transaction, TransactionType, TransactionStatus


class DepositRequest(BaseModel):
    """Deposit from a saved payment method"""
    amount: Decimal = Field(..., description="Amount in dollars, $1.00 - $10,000.00")
    method_ref: str = Field(..., min_length=1, max_length=255, description="Processor payment-method token")


class WithdrawalRequest(BaseModel):
    amount: Decimal
    method: WithdrawalMethod = WithdrawalMethod.STANDARD


class TransferRequest(BaseModel):
    """Peer transfer to another user's wallet"""
    recipient_email: EmailStr
    amount: Decimal
    description: Optional[str] = Field(None, max_length=500)


class TransactionResponse(BaseModel):
    id: int
    reference_code: str
    account_id: int
    counterpart_account_id: Optional[int] = None
    counterpart_email: Optional[str] = None
    transaction_type: TransactionType
    status: TransactionStatus
    amount: Decimal
    fee: Decimal
    currency: str
    external_reference: Optional[str] = None
    parent_transaction_id: Optional[int] = None
    details: Dict[str, Any]
    description: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @classmethod
    def from_transaction(cls, txn: Transaction) -> "TransactionResponse":
        return cls(
            id=txn.id,
            reference_code=txn.reference_code,
            account_id=txn.account_id,
            counterpart_account_id=txn.counterpart_account_id,
            counterpart_email=txn.counterpart_email,
            transaction_type=txn.transaction_type,
            status=txn.status,
            amount=from_cents(txn.amount_cents),
            fee=from_cents(txn.fee_cents),
            currency=txn.currency,
            external_reference=txn.external_reference,
            parent_transaction_id=txn.parent_transaction_id,
            details=txn.details or {},
            description=txn.description,
            failure_reason=txn.failure_reason,
            created_at=txn.created_at,
            completed_at=txn.completed_at,
            failed_at=txn.failed_at
        )


class TransactionListResponse(BaseModel):
    transactions: List[TransactionResponse]
    limit: int
    offset: int
