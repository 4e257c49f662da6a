from pydantic import BaseModel
from decimal import Decimal
from typing import List

from app.modules.fees.engine import WithdrawalMethod


class TransferFeeQuote(BaseModel):
    """Fee breakdown for a peer transfer"""
    amount: Decimal
    fee: Decimal
    recipient_receives: Decimal
    admin_receives: Decimal
    total_debited: Decimal

    class Config:
        from_attributes = True


class WithdrawalFeeQuote(BaseModel):
    method: WithdrawalMethod
    amount: Decimal
    fee: Decimal
    total_debited: Decimal


class LockingOptionResponse(BaseModel):
    months: int
    label: str
    interest_rate: Decimal
    description: str

    class Config:
        from_attributes = True


class LockingOptionsResponse(BaseModel):
    options: List[LockingOptionResponse]
