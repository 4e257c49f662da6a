from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from app.core.money import from_cents
from app.modules.savings.models import SavingsLock, SavingsLockState
from app.modules.savings.services import check_maturity, value_lock


class SavingsLockCreateRequest(BaseModel):
    amount: Decimal
    term_months: int = Field(..., description="One of 3, 6, 9, 12, 18, 24")


class SavingsLockResponse(BaseModel):
    id: int
    owner_account_id: int
    principal: Decimal
    currency: str
    interest_rate: Decimal
    term_months: int
    duration_days: int
    locked_at: datetime
    unlocks_at: datetime
    state: SavingsLockState
    current_value: Decimal
    projected_interest: Decimal
    maturity_value: Decimal
    days_remaining: int
    interest_paid: Optional[Decimal] = None
    penalty: Optional[Decimal] = None
    transaction_id: Optional[int] = None
    release_transaction_id: Optional[int] = None
    resolved_at: Optional[datetime] = None

    @classmethod
    def from_lock(cls, lock: SavingsLock, now: datetime) -> "SavingsLockResponse":
        valuation = value_lock(lock, now)
        return cls(
            id=lock.id,
            owner_account_id=lock.owner_account_id,
            principal=valuation.principal,
            currency=lock.currency,
            interest_rate=lock.interest_rate,
            term_months=lock.term_months,
            duration_days=lock.duration_days,
            locked_at=lock.locked_at,
            unlocks_at=lock.unlocks_at,
            state=check_maturity(lock, now),
            current_value=valuation.current_value,
            projected_interest=valuation.projected_interest,
            maturity_value=valuation.maturity_value,
            days_remaining=valuation.days_remaining,
            interest_paid=from_cents(lock.interest_paid_cents) if lock.interest_paid_cents is not None else None,
            penalty=from_cents(lock.penalty_cents) if lock.penalty_cents is not None else None,
            transaction_id=lock.transaction_id,
            release_transaction_id=lock.release_transaction_id,
            resolved_at=lock.resolved_at
        )


class SavingsLockListResponse(BaseModel):
    locks: List[SavingsLockResponse]
    total_locked: Decimal


class SweepResponse(BaseModel):
    count: int
    ids: List[int]
