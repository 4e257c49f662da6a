from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from decimal import Decimal

from app.core.money import from_cents
from app.modules.accounts.models import Account, AccountType, AccountStatusEnum


class WalletOpenRequest(BaseModel):
    """Request to open the user's wallet"""
    currency: str = Field("USD", min_length=3, max_length=3)


class AccountResponse(BaseModel):
    id: int
    user_id: Optional[int] = None
    account_type: AccountType
    currency: str
    balance: Decimal
    account_status: AccountStatusEnum
    created_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            user_id=account.user_id,
            account_type=account.account_type,
            currency=account.currency,
            balance=from_cents(account.balance_cents),
            account_status=account.account_status,
            created_at=account.created_at
        )


class BalanceResponse(BaseModel):
    account_id: int
    balance: Decimal
    currency: str
