from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.dependencies import get_current_active_user, get_current_wallet
from app.modules.accounts import schemas
from app.modules.accounts.ledger import LedgerStore
from app.modules.accounts.models import Account
from app.modules.users.models import User

router = APIRouter(prefix="/api/v1/accounts", tags=["accounts"])


@router.post("/wallet", response_model=schemas.AccountResponse, status_code=status.HTTP_201_CREATED)
async def open_wallet(
    request: schemas.WalletOpenRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user)
):
    """
    Open the current user's wallet.

    - One wallet per user; opening again returns the existing wallet
    - Starts with a zero balance
    """
    ledger = LedgerStore(db)
    wallet = await ledger.atomic(
        lambda: ledger.open_wallet(current_user.id, request.currency.upper()),
        operation="open_wallet"
    )
    return schemas.AccountResponse.from_account(wallet)


@router.get("/wallet", response_model=schemas.AccountResponse)
async def get_wallet(wallet: Account = Depends(get_current_wallet)):
    return schemas.AccountResponse.from_account(wallet)


@router.get("/wallet/balance", response_model=schemas.BalanceResponse)
async def get_balance(
    wallet: Account = Depends(get_current_wallet),
    db: AsyncSession = Depends(get_db)
):
    """Current wallet balance"""
    balance = await LedgerStore(db).get_balance(wallet.id)
    return schemas.BalanceResponse(account_id=wallet.id, balance=balance, currency=wallet.currency)
