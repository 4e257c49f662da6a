from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from app.core.database import get_db
from app.core.dependencies import get_current_wallet
from app.modules.accounts.models import Account
from app.modules.notifications.services import NotificationSink, get_notifier
from app.modules.payments.processor import PaymentProcessor, get_payment_processor
from app.modules.transactions import schemas
from app.modules.transactions.services import TransferService

router = APIRouter(prefix="/api/v1/transactions", tags=["transactions"])


def get_transfer_service(
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
    notifier: NotificationSink = Depends(get_notifier)
) -> TransferService:
    return TransferService(db, processor=processor, notifier=notifier)


@router.post("/deposit", response_model=schemas.TransactionResponse, status_code=status.HTTP_201_CREATED)
async def deposit(
    request: schemas.DepositRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    wallet: Account = Depends(get_current_wallet),
    service: TransferService = Depends(get_transfer_service)
):
    """
    Deposit funds from a saved payment method.

    - No fee
    - Between $1.00 and $10,000.00
    - Status is `pending` until the processor confirms the capture
    """
    txn = await service.deposit(wallet.id, request.amount, request.method_ref, idempotency_key)
    return schemas.TransactionResponse.from_transaction(txn)


@router.post("/withdraw", response_model=schemas.TransactionResponse, status_code=status.HTTP_201_CREATED)
async def withdraw(
    request: schemas.WithdrawalRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    wallet: Account = Depends(get_current_wallet),
    service: TransferService = Depends(get_transfer_service)
):
    """
    Withdraw to a bank account or card.

    - standard: free, settles in 1-3 business days
    - card: $1.00
    - instant: $1.50
    """
    txn = await service.withdraw(wallet.id, request.amount, request.method, idempotency_key)
    return schemas.TransactionResponse.from_transaction(txn)


@router.post("/transfer", response_model=schemas.TransactionResponse, status_code=status.HTTP_201_CREATED)
async def transfer(
    request: schemas.TransferRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    wallet: Account = Depends(get_current_wallet),
    service: TransferService = Depends(get_transfer_service)
):
    """
    Send money to another user by email.

    - 2% fee paid by the sender on top of the amount
    - Recipient receives the full amount
    """
    txn = await service.transfer_to_email(
        wallet.id, request.recipient_email, request.amount, idempotency_key, request.description
    )
    return schemas.TransactionResponse.from_transaction(txn)


@router.get("", response_model=schemas.TransactionListResponse)
async def list_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    wallet: Account = Depends(get_current_wallet),
    service: TransferService = Depends(get_transfer_service)
):
    """Wallet history, newest first (sent and received)"""
    transactions = await service.list_transactions(wallet.id, limit=limit, offset=offset)
    return schemas.TransactionListResponse(
        transactions=[schemas.TransactionResponse.from_transaction(t) for t in transactions],
        limit=limit,
        offset=offset
    )


@router.get("/{transaction_id}", response_model=schemas.TransactionResponse)
async def get_transaction(
    transaction_id: int,
    wallet: Account = Depends(get_current_wallet),
    service: TransferService = Depends(get_transfer_service)
):
    txn = await service.get_transaction(transaction_id, wallet.id)
    return schemas.TransactionResponse.from_transaction(txn)
