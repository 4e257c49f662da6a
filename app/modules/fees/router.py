from fastapi import APIRouter, Query
from decimal import Decimal

from app.core.money import parse_amount
from app.core.exceptions import InvalidAmount
from app.modules.fees import engine, schemas

router = APIRouter(prefix="/api/v1/fees", tags=["fees"])


@router.get("/transfer", response_model=schemas.TransferFeeQuote)
async def quote_transfer_fee(amount: Decimal = Query(..., description="Transfer amount")):
    """
    Quote the 2% peer-transfer fee.

    - Fee is paid by the sender on top of the amount
    - Recipient receives the full amount
    """
    return engine.compute_transaction_fee(parse_amount(amount))


@router.get("/withdrawal", response_model=schemas.WithdrawalFeeQuote)
async def quote_withdrawal_fee(
    amount: Decimal = Query(..., description="Withdrawal amount"),
    method: engine.WithdrawalMethod = Query(engine.WithdrawalMethod.STANDARD)
):
    """Quote the flat fee for a withdrawal method"""
    value = parse_amount(amount)
    if value <= 0:
        raise InvalidAmount(amount=value)
    fee = engine.withdrawal_fee(method)
    return schemas.WithdrawalFeeQuote(method=method, amount=value, fee=fee, total_debited=value + fee)


@router.get("/locking-options", response_model=schemas.LockingOptionsResponse)
async def list_locking_options():
    """Savings lock terms and their annual interest rates"""
    return schemas.LockingOptionsResponse(
        options=[schemas.LockingOptionResponse.model_validate(o) for o in engine.LOCKING_OPTIONS]
    )
