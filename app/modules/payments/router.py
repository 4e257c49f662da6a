from fastapi import APIRouter, Depends

from app.core.dependencies import require_internal_token
from app.modules.payments import schemas
from app.modules.transactions.router import get_transfer_service
from app.modules.transactions.schemas import TransactionResponse
from app.modules.transactions.services import TransferService

router = APIRouter(
    prefix="/api/v1/payments",
    tags=["payments"],
    dependencies=[Depends(require_internal_token)]
)


@router.post("/reconcile", response_model=TransactionResponse)
async def reconcile(
    event: schemas.ReconcileRequest,
    service: TransferService = Depends(get_transfer_service)
):
    """
    Apply a verified processor outcome to a pending transaction.

    Called by the webhook receiver after signature verification. Replaying
    an outcome that was already applied returns the transaction unchanged.
    """
    txn = await service.reconcile(event.processor_reference, event.outcome)
    return TransactionResponse.from_transaction(txn)
