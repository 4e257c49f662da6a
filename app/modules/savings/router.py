from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from app.core.clock import utcnow
from app.core.database import get_db
from app.core.dependencies import get_current_wallet, require_internal_token
from app.core.money import from_cents
from app.modules.accounts.models import Account
from app.modules.notifications.services import NotificationSink, get_notifier
from app.modules.savings import schemas
from app.modules.savings.models import SavingsLockState
from app.modules.savings.services import SavingsService

router = APIRouter(prefix="/api/v1/savings", tags=["savings"])


def get_savings_service(
    db: AsyncSession = Depends(get_db),
    notifier: NotificationSink = Depends(get_notifier)
) -> SavingsService:
    return SavingsService(db, notifier=notifier)


@router.post("/locks", response_model=schemas.SavingsLockResponse, status_code=status.HTTP_201_CREATED)
async def create_lock(
    request: schemas.SavingsLockCreateRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    wallet: Account = Depends(get_current_wallet),
    service: SavingsService = Depends(get_savings_service)
):
    """
    Lock savings for a fixed term.

    - Rates from 1.5% (3 months) to 4.0% (24 months), simple interest
    - Breaking early costs 5% of the locked amount
    """
    lock = await service.create_lock(wallet.id, request.amount, request.term_months, idempotency_key)
    return schemas.SavingsLockResponse.from_lock(lock, utcnow())


@router.get("/locks", response_model=schemas.SavingsLockListResponse)
async def list_locks(
    wallet: Account = Depends(get_current_wallet),
    service: SavingsService = Depends(get_savings_service)
):
    now = utcnow()
    locks = await service.list_locks(wallet.id)
    open_states = (SavingsLockState.ACTIVE, SavingsLockState.MATURED)
    return schemas.SavingsLockListResponse(
        locks=[schemas.SavingsLockResponse.from_lock(lock, now) for lock in locks],
        total_locked=from_cents(sum(lock.principal_cents for lock in locks if lock.state in open_states))
    )


@router.post("/mature", response_model=schemas.SweepResponse, dependencies=[Depends(require_internal_token)])
async def mature_locks(service: SavingsService = Depends(get_savings_service)):
    """Scheduler hook: mark locks past their term as matured"""
    matured = await service.mature_due()
    return schemas.SweepResponse(count=len(matured), ids=[lock.id for lock in matured])


@router.get("/locks/{lock_id}", response_model=schemas.SavingsLockResponse)
async def get_lock(
    lock_id: int,
    wallet: Account = Depends(get_current_wallet),
    service: SavingsService = Depends(get_savings_service)
):
    lock = await service.get_lock(lock_id, wallet.id)
    return schemas.SavingsLockResponse.from_lock(lock, utcnow())


@router.post("/locks/{lock_id}/break", response_model=schemas.SavingsLockResponse)
async def break_lock(
    lock_id: int,
    wallet: Account = Depends(get_current_wallet),
    service: SavingsService = Depends(get_savings_service)
):
    """Close a lock before its term; a 5% penalty on the principal applies"""
    lock = await service.break_lock(lock_id, wallet.id)
    return schemas.SavingsLockResponse.from_lock(lock, utcnow())


@router.post("/locks/{lock_id}/withdraw", response_model=schemas.SavingsLockResponse)
async def withdraw_lock(
    lock_id: int,
    wallet: Account = Depends(get_current_wallet),
    service: SavingsService = Depends(get_savings_service)
):
    """Withdraw principal plus interest after the term has ended"""
    lock = await service.withdraw_matured(lock_id, wallet.id)
    return schemas.SavingsLockResponse.from_lock(lock, utcnow())
