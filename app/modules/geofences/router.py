from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from app.core.database import get_db
from app.core.dependencies import get_current_wallet, require_internal_token
from app.modules.accounts.models import Account
from app.modules.geofences import schemas
from app.modules.geofences.services import GeofenceService
from app.modules.notifications.services import NotificationSink, get_notifier

router = APIRouter(prefix="/api/v1/geofences", tags=["geofences"])


def get_geofence_service(
    db: AsyncSession = Depends(get_db),
    notifier: NotificationSink = Depends(get_notifier)
) -> GeofenceService:
    return GeofenceService(db, notifier=notifier)


@router.post("", response_model=schemas.GeofenceResponse, status_code=status.HTTP_201_CREATED)
async def create_geofence(
    request: schemas.GeofenceCreateRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    wallet: Account = Depends(get_current_wallet),
    service: GeofenceService = Depends(get_geofence_service)
):
    """
    Send money that can only be claimed at a location.

    - The amount is taken from your wallet now and held until claimed
    - Cancel or let it expire to get the money back
    - No fee
    """
    geofence = await service.create_geofence(
        owner_account_id=wallet.id,
        center=(request.center_lat, request.center_lng),
        amount=request.amount,
        recipient_email=request.recipient_email,
        radius_meters=request.radius_meters,
        expires_at=request.expires_at,
        name=request.name,
        memo=request.memo,
        idempotency_key=idempotency_key
    )
    return schemas.GeofenceResponse.from_geofence(geofence)


@router.get("", response_model=schemas.GeofenceListResponse)
async def list_geofences(
    wallet: Account = Depends(get_current_wallet),
    service: GeofenceService = Depends(get_geofence_service)
):
    """Geofences you sent and geofences waiting for you"""
    geofences = await service.list_geofences(wallet.id)
    return schemas.GeofenceListResponse(
        sent=[schemas.GeofenceResponse.from_geofence(g) for g in geofences if g.owner_account_id == wallet.id],
        received=[schemas.GeofenceResponse.from_geofence(g) for g in geofences if g.recipient_account_id == wallet.id]
    )


@router.post("/expire", response_model=schemas.SweepResponse, dependencies=[Depends(require_internal_token)])
async def expire_geofences(service: GeofenceService = Depends(get_geofence_service)):
    """Scheduler hook: refund every active geofence past its expiry"""
    expired = await service.expire_due()
    return schemas.SweepResponse(count=len(expired), ids=[g.id for g in expired])


@router.get("/{geofence_id}", response_model=schemas.GeofenceResponse)
async def get_geofence(
    geofence_id: int,
    wallet: Account = Depends(get_current_wallet),
    service: GeofenceService = Depends(get_geofence_service)
):
    geofence = await service.get_visible_geofence(geofence_id, wallet.id)
    return schemas.GeofenceResponse.from_geofence(geofence)


@router.post("/{geofence_id}/claim", response_model=schemas.GeofenceResponse)
async def claim_geofence(
    geofence_id: int,
    request: schemas.GeofenceClaimRequest,
    wallet: Account = Depends(get_current_wallet),
    service: GeofenceService = Depends(get_geofence_service)
):
    """Claim a geofenced transfer from your current position"""
    geofence = await service.claim_geofence(geofence_id, wallet.id, (request.latitude, request.longitude))
    return schemas.GeofenceResponse.from_geofence(geofence)


@router.post("/{geofence_id}/cancel", response_model=schemas.GeofenceResponse)
async def cancel_geofence(
    geofence_id: int,
    wallet: Account = Depends(get_current_wallet),
    service: GeofenceService = Depends(get_geofence_service)
):
    """Cancel an unclaimed geofence and return the money to your wallet"""
    geofence = await service.cancel_geofence(geofence_id, wallet.id)
    return schemas.GeofenceResponse.from_geofence(geofence)
