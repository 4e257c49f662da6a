from pydantic import BaseModel, EmailStr, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from app.core.money import from_cents
from app.modules.geofences.geo import DEFAULT_RADIUS_METERS
from app.modules.geofences.models import Geofence, GeofenceState


class GeofenceCreateRequest(BaseModel):
    """Reserve money that the recipient can claim only inside the circle"""
    recipient_email: EmailStr
    amount: Decimal
    center_lat: float
    center_lng: float
    radius_meters: float = Field(DEFAULT_RADIUS_METERS, description="25 - 1000 meters")
    name: Optional[str] = Field(None, max_length=100)
    memo: Optional[str] = Field(None, max_length=500)
    expires_at: Optional[datetime] = None


class GeofenceClaimRequest(BaseModel):
    latitude: float
    longitude: float


class GeofenceResponse(BaseModel):
    id: int
    owner_account_id: int
    recipient_account_id: int
    recipient_email: str
    name: Optional[str] = None
    memo: Optional[str] = None
    center_lat: float
    center_lng: float
    radius_meters: float
    amount: Decimal
    currency: str
    state: GeofenceState
    transaction_id: Optional[int] = None
    settlement_transaction_id: Optional[int] = None
    created_at: datetime
    expires_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    @classmethod
    def from_geofence(cls, geofence: Geofence) -> "GeofenceResponse":
        return cls(
            id=geofence.id,
            owner_account_id=geofence.owner_account_id,
            recipient_account_id=geofence.recipient_account_id,
            recipient_email=geofence.recipient_email,
            name=geofence.name,
            memo=geofence.memo,
            center_lat=geofence.center_lat,
            center_lng=geofence.center_lng,
            radius_meters=geofence.radius_meters,
            amount=from_cents(geofence.amount_cents),
            currency=geofence.currency,
            state=geofence.state,
            transaction_id=geofence.transaction_id,
            settlement_transaction_id=geofence.settlement_transaction_id,
            created_at=geofence.created_at,
            expires_at=geofence.expires_at,
            claimed_at=geofence.claimed_at,
            resolved_at=geofence.resolved_at
        )


class GeofenceListResponse(BaseModel):
    sent: List[GeofenceResponse]
    received: List[GeofenceResponse]


class SweepResponse(BaseModel):
    count: int
    ids: List[int]
