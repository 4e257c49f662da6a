from sqlalchemy import Column, Integer, BigInteger, String, Float, ForeignKey, DateTime, Text, Enum as SQLEnum
from sqlalchemy.sql import func
from app.core.clock import utcnow
from app.core.database import Base
import enum


class GeofenceState(str, enum.Enum):
    ACTIVE = "active"
    CLAIMED = "claimed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Geofence(Base):
    """
    Location-conditional transfer.

    `amount_cents` sits in the geofence escrow account from creation until the
    geofence is claimed (paid to the recipient) or expires / is cancelled
    (returned to the owner). The recipient is fixed at creation.
    """
    __tablename__ = "geofences"

    id = Column(Integer, primary_key=True, index=True)
    owner_account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    recipient_account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    recipient_email = Column(String(255), nullable=False)

    name = Column(String(100), nullable=True)
    memo = Column(Text, nullable=True)

    center_lat = Column(Float, nullable=False)
    center_lng = Column(Float, nullable=False)
    radius_meters = Column(Float, nullable=False)

    amount_cents = Column(BigInteger, nullable=False)
    currency = Column(String(3), default="USD", nullable=False)

    state = Column(SQLEnum(GeofenceState), default=GeofenceState.ACTIVE, nullable=False, index=True)

    # Reservation record, and the claim or refund record that settled it
    transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    settlement_transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Geofence(id={self.id}, state={self.state}, amount_cents={self.amount_cents})>"
