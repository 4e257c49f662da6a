from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, Enum as SQLEnum, ForeignKey, JSON
from sqlalchemy.sql import func
from app.core.clock import utcnow
from app.core.database import Base
import enum


class NotificationType(str, enum.Enum):
    """Type of notification"""
    TRANSACTION_COMPLETED = "transaction_completed"
    FEE_COLLECTED = "fee_collected"
    LOCKED_ACCOUNT_MATURITY = "locked_account_maturity"
    GEOFENCE = "geofence"


class NotificationPriority(str, enum.Enum):
    """Priority level for notifications"""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class Notification(Base):
    """
    Durable in-app notification.

    Written after the ledger unit that caused it has committed, so a row here
    never describes money movement that was rolled back.
    """
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    type = Column(SQLEnum(NotificationType), nullable=False, index=True)
    priority = Column(SQLEnum(NotificationPriority), default=NotificationPriority.NORMAL, nullable=False)

    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)

    # Related entity (optional) - e.g. 'transaction', 'geofence', 'savings_lock'
    related_entity_type = Column(String(50), nullable=True)
    related_entity_id = Column(Integer, nullable=True)

    extra_data = Column(JSON, nullable=True)  # e.g., {"amount": "25.00", "reference": "TXN-..."}

    is_read = Column(Boolean, default=False, nullable=False, index=True)
    read_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Notification(id={self.id}, user_id={self.user_id}, type={self.type}, is_read={self.is_read})>"
