from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.core.clock import utcnow
from app.core.database import Base
import enum


class UserStatus(str, enum.Enum):
    """User status enumeration"""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CLOSED = "closed"


class User(Base):
    """
    Wallet owner.

    Identity is provisioned by the external auth provider; the ledger only
    needs enough to resolve recipients by email and to gate access.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(200), nullable=False)
    status = Column(SQLEnum(UserStatus), default=UserStatus.ACTIVE, nullable=False)

    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

    accounts = relationship("Account", back_populates="user", lazy="selectin")

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, status={self.status})>"
