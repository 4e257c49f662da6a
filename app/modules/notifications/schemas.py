from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List, Dict, Any

from app.modules.notifications.models import NotificationType, NotificationPriority


class NotificationEvent(BaseModel):
    """Event handed to a notification sink by the ledger services"""
    user_id: int
    type: NotificationType
    title: str = Field(..., max_length=255)
    message: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[int] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class NotificationResponse(BaseModel):
    id: int
    user_id: int
    type: NotificationType
    priority: NotificationPriority
    title: str
    message: str
    related_entity_type: Optional[str] = None
    related_entity_id: Optional[int] = None
    extra_data: Optional[Dict[str, Any]] = None
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class NotificationListResponse(BaseModel):
    notifications: List[NotificationResponse]
    total: int
    unread_count: int
    page: int
    limit: int


class UnreadCountResponse(BaseModel):
    unread_count: int


class MarkAllReadResponse(BaseModel):
    updated: int
