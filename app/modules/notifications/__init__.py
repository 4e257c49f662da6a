# Notifications module
from app.modules.notifications.models import Notification, NotificationType, NotificationPriority

__all__ = ["Notification", "NotificationType", "NotificationPriority"]
