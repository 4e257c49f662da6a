from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy import select, func, and_, update
from typing import Awaitable, Callable, List, Optional, Protocol, Tuple
import logging

from app.core.clock import utcnow
from app.core.config import settings
from app.core.database import AsyncSessionLocal, get_redis
from app.modules.notifications.models import Notification
from app.modules.notifications.schemas import NotificationEvent

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    """Anything the ledger services can hand events to"""

    async def notify(self, event: NotificationEvent) -> None:
        ...


class NotificationService:
    """
    Durable notification dispatch.

    Each event is stored in its own session, independent of the caller's
    unit of work, then published to the user's redis channel when redis is
    configured. Delivery problems are logged and never reach the caller.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        redis_getter: Callable[[], Awaitable] = get_redis
    ):
        self.session_factory = session_factory
        self.redis_getter = redis_getter

    @staticmethod
    def channel_for(user_id: int) -> str:
        return f"{settings.NOTIFICATION_CHANNEL_PREFIX}:{user_id}"

    async def notify(self, event: NotificationEvent) -> None:
        try:
            async with self.session_factory() as session:
                session.add(Notification(
                    user_id=event.user_id,
                    type=event.type,
                    priority=event.priority,
                    title=event.title,
                    message=event.message,
                    related_entity_type=event.related_entity_type,
                    related_entity_id=event.related_entity_id,
                    extra_data=event.data or None
                ))
                await session.commit()
        except Exception as e:
            logger.error(f"Failed to store {event.type.value} notification for user {event.user_id}: {str(e)}")
            return

        try:
            redis = await self.redis_getter()
            if redis is not None:
                await redis.publish(self.channel_for(event.user_id), event.model_dump_json())
        except Exception as e:
            logger.warning(f"Failed to publish notification for user {event.user_id}: {str(e)}")

    # ============================================================
    # Read side
    # ============================================================

    @staticmethod
    async def get_user_notifications(
        db: AsyncSession,
        user_id: int,
        skip: int = 0,
        limit: int = 20,
        unread_only: bool = False
    ) -> Tuple[List[Notification], int, int]:
        """Return (page, total, unread_count) for a user"""
        conditions = [Notification.user_id == user_id]
        if unread_only:
            conditions.append(Notification.is_read.is_(False))

        result = await db.execute(
            select(Notification)
            .where(and_(*conditions))
            .order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(skip)
            .limit(limit)
        )
        notifications = list(result.scalars().all())

        total = await db.scalar(select(func.count(Notification.id)).where(and_(*conditions)))
        unread = await NotificationService.get_unread_count(db, user_id)
        return notifications, total or 0, unread

    @staticmethod
    async def get_unread_count(db: AsyncSession, user_id: int) -> int:
        count = await db.scalar(
            select(func.count(Notification.id)).where(
                and_(Notification.user_id == user_id, Notification.is_read.is_(False))
            )
        )
        return count or 0

    @staticmethod
    async def mark_as_read(db: AsyncSession, user_id: int, notification_id: int) -> Optional[Notification]:
        result = await db.execute(
            select(Notification).where(
                and_(Notification.id == notification_id, Notification.user_id == user_id)
            )
        )
        notification = result.scalar_one_or_none()
        if notification is None:
            return None
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = utcnow()
            await db.commit()
            await db.refresh(notification)
        return notification

    @staticmethod
    async def mark_all_as_read(db: AsyncSession, user_id: int) -> int:
        result = await db.execute(
            update(Notification)
            .where(and_(Notification.user_id == user_id, Notification.is_read.is_(False)))
            .values(is_read=True, read_at=utcnow())
        )
        await db.commit()
        return result.rowcount


def get_notifier() -> NotificationSink:
    """FastAPI dependency for the process-wide notification sink"""
    return NotificationService()
