"""
Notification Feed

Read side of notifications for polling clients: listing, unread counts,
"latest since" polling and read markers. Users only ever see their own
notifications.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_orders.exceptions import NotificationNotFound
from cafe_orders.models import Notification
from cafe_orders.services.notifications.cache import get_unread_count_cache

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 100
MAX_LATEST_LIMIT = 50


@dataclass
class NotificationPage:
    notifications: list[Notification]
    unread_count: int
    total_count: int


async def count_unread(session: AsyncSession, user_id: int) -> int:
    result = await session.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == user_id,
            Notification.read.is_(False),
        )
    )
    return result.scalar() or 0


async def list_notifications(
    session: AsyncSession,
    user_id: int,
    read: Optional[bool] = None,
    limit: int = 50,
) -> NotificationPage:
    limit = max(1, min(limit, MAX_LIST_LIMIT))

    query = select(Notification).where(Notification.user_id == user_id)
    if read is not None:
        query = query.where(Notification.read.is_(read))
    query = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)

    result = await session.execute(query)
    notifications = list(result.scalars().all())

    total = await session.execute(
        select(func.count(Notification.id)).where(Notification.user_id == user_id)
    )
    return NotificationPage(
        notifications=notifications,
        unread_count=await count_unread(session, user_id),
        total_count=total.scalar() or 0,
    )


async def unread_count(session: AsyncSession, user_id: int) -> int:
    """Unread count, served from the short-lived cache when possible."""
    cache = get_unread_count_cache()
    cached = cache.get(user_id)
    if cached is not None:
        return cached

    count = await count_unread(session, user_id)
    cache.set(user_id, count)
    return count


async def latest(
    session: AsyncSession,
    user_id: int,
    since: Optional[datetime] = None,
    limit: int = 20,
) -> NotificationPage:
    """Notifications newer than ``since`` (all recent ones when omitted)."""
    limit = max(1, min(limit, MAX_LATEST_LIMIT))

    query = select(Notification).where(Notification.user_id == user_id)
    if since is not None:
        query = query.where(Notification.created_at > since)
    query = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)

    result = await session.execute(query)
    notifications = list(result.scalars().all())

    count = await count_unread(session, user_id)
    get_unread_count_cache().set(user_id, count)
    return NotificationPage(notifications=notifications, unread_count=count, total_count=len(notifications))


async def mark_read(session: AsyncSession, user_id: int, notification_id: int, now: datetime) -> Notification:
    result = await session.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id,
        )
    )
    notification = result.scalar_one_or_none()
    if notification is None:
        raise NotificationNotFound(notification_id)

    if not notification.read:
        notification.read = True
        notification.updated_at = now
        await session.commit()
        get_unread_count_cache().invalidate(user_id)
    return notification


async def mark_all_read(session: AsyncSession, user_id: int, now: datetime) -> int:
    result = await session.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(False))
        .values(read=True, updated_at=now)
    )
    await session.commit()
    get_unread_count_cache().invalidate(user_id)

    updated = result.rowcount or 0
    logger.info(f"Marked {updated} notification(s) read for user #{user_id}")
    return updated
