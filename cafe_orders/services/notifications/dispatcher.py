"""
Notification Dispatcher

Turns order status changes into persisted notifications for the order's
owner. Dispatch is best-effort: a failure falls back to a plain message and
is otherwise logged, never raised to the status update.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_orders.core.config import get_settings
from cafe_orders.models import Notification, NotificationType, OrderStatus
from cafe_orders.services.notifications.cache import get_unread_count_cache

logger = logging.getLogger(__name__)
settings = get_settings()

STATUS_TITLES = {
    OrderStatus.PREPARING: "Order Being Prepared",
    OrderStatus.READY_FOR_PICKUP: "Order Ready for Pickup!",
    OrderStatus.COMPLETED: "Order Completed",
}

STATUS_MESSAGES = {
    OrderStatus.PREPARING: "is now being prepared by our team",
    OrderStatus.READY_FOR_PICKUP: "is ready for pickup! Please come to the counter",
    OrderStatus.COMPLETED: "has been completed. Thank you for your order!",
}

FALLBACK_TITLE = "Order Status Updated"


def status_title(status: OrderStatus) -> str:
    return STATUS_TITLES.get(status, FALLBACK_TITLE)


def status_message(order_number: str, status: OrderStatus) -> str:
    phrase = STATUS_MESSAGES.get(status, f"status has been updated to {status.value}")
    return f"Your order #{order_number} {phrase}"


async def find_recent_duplicate(
    session: AsyncSession,
    user_id: int,
    order_id: Optional[int],
    message: str,
    now: datetime,
) -> Optional[Notification]:
    since = now - timedelta(minutes=settings.notification_dedup_minutes)
    result = await session.execute(
        select(Notification)
        .where(
            Notification.user_id == user_id,
            Notification.order_id == order_id,
            Notification.message == message,
            Notification.created_at >= since,
        )
        .order_by(Notification.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_notification(
    session: AsyncSession,
    user_id: int,
    title: str,
    message: str,
    now: datetime,
    type: NotificationType = NotificationType.GENERAL,
    order_id: Optional[int] = None,
    deduplicate: bool = True,
) -> Notification:
    """
    Persist and commit a notification.

    An identical (user, order, message) notification created within the
    dedup window is returned instead of writing a new row. The check is not
    serialised, so concurrent dispatch can still produce a duplicate.
    """
    if deduplicate:
        existing = await find_recent_duplicate(session, user_id, order_id, message, now)
        if existing is not None:
            logger.info(f"Duplicate notification prevented (existing #{existing.id})")
            return existing

    notification = Notification(
        user_id=user_id,
        order_id=order_id,
        title=title,
        message=message,
        type=type,
        read=False,
        created_at=now,
        updated_at=now,
    )
    session.add(notification)
    await session.commit()

    get_unread_count_cache().invalidate(user_id)
    logger.info(f"Notification #{notification.id} created for user #{user_id} ({type.value})")
    return notification


async def on_status_changed(session: AsyncSession, event) -> None:
    """
    Listener for ``StatusChanged`` events.

    Writes the status-specific notification; if that fails, rolls back and
    writes a plain fallback notification. A failing fallback is logged.
    """
    try:
        await create_notification(
            session,
            user_id=event.user_id,
            order_id=event.order_id,
            title=status_title(event.new_status),
            message=status_message(event.order_number, event.new_status),
            type=NotificationType.ORDER,
            now=event.occurred_at,
        )
        return
    except Exception as e:
        logger.error(f"Order notification failed for order #{event.order_id}: {e}")
        await session.rollback()

    try:
        await create_notification(
            session,
            user_id=event.user_id,
            order_id=event.order_id,
            title=FALLBACK_TITLE,
            message=f"Your order #{event.order_number} status has been updated to {event.new_status.value}.",
            type=NotificationType.ORDER,
            now=event.occurred_at,
            deduplicate=False,
        )
    except Exception as e:
        logger.exception(f"Fallback notification failed for order #{event.order_id}: {e}")
        await session.rollback()
