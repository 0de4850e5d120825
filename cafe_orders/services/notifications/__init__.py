"""
Notifications

Write side (status-change dispatcher) and read side (polling feed) of
per-user notifications.
"""

from cafe_orders.services.notifications.cache import (
    BaseUnreadCountCache,
    get_unread_count_cache,
    reset_unread_count_cache,
)
from cafe_orders.services.notifications.dispatcher import (
    create_notification,
    on_status_changed,
    status_message,
    status_title,
)
from cafe_orders.services.notifications import feed

__all__ = [
    "BaseUnreadCountCache",
    "get_unread_count_cache",
    "reset_unread_count_cache",
    "create_notification",
    "on_status_changed",
    "status_message",
    "status_title",
    "feed",
]
