"""
Order State Machine

Governs order status changes and emits a ``StatusChanged`` event to
registered listeners once the new status is committed.

Statuses run preparing -> ready_for_pickup -> completed. Staff have always
been able to set any status directly (including skipping or stepping back),
so the default transition table is permissive. Setting
``ENFORCE_FORWARD_TRANSITIONS=true`` restricts it to single forward steps.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cafe_orders.core.auth import STAFF_LIKE, Actor, RequestContext
from cafe_orders.core.config import get_settings
from cafe_orders.exceptions import InvalidStatus, OrderNotFound, OrderingError
from cafe_orders.models import Order, OrderStatus
from cafe_orders.services.orders import load_order

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset] = {
    OrderStatus.PREPARING: frozenset({OrderStatus.READY_FOR_PICKUP, OrderStatus.COMPLETED}),
    OrderStatus.READY_FOR_PICKUP: frozenset({OrderStatus.PREPARING, OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset({OrderStatus.PREPARING, OrderStatus.READY_FOR_PICKUP}),
}

FORWARD_TRANSITIONS: dict[OrderStatus, frozenset] = {
    OrderStatus.PREPARING: frozenset({OrderStatus.READY_FOR_PICKUP}),
    OrderStatus.READY_FOR_PICKUP: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
}


@dataclass(frozen=True)
class StatusChanged:
    """
    Emitted after an order's status change is committed.

    Listeners should rely on the scalar fields; ``order`` may be expired if
    an earlier listener rolled the session back.
    """
    order: Order
    order_id: int
    order_number: str
    user_id: int
    actor: Actor
    old_status: OrderStatus
    new_status: OrderStatus
    occurred_at: datetime


Listener = Callable[[AsyncSession, StatusChanged], Awaitable[None]]


def parse_status(value) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(value)
    except ValueError:
        raise InvalidStatus(value)


class OrderStateMachine:
    """
    Applies status transitions and notifies listeners.

    Listeners run synchronously, in registration order, after the commit.
    A failing listener is logged and never fails the status update.
    """

    def __init__(self, enforce_forward: bool = False):
        self.enforce_forward = enforce_forward
        self._listeners: list[Listener] = []

    @property
    def transitions(self) -> dict[OrderStatus, frozenset]:
        return FORWARD_TRANSITIONS if self.enforce_forward else ALLOWED_TRANSITIONS

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def can_transition(self, current: OrderStatus, target: OrderStatus) -> bool:
        return current == target or target in self.transitions[current]

    async def update_status(
        self,
        session: AsyncSession,
        ctx: RequestContext,
        order_id: int,
        new_status,
    ) -> Order:
        """
        Set the status of an order.

        Setting the current status again is a successful no-op that emits
        no event.

        Raises:
            Unauthorized: the actor is not staff, shop owner or admin
            InvalidStatus: unknown status, or a transition the table forbids
            OrderNotFound: no such order
        """
        ctx.actor.require(STAFF_LIKE)
        target = parse_status(new_status)

        order = await load_order(session, order_id)
        if order is None:
            raise OrderNotFound(order_id)

        old_status = order.status
        if old_status == target:
            logger.debug(f"Order {order.order_number} already {target.value}; nothing to do")
            return order

        if not self.can_transition(old_status, target):
            raise InvalidStatus(
                target.value,
                f"Cannot move order {order.order_number} from {old_status.value} to {target.value}",
            )

        order.status = target
        order.updated_at = ctx.now
        try:
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.exception(f"Failed to update status of order #{order_id}: {e}")
            raise OrderingError("Failed to update order status") from e

        logger.info(
            f"Order {order.order_number}: {old_status.value} -> {target.value} "
            f"by user #{ctx.actor.user_id}"
        )

        event = StatusChanged(
            order=order,
            order_id=order.id,
            order_number=order.order_number,
            user_id=order.user_id,
            actor=ctx.actor,
            old_status=old_status,
            new_status=target,
            occurred_at=ctx.now,
        )
        await self._dispatch(session, event)

        return await load_order(session, order_id)

    async def _dispatch(self, session: AsyncSession, event: StatusChanged) -> None:
        for listener in self._listeners:
            try:
                await listener(session, event)
            except Exception as e:
                logger.exception(f"Status listener {listener!r} failed for order #{event.order_id}: {e}")
                await session.rollback()


@lru_cache()
def get_state_machine() -> OrderStateMachine:
    """
    Get the configured state machine with the notification listener attached.

    The instance is cached so listeners are registered once per process.
    """
    from cafe_orders.services.notifications import on_status_changed

    machine = OrderStateMachine(enforce_forward=get_settings().enforce_forward_transitions)
    machine.subscribe(on_status_changed)
    return machine


def reset_state_machine() -> None:
    """Clear the cached state machine (tests, configuration changes)."""
    get_state_machine.cache_clear()
