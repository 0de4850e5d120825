"""
Order Store

Places orders as one atomic write of Order + OrderItems + OrderToppings,
generates human-readable order numbers and keeps a guest session from
holding more than one active order.
"""

import logging
import random
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cafe_orders.core.auth import RequestContext
from cafe_orders.core.config import get_settings
from cafe_orders.exceptions import (
    ActiveOrderExists,
    EmptyOrder,
    InvalidQuantity,
    MissingGuestContext,
    OrderCreationFailed,
    OrderNotFound,
    Unauthorized,
)
from cafe_orders.models import (
    Order,
    OrderItem,
    OrderStatus,
    OrderTopping,
    ProductSize,
    User,
)
from cafe_orders.services import pricing
from cafe_orders.services.pricing import ItemRequest, PricedOrder

logger = logging.getLogger(__name__)
settings = get_settings()

ACTIVE_STATUSES = (OrderStatus.PREPARING, OrderStatus.READY_FOR_PICKUP)


def _order_graph():
    """Loader options for an order with items, toppings and catalog refs."""
    return (
        selectinload(Order.items)
        .selectinload(OrderItem.product_size)
        .selectinload(ProductSize.product),
        selectinload(Order.items)
        .selectinload(OrderItem.toppings)
        .selectinload(OrderTopping.topping),
    )


async def load_order(session: AsyncSession, order_id: int) -> Optional[Order]:
    result = await session.execute(
        select(Order)
        .options(*_order_graph())
        .where(Order.id == order_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


# =============================================================================
# ORDER NUMBERS
# =============================================================================

def _candidate_order_number() -> str:
    digits = settings.order_number_digits
    return f"{settings.order_number_prefix}{random.randint(1, 10 ** digits - 1):0{digits}d}"


async def _order_number_taken(session: AsyncSession, order_number: str) -> bool:
    result = await session.execute(select(Order.id).where(Order.order_number == order_number))
    return result.first() is not None


async def generate_order_number(session: AsyncSession) -> str:
    """
    Pick an order number not yet in use.

    The check is advisory: two concurrent requests can still pick the same
    number, in which case the unique constraint rejects the second insert.
    """
    for _ in range(settings.order_number_max_attempts):
        candidate = _candidate_order_number()
        if not await _order_number_taken(session, candidate):
            return candidate

    logger.error("Could not find a free order number")
    raise OrderCreationFailed()


# =============================================================================
# PLACEMENT
# =============================================================================

async def find_active_session_order(
    session: AsyncSession,
    user_id: int,
    session_id: str,
) -> Optional[Order]:
    result = await session.execute(
        select(Order)
        .where(
            Order.user_id == user_id,
            Order.session_id == session_id,
            Order.status.in_(ACTIVE_STATUSES),
        )
        .order_by(Order.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _lock_user(session: AsyncSession, user_id: int) -> None:
    # Serialises placement per guest account where the backend supports it
    await session.execute(select(User.id).where(User.id == user_id).with_for_update())


def _build_order(
    ctx: RequestContext,
    priced: PricedOrder,
    order_number: str,
    customer_name: Optional[str],
    session_id: Optional[str],
) -> Order:
    order = Order(
        user_id=ctx.actor.user_id,
        session_id=session_id,
        customer_name=customer_name,
        order_number=order_number,
        total_price=priced.total,
        status=OrderStatus.PREPARING,
        created_at=ctx.now,
        updated_at=ctx.now,
    )
    for line in priced.lines:
        item = OrderItem(
            product_size_id=line.product_size_id,
            quantity=line.quantity,
            unit_price=line.unit_price,
            sugar_level=line.sugar_level,
        )
        item.toppings = [
            OrderTopping(topping_id=t.topping_id, price=t.price)
            for t in line.toppings
        ]
        order.items.append(item)
    return order


async def place_order(
    session: AsyncSession,
    ctx: RequestContext,
    items: Iterable[ItemRequest],
    customer_name: Optional[str] = None,
    session_id: Optional[str] = None,
    table_number: Optional[str] = None,
) -> Order:
    """
    Price and persist a new order for the calling actor.

    Guest callers must have a session and table; the values bound to their
    credential win over those supplied in the request body.

    Raises:
        EmptyOrder / InvalidQuantity / MissingGuestContext: bad input
        ProductUnavailable, ToppingUnavailable, ...: pricing failures
        ActiveOrderExists: the guest session already has an open order
        OrderCreationFailed: the write could not be committed
    """
    items = list(items)
    if not items:
        raise EmptyOrder()
    for item in items:
        if item.quantity is None or item.quantity < 1:
            raise InvalidQuantity(item.quantity)

    session_id = ctx.session_id or session_id
    table_number = ctx.table_number or table_number
    if ctx.actor.is_guest and (not session_id or not table_number):
        raise MissingGuestContext()

    # Pricing fails before anything is written
    priced = await pricing.price_order(session, items)

    order_id = None
    for attempt in range(1, settings.order_number_max_attempts + 1):
        if ctx.actor.is_guest:
            await _lock_user(session, ctx.actor.user_id)
            existing = await find_active_session_order(session, ctx.actor.user_id, session_id)
            if existing is not None:
                logger.warning(
                    f"Rejected duplicate order for session {session_id}: "
                    f"{existing.order_number} is still {existing.status.value}"
                )
                # Build the error before the rollback expires ``existing``
                error = ActiveOrderExists(existing)
                await session.rollback()
                raise error

        order_number = await generate_order_number(session)
        order = _build_order(ctx, priced, order_number, customer_name, session_id)
        session.add(order)

        try:
            await session.commit()
        except IntegrityError as e:
            await session.rollback()
            if await _order_number_taken(session, order_number):
                logger.warning(f"Order number {order_number} collided (attempt {attempt}), retrying")
                continue
            logger.error(f"Order insert violated a constraint: {e}")
            raise OrderCreationFailed() from e
        except SQLAlchemyError as e:
            await session.rollback()
            logger.exception(f"Failed to create order: {e}")
            raise OrderCreationFailed() from e

        order_id = order.id
        break

    if order_id is None:
        logger.error("Gave up creating order after repeated order number collisions")
        raise OrderCreationFailed()

    logger.info(
        f"Order {order_number} placed by user #{ctx.actor.user_id} "
        f"({len(priced.lines)} items, total {priced.total})"
    )
    return await load_order(session, order_id)


# =============================================================================
# RETRIEVAL
# =============================================================================

async def list_orders(
    session: AsyncSession,
    ctx: RequestContext,
    status: Optional[OrderStatus] = None,
) -> list[Order]:
    """Staff-like callers see every order; everyone else only their own."""
    query = select(Order).options(*_order_graph()).order_by(Order.created_at.desc(), Order.id.desc())
    if not ctx.actor.is_staff_like:
        query = query.where(Order.user_id == ctx.actor.user_id)
    if status is not None:
        query = query.where(Order.status == status)

    result = await session.execute(query)
    return list(result.scalars().all())


async def get_order(session: AsyncSession, ctx: RequestContext, order_id: int) -> Order:
    order = await load_order(session, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    if not ctx.actor.is_staff_like and order.user_id != ctx.actor.user_id:
        raise Unauthorized()
    return order


async def list_session_orders(
    session: AsyncSession,
    ctx: RequestContext,
    session_id: str,
) -> list[Order]:
    """Orders placed under one guest session, newest first."""
    query = (
        select(Order)
        .options(*_order_graph())
        .where(Order.session_id == session_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
    )
    if not ctx.actor.is_staff_like:
        query = query.where(Order.user_id == ctx.actor.user_id)

    result = await session.execute(query)
    return list(result.scalars().all())
