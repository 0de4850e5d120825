"""
Catalog Lookup

Read-only access to the catalog rows order pricing depends on.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cafe_orders.exceptions import CatalogEntryNotFound
from cafe_orders.models import ProductSize, ProductTopping, Topping


async def get_product_size(session: AsyncSession, product_size_id: int) -> ProductSize:
    """Load a ProductSize together with its Product."""
    result = await session.execute(
        select(ProductSize)
        .options(selectinload(ProductSize.product))
        .where(ProductSize.id == product_size_id)
    )
    product_size = result.scalar_one_or_none()
    if product_size is None:
        raise CatalogEntryNotFound("Product size", product_size_id)
    return product_size


async def get_topping(session: AsyncSession, topping_id: int) -> Topping:
    topping = await session.get(Topping, topping_id)
    if topping is None:
        raise CatalogEntryNotFound("Topping", topping_id)
    return topping


async def get_product_topping(
    session: AsyncSession,
    product_id: int,
    topping_id: int,
) -> Optional[ProductTopping]:
    """The price of ``topping_id`` on ``product_id``, or None if not offered."""
    result = await session.execute(
        select(ProductTopping).where(
            ProductTopping.product_id == product_id,
            ProductTopping.topping_id == topping_id,
        )
    )
    return result.scalar_one_or_none()
