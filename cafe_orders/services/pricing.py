"""
Pricing Engine

Computes order totals from catalog data. Pricing never writes: it reads
ProductSize, Topping and ProductTopping rows and returns priced line items
ready to be persisted by the order store.

All arithmetic uses ``Decimal`` quantized to cents.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from cafe_orders.exceptions import (
    EmptyOrder,
    InvalidQuantity,
    ProductUnavailable,
    ToppingNotOfferedForProduct,
    ToppingUnavailable,
)
from cafe_orders.models import SugarLevel
from cafe_orders.services import catalog

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Coerce a number to a 2-place Decimal without going through float."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ItemRequest:
    """One requested line: a product size, a quantity and its toppings."""
    product_size_id: int
    quantity: int
    sugar_level: SugarLevel = SugarLevel.FULL
    topping_ids: tuple = ()


@dataclass
class PricedTopping:
    topping_id: int
    name: str
    price: Decimal


@dataclass
class PricedLine:
    product_size_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    sugar_level: SugarLevel
    toppings: list[PricedTopping] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        toppings = sum((t.price for t in self.toppings), Decimal("0.00"))
        return to_money((self.unit_price + toppings) * self.quantity)


@dataclass
class PricedOrder:
    lines: list[PricedLine]

    @property
    def total(self) -> Decimal:
        return to_money(sum((line.total for line in self.lines), Decimal("0.00")))


async def price_line(session: AsyncSession, item: ItemRequest) -> PricedLine:
    if item.quantity is None or item.quantity < 1:
        raise InvalidQuantity(item.quantity)

    product_size = await catalog.get_product_size(session, item.product_size_id)
    product = product_size.product
    if not product.is_available:
        raise ProductUnavailable(product.name)

    line = PricedLine(
        product_size_id=product_size.id,
        product_name=product.name,
        quantity=item.quantity,
        unit_price=to_money(product_size.price),
        sugar_level=SugarLevel(item.sugar_level),
    )

    for topping_id in item.topping_ids:
        topping = await catalog.get_topping(session, topping_id)
        if not topping.is_available:
            raise ToppingUnavailable(topping.name)

        # The per-product price applies, never the topping's list price
        product_topping = await catalog.get_product_topping(session, product.id, topping.id)
        if product_topping is None:
            raise ToppingNotOfferedForProduct(topping.name, product.name)

        line.toppings.append(
            PricedTopping(topping_id=topping.id, name=topping.name, price=to_money(product_topping.price))
        )

    return line


async def price_order(session: AsyncSession, items: Optional[Iterable[ItemRequest]]) -> PricedOrder:
    """
    Price a list of requested items.

    Raises:
        EmptyOrder: no items were requested
        InvalidQuantity: a quantity is below 1
        CatalogEntryNotFound: a product size or topping does not exist
        ProductUnavailable / ToppingUnavailable / ToppingNotOfferedForProduct
    """
    items = list(items or ())
    if not items:
        raise EmptyOrder()

    lines = [await price_line(session, item) for item in items]
    return PricedOrder(lines=lines)
