"""
Demo Data Seeder

Creates the tables, a small cafe catalog and an admin account, then prints
a bearer token for the admin.
Run from project root: python scripts/seed.py
"""

import asyncio
import os
import sys
from decimal import Decimal

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from sqlalchemy import select

from cafe_orders.database import async_session_maker, engine, init_db
from cafe_orders.models import (
    Category,
    Product,
    ProductSize,
    ProductTopping,
    SizeOption,
    Topping,
    User,
    UserRole,
)
from cafe_orders.services.credentials import issue_token

TOPPINGS = {
    "Extra Shot": "0.75",
    "Whipped Cream": "0.50",
    "Vanilla Syrup": "0.50",
    "Caramel Syrup": "0.50",
    "Chocolate Syrup": "0.50",
    "Oat Milk": "0.60",
    "Cinnamon": "0.25",
    "Honey": "0.40",
}

PRODUCTS = [
    {
        "name": "Espresso",
        "category": "Coffee",
        "sizes": {SizeOption.SMALL: "2.50", SizeOption.MEDIUM: "3.00", SizeOption.LARGE: "3.50"},
        "toppings": ["Extra Shot", "Whipped Cream", "Vanilla Syrup"],
    },
    {
        "name": "Cappuccino",
        "category": "Coffee",
        "sizes": {SizeOption.SMALL: "4.00", SizeOption.MEDIUM: "4.50", SizeOption.LARGE: "5.00"},
        "toppings": ["Extra Shot", "Whipped Cream", "Cinnamon", "Chocolate Syrup"],
    },
    {
        "name": "Latte",
        "category": "Coffee",
        "sizes": {SizeOption.SMALL: "4.50", SizeOption.MEDIUM: "5.00", SizeOption.LARGE: "5.50"},
        "toppings": ["Extra Shot", "Vanilla Syrup", "Caramel Syrup", "Oat Milk"],
    },
    {
        "name": "Green Tea",
        "category": "Tea",
        "sizes": {SizeOption.SMALL: "2.00", SizeOption.MEDIUM: "2.50", SizeOption.LARGE: "3.00"},
        "toppings": ["Honey", "Vanilla Syrup"],
    },
    {
        "name": "Chocolate Brownie",
        "category": "Desserts",
        "sizes": {SizeOption.NONE: "3.75"},
        "toppings": ["Whipped Cream"],
    },
]


async def seed() -> None:
    await init_db()

    async with async_session_maker() as session:
        existing = await session.execute(select(User).where(User.email == "admin@cafe.local"))
        if existing.scalar_one_or_none() is not None:
            print("Database already seeded; nothing to do.")
            return

        admin = User(name="Cafe Admin", email="admin@cafe.local", role=UserRole.ADMIN)
        staff = User(name="Counter Staff", email="staff@cafe.local", role=UserRole.STAFF)
        session.add_all([admin, staff])

        toppings = {name: Topping(name=name, price=Decimal(price)) for name, price in TOPPINGS.items()}
        session.add_all(toppings.values())

        categories = {}
        for entry in PRODUCTS:
            category = categories.get(entry["category"])
            if category is None:
                category = categories[entry["category"]] = Category(name=entry["category"])

            product = Product(name=entry["name"], category=category)
            product.sizes = [
                ProductSize(size=size, price=Decimal(price))
                for size, price in entry["sizes"].items()
            ]
            product.product_toppings = [
                ProductTopping(topping=toppings[name], price=toppings[name].price)
                for name in entry["toppings"]
            ]
            session.add(product)

        await session.flush()
        _, admin_token = await issue_token(session, admin, name="seed")
        _, staff_token = await issue_token(session, staff, name="seed")
        await session.commit()

    print("=" * 60)
    print("Seed complete")
    print("=" * 60)
    print(f"   Products: {len(PRODUCTS)}")
    print(f"   Toppings: {len(TOPPINGS)}")
    print(f"   Admin token: {admin_token}")
    print(f"   Staff token: {staff_token}")
    print("=" * 60)


async def main() -> None:
    try:
        await seed()
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
