# Overview: Sandbox seed data (catalog, sales history, expenses, bookings) for demo tenants.

from __future__ import annotations

import random
from datetime import datetime, timedelta

from ..extensions import db
from ..models import Expense, Order, OrderItem, Product, ServiceBooking, StoreSettings


# (name, kind, sku, price_cents, stock)
DEMO_CATALOG = [
    ("Coca Cola 500ml", "good", "BEV-COC-500", 150, 30),
    ("Water 1L", "good", "BEV-WAT-1L", 100, 40),
    ("Orange Juice", "good", "BEV-JUI-ORG", 200, 18),
    ("Potato Chips", "good", "SNK-CHP-001", 120, 25),
    ("Chocolate Bar", "good", "SNK-CHO-001", 90, 50),
    ("Bread", "good", "BAK-BRD-001", 110, 22),
    ("Milk 1L", "good", "DAR-MLK-1L", 130, 16),
    ("Eggs (12)", "good", "DAR-EGG-12", 240, 12),
    ("USB-C Cable", "good", "ACC-USBC-1M", 350, 10),
    ("Phone Charger", "good", "ACC-CHR-20W", 600, 8),
    ("Screen Protector", "good", "ACC-SCR-001", 250, 20),
    ("Headphones", "good", "ACC-HDP-001", 800, 3),  # low stock on purpose
    ("SIM Registration", "service", "SRV-SIM-REG", 100, None),
    ("Phone Cleaning", "service", "SRV-PHN-CLN", 200, None),
    ("Basic Repair Fee", "service", "SRV-RPR-BSC", 500, None),
]

PAYMENT_METHODS = ("cash", "card", "mobile")

# (category, amount_cents, hours_ago, note)
DEMO_EXPENSES = [
    ("Rent", 3500, 48, "Shop rent"),
    ("Supplies", 1250, 24, "Packaging + cleaning supplies"),
    ("Transport", 600, 6, "Supplier pickup"),
    ("Owner drawing", 1000, 3, "Owner cash withdrawal"),
]

# (customer, hours_from_now, status)
DEMO_BOOKINGS = [
    ("Tariro", 2, "booked"),
    ("Brian", 26, "booked"),
    ("Rudo", -30, "completed"),
]


def seed_store(tenant_id: int, store_name: str) -> StoreSettings:
    settings = StoreSettings(
        tenant_id=tenant_id,
        store_name=store_name,
        currency="USD",
        tax_rate_bps=0,
        receipt_footer="Thanks for trying the demo.",
    )
    db.session.add(settings)
    return settings


def seed_catalog(tenant_id: int) -> list[Product]:
    products = [
        Product(
            tenant_id=tenant_id,
            name=name,
            kind=kind,
            sku=sku,
            price_cents=price,
            stock_qty=stock,
        )
        for name, kind, sku, price, stock in DEMO_CATALOG
    ]
    db.session.add_all(products)
    db.session.flush()
    return products


def seed_orders(
    tenant_id: int,
    account_id: int,
    products: list[Product],
    now: datetime,
    count: int = 15,
    rng: random.Random | None = None,
) -> list[Order]:
    """
    A week of sales so reports aren't empty; the first four land today.

    Every order starts with a physical good; services sell in quantity 1.
    """
    rng = rng or random.Random()
    goods = [p for p in products if p.kind == "good"]
    orders = []

    for i in range(count):
        days_ago = 0 if i < 4 else rng.randint(0, 6)
        created = (now - timedelta(days=days_ago)).replace(
            hour=rng.randint(9, 18), minute=rng.randint(0, 59), second=rng.randint(0, 59), microsecond=0
        )
        if created > now:
            created = now - timedelta(minutes=rng.randint(1, 90))

        order = Order(
            tenant_id=tenant_id,
            account_id=account_id,
            payment_method=rng.choice(PAYMENT_METHODS),
            created_at=created,
        )
        total = 0
        for j in range(rng.randint(1, 4)):
            product = rng.choice(goods) if j == 0 else rng.choice(products)
            qty = 1 if product.kind == "service" else rng.randint(1, 3)
            total += product.price_cents * qty
            order.items.append(OrderItem(
                product_id=product.id,
                name=product.name,
                quantity=qty,
                unit_price_cents=product.price_cents,
            ))
        order.total_cents = total
        orders.append(order)

    db.session.add_all(orders)
    db.session.flush()
    return orders


def seed_expenses(tenant_id: int, now: datetime) -> None:
    db.session.add_all([
        Expense(
            tenant_id=tenant_id,
            category=category,
            amount_cents=amount,
            note=f"{note} (demo)",
            created_at=now - timedelta(hours=hours_ago),
        )
        for category, amount, hours_ago, note in DEMO_EXPENSES
    ])
    db.session.flush()


def seed_bookings(
    tenant_id: int,
    products: list[Product],
    now: datetime,
    rng: random.Random | None = None,
) -> None:
    rng = rng or random.Random()
    services = [p for p in products if p.kind == "service"] or products
    db.session.add_all([
        ServiceBooking(
            tenant_id=tenant_id,
            product_id=rng.choice(services).id,
            customer_name=customer,
            scheduled_at=now + timedelta(hours=hours),
            status=status,
        )
        for customer, hours, status in DEMO_BOOKINGS
    ])
    db.session.flush()
