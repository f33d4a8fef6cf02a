"""Seed data returned when a fresh store has no products, staff or settings."""

from __future__ import annotations

from decimal import Decimal

from .constants import ProductCategory
from .models import AppSettings, DrumPourOption, Employee, Product


INITIAL_PRODUCTS: tuple[Product, ...] = (
    Product(
        id="1",
        name="Guinness 500ml",
        category=ProductCategory.BOTTLE,
        buy_price=Decimal("180"),
        sell_price=Decimal("250"),
        stock=45,
        min_threshold=10,
    ),
    Product(
        id="2",
        name="Tusker Lager",
        category=ProductCategory.BOTTLE,
        buy_price=Decimal("150"),
        sell_price=Decimal("220"),
        stock=120,
        min_threshold=20,
    ),
    Product(
        id="drum-1",
        name="Premium Whiskey Drum",
        category=ProductCategory.DRUM,
        buy_price=Decimal("15000"),
        sell_price=Decimal("0"),
        stock=1,
        min_threshold=5000,
        capacity=50000,
        current_level=35000,
        drum_pours=(
            DrumPourOption(label="50ml", volume=50, price=Decimal("150")),
            DrumPourOption(label="250ml", volume=250, price=Decimal("600")),
            DrumPourOption(label="500ml", volume=500, price=Decimal("1100")),
            DrumPourOption(label="1000ml", volume=1000, price=Decimal("2000")),
        ),
    ),
)

INITIAL_EMPLOYEES: tuple[Employee, ...] = (
    Employee(id="e1", company_id="GXY-001", name="John Admin", role="admin", pin="1234"),
    Employee(id="e2", company_id="GXY-002", name="Alice Cashier", role="cashier", pin="0000"),
)

INITIAL_SETTINGS = AppSettings(
    store_name="Galaxy Inn",
    admin_pin="1234",
    store_phone="+254 700 000000",
    store_address="Outer Ring Road, Nairobi",
    boss_email="boss@galaxyinn.com",
    currency="KSH",
    vat_rate=Decimal("16"),
)
