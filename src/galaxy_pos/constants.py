"""Enumerations shared across the Galaxy POS modules.

Centralises domain constants so that the persistence layer, the commit engine,
and any presentation layer rely on a single source of truth for collection
names, tender types, and audit identifiers.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Workbook schema produced by this code base. Schema "1" is the original
# six-collection layout and is migrated on open.
EXPECTED_SCHEMA_VERSION = "2"
LEGACY_SCHEMA_VERSIONS = ("1",)

# Largest absolute difference tolerated between a split breakdown and the sale
# total, in currency units.
SPLIT_TOLERANCE = Decimal("1")

DEFAULT_VAT_RATE = Decimal("16")
DEFAULT_CURRENCY = "KSH"


class Collection(str, Enum):
    """Enumerate the named collections managed by the store."""

    PRODUCTS = "Products"
    SALES = "Sales"
    EXPENSES = "Expenses"
    CASHUPS = "CashUps"
    EMPLOYEES = "Employees"
    SETTINGS = "Settings"
    SHIFTS = "Shifts"
    AUDIT_LOGS = "AuditLogs"
    RECEIPTS = "Receipts"
    SNAPSHOTS = "Snapshots"
    SUSPENDED_ORDERS = "SuspendedOrders"


# Collections present in a schema "1" workbook.
LEGACY_COLLECTIONS: tuple[Collection, ...] = (
    Collection.PRODUCTS,
    Collection.SALES,
    Collection.EXPENSES,
    Collection.CASHUPS,
    Collection.EMPLOYEES,
    Collection.SETTINGS,
)


class ProductCategory(str, Enum):
    """Enumerate the two inventory tracking models."""

    BOTTLE = "bottle"
    DRUM = "drum"


class ItemType(str, Enum):
    """Enumerate the kinds of line items a cart can hold."""

    BOTTLE = "bottle"
    DRUM_POUR = "drum-pour"


class PaymentMethod(str, Enum):
    """Enumerate supported tender types for sales."""

    CASH = "cash"
    CARD = "card"
    MOBILE_MONEY = "mobile-money"
    SPLIT = "split"


class SaleStatus(str, Enum):
    """Lifecycle states of a committed sale."""

    ISSUED = "issued"
    SETTLED = "settled"


class Severity(str, Enum):
    """Audit log severities."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AuditAction(str, Enum):
    """Canonical audit log actions written by the core."""

    SALE_COMPLETE = "SALE_COMPLETE"
    SALE_SETTLE = "SALE_SETTLE"
    DAY_CLOSE = "DAY_CLOSE"
    DAY_REOPEN = "DAY_REOPEN"
    CASH_UP = "CASH_UP"
    DATA_RESTORE = "DATA_RESTORE"
    PRODUCT_IMPORT = "PRODUCT_IMPORT"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "LEGACY_SCHEMA_VERSIONS",
    "SPLIT_TOLERANCE",
    "DEFAULT_VAT_RATE",
    "DEFAULT_CURRENCY",
    "Collection",
    "LEGACY_COLLECTIONS",
    "ProductCategory",
    "ItemType",
    "PaymentMethod",
    "SaleStatus",
    "Severity",
    "AuditAction",
]
