"""Inventory ledger rules for bottles and drums.

The functions here are pure: they take product values and return new product
values or raise. The commit engine calls :func:`check_availability` and
:func:`apply_deduction` for every line against working copies of the products
and only writes once every line has passed, so a rejected sale never leaves
inventory partially decremented.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping

from . import log
from .constants import ItemType, ProductCategory
from .errors import InsufficientStockError, InsufficientVolumeError, LedgerInvariantError
from .models import Product, SaleItem


def requested_amount(product: Product, item: SaleItem) -> int:
    """Return how much of ``product`` a line consumes (units or ml).

    Raises:
        LedgerInvariantError: If the line quantity is below one, or the line
            type does not match the product (pours only from drums, bottle
            lines only from bottles).
    """

    if item.quantity < 1:
        raise LedgerInvariantError(
            f"Line '{item.id}' has quantity {item.quantity}; at least 1 is required",
            details={"productId": product.id, "itemId": item.id, "quantity": item.quantity},
        )
    expected_type = ItemType.DRUM_POUR if product.is_drum else ItemType.BOTTLE
    if item.type is not expected_type:
        raise LedgerInvariantError(
            f"Line '{item.id}' is a {item.type.value} line but '{product.id}' is a {product.category.value}",
            details={"productId": product.id, "itemId": item.id, "itemType": item.type.value},
        )
    if product.is_drum:
        if not item.volume or item.volume <= 0:
            raise LedgerInvariantError(
                f"Line '{item.id}' sells drum '{product.id}' without a pour volume",
                details={"productId": product.id, "itemId": item.id},
            )
        return item.volume * item.quantity
    return item.quantity


def check_availability(product: Product, item: SaleItem) -> None:
    """Verify that ``product`` can satisfy ``item``.

    Raises:
        InsufficientStockError: If a bottle line asks for more units than
            ``product.stock``.
        InsufficientVolumeError: If a drum line asks for more milliliters
            than ``product.current_level``.
    """

    requested = requested_amount(product, item)
    if product.is_drum:
        available = product.current_level or 0
        if requested > available:
            log.warning(
                "Insufficient volume for '%s': requested %dml, available %dml",
                product.id,
                requested,
                available,
            )
            raise InsufficientVolumeError(product.id, requested, available)
        return

    if requested > product.stock:
        log.warning(
            "Insufficient stock for '%s': requested %d, available %d",
            product.id,
            requested,
            product.stock,
        )
        raise InsufficientStockError(product.id, requested, product.stock)


def apply_deduction(product: Product, item: SaleItem) -> Product:
    """Return a copy of ``product`` with ``item`` taken out of inventory.

    Callers validate with :func:`check_availability` first. A deduction that
    would still overdraw is refused rather than clamped.

    Raises:
        LedgerInvariantError: If the result would be negative.
    """

    requested = requested_amount(product, item)
    if product.is_drum:
        remaining = (product.current_level or 0) - requested
        if remaining < 0:
            raise LedgerInvariantError(
                f"Deduction would drain drum '{product.id}' below zero",
                details={"productId": product.id, "requestedMl": requested, "availableMl": product.current_level},
            )
        updated = replace(product, current_level=remaining)
    else:
        remaining = product.stock - requested
        if remaining < 0:
            raise LedgerInvariantError(
                f"Deduction would push stock of '{product.id}' below zero",
                details={"productId": product.id, "requested": requested, "available": product.stock},
            )
        updated = replace(product, stock=remaining)
    ensure_invariants(updated)
    return updated


def plan_deductions(products: Mapping[str, Product], items: Iterable[SaleItem]) -> Dict[str, Product]:
    """Validate every line and compute the final value of each touched product.

    Lines are checked in order against a running working copy, so several
    lines that hit the same product are validated against their combined
    demand and the product appears once in the result. Nothing is written.

    Args:
        products: Current products keyed by id. Must contain every product
            referenced by ``items``.
        items: Sale lines in cart order.

    Returns:
        dict[str, Product]: Updated products keyed by id.

    Raises:
        InsufficientStockError: On the first bottle line that cannot be met.
        InsufficientVolumeError: On the first drum line that cannot be met.
    """

    working: Dict[str, Product] = {}
    for item in items:
        current = working.get(item.product_id, products[item.product_id])
        check_availability(current, item)
        working[item.product_id] = apply_deduction(current, item)
    return working


def ensure_invariants(product: Product) -> None:
    """Raise when a product value breaks the stock or volume bounds."""

    if product.category is ProductCategory.DRUM:
        if product.capacity is None or product.capacity <= 0:
            raise LedgerInvariantError(f"Drum '{product.id}' has no capacity")
        level = product.current_level if product.current_level is not None else 0
        if not 0 <= level <= product.capacity:
            raise LedgerInvariantError(
                f"Drum '{product.id}' level {level} outside 0..{product.capacity}"
            )
    elif product.stock < 0:
        raise LedgerInvariantError(f"Product '{product.id}' has negative stock {product.stock}")


def is_low_stock(product: Product) -> bool:
    return product.level <= product.min_threshold


def low_stock_products(products: Iterable[Product]) -> List[Product]:
    """Products at or below their alert floor, lowest relative level first."""

    flagged = [product for product in products if is_low_stock(product)]
    return sorted(flagged, key=lambda product: product.level - product.min_threshold)


def line_cost(product: Product, item: SaleItem) -> Decimal:
    """Cost basis of a line.

    Bottles cost ``buy_price`` per unit. A drum's ``buy_price`` covers its
    whole capacity, so a pour costs its share of that price.
    """

    if product.is_drum:
        capacity = product.capacity or 1
        return product.buy_price / Decimal(capacity) * Decimal(item.total_volume)
    return product.buy_price * item.quantity
