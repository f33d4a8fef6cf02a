"""Sale aggregate builder.

Turns a cart of :class:`~galaxy_pos.models.SaleItem` lines plus checkout
context into a candidate :class:`~galaxy_pos.models.Sale`. Nothing in this
module reads or writes the store; the commit engine in
:mod:`galaxy_pos.core_logic` is the only path from a candidate sale to
persisted inventory changes.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from . import log
from .constants import SPLIT_TOLERANCE, ItemType, PaymentMethod, SaleStatus
from .errors import (
    EmptyCartError,
    InsufficientPaymentError,
    SaleStateError,
    SplitMismatchError,
    ValidationError,
)
from .models import Product, Receipt, Sale, SaleItem, SplitBreakdown


@dataclass(frozen=True)
class SaleContext:
    """Checkout details supplied alongside the cart.

    ``vat_rate`` is a fraction (``0.16`` for 16%). A sale built with
    ``status=SETTLED`` is paid at checkout; ``ISSUED`` leaves it open as a tab
    to be settled later.
    """

    payment_method: PaymentMethod
    cashier_id: str
    vat_rate: Decimal
    table_number: Optional[str] = None
    split_breakdown: Optional[SplitBreakdown] = None
    status: SaleStatus = SaleStatus.SETTLED
    amount_received: Optional[Decimal] = None
    split_tolerance: Decimal = SPLIT_TOLERANCE
    timestamp: Optional[datetime] = None
    sale_id: Optional[str] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def generate_sale_id(*, prefix: str = "GXY", when: Optional[datetime] = None) -> str:
    """Generate a sortable sale identifier such as ``GXY-20250101120000123456``."""

    when = when or _resolve_timestamp(None)
    return f"{prefix}-{when.strftime('%Y%m%d%H%M%S%f')}"


# ---------------------------------------------------------------------------
# Cart helpers
# ---------------------------------------------------------------------------


def bottle_item(product: Product, quantity: int = 1) -> SaleItem:
    """Snapshot a bottle product into a cart line at its current price."""

    if product.is_drum:
        raise ValidationError(f"'{product.id}' is a drum; sell it by pour")
    return SaleItem(
        id=product.id,
        product_id=product.id,
        name=product.name,
        quantity=quantity,
        price=product.sell_price,
        type=ItemType.BOTTLE,
    )


def pour_item(product: Product, label: str, quantity: int = 1) -> SaleItem:
    """Snapshot one of a drum's pour options into a cart line."""

    pour = product.find_pour(label)
    if not product.is_drum or pour is None:
        raise ValidationError(
            f"'{product.id}' has no pour option '{label}'",
            details={"productId": product.id, "label": label},
        )
    return SaleItem(
        id=f"{product.id}-{label}",
        product_id=product.id,
        name=f"{product.name} ({label})",
        quantity=quantity,
        price=pour.price,
        type=ItemType.DRUM_POUR,
        volume=pour.volume,
    )


def add_to_cart(cart: Sequence[SaleItem], item: SaleItem) -> tuple[SaleItem, ...]:
    """Return a new cart with ``item`` merged into a matching line or appended.

    Lines merge when they share an id (same bottle, or same drum and pour).
    The existing line keeps its original price snapshot.
    """

    merged = []
    found = False
    for line in cart:
        if line.id == item.id:
            line = replace(line, quantity=line.quantity + item.quantity)
            found = True
        merged.append(line)
    if not found:
        merged.append(item)
    return tuple(merged)


def cart_total(cart: Iterable[SaleItem]) -> Decimal:
    return sum((item.line_total for item in cart), Decimal("0"))


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


def _validate_line(item: SaleItem) -> None:
    if item.quantity < 1:
        raise ValidationError(
            f"Line '{item.id}' has quantity {item.quantity}; must be at least 1",
            details={"itemId": item.id, "quantity": item.quantity},
        )
    if item.price < 0:
        raise ValidationError(
            f"Line '{item.id}' has a negative price",
            details={"itemId": item.id, "price": item.price},
        )
    if item.type is ItemType.DRUM_POUR and not item.volume:
        raise ValidationError(
            f"Pour line '{item.id}' has no volume",
            details={"itemId": item.id},
        )


def settlement_fields(
    total: Decimal,
    method: PaymentMethod,
    amount_received: Optional[Decimal],
) -> tuple[Decimal, Decimal]:
    """Compute ``(amount_received, change_given)`` for a payment.

    Only cash can be over-tendered. Card, mobile money and split payments are
    taken for the exact total.

    Raises:
        InsufficientPaymentError: If cash tendered is below ``total``.
    """

    if method is not PaymentMethod.CASH or amount_received is None:
        return total, Decimal("0")
    if amount_received < total:
        raise InsufficientPaymentError(total, amount_received)
    return amount_received, amount_received - total


def build_sale(cart: Sequence[SaleItem], context: SaleContext) -> Sale:
    """Assemble a candidate sale from ``cart``.

    ``total`` is the exact sum of ``price * quantity`` and ``vat_amount`` is
    ``total * context.vat_rate``; no rounding is applied. For split payments
    the breakdown must match ``total`` within ``context.split_tolerance``.

    Args:
        cart: Cart lines in display order. Price snapshots are kept as-is.
        context: Payment and staff details.

    Returns:
        Sale: Immutable candidate ready for :func:`core_logic.commit_sale`.

    Raises:
        EmptyCartError: If ``cart`` has no lines.
        SplitMismatchError: If a split breakdown does not match the total.
        InsufficientPaymentError: If a settled cash sale is under-tendered.
        ValidationError: If a line has a non-positive quantity or a negative
            price.
    """

    if not cart:
        raise EmptyCartError()
    for item in cart:
        _validate_line(item)

    total = cart_total(cart)
    method = PaymentMethod(context.payment_method)

    split = None
    if method is PaymentMethod.SPLIT:
        got = context.split_breakdown.total if context.split_breakdown else Decimal("0")
        if abs(got - total) > context.split_tolerance:
            log.warning("Split mismatch: expected %s, got %s", total, got)
            raise SplitMismatchError(total, got)
        split = context.split_breakdown

    timestamp = _resolve_timestamp(context.timestamp)
    settled_at = amount_received = change_given = None
    if context.status is SaleStatus.SETTLED:
        amount_received, change_given = settlement_fields(total, method, context.amount_received)
        settled_at = timestamp

    return Sale(
        id=context.sale_id or generate_sale_id(when=timestamp),
        timestamp=timestamp,
        items=tuple(cart),
        total=total,
        payment_method=method,
        status=context.status,
        cashier_id=context.cashier_id,
        vat_amount=total * context.vat_rate,
        table_number=context.table_number,
        split_breakdown=split,
        settled_at=settled_at,
        amount_received=amount_received,
        change_given=change_given,
    )


def settle(
    sale: Sale,
    *,
    amount_received: Optional[Decimal] = None,
    payment_method: Optional[PaymentMethod] = None,
    split_breakdown: Optional[SplitBreakdown] = None,
    split_tolerance: Decimal = SPLIT_TOLERANCE,
    when: Optional[datetime] = None,
) -> Sale:
    """Return ``sale`` moved from ``issued`` to ``settled``.

    The tender may be changed at settlement time (a tab opened as cash can be
    paid by card). Items, total and VAT never change.

    Raises:
        SaleStateError: If ``sale`` is already settled.
        SplitMismatchError: If a split settlement does not match the total.
        InsufficientPaymentError: If cash tendered is below the total.
    """

    if sale.status is SaleStatus.SETTLED:
        raise SaleStateError(
            f"Sale '{sale.id}' is already settled",
            details={"saleId": sale.id},
        )
    method = PaymentMethod(payment_method or sale.payment_method)
    split = split_breakdown or sale.split_breakdown
    if method is PaymentMethod.SPLIT:
        got = split.total if split else Decimal("0")
        if abs(got - sale.total) > split_tolerance:
            raise SplitMismatchError(sale.total, got)
    else:
        split = None
    received, change = settlement_fields(sale.total, method, amount_received)
    return replace(
        sale,
        status=SaleStatus.SETTLED,
        payment_method=method,
        split_breakdown=split,
        settled_at=_resolve_timestamp(when),
        amount_received=received,
        change_given=change,
    )


# ---------------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------------


def render_receipt(sale: Sale, *, store_name: str, currency: str) -> str:
    """Plain-text receipt body stored with the sale."""

    lines = [
        store_name.upper(),
        f"Receipt: {sale.id}",
        f"Date: {sale.timestamp:%Y-%m-%d %H:%M}",
        f"Cashier: {sale.cashier_id}",
    ]
    if sale.table_number:
        lines.append(f"Table: {sale.table_number}")
    lines.append("-" * 32)
    for item in sale.items:
        lines.append(f"{item.quantity} x {item.name} @ {item.price} = {item.line_total}")
    lines.append("-" * 32)
    lines.append(f"TOTAL {currency} {sale.total}")
    lines.append(f"VAT incl. {sale.vat_amount}")
    lines.append(f"Paid by {sale.payment_method.value}")
    if sale.split_breakdown:
        split = sale.split_breakdown
        lines.append(f"  cash {split.cash} / mobile {split.mobile_money} / card {split.card}")
    if sale.status is SaleStatus.ISSUED:
        lines.append("UNPAID - TAB OPEN")
    return "\n".join(lines)


def make_receipt(sale: Sale, *, store_name: str, currency: str) -> Receipt:
    return Receipt(
        id=f"RCP-{sale.id}",
        sale_id=sale.id,
        timestamp=sale.timestamp,
        content=render_receipt(sale, store_name=store_name, currency=currency),
        total=sale.total,
    )
