"""Cash-up reconciliation.

Read-only arithmetic over committed sales. The calculator derives what each
tender should hold for the current shift; the caller pairs it with counted
actuals to produce a :class:`~galaxy_pos.models.CashUp`. Variance is recorded
as found and never corrected.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Iterable, List, Mapping, Optional, Union

from .constants import PaymentMethod, SaleStatus
from .models import CashUp, Sale


# Note and coin values counted in the till drawer.
DENOMINATIONS: tuple[int, ...] = (1000, 500, 200, 100, 50, 40, 20, 10, 5, 1)


@dataclass(frozen=True)
class ExpectedTotals:
    """System-expected takings per tender."""

    cash: Decimal = Decimal("0")
    mobile_money: Decimal = Decimal("0")
    card: Decimal = Decimal("0")
    sale_count: int = 0

    @property
    def total(self) -> Decimal:
        return self.cash + self.mobile_money + self.card


def last_cash_up_time(cashups: Iterable[CashUp]) -> Optional[datetime]:
    """Timestamp of the most recent cash-up, or ``None`` before the first one."""

    timestamps = [cashup.timestamp for cashup in cashups]
    return max(timestamps) if timestamps else None


def sales_since(sales: Iterable[Sale], since: Optional[datetime]) -> List[Sale]:
    """Settled sales made strictly after ``since`` (all settled sales if ``None``)."""

    return [
        sale
        for sale in sales
        if sale.status is SaleStatus.SETTLED and (since is None or sale.timestamp > since)
    ]


def expected_totals(sales: Iterable[Sale]) -> ExpectedTotals:
    """Sum sale totals per tender. Split sales contribute each component."""

    cash = mobile = card = Decimal("0")
    count = 0
    for sale in sales:
        count += 1
        method = sale.payment_method
        if method is PaymentMethod.CASH:
            cash += sale.total
        elif method is PaymentMethod.MOBILE_MONEY:
            mobile += sale.total
        elif method is PaymentMethod.CARD:
            card += sale.total
        elif method is PaymentMethod.SPLIT and sale.split_breakdown is not None:
            cash += sale.split_breakdown.cash
            mobile += sale.split_breakdown.mobile_money
            card += sale.split_breakdown.card
    return ExpectedTotals(cash=cash, mobile_money=mobile, card=card, sale_count=count)


def shift_expectation(sales: Iterable[Sale], cashups: Iterable[CashUp]) -> ExpectedTotals:
    """Expected totals for the shift that started at the last cash-up."""

    return expected_totals(sales_since(sales, last_cash_up_time(cashups)))


def count_denominations(counts: Mapping[Union[int, str], int]) -> Decimal:
    """Turn a ``{denomination: count}`` drawer count into a cash amount.

    Raises:
        ValueError: If a denomination is not in :data:`DENOMINATIONS` or a
            count is negative.
    """

    total = Decimal("0")
    for denomination, count in counts.items():
        value = str(denomination).strip()
        if not value.isdigit() or int(value) not in DENOMINATIONS:
            raise ValueError(
                f"Unknown denomination {denomination!r}; expected one of {', '.join(map(str, DENOMINATIONS))}"
            )
        if int(count) < 0:
            raise ValueError(f"Negative count for denomination {denomination}")
        total += int(value) * int(count)
    return Decimal(total)


def build_cash_up(
    expected: ExpectedTotals,
    *,
    actual_cash: Decimal,
    actual_mobile_money: Decimal,
    actual_card: Decimal,
    notes: str = "",
    when: Optional[datetime] = None,
    cash_up_id: Optional[str] = None,
) -> CashUp:
    """Pair expected totals with counted actuals.

    ``variance`` is total actual minus total expected; negative means the
    drawer is short.
    """

    when = when if when is not None else datetime.now(UTC)
    actual_total = actual_cash + actual_mobile_money + actual_card
    return CashUp(
        id=cash_up_id or f"CU-{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}",
        timestamp=when,
        expected_cash=expected.cash,
        actual_cash=actual_cash,
        expected_mobile_money=expected.mobile_money,
        actual_mobile_money=actual_mobile_money,
        expected_card=expected.card,
        actual_card=actual_card,
        variance=actual_total - expected.total,
        notes=notes,
    )
