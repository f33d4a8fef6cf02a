"""Entity definitions and record codecs for Galaxy POS.

Entities are immutable dataclasses. The persistence layer stores them as JSON
records whose keys use the camelCase names of the original data files, so
backups produced by earlier versions of the till can be restored unchanged.
Monetary values travel as strings to keep :class:`~decimal.Decimal` precision,
and timestamps travel as ISO 8601 strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional

from .constants import (
    DEFAULT_CURRENCY,
    DEFAULT_VAT_RATE,
    Collection,
    ItemType,
    PaymentMethod,
    ProductCategory,
    SaleStatus,
    Severity,
)


Record = Dict[str, Any]

# Spellings used by older data files.
_PAYMENT_ALIASES = {"m-pesa": PaymentMethod.MOBILE_MONEY.value, "mpesa": PaymentMethod.MOBILE_MONEY.value}


@dataclass(frozen=True)
class DrumPourOption:
    """A named, fixed-size portion that can be sold from a drum."""

    label: str
    volume: int
    price: Decimal


@dataclass(frozen=True)
class Product:
    """A sellable item tracked either by unit count or by liquid volume.

    Bottles use ``stock``. Drums use ``capacity`` and ``current_level`` in
    milliliters and are sold through ``drum_pours``.
    """

    id: str
    name: str
    category: ProductCategory
    buy_price: Decimal
    sell_price: Decimal
    stock: int
    min_threshold: int
    capacity: Optional[int] = None
    current_level: Optional[int] = None
    drum_pours: tuple[DrumPourOption, ...] = ()
    image: Optional[str] = None

    @property
    def is_drum(self) -> bool:
        return self.category is ProductCategory.DRUM

    @property
    def level(self) -> int:
        """Quantity compared against ``min_threshold`` (units or ml)."""
        if self.is_drum:
            return self.current_level or 0
        return self.stock

    def find_pour(self, label: str) -> Optional[DrumPourOption]:
        for pour in self.drum_pours:
            if pour.label == label:
                return pour
        return None


@dataclass(frozen=True)
class SaleItem:
    """A cart line. ``name`` and ``price`` are snapshots taken at add time."""

    id: str
    product_id: str
    name: str
    quantity: int
    price: Decimal
    type: ItemType = ItemType.BOTTLE
    volume: Optional[int] = None

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity

    @property
    def total_volume(self) -> int:
        return (self.volume or 0) * self.quantity


@dataclass(frozen=True)
class SplitBreakdown:
    """Per-tender components of a split payment."""

    cash: Decimal = Decimal("0")
    mobile_money: Decimal = Decimal("0")
    card: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.cash + self.mobile_money + self.card

    def amount_for(self, method: PaymentMethod) -> Decimal:
        if method is PaymentMethod.CASH:
            return self.cash
        if method is PaymentMethod.MOBILE_MONEY:
            return self.mobile_money
        if method is PaymentMethod.CARD:
            return self.card
        return Decimal("0")


@dataclass(frozen=True)
class Sale:
    """A committed or candidate sale."""

    id: str
    timestamp: datetime
    items: tuple[SaleItem, ...]
    total: Decimal
    payment_method: PaymentMethod
    status: SaleStatus
    cashier_id: str
    vat_amount: Decimal
    table_number: Optional[str] = None
    split_breakdown: Optional[SplitBreakdown] = None
    settled_at: Optional[datetime] = None
    amount_received: Optional[Decimal] = None
    change_given: Optional[Decimal] = None


@dataclass(frozen=True)
class Receipt:
    """Printable snapshot of a sale, stored once alongside it."""

    id: str
    sale_id: str
    timestamp: datetime
    content: str
    total: Decimal


@dataclass(frozen=True)
class AuditLogEntry:
    """Append-only record of a state-changing action."""

    id: str
    timestamp: datetime
    action: str
    details: str
    user_id: str
    severity: Severity


@dataclass(frozen=True)
class Expense:
    id: str
    date: datetime
    description: str
    category: str
    amount: Decimal


@dataclass(frozen=True)
class CashUp:
    """Point-in-time reconciliation of expected against counted tenders."""

    id: str
    timestamp: datetime
    expected_cash: Decimal
    actual_cash: Decimal
    expected_mobile_money: Decimal
    actual_mobile_money: Decimal
    expected_card: Decimal
    actual_card: Decimal
    variance: Decimal
    notes: str = ""

    @property
    def expected_total(self) -> Decimal:
        return self.expected_cash + self.expected_mobile_money + self.expected_card

    @property
    def actual_total(self) -> Decimal:
        return self.actual_cash + self.actual_mobile_money + self.actual_card


@dataclass(frozen=True)
class Employee:
    id: str
    company_id: str
    name: str
    role: str
    pin: str


@dataclass(frozen=True)
class DayShift:
    """Open/closed state of one business day, keyed by its ISO date."""

    id: str
    is_closed: bool
    closed_at: Optional[datetime] = None


@dataclass(frozen=True)
class AppSettings:
    """Store-wide preferences. ``vat_rate`` is a percentage."""

    store_name: str
    admin_pin: str
    id: str = "global"
    store_phone: Optional[str] = None
    store_address: Optional[str] = None
    locked_tabs: tuple[str, ...] = ()
    webhook_url: str = ""
    boss_email: str = ""
    currency: str = DEFAULT_CURRENCY
    vat_rate: Decimal = DEFAULT_VAT_RATE
    session_timeout: int = 0

    @property
    def vat_fraction(self) -> Decimal:
        return self.vat_rate / Decimal("100")


@dataclass(frozen=True)
class SuspendedOrder:
    """A parked cart awaiting resumption. Holds no inventory."""

    id: str
    name: str
    items: tuple[SaleItem, ...]
    total: Decimal
    timestamp: datetime


@dataclass(frozen=True)
class DaySnapshot:
    """Totals frozen when a business day is closed."""

    id: str
    timestamp: datetime
    total_sales: Decimal
    payment_breakdown: SplitBreakdown
    total_expenses: Decimal
    variance: Decimal
    is_locked: bool = True


# ---------------------------------------------------------------------------
# Primitive converters
# ---------------------------------------------------------------------------


def money_to_text(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def text_to_money(raw: Any, default: Optional[Decimal] = Decimal("0")) -> Optional[Decimal]:
    """Convert a stored number or string into a :class:`Decimal`."""
    if raw is None or raw == "":
        return default
    return Decimal(str(raw))


def timestamp_to_text(value: Optional[datetime]) -> Optional[str]:
    return None if value is None else value.isoformat()


def text_to_timestamp(raw: Any) -> Optional[datetime]:
    """Parse ISO strings, and epoch milliseconds written by older backups."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(raw / 1000, tz=UTC)
    parsed = datetime.fromisoformat(str(raw))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _payment_method(raw: Any) -> PaymentMethod:
    value = str(raw)
    return PaymentMethod(_PAYMENT_ALIASES.get(value, value))


# ---------------------------------------------------------------------------
# Entity codecs
# ---------------------------------------------------------------------------


def serialize_pour(pour: DrumPourOption) -> Record:
    return {"label": pour.label, "volume": pour.volume, "price": money_to_text(pour.price)}


def deserialize_pour(raw: Mapping[str, Any]) -> DrumPourOption:
    return DrumPourOption(label=str(raw["label"]), volume=int(raw["volume"]), price=text_to_money(raw["price"]))


def serialize_product(record: Product) -> Record:
    """Convert a product into its stored JSON record."""

    return {
        "id": record.id,
        "name": record.name,
        "category": record.category.value,
        "buyPrice": money_to_text(record.buy_price),
        "sellPrice": money_to_text(record.sell_price),
        "stock": record.stock,
        "minThreshold": record.min_threshold,
        "capacity": record.capacity,
        "currentLevel": record.current_level,
        "drumPours": [serialize_pour(pour) for pour in record.drum_pours],
        "image": record.image,
    }


def deserialize_product(raw: Mapping[str, Any]) -> Product:
    """Build a :class:`Product` from a stored record.

    Records written by the first generation of the till describe drum pours as
    a ``drumPrices`` mapping such as ``{"50ml": 150}``; those are converted
    into pour options whose volume is read from the label.
    """

    pours = tuple(deserialize_pour(pour) for pour in raw.get("drumPours") or ())
    if not pours and raw.get("drumPrices"):
        pours = tuple(
            DrumPourOption(label=label, volume=int(label.rstrip("ml")), price=text_to_money(price))
            for label, price in raw["drumPrices"].items()
        )
    capacity = raw.get("capacity")
    current_level = raw.get("currentLevel")
    return Product(
        id=str(raw["id"]),
        name=str(raw["name"]),
        category=ProductCategory(raw.get("category", ProductCategory.BOTTLE.value)),
        buy_price=text_to_money(raw.get("buyPrice")),
        sell_price=text_to_money(raw.get("sellPrice")),
        stock=int(raw.get("stock") or 0),
        min_threshold=int(raw.get("minThreshold") or 0),
        capacity=int(capacity) if capacity is not None else None,
        current_level=int(current_level) if current_level is not None else None,
        drum_pours=pours,
        image=raw.get("image"),
    )


def serialize_sale_item(record: SaleItem) -> Record:
    return {
        "id": record.id,
        "productId": record.product_id,
        "name": record.name,
        "quantity": record.quantity,
        "price": money_to_text(record.price),
        "type": record.type.value,
        "volume": record.volume,
    }


def deserialize_sale_item(raw: Mapping[str, Any]) -> SaleItem:
    volume = raw.get("volume")
    return SaleItem(
        id=str(raw.get("id") or raw["productId"]),
        product_id=str(raw["productId"]),
        name=str(raw.get("name", "")),
        quantity=int(raw["quantity"]),
        price=text_to_money(raw["price"]),
        type=ItemType(raw.get("type", ItemType.BOTTLE.value)),
        volume=int(volume) if volume is not None else None,
    )


def serialize_split(record: SplitBreakdown) -> Record:
    return {
        "cash": money_to_text(record.cash),
        "mobileMoney": money_to_text(record.mobile_money),
        "card": money_to_text(record.card),
    }


def deserialize_split(raw: Mapping[str, Any]) -> SplitBreakdown:
    mobile = raw.get("mobileMoney", raw.get("mpesa"))
    return SplitBreakdown(
        cash=text_to_money(raw.get("cash")),
        mobile_money=text_to_money(mobile),
        card=text_to_money(raw.get("card")),
    )


def serialize_sale(record: Sale) -> Record:
    """Convert a sale, including its line items, into a stored record."""

    return {
        "id": record.id,
        "timestamp": timestamp_to_text(record.timestamp),
        "items": [serialize_sale_item(item) for item in record.items],
        "total": money_to_text(record.total),
        "paymentMethod": record.payment_method.value,
        "status": record.status.value,
        "cashierId": record.cashier_id,
        "vatAmount": money_to_text(record.vat_amount),
        "tableNumber": record.table_number,
        "splitBreakdown": serialize_split(record.split_breakdown) if record.split_breakdown else None,
        "settledAt": timestamp_to_text(record.settled_at),
        "amountReceived": money_to_text(record.amount_received),
        "changeGiven": money_to_text(record.change_given),
    }


def deserialize_sale(raw: Mapping[str, Any]) -> Sale:
    """Build a :class:`Sale` from a stored record.

    Older records without a ``status`` are treated as settled, matching the
    behaviour of tills that recorded payment at checkout.
    """

    split_raw = raw.get("splitBreakdown")
    return Sale(
        id=str(raw["id"]),
        timestamp=text_to_timestamp(raw["timestamp"]),
        items=tuple(deserialize_sale_item(item) for item in raw.get("items") or ()),
        total=text_to_money(raw.get("total")),
        payment_method=_payment_method(raw.get("paymentMethod", PaymentMethod.CASH.value)),
        status=SaleStatus(raw.get("status") or SaleStatus.SETTLED.value),
        cashier_id=str(raw.get("cashierId", "")),
        vat_amount=text_to_money(raw.get("vatAmount")),
        table_number=raw.get("tableNumber"),
        split_breakdown=deserialize_split(split_raw) if split_raw else None,
        settled_at=text_to_timestamp(raw.get("settledAt")),
        amount_received=text_to_money(raw.get("amountReceived"), default=None),
        change_given=text_to_money(raw.get("changeGiven"), default=None),
    )


def serialize_receipt(record: Receipt) -> Record:
    return {
        "id": record.id,
        "saleId": record.sale_id,
        "timestamp": timestamp_to_text(record.timestamp),
        "content": record.content,
        "total": money_to_text(record.total),
    }


def deserialize_receipt(raw: Mapping[str, Any]) -> Receipt:
    return Receipt(
        id=str(raw["id"]),
        sale_id=str(raw["saleId"]),
        timestamp=text_to_timestamp(raw["timestamp"]),
        content=str(raw.get("content", "")),
        total=text_to_money(raw.get("total")),
    )


def serialize_audit(record: AuditLogEntry) -> Record:
    return {
        "id": record.id,
        "timestamp": timestamp_to_text(record.timestamp),
        "action": record.action,
        "details": record.details,
        "userId": record.user_id,
        "severity": record.severity.value,
    }


def deserialize_audit(raw: Mapping[str, Any]) -> AuditLogEntry:
    return AuditLogEntry(
        id=str(raw["id"]),
        timestamp=text_to_timestamp(raw["timestamp"]),
        action=str(raw["action"]),
        details=str(raw.get("details", "")),
        user_id=str(raw.get("userId", "")),
        severity=Severity(raw.get("severity", Severity.INFO.value)),
    )


def serialize_expense(record: Expense) -> Record:
    return {
        "id": record.id,
        "date": timestamp_to_text(record.date),
        "description": record.description,
        "category": record.category,
        "amount": money_to_text(record.amount),
    }


def deserialize_expense(raw: Mapping[str, Any]) -> Expense:
    return Expense(
        id=str(raw["id"]),
        date=text_to_timestamp(raw["date"]),
        description=str(raw.get("description", "")),
        category=str(raw.get("category", "")),
        amount=text_to_money(raw.get("amount")),
    )


def serialize_cash_up(record: CashUp) -> Record:
    return {
        "id": record.id,
        "timestamp": timestamp_to_text(record.timestamp),
        "expectedCash": money_to_text(record.expected_cash),
        "actualCash": money_to_text(record.actual_cash),
        "expectedMobileMoney": money_to_text(record.expected_mobile_money),
        "actualMobileMoney": money_to_text(record.actual_mobile_money),
        "expectedCard": money_to_text(record.expected_card),
        "actualCard": money_to_text(record.actual_card),
        "variance": money_to_text(record.variance),
        "notes": record.notes,
    }


def deserialize_cash_up(raw: Mapping[str, Any]) -> CashUp:
    return CashUp(
        id=str(raw["id"]),
        timestamp=text_to_timestamp(raw["timestamp"]),
        expected_cash=text_to_money(raw.get("expectedCash")),
        actual_cash=text_to_money(raw.get("actualCash")),
        expected_mobile_money=text_to_money(raw.get("expectedMobileMoney", raw.get("expectedMPesa"))),
        actual_mobile_money=text_to_money(raw.get("actualMobileMoney", raw.get("actualMPesa"))),
        expected_card=text_to_money(raw.get("expectedCard")),
        actual_card=text_to_money(raw.get("actualCard")),
        variance=text_to_money(raw.get("variance")),
        notes=str(raw.get("notes") or ""),
    )


def serialize_employee(record: Employee) -> Record:
    return {
        "id": record.id,
        "companyId": record.company_id,
        "name": record.name,
        "role": record.role,
        "pin": record.pin,
    }


def deserialize_employee(raw: Mapping[str, Any]) -> Employee:
    return Employee(
        id=str(raw["id"]),
        company_id=str(raw.get("companyId", "")),
        name=str(raw["name"]),
        role=str(raw.get("role", "cashier")),
        pin=str(raw.get("pin", "")),
    )


def serialize_shift(record: DayShift) -> Record:
    return {"id": record.id, "isClosed": record.is_closed, "closedAt": timestamp_to_text(record.closed_at)}


def deserialize_shift(raw: Mapping[str, Any]) -> DayShift:
    return DayShift(
        id=str(raw["id"]),
        is_closed=bool(raw.get("isClosed")),
        closed_at=text_to_timestamp(raw.get("closedAt")),
    )


def serialize_settings(record: AppSettings) -> Record:
    return {
        "id": record.id,
        "storeName": record.store_name,
        "storePhone": record.store_phone,
        "storeAddress": record.store_address,
        "adminPin": record.admin_pin,
        "lockedTabs": list(record.locked_tabs),
        "webhookUrl": record.webhook_url,
        "bossEmail": record.boss_email,
        "currency": record.currency,
        "vatRate": money_to_text(record.vat_rate),
        "sessionTimeout": record.session_timeout,
    }


def deserialize_settings(raw: Mapping[str, Any]) -> AppSettings:
    return AppSettings(
        id=str(raw.get("id") or "global"),
        store_name=str(raw["storeName"]),
        admin_pin=str(raw.get("adminPin", "")),
        store_phone=raw.get("storePhone"),
        store_address=raw.get("storeAddress"),
        locked_tabs=tuple(raw.get("lockedTabs") or ()),
        webhook_url=str(raw.get("webhookUrl") or ""),
        boss_email=str(raw.get("bossEmail") or ""),
        currency=str(raw.get("currency") or DEFAULT_CURRENCY),
        vat_rate=text_to_money(raw.get("vatRate"), default=DEFAULT_VAT_RATE),
        session_timeout=int(raw.get("sessionTimeout") or 0),
    )


def serialize_suspended(record: SuspendedOrder) -> Record:
    return {
        "id": record.id,
        "name": record.name,
        "items": [serialize_sale_item(item) for item in record.items],
        "total": money_to_text(record.total),
        "timestamp": timestamp_to_text(record.timestamp),
    }


def deserialize_suspended(raw: Mapping[str, Any]) -> SuspendedOrder:
    return SuspendedOrder(
        id=str(raw["id"]),
        name=str(raw.get("name", "")),
        items=tuple(deserialize_sale_item(item) for item in raw.get("items") or ()),
        total=text_to_money(raw.get("total")),
        timestamp=text_to_timestamp(raw["timestamp"]),
    )


def serialize_snapshot(record: DaySnapshot) -> Record:
    return {
        "id": record.id,
        "timestamp": timestamp_to_text(record.timestamp),
        "totalSales": money_to_text(record.total_sales),
        "paymentBreakdown": serialize_split(record.payment_breakdown),
        "totalExpenses": money_to_text(record.total_expenses),
        "variance": money_to_text(record.variance),
        "isLocked": record.is_locked,
    }


def deserialize_snapshot(raw: Mapping[str, Any]) -> DaySnapshot:
    return DaySnapshot(
        id=str(raw["id"]),
        timestamp=text_to_timestamp(raw["timestamp"]),
        total_sales=text_to_money(raw.get("totalSales")),
        payment_breakdown=deserialize_split(raw.get("paymentBreakdown") or {}),
        total_expenses=text_to_money(raw.get("totalExpenses")),
        variance=text_to_money(raw.get("variance")),
        is_locked=bool(raw.get("isLocked", True)),
    )


@dataclass(frozen=True)
class Codec:
    """Pair of functions translating one entity type to and from records."""

    entity_type: type
    serialize: Callable[[Any], Record] = field(repr=False)
    deserialize: Callable[[Mapping[str, Any]], Any] = field(repr=False)


CODECS: Dict[Collection, Codec] = {
    Collection.PRODUCTS: Codec(Product, serialize_product, deserialize_product),
    Collection.SALES: Codec(Sale, serialize_sale, deserialize_sale),
    Collection.EXPENSES: Codec(Expense, serialize_expense, deserialize_expense),
    Collection.CASHUPS: Codec(CashUp, serialize_cash_up, deserialize_cash_up),
    Collection.EMPLOYEES: Codec(Employee, serialize_employee, deserialize_employee),
    Collection.SETTINGS: Codec(AppSettings, serialize_settings, deserialize_settings),
    Collection.SHIFTS: Codec(DayShift, serialize_shift, deserialize_shift),
    Collection.AUDIT_LOGS: Codec(AuditLogEntry, serialize_audit, deserialize_audit),
    Collection.RECEIPTS: Codec(Receipt, serialize_receipt, deserialize_receipt),
    Collection.SNAPSHOTS: Codec(DaySnapshot, serialize_snapshot, deserialize_snapshot),
    Collection.SUSPENDED_ORDERS: Codec(SuspendedOrder, serialize_suspended, deserialize_suspended),
}


def codec_for(collection: Collection) -> Codec:
    return CODECS[Collection(collection)]
