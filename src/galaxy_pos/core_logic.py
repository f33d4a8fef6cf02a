"""Business logic layer for Galaxy POS.

This module orchestrates the domain rules in :mod:`galaxy_pos.ledger`,
:mod:`galaxy_pos.sales` and :mod:`galaxy_pos.reconciliation` against the
:class:`~galaxy_pos.data_manager.WorkbookStore`. Every mutation runs inside a
single store transaction, so a rejected operation leaves the workbook exactly
as it was.

The central operation is :func:`commit_to_store`, the inventory-commit
transaction: it gates on the business day, validates every line of a sale
against current inventory, and writes the decremented products, the sale,
its receipt and an audit entry as one unit.
"""

from __future__ import annotations

import csv
import io
import json
import uuid
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    AuditAction,
    Collection,
    PaymentMethod,
    ProductCategory,
    SaleStatus,
    Severity,
)
from .defaults import INITIAL_EMPLOYEES, INITIAL_PRODUCTS, INITIAL_SETTINGS
from .errors import (
    DayClosedError,
    DayStateError,
    DuplicateSaleError,
    EmptyCartError,
    InvalidBackupError,
    LedgerInvariantError,
    MissingReferenceError,
    ProductNotFoundError,
    ValidationError,
)
from .ledger import ensure_invariants, line_cost, plan_deductions
from .models import (
    AppSettings,
    AuditLogEntry,
    CashUp,
    DayShift,
    DaySnapshot,
    Employee,
    Expense,
    Product,
    Receipt,
    Sale,
    SaleItem,
    SplitBreakdown,
    SuspendedOrder,
    codec_for,
    timestamp_to_text,
)
from .reconciliation import build_cash_up, expected_totals, shift_expectation
from .sales import SaleContext, build_sale, cart_total, make_receipt, settle


SYSTEM_USER = "system"

# Backup file keys, in the order they are written.
BACKUP_KEYS: Dict[Collection, str] = {
    Collection.PRODUCTS: "products",
    Collection.SALES: "sales",
    Collection.EXPENSES: "expenses",
    Collection.CASHUPS: "cashups",
    Collection.EMPLOYEES: "employees",
    Collection.SETTINGS: "settings",
    Collection.SHIFTS: "shifts",
    Collection.AUDIT_LOGS: "auditLogs",
    Collection.RECEIPTS: "receipts",
    Collection.SNAPSHOTS: "snapshots",
    Collection.SUSPENDED_ORDERS: "suspendedOrders",
}
REQUIRED_BACKUP_KEYS = ("products", "sales")

CSV_DEFAULT_CAPACITY = 50000
CSV_DEFAULT_THRESHOLD = 10


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the open store used by the BLL."""

    settings: data_manager.ConfigSettings
    store: data_manager.WorkbookStore


@dataclass(frozen=True)
class Snapshot:
    """Everything a till needs at start-up, read in one pass."""

    products: List[Product]
    sales: List[Sale]
    expenses: List[Expense]
    cashups: List[CashUp]
    employees: List[Employee]
    audit_logs: List[AuditLogEntry]
    settings: AppSettings
    current_shift: DayShift
    suspended_orders: List[SuspendedOrder]
    snapshots: List[DaySnapshot]


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def business_day(when: datetime) -> str:
    """Identifier of the business day containing ``when`` (UTC ISO date)."""

    if when.tzinfo is not None:
        when = when.astimezone(UTC)
    return when.date().isoformat()


# ---------------------------------------------------------------------------
# Runtime context
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the store they point at.

    Args:
        config_path (Path | None): Optional override path for the
            configuration file. When omitted the data layer searches upward
            from the current working directory.

    Returns:
        RuntimeContext: Settings plus an open :class:`WorkbookStore`.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
        StorageFailureError: If the workbook cannot be read or migrated.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = data_manager.WorkbookStore.open(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Check that ``config.ini`` targets the schema this code writes.

    Raises:
        RuntimeError: If the configured schema version differs from
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Configured schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Configured schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


def make_audit_entry(
    action: AuditAction,
    details: str,
    *,
    user_id: Optional[str] = None,
    severity: Severity = Severity.INFO,
    when: Optional[datetime] = None,
) -> AuditLogEntry:
    when = _resolve_timestamp(when)
    return AuditLogEntry(
        id=f"AUD-{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}",
        timestamp=when,
        action=AuditAction(action).value,
        details=details,
        user_id=user_id or SYSTEM_USER,
        severity=severity,
    )


def list_audit_logs(context: RuntimeContext, *, limit: Optional[int] = None) -> List[AuditLogEntry]:
    """Audit entries newest first, truncated to ``limit`` at read time."""

    entries = sorted(context.store.get_all(Collection.AUDIT_LOGS), key=lambda entry: entry.timestamp)
    entries.reverse()
    return entries[:limit] if limit is not None else entries


# ---------------------------------------------------------------------------
# Inventory commit
# ---------------------------------------------------------------------------


def _ensure_day_open(source: Any, day_id: str) -> None:
    shift = source.get_by_id(Collection.SHIFTS, day_id)
    if shift is not None and shift.is_closed:
        log.warning("Rejected write for closed business day %s", day_id)
        raise DayClosedError(day_id)


def commit_to_store(
    store: data_manager.WorkbookStore,
    sale: Sale,
    receipt: Receipt,
    *,
    user_id: Optional[str] = None,
) -> Sale:
    """Commit ``sale`` and its inventory effects as one atomic unit.

    Inside a single store transaction the engine:

    1. rejects the sale if its business day is closed, before reading any
       product, so a closed day wins over every other rejection;
    2. rejects a sale without lines, a receipt issued for another sale and a
       sale id that has already been committed;
    3. loads every referenced product and validates each line in cart order
       against a running working copy, so repeated lines for one product are
       checked against their combined demand;
    4. writes every decremented product, the sale, the receipt and a
       ``SALE_COMPLETE`` audit entry.

    Any failure discards all staged writes: either every product decrement
    and the sale are durable together, or nothing is.

    Returns:
        Sale: The committed sale.

    Raises:
        DayClosedError: If the sale's business day is closed.
        EmptyCartError: If the sale has no lines.
        ValidationError: If ``receipt`` was issued for a different sale.
        DuplicateSaleError: If ``sale.id`` already exists.
        LedgerInvariantError: If a line has a quantity below one or its
            type does not match the product.
        ProductNotFoundError: On the first line naming an unknown product.
        InsufficientStockError: On the first bottle line that cannot be met.
        InsufficientVolumeError: On the first drum line that cannot be met.
        StorageFailureError: If the workbook cannot be written.
    """

    day_id = business_day(sale.timestamp)
    with store.transaction() as txn:
        _ensure_day_open(txn, day_id)

        if not sale.items:
            log.warning("Rejected sale %s without line items", sale.id)
            raise EmptyCartError()
        if receipt.sale_id != sale.id:
            raise ValidationError(
                f"Receipt '{receipt.id}' belongs to sale '{receipt.sale_id}', not '{sale.id}'",
                details={"receiptId": receipt.id, "saleId": sale.id},
            )

        if txn.get_by_id(Collection.SALES, sale.id) is not None:
            log.warning("Rejected duplicate sale id %s", sale.id)
            raise DuplicateSaleError(sale.id)

        products: Dict[str, Product] = {}
        for item in sale.items:
            if item.product_id in products:
                continue
            product = txn.get_by_id(Collection.PRODUCTS, item.product_id)
            if product is None:
                log.warning("Sale %s references unknown product '%s'", sale.id, item.product_id)
                raise ProductNotFoundError(item.product_id)
            products[item.product_id] = product

        updated = plan_deductions(products, sale.items)

        txn.put_batch(Collection.PRODUCTS, updated.values())
        txn.put(Collection.SALES, sale)
        txn.put(Collection.RECEIPTS, receipt)
        txn.put(
            Collection.AUDIT_LOGS,
            make_audit_entry(
                AuditAction.SALE_COMPLETE,
                f"Sale {sale.id} completed for {sale.total} ({sale.payment_method.value})",
                user_id=user_id or sale.cashier_id,
                when=sale.timestamp,
            ),
        )

    log.info(
        "Committed sale %s: %d line(s), total %s, %d product(s) updated",
        sale.id,
        len(sale.items),
        sale.total,
        len(updated),
    )
    return sale


def commit_sale(context: RuntimeContext, sale: Sale, receipt: Receipt) -> Sale:
    """Run :func:`commit_to_store` against the context's store."""

    return commit_to_store(context.store, sale, receipt)


def checkout(
    context: RuntimeContext,
    cart: Sequence[SaleItem],
    *,
    payment_method: PaymentMethod,
    cashier_id: Optional[str] = None,
    table_number: Optional[str] = None,
    split_breakdown: Optional[SplitBreakdown] = None,
    status: SaleStatus = SaleStatus.SETTLED,
    amount_received: Optional[Decimal] = None,
    timestamp: Optional[datetime] = None,
) -> Sale:
    """Build, render and commit a sale from ``cart`` in one call.

    VAT, currency, store name and split tolerance come from ``config.ini``.
    """

    settings = context.settings
    sale = build_sale(
        cart,
        SaleContext(
            payment_method=PaymentMethod(payment_method),
            cashier_id=cashier_id or settings.default_cashier_id,
            vat_rate=settings.vat_fraction,
            table_number=table_number,
            split_breakdown=split_breakdown,
            status=status,
            amount_received=amount_received,
            split_tolerance=settings.split_tolerance,
            timestamp=timestamp,
        ),
    )
    receipt = make_receipt(sale, store_name=settings.store_name, currency=settings.currency)
    return commit_sale(context, sale, receipt)


def settle_sale(
    context: RuntimeContext,
    sale_id: str,
    *,
    amount_received: Optional[Decimal] = None,
    payment_method: Optional[PaymentMethod] = None,
    split_breakdown: Optional[SplitBreakdown] = None,
    user_id: Optional[str] = None,
    when: Optional[datetime] = None,
) -> Sale:
    """Move an issued sale (an open tab) to settled.

    Inventory is untouched; it was decremented when the sale was committed.

    Raises:
        MissingReferenceError: If ``sale_id`` is unknown.
        SaleStateError: If the sale is already settled.
        InsufficientPaymentError: If cash tendered is below the total.
        SplitMismatchError: If a split settlement does not match the total.
    """

    when = _resolve_timestamp(when)
    with context.store.transaction() as txn:
        sale = txn.get_by_id(Collection.SALES, sale_id)
        if sale is None:
            raise MissingReferenceError(f"Unknown sale id: {sale_id}", details={"saleId": sale_id})
        settled = settle(
            sale,
            amount_received=amount_received,
            payment_method=payment_method,
            split_breakdown=split_breakdown,
            split_tolerance=context.settings.split_tolerance,
            when=when,
        )
        txn.put(Collection.SALES, settled)
        txn.put(
            Collection.AUDIT_LOGS,
            make_audit_entry(
                AuditAction.SALE_SETTLE,
                f"Sale {sale_id} settled by {settled.payment_method.value} "
                f"(received {settled.amount_received}, change {settled.change_given})",
                user_id=user_id,
                when=when,
            ),
        )

    log.info("Settled sale %s via %s", sale_id, settled.payment_method.value)
    return settled


# ---------------------------------------------------------------------------
# Business day gate
# ---------------------------------------------------------------------------


def current_shift(context: RuntimeContext, when: Optional[datetime] = None) -> DayShift:
    """Shift for the business day containing ``when``; open if never closed."""

    day_id = business_day(_resolve_timestamp(when))
    shift = context.store.get_by_id(Collection.SHIFTS, day_id)
    return shift if shift is not None else DayShift(id=day_id, is_closed=False)


def is_day_closed(context: RuntimeContext, when: Optional[datetime] = None) -> bool:
    return current_shift(context, when).is_closed


def _day_snapshot(txn: Any, day_id: str, when: datetime) -> DaySnapshot:
    day_sales = [sale for sale in txn.get_all(Collection.SALES) if business_day(sale.timestamp) == day_id]
    settled = [sale for sale in day_sales if sale.status is SaleStatus.SETTLED]
    tenders = expected_totals(settled)
    expenses = [expense for expense in txn.get_all(Collection.EXPENSES) if business_day(expense.date) == day_id]
    cashups = sorted(
        (cashup for cashup in txn.get_all(Collection.CASHUPS) if business_day(cashup.timestamp) == day_id),
        key=lambda cashup: cashup.timestamp,
    )
    return DaySnapshot(
        id=day_id,
        timestamp=when,
        total_sales=sum((sale.total for sale in day_sales), Decimal("0")),
        payment_breakdown=SplitBreakdown(
            cash=tenders.cash,
            mobile_money=tenders.mobile_money,
            card=tenders.card,
        ),
        total_expenses=sum((expense.amount for expense in expenses), Decimal("0")),
        variance=cashups[-1].variance if cashups else Decimal("0"),
        is_locked=True,
    )


def close_day(
    context: RuntimeContext,
    *,
    day_id: Optional[str] = None,
    user_id: Optional[str] = None,
    when: Optional[datetime] = None,
) -> DaySnapshot:
    """Close a business day and freeze its totals.

    Writes the closed :class:`DayShift`, a locked :class:`DaySnapshot` and a
    ``DAY_CLOSE`` audit entry together. Once closed, no sale for that day can
    be committed until :func:`reopen_day` is called.

    Raises:
        DayStateError: If the day is already closed.
    """

    when = _resolve_timestamp(when)
    day_id = day_id or business_day(when)
    with context.store.transaction() as txn:
        shift = txn.get_by_id(Collection.SHIFTS, day_id)
        if shift is not None and shift.is_closed:
            raise DayStateError(f"Business day {day_id} is already closed", details={"dayId": day_id})
        snapshot = _day_snapshot(txn, day_id, when)
        txn.put(Collection.SHIFTS, DayShift(id=day_id, is_closed=True, closed_at=when))
        txn.put(Collection.SNAPSHOTS, snapshot)
        txn.put(
            Collection.AUDIT_LOGS,
            make_audit_entry(
                AuditAction.DAY_CLOSE,
                f"Business day {day_id} closed with sales {snapshot.total_sales}",
                user_id=user_id,
                severity=Severity.WARNING,
                when=when,
            ),
        )

    log.info("Closed business day %s (sales %s)", day_id, snapshot.total_sales)
    return snapshot


def reopen_day(
    context: RuntimeContext,
    *,
    day_id: Optional[str] = None,
    reason: str = "",
    user_id: Optional[str] = None,
    when: Optional[datetime] = None,
) -> DayShift:
    """Reopen a closed business day and unlock its snapshot.

    Raises:
        DayStateError: If the day is not closed.
    """

    when = _resolve_timestamp(when)
    day_id = day_id or business_day(when)
    with context.store.transaction() as txn:
        shift = txn.get_by_id(Collection.SHIFTS, day_id)
        if shift is None or not shift.is_closed:
            raise DayStateError(f"Business day {day_id} is not closed", details={"dayId": day_id})
        reopened = DayShift(id=day_id, is_closed=False, closed_at=None)
        txn.put(Collection.SHIFTS, reopened)
        snapshot = txn.get_by_id(Collection.SNAPSHOTS, day_id)
        if snapshot is not None:
            txn.put(Collection.SNAPSHOTS, replace(snapshot, is_locked=False))
        details = f"Business day {day_id} reopened"
        if reason:
            details = f"{details}: {reason}"
        txn.put(
            Collection.AUDIT_LOGS,
            make_audit_entry(
                AuditAction.DAY_REOPEN,
                details,
                user_id=user_id,
                severity=Severity.CRITICAL,
                when=when,
            ),
        )

    log.warning("Reopened business day %s", day_id)
    return reopened


# ---------------------------------------------------------------------------
# Cash-up
# ---------------------------------------------------------------------------


def record_cash_up(
    context: RuntimeContext,
    *,
    actual_cash: Decimal,
    actual_mobile_money: Decimal = Decimal("0"),
    actual_card: Decimal = Decimal("0"),
    notes: str = "",
    user_id: Optional[str] = None,
    when: Optional[datetime] = None,
) -> CashUp:
    """Reconcile counted tenders against settled sales since the last cash-up.

    The variance is stored as found. A non-zero variance is audited as a
    warning.
    """

    when = _resolve_timestamp(when)
    with context.store.transaction() as txn:
        expected = shift_expectation(txn.get_all(Collection.SALES), txn.get_all(Collection.CASHUPS))
        cashup = build_cash_up(
            expected,
            actual_cash=Decimal(actual_cash),
            actual_mobile_money=Decimal(actual_mobile_money),
            actual_card=Decimal(actual_card),
            notes=notes,
            when=when,
        )
        severity = Severity.INFO if cashup.variance == 0 else Severity.WARNING
        txn.put(Collection.CASHUPS, cashup)
        txn.put(
            Collection.AUDIT_LOGS,
            make_audit_entry(
                AuditAction.CASH_UP,
                f"Cash-up {cashup.id}: expected {cashup.expected_total}, "
                f"counted {cashup.actual_total}, variance {cashup.variance}",
                user_id=user_id,
                severity=severity,
                when=when,
            ),
        )

    if cashup.variance != 0:
        log.warning("Cash-up %s recorded with variance %s", cashup.id, cashup.variance)
    else:
        log.info("Cash-up %s balanced over %d sale(s)", cashup.id, expected.sale_count)
    return cashup


def record_expense(
    context: RuntimeContext,
    *,
    description: str,
    category: str,
    amount: Decimal,
    when: Optional[datetime] = None,
) -> Expense:
    if amount <= 0:
        raise ValidationError("Expense amount must be positive", details={"amount": amount})
    when = _resolve_timestamp(when)
    expense = Expense(
        id=f"EXP-{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}",
        date=when,
        description=description,
        category=category,
        amount=amount,
    )
    context.store.put(Collection.EXPENSES, expense)
    log.info("Recorded expense %s: %s %s", expense.id, category, amount)
    return expense


# ---------------------------------------------------------------------------
# Start-up snapshot and reports
# ---------------------------------------------------------------------------


def load_all_collections(context: RuntimeContext, *, when: Optional[datetime] = None) -> Snapshot:
    """Read every collection for a till starting up.

    An empty store yields the seed products, staff and settings without
    writing them. Sales and audit entries come back newest first.
    """

    store = context.store
    products = store.get_all(Collection.PRODUCTS) or list(INITIAL_PRODUCTS)
    employees = store.get_all(Collection.EMPLOYEES) or list(INITIAL_EMPLOYEES)
    settings_rows = store.get_all(Collection.SETTINGS)
    sales = sorted(store.get_all(Collection.SALES), key=lambda sale: sale.timestamp)
    sales.reverse()
    return Snapshot(
        products=products,
        sales=sales,
        expenses=store.get_all(Collection.EXPENSES),
        cashups=store.get_all(Collection.CASHUPS),
        employees=employees,
        audit_logs=list_audit_logs(context),
        settings=settings_rows[0] if settings_rows else INITIAL_SETTINGS,
        current_shift=current_shift(context, when),
        suspended_orders=store.get_all(Collection.SUSPENDED_ORDERS),
        snapshots=store.get_all(Collection.SNAPSHOTS),
    )


def list_products(context: RuntimeContext) -> List[Product]:
    return context.store.get_all(Collection.PRODUCTS)


def calculate_profit_summary(
    context: RuntimeContext,
    *,
    sales: Optional[Iterable[Sale]] = None,
) -> Dict[str, Decimal]:
    """Revenue, cost of goods and gross profit over ``sales`` (default all).

    Lines whose product no longer exists contribute revenue but no cost.
    """

    products = {product.id: product for product in list_products(context)}
    revenue = cost = Decimal("0")
    for sale in sales if sales is not None else context.store.get_all(Collection.SALES):
        revenue += sale.total
        for item in sale.items:
            product = products.get(item.product_id)
            if product is not None:
                cost += line_cost(product, item)
    return {"revenue": revenue, "cost": cost, "profit": revenue - cost}


# ---------------------------------------------------------------------------
# Suspended orders
# ---------------------------------------------------------------------------


def suspend_order(
    context: RuntimeContext,
    name: str,
    items: Sequence[SaleItem],
    *,
    when: Optional[datetime] = None,
) -> SuspendedOrder:
    """Park a cart under ``name``. Inventory is not touched."""

    if not items:
        raise ValidationError("Cannot suspend an empty cart")
    when = _resolve_timestamp(when)
    order = SuspendedOrder(
        id=f"SUS-{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}",
        name=name,
        items=tuple(items),
        total=cart_total(items),
        timestamp=when,
    )
    context.store.put(Collection.SUSPENDED_ORDERS, order)
    log.info("Suspended order %s (%s) with %d line(s)", order.id, name, len(order.items))
    return order


def resume_order(context: RuntimeContext, order_id: str) -> SuspendedOrder:
    """Remove a parked order and return it so its cart can be restored."""

    with context.store.transaction() as txn:
        order = txn.get_by_id(Collection.SUSPENDED_ORDERS, order_id)
        if order is None:
            raise MissingReferenceError(
                f"Unknown suspended order: {order_id}", details={"orderId": order_id}
            )
        txn.delete(Collection.SUSPENDED_ORDERS, order_id)
    log.info("Resumed order %s", order_id)
    return order


# ---------------------------------------------------------------------------
# Backup and restore
# ---------------------------------------------------------------------------


def export_backup(context: RuntimeContext, *, when: Optional[datetime] = None) -> Dict[str, Any]:
    """Return every collection as a JSON-ready mapping.

    ``settings`` is written as a single object; the other collections are
    lists of records.
    """

    backup: Dict[str, Any] = {"backupDate": timestamp_to_text(_resolve_timestamp(when))}
    store = context.store
    for collection, key in BACKUP_KEYS.items():
        codec = codec_for(collection)
        records = [codec.serialize(entity) for entity in store.get_all(collection)]
        if collection is Collection.SETTINGS:
            backup[key] = records[0] if records else None
        else:
            backup[key] = records
    return backup


def write_backup(context: RuntimeContext, destination: Path) -> Path:
    destination = Path(destination).expanduser()
    destination.parent.mkdir(parents=True, exist_ok=True)
    with destination.open("w", encoding="utf-8") as handle:
        json.dump(export_backup(context), handle, indent=2)
    log.info("Wrote backup to '%s'", destination)
    return destination


def read_backup(source: Path) -> Dict[str, Any]:
    """Load a backup file.

    Raises:
        FileNotFoundError: If ``source`` does not exist.
        InvalidBackupError: If the file is not a JSON object.
    """

    source = Path(source).expanduser()
    with source.open("r", encoding="utf-8") as handle:
        try:
            data = json.load(handle)
        except ValueError as exc:
            raise InvalidBackupError(f"Backup '{source}' is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise InvalidBackupError(f"Backup '{source}' does not hold a JSON object")
    return data


def _backup_entities(collection: Collection, raw: Any) -> List[Any]:
    if raw is None:
        return []
    if isinstance(raw, Mapping):
        raw = [raw]
    codec = codec_for(collection)
    entities = []
    for record in raw:
        try:
            entities.append(codec.deserialize(record))
        except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
            raise InvalidBackupError(
                f"Invalid {collection.value} record in backup: {exc}",
                details={"collection": collection.value},
            ) from exc
    return entities


def restore_backup(
    context: RuntimeContext,
    data: Mapping[str, Any],
    *,
    user_id: Optional[str] = None,
    when: Optional[datetime] = None,
) -> Dict[str, int]:
    """Replace the whole store with the contents of ``data``.

    Every record is validated before anything is cleared, and the clear plus
    reload happen in one transaction. Settings missing from the backup are
    left empty so the seed settings apply on the next start-up.

    Returns:
        dict[str, int]: Restored record count per backup key.

    Raises:
        InvalidBackupError: If ``products`` or ``sales`` is missing, or any
            record cannot be parsed.
    """

    missing = [key for key in REQUIRED_BACKUP_KEYS if key not in data]
    if missing:
        raise InvalidBackupError(
            f"Backup is missing required collections: {', '.join(missing)}",
            details={"missing": missing},
        )

    restored = {collection: _backup_entities(collection, data.get(key)) for collection, key in BACKUP_KEYS.items()}

    with context.store.transaction() as txn:
        txn.clear_all()
        for collection, entities in restored.items():
            txn.put_batch(collection, entities)
        txn.put(
            Collection.AUDIT_LOGS,
            make_audit_entry(
                AuditAction.DATA_RESTORE,
                f"Store restored from backup dated {data.get('backupDate', 'unknown')}",
                user_id=user_id,
                severity=Severity.CRITICAL,
                when=when,
            ),
        )

    counts = {BACKUP_KEYS[collection]: len(entities) for collection, entities in restored.items()}
    log.warning("Restored store from backup: %s", counts)
    return counts


# ---------------------------------------------------------------------------
# CSV product import
# ---------------------------------------------------------------------------


def _csv_int(row: Mapping[str, str], key: str, default: Optional[int]) -> Optional[int]:
    raw = (row.get(key) or "").strip()
    return int(Decimal(raw)) if raw else default


def _product_from_csv(row: Mapping[str, str], line_number: int) -> Product:
    try:
        name = (row.get("name") or "").strip()
        if not name:
            raise ValueError("missing name")
        category = ProductCategory((row.get("category") or "bottle").strip().lower())
        buy_price = Decimal((row.get("buyprice") or "0").strip() or "0")
        sell_price = Decimal((row.get("sellprice") or "0").strip() or "0")
        stock = _csv_int(row, "stock", 0)
        threshold = _csv_int(row, "minthreshold", CSV_DEFAULT_THRESHOLD)
        capacity = level = None
        if category is ProductCategory.DRUM:
            capacity = _csv_int(row, "capacity", CSV_DEFAULT_CAPACITY)
            level = _csv_int(row, "currentlevel", capacity)
    except (ValueError, InvalidOperation) as exc:
        raise ValidationError(
            f"Invalid product on CSV line {line_number}: {exc}",
            details={"line": line_number},
        ) from exc

    product = Product(
        id=(row.get("id") or "").strip() or f"CSV-{uuid.uuid4().hex[:8].upper()}",
        name=name,
        category=category,
        buy_price=buy_price,
        sell_price=sell_price,
        stock=stock,
        min_threshold=threshold,
        capacity=capacity,
        current_level=level,
    )
    try:
        ensure_invariants(product)
    except LedgerInvariantError as exc:
        raise ValidationError(f"Invalid product on CSV line {line_number}: {exc}", details={"line": line_number}) from exc
    return product


def import_products_csv(
    context: RuntimeContext,
    source: Union[str, Path],
    *,
    user_id: Optional[str] = None,
) -> List[Product]:
    """Upsert products from CSV text or a CSV file path.

    Headers are matched case-insensitively. A row without an id gets a
    generated ``CSV-`` id; drums default to a 50 l capacity filled to the
    brim. The whole file is validated before anything is written.

    Raises:
        ValidationError: If a row cannot be turned into a valid product.
    """

    if isinstance(source, Path):
        text = source.read_text(encoding="utf-8")
    else:
        text = source

    reader = csv.DictReader(io.StringIO(text))
    products = []
    for line_number, row in enumerate(reader, start=2):
        normalized = {str(key).strip().lower(): value for key, value in row.items() if key is not None}
        if not any((value or "").strip() for value in normalized.values()):
            continue
        products.append(_product_from_csv(normalized, line_number))

    if not products:
        log.warning("CSV import contained no products")
        return []

    with context.store.transaction() as txn:
        txn.put_batch(Collection.PRODUCTS, products)
        txn.put(
            Collection.AUDIT_LOGS,
            make_audit_entry(
                AuditAction.PRODUCT_IMPORT,
                f"Imported {len(products)} product(s) from CSV",
                user_id=user_id,
            ),
        )
    log.info("Imported %d product(s) from CSV", len(products))
    return products
