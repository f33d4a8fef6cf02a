"""Typed error taxonomy for the Galaxy POS core.

Every failure the core can report is a subclass of :class:`GalaxyPosError`.
Errors keep their structured fields as attributes and mirror them in a
``details`` mapping so presentation layers can render them without parsing
messages.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional


class GalaxyPosError(Exception):
    """Base class for every error raised by the package."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


# ---------------------------------------------------------------------------
# Validation errors: detected before any persistence is attempted
# ---------------------------------------------------------------------------


class ValidationError(GalaxyPosError):
    """Raised when caller-supplied input violates a domain rule."""


class EmptyCartError(ValidationError):
    """Raised when a sale is built from a cart without line items."""

    def __init__(self) -> None:
        super().__init__("Cannot build a sale from an empty cart")


class SplitMismatchError(ValidationError):
    """Raised when a split breakdown does not add up to the sale total."""

    def __init__(self, expected: Decimal, got: Decimal):
        super().__init__(
            f"Split total ({got}) must equal order total ({expected})",
            details={"expected": expected, "got": got},
        )
        self.expected = expected
        self.got = got


class InsufficientPaymentError(ValidationError):
    """Raised when the tendered amount does not cover the sale total."""

    def __init__(self, total: Decimal, received: Decimal):
        super().__init__(
            f"Amount received ({received}) is less than the total ({total})",
            details={"total": total, "received": received},
        )
        self.total = total
        self.received = received


class SaleStateError(ValidationError):
    """Raised on an illegal sale status transition."""


class InvalidBackupError(ValidationError):
    """Raised when a backup payload is missing required collections."""


class MissingReferenceError(ValidationError):
    """Raised when a referenced sale, order, or day is unknown."""


class DayStateError(ValidationError):
    """Raised when closing a closed day or reopening an open one."""


# ---------------------------------------------------------------------------
# Commit errors: reported by the inventory-commit transaction
# ---------------------------------------------------------------------------


class CommitError(GalaxyPosError):
    """Base class for failures of the inventory-commit transaction."""


class ProductNotFoundError(CommitError):
    """Raised when a line item references an unknown product."""

    def __init__(self, product_id: str):
        super().__init__(
            f"Unknown product id: {product_id}",
            details={"productId": product_id},
        )
        self.product_id = product_id


class InsufficientStockError(CommitError):
    """Raised when a bottle product holds fewer units than requested."""

    def __init__(self, product_id: str, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for '{product_id}': requested {requested}, available {available}",
            details={"productId": product_id, "requested": requested, "available": available},
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class InsufficientVolumeError(CommitError):
    """Raised when a drum holds less liquid than the pours require."""

    def __init__(self, product_id: str, requested_ml: int, available_ml: int):
        super().__init__(
            f"Insufficient volume in '{product_id}': requested {requested_ml}ml, available {available_ml}ml",
            details={
                "productId": product_id,
                "requestedMl": requested_ml,
                "availableMl": available_ml,
            },
        )
        self.product_id = product_id
        self.requested_ml = requested_ml
        self.available_ml = available_ml


class LedgerInvariantError(CommitError):
    """Raised when a deduction would push stock or volume below zero."""


class DayClosedError(CommitError):
    """Raised when a commit is attempted while the business day is closed."""

    def __init__(self, day_id: str):
        super().__init__(
            f"Business day {day_id} is closed",
            details={"dayId": day_id},
        )
        self.day_id = day_id


class DuplicateSaleError(CommitError):
    """Raised when a sale id has already been committed."""

    def __init__(self, sale_id: str):
        super().__init__(
            f"Sale id already committed: {sale_id}",
            details={"saleId": sale_id},
        )
        self.sale_id = sale_id


# ---------------------------------------------------------------------------
# Storage errors: require operator intervention
# ---------------------------------------------------------------------------


class StorageFailureError(CommitError):
    """Raised when the underlying workbook cannot be read or written."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, details={"cause": repr(cause) if cause else None})
        self.cause = cause


class WriteConflictError(StorageFailureError):
    """Raised when the workbook on disk changed since it was loaded."""


class SchemaMismatchError(StorageFailureError):
    """Raised when a workbook schema cannot be used or migrated."""


__all__ = [
    "GalaxyPosError",
    "ValidationError",
    "EmptyCartError",
    "SplitMismatchError",
    "InsufficientPaymentError",
    "SaleStateError",
    "InvalidBackupError",
    "MissingReferenceError",
    "DayStateError",
    "CommitError",
    "ProductNotFoundError",
    "InsufficientStockError",
    "InsufficientVolumeError",
    "LedgerInvariantError",
    "DayClosedError",
    "DuplicateSaleError",
    "StorageFailureError",
    "WriteConflictError",
    "SchemaMismatchError",
]
