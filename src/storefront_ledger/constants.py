"""Enumerations and defaults shared across the storefront ledger modules.

The data access layer, the business logic layer, the aggregator, and the CLI
all read their identifiers from here so sheet names and payment states have a
single spelling.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# An item is low on stock once it drops below this share of its initial stock.
LOW_STOCK_RATIO = Decimal("0.10")

BEST_SELLER_LIMIT = 5

WEEK_WINDOW_DAYS = 7


class PaymentMethod(str, Enum):
    """Enumerate how a sale was settled at the counter."""

    PAID = "paid"
    UPI = "upi"
    UNPAID = "unpaid"


# Spellings found in older records, mapped onto the canonical states.
PAYMENT_METHOD_ALIASES = {
    "cash": PaymentMethod.PAID,
    "pending": PaymentMethod.UNPAID,
}


class SaleShape(str, Enum):
    """Discriminate itemized sales from legacy single-item records."""

    ITEMIZED = "ITEMIZED"
    LEGACY_SINGLE = "LEGACY_SINGLE"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    ITEMS = "Items"
    SALES = "Sales"
    SALE_LINES = "SaleLines"
    SETTINGS = "Settings"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "LOW_STOCK_RATIO",
    "BEST_SELLER_LIMIT",
    "WEEK_WINDOW_DAYS",
    "PaymentMethod",
    "PAYMENT_METHOD_ALIASES",
    "SaleShape",
    "SheetName",
]
