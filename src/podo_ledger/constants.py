"""Enumerations and rate tables shared across Podo Ledger modules.

Centralises domain constants so that the data access layer (DAL), business
logic layer (BLL), reporting, and the CLI rely on a single source of truth for
identifiers, workbook sheet names, and consignment revenue splits.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping, NamedTuple


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Maximum number of notifications retained before the oldest are dropped.
DEFAULT_NOTIFICATION_CAPACITY = 100


class ItemCategory(str, Enum):
    """Enumerate the kinds of consigned items."""

    BOOK = "book"
    GOODS = "goods"


class Availability(str, Enum):
    """Enumerate the sale availability of an item."""

    AVAILABLE = "available"
    SOLD = "sold"


class SaleStatus(str, Enum):
    """Enumerate the lifecycle states of a sale record."""

    COMPLETED = "completed"
    REFUNDED = "refunded"


class SettlementStatus(str, Enum):
    """Enumerate the states of a monthly settlement record."""

    COMPLETED = "completed"


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms for sales."""

    CARD = "card"
    CASH = "cash"
    TRANSFER = "transfer"


class NotificationKind(str, Enum):
    """Enumerate the domain events delivered to the notification sink."""

    SALE = "sale"
    REFUND = "refund"
    SETTLEMENT = "settlement"
    SYSTEM = "system"


class NotificationTarget(str, Enum):
    """Enumerate the audiences a notification may address."""

    ALL = "all"
    OWNER = "owner"


class RecordStatus(str, Enum):
    """Enumerate activity states for branches and owners."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    BRANCHES = "Branches"
    SHELVES = "Shelves"
    OWNERS = "Owners"
    BOOKS = "Books"
    GOODS = "Goods"
    SALES = "Sales"
    SETTLEMENTS = "Settlements"
    NOTIFICATIONS = "Notifications"


class SplitRates(NamedTuple):
    """Percentages of a sale price kept by the shop and paid to the owner."""

    shop_rate: int
    owner_rate: int


# Condition tag -> revenue split, per item category.
BOOK_CONDITION_RATES: Mapping[str, SplitRates] = {
    "order_new": SplitRates(0, 100),
    "owner_new": SplitRates(15, 85),
    "used": SplitRates(50, 50),
}

GOODS_CONDITION_RATES: Mapping[str, SplitRates] = {
    "podo": SplitRates(100, 0),
    "collab": SplitRates(30, 70),
    "handmade": SplitRates(20, 80),
    "consign": SplitRates(20, 80),
}

CONDITION_RATES: Mapping[ItemCategory, Mapping[str, SplitRates]] = {
    ItemCategory.BOOK: BOOK_CONDITION_RATES,
    ItemCategory.GOODS: GOODS_CONDITION_RATES,
}

FALLBACK_RATES = SplitRates(50, 50)

ITEM_SHEETS: Mapping[ItemCategory, SheetName] = {
    ItemCategory.BOOK: SheetName.BOOKS,
    ItemCategory.GOODS: SheetName.GOODS,
}


class ShelfType(NamedTuple):
    """Monthly rent and capacity of a shelf size."""

    name: str
    price: int
    capacity: int


SHELF_TYPES: Mapping[str, ShelfType] = {
    "M": ShelfType("Mini", 3000, 10),
    "S": ShelfType("Small bookcase", 10000, 30),
    "L": ShelfType("Large bookcase", 20000, 60),
    "F": ShelfType("Display table", 30000, 100),
}

# Owner number prefixes per branch; unknown branches use ``UNKNOWN_BRANCH_PREFIX``.
BRANCH_OWNER_PREFIXES: Mapping[str, str] = {
    "BR001": "MP",
    "BR002": "GH",
    "BR003": "GJ",
}

UNKNOWN_BRANCH_PREFIX = "XX"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_NOTIFICATION_CAPACITY",
    "ItemCategory",
    "Availability",
    "SaleStatus",
    "PaymentMethod",
    "NotificationKind",
    "NotificationTarget",
    "RecordStatus",
    "SheetName",
    "SplitRates",
    "BOOK_CONDITION_RATES",
    "GOODS_CONDITION_RATES",
    "CONDITION_RATES",
    "FALLBACK_RATES",
    "ITEM_SHEETS",
    "ShelfType",
    "SHELF_TYPES",
    "BRANCH_OWNER_PREFIXES",
    "UNKNOWN_BRANCH_PREFIX",
]
