"""Revenue split and period settlement calculations.

The split is a pure function of ``(price, category, condition)``. It is the
only place where a sale price is divided between the shop and the owner, so
every stored sale inherits the conservation rule
``shop_amount + owner_amount == price``. Period summaries net an owner's
share for a month against the rent of the shelves they hold.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Union

from . import data_manager, log
from .constants import CONDITION_RATES, FALLBACK_RATES, ItemCategory, SaleStatus, SplitRates
from .time_utils import parse_period, period_key, timestamp_date


@dataclass(frozen=True)
class SplitResult:
    """Division of a sale price between the shop and the owner."""

    shop_amount: int
    owner_amount: int
    shop_rate: int
    owner_rate: int


def lookup_rates(category: Union[ItemCategory, str], condition: str) -> SplitRates:
    """Return the split percentages for a category and condition tag.

    Unknown categories or condition tags fall back to
    :data:`~podo_ledger.constants.FALLBACK_RATES` (50/50). The fallback is a
    soft rule rather than an error: the sale still goes through.

    Args:
        category (ItemCategory | str): Item category or its string value.
        condition (str): Category-specific condition tag such as ``"used"``.

    Returns:
        SplitRates: Shop and owner percentages summing to 100.
    """

    try:
        table = CONDITION_RATES[ItemCategory(category)]
    except ValueError:
        log.debug("Unknown item category '%s'; using fallback split", category)
        return FALLBACK_RATES

    rates = table.get(condition)
    if rates is None:
        log.debug(
            "Unknown condition '%s' for category '%s'; using fallback split",
            condition,
            ItemCategory(category).value,
        )
        return FALLBACK_RATES
    return rates


def split(price: int, category: Union[ItemCategory, str], condition: str) -> SplitResult:
    """Split ``price`` into the shop share and the owner share.

    The shop share is ``price * shop_rate / 100`` rounded half-up to a whole
    currency unit. The owner share is always the remainder, so any rounding
    difference lands on the owner and the two amounts sum to ``price``
    exactly.

    Args:
        price (int): Sale price in the smallest currency unit. Must be a
            positive integer.
        category (ItemCategory | str): Item category selecting the rate table.
        condition (str): Condition tag looked up in that table.

    Returns:
        SplitResult: Amounts and the rates used to compute them.

    Raises:
        ValueError: If ``price`` is not a positive integer.
    """

    if isinstance(price, bool) or not isinstance(price, int) or price <= 0:
        log.error("Split rejected for invalid price: %r", price)
        raise ValueError("Price must be a positive integer")

    rates = lookup_rates(category, condition)
    shop_amount = int(
        (Decimal(price) * rates.shop_rate / Decimal(100)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )
    return SplitResult(
        shop_amount=shop_amount,
        owner_amount=price - shop_amount,
        shop_rate=rates.shop_rate,
        owner_rate=rates.owner_rate,
    )


@dataclass(frozen=True)
class PeriodSummary:
    """Totals of one owner's completed sales within a settlement period."""

    period: str
    owner_id: str
    total_sales: int
    shop_amount: int
    owner_amount: int
    sales_count: int
    rent: int

    @property
    def final_amount(self) -> int:
        """Amount payable to the owner; negative when rent exceeds earnings."""

        return self.owner_amount - self.rent


def summarize_period(
    owner: data_manager.OwnerRow,
    sales: Iterable[data_manager.SaleRow],
    shelves: Iterable[data_manager.ShelfRow],
    period: str,
) -> PeriodSummary:
    """Net an owner's completed sales for ``period`` against current shelf rent.

    Only sales in ``completed`` status whose creation date falls inside the
    ``YYYY-MM`` period count. Rent is the sum of the listed prices of the
    shelves the owner holds now, not at the time of the sales.

    Args:
        owner (OwnerRow): Owner being settled.
        sales (Iterable[SaleRow]): Sales log to scan.
        shelves (Iterable[ShelfRow]): Shelf catalogue to derive rent from.
        period (str): Period key such as ``"2025-01"``.

    Returns:
        PeriodSummary: Totals for the period.

    Raises:
        ValueError: If ``period`` is not a ``YYYY-MM`` string.
    """

    key = period_key(parse_period(period))
    period_sales = [
        sale
        for sale in sales
        if sale.owner_id == owner.owner_id
        and sale.status == SaleStatus.COMPLETED.value
        and _in_period(sale, key)
    ]
    rent = sum(shelf.price for shelf in shelves if shelf.owner_id == owner.owner_id)
    return PeriodSummary(
        period=key,
        owner_id=owner.owner_id,
        total_sales=sum(sale.price for sale in period_sales),
        shop_amount=sum(sale.shop_amount for sale in period_sales),
        owner_amount=sum(sale.owner_amount for sale in period_sales),
        sales_count=len(period_sales),
        rent=rent,
    )


def _in_period(sale: data_manager.SaleRow, key: str) -> bool:
    sold_on = timestamp_date(sale.created_at)
    return sold_on is not None and period_key(sold_on) == key
