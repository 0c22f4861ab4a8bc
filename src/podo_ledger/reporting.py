"""Read-only aggregations over the ledger.

Nothing in this module writes to the workbook. Every figure is derived from
the cached collections of a :class:`~podo_ledger.core_logic.RuntimeContext`,
and only ``completed`` sales count towards revenue.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Dict, Iterable, List, Optional

from . import data_manager, log, settlement
from .constants import Availability, ItemCategory, RecordStatus, SaleStatus, SettlementStatus
from .core_logic import (
    RuntimeContext,
    get_owner,
    list_branches,
    list_items,
    list_owners,
    list_sales,
    list_settlements,
    list_shelves,
)
from .time_utils import timestamp_date, utc_date


@dataclass(frozen=True)
class BranchStats:
    """Shop-wide or per-branch dashboard figures."""

    branch_id: Optional[str]
    branch_count: int
    owner_count: int
    book_count: int
    goods_count: int
    total_items: int
    shelf_count: int
    used_shelf_count: int
    total_sales: int
    shop_revenue: int
    owner_revenue: int
    sales_count: int
    today_sales: int
    today_count: int


@dataclass(frozen=True)
class OwnerStats:
    """Figures shown to a single owner."""

    owner_id: str
    owner_number: str
    name: str
    balance: int
    book_count: int
    goods_count: int
    total_sales: int
    owner_revenue: int
    sales_count: int
    month_sales: int
    month_owner_amount: int
    month_count: int
    rent: int
    expected_settlement: int


@dataclass(frozen=True)
class DailySales:
    date: date
    label: str
    amount: int
    count: int


@dataclass(frozen=True)
class ItemSearchResult:
    item: data_manager.ItemRow
    owner_name: Optional[str]
    branch_name: Optional[str]


@dataclass(frozen=True)
class BalanceDrift:
    """Owner whose stored balance differs from the balance replayed from the log."""

    owner_id: str
    owner_number: str
    stored_balance: int
    expected_balance: int

    @property
    def difference(self) -> int:
        return self.stored_balance - self.expected_balance


def _today(now: Optional[datetime]) -> date:
    return utc_date(now if now is not None else datetime.now(UTC))


def _completed(sales: Iterable[data_manager.SaleRow]) -> List[data_manager.SaleRow]:
    return [sale for sale in sales if sale.status == SaleStatus.COMPLETED.value]


def calculate_branch_stats(
    context: RuntimeContext,
    branch_id: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> BranchStats:
    """Aggregate dashboard figures for one branch or for the whole shop.

    Passing ``branch_id`` restricts every figure to entities of that branch,
    except ``branch_count``, which always counts the active branches of the
    whole shop. Because each sale carries the branch it happened in, summing
    the per-branch sale figures over all branches yields the shop-wide
    figures.

    Args:
        context (RuntimeContext): Runtime context providing cached collections.
        branch_id (str | None): Branch to restrict to, or ``None`` for all.
        now (datetime | None): Reference time for "today"; defaults to the
            current UTC time.

    Returns:
        BranchStats: Counts and revenue totals.
    """
    today = _today(now)

    def in_scope(record_branch: str) -> bool:
        return branch_id is None or record_branch == branch_id

    owners = [o for o in list_owners(context) if in_scope(o.branch_id)]
    available = [
        item
        for item in list_items(context)
        if in_scope(item.branch_id) and item.availability == Availability.AVAILABLE.value
    ]
    shelves = [s for s in list_shelves(context) if in_scope(s.branch_id)]
    sales = [s for s in _completed(list_sales(context)) if in_scope(s.branch_id)]
    today_sales = [s for s in sales if timestamp_date(s.created_at) == today]

    book_count = sum(1 for item in available if item.category is ItemCategory.BOOK)
    goods_count = len(available) - book_count
    stats = BranchStats(
        branch_id=branch_id,
        branch_count=sum(1 for b in list_branches(context) if b.status == RecordStatus.ACTIVE.value),
        owner_count=len(owners),
        book_count=book_count,
        goods_count=goods_count,
        total_items=len(available),
        shelf_count=len(shelves),
        used_shelf_count=sum(1 for s in shelves if s.owner_id),
        total_sales=sum(s.price for s in sales),
        shop_revenue=sum(s.shop_amount for s in sales),
        owner_revenue=sum(s.owner_amount for s in sales),
        sales_count=len(sales),
        today_sales=sum(s.price for s in today_sales),
        today_count=len(today_sales),
    )
    log.debug(
        "Calculated stats for branch '%s': %d sales totalling %d",
        branch_id or "*",
        stats.sales_count,
        stats.total_sales,
    )
    return stats


def calculate_owner_stats(
    context: RuntimeContext,
    owner_id: str,
    *,
    now: Optional[datetime] = None,
) -> OwnerStats:
    """Aggregate the figures of one owner.

    Month-to-date totals cover the calendar month containing ``now``. Rent is
    the sum of the prices of the shelves the owner currently holds, and the
    expected settlement is the month's owner share minus that rent. It is
    negative when rent exceeds earnings.

    Raises:
        MissingReferenceError: If ``owner_id`` is unknown.
    """
    owner = get_owner(context, owner_id)
    today = _today(now)

    available = [
        item
        for item in list_items(context)
        if item.owner_id == owner_id and item.availability == Availability.AVAILABLE.value
    ]
    sales = [s for s in _completed(list_sales(context)) if s.owner_id == owner_id]
    month_sales = []
    for sale in sales:
        sold_on = timestamp_date(sale.created_at)
        if sold_on is not None and (sold_on.year, sold_on.month) == (today.year, today.month):
            month_sales.append(sale)
    rent = sum(shelf.price for shelf in list_shelves(context) if shelf.owner_id == owner_id)
    month_owner_amount = sum(s.owner_amount for s in month_sales)
    book_count = sum(1 for item in available if item.category is ItemCategory.BOOK)

    return OwnerStats(
        owner_id=owner.owner_id,
        owner_number=owner.owner_number,
        name=owner.name,
        balance=owner.balance,
        book_count=book_count,
        goods_count=len(available) - book_count,
        total_sales=sum(s.price for s in sales),
        owner_revenue=sum(s.owner_amount for s in sales),
        sales_count=len(sales),
        month_sales=sum(s.price for s in month_sales),
        month_owner_amount=month_owner_amount,
        month_count=len(month_sales),
        rent=rent,
        expected_settlement=month_owner_amount - rent,
    )


def calculate_daily_series(
    context: RuntimeContext,
    days: int = 7,
    *,
    branch_id: Optional[str] = None,
    owner_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[DailySales]:
    """Return one bucket per day for the last ``days`` days, oldest first.

    The final bucket is today. Days without sales are present with zero
    amount and count. Labels read like ``3/14(Fri)``.

    Raises:
        ValueError: If ``days`` is smaller than one.
    """
    if days < 1:
        log.error("Daily series requested with invalid day count: %s", days)
        raise ValueError("days must be at least 1")

    today = _today(now)
    first = today - timedelta(days=days - 1)
    buckets: Dict[date, List[int]] = {first + timedelta(days=offset): [0, 0] for offset in range(days)}

    for sale in _completed(list_sales(context)):
        if branch_id is not None and sale.branch_id != branch_id:
            continue
        if owner_id is not None and sale.owner_id != owner_id:
            continue
        sold_on = timestamp_date(sale.created_at)
        bucket = buckets.get(sold_on)
        if bucket is not None:
            bucket[0] += sale.price
            bucket[1] += 1

    return [
        DailySales(
            date=day,
            label=f"{day.month}/{day.day}({day.strftime('%a')})",
            amount=amount,
            count=count,
        )
        for day, (amount, count) in buckets.items()
    ]


def search_items(
    context: RuntimeContext,
    query: str = "",
    *,
    branch_id: Optional[str] = None,
    include_all_branches: bool = False,
) -> List[ItemSearchResult]:
    """Find available items matching ``query``.

    Books match on title, author, ISBN or owner number; goods on name or owner
    number. Matching is case-insensitive and an empty query returns every
    available item in scope. ``branch_id`` limits the search to one branch
    unless ``include_all_branches`` is set.
    """
    needle = query.strip().lower()
    owners = {o.owner_id: o for o in list_owners(context, include_inactive=True)}
    branches = {b.branch_id: b for b in list_branches(context)}

    results = []
    for item in list_items(context):
        if item.availability != Availability.AVAILABLE.value:
            continue
        if branch_id is not None and not include_all_branches and item.branch_id != branch_id:
            continue
        if needle and not any(needle in field.lower() for field in _searchable_fields(item)):
            continue
        owner = owners.get(item.owner_id) if item.owner_id else None
        branch = branches.get(item.branch_id)
        results.append(
            ItemSearchResult(
                item=item,
                owner_name=owner.name if owner else None,
                branch_name=branch.name if branch else None,
            )
        )
    log.debug("Search for '%s' matched %d items", query, len(results))
    return results


def _searchable_fields(item: data_manager.ItemRow) -> List[str]:
    fields = [item.display_name, item.owner_number]
    if isinstance(item, data_manager.BookRow):
        fields.extend([item.author or "", item.isbn or ""])
    return [field for field in fields if field]


def calculate_settlement_period(context: RuntimeContext, owner_id: str, period: str) -> settlement.PeriodSummary:
    """Preview an owner's settlement for ``period`` without recording it.

    Raises:
        MissingReferenceError: If ``owner_id`` is unknown.
        ValueError: If ``period`` is not a ``YYYY-MM`` string.
    """
    owner = get_owner(context, owner_id)
    return settlement.summarize_period(owner, list_sales(context), list_shelves(context), period)


def reconcile_owner_balances(context: RuntimeContext) -> List[BalanceDrift]:
    """Replay the ledger and report owners whose stored balance drifted.

    The expected balance is the owner share of every completed sale minus the
    owner share already paid out through settlements. A difference appears
    when a debit was floored at zero, for instance a refund landing after the
    period containing the sale was settled.
    """
    expected: Dict[str, int] = {}
    for sale in _completed(list_sales(context)):
        if sale.owner_id:
            expected[sale.owner_id] = expected.get(sale.owner_id, 0) + sale.owner_amount
    for row in list_settlements(context):
        if row.status == SettlementStatus.COMPLETED.value:
            expected[row.owner_id] = expected.get(row.owner_id, 0) - row.owner_amount

    drifts = [
        BalanceDrift(
            owner_id=owner.owner_id,
            owner_number=owner.owner_number,
            stored_balance=owner.balance,
            expected_balance=expected.get(owner.owner_id, 0),
        )
        for owner in list_owners(context, include_inactive=True)
        if owner.balance != expected.get(owner.owner_id, 0)
    ]
    if drifts:
        log.warning("Balance reconciliation found %d drifting owners", len(drifts))
    return drifts
