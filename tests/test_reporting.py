"""Tests for the read-only aggregations over a populated ledger."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta

import pytest

from podo_ledger import core_logic, reporting
from podo_ledger.constants import ItemCategory, PaymentMethod

FIXED_NOW = datetime(2025, 3, 14, 10, 30, tzinfo=UTC)


@dataclass(frozen=True)
class SalesFixture:
    seeded: object
    branch_owner_id: str
    branch_goods_id: str
    book_sale_id: str
    refunded_sale_id: str


def _sell(context, item_id, category, when, method=PaymentMethod.CARD):
    return core_logic.record_sale(context, core_logic.SaleCommand(item_id, category, method, timestamp=when))


@pytest.fixture
def ledger_with_sales(seeded_context) -> SalesFixture:
    """Three completed sales in two branches plus one refunded sale."""

    context = seeded_context.context
    branch_owner = core_logic.register_owner(context, name="Choi Ganghwa", branch_id="BR002")
    branch_goods = core_logic.add_goods(
        context,
        branch_id="BR002",
        name="Linocut print",
        price=5000,
        condition="consign",
        quantity=2,
        owner_id=branch_owner.owner_id,
    )

    book_sale = _sell(context, seeded_context.used_book_id, ItemCategory.BOOK, FIXED_NOW)
    _sell(context, seeded_context.house_goods_id, ItemCategory.GOODS, FIXED_NOW - timedelta(days=2), PaymentMethod.CASH)
    _sell(context, branch_goods.item_id, ItemCategory.GOODS, FIXED_NOW)
    refunded = _sell(context, seeded_context.handmade_goods_id, ItemCategory.GOODS, FIXED_NOW)
    core_logic.record_refund(context, core_logic.RefundCommand(refunded.sale_id, timestamp=FIXED_NOW))

    return SalesFixture(
        seeded=seeded_context,
        branch_owner_id=branch_owner.owner_id,
        branch_goods_id=branch_goods.item_id,
        book_sale_id=book_sale.sale_id,
        refunded_sale_id=refunded.sale_id,
    )


# ---------------------------------------------------------------------------
# Branch statistics
# ---------------------------------------------------------------------------


def test_shop_wide_stats_count_completed_sales_only(ledger_with_sales):
    stats = reporting.calculate_branch_stats(ledger_with_sales.seeded.context, now=FIXED_NOW)

    assert stats.branch_id is None
    assert stats.branch_count == 2
    assert stats.owner_count == 3
    assert (stats.book_count, stats.goods_count, stats.total_items) == (1, 3, 4)
    assert (stats.shelf_count, stats.used_shelf_count) == (12, 2)
    assert stats.total_sales == 32000
    assert stats.shop_revenue == 22000
    assert stats.owner_revenue == 10000
    assert stats.sales_count == 3
    assert (stats.today_sales, stats.today_count) == (17000, 2)


def test_branch_stats_are_scoped(ledger_with_sales):
    context = ledger_with_sales.seeded.context

    mokpo = reporting.calculate_branch_stats(context, "BR001", now=FIXED_NOW)
    gwangju = reporting.calculate_branch_stats(context, "BR003", now=FIXED_NOW)

    assert mokpo.branch_count == 2
    assert mokpo.owner_count == 2
    assert (mokpo.total_sales, mokpo.sales_count) == (27000, 2)
    assert (mokpo.today_sales, mokpo.today_count) == (12000, 1)
    assert mokpo.shelf_count == 8
    assert gwangju.branch_count == 2
    assert gwangju.sales_count == 0


def test_branch_stats_roll_up_to_shop_totals(ledger_with_sales):
    """Per-branch sale figures must add up to the shop-wide figures."""

    context = ledger_with_sales.seeded.context
    overall = reporting.calculate_branch_stats(context, now=FIXED_NOW)
    per_branch = [
        reporting.calculate_branch_stats(context, branch.branch_id, now=FIXED_NOW)
        for branch in core_logic.list_branches(context)
    ]

    for field in ("total_sales", "shop_revenue", "owner_revenue", "sales_count", "today_sales", "today_count"):
        assert sum(getattr(stats, field) for stats in per_branch) == getattr(overall, field)


def test_branch_stats_on_empty_ledger(runtime_context):
    stats = reporting.calculate_branch_stats(runtime_context, now=FIXED_NOW)
    assert stats.total_sales == 0
    assert stats.total_items == 0
    assert stats.used_shelf_count == 0


# ---------------------------------------------------------------------------
# Owner statistics
# ---------------------------------------------------------------------------


def test_owner_stats_net_month_share_against_rent(ledger_with_sales):
    seeded = ledger_with_sales.seeded
    stats = reporting.calculate_owner_stats(seeded.context, seeded.owner_id, now=FIXED_NOW)

    assert stats.owner_number == "MP001"
    assert stats.name == "Kim Podo"
    assert stats.balance == 6000
    assert (stats.book_count, stats.goods_count) == (0, 1)
    assert (stats.total_sales, stats.owner_revenue, stats.sales_count) == (12000, 6000, 1)
    assert (stats.month_sales, stats.month_owner_amount, stats.month_count) == (12000, 6000, 1)
    assert stats.rent == 10000
    assert stats.expected_settlement == -4000


def test_owner_stats_month_window_follows_now(ledger_with_sales):
    seeded = ledger_with_sales.seeded
    stats = reporting.calculate_owner_stats(seeded.context, seeded.owner_id, now=datetime(2025, 4, 2, tzinfo=UTC))

    assert stats.total_sales == 12000
    assert stats.month_sales == 0
    assert stats.expected_settlement == -10000


def test_owner_stats_unknown_owner(ledger_with_sales):
    with pytest.raises(core_logic.MissingReferenceError):
        reporting.calculate_owner_stats(ledger_with_sales.seeded.context, "OW-NOPE")


# ---------------------------------------------------------------------------
# Daily series
# ---------------------------------------------------------------------------


def test_daily_series_has_zero_filled_buckets(ledger_with_sales):
    series = reporting.calculate_daily_series(ledger_with_sales.seeded.context, now=FIXED_NOW)

    assert len(series) == 7
    assert series[0].date == date(2025, 3, 8)
    assert series[-1].date == date(2025, 3, 14)
    assert series[-1].label == "3/14(Fri)"
    assert (series[-1].amount, series[-1].count) == (17000, 2)
    assert (series[-3].amount, series[-3].count) == (15000, 1)
    assert sum(bucket.count for bucket in series) == 3
    assert [bucket.amount for bucket in series[:4]] == [0, 0, 0, 0]


def test_daily_series_filters_by_owner_and_branch(ledger_with_sales):
    context = ledger_with_sales.seeded.context

    by_owner = reporting.calculate_daily_series(
        context, 3, owner_id=ledger_with_sales.seeded.owner_id, now=FIXED_NOW
    )
    by_branch = reporting.calculate_daily_series(context, 1, branch_id="BR002", now=FIXED_NOW)

    assert [bucket.amount for bucket in by_owner] == [0, 0, 12000]
    assert [(bucket.amount, bucket.count) for bucket in by_branch] == [(5000, 1)]


def test_daily_series_ignores_sales_outside_window(ledger_with_sales):
    later = FIXED_NOW + timedelta(days=30)
    series = reporting.calculate_daily_series(ledger_with_sales.seeded.context, now=later)
    assert all(bucket.count == 0 for bucket in series)


@pytest.mark.parametrize("days", [0, -3])
def test_daily_series_rejects_non_positive_days(runtime_context, days):
    with pytest.raises(ValueError):
        reporting.calculate_daily_series(runtime_context, days)


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


def test_search_matches_title_case_insensitively(ledger_with_sales):
    results = reporting.search_items(ledger_with_sales.seeded.context, "ALMOND")

    assert [r.item.item_id for r in results] == [ledger_with_sales.seeded.new_book_id]
    assert results[0].owner_name == "Lee Books"
    assert results[0].branch_name == "Mokpo"


def test_search_matches_author_and_owner_number(ledger_with_sales):
    seeded = ledger_with_sales.seeded
    context = seeded.context

    assert [r.item.item_id for r in reporting.search_items(context, "sohn")] == [seeded.new_book_id]
    assert [r.item.item_id for r in reporting.search_items(context, "mp001")] == [seeded.handmade_goods_id]


def test_search_skips_sold_items(ledger_with_sales):
    assert reporting.search_items(ledger_with_sales.seeded.context, "Demian") == []


def test_search_house_item_has_no_owner(ledger_with_sales):
    results = reporting.search_items(ledger_with_sales.seeded.context, "eco bag")
    assert len(results) == 1
    assert results[0].owner_name is None


def test_search_branch_scope(ledger_with_sales):
    context = ledger_with_sales.seeded.context

    scoped = reporting.search_items(context, branch_id="BR002")
    everywhere = reporting.search_items(context, branch_id="BR002", include_all_branches=True)

    assert [r.item.item_id for r in scoped] == [ledger_with_sales.branch_goods_id]
    assert len(everywhere) == 4
    assert len(reporting.search_items(context)) == 4


# ---------------------------------------------------------------------------
# Settlement preview and reconciliation
# ---------------------------------------------------------------------------


def test_settlement_period_preview(ledger_with_sales):
    seeded = ledger_with_sales.seeded
    summary = reporting.calculate_settlement_period(seeded.context, seeded.owner_id, "2025-03")

    assert summary.sales_count == 1
    assert (summary.total_sales, summary.owner_amount, summary.shop_amount) == (12000, 6000, 6000)
    assert summary.rent == 10000
    assert summary.final_amount == -4000
    assert core_logic.list_settlements(seeded.context) == []


def test_settlement_period_rejects_bad_period(ledger_with_sales):
    seeded = ledger_with_sales.seeded
    with pytest.raises(ValueError):
        reporting.calculate_settlement_period(seeded.context, seeded.owner_id, "March")


def test_reconcile_reports_nothing_for_consistent_ledger(ledger_with_sales):
    assert reporting.reconcile_owner_balances(ledger_with_sales.seeded.context) == []


def test_reconcile_reports_refund_after_settlement(ledger_with_sales):
    """A refund landing after payout floors the balance and shows up as drift."""

    seeded = ledger_with_sales.seeded
    context = seeded.context
    core_logic.record_settlement(context, core_logic.SettlementCommand(seeded.owner_id, "2025-03"))
    core_logic.record_refund(context, core_logic.RefundCommand(ledger_with_sales.book_sale_id))

    drifts = reporting.reconcile_owner_balances(context)

    assert len(drifts) == 1
    drift = drifts[0]
    assert drift.owner_id == seeded.owner_id
    assert drift.stored_balance == 0
    assert drift.expected_balance == -6000
    assert drift.difference == 6000
