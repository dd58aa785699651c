"""Tests for the cash-flow, revenue and profitability reports."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from conftest import SHOP
from shop_ledger import core_logic, credit, expenses, financials, laybye, sales
from shop_ledger.catalog import LineRequest
from shop_ledger.constants import ReportPeriod

WINDOW_START = datetime(2025, 6, 10, tzinfo=UTC)
WINDOW_END = WINDOW_START + timedelta(days=1) - timedelta(microseconds=1)
INSIDE = WINDOW_START + timedelta(hours=9)


def test_cash_flow_separates_collection_from_revenue(runtime_context, make_product, make_customer):
    """A $10 cash sale, a $5 expense and a $3 payment on an old credit sale give net 8 and revenue 10."""

    soap = make_product("soap", "10.00", stock=10)
    john = make_customer()
    credit.record_credit_sale(
        runtime_context,
        SHOP,
        john.customer_id,
        [LineRequest(soap.product_id, 1)],
        timestamp=WINDOW_START - timedelta(days=5),
    ).unwrap()
    sales.record_sale(runtime_context, SHOP, [LineRequest(soap.product_id, 1)], timestamp=INSIDE).unwrap()
    expenses.record_expense(runtime_context, SHOP, Decimal("5.00"), "bags", "packaging", timestamp=INSIDE).unwrap()
    credit.record_payment(runtime_context, SHOP, john.customer_id, Decimal("3.00"), timestamp=INSIDE).unwrap()

    report = financials.compute_cash_flow(runtime_context, SHOP, WINDOW_START, WINDOW_END)

    flow = report.cash_flow
    assert flow.inflows.total == Decimal("13.00")
    assert flow.outflows.total == Decimal("5.00")
    assert flow.net == Decimal("8.00")
    assert report.revenue.total == Decimal("10.00")
    assert report.revenue.credit.count == 0
    assert report.outstanding.credit_due.amount == Decimal("7.00")


def test_cancelled_sale_counts_as_inflow_and_refund(runtime_context, make_product):
    """A cash sale cancelled in the same window shows up on both sides but not as revenue."""

    soap = make_product("soap", "4.00", stock=10)
    sale = sales.record_sale(runtime_context, SHOP, [LineRequest(soap.product_id, 1)], timestamp=INSIDE).unwrap()
    sales.cancel_sale(runtime_context, SHOP, sale.sale_id, timestamp=INSIDE + timedelta(hours=1)).unwrap()

    report = financials.compute_cash_flow(runtime_context, SHOP, WINDOW_START, WINDOW_END)

    assert report.cash_flow.inflows.cash_sales.amount == Decimal("4.00")
    assert report.cash_flow.outflows.refunds.amount == Decimal("4.00")
    assert report.cash_flow.net == Decimal("0.00")
    assert report.revenue.total == Decimal("0.00")
    assert [item.sale_id for item in report.details.refunds] == [sale.sale_id]


def test_profitability_uses_line_costs(runtime_context, make_product):
    """Gross profit subtracts recorded unit costs; net profit subtracts expenses."""

    soap = make_product("soap", "10.00", stock=10, cost="6.00")
    gift = make_product("gift wrap", "2.00", stock=10)
    sales.record_sale(
        runtime_context,
        SHOP,
        [LineRequest(soap.product_id, 2), LineRequest(gift.product_id, 1)],
        timestamp=INSIDE,
    ).unwrap()
    expenses.record_expense(runtime_context, SHOP, Decimal("4.40"), "power", "utilities", timestamp=INSIDE).unwrap()

    profit = financials.compute_profitability(runtime_context, SHOP, WINDOW_START, WINDOW_END)

    assert profit.revenue == Decimal("22.00")
    assert profit.cost_of_goods == Decimal("12.00")
    assert profit.gross_profit == Decimal("10.00")
    assert profit.net_profit == Decimal("5.60")
    assert profit.profit_margin == Decimal("25.45")


def test_laybye_installments_are_inflows_and_completion_is_revenue(runtime_context, make_product):
    """Installments are collected cash; the completed plan becomes revenue when it closes."""

    radio = make_product("radio", "50.00", stock=2)
    plan = laybye.create(
        runtime_context,
        SHOP,
        [LineRequest(radio.product_id, 1)],
        deposit=Decimal("20.00"),
        timestamp=WINDOW_START - timedelta(days=3),
    ).unwrap()
    laybye.add_installment(runtime_context, SHOP, plan.laybye_id, Decimal("30.00"), timestamp=INSIDE).unwrap()

    report = financials.compute_cash_flow(runtime_context, SHOP, WINDOW_START, WINDOW_END)

    assert report.cash_flow.inflows.laybye_payments.amount == Decimal("30.00")
    assert report.revenue.completed_laybyes.amount == Decimal("50.00")
    assert report.outstanding.laybye_due.count == 0


def test_outstanding_counts_active_laybyes(runtime_context, make_product):
    """Active plans contribute their balance due."""

    radio = make_product("radio", "50.00", stock=2)
    laybye.create(runtime_context, SHOP, [LineRequest(radio.product_id, 1)], deposit=Decimal("15.00")).unwrap()

    outstanding = financials.compute_outstanding(runtime_context, SHOP)
    assert outstanding.laybye_due.amount == Decimal("35.00")
    assert outstanding.total == Decimal("35.00")


def test_compute_cash_flow_rejects_inverted_window(runtime_context):
    """The start of a report window cannot be after its end."""

    with pytest.raises(core_logic.ValidationError):
        financials.compute_cash_flow(runtime_context, SHOP, WINDOW_END, WINDOW_START)


@pytest.mark.parametrize(
    "raw, expected",
    [
        (None, ReportPeriod.DAILY),
        ("today", ReportPeriod.DAILY),
        ("Yesterday", ReportPeriod.YESTERDAY),
        ("week", ReportPeriod.WEEKLY),
        ("month", ReportPeriod.MONTHLY),
    ],
)
def test_parse_period_aliases(raw, expected):
    """Everyday words map onto report periods."""

    assert financials.parse_period(raw) == expected


def test_parse_period_rejects_unknown_word():
    """Unknown periods are validation errors with a hint."""

    with pytest.raises(core_logic.ValidationError):
        financials.parse_period("fortnight")


def test_period_windows_are_midnight_aligned():
    """Named periods start at UTC midnight."""

    now = datetime(2025, 6, 10, 15, 30, tzinfo=UTC)
    midnight = datetime(2025, 6, 10, tzinfo=UTC)

    daily = financials.period_window(ReportPeriod.DAILY, now)
    yesterday = financials.period_window(ReportPeriod.YESTERDAY, now)
    weekly = financials.period_window(ReportPeriod.WEEKLY, now)
    monthly = financials.period_window(ReportPeriod.MONTHLY, now)

    assert (daily.start, daily.end) == (midnight, now)
    assert yesterday.start == midnight - timedelta(days=1)
    assert yesterday.end < midnight
    assert weekly.start == midnight - timedelta(days=7)
    assert monthly.start == midnight - timedelta(days=30)


def test_report_for_period_uses_module_clock(runtime_context, make_product, set_fixed_datetime):
    """Without an explicit time the report window ends at the patched now."""

    now = set_fixed_datetime(datetime(2025, 6, 10, 18, 0, tzinfo=UTC))
    soap = make_product("soap", "3.00", stock=5)
    sales.record_sale(runtime_context, SHOP, [LineRequest(soap.product_id, 1)]).unwrap()

    report = financials.report_for_period(runtime_context, SHOP, ReportPeriod.DAILY)

    assert report.period.end == now
    assert report.period.label == "daily"
    assert report.revenue.cash.amount == Decimal("3.00")


def test_best_sellers_rank_by_units(runtime_context, make_product):
    """Products are ranked by units, cancelled sales excluded."""

    soap = make_product("soap", "1.00", stock=50)
    milk = make_product("milk", "2.00", stock=50)
    sales.record_sale(runtime_context, SHOP, [LineRequest(soap.product_id, 5)], timestamp=INSIDE).unwrap()
    sales.record_sale(
        runtime_context, SHOP, [LineRequest(milk.product_id, 2), LineRequest(soap.product_id, 1)], timestamp=INSIDE
    ).unwrap()
    voided = sales.record_sale(runtime_context, SHOP, [LineRequest(milk.product_id, 10)], timestamp=INSIDE).unwrap()
    sales.cancel_sale(runtime_context, SHOP, voided.sale_id).unwrap()

    ranked = financials.best_sellers(runtime_context, SHOP, WINDOW_START, WINDOW_END)

    assert [(item.product_name, item.quantity, item.revenue, item.transactions) for item in ranked] == [
        ("soap", 6, Decimal("6.00"), 2),
        ("milk", 2, Decimal("4.00"), 1),
    ]
    assert len(financials.best_sellers(runtime_context, SHOP, WINDOW_START, WINDOW_END, limit=1)) == 1
