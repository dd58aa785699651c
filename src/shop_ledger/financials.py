"""Financial aggregator for Shop Ledger.

Reports are rebuilt from the transaction logs on every call; nothing here
writes to the workbook. Two views are kept apart:

* cash movement: money that actually changed hands inside the window
  (cash sales, debt payments, lay-bye installments in; expenses and refunds
  out), and
* accrual revenue: the value of sales made inside the window, whatever
  happened to the cash since.

The :class:`CashFlowReport` tree is the only structure report renderers rely
on.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from . import core_logic, credit, data_manager, expenses, laybye, log, sales
from .constants import LayByeStatus, ReportPeriod, SaleType
from .core_logic import RuntimeContext, ValidationError

PERIOD_ALIASES: Dict[str, ReportPeriod] = {
    "today": ReportPeriod.DAILY,
    "daily": ReportPeriod.DAILY,
    "day": ReportPeriod.DAILY,
    "total": ReportPeriod.DAILY,
    "yesterday": ReportPeriod.YESTERDAY,
    "week": ReportPeriod.WEEKLY,
    "weekly": ReportPeriod.WEEKLY,
    "month": ReportPeriod.MONTHLY,
    "monthly": ReportPeriod.MONTHLY,
}

_PERIOD_DAYS = {ReportPeriod.WEEKLY: 7, ReportPeriod.MONTHLY: 30}


# ---------------------------------------------------------------------------
# Report structure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Period:
    """Inclusive reporting window."""

    start: datetime
    end: datetime
    label: str = "custom"


@dataclass(frozen=True)
class AmountCount:
    amount: Decimal = core_logic.ZERO
    count: int = 0


@dataclass(frozen=True)
class CashInflows:
    cash_sales: AmountCount
    debt_payments: AmountCount
    laybye_payments: AmountCount

    @property
    def total(self) -> Decimal:
        return self.cash_sales.amount + self.debt_payments.amount + self.laybye_payments.amount


@dataclass(frozen=True)
class CashOutflows:
    expenses: AmountCount
    refunds: AmountCount

    @property
    def total(self) -> Decimal:
        return self.expenses.amount + self.refunds.amount


@dataclass(frozen=True)
class CashFlow:
    inflows: CashInflows
    outflows: CashOutflows

    @property
    def net(self) -> Decimal:
        return self.inflows.total - self.outflows.total


@dataclass(frozen=True)
class RevenueBreakdown:
    cash: AmountCount
    credit: AmountCount
    completed_laybyes: AmountCount

    @property
    def total(self) -> Decimal:
        return self.cash.amount + self.credit.amount + self.completed_laybyes.amount


@dataclass(frozen=True)
class Profitability:
    """Accrual profit for a window.

    ``profit_margin`` is a percentage of revenue, zero without revenue.
    """

    revenue: Decimal
    cost_of_goods: Decimal
    gross_profit: Decimal
    expenses: Decimal
    net_profit: Decimal
    profit_margin: Decimal


@dataclass(frozen=True)
class Outstanding:
    credit_due: AmountCount
    laybye_due: AmountCount

    @property
    def total(self) -> Decimal:
        return self.credit_due.amount + self.laybye_due.amount


@dataclass(frozen=True)
class ProductSales:
    product_id: str
    product_name: str
    quantity: int
    revenue: Decimal
    transactions: int


@dataclass(frozen=True)
class ReportDetails:
    """Raw transactions behind the report totals."""

    cash_sales: List[sales.Sale] = field(default_factory=list)
    credit_sales: List[sales.Sale] = field(default_factory=list)
    completed_laybyes: List[sales.Sale] = field(default_factory=list)
    refunds: List[sales.Sale] = field(default_factory=list)
    payments: List[data_manager.CreditEntryRow] = field(default_factory=list)
    installments: List[data_manager.InstallmentRow] = field(default_factory=list)
    expenses: List[data_manager.ExpenseRow] = field(default_factory=list)
    expense_breakdown: List[expenses.CategoryTotal] = field(default_factory=list)


@dataclass(frozen=True)
class CashFlowReport:
    period: Period
    cash_flow: CashFlow
    revenue: RevenueBreakdown
    profitability: Profitability
    outstanding: Outstanding
    details: ReportDetails


# ---------------------------------------------------------------------------
# Windows
# ---------------------------------------------------------------------------


def parse_period(raw: Optional[str], default: ReportPeriod = ReportPeriod.DAILY) -> ReportPeriod:
    """Map user words such as ``today`` or ``month`` to a report period.

    Raises:
        ValidationError: If ``raw`` names no known period.
    """

    if not raw:
        return default
    try:
        return PERIOD_ALIASES[raw.strip().lower()]
    except KeyError as exc:
        raise ValidationError(
            f"Unknown period '{raw}'",
            hint="Use today, yesterday, week or month.",
        ) from exc


def period_window(period: ReportPeriod, now: Optional[datetime] = None) -> Period:
    """Return the window of a named period ending at ``now``.

    ``daily`` starts at today's midnight, ``yesterday`` covers the whole of
    the previous day, ``weekly``/``monthly`` start at midnight 7/30 days ago.
    All boundaries are UTC.
    """

    period = ReportPeriod(period)
    now = core_logic.resolve_timestamp(now)
    midnight = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
    if period is ReportPeriod.DAILY:
        return Period(start=midnight, end=now, label=period.value)
    if period is ReportPeriod.YESTERDAY:
        start = midnight - timedelta(days=1)
        return Period(start=start, end=midnight - timedelta(microseconds=1), label=period.value)
    return Period(start=midnight - timedelta(days=_PERIOD_DAYS[period]), end=now, label=period.value)


# ---------------------------------------------------------------------------
# Aggregations
# ---------------------------------------------------------------------------


def _sum_sales(rows: Sequence[sales.Sale]) -> AmountCount:
    return AmountCount(amount=sum((sale.total for sale in rows), core_logic.ZERO), count=len(rows))


def _of_type(rows: Sequence[sales.Sale], sale_type: SaleType) -> List[sales.Sale]:
    return [sale for sale in rows if sale.record.sale_type == sale_type.value]


def compute_cash_movement(context: RuntimeContext, shop_id: str, start: datetime, end: datetime) -> CashFlow:
    """Money in and out during ``[start, end]``.

    Cash sales count by sale time even when cancelled later; the refund is a
    separate outflow dated by its cancellation time.
    """

    # Includes sales cancelled later; their refunds are counted as outflows.
    cash_sales = _of_type(sales.sales_in_window(context, shop_id, start, end), SaleType.CASH)
    payments = credit.payments_in_window(context, shop_id, start, end)
    installments = laybye.installments_in_window(context, shop_id, start, end)
    expense_rows = expenses.list_expenses(context, shop_id, start, end)
    refunds = sales.refunds(context, shop_id, start, end)

    return CashFlow(
        inflows=CashInflows(
            cash_sales=_sum_sales(cash_sales),
            debt_payments=AmountCount(sum((row.amount for row in payments), core_logic.ZERO), len(payments)),
            laybye_payments=AmountCount(sum((row.amount for row in installments), core_logic.ZERO), len(installments)),
        ),
        outflows=CashOutflows(
            expenses=AmountCount(expenses.total_expenses(expense_rows), len(expense_rows)),
            refunds=_sum_sales(refunds),
        ),
    )


def compute_accrual_revenue(context: RuntimeContext, shop_id: str, start: datetime, end: datetime) -> RevenueBreakdown:
    """Value of non-cancelled sales made during ``[start, end]``, by sale type."""

    made = sales.sales_in_window(context, shop_id, start, end, include_cancelled=False)
    return RevenueBreakdown(
        cash=_sum_sales(_of_type(made, SaleType.CASH)),
        credit=_sum_sales(_of_type(made, SaleType.CREDIT)),
        completed_laybyes=_sum_sales(_of_type(made, SaleType.COMPLETED_LAYBYE)),
    )


def cost_of_goods(rows: Sequence[sales.Sale]) -> Decimal:
    """Sum ``quantity * unit_cost`` over lines whose cost was tracked."""

    total = core_logic.ZERO
    for sale in rows:
        for line in sale.items:
            if line.unit_cost is not None:
                total += line.unit_cost * line.quantity
    return data_manager.to_money(total)


def compute_profitability(context: RuntimeContext, shop_id: str, start: datetime, end: datetime) -> Profitability:
    """Revenue minus cost of goods minus expenses for ``[start, end]``."""

    made = sales.sales_in_window(context, shop_id, start, end, include_cancelled=False)
    revenue = sum((sale.total for sale in made), core_logic.ZERO)
    cogs = cost_of_goods(made)
    spent = expenses.total_expenses(expenses.list_expenses(context, shop_id, start, end))
    gross = revenue - cogs
    net = gross - spent
    margin = data_manager.to_money(net * 100 / revenue) if revenue else core_logic.ZERO
    return Profitability(
        revenue=revenue,
        cost_of_goods=cogs,
        gross_profit=gross,
        expenses=spent,
        net_profit=net,
        profit_margin=margin,
    )


def compute_outstanding(context: RuntimeContext, shop_id: str) -> Outstanding:
    """Money still owed to the shop right now."""

    owing = credit.outstanding_balances(context, shop_id)
    active = laybye.list_laybyes(context, shop_id, LayByeStatus.ACTIVE)
    return Outstanding(
        credit_due=AmountCount(sum((row.current_balance for row in owing), core_logic.ZERO), len(owing)),
        laybye_due=AmountCount(sum((plan.record.balance_due for plan in active), core_logic.ZERO), len(active)),
    )


def compute_cash_flow(
    context: RuntimeContext,
    shop_id: str,
    start: datetime,
    end: datetime,
    *,
    label: str = "custom",
) -> CashFlowReport:
    """Build the full report for ``[start, end]``.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        shop_id (str): Tenant reported on.
        start (datetime): Inclusive window start.
        end (datetime): Inclusive window end.
        label (str): Period name carried into the report.

    Returns:
        CashFlowReport: Cash movement, accrual revenue, profitability,
            outstanding balances and the transactions behind them.

    Raises:
        ValidationError: If ``start`` is after ``end``.
    """

    start = core_logic.resolve_timestamp(start)
    end = core_logic.resolve_timestamp(end)
    if start > end:
        raise ValidationError("Report start must not be after its end")

    in_window = sales.sales_in_window(context, shop_id, start, end)
    made = [sale for sale in in_window if not sale.record.is_cancelled]
    details = ReportDetails(
        cash_sales=_of_type(in_window, SaleType.CASH),
        credit_sales=_of_type(made, SaleType.CREDIT),
        completed_laybyes=_of_type(made, SaleType.COMPLETED_LAYBYE),
        refunds=sales.refunds(context, shop_id, start, end),
        payments=credit.payments_in_window(context, shop_id, start, end),
        installments=laybye.installments_in_window(context, shop_id, start, end),
        expenses=expenses.list_expenses(context, shop_id, start, end),
        expense_breakdown=expenses.breakdown(context, shop_id, start, end),
    )
    report = CashFlowReport(
        period=Period(start=start, end=end, label=label),
        cash_flow=compute_cash_movement(context, shop_id, start, end),
        revenue=compute_accrual_revenue(context, shop_id, start, end),
        profitability=compute_profitability(context, shop_id, start, end),
        outstanding=compute_outstanding(context, shop_id),
        details=details,
    )
    log.info(
        "Computed %s report for shop '%s': net cash %s, revenue %s",
        label,
        shop_id,
        report.cash_flow.net,
        report.revenue.total,
    )
    return report


def report_for_period(
    context: RuntimeContext,
    shop_id: str,
    period: ReportPeriod,
    now: Optional[datetime] = None,
) -> CashFlowReport:
    window = period_window(period, now)
    return compute_cash_flow(context, shop_id, window.start, window.end, label=window.label)


def best_sellers(
    context: RuntimeContext,
    shop_id: str,
    start: datetime,
    end: datetime,
    *,
    limit: Optional[int] = 10,
) -> List[ProductSales]:
    """Rank products by units sold in non-cancelled sales of the window."""

    quantities: Dict[str, int] = defaultdict(int)
    revenue: Dict[str, Decimal] = defaultdict(lambda: core_logic.ZERO)
    transactions: Dict[str, int] = defaultdict(int)
    names: Dict[str, str] = {}
    for sale in sales.sales_in_window(context, shop_id, start, end, include_cancelled=False):
        for line in sale.items:
            quantities[line.product_id] += line.quantity
            revenue[line.product_id] += line.total
            transactions[line.product_id] += 1
            names[line.product_id] = line.product_name

    ranked = sorted(quantities, key=lambda pid: (-quantities[pid], -revenue[pid], names[pid].casefold()))
    if limit is not None:
        ranked = ranked[:limit]
    return [
        ProductSales(
            product_id=pid,
            product_name=names[pid],
            quantity=quantities[pid],
            revenue=revenue[pid],
            transactions=transactions[pid],
        )
        for pid in ranked
    ]
