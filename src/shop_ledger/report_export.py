"""Spreadsheet export of Shop Ledger reports.

The dispatcher hands a :class:`~shop_ledger.financials.CashFlowReport` (or a
best-seller ranking) to a :class:`ReportRenderer` and replies with the file
it produced. :class:`XlsxReportRenderer` is the default renderer and writes
``.xlsx`` files with ``openpyxl``, the same library that stores the ledger.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Iterable, List, Optional, Protocol, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.worksheet.worksheet import Worksheet

from . import core_logic, log
from .constants import ReportPeriod
from .financials import CashFlowReport, ProductSales
from .messages import ReplyFormatter, category_title, percent_of, period_title

MONEY_FORMAT = "#,##0.00"


class ReportRenderer(Protocol):
    """Turns aggregator output into a document on disk."""

    def render(self, report: CashFlowReport, destination: Path) -> Path:
        ...

    def render_best_sellers(self, ranked: Sequence[ProductSales], period: ReportPeriod, destination: Path) -> Path:
        ...


def report_filename(shop_id: str, kind: str, period: ReportPeriod | str, now: Optional[datetime] = None) -> str:
    """Return ``<shop>_<kind>_<period>_<YYYYMMDD-HHMMSS>.xlsx`` with unsafe characters replaced."""

    stamp = core_logic.resolve_timestamp(now).strftime("%Y%m%d-%H%M%S")
    safe_shop = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in shop_id) or "shop"
    return f"{safe_shop}_{kind}_{ReportPeriod(period).value}_{stamp}.xlsx"


def _write_table(sheet: Worksheet, headers: Sequence[str], rows: Iterable[Sequence[object]], *, start_row: int = 1) -> int:
    """Write a bold header and its rows; return the next free row."""

    bold = Font(bold=True)
    for column, header in enumerate(headers, start=1):
        cell = sheet.cell(row=start_row, column=column, value=header)
        cell.font = bold
    row_number = start_row
    for row_number, row in enumerate(rows, start=start_row + 1):
        for column, value in enumerate(row, start=1):
            cell = sheet.cell(row=row_number, column=column, value=float(value) if isinstance(value, Decimal) else value)
            if isinstance(value, Decimal):
                cell.number_format = MONEY_FORMAT
    return row_number + 2


def _autosize(sheet: Worksheet) -> None:
    for column in sheet.columns:
        width = max((len(str(cell.value)) for cell in column if cell.value is not None), default=8)
        sheet.column_dimensions[column[0].column_letter].width = min(width + 2, 60)


class XlsxReportRenderer:
    """Write reports as ``.xlsx`` workbooks."""

    def __init__(self, formatter: Optional[ReplyFormatter] = None) -> None:
        self.formatter = formatter or ReplyFormatter()

    def render(self, report: CashFlowReport, destination: Path) -> Path:
        """Write the summary, transactions and expense breakdown of ``report``.

        Args:
            report (CashFlowReport): Aggregated report to export.
            destination (Path): Target ``.xlsx`` path; parent directories are
                created on demand.

        Returns:
            Path: The resolved path of the written workbook.
        """

        workbook = openpyxl.Workbook()
        summary = workbook.active
        summary.title = "Summary"
        flow = report.cash_flow
        revenue = report.revenue
        profit = report.profitability
        outstanding = report.outstanding

        summary.cell(row=1, column=1, value=f"Financial report - {period_title(report.period.label)}").font = Font(bold=True, size=14)
        summary.cell(row=2, column=1, value=f"{report.period.start:%Y-%m-%d %H:%M} to {report.period.end:%Y-%m-%d %H:%M} UTC")
        next_row = _write_table(
            summary,
            ["Cash flow", "Amount", "Count"],
            [
                ("Cash sales", flow.inflows.cash_sales.amount, flow.inflows.cash_sales.count),
                ("Debt payments", flow.inflows.debt_payments.amount, flow.inflows.debt_payments.count),
                ("Lay-bye payments", flow.inflows.laybye_payments.amount, flow.inflows.laybye_payments.count),
                ("Total in", flow.inflows.total, None),
                ("Expenses", flow.outflows.expenses.amount, flow.outflows.expenses.count),
                ("Refunds", flow.outflows.refunds.amount, flow.outflows.refunds.count),
                ("Total out", flow.outflows.total, None),
                ("Net cash flow", flow.net, None),
            ],
            start_row=4,
        )
        next_row = _write_table(
            summary,
            ["Revenue (accrual)", "Amount", "Count"],
            [
                ("Cash sales", revenue.cash.amount, revenue.cash.count),
                ("Credit sales", revenue.credit.amount, revenue.credit.count),
                ("Completed lay-byes", revenue.completed_laybyes.amount, revenue.completed_laybyes.count),
                ("Total revenue", revenue.total, None),
            ],
            start_row=next_row,
        )
        next_row = _write_table(
            summary,
            ["Profitability", "Amount"],
            [
                ("Cost of goods", profit.cost_of_goods),
                ("Gross profit", profit.gross_profit),
                ("Expenses", profit.expenses),
                ("Net profit", profit.net_profit),
                ("Margin %", profit.profit_margin),
            ],
            start_row=next_row,
        )
        next_row = _write_table(
            summary,
            ["Outstanding", "Amount", "Count"],
            [
                ("Customer credit", outstanding.credit_due.amount, outstanding.credit_due.count),
                ("Active lay-byes", outstanding.laybye_due.amount, outstanding.laybye_due.count),
                ("Total outstanding", outstanding.total, None),
            ],
            start_row=next_row,
        )
        _write_table(summary, ["Insights"], [(note,) for note in self.formatter.insights(report)], start_row=next_row)
        _autosize(summary)

        details = report.details
        transactions = workbook.create_sheet("Transactions")
        rows: List[Sequence[object]] = []
        for label, group in (
            ("cash sale", details.cash_sales),
            ("credit sale", details.credit_sales),
            ("completed lay-bye", details.completed_laybyes),
        ):
            for sale in group:
                status = "cancelled" if sale.record.is_cancelled else ""
                rows.append((sale.record.timestamp_iso, label, sale.sale_id, sale.total, status))
        for sale in details.refunds:
            rows.append((sale.record.cancelled_at, "refund", sale.sale_id, -sale.total, sale.record.cancellation_reason or ""))
        for entry in details.payments:
            rows.append((entry.timestamp_iso, "debt payment", entry.entry_id, entry.amount, entry.description))
        for installment in details.installments:
            rows.append((installment.timestamp_iso, "lay-bye payment", installment.laybye_id, installment.amount, installment.payment_method))
        for expense in details.expenses:
            rows.append((expense.timestamp_iso, "expense", expense.expense_id, -expense.amount, expense.description))
        rows.sort(key=lambda row: str(row[0] or ""))
        _write_table(transactions, ["Timestamp", "Kind", "Reference", "Amount", "Notes"], rows)
        _autosize(transactions)

        breakdown = workbook.create_sheet("Expenses")
        _write_table(
            breakdown,
            ["Category", "Amount", "Items", "Share %"],
            [(category_title(item.category), item.amount, item.count, item.share) for item in details.expense_breakdown],
        )
        _autosize(breakdown)

        return self._save(workbook, destination)

    def render_best_sellers(self, ranked: Sequence[ProductSales], period: ReportPeriod, destination: Path) -> Path:
        """Write a ranking sheet with each product's share of units sold."""

        workbook = openpyxl.Workbook()
        sheet = workbook.active
        sheet.title = "Best sellers"
        sheet.cell(row=1, column=1, value=f"Best sellers - {period_title(period)}").font = Font(bold=True, size=14)
        total_units = Decimal(sum(item.quantity for item in ranked))
        _write_table(
            sheet,
            ["Rank", "Product", "Units", "Revenue", "Sales", "Share of units %"],
            [
                (rank, item.product_name, item.quantity, item.revenue, item.transactions, percent_of(Decimal(item.quantity), total_units))
                for rank, item in enumerate(ranked, start=1)
            ],
            start_row=3,
        )
        _autosize(sheet)
        return self._save(workbook, destination)

    @staticmethod
    def _save(workbook: openpyxl.Workbook, destination: Path) -> Path:
        destination = Path(destination).expanduser().resolve()
        destination.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(destination)
        log.info("Exported report '%s'", destination)
        return destination
