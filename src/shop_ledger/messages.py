"""User-facing reply text for Shop Ledger commands.

Every string a shop owner reads is built here, so the dispatcher only decides
*which* reply to send. Amounts are rendered with the configured currency
symbol; timestamps as ``YYYY-MM-DD HH:MM`` UTC.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable, List, Mapping, Optional, Sequence

from . import core_logic, data_manager
from .constants import OrderStatus, ReportPeriod
from .core_logic import BusinessRuleViolation

GENERIC_FAILURE = "Something went wrong while saving your change. Please try again."
UNKNOWN_SHOP = "Your shop is not registered or your session has expired. Please log in again."

# Thresholds for report insights, in percent of revenue.
CREDIT_SHARE_WARNING = Decimal("30")
OUTSTANDING_SHARE_WARNING = Decimal("50")
EXPENSE_RATIO_WARNING = Decimal("40")

PERIOD_TITLES = {
    ReportPeriod.DAILY: "TODAY",
    ReportPeriod.YESTERDAY: "YESTERDAY",
    ReportPeriod.WEEKLY: "THIS WEEK",
    ReportPeriod.MONTHLY: "THIS MONTH",
}

HELP_SECTIONS = {
    "products": [
        "list | products                 show the catalog",
        "low stock                       products at or below their threshold",
        "add <name> <price> [stock N] [threshold N] [cost N]",
        "stock [+|-|=]<name> <n>         add, remove or set stock",
        "price <name> <n> | threshold <name> <n>",
        "edit <name> <price|stock|threshold|cost|name> <value>",
        "delete <name> [confirm]",
    ],
    "sales": [
        "sell <qty> <product> [price] ...",
        "sell to <customer> <qty> <product> ...",
        "cancel                          recent sales",
        "cancel last [reason] | cancel sale <n|id> [reason]",
        "cancel refunds [today|week|month]",
    ],
    "customers": [
        "customer add <name> <phone> [email]",
        "customers [all|active|top] | customer <name or phone>",
        "customer limit <customer> <amount>",
        "credit <customer> <amount> | credit <customer> <qty> <product> ...",
        "credit sale to <customer> <qty> <product> ...",
        "payment <customer> <amount> | credit history <customer>",
    ],
    "orders": [
        "order <customer> <qty> <product> ... [pickup|delivery|reservation] [notes]",
        "orders [status] | order details <ref>",
        "confirm|ready|complete|cancel order <ref> [notes]",
    ],
    "laybye": [
        "laybye [for] <customer> <qty> <product> ... [deposit N] [cash|bank|mobile]",
        "laybye pay <customer> <amount> [method] | laybye cancel <customer>",
        "laybyes",
    ],
    "money": [
        'expense <amount> <description> [category] [method] [receipt]',
        "expenses [today|yesterday|week|month] | expenses breakdown [period]",
        "profit [period] | daily | weekly | monthly",
        "best [today|week|month]",
        "export <daily|weekly|monthly|best> [today|month]",
    ],
}


def category_title(category: str) -> str:
    return category.replace("_", " ").title()


def period_title(period: ReportPeriod | str) -> str:
    try:
        return PERIOD_TITLES[ReportPeriod(period)]
    except ValueError:
        return str(period).upper()


def percent_of(part: Decimal, whole: Decimal) -> Decimal:
    """Return ``part`` as a percentage of ``whole``; zero when ``whole`` is zero."""

    if not whole:
        return core_logic.ZERO
    return data_manager.to_money(part * 100 / whole)


class ReplyFormatter:
    """Build reply text using one shop's currency symbol."""

    def __init__(self, currency: str = data_manager.DEFAULT_CURRENCY_SYMBOL) -> None:
        self.currency = currency

    # -- primitives ---------------------------------------------------------

    def money(self, amount: Decimal | None) -> str:
        value = data_manager.to_money(amount or core_logic.ZERO)
        sign = "-" if value < 0 else ""
        return f"{sign}{self.currency}{abs(value):,.2f}"

    @staticmethod
    def when(raw: Optional[str]) -> str:
        moment = core_logic.parse_timestamp(raw)
        return moment.strftime("%Y-%m-%d %H:%M") if moment else "-"

    def lines(self, items: Iterable[data_manager.LineItemRow]) -> List[str]:
        return [
            f"  {item.quantity} x {item.product_name} @ {self.money(item.price)} = {self.money(item.total)}"
            for item in items
        ]

    # -- errors and help ----------------------------------------------------

    @staticmethod
    def error(error: BusinessRuleViolation | Exception) -> str:
        """Render a business rejection or parse error with its hint."""

        message = getattr(error, "message", str(error))
        hint = getattr(error, "hint", None)
        return f"{message}\n{hint}" if hint else message

    @staticmethod
    def help(topic: Optional[str] = None) -> str:
        if topic and topic.lower() in HELP_SECTIONS:
            sections = {topic.lower(): HELP_SECTIONS[topic.lower()]}
        else:
            sections = HELP_SECTIONS
        parts = ["SHOP LEDGER COMMANDS"]
        for title, commands in sections.items():
            parts.append("")
            parts.append(title.upper())
            parts.extend(f"  {command}" for command in commands)
        if not topic:
            parts.append("")
            parts.append("Type 'help <section>' for one section. Quote names with spaces: \"brown bread\".")
        return "\n".join(parts)

    # -- catalog and stock --------------------------------------------------

    def product_added(self, product: data_manager.ProductRow) -> str:
        text = f"Added {product.product_name} at {self.money(product.price)} with {product.stock} in stock."
        if product.cost_price is not None:
            text += f"\nCost price: {self.money(product.cost_price)}"
        return text

    def product_list(self, products: Sequence[data_manager.ProductRow]) -> str:
        if not products:
            return "No products yet. Add one with: add <name> <price> stock <n>"
        rows = [f"PRODUCTS ({len(products)})"]
        for product in products:
            flag = " (low)" if product.track_stock and product.stock <= product.low_stock_threshold else ""
            stock = f"{product.stock} in stock" if product.track_stock else "not tracked"
            rows.append(f"- {product.product_name}: {self.money(product.price)}, {stock}{flag}")
        return "\n".join(rows)

    @staticmethod
    def low_stock(products: Sequence[data_manager.ProductRow]) -> str:
        if not products:
            return "All products are above their low stock threshold."
        rows = ["LOW STOCK"]
        rows.extend(
            f"- {product.product_name}: {product.stock} left (threshold {product.low_stock_threshold})"
            for product in products
        )
        return "\n".join(rows)

    def product_updated(self, product: data_manager.ProductRow, changes: Sequence[str]) -> str:
        summary = ", ".join(changes) if changes else "no changes"
        return (
            f"Updated {product.product_name}: {summary}.\n"
            f"Now {self.money(product.price)}, {product.stock} in stock, threshold {product.low_stock_threshold}."
        )

    @staticmethod
    def stock_updated(product: data_manager.ProductRow, previous: int) -> str:
        return f"{product.product_name} stock: {previous} -> {product.stock}"

    @staticmethod
    def delete_confirmation(product: data_manager.ProductRow, sales_count: int) -> str:
        return (
            f"Delete {product.product_name}? It appears in {sales_count} sale(s), which will keep their records.\n"
            f"Type: delete {product.product_name} confirm"
        )

    @staticmethod
    def product_deleted(product: data_manager.ProductRow) -> str:
        return f"{product.product_name} was removed from the catalog."

    # -- sales --------------------------------------------------------------

    def sale_recorded(self, sale, customer: Optional[data_manager.CustomerRow] = None) -> str:
        rows = [f"Sale {sale.sale_id} recorded"]
        rows.extend(self.lines(sale.items))
        rows.append(f"Total: {self.money(sale.total)}")
        if customer is not None:
            rows.append(f"Customer: {customer.name} (total spent {self.money(customer.total_spent)})")
        return "\n".join(rows)

    def recent_sales(self, recent: Sequence) -> str:
        if not recent:
            return "No sales to cancel."
        rows = ["RECENT SALES"]
        for number, sale in enumerate(recent, start=1):
            names = ", ".join(f"{item.quantity} {item.product_name}" for item in sale.items)
            rows.append(f"{number}. {self.when(sale.record.timestamp_iso)}  {self.money(sale.total)}  {names}")
        rows.append("")
        rows.append("Type 'cancel <number> [reason]' or 'cancel last [reason]'.")
        return "\n".join(rows)

    def sale_cancelled(self, sale) -> str:
        reason = sale.record.cancellation_reason or "No reason provided"
        return (
            f"Sale {sale.sale_id} cancelled ({self.money(sale.total)}).\n"
            f"Stock has been returned. Reason: {reason}"
        )

    def refunds(self, cancelled: Sequence, period: ReportPeriod) -> str:
        if not cancelled:
            return f"No cancelled sales {period_title(period).lower()}."
        total = sum((sale.total for sale in cancelled), core_logic.ZERO)
        rows = [f"REFUNDS - {period_title(period)}", f"{len(cancelled)} cancelled sale(s), {self.money(total)}"]
        for sale in cancelled:
            reason = sale.record.cancellation_reason or "-"
            rows.append(f"- {self.when(sale.record.cancelled_at)}  {self.money(sale.total)}  {reason}")
        return "\n".join(rows)

    # -- customers and credit -----------------------------------------------

    def customer_added(self, customer: data_manager.CustomerRow) -> str:
        return f"Customer {customer.name} ({customer.phone}) added."

    def customer_list(self, rows: Sequence[data_manager.CustomerRow], customer_filter: str) -> str:
        if not rows:
            return "No customers found. Add one with: customer add <name> <phone>"
        title = "CUSTOMERS" if customer_filter == "all" else f"{customer_filter.upper()} CUSTOMERS"
        lines = [f"{title} ({len(rows)})"]
        for customer in rows:
            owing = f", owes {self.money(customer.current_balance)}" if customer.current_balance > 0 else ""
            lines.append(
                f"- {customer.name} ({customer.phone}): {self.money(customer.total_spent)} over "
                f"{customer.total_visits} visit(s){owing}"
            )
        return "\n".join(lines)

    def customer_profile(self, customer: data_manager.CustomerRow, history: Sequence) -> str:
        rows = [
            f"CUSTOMER {customer.name}",
            f"Phone: {customer.phone}",
            f"Email: {customer.email or '-'}",
            f"Total spent: {self.money(customer.total_spent)} over {customer.total_visits} visit(s)",
            f"Loyalty points: {customer.loyalty_points}",
            f"Balance owed: {self.money(customer.current_balance)} (limit {self.money(customer.credit_limit)})",
            f"Last purchase: {self.when(customer.last_purchase_at)}",
        ]
        if history:
            rows.append("")
            rows.append("RECENT SALES")
            for sale in history:
                status = " (cancelled)" if sale.record.is_cancelled else ""
                rows.append(
                    f"- {self.when(sale.record.timestamp_iso)}  {sale.record.sale_type}  {self.money(sale.total)}{status}"
                )
        return "\n".join(rows)

    def credit_limit_set(self, customer: data_manager.CustomerRow) -> str:
        return f"Credit limit for {customer.name} set to {self.money(customer.credit_limit)}."

    def _limit_warning(self, customer: data_manager.CustomerRow) -> List[str]:
        if customer.credit_limit > 0 and customer.current_balance > customer.credit_limit:
            return [f"Note: balance is above the credit limit of {self.money(customer.credit_limit)}."]
        return []

    def credit_granted(self, entry, customer: data_manager.CustomerRow) -> str:
        rows = [
            f"Credit of {self.money(entry.record.amount)} given to {customer.name}.",
            f"Balance: {self.money(entry.record.balance_before)} -> {self.money(entry.record.balance_after)}",
        ]
        rows.extend(self._limit_warning(customer))
        return "\n".join(rows)

    def credit_sale_recorded(self, credit_sale, customer: data_manager.CustomerRow) -> str:
        entry = credit_sale.entry.record
        rows = [f"Credit sale {credit_sale.sale.sale_id} for {customer.name}"]
        rows.extend(self.lines(credit_sale.sale.items))
        rows.append(f"Total: {self.money(credit_sale.sale.total)}")
        rows.append(f"Balance: {self.money(entry.balance_before)} -> {self.money(entry.balance_after)}")
        rows.extend(self._limit_warning(customer))
        return "\n".join(rows)

    def payment_recorded(self, entry, customer: data_manager.CustomerRow, requested: Decimal) -> str:
        record = entry.record
        rows = [f"Payment of {self.money(record.amount)} received from {customer.name}."]
        if record.amount < requested:
            rows.append(f"Only {self.money(record.amount)} was owed; {self.money(requested - record.amount)} not applied.")
        if record.balance_after > 0:
            rows.append(f"Remaining balance: {self.money(record.balance_after)}")
        else:
            rows.append("Account fully paid.")
        return "\n".join(rows)

    def credit_history(self, customer: data_manager.CustomerRow, entries: Sequence) -> str:
        rows = [f"CREDIT HISTORY - {customer.name}", f"Current balance: {self.money(customer.current_balance)}"]
        if not entries:
            rows.append("No credit activity yet.")
        for entry in entries:
            record = entry.record
            sign = "+" if record.entry_type == "credit" else "-"
            rows.append(
                f"- {self.when(record.timestamp_iso)}  {sign}{self.money(record.amount)}  "
                f"{record.description}  (balance {self.money(record.balance_after)})"
            )
        return "\n".join(rows)

    # -- orders -------------------------------------------------------------

    def order_placed(self, order, customer_name: Optional[str] = None) -> str:
        rows = [f"Order #{order.short_ref} placed ({order.record.order_type})"]
        if customer_name:
            rows.append(f"Customer: {customer_name}")
        rows.extend(self.lines(order.items))
        rows.append(f"Total: {self.money(order.record.total)}")
        rows.append(f"Next: confirm order {order.short_ref}")
        return "\n".join(rows)

    def order_list(self, orders: Sequence, status: Optional[OrderStatus], names: Mapping[str, str]) -> str:
        label = f"{status.value.upper()} ORDERS" if status else "ORDERS"
        if not orders:
            return f"No {label.lower()} found."
        rows = [label]
        for order in orders:
            who = names.get(order.record.customer_id or "", "walk-in")
            rows.append(
                f"#{order.short_ref}  {order.record.status}  {who}  {self.money(order.record.total)}  "
                f"{self.when(order.record.ordered_at)}"
            )
        return "\n".join(rows)

    def order_details(self, order, customer_name: Optional[str] = None) -> str:
        record = order.record
        rows = [
            f"ORDER #{order.short_ref}",
            f"Status: {record.status}",
            f"Type: {record.order_type}",
            f"Customer: {customer_name or 'walk-in'}",
            f"Ordered: {self.when(record.ordered_at)}",
        ]
        for label, stamp in (
            ("Confirmed", record.confirmed_at),
            ("Ready", record.ready_at),
            ("Completed", record.completed_at),
            ("Cancelled", record.cancelled_at),
        ):
            if stamp:
                rows.append(f"{label}: {self.when(stamp)}")
        rows.extend(self.lines(order.items))
        rows.append(f"Total: {self.money(record.total)}")
        if record.notes:
            rows.append(f"Notes: {record.notes}")
        return "\n".join(rows)

    @staticmethod
    def order_transitioned(order) -> str:
        text = f"Order #{order.short_ref} is now {order.record.status}."
        if order.record.status == OrderStatus.COMPLETED.value:
            text += " Stock has been deducted."
        return text

    # -- lay-byes -----------------------------------------------------------

    def laybye_opened(self, plan, customer_name: Optional[str] = None) -> str:
        record = plan.record
        rows = [f"Lay-bye {record.laybye_id} opened" + (f" for {customer_name}" if customer_name else "")]
        rows.extend(self.lines(plan.items))
        rows.append(f"Total: {self.money(record.total_amount)}")
        rows.append(f"Paid: {self.money(record.amount_paid)}  Due: {self.money(record.balance_due)}")
        if plan.sale is not None:
            rows.append("Fully paid on opening; the goods can be collected.")
        else:
            rows.append(f"Due date: {self.when(record.due_date)}")
        return "\n".join(rows)

    def laybye_payment(self, plan) -> str:
        record = plan.record
        paid = plan.installments[-1].amount if plan.installments else core_logic.ZERO
        rows = [f"Payment of {self.money(paid)} added to lay-bye {record.laybye_id}."]
        if plan.sale is not None:
            rows.append("Lay-bye fully paid. The goods can be collected.")
        else:
            rows.append(f"Paid: {self.money(record.amount_paid)}  Due: {self.money(record.balance_due)}")
        return "\n".join(rows)

    def laybye_cancelled(self, plan) -> str:
        return (
            f"Lay-bye {plan.laybye_id} cancelled. Goods are back in stock.\n"
            f"Installments already paid: {self.money(plan.record.amount_paid)}"
        )

    def laybye_list(self, plans: Sequence, names: Mapping[str, str]) -> str:
        if not plans:
            return "No active lay-byes."
        rows = [f"ACTIVE LAY-BYES ({len(plans)})"]
        for plan in plans:
            record = plan.record
            who = names.get(record.customer_id or "", "walk-in")
            rows.append(
                f"- {who}: paid {self.money(record.amount_paid)} of {self.money(record.total_amount)}, "
                f"due {self.when(record.due_date)}"
            )
        return "\n".join(rows)

    # -- expenses -----------------------------------------------------------

    def expense_recorded(self, expense: data_manager.ExpenseRow) -> str:
        text = (
            f"Expense of {self.money(expense.amount)} recorded: {expense.description}\n"
            f"Category: {category_title(expense.category)}  Paid by: {expense.payment_method}"
        )
        if expense.receipt_number:
            text += f"\nReceipt: {expense.receipt_number}"
        return text

    def expense_list(self, rows: Sequence[data_manager.ExpenseRow], period: ReportPeriod) -> str:
        total = sum((row.amount for row in rows), core_logic.ZERO)
        lines = [f"EXPENSES - {period_title(period)}", f"Total: {self.money(total)} ({len(rows)} item(s))"]
        if not rows:
            lines.append("No expenses recorded for this period.")
            return "\n".join(lines)
        for row in rows[:10]:
            lines.append(f"- {self.when(row.timestamp_iso)}  {self.money(row.amount)}  {row.description} ({category_title(row.category)})")
        if len(rows) > 10:
            lines.append(f"... and {len(rows) - 10} more")
        return "\n".join(lines)

    def expense_breakdown(self, totals: Sequence, period: ReportPeriod) -> str:
        if not totals:
            return f"No expenses recorded {period_title(period).lower()}."
        grand = sum((item.amount for item in totals), core_logic.ZERO)
        rows = [f"EXPENSE BREAKDOWN - {period_title(period)}", f"Total: {self.money(grand)}"]
        for item in totals:
            rows.append(f"- {category_title(item.category)}: {self.money(item.amount)} ({item.share}%), {item.count} item(s)")
        largest = totals[0]
        rows.append(f"Largest expense is {category_title(largest.category)} ({largest.share}% of total)")
        return "\n".join(rows)

    # -- reports ------------------------------------------------------------

    def insights(self, report) -> List[str]:
        """Plain-language observations drawn from a cash-flow report."""

        notes: List[str] = []
        net = report.cash_flow.net
        if net > 0:
            notes.append(f"Positive cash flow of {self.money(net)}")
        elif net < 0:
            notes.append(f"Negative cash flow of {self.money(-net)}. Review expenses or collect outstanding debts.")

        revenue = report.revenue.total
        credit_share = percent_of(report.revenue.credit.amount, revenue)
        if credit_share > CREDIT_SHARE_WARNING:
            notes.append(f"Credit sales are {credit_share}% of revenue, a high credit risk")
        if report.outstanding.total > revenue * OUTSTANDING_SHARE_WARNING / 100:
            notes.append(f"Outstanding debts ({self.money(report.outstanding.total)}) exceed 50% of revenue")
        expense_ratio = percent_of(report.profitability.expenses, revenue)
        if expense_ratio > EXPENSE_RATIO_WARNING:
            notes.append(f"Expenses are {expense_ratio}% of revenue; consider cost reduction")
        else:
            notes.append(f"Healthy expense ratio at {expense_ratio}%")
        return notes

    def cash_flow_report(self, report) -> str:
        flow = report.cash_flow
        revenue = report.revenue
        profit = report.profitability
        outstanding = report.outstanding
        rows = [
            f"FINANCIAL REPORT - {period_title(report.period.label)}",
            f"Period: {report.period.start:%Y-%m-%d %H:%M} to {report.period.end:%Y-%m-%d %H:%M} UTC",
            "",
            "CASH IN",
            f"  Cash sales: {self.money(flow.inflows.cash_sales.amount)} ({flow.inflows.cash_sales.count})",
            f"  Debt payments: {self.money(flow.inflows.debt_payments.amount)} ({flow.inflows.debt_payments.count})",
            f"  Lay-bye payments: {self.money(flow.inflows.laybye_payments.amount)} ({flow.inflows.laybye_payments.count})",
            f"  Total in: {self.money(flow.inflows.total)}",
            "CASH OUT",
            f"  Expenses: {self.money(flow.outflows.expenses.amount)} ({flow.outflows.expenses.count})",
            f"  Refunds: {self.money(flow.outflows.refunds.amount)} ({flow.outflows.refunds.count})",
            f"  Total out: {self.money(flow.outflows.total)}",
            f"NET CASH FLOW: {self.money(flow.net)}",
            "",
            "REVENUE (accrual)",
            f"  Cash sales: {self.money(revenue.cash.amount)} ({revenue.cash.count})",
            f"  Credit sales: {self.money(revenue.credit.amount)} ({revenue.credit.count})",
            f"  Completed lay-byes: {self.money(revenue.completed_laybyes.amount)} ({revenue.completed_laybyes.count})",
            f"  Total revenue: {self.money(revenue.total)}",
            "",
            "PROFITABILITY",
            f"  Cost of goods: {self.money(profit.cost_of_goods)}",
            f"  Gross profit: {self.money(profit.gross_profit)}",
            f"  Expenses: {self.money(profit.expenses)}",
            f"  Net profit: {self.money(profit.net_profit)}",
            f"  Margin: {profit.profit_margin}%",
            "",
            "OUTSTANDING",
            f"  Customer credit: {self.money(outstanding.credit_due.amount)} ({outstanding.credit_due.count} customers)",
            f"  Active lay-byes: {self.money(outstanding.laybye_due.amount)} ({outstanding.laybye_due.count})",
            f"  Total outstanding: {self.money(outstanding.total)}",
        ]
        breakdown = report.details.expense_breakdown
        if breakdown:
            rows.append("")
            rows.append("TOP EXPENSES")
            rows.extend(
                f"  {category_title(item.category)}: {self.money(item.amount)} ({item.share}%)" for item in breakdown[:5]
            )
        rows.append("")
        rows.append("INSIGHTS")
        rows.extend(f"  {note}" for note in self.insights(report))
        return "\n".join(rows)

    def profit_report(self, report) -> str:
        profit = report.profitability
        return "\n".join(
            [
                f"PROFIT - {period_title(report.period.label)}",
                f"Revenue: {self.money(profit.revenue)}",
                f"Cost of goods: {self.money(profit.cost_of_goods)}",
                f"Gross profit: {self.money(profit.gross_profit)}",
                f"Expenses: {self.money(profit.expenses)}",
                f"Net profit: {self.money(profit.net_profit)}",
                f"Margin: {profit.profit_margin}%",
            ]
        )

    def best_sellers(self, ranked: Sequence, period: ReportPeriod) -> str:
        if not ranked:
            return f"No sales {period_title(period).lower()}."
        rows = [f"BEST SELLERS - {period_title(period)}"]
        for position, item in enumerate(ranked, start=1):
            rows.append(f"{position}. {item.product_name}: {item.quantity} sold, {self.money(item.revenue)}")
        return "\n".join(rows)

    @staticmethod
    def export_caption(kind: str, period: ReportPeriod) -> str:
        what = "Best sellers" if kind == "best" else "Financial report"
        return f"{what} - {period_title(period).lower()}"
