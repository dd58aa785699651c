"""Expense recorder for Shop Ledger."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from . import core_logic, data_manager, log
from .constants import ExpenseCategory, PaymentMethod
from .core_logic import RuntimeContext, ValidationError, ledger_operation

EXPENSES_BUCKET = "expenses"


@dataclass(frozen=True)
class CategoryTotal:
    """One row of an expense breakdown."""

    category: str
    amount: Decimal
    count: int
    share: Decimal


def parse_category(raw: str) -> ExpenseCategory:
    """Resolve a category name, accepting spaces or dashes for underscores.

    Raises:
        ValidationError: If the name is not a known category.
    """

    key = raw.strip().lower().replace(" ", "_").replace("-", "_")
    try:
        return ExpenseCategory(key)
    except ValueError as exc:
        raise ValidationError(
            f"Unknown expense category '{raw}'",
            hint="Categories: " + ", ".join(category.value for category in ExpenseCategory),
        ) from exc


def parse_payment_method(raw: str) -> PaymentMethod:
    """Resolve a payment method name.

    Raises:
        ValidationError: If the method is unknown.
    """

    try:
        return PaymentMethod(raw.strip().lower())
    except ValueError as exc:
        raise ValidationError(
            f"Unknown payment method '{raw}'",
            hint="Methods: " + ", ".join(method.value for method in PaymentMethod),
        ) from exc


@ledger_operation
def record_expense(
    context: RuntimeContext,
    shop_id: str,
    amount: Decimal,
    description: str,
    category: ExpenseCategory | str = ExpenseCategory.OTHER,
    payment_method: PaymentMethod | str = PaymentMethod.CASH,
    *,
    receipt_number: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.ExpenseRow:
    """Append an immutable expense.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        shop_id (str): Tenant paying the expense.
        amount (Decimal): Strictly positive amount paid.
        description (str): What the money was spent on.
        category (ExpenseCategory | str): One of the fixed categories.
        payment_method (PaymentMethod | str): How the expense was paid.
        receipt_number (str | None): Optional receipt reference.
        timestamp (datetime | None): Expense time, defaults to now.

    Returns:
        data_manager.ExpenseRow: The stored expense.

    Raises:
        ValidationError: If the amount is not positive, the description is
            empty, or the category or payment method is unknown.
    """

    core_logic.require_positive_money(amount, label="Expense amount")
    description = core_logic.require_text(description, label="Expense description")
    category = category if isinstance(category, ExpenseCategory) else parse_category(category)
    payment_method = payment_method if isinstance(payment_method, PaymentMethod) else parse_payment_method(payment_method)

    when = core_logic.resolve_timestamp(timestamp)
    expense = data_manager.ExpenseRow(
        expense_id=core_logic.generate_id("X", when=when),
        shop_id=shop_id,
        amount=amount,
        description=description,
        category=category.value,
        payment_method=payment_method.value,
        timestamp_iso=when.isoformat(),
        receipt_number=(receipt_number or "").strip() or None,
    )
    with core_logic.mutating(context, EXPENSES_BUCKET) as workbook:
        data_manager.append_expense(workbook, expense)
    log.info("Recorded %s expense of %s in shop '%s': %s", category.value, amount, shop_id, description)
    return expense


def list_expenses(context: RuntimeContext, shop_id: str, start: datetime, end: datetime) -> List[data_manager.ExpenseRow]:
    """Return expenses inside ``[start, end]``, newest first."""

    rows = core_logic.cached_rows(context, EXPENSES_BUCKET, data_manager.iter_expenses)
    selected = [row for row in rows if row.shop_id == shop_id and core_logic.in_window(row.timestamp_iso, start, end)]
    return sorted(selected, key=lambda row: row.timestamp_iso, reverse=True)


def total_expenses(rows: List[data_manager.ExpenseRow]) -> Decimal:
    return sum((row.amount for row in rows), core_logic.ZERO)


def breakdown(context: RuntimeContext, shop_id: str, start: datetime, end: datetime) -> List[CategoryTotal]:
    """Group expenses in the window by category, largest first.

    ``share`` is the category's percentage of the window total, rounded to
    cents.
    """

    rows = list_expenses(context, shop_id, start, end)
    grand_total = total_expenses(rows)
    amounts: Dict[str, Decimal] = defaultdict(lambda: core_logic.ZERO)
    counts: Dict[str, int] = defaultdict(int)
    for row in rows:
        amounts[row.category] += row.amount
        counts[row.category] += 1

    totals = [
        CategoryTotal(
            category=category,
            amount=amount,
            count=counts[category],
            share=data_manager.to_money(amount * 100 / grand_total) if grand_total else core_logic.ZERO,
        )
        for category, amount in amounts.items()
    ]
    return sorted(totals, key=lambda item: (-item.amount, item.category))
