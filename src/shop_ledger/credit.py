"""Customer credit ledger for Shop Ledger.

Every balance change is a new row on the ``CreditTransactions`` sheet carrying
the balance before and after it. Appending the entry and updating the
customer's ``CurrentBalance`` happen under the customer's lock and inside one
store write, so entries for a customer form an unbroken chain starting at
zero and the cached balance always equals a replay of that chain.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from . import catalog, core_logic, customers, data_manager, log, sales
from .catalog import LINE_ITEMS_BUCKET, LineRequest
from .constants import CreditEntryType, LineItemParent, SaleType
from .core_logic import RuntimeContext, StateError, ledger_operation
from .customers import CUSTOMERS_BUCKET

CREDIT_BUCKET = "credit_entries"


@dataclass(frozen=True)
class CreditEntry:
    """A credit ledger row with the item lines it was granted for."""

    record: data_manager.CreditEntryRow
    items: Tuple[data_manager.LineItemRow, ...] = ()


@dataclass(frozen=True)
class CreditSale:
    """Result of selling goods on account: the sale and its ledger entry."""

    sale: sales.Sale
    entry: CreditEntry


def _customer_entries(context: RuntimeContext, shop_id: str, customer_id: str) -> List[data_manager.CreditEntryRow]:
    # Sheet order is append order, which is the chain order.
    rows = core_logic.cached_rows(context, CREDIT_BUCKET, data_manager.iter_credit_entries)
    return [row for row in rows if row.shop_id == shop_id and row.customer_id == customer_id]


def _append_entry(
    context: RuntimeContext,
    shop_id: str,
    customer: data_manager.CustomerRow,
    entry_type: CreditEntryType,
    amount: Decimal,
    balance_after: Decimal,
    description: str,
    when: datetime,
    item_rows: Sequence[data_manager.LineItemRow] = (),
) -> CreditEntry:
    record = data_manager.CreditEntryRow(
        entry_id=core_logic.generate_id("E", when=when),
        shop_id=shop_id,
        customer_id=customer.customer_id,
        entry_type=entry_type.value,
        amount=amount,
        description=description,
        timestamp_iso=when.isoformat(),
        balance_before=customer.current_balance,
        balance_after=balance_after,
    )
    rows = [replace(row, parent_type=LineItemParent.CREDIT.value, parent_id=record.entry_id) for row in item_rows]
    with core_logic.mutating(context, CREDIT_BUCKET, CUSTOMERS_BUCKET, LINE_ITEMS_BUCKET) as workbook:
        data_manager.append_credit_entry(workbook, record)
        if rows:
            data_manager.append_line_items(workbook, rows)
        data_manager.update_customer(workbook, customer.customer_id, field_values={"CurrentBalance": balance_after})
    log.info(
        "Recorded %s of %s for customer '%s' in shop '%s' (balance %s -> %s)",
        entry_type.value,
        amount,
        customer.name,
        shop_id,
        record.balance_before,
        balance_after,
    )
    return CreditEntry(record=record, items=tuple(rows))


@ledger_operation
def add_credit(
    context: RuntimeContext,
    shop_id: str,
    customer_id: str,
    amount: Decimal,
    *,
    items: Sequence[data_manager.LineItemRow] = (),
    description: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> CreditEntry:
    """Increase a customer's balance by ``amount``.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        shop_id (str): Tenant owning the customer.
        customer_id (str): Customer taking goods or money on account.
        amount (Decimal): Strictly positive amount owed.
        items (Sequence[LineItemRow]): Lines the credit was granted for; they
            are stored again under the new entry.
        description (str | None): Free text; defaults to a summary of
            ``items`` or ``"Credit"``.
        timestamp (datetime | None): Entry time, defaults to now.

    Returns:
        CreditEntry: The appended entry with ``balance_after = balance_before
            + amount``.

    Raises:
        ValidationError: If ``amount`` is not positive.
        NotFoundError: If the customer is unknown.
    """

    core_logic.require_positive_money(amount, label="Credit amount")
    when = core_logic.resolve_timestamp(timestamp)
    if not description:
        description = ", ".join(f"{row.quantity} {row.product_name}" for row in items) or "Credit"

    with core_logic.hold_locks(context, core_logic.customer_key(shop_id, customer_id)):
        customer = customers.get_customer(context, shop_id, customer_id)
        return _append_entry(
            context,
            shop_id,
            customer,
            CreditEntryType.CREDIT,
            amount,
            customer.current_balance + amount,
            description,
            when,
            items,
        )


@ledger_operation
def record_payment(
    context: RuntimeContext,
    shop_id: str,
    customer_id: str,
    amount: Decimal,
    *,
    description: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> CreditEntry:
    """Reduce a customer's balance by ``amount``, never below zero.

    Overpayment is clamped: the entry keeps the full ``amount`` paid while
    ``balance_after`` stops at zero.

    Raises:
        ValidationError: If ``amount`` is not positive.
        NotFoundError: If the customer is unknown.
        StateError: If the customer owes nothing.
    """

    core_logic.require_positive_money(amount, label="Payment amount")
    when = core_logic.resolve_timestamp(timestamp)

    with core_logic.hold_locks(context, core_logic.customer_key(shop_id, customer_id)):
        customer = customers.get_customer(context, shop_id, customer_id)
        if customer.current_balance <= core_logic.ZERO:
            raise StateError(f"{customer.name} has no outstanding balance")
        balance_after = max(core_logic.ZERO, customer.current_balance - amount)
        return _append_entry(
            context,
            shop_id,
            customer,
            CreditEntryType.PAYMENT,
            amount,
            balance_after,
            description or "Payment received",
            when,
        )


@ledger_operation
def record_credit_sale(
    context: RuntimeContext,
    shop_id: str,
    customer_id: str,
    requests: Sequence[LineRequest],
    *,
    description: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> CreditSale:
    """Sell goods on account.

    The credit-type sale is recorded first (stock reserved, customer
    statistics updated); the matching credit entry is appended afterwards.
    """

    when = core_logic.resolve_timestamp(timestamp)
    sale = sales.record_sale(
        context,
        shop_id,
        requests,
        customer_id=customer_id,
        sale_type=SaleType.CREDIT,
        timestamp=when,
    ).unwrap()
    entry = add_credit(
        context,
        shop_id,
        customer_id,
        sale.total,
        items=sale.items,
        description=description,
        timestamp=when,
    ).unwrap()
    return CreditSale(sale=sale, entry=entry)


def credit_history(
    context: RuntimeContext,
    shop_id: str,
    customer_id: str,
    limit: Optional[int] = None,
) -> List[CreditEntry]:
    """Return the customer's entries, newest first."""

    rows = list(reversed(_customer_entries(context, shop_id, customer_id)))
    if limit is not None:
        rows = rows[:limit]
    items = catalog.line_items_by_parent(context, shop_id, LineItemParent.CREDIT)
    return [CreditEntry(record=row, items=items.get(row.entry_id, ())) for row in rows]


def replay_balance(entries: Iterable[data_manager.CreditEntryRow]) -> Decimal:
    """Fold entries in chain order into a balance starting from zero."""

    balance = core_logic.ZERO
    for entry in entries:
        if entry.entry_type == CreditEntryType.CREDIT.value:
            balance += entry.amount
        else:
            balance = max(core_logic.ZERO, balance - entry.amount)
    return balance


def verify_chain(
    entries: Sequence[data_manager.CreditEntryRow],
    *,
    current_balance: Optional[Decimal] = None,
) -> List[str]:
    """Audit a customer's entries in chain order.

    Every entry must start where the previous one ended (the first at zero)
    and its ``balance_after`` must follow from its type and amount. When
    ``current_balance`` is given it must equal the replayed balance.

    Returns:
        list[str]: One message per broken link; empty when the chain holds.
    """

    problems: List[str] = []
    expected_before = core_logic.ZERO
    for entry in entries:
        if entry.balance_before != expected_before:
            problems.append(
                f"{entry.entry_id}: balance before is {entry.balance_before}, expected {expected_before}"
            )
        if entry.entry_type == CreditEntryType.CREDIT.value:
            expected_after = entry.balance_before + entry.amount
        else:
            expected_after = max(core_logic.ZERO, entry.balance_before - entry.amount)
        if entry.balance_after != expected_after:
            problems.append(
                f"{entry.entry_id}: balance after is {entry.balance_after}, expected {expected_after}"
            )
        expected_before = entry.balance_after

    if current_balance is not None:
        replayed = replay_balance(entries)
        if current_balance != replayed:
            problems.append(f"current balance is {current_balance}, replay gives {replayed}")
    return problems


def audit_customer(context: RuntimeContext, shop_id: str, customer_id: str) -> List[str]:
    """Check one customer's chain and cached balance against the log."""

    customer = customers.get_customer(context, shop_id, customer_id)
    entries = _customer_entries(context, shop_id, customer_id)
    problems = verify_chain(entries, current_balance=customer.current_balance)
    if problems:
        log.error("Credit chain of customer '%s' in shop '%s' is broken: %s", customer.name, shop_id, "; ".join(problems))
    return problems


def payments_in_window(
    context: RuntimeContext,
    shop_id: str,
    start: datetime,
    end: datetime,
) -> List[data_manager.CreditEntryRow]:
    """Return payment entries whose entry time lies inside ``[start, end]``."""

    rows = core_logic.cached_rows(context, CREDIT_BUCKET, data_manager.iter_credit_entries)
    return [
        row
        for row in rows
        if row.shop_id == shop_id
        and row.entry_type == CreditEntryType.PAYMENT.value
        and core_logic.in_window(row.timestamp_iso, start, end)
    ]


def outstanding_balances(context: RuntimeContext, shop_id: str) -> List[data_manager.CustomerRow]:
    """Return customers who owe money, largest balance first."""

    owing = [row for row in customers.list_customers(context, shop_id) if row.current_balance > core_logic.ZERO]
    return sorted(owing, key=lambda row: row.current_balance, reverse=True)
