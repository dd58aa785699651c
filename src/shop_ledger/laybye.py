"""Lay-bye (installment plan) tracker for Shop Ledger.

Goods on a lay-bye are taken out of stock when the plan is created and stay
reserved while the customer pays installments. Installments may never exceed
the balance due. When the balance reaches zero the plan is completed and a
``completed_laybye`` sale is recorded without moving stock again. Cancelling
an active plan returns the goods to stock; installments already paid stay in
the log.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from . import catalog, core_logic, customers, data_manager, inventory, log, sales
from .catalog import LINE_ITEMS_BUCKET, LineRequest
from .constants import InstallmentMethod, LayByeStatus, LineItemParent, SaleType
from .core_logic import NotFoundError, RuntimeContext, StateError, ValidationError, ledger_operation

LAYBYES_BUCKET = "laybyes"
INSTALLMENTS_BUCKET = "installments"


@dataclass(frozen=True)
class LayBye:
    """A lay-bye plan with its reserved lines and installments so far."""

    record: data_manager.LayByeRow
    items: Tuple[data_manager.LineItemRow, ...]
    installments: Tuple[data_manager.InstallmentRow, ...]
    sale: Optional[sales.Sale] = None

    @property
    def laybye_id(self) -> str:
        return self.record.laybye_id

    @property
    def status(self) -> LayByeStatus:
        return LayByeStatus(self.record.status)


def _shop_laybyes(context: RuntimeContext, shop_id: str) -> List[data_manager.LayByeRow]:
    rows = core_logic.cached_rows(context, LAYBYES_BUCKET, data_manager.iter_laybyes)
    return [row for row in rows if row.shop_id == shop_id]


def _shop_installments(context: RuntimeContext, shop_id: str) -> List[data_manager.InstallmentRow]:
    rows = core_logic.cached_rows(context, INSTALLMENTS_BUCKET, data_manager.iter_installments)
    return [row for row in rows if row.shop_id == shop_id]


def _assemble(context: RuntimeContext, shop_id: str, rows: Sequence[data_manager.LayByeRow]) -> List[LayBye]:
    items = catalog.line_items_by_parent(context, shop_id, LineItemParent.LAYBYE)
    installments = _shop_installments(context, shop_id)
    return [
        LayBye(
            record=row,
            items=items.get(row.laybye_id, ()),
            installments=tuple(inst for inst in installments if inst.laybye_id == row.laybye_id),
        )
        for row in rows
    ]


def get_laybye(context: RuntimeContext, shop_id: str, laybye_id: str) -> LayBye:
    """Return one plan by identifier.

    Raises:
        NotFoundError: If the shop has no such plan.
    """

    for row in _shop_laybyes(context, shop_id):
        if row.laybye_id == laybye_id:
            return _assemble(context, shop_id, [row])[0]
    raise NotFoundError(f"Lay-bye {laybye_id} not found", hint="Type 'laybyes' to see active plans.")


def find_active_for_customer(context: RuntimeContext, shop_id: str, customer_id: str) -> LayBye:
    """Return the customer's oldest active plan.

    Raises:
        NotFoundError: If the customer has no active plan.
    """

    active = [
        row
        for row in _shop_laybyes(context, shop_id)
        if row.customer_id == customer_id and row.status == LayByeStatus.ACTIVE.value
    ]
    if not active:
        raise NotFoundError("No active lay-bye found for this customer", hint="Type 'laybyes' to see active plans.")
    active.sort(key=lambda row: (row.started_at, row.laybye_id))
    return _assemble(context, shop_id, active[:1])[0]


def list_laybyes(
    context: RuntimeContext,
    shop_id: str,
    status: Optional[LayByeStatus] = LayByeStatus.ACTIVE,
) -> List[LayBye]:
    """Return plans in ``status`` (all plans when ``None``), nearest due date first."""

    rows = [row for row in _shop_laybyes(context, shop_id) if status is None or row.status == LayByeStatus(status).value]
    rows.sort(key=lambda row: (row.due_date, row.laybye_id))
    return _assemble(context, shop_id, rows)


def installments_in_window(
    context: RuntimeContext,
    shop_id: str,
    start: datetime,
    end: datetime,
) -> List[data_manager.InstallmentRow]:
    """Return installments (deposits included) paid inside ``[start, end]``."""

    return [row for row in _shop_installments(context, shop_id) if core_logic.in_window(row.timestamp_iso, start, end)]


def _new_installment(
    laybye_id: str,
    shop_id: str,
    amount: Decimal,
    method: InstallmentMethod,
    when: datetime,
) -> data_manager.InstallmentRow:
    return data_manager.InstallmentRow(
        installment_id=core_logic.generate_id("I", when=when),
        laybye_id=laybye_id,
        shop_id=shop_id,
        amount=amount,
        timestamp_iso=when.isoformat(),
        payment_method=InstallmentMethod(method).value,
    )


def _complete(context: RuntimeContext, plan: LayBye, when: datetime) -> LayBye:
    """Close a fully paid plan and book the goods as a sale.

    The plan is marked ``completed`` first, then the ``completed_laybye`` sale
    is recorded; the goods left stock when the plan was created.
    """

    shop_id = plan.record.shop_id
    with core_logic.mutating(context, LAYBYES_BUCKET) as workbook:
        data_manager.update_laybye(
            workbook,
            plan.laybye_id,
            field_values={"Status": LayByeStatus.COMPLETED.value, "CompletedAt": when.isoformat()},
        )
    sale = sales.record_sale(
        context,
        shop_id,
        catalog.requests_from_rows(plan.items),
        customer_id=plan.record.customer_id,
        sale_type=SaleType.COMPLETED_LAYBYE,
        laybye_id=plan.laybye_id,
        reserve_stock=False,
        timestamp=when,
    ).unwrap()
    log.info("Completed lay-bye %s in shop '%s' as sale %s", plan.laybye_id, shop_id, sale.sale_id)
    record = replace(plan.record, status=LayByeStatus.COMPLETED.value, completed_at=when.isoformat())
    return replace(plan, record=record, sale=sale)


@ledger_operation
def create(
    context: RuntimeContext,
    shop_id: str,
    requests: Sequence[LineRequest],
    *,
    customer_id: Optional[str] = None,
    deposit: Decimal = core_logic.ZERO,
    method: InstallmentMethod = InstallmentMethod.CASH,
    due_date: Optional[datetime] = None,
    timestamp: Optional[datetime] = None,
) -> LayBye:
    """Open a lay-bye plan and reserve its goods.

    Steps, in order: price the lines; reserve stock for all of them (all or
    none); append the plan, its lines and the deposit installment. A deposit
    that covers the whole total completes the plan immediately.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        shop_id (str): Tenant opening the plan.
        requests (Sequence[LineRequest]): Goods put aside.
        customer_id (str | None): Customer paying the plan.
        deposit (Decimal): First installment, zero for none.
        method (InstallmentMethod): How the deposit was paid.
        due_date (datetime | None): Defaults to the start plus the configured
            ``LayByeTermDays``.
        timestamp (datetime | None): Start time, defaults to now.

    Returns:
        LayBye: The stored plan.

    Raises:
        ValidationError: If the deposit is negative or exceeds the total.
        NotFoundError: If a product or the customer is unknown.
        InsufficientStockError: If the goods cannot be reserved.
    """

    if customer_id is not None:
        customers.get_customer(context, shop_id, customer_id)
    core_logic.require_nonnegative_money(deposit, label="Deposit")
    lines = catalog.price_lines(context, shop_id, requests)
    total = catalog.lines_total(lines)
    if deposit > total:
        raise ValidationError(f"Deposit {deposit} is more than the total {total}")

    inventory.reserve_lines(context, shop_id, lines).unwrap()

    when = core_logic.resolve_timestamp(timestamp)
    due = core_logic.resolve_timestamp(due_date) if due_date else when + timedelta(days=context.settings.laybye_term_days)
    record = data_manager.LayByeRow(
        laybye_id=core_logic.generate_id("L", when=when),
        shop_id=shop_id,
        customer_id=customer_id,
        total_amount=total,
        amount_paid=deposit,
        balance_due=total - deposit,
        status=LayByeStatus.ACTIVE.value,
        started_at=when.isoformat(),
        due_date=due.isoformat(),
        completed_at=None,
        cancelled_at=None,
    )
    rows = catalog.build_line_rows(LineItemParent.LAYBYE, record.laybye_id, shop_id, lines)
    installments: Tuple[data_manager.InstallmentRow, ...] = ()
    if deposit > core_logic.ZERO:
        installments = (_new_installment(record.laybye_id, shop_id, deposit, method, when),)

    with core_logic.mutating(context, LAYBYES_BUCKET, LINE_ITEMS_BUCKET, INSTALLMENTS_BUCKET) as workbook:
        data_manager.append_laybye(workbook, record)
        data_manager.append_line_items(workbook, rows)
        for installment in installments:
            data_manager.append_installment(workbook, installment)
    log.info(
        "Opened lay-bye %s in shop '%s': total %s, deposit %s, due %s",
        record.laybye_id,
        shop_id,
        total,
        deposit,
        record.due_date,
    )

    plan = LayBye(record=record, items=tuple(rows), installments=installments)
    if record.balance_due == core_logic.ZERO:
        plan = _complete(context, plan, when)
    return plan


@ledger_operation
def add_installment(
    context: RuntimeContext,
    shop_id: str,
    laybye_id: str,
    amount: Decimal,
    method: InstallmentMethod = InstallmentMethod.CASH,
    *,
    timestamp: Optional[datetime] = None,
) -> LayBye:
    """Record a payment towards an active plan.

    Raises:
        ValidationError: If ``amount`` is not positive or exceeds the balance
            due; nothing is recorded.
        StateError: If the plan is not active.
        NotFoundError: If the plan is unknown.
    """

    core_logic.require_positive_money(amount, label="Installment")
    when = core_logic.resolve_timestamp(timestamp)
    with core_logic.hold_locks(context, core_logic.record_key("laybye", shop_id, laybye_id)):
        plan = get_laybye(context, shop_id, laybye_id)
        if plan.status is not LayByeStatus.ACTIVE:
            raise StateError(f"Lay-bye {laybye_id} is {plan.record.status}")
        if amount > plan.record.balance_due:
            raise ValidationError(
                f"Payment {amount} is more than the balance due {plan.record.balance_due}",
                hint=f"Pay at most {plan.record.balance_due}.",
            )

        installment = _new_installment(laybye_id, shop_id, amount, method, when)
        amount_paid = plan.record.amount_paid + amount
        balance_due = plan.record.total_amount - amount_paid
        with core_logic.mutating(context, LAYBYES_BUCKET, INSTALLMENTS_BUCKET) as workbook:
            data_manager.append_installment(workbook, installment)
            data_manager.update_laybye(
                workbook,
                laybye_id,
                field_values={"AmountPaid": amount_paid, "BalanceDue": balance_due},
            )
        log.info(
            "Installment of %s on lay-bye %s in shop '%s' (balance %s -> %s)",
            amount,
            laybye_id,
            shop_id,
            plan.record.balance_due,
            balance_due,
        )
        plan = replace(
            plan,
            record=replace(plan.record, amount_paid=amount_paid, balance_due=balance_due),
            installments=plan.installments + (installment,),
        )
        if balance_due == core_logic.ZERO:
            plan = _complete(context, plan, when)
    return plan


@ledger_operation
def cancel_laybye(
    context: RuntimeContext,
    shop_id: str,
    laybye_id: str,
    *,
    timestamp: Optional[datetime] = None,
) -> LayBye:
    """Cancel an active plan and return its goods to stock.

    Installments already paid remain recorded; refunds are not modelled.

    Raises:
        StateError: If the plan is not active.
        NotFoundError: If the plan is unknown.
    """

    when = core_logic.resolve_timestamp(timestamp)
    with core_logic.hold_locks(context, core_logic.record_key("laybye", shop_id, laybye_id)):
        plan = get_laybye(context, shop_id, laybye_id)
        if plan.status is not LayByeStatus.ACTIVE:
            raise StateError(f"Lay-bye {laybye_id} is {plan.record.status}")
        inventory.release_lines(context, shop_id, catalog.requests_from_rows(plan.items))
        with core_logic.mutating(context, LAYBYES_BUCKET) as workbook:
            data_manager.update_laybye(
                workbook,
                laybye_id,
                field_values={"Status": LayByeStatus.CANCELLED.value, "CancelledAt": when.isoformat()},
            )
    log.info("Cancelled lay-bye %s in shop '%s' (paid %s kept)", laybye_id, shop_id, plan.record.amount_paid)
    record = replace(plan.record, status=LayByeStatus.CANCELLED.value, cancelled_at=when.isoformat())
    return replace(plan, record=record)
