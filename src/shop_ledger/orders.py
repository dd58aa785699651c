"""Order lifecycle for Shop Ledger.

Orders move along ``pending -> confirmed -> ready -> completed`` and may be
cancelled from any non-terminal state. Placing an order never touches stock;
goods are reserved, all lines or none, only when the order is completed. A
completion that cannot be covered leaves the order in ``ready``.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from . import catalog, core_logic, customers, data_manager, inventory, log
from .catalog import LINE_ITEMS_BUCKET, LineRequest
from .constants import ORDER_TRANSITIONS, LineItemParent, OrderStatus, OrderType
from .core_logic import InvalidTransition, NotFoundError, RuntimeContext, ValidationError, ledger_operation

ORDERS_BUCKET = "orders"
SHORT_REF_LENGTH = 4
DEFAULT_LIST_LIMIT = 10

# Column stamped when an order enters each status.
_STATUS_TIMESTAMP_COLUMNS = {
    OrderStatus.CONFIRMED: ("ConfirmedAt", "confirmed_at"),
    OrderStatus.READY: ("ReadyAt", "ready_at"),
    OrderStatus.COMPLETED: ("CompletedAt", "completed_at"),
    OrderStatus.CANCELLED: ("CancelledAt", "cancelled_at"),
}


@dataclass(frozen=True)
class Order:
    """An order header with its item lines."""

    record: data_manager.OrderRow
    items: Tuple[data_manager.LineItemRow, ...]

    @property
    def order_id(self) -> str:
        return self.record.order_id

    @property
    def status(self) -> OrderStatus:
        return OrderStatus(self.record.status)

    @property
    def short_ref(self) -> str:
        return short_ref(self.record.order_id)


def short_ref(order_id: str) -> str:
    """Return the four-character reference users type for an order."""

    return order_id[-SHORT_REF_LENGTH:].upper()


def _shop_orders(context: RuntimeContext, shop_id: str) -> List[data_manager.OrderRow]:
    rows = core_logic.cached_rows(context, ORDERS_BUCKET, data_manager.iter_orders)
    return [row for row in rows if row.shop_id == shop_id]


def _with_items(context: RuntimeContext, shop_id: str, rows: Sequence[data_manager.OrderRow]) -> List[Order]:
    items = catalog.line_items_by_parent(context, shop_id, LineItemParent.ORDER)
    return [Order(record=row, items=items.get(row.order_id, ())) for row in rows]


@ledger_operation
def place_order(
    context: RuntimeContext,
    shop_id: str,
    requests: Sequence[LineRequest],
    *,
    customer_id: Optional[str] = None,
    order_type: OrderType = OrderType.PICKUP,
    notes: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> Order:
    """Create a ``pending`` order without checking or moving stock.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        shop_id (str): Tenant taking the order.
        requests (Sequence[LineRequest]): Ordered items, priced now.
        customer_id (str | None): Customer placing the order.
        order_type (OrderType): ``pickup``, ``delivery`` or ``reservation``.
        notes (str | None): Free text shown with the order.
        timestamp (datetime | None): Order time, defaults to now.

    Raises:
        ValidationError: If the item list is empty or invalid.
        NotFoundError: If a product or the customer is unknown.
        StateError: If a product is archived.
    """

    if customer_id is not None:
        customers.get_customer(context, shop_id, customer_id)
    lines = catalog.price_lines(context, shop_id, requests)
    when = core_logic.resolve_timestamp(timestamp)

    record = data_manager.OrderRow(
        order_id=core_logic.generate_id("O", when=when),
        shop_id=shop_id,
        customer_id=customer_id,
        total=catalog.lines_total(lines),
        status=OrderStatus.PENDING.value,
        order_type=OrderType(order_type).value,
        notes=(notes or "").strip() or None,
        ordered_at=when.isoformat(),
        confirmed_at=None,
        ready_at=None,
        completed_at=None,
        cancelled_at=None,
    )
    rows = catalog.build_line_rows(LineItemParent.ORDER, record.order_id, shop_id, lines)
    with core_logic.mutating(context, ORDERS_BUCKET, LINE_ITEMS_BUCKET) as workbook:
        data_manager.append_order(workbook, record)
        data_manager.append_line_items(workbook, rows)
    log.info("Placed order %s in shop '%s' (%s, total %s)", record.order_id, shop_id, record.order_type, record.total)
    return Order(record=record, items=tuple(rows))


def get_order(context: RuntimeContext, shop_id: str, order_id: str) -> Order:
    """Return one order by full identifier.

    Raises:
        NotFoundError: If the shop has no such order.
    """

    for row in _shop_orders(context, shop_id):
        if row.order_id == order_id:
            return _with_items(context, shop_id, [row])[0]
    raise NotFoundError(f"Order {order_id} not found", hint="Type 'orders' to see all orders.")


def find_order(context: RuntimeContext, shop_id: str, reference: str) -> Order:
    """Resolve an order by full id or by its case-insensitive 4-character reference.

    Raises:
        NotFoundError: If nothing matches.
        ValidationError: If a short reference matches several orders.
    """

    reference = reference.strip().lstrip("#").upper()
    if len(reference) != SHORT_REF_LENGTH:
        return get_order(context, shop_id, reference)

    matches = [row for row in _shop_orders(context, shop_id) if short_ref(row.order_id) == reference]
    if not matches:
        raise NotFoundError(f"Order #{reference} not found", hint="Type 'orders' to see all orders.")
    if len(matches) > 1:
        raise ValidationError(
            f"Reference #{reference} matches {len(matches)} orders",
            hint="Use the full order id instead.",
        )
    return _with_items(context, shop_id, matches)[0]


@ledger_operation
def transition(
    context: RuntimeContext,
    shop_id: str,
    order_id: str,
    target: OrderStatus,
    *,
    notes: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> Order:
    """Move an order to ``target`` along the lifecycle graph.

    Entering ``completed`` first reserves stock for every line, all or none.
    When that fails the order is left in ``ready`` and the stock error is
    returned. Each transition stamps its timestamp column; ``notes``, when
    given, replace the order notes.

    Raises:
        NotFoundError: If the order is unknown.
        InvalidTransition: If ``target`` is not reachable from the current
            status; nothing changes.
        InsufficientStockError: If completion cannot be covered.
    """

    target = OrderStatus(target)
    with core_logic.hold_locks(context, core_logic.record_key("order", shop_id, order_id)):
        order = get_order(context, shop_id, order_id)
        current = order.status
        if target not in ORDER_TRANSITIONS[current]:
            raise InvalidTransition(current.value, target.value)

        if target is OrderStatus.COMPLETED:
            inventory.reserve_lines(context, shop_id, catalog.requests_from_rows(order.items)).unwrap()

        when = core_logic.resolve_timestamp(timestamp).isoformat()
        column, attribute = _STATUS_TIMESTAMP_COLUMNS[target]
        fields = {"Status": target.value, column: when}
        changes = {"status": target.value, attribute: when}
        if notes:
            fields["Notes"] = notes.strip()
            changes["notes"] = notes.strip()
        with core_logic.mutating(context, ORDERS_BUCKET) as workbook:
            data_manager.update_order(workbook, order_id, field_values=fields)

    log.info("Order %s in shop '%s' moved %s -> %s", order_id, shop_id, current.value, target.value)
    return Order(record=replace(order.record, **changes), items=order.items)


def list_orders(
    context: RuntimeContext,
    shop_id: str,
    status: Optional[OrderStatus] = None,
    *,
    limit: Optional[int] = DEFAULT_LIST_LIMIT,
) -> List[Order]:
    """Return orders newest first, optionally only those in ``status``."""

    rows = [row for row in _shop_orders(context, shop_id) if status is None or row.status == OrderStatus(status).value]
    rows.sort(key=lambda row: (row.ordered_at, row.order_id), reverse=True)
    if limit is not None:
        rows = rows[:limit]
    return _with_items(context, shop_id, rows)
