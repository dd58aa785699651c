"""Sale recorder and cancellation for Shop Ledger.

A sale is written in three ordered steps: stock is reserved for every line
(all-or-nothing), the sale header and its lines are appended, and finally the
linked customer's purchase statistics are updated. A failure after the first
step leaves stock decremented next to a valid sale, never the reverse.

Cancellation restores every line's stock and stamps the cancellation fields.
It deliberately leaves customer statistics and credit balances untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from . import catalog, core_logic, customers, data_manager, inventory, log
from .catalog import LINE_ITEMS_BUCKET, LineRequest
from .constants import LineItemParent, SaleType
from .core_logic import NotFoundError, RuntimeContext, StateError, ValidationError, ledger_operation

SALES_BUCKET = "sales"
DEFAULT_CANCEL_REASON = "No reason provided"


@dataclass(frozen=True)
class Sale:
    """A sale header together with its frozen item lines."""

    record: data_manager.SaleRow
    items: Tuple[data_manager.LineItemRow, ...]

    @property
    def sale_id(self) -> str:
        return self.record.sale_id

    @property
    def total(self) -> Decimal:
        return self.record.total


def _all_sales(context: RuntimeContext, shop_id: str) -> List[data_manager.SaleRow]:
    rows = core_logic.cached_rows(context, SALES_BUCKET, data_manager.iter_sales)
    return [row for row in rows if row.shop_id == shop_id]


def _attach_items(context: RuntimeContext, shop_id: str, rows: Sequence[data_manager.SaleRow]) -> List[Sale]:
    items = catalog.line_items_by_parent(context, shop_id, LineItemParent.SALE)
    return [Sale(record=row, items=items.get(row.sale_id, ())) for row in rows]


def get_sale(context: RuntimeContext, shop_id: str, sale_id: str) -> Sale:
    """Return one sale of the shop with its lines.

    Raises:
        NotFoundError: If the shop has no sale with ``sale_id``.
    """

    for row in _all_sales(context, shop_id):
        if row.sale_id == sale_id:
            return _attach_items(context, shop_id, [row])[0]
    raise NotFoundError(f"Sale {sale_id} not found", hint="Type 'cancel' to see recent sales.")


@ledger_operation
def record_sale(
    context: RuntimeContext,
    shop_id: str,
    requests: Sequence[LineRequest],
    *,
    customer_id: Optional[str] = None,
    sale_type: SaleType = SaleType.CASH,
    laybye_id: Optional[str] = None,
    reserve_stock: bool = True,
    timestamp: Optional[datetime] = None,
) -> Sale:
    """Record a sale and take its goods out of stock.

    Steps, in order: (1) price lines and reserve stock for all of them,
    releasing earlier reservations if a later one fails; (2) append the sale
    header and lines; (3) update the linked customer's statistics. Nothing is
    written when step 1 fails.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        shop_id (str): Tenant recording the sale.
        requests (Sequence[LineRequest]): Items sold; a request price
            overrides the catalog price.
        customer_id (str | None): Customer credited with the purchase.
        sale_type (SaleType): ``cash``, ``credit`` or ``completed_laybye``.
        laybye_id (str | None): Lay-bye plan a ``completed_laybye`` sale
            closes.
        reserve_stock (bool): ``False`` when the goods already left stock,
            as for a completed lay-bye.
        timestamp (datetime | None): Sale time, defaults to now.

    Returns:
        Sale: The stored sale with its lines.

    Raises:
        ValidationError: If the item list is empty or holds invalid values.
        NotFoundError: If a product or the customer is unknown.
        InsufficientStockError: If any line cannot be covered; stock is left
            as it was before the call.
    """

    if customer_id is not None:
        customers.get_customer(context, shop_id, customer_id)
    lines = catalog.price_lines(context, shop_id, requests, require_active_products=reserve_stock)
    if reserve_stock:
        inventory.reserve_lines(context, shop_id, lines).unwrap()

    when = core_logic.resolve_timestamp(timestamp)
    record = data_manager.SaleRow(
        sale_id=core_logic.generate_id("S", when=when),
        shop_id=shop_id,
        sale_type=SaleType(sale_type).value,
        total=catalog.lines_total(lines),
        timestamp_iso=when.isoformat(),
        customer_id=customer_id,
        is_cancelled=False,
        cancelled_at=None,
        cancellation_reason=None,
        laybye_id=laybye_id,
    )
    rows = catalog.build_line_rows(LineItemParent.SALE, record.sale_id, shop_id, lines)
    with core_logic.mutating(context, SALES_BUCKET, LINE_ITEMS_BUCKET) as workbook:
        data_manager.append_sale(workbook, record)
        data_manager.append_line_items(workbook, rows)
    log.info(
        "Recorded %s sale %s in shop '%s': %d line(s), total %s",
        record.sale_type,
        record.sale_id,
        shop_id,
        len(rows),
        record.total,
    )

    if customer_id is not None:
        customers.apply_purchase(context, shop_id, customer_id, record.total, timestamp=when)
    return Sale(record=record, items=tuple(rows))


@ledger_operation
def cancel_sale(
    context: RuntimeContext,
    shop_id: str,
    sale_id: str,
    reason: Optional[str] = None,
    *,
    timestamp: Optional[datetime] = None,
) -> Sale:
    """Void a sale and put its goods back into stock.

    Stock is released line by line first; the cancellation fields are stamped
    afterwards. Customer statistics and credit balances are not reversed.

    Raises:
        NotFoundError: If the sale is unknown in the shop.
        StateError: If the sale is already cancelled; stock is not touched
            again.
    """

    with core_logic.hold_locks(context, core_logic.record_key("sale", shop_id, sale_id)):
        sale = get_sale(context, shop_id, sale_id)
        if sale.record.is_cancelled:
            raise StateError(f"Sale {sale_id} is already cancelled")

        inventory.release_lines(context, shop_id, catalog.requests_from_rows(sale.items))

        when = core_logic.resolve_timestamp(timestamp)
        reason = (reason or "").strip() or DEFAULT_CANCEL_REASON
        with core_logic.mutating(context, SALES_BUCKET) as workbook:
            data_manager.update_sale(
                workbook,
                sale_id,
                field_values={"IsCancelled": True, "CancelledAt": when.isoformat(), "CancellationReason": reason},
            )
    log.info("Cancelled sale %s in shop '%s' (%s): %s", sale_id, shop_id, sale.record.total, reason)
    record = replace(sale.record, is_cancelled=True, cancelled_at=when.isoformat(), cancellation_reason=reason)
    return Sale(record=record, items=sale.items)


@ledger_operation
def cancel_last_sale(context: RuntimeContext, shop_id: str, reason: Optional[str] = None) -> Sale:
    """Cancel the newest sale that is not cancelled yet."""

    recent = recent_sales(context, shop_id, 1)
    if not recent:
        raise NotFoundError("There are no sales to cancel")
    return cancel_sale(context, shop_id, recent[0].sale_id, reason).unwrap()


def recent_sales(
    context: RuntimeContext,
    shop_id: str,
    limit: Optional[int] = None,
    *,
    include_cancelled: bool = False,
) -> List[Sale]:
    """Return the newest sales first.

    ``limit`` defaults to the configured ``RecentSalesLimit``.
    """

    limit = context.settings.recent_sales_limit if limit is None else limit
    rows = [row for row in _all_sales(context, shop_id) if include_cancelled or not row.is_cancelled]
    rows.sort(key=lambda row: (row.timestamp_iso, row.sale_id), reverse=True)
    return _attach_items(context, shop_id, rows[:limit])


def find_by_id_or_index(context: RuntimeContext, shop_id: str, identifier: str) -> Sale:
    """Resolve a sale by id or by its position in the recent-sales list.

    A purely numeric ``identifier`` is a 1-based index into the newest
    ``RecentSalesLimit`` non-cancelled sales; anything else is a sale id.

    Raises:
        ValidationError: If the index is outside the recent list.
        NotFoundError: If no sale carries the id.
    """

    identifier = identifier.strip()
    if identifier.isascii() and identifier.isdigit():
        recent = recent_sales(context, shop_id)
        index = int(identifier)
        if not 1 <= index <= len(recent):
            raise ValidationError(
                f"Sale number {index} is not in the recent list (1-{len(recent)})",
                hint="Type 'cancel' to see recent sales.",
            )
        return recent[index - 1]
    return get_sale(context, shop_id, identifier.upper())


def sales_in_window(
    context: RuntimeContext,
    shop_id: str,
    start: datetime,
    end: datetime,
    *,
    include_cancelled: bool = True,
) -> List[Sale]:
    """Return sales whose sale time lies inside ``[start, end]``, oldest first."""

    rows = [
        row
        for row in _all_sales(context, shop_id)
        if core_logic.in_window(row.timestamp_iso, start, end) and (include_cancelled or not row.is_cancelled)
    ]
    rows.sort(key=lambda row: row.timestamp_iso)
    return _attach_items(context, shop_id, rows)


def refunds(context: RuntimeContext, shop_id: str, start: datetime, end: datetime) -> List[Sale]:
    """Return sales cancelled inside ``[start, end]``, whatever their sale date."""

    rows = [row for row in _all_sales(context, shop_id) if row.is_cancelled and core_logic.in_window(row.cancelled_at, start, end)]
    rows.sort(key=lambda row: row.cancelled_at or "")
    return _attach_items(context, shop_id, rows)


def count_sales_for_product(context: RuntimeContext, shop_id: str, product_id: str) -> int:
    """Count sales with at least one line of ``product_id``."""

    items = catalog.line_items_by_parent(context, shop_id, LineItemParent.SALE)
    return sum(1 for lines in items.values() if any(line.product_id == product_id for line in lines))


def customer_sales(context: RuntimeContext, shop_id: str, customer_id: str, limit: int = 20) -> List[Sale]:
    """Return the customer's non-cancelled sales, newest first."""

    rows = [row for row in _all_sales(context, shop_id) if row.customer_id == customer_id and not row.is_cancelled]
    rows.sort(key=lambda row: (row.timestamp_iso, row.sale_id), reverse=True)
    return _attach_items(context, shop_id, rows[:limit])
