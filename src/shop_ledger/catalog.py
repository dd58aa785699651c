"""Product catalog for Shop Ledger.

The catalog owns product master data: names, prices, optional unit costs and
flags. Stock counts live on the same rows but are only changed through
:mod:`shop_ledger.inventory`. This module also resolves item requests into
priced lines and indexes the shared ``LineItems`` sheet for the ledgers that
store item lists.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import core_logic, data_manager, log
from .constants import LineItemParent
from .core_logic import NotFoundError, RuntimeContext, StateError, ValidationError, ledger_operation

PRODUCTS_BUCKET = "products"
LINE_ITEMS_BUCKET = "line_items"


@dataclass(frozen=True)
class LineRequest:
    """A requested item line before it is priced against the catalog.

    ``price`` overrides the catalog price for this line only.
    """

    product_id: str
    quantity: int
    price: Optional[Decimal] = None


@dataclass(frozen=True)
class PricedLine:
    """A line resolved against the catalog, with its frozen totals."""

    product: data_manager.ProductRow
    quantity: int
    price: Decimal
    total: Decimal
    is_custom_price: bool = False

    @property
    def product_id(self) -> str:
        return self.product.product_id

    @property
    def unit_cost(self) -> Optional[Decimal]:
        return self.product.cost_price


def list_products(context: RuntimeContext, shop_id: str, *, include_inactive: bool = False) -> List[data_manager.ProductRow]:
    """Return the shop's products in sheet order.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        shop_id (str): Tenant whose catalog is listed.
        include_inactive (bool): When ``True`` the result includes archived
            products.

    Returns:
        list[data_manager.ProductRow]: Products of ``shop_id`` only.
    """

    rows = core_logic.cached_rows(context, PRODUCTS_BUCKET, data_manager.iter_products)
    return [row for row in rows if row.shop_id == shop_id and (include_inactive or row.is_active)]


def get_product(context: RuntimeContext, shop_id: str, product_id: str) -> data_manager.ProductRow:
    """Resolve a product by identifier within one shop.

    Raises:
        NotFoundError: If the shop has no product with ``product_id``.
    """

    for row in list_products(context, shop_id, include_inactive=True):
        if row.product_id == product_id:
            return row
    log.warning("Product lookup failed for id '%s' in shop '%s'", product_id, shop_id)
    raise NotFoundError(f"Unknown product id: {product_id}", hint="Type 'list' to see your products.")


def find_product_by_name(
    context: RuntimeContext,
    shop_id: str,
    name: str,
    *,
    include_inactive: bool = False,
) -> Optional[data_manager.ProductRow]:
    """Return the product whose name matches ``name`` case-insensitively."""

    wanted = name.strip().casefold()
    for row in list_products(context, shop_id, include_inactive=include_inactive):
        if row.product_name.casefold() == wanted:
            return row
    return None


def require_product_by_name(context: RuntimeContext, shop_id: str, name: str) -> data_manager.ProductRow:
    """Resolve an active product by name.

    Raises:
        NotFoundError: If no active product carries ``name``.
    """

    product = find_product_by_name(context, shop_id, name)
    if product is None:
        raise NotFoundError(
            f"Product '{name}' not found",
            hint=f"Add it first: add {name} <price> stock <n>",
        )
    return product


def require_active(product: data_manager.ProductRow) -> data_manager.ProductRow:
    """Reject archived products.

    Raises:
        StateError: If ``product`` has been archived.
    """

    if not product.is_active:
        raise StateError(f"Product '{product.product_name}' is archived")
    return product


@ledger_operation
def add_product(
    context: RuntimeContext,
    shop_id: str,
    name: str,
    price: Decimal,
    *,
    stock: int = 0,
    low_stock_threshold: Optional[int] = None,
    cost_price: Optional[Decimal] = None,
    track_stock: bool = True,
    timestamp: Optional[datetime] = None,
) -> data_manager.ProductRow:
    """Register a new product, or reactivate an archived one with the same name.

    Names are unique per shop regardless of case. When an archived product
    already owns the name it is brought back with the supplied values so the
    uniqueness guarantee also covers archived rows.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        shop_id (str): Tenant owning the product.
        name (str): Display name, matched case-insensitively.
        price (Decimal): Unit selling price, strictly positive.
        stock (int): Opening stock count.
        low_stock_threshold (int | None): Alert level; defaults to the
            configured ``LowStockThreshold``.
        cost_price (Decimal | None): Unit cost used for cost of goods. ``None``
            leaves cost untracked.
        track_stock (bool): When ``False`` sales never check or move stock.
        timestamp (datetime | None): Creation time, defaults to now.

    Returns:
        data_manager.ProductRow: The stored product.

    Raises:
        ValidationError: If a value is out of range or the name is taken by an
            active product.
    """

    name = core_logic.require_text(name, label="Product name")
    core_logic.require_positive_money(price, label="Price")
    core_logic.require_nonnegative_quantity(stock, label="Stock")
    threshold = context.settings.low_stock_threshold if low_stock_threshold is None else low_stock_threshold
    core_logic.require_nonnegative_quantity(threshold, label="Threshold")
    if cost_price is not None:
        core_logic.require_nonnegative_money(cost_price, label="Cost price")

    existing = find_product_by_name(context, shop_id, name, include_inactive=True)
    if existing is not None and existing.is_active:
        raise ValidationError(
            f"Product '{existing.product_name}' already exists",
            hint=f"Use 'stock +{existing.product_name} <n>' or 'price {existing.product_name} <n>' instead.",
        )

    if existing is not None:
        fields = {
            "ProductName": name,
            "Price": price,
            "CostPrice": cost_price,
            "Stock": stock,
            "LowStockThreshold": threshold,
            "TrackStock": track_stock,
            "IsActive": True,
        }
        with core_logic.hold_locks(context, core_logic.product_key(shop_id, existing.product_id)):
            with core_logic.mutating(context, PRODUCTS_BUCKET) as workbook:
                data_manager.update_product(workbook, existing.product_id, field_values=fields)
        log.info("Reactivated product '%s' (%s) in shop '%s'", name, existing.product_id, shop_id)
        return get_product(context, shop_id, existing.product_id)

    created = core_logic.resolve_timestamp(timestamp)
    product = data_manager.ProductRow(
        product_id=core_logic.generate_id("P", when=created),
        shop_id=shop_id,
        product_name=name,
        price=price,
        cost_price=cost_price,
        stock=stock,
        low_stock_threshold=threshold,
        track_stock=track_stock,
        is_active=True,
        created_at=created.isoformat(),
    )
    with core_logic.mutating(context, PRODUCTS_BUCKET) as workbook:
        data_manager.append_product(workbook, product)
    log.info(
        "Added product '%s' (%s) to shop '%s' (price=%s, stock=%s)",
        name,
        product.product_id,
        shop_id,
        price,
        stock,
    )
    return product


def price_lines(
    context: RuntimeContext,
    shop_id: str,
    requests: Sequence[LineRequest],
    *,
    require_active_products: bool = True,
) -> List[PricedLine]:
    """Resolve item requests into priced lines.

    Each line takes the catalog price unless the request overrides it. Line
    totals are frozen here and never recomputed from later price changes.

    Raises:
        ValidationError: If the list is empty or a quantity/price is invalid.
        NotFoundError: If a product id is unknown in the shop.
        StateError: If a product is archived and active products are required.
    """

    if not requests:
        raise ValidationError("At least one item is required", hint="Example: sell 2 bread")

    lines: List[PricedLine] = []
    for request in requests:
        core_logic.require_positive_quantity(request.quantity)
        product = get_product(context, shop_id, request.product_id)
        if require_active_products:
            require_active(product)
        price = product.price if request.price is None else request.price
        core_logic.require_nonnegative_money(price, label="Price")
        lines.append(
            PricedLine(
                product=product,
                quantity=request.quantity,
                price=price,
                total=data_manager.to_money(price * request.quantity),
                is_custom_price=request.price is not None and request.price != product.price,
            )
        )
    return lines


def lines_total(lines: Iterable[PricedLine]) -> Decimal:
    return sum((line.total for line in lines), core_logic.ZERO)


def build_line_rows(
    parent_type: LineItemParent,
    parent_id: str,
    shop_id: str,
    lines: Sequence[PricedLine],
) -> List[data_manager.LineItemRow]:
    """Convert priced lines into ``LineItems`` rows owned by one parent."""

    return [
        data_manager.LineItemRow(
            parent_type=parent_type.value,
            parent_id=parent_id,
            shop_id=shop_id,
            line_number=number,
            product_id=line.product_id,
            product_name=line.product.product_name,
            quantity=line.quantity,
            price=line.price,
            total=line.total,
            unit_cost=line.unit_cost,
        )
        for number, line in enumerate(lines, start=1)
    ]


def line_items_by_parent(
    context: RuntimeContext,
    shop_id: str,
    parent_type: LineItemParent,
) -> Dict[str, Tuple[data_manager.LineItemRow, ...]]:
    """Group the shop's item lines of one parent type by parent id."""

    grouped: Dict[str, List[data_manager.LineItemRow]] = defaultdict(list)
    for row in core_logic.cached_rows(context, LINE_ITEMS_BUCKET, data_manager.iter_line_items):
        if row.shop_id == shop_id and row.parent_type == parent_type.value:
            grouped[row.parent_id].append(row)
    return {parent_id: tuple(sorted(rows, key=lambda r: r.line_number)) for parent_id, rows in grouped.items()}


def requests_from_rows(rows: Iterable[data_manager.LineItemRow]) -> List[LineRequest]:
    """Turn stored item lines back into requests carrying their frozen prices."""

    return [LineRequest(product_id=row.product_id, quantity=row.quantity, price=row.price) for row in rows]
