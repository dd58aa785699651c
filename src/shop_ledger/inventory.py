"""Inventory ledger for Shop Ledger.

Every stock movement goes through this module. A reservation is a
read-check-write on one product row performed while holding that product's
lock, so concurrent reservations against the same product are serialized and
stock can never drop below zero. Field mutators (price, threshold, name,
archive) refuse archived products; ``release`` does not, because cancelling
an old sale must restore stock even after the product was archived.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from . import catalog, core_logic, data_manager, log
from .catalog import PRODUCTS_BUCKET, LineRequest, PricedLine
from .core_logic import (
    InsufficientStockError,
    RuntimeContext,
    ValidationError,
    ledger_operation,
)


def _write_product(context: RuntimeContext, product_id: str, fields: Dict[str, Any]) -> None:
    with core_logic.mutating(context, PRODUCTS_BUCKET) as workbook:
        data_manager.update_product(workbook, product_id, field_values=fields)


@ledger_operation
def reserve(context: RuntimeContext, shop_id: str, product_id: str, quantity: int) -> data_manager.ProductRow:
    """Check and decrement stock for one product.

    Untracked products always succeed without moving stock.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        shop_id (str): Tenant owning the product.
        product_id (str): Product to reserve.
        quantity (int): Units to take, strictly positive.

    Returns:
        data_manager.ProductRow: Product state after the reservation.

    Raises:
        InsufficientStockError: If ``stock < quantity``; stock is unchanged.
        StateError: If the product is archived.
        NotFoundError: If the product is unknown in the shop.
        ValidationError: If ``quantity`` is not positive.
    """

    core_logic.require_positive_quantity(quantity)
    with core_logic.hold_locks(context, core_logic.product_key(shop_id, product_id)):
        product = catalog.require_active(catalog.get_product(context, shop_id, product_id))
        if not product.track_stock:
            return product
        if product.stock < quantity:
            raise InsufficientStockError(product.product_name, requested=quantity, available=product.stock)
        remaining = product.stock - quantity
        _write_product(context, product_id, {"Stock": remaining})

    log.info("Reserved %d x '%s' in shop '%s' (stock %d -> %d)", quantity, product.product_name, shop_id, product.stock, remaining)
    return replace(product, stock=remaining)


@ledger_operation
def release(context: RuntimeContext, shop_id: str, product_id: str, quantity: int) -> data_manager.ProductRow:
    """Return units to stock unconditionally.

    Used by sale cancellation and by rollback of partial reservations. Archived
    products are restocked as well; untracked products are left untouched.

    Raises:
        NotFoundError: If the product is unknown in the shop.
        ValidationError: If ``quantity`` is not positive.
    """

    core_logic.require_positive_quantity(quantity)
    with core_logic.hold_locks(context, core_logic.product_key(shop_id, product_id)):
        product = catalog.get_product(context, shop_id, product_id)
        if not product.track_stock:
            return product
        restored = product.stock + quantity
        _write_product(context, product_id, {"Stock": restored})

    log.info("Released %d x '%s' in shop '%s' (stock %d -> %d)", quantity, product.product_name, shop_id, product.stock, restored)
    return replace(product, stock=restored)


def release_lines(context: RuntimeContext, shop_id: str, lines: Sequence[LineRequest | PricedLine]) -> None:
    """Release every line, logging but not stopping on individual failures."""

    for line in lines:
        result = release(context, shop_id, line.product_id, line.quantity)
        if not result.ok:
            log.error(
                "Could not release %d units of '%s' in shop '%s': %s",
                line.quantity,
                line.product_id,
                shop_id,
                result.error,
            )


@ledger_operation
def reserve_lines(context: RuntimeContext, shop_id: str, lines: Sequence[LineRequest | PricedLine]) -> List[data_manager.ProductRow]:
    """Reserve several lines all-or-nothing.

    Lines are reserved in order. When one fails, every line reserved earlier in
    the same call is released before the failure is returned, so stock ends
    exactly where it started.

    Raises:
        InsufficientStockError: From the first line that cannot be covered.
    """

    reserved: List[LineRequest | PricedLine] = []
    products: List[data_manager.ProductRow] = []
    for line in lines:
        result = reserve(context, shop_id, line.product_id, line.quantity)
        if not result.ok:
            if reserved:
                log.warning("Rolling back %d reserved line(s) in shop '%s'", len(reserved), shop_id)
                release_lines(context, shop_id, reserved)
            raise result.error  # type: ignore[misc]
        reserved.append(line)
        products.append(result.value)  # type: ignore[arg-type]
    return products


@ledger_operation
def set_stock(context: RuntimeContext, shop_id: str, product_id: str, stock: int) -> data_manager.ProductRow:
    """Overwrite the stock count of an active product."""

    core_logic.require_nonnegative_quantity(stock, label="Stock")
    with core_logic.hold_locks(context, core_logic.product_key(shop_id, product_id)):
        product = catalog.require_active(catalog.get_product(context, shop_id, product_id))
        _write_product(context, product_id, {"Stock": stock})
    log.info("Set stock of '%s' in shop '%s' to %d", product.product_name, shop_id, stock)
    return replace(product, stock=stock)


@ledger_operation
def adjust_stock(context: RuntimeContext, shop_id: str, product_id: str, delta: int) -> data_manager.ProductRow:
    """Add (positive ``delta``) or remove (negative ``delta``) units.

    Raises:
        ValidationError: If ``delta`` is zero or would make stock negative.
    """

    if delta == 0:
        raise ValidationError("Stock adjustment must not be zero")
    with core_logic.hold_locks(context, core_logic.product_key(shop_id, product_id)):
        product = catalog.require_active(catalog.get_product(context, shop_id, product_id))
        updated = product.stock + delta
        if updated < 0:
            raise ValidationError(
                f"Cannot remove {-delta} {product.product_name}: only {product.stock} in stock",
            )
        _write_product(context, product_id, {"Stock": updated})
    log.info("Adjusted stock of '%s' in shop '%s' by %+d (now %d)", product.product_name, shop_id, delta, updated)
    return replace(product, stock=updated)


@ledger_operation
def set_threshold(context: RuntimeContext, shop_id: str, product_id: str, threshold: int) -> data_manager.ProductRow:
    """Change the low-stock alert level of an active product."""

    core_logic.require_nonnegative_quantity(threshold, label="Threshold")
    with core_logic.hold_locks(context, core_logic.product_key(shop_id, product_id)):
        product = catalog.require_active(catalog.get_product(context, shop_id, product_id))
        _write_product(context, product_id, {"LowStockThreshold": threshold})
    log.info("Set low-stock threshold of '%s' in shop '%s' to %d", product.product_name, shop_id, threshold)
    return replace(product, low_stock_threshold=threshold)


@ledger_operation
def set_price(context: RuntimeContext, shop_id: str, product_id: str, price: Decimal) -> data_manager.ProductRow:
    """Change the selling price; existing sales keep their frozen totals."""

    core_logic.require_positive_money(price, label="Price")
    with core_logic.hold_locks(context, core_logic.product_key(shop_id, product_id)):
        product = catalog.require_active(catalog.get_product(context, shop_id, product_id))
        _write_product(context, product_id, {"Price": price})
    log.info("Set price of '%s' in shop '%s' from %s to %s", product.product_name, shop_id, product.price, price)
    return replace(product, price=price)


@ledger_operation
def set_cost(context: RuntimeContext, shop_id: str, product_id: str, cost_price: Optional[Decimal]) -> data_manager.ProductRow:
    """Change or clear the unit cost used for cost of goods."""

    if cost_price is not None:
        core_logic.require_nonnegative_money(cost_price, label="Cost price")
    with core_logic.hold_locks(context, core_logic.product_key(shop_id, product_id)):
        product = catalog.require_active(catalog.get_product(context, shop_id, product_id))
        _write_product(context, product_id, {"CostPrice": cost_price})
    log.info("Set cost of '%s' in shop '%s' to %s", product.product_name, shop_id, cost_price)
    return replace(product, cost_price=cost_price)


@ledger_operation
def rename(context: RuntimeContext, shop_id: str, product_id: str, new_name: str) -> data_manager.ProductRow:
    """Rename an active product, keeping names unique per shop.

    Raises:
        ValidationError: If another product, active or archived, already uses
            ``new_name``.
    """

    new_name = core_logic.require_text(new_name, label="Product name")
    with core_logic.hold_locks(context, core_logic.product_key(shop_id, product_id)):
        product = catalog.require_active(catalog.get_product(context, shop_id, product_id))
        clash = catalog.find_product_by_name(context, shop_id, new_name, include_inactive=True)
        if clash is not None and clash.product_id != product_id:
            raise ValidationError(f"Product '{clash.product_name}' already exists")
        _write_product(context, product_id, {"ProductName": new_name})
    log.info("Renamed product '%s' to '%s' in shop '%s'", product.product_name, new_name, shop_id)
    return replace(product, product_name=new_name)


@ledger_operation
def edit_product(
    context: RuntimeContext,
    shop_id: str,
    product_id: str,
    *,
    price: Optional[Decimal] = None,
    cost_price: Optional[Decimal] = None,
    stock: Optional[int] = None,
    threshold: Optional[int] = None,
    new_name: Optional[str] = None,
) -> data_manager.ProductRow:
    """Change several fields of an active product in one write.

    Arguments left as ``None`` are unchanged. Every value, including the name
    clash, is checked before the row is touched, so a rejected edit changes
    nothing.

    Raises:
        ValidationError: If a value is invalid, nothing is given, or another
            product already uses ``new_name``.
        StateError: If the product is archived.
    """

    fields: Dict[str, Any] = {}
    changed: Dict[str, Any] = {}
    if price is not None:
        core_logic.require_positive_money(price, label="Price")
        fields["Price"] = changed["price"] = price
    if cost_price is not None:
        core_logic.require_nonnegative_money(cost_price, label="Cost price")
        fields["CostPrice"] = changed["cost_price"] = cost_price
    if stock is not None:
        core_logic.require_nonnegative_quantity(stock, label="Stock")
        fields["Stock"] = changed["stock"] = stock
    if threshold is not None:
        core_logic.require_nonnegative_quantity(threshold, label="Threshold")
        fields["LowStockThreshold"] = changed["low_stock_threshold"] = threshold
    if new_name is not None:
        new_name = core_logic.require_text(new_name, label="Product name")
        fields["ProductName"] = changed["product_name"] = new_name
    if not fields:
        raise ValidationError("Nothing to change")

    with core_logic.hold_locks(context, core_logic.product_key(shop_id, product_id)):
        product = catalog.require_active(catalog.get_product(context, shop_id, product_id))
        if new_name is not None:
            clash = catalog.find_product_by_name(context, shop_id, new_name, include_inactive=True)
            if clash is not None and clash.product_id != product_id:
                raise ValidationError(f"Product '{clash.product_name}' already exists")
        _write_product(context, product_id, fields)
    log.info("Edited %s of '%s' in shop '%s'", ", ".join(fields), product.product_name, shop_id)
    return replace(product, **changed)


@ledger_operation
def archive(context: RuntimeContext, shop_id: str, product_id: str) -> data_manager.ProductRow:
    """Soft-delete a product; it stays referenced by historical sales."""

    with core_logic.hold_locks(context, core_logic.product_key(shop_id, product_id)):
        product = catalog.require_active(catalog.get_product(context, shop_id, product_id))
        _write_product(context, product_id, {"IsActive": False})
    log.info("Archived product '%s' in shop '%s'", product.product_name, shop_id)
    return replace(product, is_active=False)


def low_stock(context: RuntimeContext, shop_id: str) -> List[data_manager.ProductRow]:
    """Return active, tracked products at or below their threshold, lowest stock first."""

    flagged = [
        product
        for product in catalog.list_products(context, shop_id)
        if product.track_stock and product.stock <= product.low_stock_threshold
    ]
    return sorted(flagged, key=lambda product: (product.stock, product.product_name.casefold()))
