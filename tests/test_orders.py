"""Tests for the order lifecycle."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from conftest import SHOP, stock_of
from shop_ledger import core_logic, inventory, orders, sales
from shop_ledger.catalog import LineRequest
from shop_ledger.constants import OrderStatus, OrderType


@pytest.fixture
def pending_order(runtime_context, make_product, make_customer):
    bread = make_product("bread", "2.50", stock=5)
    john = make_customer()
    order = orders.place_order(
        runtime_context,
        SHOP,
        [LineRequest(bread.product_id, 2)],
        customer_id=john.customer_id,
        order_type=OrderType.DELIVERY,
        notes=" after 5pm ",
    ).unwrap()
    return order, bread


def _advance(context, order_id, *targets):
    for target in targets:
        orders.transition(context, SHOP, order_id, target).unwrap()


def test_place_order_is_pending_and_leaves_stock(runtime_context, pending_order):
    """Placing an order prices its lines but does not touch stock."""

    order, bread = pending_order

    assert order.status is OrderStatus.PENDING
    assert order.record.total == Decimal("5.00")
    assert order.record.order_type == "delivery"
    assert order.record.notes == "after 5pm"
    assert stock_of(runtime_context, bread.product_id) == 5


def test_place_order_requires_items(runtime_context):
    """An order needs at least one line."""

    assert isinstance(orders.place_order(runtime_context, SHOP, []).error, core_logic.ValidationError)


def test_full_lifecycle_reserves_stock_on_completion(runtime_context, pending_order):
    """Stock moves only when the order is completed, and each step is stamped."""

    order, bread = pending_order

    _advance(runtime_context, order.order_id, OrderStatus.CONFIRMED, OrderStatus.READY)
    assert stock_of(runtime_context, bread.product_id) == 5

    completed = orders.transition(runtime_context, SHOP, order.order_id, OrderStatus.COMPLETED).unwrap()

    assert completed.status is OrderStatus.COMPLETED
    assert stock_of(runtime_context, bread.product_id) == 3
    stored = orders.get_order(runtime_context, SHOP, order.order_id).record
    assert stored.confirmed_at and stored.ready_at and stored.completed_at
    assert sales.recent_sales(runtime_context, SHOP) == []


def test_completing_pending_order_is_invalid(runtime_context, pending_order):
    """Skipping states is refused and the order keeps its status."""

    order, _ = pending_order

    result = orders.transition(runtime_context, SHOP, order.order_id, OrderStatus.COMPLETED)

    assert isinstance(result.error, core_logic.InvalidTransition)
    assert result.error.current == "pending"
    assert result.error.requested == "completed"
    assert orders.get_order(runtime_context, SHOP, order.order_id).status is OrderStatus.PENDING


@pytest.mark.parametrize("terminal", [OrderStatus.COMPLETED, OrderStatus.CANCELLED])
def test_terminal_states_have_no_exits(runtime_context, pending_order, terminal):
    """Completed and cancelled orders cannot move again."""

    order, _ = pending_order
    if terminal is OrderStatus.COMPLETED:
        _advance(runtime_context, order.order_id, OrderStatus.CONFIRMED, OrderStatus.READY, OrderStatus.COMPLETED)
    else:
        _advance(runtime_context, order.order_id, OrderStatus.CANCELLED)

    for target in OrderStatus:
        result = orders.transition(runtime_context, SHOP, order.order_id, target)
        assert isinstance(result.error, core_logic.InvalidTransition)


def test_cancel_from_ready_releases_nothing(runtime_context, pending_order):
    """Cancelling before completion leaves stock untouched."""

    order, bread = pending_order
    _advance(runtime_context, order.order_id, OrderStatus.CONFIRMED, OrderStatus.READY, OrderStatus.CANCELLED)

    assert orders.get_order(runtime_context, SHOP, order.order_id).record.cancelled_at
    assert stock_of(runtime_context, bread.product_id) == 5


def test_completion_without_stock_stays_ready(runtime_context, pending_order):
    """If goods ran out meanwhile, completion fails and the order stays ready."""

    order, bread = pending_order
    _advance(runtime_context, order.order_id, OrderStatus.CONFIRMED, OrderStatus.READY)
    inventory.set_stock(runtime_context, SHOP, bread.product_id, 1).unwrap()

    result = orders.transition(runtime_context, SHOP, order.order_id, OrderStatus.COMPLETED)

    assert isinstance(result.error, core_logic.InsufficientStockError)
    assert orders.get_order(runtime_context, SHOP, order.order_id).status is OrderStatus.READY
    assert stock_of(runtime_context, bread.product_id) == 1


def test_transition_notes_replace_order_notes(runtime_context, pending_order):
    """Notes given with a transition overwrite the stored notes."""

    order, _ = pending_order

    confirmed = orders.transition(runtime_context, SHOP, order.order_id, OrderStatus.CONFIRMED, notes="call first").unwrap()

    assert confirmed.record.notes == "call first"
    assert orders.get_order(runtime_context, SHOP, order.order_id).record.notes == "call first"


def test_find_order_by_short_reference(runtime_context, pending_order):
    """The last four characters resolve an order, with or without '#', in any case."""

    order, _ = pending_order

    assert order.short_ref == order.order_id[-4:].upper()
    assert orders.find_order(runtime_context, SHOP, f"#{order.short_ref.lower()}").order_id == order.order_id
    assert orders.find_order(runtime_context, SHOP, order.order_id).order_id == order.order_id
    with pytest.raises(core_logic.NotFoundError):
        orders.find_order(runtime_context, SHOP, "O-nothing-here")


def test_find_order_ambiguous_short_reference(runtime_context, make_product, monkeypatch):
    """Two orders sharing a reference must be told apart by full id."""

    bread = make_product("bread")
    ids = iter(["O20250101000000000001ABCD", "O20250101000000000002ABCD"])
    monkeypatch.setattr(core_logic, "generate_id", lambda prefix, when=None: next(ids))
    for _ in range(2):
        orders.place_order(runtime_context, SHOP, [LineRequest(bread.product_id, 1)]).unwrap()

    with pytest.raises(core_logic.ValidationError):
        orders.find_order(runtime_context, SHOP, "abcd")


def test_list_orders_filters_by_status_newest_first(runtime_context, make_product):
    """list_orders returns newest first and can be limited to one status."""

    bread = make_product("bread")
    base = datetime(2025, 6, 1, 8, 0, tzinfo=UTC)
    placed = [
        orders.place_order(
            runtime_context, SHOP, [LineRequest(bread.product_id, 1)], timestamp=base + timedelta(hours=n)
        ).unwrap()
        for n in range(3)
    ]
    _advance(runtime_context, placed[0].order_id, OrderStatus.CONFIRMED)

    assert [order.order_id for order in orders.list_orders(runtime_context, SHOP)] == [
        placed[2].order_id,
        placed[1].order_id,
        placed[0].order_id,
    ]
    assert [order.order_id for order in orders.list_orders(runtime_context, SHOP, OrderStatus.CONFIRMED)] == [
        placed[0].order_id
    ]
