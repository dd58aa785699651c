"""Tests for recording, listing and cancelling sales."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from conftest import OTHER_SHOP, SHOP, stock_of
from shop_ledger import core_logic, customers, inventory, sales
from shop_ledger.catalog import LineRequest
from shop_ledger.constants import SaleType

BASE = datetime(2025, 6, 2, 9, 0, tzinfo=UTC)


def test_cash_sale_reserves_stock_and_freezes_total(runtime_context, make_product):
    """Selling 3 bread at 2.50 from a stock of 10 leaves 7 and totals 7.50."""

    bread = make_product("bread", "2.50", stock=10)

    sale = sales.record_sale(runtime_context, SHOP, [LineRequest(bread.product_id, 3)]).unwrap()

    assert sale.total == Decimal("7.50")
    assert sale.record.sale_type == SaleType.CASH.value
    assert [(line.product_name, line.quantity, line.total) for line in sale.items] == [("bread", 3, Decimal("7.50"))]
    assert stock_of(runtime_context, bread.product_id) == 7


def test_sale_total_is_not_recomputed_after_price_change(runtime_context, make_product):
    """Stored totals keep the price that applied when the sale happened."""

    bread = make_product("bread", "2.50")
    sale = sales.record_sale(runtime_context, SHOP, [LineRequest(bread.product_id, 2)]).unwrap()

    inventory.set_price(runtime_context, SHOP, bread.product_id, Decimal("9.99")).unwrap()

    stored = sales.get_sale(runtime_context, SHOP, sale.sale_id)
    assert stored.total == Decimal("5.00")
    assert stored.items[0].price == Decimal("2.50")


def test_multi_item_sale_is_all_or_nothing(runtime_context, make_product):
    """A sale whose second line lacks stock writes nothing and restores the first line."""

    bread = make_product("bread", stock=10)
    milk = make_product("milk", stock=1)

    result = sales.record_sale(
        runtime_context,
        SHOP,
        [LineRequest(bread.product_id, 2), LineRequest(milk.product_id, 5)],
    )

    assert isinstance(result.error, core_logic.InsufficientStockError)
    assert stock_of(runtime_context, bread.product_id) == 10
    assert stock_of(runtime_context, milk.product_id) == 1
    assert sales.recent_sales(runtime_context, SHOP) == []


def test_sale_updates_linked_customer_statistics(runtime_context, make_product, make_customer):
    """A linked sale adds a visit, the spend and whole loyalty points."""

    bread = make_product("bread", "2.50")
    john = make_customer("John")

    sales.record_sale(runtime_context, SHOP, [LineRequest(bread.product_id, 3)], customer_id=john.customer_id).unwrap()

    stored = customers.get_customer(runtime_context, SHOP, john.customer_id)
    assert stored.total_spent == Decimal("7.50")
    assert stored.total_visits == 1
    assert stored.loyalty_points == 7
    assert stored.first_purchase_at == stored.last_purchase_at


def test_sale_with_unknown_customer_writes_nothing(runtime_context, make_product):
    """An unknown customer id is rejected before stock moves."""

    bread = make_product("bread", stock=4)

    result = sales.record_sale(runtime_context, SHOP, [LineRequest(bread.product_id, 1)], customer_id="C404")

    assert isinstance(result.error, core_logic.NotFoundError)
    assert stock_of(runtime_context, bread.product_id) == 4


def test_cancel_sale_restores_stock_and_keeps_customer_stats(runtime_context, make_product, make_customer):
    """Cancellation returns goods to stock but does not undo customer statistics."""

    bread = make_product("bread", stock=10)
    john = make_customer()
    sale = sales.record_sale(
        runtime_context, SHOP, [LineRequest(bread.product_id, 4)], customer_id=john.customer_id
    ).unwrap()

    cancelled = sales.cancel_sale(runtime_context, SHOP, sale.sale_id, "wrong item").unwrap()

    assert cancelled.record.is_cancelled
    assert cancelled.record.cancellation_reason == "wrong item"
    assert cancelled.record.cancelled_at
    assert stock_of(runtime_context, bread.product_id) == 10
    assert customers.get_customer(runtime_context, SHOP, john.customer_id).total_visits == 1


def test_cancel_sale_restores_only_what_it_took(runtime_context, make_product):
    """Stock edits made after a sale survive its cancellation."""

    bread = make_product("bread", stock=10)
    milk = make_product("milk", stock=5)
    sale = sales.record_sale(
        runtime_context, SHOP, [LineRequest(bread.product_id, 4), LineRequest(milk.product_id, 2)]
    ).unwrap()
    inventory.adjust_stock(runtime_context, SHOP, bread.product_id, -3).unwrap()
    inventory.adjust_stock(runtime_context, SHOP, milk.product_id, 7).unwrap()

    sales.cancel_sale(runtime_context, SHOP, sale.sale_id, "returned").unwrap()

    assert stock_of(runtime_context, bread.product_id) == 7
    assert stock_of(runtime_context, milk.product_id) == 12


def test_cancel_sale_twice_is_a_state_error(runtime_context, make_product):
    """A second cancellation must not release stock again."""

    bread = make_product("bread", stock=10)
    sale = sales.record_sale(runtime_context, SHOP, [LineRequest(bread.product_id, 4)]).unwrap()
    sales.cancel_sale(runtime_context, SHOP, sale.sale_id).unwrap()

    result = sales.cancel_sale(runtime_context, SHOP, sale.sale_id)

    assert isinstance(result.error, core_logic.StateError)
    assert stock_of(runtime_context, bread.product_id) == 10


def test_cancel_sale_defaults_reason(runtime_context, make_product):
    """A blank reason is replaced by the default text."""

    bread = make_product("bread")
    sale = sales.record_sale(runtime_context, SHOP, [LineRequest(bread.product_id, 1)]).unwrap()

    cancelled = sales.cancel_sale(runtime_context, SHOP, sale.sale_id, "   ").unwrap()
    assert cancelled.record.cancellation_reason == sales.DEFAULT_CANCEL_REASON


def test_cancel_sale_from_other_shop_is_not_found(runtime_context, make_product):
    """Sales are invisible to other tenants."""

    bread = make_product("bread")
    sale = sales.record_sale(runtime_context, SHOP, [LineRequest(bread.product_id, 1)]).unwrap()

    assert isinstance(sales.cancel_sale(runtime_context, OTHER_SHOP, sale.sale_id).error, core_logic.NotFoundError)


def test_cancel_last_sale_picks_newest_active_sale(runtime_context, make_product):
    """cancel_last_sale should skip sales that are already cancelled."""

    bread = make_product("bread", stock=20)
    first = sales.record_sale(runtime_context, SHOP, [LineRequest(bread.product_id, 1)], timestamp=BASE).unwrap()
    second = sales.record_sale(
        runtime_context, SHOP, [LineRequest(bread.product_id, 2)], timestamp=BASE + timedelta(minutes=5)
    ).unwrap()
    sales.cancel_sale(runtime_context, SHOP, second.sale_id).unwrap()

    cancelled = sales.cancel_last_sale(runtime_context, SHOP).unwrap()

    assert cancelled.sale_id == first.sale_id
    assert isinstance(sales.cancel_last_sale(runtime_context, SHOP).error, core_logic.NotFoundError)


def test_recent_sales_newest_first_with_limit(runtime_context, make_product):
    """recent_sales should order by time and respect the limit."""

    bread = make_product("bread", stock=20)
    recorded = [
        sales.record_sale(
            runtime_context, SHOP, [LineRequest(bread.product_id, 1)], timestamp=BASE + timedelta(minutes=n)
        ).unwrap()
        for n in range(3)
    ]

    recent = sales.recent_sales(runtime_context, SHOP, 2)
    assert [sale.sale_id for sale in recent] == [recorded[2].sale_id, recorded[1].sale_id]


def test_find_by_id_or_index(runtime_context, make_product):
    """Numbers index the recent list; anything else is a sale id."""

    bread = make_product("bread", stock=20)
    older = sales.record_sale(runtime_context, SHOP, [LineRequest(bread.product_id, 1)], timestamp=BASE).unwrap()
    newer = sales.record_sale(
        runtime_context, SHOP, [LineRequest(bread.product_id, 1)], timestamp=BASE + timedelta(hours=1)
    ).unwrap()

    assert sales.find_by_id_or_index(runtime_context, SHOP, "1").sale_id == newer.sale_id
    assert sales.find_by_id_or_index(runtime_context, SHOP, "2").sale_id == older.sale_id
    assert sales.find_by_id_or_index(runtime_context, SHOP, older.sale_id.lower()).sale_id == older.sale_id
    with pytest.raises(core_logic.ValidationError):
        sales.find_by_id_or_index(runtime_context, SHOP, "3")
    with pytest.raises(core_logic.NotFoundError):
        sales.find_by_id_or_index(runtime_context, SHOP, "S-missing")


def test_refunds_use_cancellation_time(runtime_context, make_product):
    """A refund belongs to the window of its cancellation, not of the sale."""

    bread = make_product("bread", stock=20)
    sale = sales.record_sale(runtime_context, SHOP, [LineRequest(bread.product_id, 1)], timestamp=BASE).unwrap()
    cancel_time = BASE + timedelta(days=3)
    sales.cancel_sale(runtime_context, SHOP, sale.sale_id, timestamp=cancel_time).unwrap()

    assert sales.refunds(runtime_context, SHOP, BASE, BASE + timedelta(days=1)) == []
    refunded = sales.refunds(runtime_context, SHOP, cancel_time - timedelta(hours=1), cancel_time + timedelta(hours=1))
    assert [item.sale_id for item in refunded] == [sale.sale_id]


def test_count_sales_for_product(runtime_context, make_product):
    """Only sales containing the product are counted."""

    bread = make_product("bread", stock=20)
    milk = make_product("milk", stock=20)
    sales.record_sale(runtime_context, SHOP, [LineRequest(bread.product_id, 1), LineRequest(milk.product_id, 1)]).unwrap()
    sales.record_sale(runtime_context, SHOP, [LineRequest(milk.product_id, 1)]).unwrap()

    assert sales.count_sales_for_product(runtime_context, SHOP, bread.product_id) == 1
    assert sales.count_sales_for_product(runtime_context, SHOP, milk.product_id) == 2
