"""Integration tests describing end-to-end Shop Ledger workflows.

These scenarios drive the CLI and the dispatcher against a real workbook on
disk, reloading it between steps the way separate processes would.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

from conftest import OTHER_SHOP, SHOP, stock_of
from shop_ledger import catalog, cli, core_logic, credit, customers, dispatcher, orders, sales
from shop_ledger.constants import OrderStatus


def _reload(bundle) -> core_logic.RuntimeContext:
    context = core_logic.load_runtime_context(bundle.config_path)
    core_logic.ensure_schema_version(context)
    return context


def _run(bundle, *words: str, shop: str = SHOP) -> int:
    return cli.main(["--config", str(bundle.config_path), "run", "--shop", shop, *words])


def test_cli_sale_lifecycle_flow(config_factory, capsys):
    """Products added and sold in separate invocations are saved between them."""

    bundle = config_factory()

    assert _run(bundle, "add", "bread", "2.50", "stock", "10") == 0
    assert _run(bundle, "sell", "3", "bread") == 0
    assert "Total: $7.50" in capsys.readouterr().out

    context = _reload(bundle)
    bread = catalog.find_product_by_name(context, SHOP, "bread")
    assert bread.stock == 7
    [sale] = sales.recent_sales(context, SHOP)
    assert sale.total == Decimal("7.50")
    assert [(item.quantity, item.price) for item in sale.items] == [(3, Decimal("2.50"))]


def test_cli_credit_and_report_flow(config_factory, capsys):
    """Credit given and repaid through the CLI shows up in the exported report."""

    bundle = config_factory()

    assert _run(bundle, "customer", "add", "John", "0771234567") == 0
    assert _run(bundle, "credit", "John", "5") == 0
    assert _run(bundle, "payment", "John", "3") == 0
    assert cli.main(["--config", str(bundle.config_path), "report", "--shop", SHOP, "--export"]) == 0

    output = capsys.readouterr().out
    assert "Remaining balance: $2.00" in output
    assert list(bundle.report_dir.glob(f"{SHOP}_cashflow_daily_*.xlsx"))

    context = _reload(bundle)
    john = customers.require_customer(context, SHOP, "John")
    assert john.current_balance == Decimal("2.00")
    assert credit.audit_customer(context, SHOP, john.customer_id) == []


def test_cli_business_rejection_prints_reason(config_factory, capsys):
    """A rejected command prints its reason and still exits cleanly."""

    bundle = config_factory()

    assert _run(bundle, "add", "bread", "2.50", "stock", "3") == 0
    assert _run(bundle, "sell", "5", "bread") == 0

    assert "Not enough bread: requested 5, available 3" in capsys.readouterr().out
    assert catalog.find_product_by_name(_reload(bundle), SHOP, "bread").stock == 3


def test_cli_reports_missing_workbook(config_factory):
    """A configured workbook that does not exist is exit code 3."""

    bundle = config_factory()
    bundle.workbook_path.unlink()

    assert _run(bundle, "list") == 3


def test_refresh_discards_unsaved_changes(runtime_context, make_product):
    """Saved work survives a reload; unsaved work does not."""

    make_product("bread", stock=4)
    core_logic.persist_context(runtime_context)
    make_product("milk", stock=1)

    reloaded = core_logic.refresh_context(runtime_context)

    assert catalog.find_product_by_name(reloaded, SHOP, "bread") is not None
    assert catalog.find_product_by_name(reloaded, SHOP, "milk") is None


def test_shops_share_a_workbook_without_seeing_each_other(runtime_context):
    """Two shops using the same product name keep separate catalogs and sales."""

    dispatcher.handle_command(runtime_context, SHOP, "add bread 2.50 stock 5")
    dispatcher.handle_command(runtime_context, OTHER_SHOP, "add bread 3.00 stock 9")
    dispatcher.handle_command(runtime_context, OTHER_SHOP, "sell 2 bread")

    mine = catalog.find_product_by_name(runtime_context, SHOP, "bread")
    theirs = catalog.find_product_by_name(runtime_context, OTHER_SHOP, "bread")
    assert (mine.stock, mine.price) == (5, Decimal("2.50"))
    assert (theirs.stock, theirs.price) == (7, Decimal("3.00"))
    assert sales.recent_sales(runtime_context, SHOP) == []


def test_concurrent_sales_never_oversell(runtime_context, make_product):
    """Parallel sell commands against five units succeed exactly five times."""

    bread = make_product("bread", stock=5)

    with ThreadPoolExecutor(max_workers=8) as pool:
        replies = list(pool.map(lambda _: dispatcher.handle_command(runtime_context, SHOP, "sell 1 bread"), range(12)))

    succeeded = [reply for reply in replies if reply.text.startswith("Sale ")]
    assert len(succeeded) == 5
    assert stock_of(runtime_context, bread.product_id) == 0
    assert len(sales.recent_sales(runtime_context, SHOP, limit=20)) == 5


def test_order_to_completion_flow(runtime_context, make_product, make_customer):
    """An order placed by text reserves stock only when it is completed."""

    cake = make_product("cake", "12.00", stock=2)
    make_customer("John", "0771234567")

    dispatcher.handle_command(runtime_context, SHOP, "order John 1 cake pickup")
    [order] = orders.list_orders(runtime_context, SHOP)
    for verb in ("confirm", "ready", "complete"):
        dispatcher.handle_command(runtime_context, SHOP, f"{verb} order #{order.short_ref}")

    assert orders.get_order(runtime_context, SHOP, order.order_id).status is OrderStatus.COMPLETED
    assert stock_of(runtime_context, cake.product_id) == 1
    assert sales.recent_sales(runtime_context, SHOP) == []
