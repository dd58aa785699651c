"""Tests for command dispatch and the business-layer error boundary."""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest

from conftest import SHOP, stock_of
from shop_ledger import catalog, core_logic, customers, dispatcher, interpreter, orders, sales
from shop_ledger.constants import OrderStatus
from shop_ledger.messages import GENERIC_FAILURE, UNKNOWN_SHOP


class _Identity:
    def __init__(self, known):
        self.known = known

    def resolve_shop(self, raw_id):
        return self.known.get(raw_id)


def _say(context, text, **kwargs):
    reply = dispatcher.handle_command(context, SHOP, text, **kwargs)
    assert isinstance(reply, dispatcher.TextReply)
    return reply.text


@pytest.fixture
def saves(runtime_context, monkeypatch):
    calls = []
    monkeypatch.setattr(core_logic, "persist_context", lambda context: calls.append(context))
    return calls


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def test_every_intent_has_a_handler():
    """Each intent type the interpreter can produce is dispatched somewhere."""

    assert set(dispatcher.HANDLERS) == set(interpreter.Intent.__subclasses__())


def test_handles_rejects_duplicates():
    """Registering a second handler for an intent is a programming error."""

    with pytest.raises(ValueError):
        dispatcher.handles(interpreter.ShowHelp)(lambda session, intent: dispatcher.TextReply(""))


# ---------------------------------------------------------------------------
# Replies
# ---------------------------------------------------------------------------


def test_add_then_sell(runtime_context):
    """Catalog and sale commands run against the ledger and describe the result."""

    assert _say(runtime_context, "add bread 2.50 stock 10") == "Added bread at $2.50 with 10 in stock."

    reply = _say(runtime_context, "sell 3 bread")

    bread = catalog.find_product_by_name(runtime_context, SHOP, "bread")
    assert reply.startswith("Sale ")
    assert "Total: $7.50" in reply
    assert stock_of(runtime_context, bread.product_id) == 7


def test_parse_error_reply_includes_hint(runtime_context):
    """Unknown products are reported before anything runs."""

    assert _say(runtime_context, "sell 1 caviar") == "Product 'caviar' not found\nType 'list' to see your products."


def test_business_rule_violation_becomes_text(runtime_context, make_product):
    """Rejections raised inside a handler are rendered, not propagated."""

    make_product("bread", stock=2)

    assert _say(runtime_context, "sell 5 bread") == "Not enough bread: requested 5, available 2"
    assert _say(runtime_context, "sell to Mary 1 bread") == (
        "Customer 'Mary' not found\nRegister them first: customer add Mary <phone>"
    )


def test_edit_and_stock_commands(runtime_context, make_product):
    """Field edits and stock adjustments report old and new values."""

    make_product("bread", stock=4)

    assert _say(runtime_context, "price bread 3").startswith("Updated bread: price $3.00.")
    assert _say(runtime_context, "stock -bread 1") == "bread stock: 4 -> 3"
    assert _say(runtime_context, "stock =bread 9") == "bread stock: 3 -> 9"


def test_rejected_edit_changes_no_field(runtime_context, make_product, saves):
    """A multi-field edit that fails on one field leaves every field as it was."""

    make_product("bread", "2.50", stock=4)
    make_product("milk")

    reply = _say(runtime_context, "edit bread price 9 stock 1 name milk", autosave=True)

    bread = catalog.find_product_by_name(runtime_context, SHOP, "bread")
    assert reply == "Product 'milk' already exists"
    assert (bread.price, bread.stock) == (Decimal("2.50"), 4)
    assert _say(runtime_context, "edit bread price 3 name rye").startswith("Updated rye: price $3.00")


def test_oversized_amount_is_a_parse_error(runtime_context, make_product):
    """Numbers too large for the ledger are refused as bad input, not as a storage failure."""

    make_product("bread", "2.50")

    assert _say(runtime_context, "price bread 1e40").startswith("Invalid price: '1e40'")
    assert catalog.find_product_by_name(runtime_context, SHOP, "bread").price == Decimal("2.50")


def test_delete_asks_for_confirmation(runtime_context, make_product):
    """Deleting needs a second, confirmed command."""

    make_product("bread")

    assert _say(runtime_context, "delete bread").endswith("Type: delete bread confirm")
    assert catalog.find_product_by_name(runtime_context, SHOP, "bread") is not None
    assert _say(runtime_context, "delete bread confirm") == "bread was removed from the catalog."
    assert catalog.find_product_by_name(runtime_context, SHOP, "bread") is None


def test_credit_and_payment_flow(runtime_context, make_customer):
    """Credit and payment commands move the customer balance."""

    make_customer("John", "0771234567")

    assert _say(runtime_context, "credit John 50").startswith("Credit of $50.00 given to John.")
    assert "Remaining balance: $30.00" in _say(runtime_context, "payment John 20")
    john = customers.require_customer(runtime_context, SHOP, "John")
    assert john.current_balance == Decimal("30.00")


def test_order_commands_use_short_reference(runtime_context, make_product, make_customer):
    """Orders placed by text can be advanced by their short reference."""

    make_product("cake", "12.00", stock=3)
    make_customer("John", "0771234567")

    placed = _say(runtime_context, "order John 1 cake delivery")
    [order] = orders.list_orders(runtime_context, SHOP)

    assert placed.startswith(f"Order #{order.short_ref} placed (delivery)")
    assert _say(runtime_context, f"confirm order {order.short_ref}") == f"Order #{order.short_ref} is now confirmed."
    assert _say(runtime_context, f"complete order {order.short_ref}").startswith(
        "Cannot move order from 'confirmed' to 'completed'\n"
    )
    assert orders.get_order(runtime_context, SHOP, order.order_id).status is OrderStatus.CONFIRMED


def test_laybye_commands(runtime_context, make_product, make_customer):
    """A lay-bye is opened, paid and completed through text commands."""

    radio = make_product("radio", "100.00", stock=2)
    make_customer("John", "0771234567")

    assert "Paid: $20.00  Due: $80.00" in _say(runtime_context, "laybye for John 1 radio deposit 20")
    _say(runtime_context, "laybye pay John 80 mobile")

    assert stock_of(runtime_context, radio.product_id) == 1
    assert [sale.record.laybye_id is not None for sale in sales.recent_sales(runtime_context, SHOP)] == [True]


def test_expense_and_report_replies(runtime_context, make_product):
    """Expenses feed the profit and cash-flow replies."""

    make_product("soap", "10.00", stock=5, cost="6.00")
    _say(runtime_context, "sell 1 soap")
    assert _say(runtime_context, "expense 1.50 bags packaging").startswith("Expense of $1.50 recorded: bags")

    profit = _say(runtime_context, "profit")
    cash_flow = _say(runtime_context, "daily")

    assert "Gross profit: $4.00" in profit
    assert "Net profit: $2.50" in profit
    assert "NET CASH FLOW: $8.50" in cash_flow


# ---------------------------------------------------------------------------
# Error boundary and persistence
# ---------------------------------------------------------------------------


def test_persistence_error_becomes_generic_reply(runtime_context, make_product, monkeypatch, caplog):
    """Storage failures are logged with details and the user gets a retry prompt."""

    make_product("bread")

    def broken(*args, **kwargs):
        raise core_logic.PersistenceError("Could not save workbook: disk full")

    monkeypatch.setattr(sales, "record_sale", broken)
    caplog.set_level("ERROR")

    assert _say(runtime_context, "sell 1 bread") == GENERIC_FAILURE
    assert any("Storage failure" in record.getMessage() for record in caplog.records)


def test_unexpected_error_becomes_generic_reply(runtime_context, monkeypatch):
    """Bugs in a handler never leak a traceback to the user."""

    def boom(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(catalog, "list_products", boom)

    assert _say(runtime_context, "list") == GENERIC_FAILURE


def test_autosave_skips_read_only_commands(runtime_context, make_product, saves):
    """Only mutating commands are saved."""

    make_product("bread")

    _say(runtime_context, "list", autosave=True)
    assert saves == []

    _say(runtime_context, "sell 1 bread", autosave=True)
    assert saves == [runtime_context]


def test_handle_incoming_text_rejects_unknown_sender(runtime_context, saves):
    """Senders without a shop get the log-in prompt and nothing runs."""

    reply = dispatcher.handle_incoming_text(runtime_context, "+100", "add bread 2", _Identity({}))

    assert reply == dispatcher.TextReply(UNKNOWN_SHOP)
    assert catalog.list_products(runtime_context, SHOP) == []
    assert saves == []


def test_handle_incoming_text_saves_changes(runtime_context, saves):
    """A resolved sender's mutating command is saved straight away."""

    reply = dispatcher.handle_incoming_text(runtime_context, "+263", "add bread 2", _Identity({"+263": SHOP}))

    assert reply.text.startswith("Added bread")
    assert saves == [runtime_context]


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


class _RecordingRenderer:
    def __init__(self):
        self.calls = []

    def render(self, report, destination):
        self.calls.append(("cashflow", report.period.label, destination))
        return Path(destination)

    def render_best_sellers(self, ranked, period, destination):
        self.calls.append(("best", period, destination))
        return Path(destination)


def test_export_returns_document(runtime_context):
    """export replies with a document written under the report directory."""

    renderer = _RecordingRenderer()

    reply = dispatcher.handle_command(runtime_context, SHOP, "export weekly", renderer=renderer)

    assert isinstance(reply, dispatcher.DocumentReply)
    assert reply.caption == "Financial report - this week"
    [(kind, label, destination)] = renderer.calls
    assert (kind, label) == ("cashflow", "weekly")
    assert destination.parent == runtime_context.settings.report_dir
    assert destination.name.startswith(f"{SHOP}_cashflow_weekly_")


def test_export_best_sellers_writes_xlsx(runtime_context, make_product):
    """The default renderer writes a real workbook for best-seller exports."""

    make_product("soap", "1.00")
    _say(runtime_context, "sell 2 soap")

    reply = dispatcher.handle_command(runtime_context, SHOP, "export best month")

    assert isinstance(reply, dispatcher.DocumentReply)
    assert reply.path.exists()
    assert reply.path.suffix == ".xlsx"
    assert reply.caption == "Best sellers - this month"
