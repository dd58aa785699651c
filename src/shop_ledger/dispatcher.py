"""Command dispatch for Shop Ledger.

:func:`handle_incoming_text` is what a message transport calls: it resolves
the sender to a shop, interprets the text and runs the matching ledger
operation. This module is the single error boundary of the business layer:

* parse errors and failed :class:`~shop_ledger.core_logic.Result` values
  become specific reply text, and
* :class:`~shop_ledger.core_logic.PersistenceError` and unexpected exceptions
  are logged with their traceback and become a generic "try again" reply.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Type, TypeVar

from . import catalog, core_logic, credit, customers, expenses, financials, interpreter, inventory, laybye, log, orders, sales
from .catalog import LineRequest
from .core_logic import BusinessRuleViolation, PersistenceError, Result, RuntimeContext
from .interpreter import Intent, ItemSpec, ParseError
from .messages import GENERIC_FAILURE, UNKNOWN_SHOP, ReplyFormatter
from .report_export import ReportRenderer, XlsxReportRenderer, report_filename

T = TypeVar("T")

BEST_SELLERS_LIMIT = 10
TOP_CUSTOMERS_LIMIT = 10
CUSTOMER_HISTORY_LIMIT = 20


@dataclass(frozen=True)
class TextReply:
    text: str


@dataclass(frozen=True)
class DocumentReply:
    path: Path
    caption: str


Reply = TextReply | DocumentReply


class IdentityGateway(Protocol):
    """Maps a transport-level sender id to the shop it is logged into."""

    def resolve_shop(self, raw_id: str) -> Optional[str]:
        ...


@dataclass
class Session:
    """Everything a handler needs for one command."""

    context: RuntimeContext
    shop_id: str
    formatter: ReplyFormatter
    renderer: ReportRenderer


Handler = Callable[[Session, Intent], Reply]
HANDLERS: Dict[Type[Intent], Handler] = {}

# Intents that never write to the workbook; everything else is saved after it runs.
READ_ONLY_INTENTS = (
    interpreter.ShowHelp,
    interpreter.ListProducts,
    interpreter.ShowLowStock,
    interpreter.ShowCreditHistory,
    interpreter.ListCustomers,
    interpreter.ShowCustomer,
    interpreter.ListOrders,
    interpreter.ShowOrder,
    interpreter.ShowRecentSales,
    interpreter.ShowRefunds,
    interpreter.ListLayByes,
    interpreter.ListExpenses,
    interpreter.ShowExpenseBreakdown,
    interpreter.ShowProfit,
    interpreter.ShowCashFlow,
    interpreter.ShowBestSellers,
    interpreter.ExportReport,
)


def handles(intent_type: Type[Intent]) -> Callable[[Handler], Handler]:
    def register(func: Handler) -> Handler:
        if intent_type in HANDLERS:
            raise ValueError(f"Duplicate handler for {intent_type.__name__}")
        HANDLERS[intent_type] = func
        return func

    return register


def _reply(session: Session, result: Result[T], render: Callable[[T], str]) -> TextReply:
    if not result.ok:
        return TextReply(session.formatter.error(result.error))
    return TextReply(render(result.value))  # type: ignore[arg-type]


def _requests(items: tuple[ItemSpec, ...]) -> List[LineRequest]:
    return [LineRequest(product_id=item.product_id or "", quantity=item.quantity, price=item.price) for item in items]


def _customer_names(session: Session) -> Dict[str, str]:
    return {row.customer_id: row.name for row in customers.list_customers(session.context, session.shop_id)}


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def product_resolver(context: RuntimeContext, shop_id: str) -> interpreter.ProductResolver:
    """Return a resolver mapping product names to ids of active products."""

    def resolve(name: str) -> Optional[str]:
        product = catalog.find_product_by_name(context, shop_id, name)
        return product.product_id if product is not None else None

    return resolve


def handle_command(
    context: RuntimeContext,
    shop_id: str,
    text: str,
    *,
    renderer: Optional[ReportRenderer] = None,
    autosave: bool = False,
) -> Reply:
    """Interpret and execute one command for an already resolved shop.

    Args:
        context (RuntimeContext): Runtime context shared by all commands.
        shop_id (str): Tenant the command runs for.
        text (str): Raw command text.
        renderer (ReportRenderer | None): Exporter for ``export`` commands;
            defaults to :class:`XlsxReportRenderer`.
        autosave (bool): Persist the workbook after a mutating command.

    Returns:
        Reply: Text to show, or a document to send with a caption.
    """

    formatter = ReplyFormatter(context.settings.currency_symbol)
    session = Session(
        context=context,
        shop_id=shop_id,
        formatter=formatter,
        renderer=renderer or XlsxReportRenderer(formatter),
    )
    try:
        intent = interpreter.interpret(text, resolve_product=product_resolver(context, shop_id))
        if isinstance(intent, ParseError):
            return TextReply(formatter.error(intent))

        handler = HANDLERS[type(intent)]
        log.debug("Dispatching %s for shop '%s'", type(intent).__name__, shop_id)
        try:
            reply = handler(session, intent)
        except BusinessRuleViolation as exc:
            log.warning("Command '%s' rejected: %s", text, exc.message)
            reply = TextReply(formatter.error(exc))

        if autosave and not isinstance(intent, READ_ONLY_INTENTS):
            core_logic.persist_context(context)
        return reply
    except PersistenceError:
        log.exception("Storage failure while handling '%s' for shop '%s'", text, shop_id)
        return TextReply(GENERIC_FAILURE)
    except Exception:
        log.exception("Unexpected failure while handling '%s' for shop '%s'", text, shop_id)
        return TextReply(GENERIC_FAILURE)


def handle_incoming_text(
    context: RuntimeContext,
    tenant_raw_id: str,
    text: str,
    identity: IdentityGateway,
    *,
    renderer: Optional[ReportRenderer] = None,
) -> Reply:
    """Entry point for message transports.

    The sender is resolved to a shop through ``identity``; unknown senders get
    a log-in prompt and nothing runs. Successful mutations are saved at once.
    """

    shop_id = identity.resolve_shop(tenant_raw_id)
    if not shop_id:
        log.warning("Rejected command from unregistered sender '%s'", tenant_raw_id)
        return TextReply(UNKNOWN_SHOP)
    return handle_command(context, shop_id, text, renderer=renderer, autosave=True)


# ---------------------------------------------------------------------------
# Catalog and stock
# ---------------------------------------------------------------------------


@handles(interpreter.ShowHelp)
def _help(session: Session, intent: interpreter.ShowHelp) -> Reply:
    return TextReply(session.formatter.help(intent.topic))


@handles(interpreter.ListProducts)
def _list_products(session: Session, intent: interpreter.ListProducts) -> Reply:
    return TextReply(session.formatter.product_list(catalog.list_products(session.context, session.shop_id)))


@handles(interpreter.ShowLowStock)
def _low_stock(session: Session, intent: interpreter.ShowLowStock) -> Reply:
    return TextReply(session.formatter.low_stock(inventory.low_stock(session.context, session.shop_id)))


@handles(interpreter.AddProduct)
def _add_product(session: Session, intent: interpreter.AddProduct) -> Reply:
    result = catalog.add_product(
        session.context,
        session.shop_id,
        intent.name,
        intent.price,
        stock=intent.stock,
        low_stock_threshold=intent.threshold,
        cost_price=intent.cost,
    )
    return _reply(session, result, session.formatter.product_added)


@handles(interpreter.AdjustStock)
def _adjust_stock(session: Session, intent: interpreter.AdjustStock) -> Reply:
    product = catalog.require_product_by_name(session.context, session.shop_id, intent.name)
    if intent.mode == "set":
        result = inventory.set_stock(session.context, session.shop_id, product.product_id, intent.quantity)
    else:
        delta = intent.quantity if intent.mode == "add" else -intent.quantity
        result = inventory.adjust_stock(session.context, session.shop_id, product.product_id, delta)
    return _reply(session, result, lambda updated: session.formatter.stock_updated(updated, product.stock))


@handles(interpreter.SetPrice)
def _set_price(session: Session, intent: interpreter.SetPrice) -> Reply:
    return _edit(session, interpreter.EditProduct(name=intent.name, price=intent.price))


@handles(interpreter.SetThreshold)
def _set_threshold(session: Session, intent: interpreter.SetThreshold) -> Reply:
    return _edit(session, interpreter.EditProduct(name=intent.name, threshold=intent.threshold))


@handles(interpreter.EditProduct)
def _edit(session: Session, intent: interpreter.EditProduct) -> Reply:
    ctx, shop = session.context, session.shop_id
    product = catalog.require_product_by_name(ctx, shop, intent.name)
    product = inventory.edit_product(
        ctx,
        shop,
        product.product_id,
        price=intent.price,
        cost_price=intent.cost,
        stock=intent.stock,
        threshold=intent.threshold,
        new_name=intent.new_name,
    ).unwrap()

    money = session.formatter.money
    changes: List[str] = []
    if intent.price is not None:
        changes.append(f"price {money(intent.price)}")
    if intent.cost is not None:
        changes.append(f"cost {money(intent.cost)}")
    if intent.stock is not None:
        changes.append(f"stock {intent.stock}")
    if intent.threshold is not None:
        changes.append(f"threshold {intent.threshold}")
    if intent.new_name is not None:
        changes.append(f"name {product.product_name}")
    return TextReply(session.formatter.product_updated(product, changes))


@handles(interpreter.DeleteProduct)
def _delete_product(session: Session, intent: interpreter.DeleteProduct) -> Reply:
    product = catalog.require_product_by_name(session.context, session.shop_id, intent.name)
    if not intent.confirmed:
        count = sales.count_sales_for_product(session.context, session.shop_id, product.product_id)
        return TextReply(session.formatter.delete_confirmation(product, count))
    result = inventory.archive(session.context, session.shop_id, product.product_id)
    return _reply(session, result, session.formatter.product_deleted)


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


@handles(interpreter.Sell)
def _sell(session: Session, intent: interpreter.Sell) -> Reply:
    customer = None
    if intent.customer:
        customer = customers.require_customer(session.context, session.shop_id, intent.customer)
    sale = sales.record_sale(
        session.context,
        session.shop_id,
        _requests(intent.items),
        customer_id=customer.customer_id if customer else None,
    ).unwrap()
    if customer is not None:
        customer = customers.get_customer(session.context, session.shop_id, customer.customer_id)
    return TextReply(session.formatter.sale_recorded(sale, customer))


@handles(interpreter.ShowRecentSales)
def _recent_sales(session: Session, intent: interpreter.ShowRecentSales) -> Reply:
    return TextReply(session.formatter.recent_sales(sales.recent_sales(session.context, session.shop_id)))


@handles(interpreter.CancelLastSale)
def _cancel_last(session: Session, intent: interpreter.CancelLastSale) -> Reply:
    result = sales.cancel_last_sale(session.context, session.shop_id, intent.reason)
    return _reply(session, result, session.formatter.sale_cancelled)


@handles(interpreter.CancelSale)
def _cancel_sale(session: Session, intent: interpreter.CancelSale) -> Reply:
    sale = sales.find_by_id_or_index(session.context, session.shop_id, intent.identifier)
    result = sales.cancel_sale(session.context, session.shop_id, sale.sale_id, intent.reason)
    return _reply(session, result, session.formatter.sale_cancelled)


@handles(interpreter.ShowRefunds)
def _refunds(session: Session, intent: interpreter.ShowRefunds) -> Reply:
    window = financials.period_window(intent.period)
    cancelled = sales.refunds(session.context, session.shop_id, window.start, window.end)
    return TextReply(session.formatter.refunds(cancelled, intent.period))


# ---------------------------------------------------------------------------
# Customers and credit
# ---------------------------------------------------------------------------


@handles(interpreter.AddCustomer)
def _add_customer(session: Session, intent: interpreter.AddCustomer) -> Reply:
    result = customers.add_customer(session.context, session.shop_id, intent.name, intent.phone, email=intent.email)
    return _reply(session, result, session.formatter.customer_added)


@handles(interpreter.SetCreditLimit)
def _set_credit_limit(session: Session, intent: interpreter.SetCreditLimit) -> Reply:
    customer = customers.require_customer(session.context, session.shop_id, intent.customer)
    result = customers.set_credit_limit(session.context, session.shop_id, customer.customer_id, intent.amount)
    return _reply(session, result, session.formatter.credit_limit_set)


@handles(interpreter.ListCustomers)
def _list_customers(session: Session, intent: interpreter.ListCustomers) -> Reply:
    limit = TOP_CUSTOMERS_LIMIT if intent.customer_filter == "top" else None
    rows = customers.list_customers(session.context, session.shop_id, customer_filter=intent.customer_filter, limit=limit)
    return TextReply(session.formatter.customer_list(rows, intent.customer_filter))


@handles(interpreter.ShowCustomer)
def _show_customer(session: Session, intent: interpreter.ShowCustomer) -> Reply:
    customer = customers.require_customer(session.context, session.shop_id, intent.customer)
    history = sales.customer_sales(session.context, session.shop_id, customer.customer_id, CUSTOMER_HISTORY_LIMIT)
    return TextReply(session.formatter.customer_profile(customer, history))


@handles(interpreter.GrantCredit)
def _grant_credit(session: Session, intent: interpreter.GrantCredit) -> Reply:
    customer = customers.require_customer(session.context, session.shop_id, intent.customer)
    entry = credit.add_credit(
        session.context,
        session.shop_id,
        customer.customer_id,
        intent.amount,
        description=intent.description,
    ).unwrap()
    customer = customers.get_customer(session.context, session.shop_id, customer.customer_id)
    return TextReply(session.formatter.credit_granted(entry, customer))


@handles(interpreter.CreditSale)
def _credit_sale(session: Session, intent: interpreter.CreditSale) -> Reply:
    customer = customers.require_customer(session.context, session.shop_id, intent.customer)
    outcome = credit.record_credit_sale(
        session.context,
        session.shop_id,
        customer.customer_id,
        _requests(intent.items),
    ).unwrap()
    customer = customers.get_customer(session.context, session.shop_id, customer.customer_id)
    return TextReply(session.formatter.credit_sale_recorded(outcome, customer))


@handles(interpreter.RecordPayment)
def _payment(session: Session, intent: interpreter.RecordPayment) -> Reply:
    customer = customers.require_customer(session.context, session.shop_id, intent.customer)
    entry = credit.record_payment(
        session.context,
        session.shop_id,
        customer.customer_id,
        intent.amount,
        description=intent.description,
    ).unwrap()
    customer = customers.get_customer(session.context, session.shop_id, customer.customer_id)
    return TextReply(session.formatter.payment_recorded(entry, customer, intent.amount))


@handles(interpreter.ShowCreditHistory)
def _credit_history(session: Session, intent: interpreter.ShowCreditHistory) -> Reply:
    customer = customers.require_customer(session.context, session.shop_id, intent.customer)
    entries = credit.credit_history(session.context, session.shop_id, customer.customer_id, limit=20)
    return TextReply(session.formatter.credit_history(customer, entries))


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@handles(interpreter.PlaceOrder)
def _place_order(session: Session, intent: interpreter.PlaceOrder) -> Reply:
    customer = customers.require_customer(session.context, session.shop_id, intent.customer)
    result = orders.place_order(
        session.context,
        session.shop_id,
        _requests(intent.items),
        customer_id=customer.customer_id,
        order_type=intent.order_type,
        notes=intent.notes,
    )
    return _reply(session, result, lambda order: session.formatter.order_placed(order, customer.name))


@handles(interpreter.ListOrders)
def _list_orders(session: Session, intent: interpreter.ListOrders) -> Reply:
    rows = orders.list_orders(session.context, session.shop_id, intent.status)
    return TextReply(session.formatter.order_list(rows, intent.status, _customer_names(session)))


@handles(interpreter.ShowOrder)
def _show_order(session: Session, intent: interpreter.ShowOrder) -> Reply:
    order = orders.find_order(session.context, session.shop_id, intent.reference)
    name = _customer_names(session).get(order.record.customer_id or "")
    return TextReply(session.formatter.order_details(order, name))


@handles(interpreter.ChangeOrderStatus)
def _change_order_status(session: Session, intent: interpreter.ChangeOrderStatus) -> Reply:
    order = orders.find_order(session.context, session.shop_id, intent.reference)
    result = orders.transition(session.context, session.shop_id, order.order_id, intent.target, notes=intent.notes)
    return _reply(session, result, session.formatter.order_transitioned)


# ---------------------------------------------------------------------------
# Lay-byes
# ---------------------------------------------------------------------------


@handles(interpreter.OpenLayBye)
def _open_laybye(session: Session, intent: interpreter.OpenLayBye) -> Reply:
    customer = customers.require_customer(session.context, session.shop_id, intent.customer)
    result = laybye.create(
        session.context,
        session.shop_id,
        _requests(intent.items),
        customer_id=customer.customer_id,
        deposit=intent.deposit,
        method=intent.method,
    )
    return _reply(session, result, lambda plan: session.formatter.laybye_opened(plan, customer.name))


@handles(interpreter.PayLayBye)
def _pay_laybye(session: Session, intent: interpreter.PayLayBye) -> Reply:
    customer = customers.require_customer(session.context, session.shop_id, intent.customer)
    plan = laybye.find_active_for_customer(session.context, session.shop_id, customer.customer_id)
    result = laybye.add_installment(session.context, session.shop_id, plan.laybye_id, intent.amount, intent.method)
    return _reply(session, result, session.formatter.laybye_payment)


@handles(interpreter.CancelLayBye)
def _cancel_laybye(session: Session, intent: interpreter.CancelLayBye) -> Reply:
    customer = customers.require_customer(session.context, session.shop_id, intent.customer)
    plan = laybye.find_active_for_customer(session.context, session.shop_id, customer.customer_id)
    result = laybye.cancel_laybye(session.context, session.shop_id, plan.laybye_id)
    return _reply(session, result, session.formatter.laybye_cancelled)


@handles(interpreter.ListLayByes)
def _list_laybyes(session: Session, intent: interpreter.ListLayByes) -> Reply:
    plans = laybye.list_laybyes(session.context, session.shop_id)
    return TextReply(session.formatter.laybye_list(plans, _customer_names(session)))


# ---------------------------------------------------------------------------
# Expenses and reports
# ---------------------------------------------------------------------------


@handles(interpreter.RecordExpense)
def _record_expense(session: Session, intent: interpreter.RecordExpense) -> Reply:
    result = expenses.record_expense(
        session.context,
        session.shop_id,
        intent.amount,
        intent.description,
        intent.category,
        intent.payment_method,
        receipt_number=intent.receipt_number,
    )
    return _reply(session, result, session.formatter.expense_recorded)


@handles(interpreter.ListExpenses)
def _list_expenses(session: Session, intent: interpreter.ListExpenses) -> Reply:
    window = financials.period_window(intent.period)
    rows = expenses.list_expenses(session.context, session.shop_id, window.start, window.end)
    return TextReply(session.formatter.expense_list(rows, intent.period))


@handles(interpreter.ShowExpenseBreakdown)
def _expense_breakdown(session: Session, intent: interpreter.ShowExpenseBreakdown) -> Reply:
    window = financials.period_window(intent.period)
    totals = expenses.breakdown(session.context, session.shop_id, window.start, window.end)
    return TextReply(session.formatter.expense_breakdown(totals, intent.period))


@handles(interpreter.ShowProfit)
def _profit(session: Session, intent: interpreter.ShowProfit) -> Reply:
    report = financials.report_for_period(session.context, session.shop_id, intent.period)
    return TextReply(session.formatter.profit_report(report))


@handles(interpreter.ShowCashFlow)
def _cash_flow(session: Session, intent: interpreter.ShowCashFlow) -> Reply:
    report = financials.report_for_period(session.context, session.shop_id, intent.period)
    return TextReply(session.formatter.cash_flow_report(report))


@handles(interpreter.ShowBestSellers)
def _best_sellers(session: Session, intent: interpreter.ShowBestSellers) -> Reply:
    window = financials.period_window(intent.period)
    ranked = financials.best_sellers(session.context, session.shop_id, window.start, window.end, limit=BEST_SELLERS_LIMIT)
    return TextReply(session.formatter.best_sellers(ranked, intent.period))


@handles(interpreter.ExportReport)
def _export(session: Session, intent: interpreter.ExportReport) -> Reply:
    report_dir = session.context.settings.report_dir
    destination = report_dir / report_filename(session.shop_id, intent.kind, intent.period)
    if intent.kind == "best":
        window = financials.period_window(intent.period)
        ranked = financials.best_sellers(session.context, session.shop_id, window.start, window.end, limit=None)
        path = session.renderer.render_best_sellers(ranked, intent.period, destination)
    else:
        report = financials.report_for_period(session.context, session.shop_id, intent.period)
        path = session.renderer.render(report, destination)
    return DocumentReply(path=path, caption=session.formatter.export_caption(intent.kind, intent.period))
