"""Command interpreter for Shop Ledger.

Turns one line of user text into a typed intent. The leading verb is found by
longest token-prefix match against :data:`GRAMMAR`, so ``best``,
``best selling`` and ``bestselling`` (or ``cancel``, ``cancel sale`` and
``cancel order``) resolve the same way whatever order the table is written
in. Each verb has its own parse function.

:func:`interpret` never raises for malformed input: it returns a
:class:`ParseError` carrying a message and a usage hint.

Item lists are read as ``<qty> <name> [price]`` groups. After a name, a
decimal number is always a price; a whole number is a price only when it ends
the list or is followed by another number, otherwise it starts the next
group. Double quotes group several words into one token, which is how
multi-word product and customer names are written.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

from . import log
from .constants import ExpenseCategory, InstallmentMethod, OrderStatus, OrderType, PaymentMethod, ReportPeriod

ProductResolver = Callable[[str], Optional[str]]

_TOKEN_PATTERN = re.compile(r'"([^"]*)"|(\S+)')
_RECEIPT_PATTERN = re.compile(r"^(?=.*\d)[A-Z0-9-]{3,}$")
_WHOLE_PATTERN = re.compile(r"[0-9]+")
# Amounts at or above this cannot be written as cents.
MAX_AMOUNT = Decimal("1e12")


class ParseError(Exception):
    """User-displayable reason a command could not be understood."""

    def __init__(self, message: str, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ParseError) and (self.message, self.hint) == (other.message, other.hint)

    def __hash__(self) -> int:
        return hash((self.message, self.hint))


class Token(NamedTuple):
    text: str
    quoted: bool = False


# ---------------------------------------------------------------------------
# Intents
# ---------------------------------------------------------------------------


class Intent:
    """Base class of every parsed command."""


@dataclass(frozen=True)
class ItemSpec:
    """One ``<qty> <name> [price]`` group; ``product_id`` is set once resolved."""

    quantity: int
    name: str
    price: Optional[Decimal] = None
    product_id: Optional[str] = None


@dataclass(frozen=True)
class ShowHelp(Intent):
    topic: Optional[str] = None


@dataclass(frozen=True)
class ListProducts(Intent):
    pass


@dataclass(frozen=True)
class ShowLowStock(Intent):
    pass


@dataclass(frozen=True)
class AddProduct(Intent):
    name: str
    price: Decimal
    stock: int = 0
    threshold: Optional[int] = None
    cost: Optional[Decimal] = None


@dataclass(frozen=True)
class AdjustStock(Intent):
    """``mode`` is ``add``, ``remove`` or ``set``."""

    name: str
    quantity: int
    mode: str = "add"


@dataclass(frozen=True)
class SetPrice(Intent):
    name: str
    price: Decimal


@dataclass(frozen=True)
class SetThreshold(Intent):
    name: str
    threshold: int


@dataclass(frozen=True)
class EditProduct(Intent):
    name: str
    price: Optional[Decimal] = None
    stock: Optional[int] = None
    threshold: Optional[int] = None
    cost: Optional[Decimal] = None
    new_name: Optional[str] = None


@dataclass(frozen=True)
class DeleteProduct(Intent):
    name: str
    confirmed: bool = False


@dataclass(frozen=True)
class Sell(Intent):
    items: Tuple[ItemSpec, ...]
    customer: Optional[str] = None


@dataclass(frozen=True)
class CreditSale(Intent):
    customer: str
    items: Tuple[ItemSpec, ...]


@dataclass(frozen=True)
class GrantCredit(Intent):
    customer: str
    amount: Decimal
    description: Optional[str] = None


@dataclass(frozen=True)
class RecordPayment(Intent):
    customer: str
    amount: Decimal
    description: Optional[str] = None


@dataclass(frozen=True)
class ShowCreditHistory(Intent):
    customer: str


@dataclass(frozen=True)
class AddCustomer(Intent):
    name: str
    phone: str
    email: Optional[str] = None


@dataclass(frozen=True)
class SetCreditLimit(Intent):
    customer: str
    amount: Decimal


@dataclass(frozen=True)
class ListCustomers(Intent):
    customer_filter: str = "all"


@dataclass(frozen=True)
class ShowCustomer(Intent):
    customer: str


@dataclass(frozen=True)
class PlaceOrder(Intent):
    customer: str
    items: Tuple[ItemSpec, ...]
    order_type: OrderType = OrderType.PICKUP
    notes: Optional[str] = None


@dataclass(frozen=True)
class ListOrders(Intent):
    status: Optional[OrderStatus] = None


@dataclass(frozen=True)
class ShowOrder(Intent):
    reference: str


@dataclass(frozen=True)
class ChangeOrderStatus(Intent):
    reference: str
    target: OrderStatus
    notes: Optional[str] = None


@dataclass(frozen=True)
class ShowRecentSales(Intent):
    pass


@dataclass(frozen=True)
class CancelLastSale(Intent):
    reason: Optional[str] = None


@dataclass(frozen=True)
class CancelSale(Intent):
    identifier: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class ShowRefunds(Intent):
    period: ReportPeriod = ReportPeriod.MONTHLY


@dataclass(frozen=True)
class OpenLayBye(Intent):
    customer: str
    items: Tuple[ItemSpec, ...]
    deposit: Decimal = Decimal("0.00")
    method: InstallmentMethod = InstallmentMethod.CASH


@dataclass(frozen=True)
class PayLayBye(Intent):
    customer: str
    amount: Decimal
    method: InstallmentMethod = InstallmentMethod.CASH


@dataclass(frozen=True)
class CancelLayBye(Intent):
    customer: str


@dataclass(frozen=True)
class ListLayByes(Intent):
    pass


@dataclass(frozen=True)
class RecordExpense(Intent):
    amount: Decimal
    description: str
    category: ExpenseCategory = ExpenseCategory.OTHER
    payment_method: PaymentMethod = PaymentMethod.CASH
    receipt_number: Optional[str] = None


@dataclass(frozen=True)
class ListExpenses(Intent):
    period: ReportPeriod = ReportPeriod.DAILY


@dataclass(frozen=True)
class ShowExpenseBreakdown(Intent):
    period: ReportPeriod = ReportPeriod.MONTHLY


@dataclass(frozen=True)
class ShowProfit(Intent):
    period: ReportPeriod = ReportPeriod.DAILY


@dataclass(frozen=True)
class ShowCashFlow(Intent):
    period: ReportPeriod = ReportPeriod.DAILY


@dataclass(frozen=True)
class ShowBestSellers(Intent):
    period: ReportPeriod = ReportPeriod.WEEKLY


@dataclass(frozen=True)
class ExportReport(Intent):
    """``kind`` is ``cashflow`` or ``best``."""

    kind: str
    period: ReportPeriod


# ---------------------------------------------------------------------------
# Token helpers
# ---------------------------------------------------------------------------


def tokenize(raw_text: str) -> List[Token]:
    """Split on whitespace; a double-quoted span is one token."""

    tokens: List[Token] = []
    for quoted, bare in _TOKEN_PATTERN.findall(raw_text or ""):
        if bare:
            tokens.append(Token(bare))
        else:
            tokens.append(Token(quoted.strip(), quoted=True))
    return tokens


def _number(text: str) -> Optional[Decimal]:
    try:
        value = Decimal(text.strip().lstrip("$"))
    except InvalidOperation:
        return None
    if not value.is_finite() or abs(value) >= MAX_AMOUNT:
        return None
    return value


def _is_whole(text: str) -> bool:
    return _WHOLE_PATTERN.fullmatch(text) is not None


def _money(token: Optional[Token], usage: str, *, label: str = "amount") -> Decimal:
    value = _number(token.text) if token is not None and not token.quoted else None
    if value is None:
        raise ParseError(f"Invalid {label}: '{token.text if token else ''}'", usage)
    if value <= 0:
        raise ParseError(f"The {label} must be greater than zero", usage)
    return value.quantize(Decimal("0.01"))


def _count(token: Optional[Token], usage: str, *, label: str = "quantity") -> int:
    if token is None or not _is_whole(token.text):
        raise ParseError(f"Invalid {label}: '{token.text if token else ''}'", usage)
    return int(token.text)


def _join(tokens: Sequence[Token]) -> Optional[str]:
    text = " ".join(token.text for token in tokens).strip()
    return text or None


def _require(tokens: Sequence[Token], count: int, usage: str) -> None:
    if len(tokens) < count:
        raise ParseError("Missing details for this command", usage)


def _period(tokens: Sequence[Token], default: ReportPeriod, usage: str) -> ReportPeriod:
    if not tokens:
        return default
    word = tokens[0].text.lower()
    if word not in _PERIOD_WORDS:
        raise ParseError(f"Unknown period '{tokens[0].text}'", usage)
    return _PERIOD_WORDS[word]


_PERIOD_WORDS: Dict[str, ReportPeriod] = {
    "today": ReportPeriod.DAILY,
    "daily": ReportPeriod.DAILY,
    "day": ReportPeriod.DAILY,
    "yesterday": ReportPeriod.YESTERDAY,
    "week": ReportPeriod.WEEKLY,
    "weekly": ReportPeriod.WEEKLY,
    "month": ReportPeriod.MONTHLY,
    "monthly": ReportPeriod.MONTHLY,
}


def parse_items(
    tokens: Sequence[Token],
    usage: str,
    *,
    stop_words: frozenset[str] = frozenset(),
    allow_trailing: bool = False,
) -> Tuple[List[ItemSpec], int]:
    """Read ``<qty> <name> [price]`` groups from the start of ``tokens``.

    Returns:
        tuple[list[ItemSpec], int]: The items and the index of the first
            token not consumed.

    Raises:
        ParseError: If no item is found, a quantity is invalid, or (without
            ``allow_trailing``) tokens are left over.
    """

    items: List[ItemSpec] = []
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token.quoted or not _is_whole(token.text):
            if allow_trailing and items:
                break
            raise ParseError(f"Invalid quantity: '{token.text}'", usage)
        quantity = int(token.text)
        if quantity <= 0:
            raise ParseError("Quantities must be greater than zero", usage)
        if index + 1 >= len(tokens):
            raise ParseError(f"Missing product name after {quantity}", usage)
        name = tokens[index + 1].text
        index += 2

        price: Optional[Decimal] = None
        if index < len(tokens) and not tokens[index].quoted:
            candidate = tokens[index]
            value = _number(candidate.text)
            if value is not None:
                following = tokens[index + 1] if index + 1 < len(tokens) else None
                ends_group = (
                    not _is_whole(candidate.text)
                    or following is None
                    or following.text.lower() in stop_words
                    or (not following.quoted and _number(following.text) is not None)
                )
                if ends_group:
                    if value < 0:
                        raise ParseError(f"Invalid price for {name}: {candidate.text}", usage)
                    price = value.quantize(Decimal("0.01"))
                    index += 1
        items.append(ItemSpec(quantity=quantity, name=name, price=price))
        if index < len(tokens) and tokens[index].text.lower() in stop_words:
            break

    if not items:
        raise ParseError("At least one item is required", usage)
    return items, index


def _resolve_items(items: Sequence[ItemSpec], resolve_product: Optional[ProductResolver]) -> Tuple[ItemSpec, ...]:
    if resolve_product is None:
        return tuple(items)
    resolved = []
    for item in items:
        product_id = resolve_product(item.name)
        if product_id is None:
            raise ParseError(f"Product '{item.name}' not found", "Type 'list' to see your products.")
        resolved.append(ItemSpec(item.quantity, item.name, item.price, product_id))
    return tuple(resolved)


# ---------------------------------------------------------------------------
# Verb parsers
# ---------------------------------------------------------------------------

USAGE = {
    "add": "add <product> <price> [stock <n>] [threshold <n>] [cost <n>]",
    "stock": "stock [+|-|=]<product> <n>",
    "price": "price <product> <new price>",
    "threshold": "threshold <product> <n>",
    "edit": "edit <product> <price|stock|threshold|cost|name> <value>",
    "delete": "delete <product> [confirm]",
    "sell": "sell <qty> <product> [price] ...",
    "sell to": "sell to <customer> <qty> <product> [price] ...",
    "credit": "credit <customer> <amount> | credit <customer> <qty> <product> ...",
    "credit sale": "credit sale to <customer> <qty> <product> ...",
    "credit history": "credit history <customer>",
    "payment": "payment <customer> <amount> [note]",
    "customer add": "customer add <name> <phone> [email]",
    "customer limit": "customer limit <customer> <amount>",
    "customers": "customers [all|active|top]",
    "order": "order <customer> <qty> <product> ... [pickup|delivery|reservation] [notes]",
    "orders": "orders [pending|confirmed|ready|completed|cancelled]",
    "order details": "order details <ref>",
    "order status": "confirm|ready|complete|cancel order <ref> [notes]",
    "cancel": "cancel | cancel last [reason] | cancel sale <n|id> [reason] | cancel refunds [period]",
    "laybye": "laybye [for] <customer> <qty> <product> ... [deposit <amount>] [cash|bank|mobile]",
    "laybye pay": "laybye pay <customer> <amount> [cash|bank|mobile]",
    "laybye cancel": "laybye cancel <customer>",
    "expense": 'expense <amount> <description> [category] [method] [receipt]  e.g. expense 1000 rent bank "July rent"',
    "expenses": "expenses [today|yesterday|week|month] | expenses breakdown [period]",
    "profit": "profit [today|yesterday|week|month]",
    "best": "best [today|week|month]",
    "export": "export <daily|weekly|monthly|best> [today|month]",
}

_ORDER_TYPES = frozenset(order_type.value for order_type in OrderType)
_INSTALLMENT_METHODS = frozenset(method.value for method in InstallmentMethod)


def _parse_help(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    return ShowHelp(topic=_join(args))


def _parse_list(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    return ListProducts()


def _parse_low_stock(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    return ShowLowStock()


def _parse_add(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    usage = USAGE["add"]
    price_at = next((i for i, tok in enumerate(args) if not tok.quoted and _number(tok.text) is not None), None)
    if price_at is None or price_at == 0:
        raise ParseError("Give the product name followed by its price", usage)
    name = _join(args[:price_at])
    price = _money(args[price_at], usage, label="price")

    modifiers = [tok.text.lower() for tok in args[price_at + 1 :]]
    rest = args[price_at + 1 :]
    values: Dict[str, Token] = {}
    for keyword in ("stock", "threshold", "cost"):
        if keyword in modifiers:
            position = modifiers.index(keyword)
            if position + 1 >= len(rest):
                raise ParseError(f"Missing value after '{keyword}'", usage)
            values[keyword] = rest[position + 1]

    stock = _count(values["stock"], usage, label="stock") if "stock" in values else 0
    threshold = _count(values["threshold"], usage, label="threshold") if "threshold" in values else None
    cost = None
    if "cost" in values:
        cost = _number(values["cost"].text)
        if cost is None or cost < 0:
            raise ParseError(f"Invalid cost: '{values['cost'].text}'", usage)
        cost = cost.quantize(Decimal("0.01"))
    return AddProduct(name=name or "", price=price, stock=stock, threshold=threshold, cost=cost)


def _parse_stock(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    usage = USAGE["stock"]
    _require(args, 2, usage)
    name = _join(args[:-1]) or ""
    mode = "add"
    if name and name[0] in "+-=":
        mode = {"+": "add", "-": "remove", "=": "set"}[name[0]]
        name = name[1:].strip()
    if not name:
        raise ParseError("Missing product name", usage)
    return AdjustStock(name=name, quantity=_count(args[-1], usage), mode=mode)


def _parse_price(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    usage = USAGE["price"]
    _require(args, 2, usage)
    return SetPrice(name=_join(args[:-1]) or "", price=_money(args[-1], usage, label="price"))


def _parse_threshold(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    usage = USAGE["threshold"]
    _require(args, 2, usage)
    return SetThreshold(name=_join(args[:-1]) or "", threshold=_count(args[-1], usage, label="threshold"))


_EDIT_FIELDS = ("price", "stock", "threshold", "cost", "name")


def _parse_edit(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    usage = USAGE["edit"]
    _require(args, 3, usage)
    field_at = next(
        (i for i, tok in enumerate(args) if i > 0 and not tok.quoted and tok.text.lower() in _EDIT_FIELDS),
        None,
    )
    if field_at is None:
        raise ParseError("Say which field to change", usage)

    changes: Dict[str, object] = {}
    index = field_at
    while index < len(args):
        keyword = args[index].text.lower()
        if args[index].quoted or keyword not in _EDIT_FIELDS:
            raise ParseError(f"Unknown field '{args[index].text}'", usage)
        if index + 1 >= len(args):
            raise ParseError(f"Missing value after '{keyword}'", usage)
        value = args[index + 1]
        if keyword == "price":
            changes["price"] = _money(value, usage, label="price")
        elif keyword == "cost":
            cost = _number(value.text)
            if cost is None or cost < 0:
                raise ParseError(f"Invalid cost: '{value.text}'", usage)
            changes["cost"] = cost.quantize(Decimal("0.01"))
        elif keyword == "name":
            changes["new_name"] = value.text
        else:
            changes[keyword] = _count(value, usage, label=keyword)
        index += 2
    return EditProduct(name=_join(args[:field_at]) or "", **changes)  # type: ignore[arg-type]


def _parse_delete(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    usage = USAGE["delete"]
    _require(args, 1, usage)
    confirmed = len(args) > 1 and args[-1].text.lower() == "confirm"
    name_tokens = args[:-1] if confirmed else args
    return DeleteProduct(name=_join(name_tokens) or "", confirmed=confirmed)


def _parse_sell(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    items, _ = parse_items(args, USAGE["sell"])
    return Sell(items=_resolve_items(items, resolve))


def _customer_then_items(args: Sequence[Token], usage: str, resolve: Optional[ProductResolver]) -> Tuple[str, Tuple[ItemSpec, ...]]:
    _require(args, 3, usage)
    items, _ = parse_items(args[1:], usage)
    return args[0].text, _resolve_items(items, resolve)


def _parse_sell_to(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    customer, items = _customer_then_items(args, USAGE["sell to"], resolve)
    return Sell(items=items, customer=customer)


def _parse_credit_sale(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    customer, items = _customer_then_items(args, USAGE["credit sale"], resolve)
    return CreditSale(customer=customer, items=items)


def _parse_credit(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    """``credit <who> <amount> [note]`` or ``credit <who> <qty> <product> ...``.

    The amount form applies when a single value follows the customer or the
    value is not a whole number (``50.00``, ``$50``).
    """

    usage = USAGE["credit"]
    _require(args, 2, usage)
    first = args[1]
    if len(args) == 2 or not _is_whole(first.text):
        return GrantCredit(customer=args[0].text, amount=_money(first, usage), description=_join(args[2:]))
    customer, items = _customer_then_items(args, usage, resolve)
    return CreditSale(customer=customer, items=items)


def _parse_credit_history(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    usage = USAGE["credit history"]
    _require(args, 1, usage)
    return ShowCreditHistory(customer=args[0].text)


def _parse_payment(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    usage = USAGE["payment"]
    _require(args, 2, usage)
    return RecordPayment(customer=args[0].text, amount=_money(args[1], usage), description=_join(args[2:]))


def _parse_customer_add(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    usage = USAGE["customer add"]
    _require(args, 2, usage)
    email = args[2].text if len(args) > 2 else None
    return AddCustomer(name=args[0].text, phone=args[1].text, email=email)


def _parse_customer_limit(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    usage = USAGE["customer limit"]
    _require(args, 2, usage)
    amount = _number(args[1].text)
    if amount is None or amount < 0:
        raise ParseError(f"Invalid amount: '{args[1].text}'", usage)
    return SetCreditLimit(customer=args[0].text, amount=amount.quantize(Decimal("0.01")))


def _parse_customers(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    if not args:
        return ListCustomers()
    word = args[0].text.lower()
    if word not in ("all", "active", "top"):
        raise ParseError(f"Unknown customer filter '{args[0].text}'", USAGE["customers"])
    return ListCustomers(customer_filter=word)


def _parse_customer(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    if not args or (len(args) == 1 and args[0].text.lower() in ("all", "active", "top")):
        return _parse_customers(args, resolve)
    return ShowCustomer(customer=_join(args) or "")


def _parse_order(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    usage = USAGE["order"]
    _require(args, 3, usage)
    items, stop = parse_items(args[1:], usage, stop_words=_ORDER_TYPES, allow_trailing=True)
    rest = list(args[1 + stop :])
    order_type = OrderType.PICKUP
    if rest and not rest[0].quoted and rest[0].text.lower() in _ORDER_TYPES:
        order_type = OrderType(rest.pop(0).text.lower())
    return PlaceOrder(
        customer=args[0].text,
        items=_resolve_items(items, resolve),
        order_type=order_type,
        notes=_join(rest),
    )


def _parse_orders(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    if not args or args[0].text.lower() == "all":
        return ListOrders()
    try:
        return ListOrders(status=OrderStatus(args[0].text.lower()))
    except ValueError as exc:
        raise ParseError(f"Unknown order status '{args[0].text}'", USAGE["orders"]) from exc


def _parse_order_details(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    usage = USAGE["order details"]
    _require(args, 1, usage)
    return ShowOrder(reference=args[0].text)


def _order_status_parser(target: OrderStatus) -> Callable[[Sequence[Token], Optional[ProductResolver]], Intent]:
    def parse(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
        usage = USAGE["order status"]
        _require(args, 1, usage)
        return ChangeOrderStatus(reference=args[0].text, target=target, notes=_join(args[1:]))

    return parse


def _parse_cancel(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    if not args:
        return ShowRecentSales()
    if _is_whole(args[0].text):
        return CancelSale(identifier=args[0].text, reason=_join(args[1:]))
    raise ParseError(f"Unknown cancel command '{args[0].text}'", USAGE["cancel"])


def _parse_cancel_last(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    return CancelLastSale(reason=_join(args))


def _parse_cancel_sale(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    usage = USAGE["cancel"]
    _require(args, 1, usage)
    return CancelSale(identifier=args[0].text, reason=_join(args[1:]))


def _parse_cancel_refunds(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    return ShowRefunds(period=_period(args, ReportPeriod.MONTHLY, USAGE["cancel"]))


def _parse_laybye(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    usage = USAGE["laybye"]
    if args and args[0].text.lower() == "for" and not args[0].quoted:
        args = args[1:]
    _require(args, 3, usage)
    stop_words = frozenset({"deposit"}) | _INSTALLMENT_METHODS
    items, stop = parse_items(args[1:], usage, stop_words=stop_words, allow_trailing=True)
    rest = list(args[1 + stop :])

    deposit = Decimal("0.00")
    method = InstallmentMethod.CASH
    while rest:
        word = rest.pop(0)
        lowered = word.text.lower()
        if lowered == "deposit":
            deposit = _money(rest.pop(0) if rest else None, usage, label="deposit")
        elif lowered in _INSTALLMENT_METHODS:
            method = InstallmentMethod(lowered)
        else:
            raise ParseError(f"Unexpected '{word.text}'", usage)
    return OpenLayBye(customer=args[0].text, items=_resolve_items(items, resolve), deposit=deposit, method=method)


def _method(tokens: Sequence[Token], usage: str) -> InstallmentMethod:
    if not tokens:
        return InstallmentMethod.CASH
    try:
        return InstallmentMethod(tokens[0].text.lower())
    except ValueError as exc:
        raise ParseError(f"Unknown payment method '{tokens[0].text}'", usage) from exc


def _parse_laybye_pay(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    usage = USAGE["laybye pay"]
    _require(args, 2, usage)
    return PayLayBye(customer=args[0].text, amount=_money(args[1], usage), method=_method(args[2:], usage))


def _parse_laybye_cancel(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    usage = USAGE["laybye cancel"]
    _require(args, 1, usage)
    return CancelLayBye(customer=args[0].text)


def _parse_laybyes(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    return ListLayByes()


def _category(word: str) -> Optional[ExpenseCategory]:
    try:
        return ExpenseCategory(word.lower().replace("-", "_"))
    except ValueError:
        return None


def _payment_method(word: str) -> Optional[PaymentMethod]:
    try:
        return PaymentMethod(word.lower())
    except ValueError:
        return None


def _parse_expense(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    """Read an expense.

    With a quoted description the words after it are category, method and
    receipt, in that order. Otherwise known categories, methods and
    receipt-like codes are picked out of the words and the rest is the
    description.
    """

    usage = USAGE["expense"]
    _require(args, 2, usage)
    amount = _money(args[0], usage)
    words = list(args[1:])

    category: Optional[ExpenseCategory] = None
    method: Optional[PaymentMethod] = None
    receipt: Optional[str] = None
    description_tokens: List[Token] = []

    quoted = [i for i, tok in enumerate(words) if tok.quoted]
    if quoted:
        description_tokens = [words[quoted[0]]]
        trailing = [tok for i, tok in enumerate(words) if i != quoted[0]]
        for token in trailing:
            if category is None and _category(token.text):
                category = _category(token.text)
            elif method is None and _payment_method(token.text):
                method = _payment_method(token.text)
            elif receipt is None:
                receipt = token.text
            else:
                raise ParseError(f"Unexpected '{token.text}'", usage)
    else:
        for token in reversed(words):
            if method is None and _payment_method(token.text):
                method = _payment_method(token.text)
            elif category is None and _category(token.text):
                category = _category(token.text)
            elif receipt is None and _RECEIPT_PATTERN.match(token.text):
                receipt = token.text
            else:
                description_tokens.insert(0, token)

    description = _join(description_tokens)
    if not description:
        if category is None:
            raise ParseError("An expense needs a description", usage)
        description = category.value.replace("_", " ").title()
    return RecordExpense(
        amount=amount,
        description=description,
        category=category or ExpenseCategory.OTHER,
        payment_method=method or PaymentMethod.CASH,
        receipt_number=receipt,
    )


def _parse_expenses(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    return ListExpenses(period=_period(args, ReportPeriod.DAILY, USAGE["expenses"]))


def _parse_expense_breakdown(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    return ShowExpenseBreakdown(period=_period(args, ReportPeriod.MONTHLY, USAGE["expenses"]))


def _parse_profit(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    return ShowProfit(period=_period(args, ReportPeriod.DAILY, USAGE["profit"]))


def _cash_flow_parser(period: ReportPeriod) -> Callable[[Sequence[Token], Optional[ProductResolver]], Intent]:
    def parse(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
        return ShowCashFlow(period=period)

    return parse


def _parse_best(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    return ShowBestSellers(period=_period(args, ReportPeriod.WEEKLY, USAGE["best"]))


_EXPORT_KINDS = {
    "daily": ("cashflow", ReportPeriod.DAILY),
    "today": ("cashflow", ReportPeriod.DAILY),
    "weekly": ("cashflow", ReportPeriod.WEEKLY),
    "week": ("cashflow", ReportPeriod.WEEKLY),
    "monthly": ("cashflow", ReportPeriod.MONTHLY),
    "month": ("cashflow", ReportPeriod.MONTHLY),
    "best": ("best", ReportPeriod.WEEKLY),
    "bestsellers": ("best", ReportPeriod.WEEKLY),
}


def _parse_export(args: Sequence[Token], resolve: Optional[ProductResolver]) -> Intent:
    usage = USAGE["export"]
    word = args[0].text.lower() if args else "daily"
    if word not in _EXPORT_KINDS:
        raise ParseError(f"Unknown report '{args[0].text}'", usage)
    kind, period = _EXPORT_KINDS[word]
    if kind == "best":
        period = _period(args[1:], ReportPeriod.WEEKLY, usage)
    return ExportReport(kind=kind, period=period)


Parser = Callable[[Sequence[Token], Optional[ProductResolver]], Intent]

GRAMMAR: Dict[Tuple[str, ...], Parser] = {
    ("help",): _parse_help,
    ("list",): _parse_list,
    ("products",): _parse_list,
    ("low", "stock"): _parse_low_stock,
    ("lowstock",): _parse_low_stock,
    ("add",): _parse_add,
    ("stock",): _parse_stock,
    ("price",): _parse_price,
    ("threshold",): _parse_threshold,
    ("edit",): _parse_edit,
    ("delete",): _parse_delete,
    ("sell",): _parse_sell,
    ("sell", "to"): _parse_sell_to,
    ("credit",): _parse_credit,
    ("credit", "sale", "to"): _parse_credit_sale,
    ("credit", "history"): _parse_credit_history,
    ("payment",): _parse_payment,
    ("customer",): _parse_customer,
    ("customers",): _parse_customers,
    ("customer", "add"): _parse_customer_add,
    ("customers", "add"): _parse_customer_add,
    ("customer", "limit"): _parse_customer_limit,
    ("order",): _parse_order,
    ("orders",): _parse_orders,
    ("order", "details"): _parse_order_details,
    ("confirm", "order"): _order_status_parser(OrderStatus.CONFIRMED),
    ("ready", "order"): _order_status_parser(OrderStatus.READY),
    ("complete", "order"): _order_status_parser(OrderStatus.COMPLETED),
    ("cancel", "order"): _order_status_parser(OrderStatus.CANCELLED),
    ("cancel",): _parse_cancel,
    ("cancel", "last"): _parse_cancel_last,
    ("cancel", "sale"): _parse_cancel_sale,
    ("cancel", "refunds"): _parse_cancel_refunds,
    ("laybye",): _parse_laybye,
    ("laybye", "pay"): _parse_laybye_pay,
    ("laybye", "cancel"): _parse_laybye_cancel,
    ("laybyes",): _parse_laybyes,
    ("expense",): _parse_expense,
    ("expenses",): _parse_expenses,
    ("expenses", "breakdown"): _parse_expense_breakdown,
    ("expense", "breakdown"): _parse_expense_breakdown,
    ("profit",): _parse_profit,
    ("daily",): _cash_flow_parser(ReportPeriod.DAILY),
    ("total",): _cash_flow_parser(ReportPeriod.DAILY),
    ("today",): _cash_flow_parser(ReportPeriod.DAILY),
    ("yesterday",): _cash_flow_parser(ReportPeriod.YESTERDAY),
    ("weekly",): _cash_flow_parser(ReportPeriod.WEEKLY),
    ("week",): _cash_flow_parser(ReportPeriod.WEEKLY),
    ("monthly",): _cash_flow_parser(ReportPeriod.MONTHLY),
    ("month",): _cash_flow_parser(ReportPeriod.MONTHLY),
    ("best",): _parse_best,
    ("bestselling",): _parse_best,
    ("bestsellers",): _parse_best,
    ("best", "selling"): _parse_best,
    ("best", "sellers"): _parse_best,
    ("export",): _parse_export,
    ("pdf",): _parse_export,
}


def match_verb(
    tokens: Sequence[Token],
    grammar: Dict[Tuple[str, ...], Parser] = GRAMMAR,
) -> Optional[Tuple[Tuple[str, ...], Parser]]:
    """Return the longest grammar entry whose words prefix ``tokens``."""

    words = tuple(token.text.lower() for token in tokens)
    best: Optional[Tuple[Tuple[str, ...], Parser]] = None
    for verb, parser in grammar.items():
        if words[: len(verb)] == verb and not tokens[0].quoted:
            if best is None or len(verb) > len(best[0]):
                best = (verb, parser)
    return best


def interpret(
    raw_text: str,
    *,
    resolve_product: Optional[ProductResolver] = None,
    grammar: Dict[Tuple[str, ...], Parser] = GRAMMAR,
) -> Intent | ParseError:
    """Parse one command line.

    Args:
        raw_text (str): Text exactly as the user sent it.
        resolve_product (Callable[[str], str | None] | None): Maps a product
            name to its id; when given, every item name must resolve.
        grammar (dict): Verb table; tests pass reordered copies.

    Returns:
        Intent | ParseError: The typed intent, or the reason the text could
            not be understood.
    """

    tokens = tokenize(raw_text)
    if not tokens:
        return ParseError("Empty command", "Type 'help' to see what you can do.")

    matched = match_verb(tokens, grammar)
    if matched is None:
        log.debug("Unknown command verb '%s'", tokens[0].text)
        return ParseError(f"Unknown command '{tokens[0].text}'", "Type 'help' to see what you can do.")

    verb, parser = matched
    try:
        return parser(tokens[len(verb) :], resolve_product)
    except ParseError as exc:
        log.debug("Could not parse '%s': %s", " ".join(verb), exc.message)
        return exc
