"""Data access layer for Shop Ledger.

This module provides low-level helpers that read from and write to the ledger
workbook. Business rules belong to the ledger modules.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending or updating
   individual rows. Child collections (line items, credit entries,
   installments) live on their own append-only sheets keyed by the parent id.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Sequence, TypeVar

import openpyxl
from openpyxl.workbook import Workbook

from . import log
from .constants import SheetName


CONFIG_FILE_NAME = "config.ini"
CENT = Decimal("0.01")

PRODUCTS_SHEET = SheetName.PRODUCTS.value
CUSTOMERS_SHEET = SheetName.CUSTOMERS.value
CREDIT_SHEET = SheetName.CREDIT_TRANSACTIONS.value
SALES_SHEET = SheetName.SALES.value
LINE_ITEMS_SHEET = SheetName.LINE_ITEMS.value
ORDERS_SHEET = SheetName.ORDERS.value
LAYBYES_SHEET = SheetName.LAYBYES.value
INSTALLMENTS_SHEET = SheetName.INSTALLMENTS.value
EXPENSES_SHEET = SheetName.EXPENSES.value

DEFAULT_LOW_STOCK_THRESHOLD = 10
DEFAULT_LAYBYE_TERM_DAYS = 30
DEFAULT_RECENT_SALES_LIMIT = 10
DEFAULT_CURRENCY_SYMBOL = "$"
DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0

RowT = TypeVar("RowT")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    schema_version: str
    report_dir: Path
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD
    laybye_term_days: int = DEFAULT_LAYBYE_TERM_DAYS
    recent_sales_limit: int = DEFAULT_RECENT_SALES_LIMIT
    currency_symbol: str = DEFAULT_CURRENCY_SYMBOL
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    shop_id: str
    product_name: str
    price: Decimal
    cost_price: Optional[Decimal]
    stock: int
    low_stock_threshold: int
    track_stock: bool
    is_active: bool
    created_at: str


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet."""

    customer_id: str
    shop_id: str
    name: str
    phone: str
    email: Optional[str]
    total_spent: Decimal
    total_visits: int
    loyalty_points: int
    current_balance: Decimal
    credit_limit: Decimal
    first_purchase_at: Optional[str]
    last_purchase_at: Optional[str]
    is_active: bool
    created_at: str


@dataclass(frozen=True)
class CreditEntryRow:
    """In-memory view of a row from the ``CreditTransactions`` sheet."""

    entry_id: str
    shop_id: str
    customer_id: str
    entry_type: str
    amount: Decimal
    description: str
    timestamp_iso: str
    balance_before: Decimal
    balance_after: Decimal


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: str
    shop_id: str
    sale_type: str
    total: Decimal
    timestamp_iso: str
    customer_id: Optional[str]
    is_cancelled: bool
    cancelled_at: Optional[str]
    cancellation_reason: Optional[str]
    laybye_id: Optional[str]


@dataclass(frozen=True)
class LineItemRow:
    """In-memory view of a row from the ``LineItems`` sheet.

    One sheet stores the item lines of sales, orders, lay-byes and credit
    entries; ``parent_type`` and ``parent_id`` identify the owner.
    """

    parent_type: str
    parent_id: str
    shop_id: str
    line_number: int
    product_id: str
    product_name: str
    quantity: int
    price: Decimal
    total: Decimal
    unit_cost: Optional[Decimal]


@dataclass(frozen=True)
class OrderRow:
    """In-memory view of a row from the ``Orders`` sheet."""

    order_id: str
    shop_id: str
    customer_id: Optional[str]
    total: Decimal
    status: str
    order_type: str
    notes: Optional[str]
    ordered_at: str
    confirmed_at: Optional[str]
    ready_at: Optional[str]
    completed_at: Optional[str]
    cancelled_at: Optional[str]


@dataclass(frozen=True)
class LayByeRow:
    """In-memory view of a row from the ``LayByes`` sheet."""

    laybye_id: str
    shop_id: str
    customer_id: Optional[str]
    total_amount: Decimal
    amount_paid: Decimal
    balance_due: Decimal
    status: str
    started_at: str
    due_date: str
    completed_at: Optional[str]
    cancelled_at: Optional[str]


@dataclass(frozen=True)
class InstallmentRow:
    """In-memory view of a row from the ``Installments`` sheet."""

    installment_id: str
    laybye_id: str
    shop_id: str
    amount: Decimal
    timestamp_iso: str
    payment_method: str


@dataclass(frozen=True)
class ExpenseRow:
    """In-memory view of a row from the ``Expenses`` sheet."""

    expense_id: str
    shop_id: str
    amount: Decimal
    description: str
    category: str
    payment_method: str
    timestamp_iso: str
    receipt_number: Optional[str]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of individual entries happens in :func:`parse_settings`.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = Path(config_path).expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def _resolve_relative(raw: str, base_path: Optional[Path]) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = ((base_path or Path.cwd()) / path).resolve()
    return path


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Defaults]`` entries fall back to the
    module defaults when absent. Relative paths are expanded against
    ``base_path`` when provided, or against the current working directory.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for relative
            ``DataFile`` and ``ReportDir`` entries.

    Returns:
        ConfigSettings: Immutable settings container with resolved paths and
            numeric defaults.

    Raises:
        KeyError: If a required ``[System]`` option is missing.
        ValueError: If a ``[Defaults]`` option cannot be converted to its type.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    report_dir_raw = parser.get("System", "ReportDir", fallback="reports")

    return ConfigSettings(
        data_file=_resolve_relative(data_file_raw, base_path),
        schema_version=schema_version,
        report_dir=_resolve_relative(report_dir_raw, base_path),
        low_stock_threshold=parser.getint("Defaults", "LowStockThreshold", fallback=DEFAULT_LOW_STOCK_THRESHOLD),
        laybye_term_days=parser.getint("Defaults", "LayByeTermDays", fallback=DEFAULT_LAYBYE_TERM_DAYS),
        recent_sales_limit=parser.getint("Defaults", "RecentSalesLimit", fallback=DEFAULT_RECENT_SALES_LIMIT),
        currency_symbol=parser.get("Defaults", "CurrencySymbol", fallback=DEFAULT_CURRENCY_SYMBOL),
        lock_timeout_seconds=parser.getfloat("Defaults", "LockTimeoutSeconds", fallback=DEFAULT_LOCK_TIMEOUT_SECONDS),
    )


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the ledger ``.xlsx`` file.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
        KeyError: If one of the ledger sheets is missing from the workbook.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    workbook = openpyxl.load_workbook(data_file)
    missing = [sheet.value for sheet in SheetName if sheet.value not in workbook.sheetnames]
    if missing:
        raise KeyError(f"Workbook '{data_file}' is missing sheets: {', '.join(missing)}")
    log.debug("Opened workbook %s", data_file)
    return workbook


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)
    log.debug("Saved workbook to %s", dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


# ---------------------------------------------------------------------------
# Sheet operations
# ---------------------------------------------------------------------------


def _iter_sheet(workbook: Workbook, sheet_name: str, deserializer: Callable[[Sequence[object]], RowT]) -> Iterable[RowT]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield deserializer(raw)


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    The iterator skips the header row and any fully empty rows. Each remaining
    row is converted into a :class:`ProductRow` via
    :func:`deserialize_product`.

    Args:
        workbook (Workbook): Workbook containing the ``Products`` sheet.

    Yields:
        ProductRow: One structured row for each meaningful record in the sheet.
    """

    return _iter_sheet(workbook, PRODUCTS_SHEET, deserialize_product)


def iter_customers(workbook: Workbook) -> Iterable[CustomerRow]:
    """Iterate over the ``Customers`` worksheet and yield typed records."""

    return _iter_sheet(workbook, CUSTOMERS_SHEET, deserialize_customer)


def iter_credit_entries(workbook: Workbook) -> Iterable[CreditEntryRow]:
    """Stream the customer credit ledger in append order."""

    return _iter_sheet(workbook, CREDIT_SHEET, deserialize_credit_entry)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Stream sale headers from the ``Sales`` worksheet in append order."""

    return _iter_sheet(workbook, SALES_SHEET, deserialize_sale)


def iter_line_items(workbook: Workbook) -> Iterable[LineItemRow]:
    """Stream every item line regardless of its parent record type."""

    return _iter_sheet(workbook, LINE_ITEMS_SHEET, deserialize_line_item)


def iter_orders(workbook: Workbook) -> Iterable[OrderRow]:
    """Stream order headers from the ``Orders`` worksheet."""

    return _iter_sheet(workbook, ORDERS_SHEET, deserialize_order)


def iter_laybyes(workbook: Workbook) -> Iterable[LayByeRow]:
    """Stream lay-bye plans from the ``LayByes`` worksheet."""

    return _iter_sheet(workbook, LAYBYES_SHEET, deserialize_laybye)


def iter_installments(workbook: Workbook) -> Iterable[InstallmentRow]:
    """Stream lay-bye installments in append order."""

    return _iter_sheet(workbook, INSTALLMENTS_SHEET, deserialize_installment)


def iter_expenses(workbook: Workbook) -> Iterable[ExpenseRow]:
    """Stream expense records from the ``Expenses`` worksheet."""

    return _iter_sheet(workbook, EXPENSES_SHEET, deserialize_expense)


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet.

    Args:
        workbook (Workbook): Workbook whose products sheet should be modified.
        record (ProductRow): Structured product data ready for persistence.
    """

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_customer(workbook: Workbook, record: CustomerRow) -> None:
    """Append a customer record to the ``Customers`` worksheet."""

    workbook[CUSTOMERS_SHEET].append(serialize_customer(record))


def append_credit_entry(workbook: Workbook, record: CreditEntryRow) -> None:
    """Append one entry to the customer credit ledger.

    Entries are never rewritten; the running balance chain relies on append
    order.

    Args:
        workbook (Workbook): Workbook containing the credit ledger sheet.
        record (CreditEntryRow): Entry carrying its before/after balances.
    """

    workbook[CREDIT_SHEET].append(serialize_credit_entry(record))


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    """Append a sale header to the ``Sales`` worksheet."""

    workbook[SALES_SHEET].append(serialize_sale(record))


def append_line_items(workbook: Workbook, records: Iterable[LineItemRow]) -> None:
    """Append item lines for a single parent record.

    Args:
        workbook (Workbook): Workbook containing the ``LineItems`` sheet.
        records (Iterable[LineItemRow]): Lines to append in order.
    """

    sheet = workbook[LINE_ITEMS_SHEET]
    for record in records:
        sheet.append(serialize_line_item(record))


def append_order(workbook: Workbook, record: OrderRow) -> None:
    """Append an order header to the ``Orders`` worksheet."""

    workbook[ORDERS_SHEET].append(serialize_order(record))


def append_laybye(workbook: Workbook, record: LayByeRow) -> None:
    """Append a lay-bye plan to the ``LayByes`` worksheet."""

    workbook[LAYBYES_SHEET].append(serialize_laybye(record))


def append_installment(workbook: Workbook, record: InstallmentRow) -> None:
    """Append a lay-bye installment to the ``Installments`` worksheet."""

    workbook[INSTALLMENTS_SHEET].append(serialize_installment(record))


def append_expense(workbook: Workbook, record: ExpenseRow) -> None:
    """Append an expense to the ``Expenses`` worksheet."""

    workbook[EXPENSES_SHEET].append(serialize_expense(record))


def header_map(workbook: Workbook, sheet_name: str) -> Dict[str, int]:
    """Return a mapping of header titles to 1-based column indices."""

    return {cell.value: idx + 1 for idx, cell in enumerate(workbook[sheet_name][1])}


def update_record(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    *,
    field_values: dict[str, Any],
) -> None:
    """Update selected columns for an existing row.

    The function locates the row whose ``key_column`` matches ``key_value``,
    validates that each requested field exists in the header row, and then
    writes the provided values into the corresponding cells. Only the
    specified fields are modified.

    Args:
        workbook (Workbook): Workbook containing ``sheet_name``.
        sheet_name (str): Worksheet holding the record.
        key_column (str): Header title of the primary key column.
        key_value (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the row or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_value}")

    columns = header_map(workbook, sheet_name)
    unknown = [name for name in field_values if name not in columns]
    if unknown:
        raise KeyError(f"Unknown {sheet_name} field(s): {', '.join(unknown)}")

    sheet = workbook[sheet_name]
    for name, value in field_values.items():
        sheet.cell(row=row_index, column=columns[name], value=_to_cell(value))


def update_product(workbook: Workbook, product_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected ``Products`` columns for ``product_id``."""

    update_record(workbook, PRODUCTS_SHEET, "ProductID", product_id, field_values=field_values)


def update_customer(workbook: Workbook, customer_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected ``Customers`` columns for ``customer_id``."""

    update_record(workbook, CUSTOMERS_SHEET, "CustomerID", customer_id, field_values=field_values)


def update_sale(workbook: Workbook, sale_id: str, *, field_values: dict[str, Any]) -> None:
    """Update the cancellation columns of a sale header."""

    update_record(workbook, SALES_SHEET, "SaleID", sale_id, field_values=field_values)


def update_order(workbook: Workbook, order_id: str, *, field_values: dict[str, Any]) -> None:
    """Update status and timestamp columns of an order header."""

    update_record(workbook, ORDERS_SHEET, "OrderID", order_id, field_values=field_values)


def update_laybye(workbook: Workbook, laybye_id: str, *, field_values: dict[str, Any]) -> None:
    """Update balance and status columns of a lay-bye plan."""

    update_record(workbook, LAYBYES_SHEET, "LayByeID", laybye_id, field_values=field_values)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    columns = header_map(workbook, sheet_name)
    if key_column not in columns:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = columns[key_column]
    sheet = workbook[sheet_name]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _to_cell(value: Any) -> Any:
    # Enum members are persisted by value so the sheet stays human readable.
    return value.value if isinstance(value, Enum) else value


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering.

    Args:
        record (ProductRow): Structured product data to transform.

    Returns:
        list[object]: Values arranged as ``[ProductID, ShopID, ProductName,
        Price, CostPrice, Stock, LowStockThreshold, TrackStock, IsActive,
        CreatedAt]``.
    """

    return [
        record.product_id,
        record.shop_id,
        record.product_name,
        record.price,
        record.cost_price,
        record.stock,
        record.low_stock_threshold,
        record.track_stock,
        record.is_active,
        record.created_at,
    ]


def serialize_customer(record: CustomerRow) -> list[object]:
    """Convert a customer dataclass into the worksheet column ordering."""

    return [
        record.customer_id,
        record.shop_id,
        record.name,
        record.phone,
        record.email,
        record.total_spent,
        record.total_visits,
        record.loyalty_points,
        record.current_balance,
        record.credit_limit,
        record.first_purchase_at,
        record.last_purchase_at,
        record.is_active,
        record.created_at,
    ]


def serialize_credit_entry(record: CreditEntryRow) -> list[object]:
    """Convert a credit ledger entry into the worksheet column ordering."""

    return [
        record.entry_id,
        record.shop_id,
        record.customer_id,
        record.entry_type,
        record.amount,
        record.description,
        record.timestamp_iso,
        record.balance_before,
        record.balance_after,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    """Convert a sale header into the worksheet column ordering."""

    return [
        record.sale_id,
        record.shop_id,
        record.sale_type,
        record.total,
        record.timestamp_iso,
        record.customer_id,
        record.is_cancelled,
        record.cancelled_at,
        record.cancellation_reason,
        record.laybye_id,
    ]


def serialize_line_item(record: LineItemRow) -> list[object]:
    """Convert an item line into the worksheet column ordering."""

    return [
        record.parent_type,
        record.parent_id,
        record.shop_id,
        record.line_number,
        record.product_id,
        record.product_name,
        record.quantity,
        record.price,
        record.total,
        record.unit_cost,
    ]


def serialize_order(record: OrderRow) -> list[object]:
    """Convert an order header into the worksheet column ordering."""

    return [
        record.order_id,
        record.shop_id,
        record.customer_id,
        record.total,
        record.status,
        record.order_type,
        record.notes,
        record.ordered_at,
        record.confirmed_at,
        record.ready_at,
        record.completed_at,
        record.cancelled_at,
    ]


def serialize_laybye(record: LayByeRow) -> list[object]:
    """Convert a lay-bye plan into the worksheet column ordering."""

    return [
        record.laybye_id,
        record.shop_id,
        record.customer_id,
        record.total_amount,
        record.amount_paid,
        record.balance_due,
        record.status,
        record.started_at,
        record.due_date,
        record.completed_at,
        record.cancelled_at,
    ]


def serialize_installment(record: InstallmentRow) -> list[object]:
    """Convert an installment into the worksheet column ordering."""

    return [
        record.installment_id,
        record.laybye_id,
        record.shop_id,
        record.amount,
        record.timestamp_iso,
        record.payment_method,
    ]


def serialize_expense(record: ExpenseRow) -> list[object]:
    """Convert an expense into the worksheet column ordering."""

    return [
        record.expense_id,
        record.shop_id,
        record.amount,
        record.description,
        record.category,
        record.payment_method,
        record.timestamp_iso,
        record.receipt_number,
    ]


def to_money(raw: object) -> Decimal:
    """Coerce a cell value into a cent-quantized :class:`~decimal.Decimal`.

    Blank cells read as zero. Floats produced by Excel are converted through
    ``str`` so binary artefacts do not leak into the ledger.

    Raises:
        ValueError: If ``raw`` is not numeric.
    """

    if raw is None or raw == "":
        return Decimal("0.00")
    try:
        return Decimal(str(raw)).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValueError(f"Not a monetary value: {raw!r}") from exc


def _optional_money(raw: object) -> Optional[Decimal]:
    return None if raw is None or raw == "" else to_money(raw)


def _to_int(raw: object) -> int:
    if raw is None or raw == "":
        return 0
    return int(Decimal(str(raw)))


def _to_bool(raw: object) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in {"true", "1", "yes"}
    return bool(raw)


def _optional_str(raw: object) -> Optional[str]:
    return None if raw is None or raw == "" else str(raw)


def _pad(raw_row: Sequence[object], width: int) -> list[object]:
    # openpyxl trims trailing blank cells on rows that were never written to
    values = list(raw_row[:width])
    return values + [None] * (width - len(values))


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    The converter normalizes money into cent-quantized decimals, stock counts
    into ``int`` and coerces id/name fields to ``str`` to avoid surprises
    caused by Excel automatically interpreting numbers.

    Args:
        raw_row (Sequence[object]): Raw cell values from the worksheet row.

    Returns:
        ProductRow: Dataclass containing consistent Python representations of
            the row contents.
    """

    (
        product_id,
        shop_id,
        product_name,
        price,
        cost_price,
        stock,
        threshold,
        track_stock,
        is_active,
        created_at,
    ) = _pad(raw_row, 10)

    return ProductRow(
        product_id=str(product_id),
        shop_id=str(shop_id),
        product_name=str(product_name),
        price=to_money(price),
        cost_price=_optional_money(cost_price),
        stock=_to_int(stock),
        low_stock_threshold=_to_int(threshold),
        track_stock=True if track_stock is None else _to_bool(track_stock),
        is_active=_to_bool(is_active),
        created_at=str(created_at) if created_at is not None else "",
    )


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    """Convert a raw worksheet row into a typed customer record."""

    (
        customer_id,
        shop_id,
        name,
        phone,
        email,
        total_spent,
        total_visits,
        loyalty_points,
        current_balance,
        credit_limit,
        first_purchase_at,
        last_purchase_at,
        is_active,
        created_at,
    ) = _pad(raw_row, 14)

    return CustomerRow(
        customer_id=str(customer_id),
        shop_id=str(shop_id),
        name=str(name),
        phone=str(phone) if phone is not None else "",
        email=_optional_str(email),
        total_spent=to_money(total_spent),
        total_visits=_to_int(total_visits),
        loyalty_points=_to_int(loyalty_points),
        current_balance=to_money(current_balance),
        credit_limit=to_money(credit_limit),
        first_purchase_at=_optional_str(first_purchase_at),
        last_purchase_at=_optional_str(last_purchase_at),
        is_active=_to_bool(is_active),
        created_at=str(created_at) if created_at is not None else "",
    )


def deserialize_credit_entry(raw_row: Sequence[object]) -> CreditEntryRow:
    """Convert a raw worksheet row into a typed credit ledger entry."""

    (
        entry_id,
        shop_id,
        customer_id,
        entry_type,
        amount,
        description,
        timestamp_iso,
        balance_before,
        balance_after,
    ) = _pad(raw_row, 9)

    return CreditEntryRow(
        entry_id=str(entry_id),
        shop_id=str(shop_id),
        customer_id=str(customer_id),
        entry_type=str(entry_type),
        amount=to_money(amount),
        description=str(description) if description is not None else "",
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        balance_before=to_money(balance_before),
        balance_after=to_money(balance_after),
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw worksheet row into a typed sale header."""

    (
        sale_id,
        shop_id,
        sale_type,
        total,
        timestamp_iso,
        customer_id,
        is_cancelled,
        cancelled_at,
        cancellation_reason,
        laybye_id,
    ) = _pad(raw_row, 10)

    return SaleRow(
        sale_id=str(sale_id),
        shop_id=str(shop_id),
        sale_type=str(sale_type),
        total=to_money(total),
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        customer_id=_optional_str(customer_id),
        is_cancelled=_to_bool(is_cancelled),
        cancelled_at=_optional_str(cancelled_at),
        cancellation_reason=_optional_str(cancellation_reason),
        laybye_id=_optional_str(laybye_id),
    )


def deserialize_line_item(raw_row: Sequence[object]) -> LineItemRow:
    """Convert a raw worksheet row into a typed item line."""

    (
        parent_type,
        parent_id,
        shop_id,
        line_number,
        product_id,
        product_name,
        quantity,
        price,
        total,
        unit_cost,
    ) = _pad(raw_row, 10)

    return LineItemRow(
        parent_type=str(parent_type),
        parent_id=str(parent_id),
        shop_id=str(shop_id),
        line_number=_to_int(line_number),
        product_id=str(product_id),
        product_name=str(product_name),
        quantity=_to_int(quantity),
        price=to_money(price),
        total=to_money(total),
        unit_cost=_optional_money(unit_cost),
    )


def deserialize_order(raw_row: Sequence[object]) -> OrderRow:
    """Convert a raw worksheet row into a typed order header."""

    (
        order_id,
        shop_id,
        customer_id,
        total,
        status,
        order_type,
        notes,
        ordered_at,
        confirmed_at,
        ready_at,
        completed_at,
        cancelled_at,
    ) = _pad(raw_row, 12)

    return OrderRow(
        order_id=str(order_id),
        shop_id=str(shop_id),
        customer_id=_optional_str(customer_id),
        total=to_money(total),
        status=str(status),
        order_type=str(order_type),
        notes=_optional_str(notes),
        ordered_at=str(ordered_at) if ordered_at is not None else "",
        confirmed_at=_optional_str(confirmed_at),
        ready_at=_optional_str(ready_at),
        completed_at=_optional_str(completed_at),
        cancelled_at=_optional_str(cancelled_at),
    )


def deserialize_laybye(raw_row: Sequence[object]) -> LayByeRow:
    """Convert a raw worksheet row into a typed lay-bye plan."""

    (
        laybye_id,
        shop_id,
        customer_id,
        total_amount,
        amount_paid,
        balance_due,
        status,
        started_at,
        due_date,
        completed_at,
        cancelled_at,
    ) = _pad(raw_row, 11)

    return LayByeRow(
        laybye_id=str(laybye_id),
        shop_id=str(shop_id),
        customer_id=_optional_str(customer_id),
        total_amount=to_money(total_amount),
        amount_paid=to_money(amount_paid),
        balance_due=to_money(balance_due),
        status=str(status),
        started_at=str(started_at) if started_at is not None else "",
        due_date=str(due_date) if due_date is not None else "",
        completed_at=_optional_str(completed_at),
        cancelled_at=_optional_str(cancelled_at),
    )


def deserialize_installment(raw_row: Sequence[object]) -> InstallmentRow:
    """Convert a raw worksheet row into a typed installment."""

    installment_id, laybye_id, shop_id, amount, timestamp_iso, payment_method = _pad(raw_row, 6)
    return InstallmentRow(
        installment_id=str(installment_id),
        laybye_id=str(laybye_id),
        shop_id=str(shop_id),
        amount=to_money(amount),
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        payment_method=str(payment_method) if payment_method is not None else "cash",
    )


def deserialize_expense(raw_row: Sequence[object]) -> ExpenseRow:
    """Convert a raw worksheet row into a typed expense."""

    (
        expense_id,
        shop_id,
        amount,
        description,
        category,
        payment_method,
        timestamp_iso,
        receipt_number,
    ) = _pad(raw_row, 8)

    return ExpenseRow(
        expense_id=str(expense_id),
        shop_id=str(shop_id),
        amount=to_money(amount),
        description=str(description) if description is not None else "",
        category=str(category),
        payment_method=str(payment_method) if payment_method is not None else "cash",
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        receipt_number=_optional_str(receipt_number),
    )


