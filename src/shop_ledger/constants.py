"""Enumerations shared across Shop Ledger modules.

Centralises domain constants so that the data access layer (DAL), the ledger
modules, the command interpreter and the CLI rely on a single source of truth
for status names, categories and sheet identifiers.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "2.0.0"


class SaleType(str, Enum):
    """Enumerate how a sale was settled."""

    CASH = "cash"
    CREDIT = "credit"
    COMPLETED_LAYBYE = "completed_laybye"


class CreditEntryType(str, Enum):
    """Enumerate the entry kinds of the customer credit ledger."""

    CREDIT = "credit"
    PAYMENT = "payment"


class OrderStatus(str, Enum):
    """Enumerate the order lifecycle states."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OrderType(str, Enum):
    """Enumerate how an order is fulfilled."""

    PICKUP = "pickup"
    DELIVERY = "delivery"
    RESERVATION = "reservation"


class LayByeStatus(str, Enum):
    """Enumerate lay-bye plan states."""

    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class InstallmentMethod(str, Enum):
    """Enumerate how a lay-bye installment was paid."""

    CASH = "cash"
    BANK = "bank"
    MOBILE = "mobile"


class PaymentMethod(str, Enum):
    """Enumerate how an expense was paid."""

    CASH = "cash"
    BANK = "bank"
    MOBILE = "mobile"
    CREDIT = "credit"
    OTHER = "other"


class ExpenseCategory(str, Enum):
    """Enumerate the fixed expense categories."""

    PURCHASES = "purchases"
    SALES = "sales"
    SUPPLIES = "supplies"
    RENT = "rent"
    UTILITIES = "utilities"
    SALARY = "salary"
    SALARY_WAGES = "salary_wages"
    TRANSPORT = "transport"
    MARKETING = "marketing"
    EQUIPMENT = "equipment"
    MAINTENANCE = "maintenance"
    PACKAGING = "packaging"
    MARKET_FEES = "market_fees"
    TABLE_RENTAL = "table_rental"
    STALL_DECOR = "stall_decor"
    GENERATOR = "generator"
    BANK_FEES = "bank_fees"
    TAXES = "taxes"
    INSURANCE = "insurance"
    INTERNET_DATA = "internet_data"
    SOFTWARE = "software"
    POS_FEES = "pos_fees"
    DISCOUNTS = "discounts"
    REFUNDS = "refunds"
    LOYALTY = "loyalty"
    OFFICE = "office"
    CLEANING = "cleaning"
    SECURITY = "security"
    LICENSES = "licenses"
    OTHER = "other"


class LineItemParent(str, Enum):
    """Enumerate the records that own rows on the ``LineItems`` sheet."""

    SALE = "SALE"
    ORDER = "ORDER"
    LAYBYE = "LAYBYE"
    CREDIT = "CREDIT"


class ReportPeriod(str, Enum):
    """Enumerate the named reporting windows."""

    DAILY = "daily"
    YESTERDAY = "yesterday"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    CUSTOMERS = "Customers"
    CREDIT_TRANSACTIONS = "CreditTransactions"
    SALES = "Sales"
    LINE_ITEMS = "LineItems"
    ORDERS = "Orders"
    LAYBYES = "LayByes"
    INSTALLMENTS = "Installments"
    EXPENSES = "Expenses"


# Order lifecycle DAG; terminal states map to an empty set.
ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "SaleType",
    "CreditEntryType",
    "OrderStatus",
    "OrderType",
    "LayByeStatus",
    "InstallmentMethod",
    "PaymentMethod",
    "ExpenseCategory",
    "LineItemParent",
    "ReportPeriod",
    "SheetName",
    "ORDER_TRANSITIONS",
]
