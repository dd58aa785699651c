"""Customer master data for Shop Ledger.

Customers are identified per shop by a digits-only phone number. Lookups try
the phone first and fall back to an exact, case-insensitive name match.
Purchase statistics (spend, visits, loyalty points) are updated when a sale
is linked to a customer; balances belong to :mod:`shop_ledger.credit`.
"""

from __future__ import annotations

import math
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from . import core_logic, data_manager, log
from .core_logic import NotFoundError, RuntimeContext, ValidationError, ledger_operation

CUSTOMERS_BUCKET = "customers"
ACTIVE_WINDOW_DAYS = 30
CUSTOMER_FILTERS = ("all", "active", "top")


def list_customers(
    context: RuntimeContext,
    shop_id: str,
    *,
    customer_filter: str = "all",
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> List[data_manager.CustomerRow]:
    """Return active customers of the shop, biggest spenders first.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        shop_id (str): Tenant whose customers are listed.
        customer_filter (str): ``all``; ``active`` keeps customers who bought
            within the last 30 days; ``top`` keeps customers who bought at
            least once.
        now (datetime | None): Reference time for the ``active`` filter.
        limit (int | None): Maximum number of rows returned.

    Raises:
        ValidationError: If ``customer_filter`` is unknown.
    """

    if customer_filter not in CUSTOMER_FILTERS:
        raise ValidationError(
            f"Unknown customer filter '{customer_filter}'",
            hint="Use: customers [all|active|top]",
        )

    rows = [
        row
        for row in core_logic.cached_rows(context, CUSTOMERS_BUCKET, data_manager.iter_customers)
        if row.shop_id == shop_id and row.is_active
    ]
    if customer_filter == "active":
        cutoff = core_logic.resolve_timestamp(now) - timedelta(days=ACTIVE_WINDOW_DAYS)
        rows = [row for row in rows if (core_logic.parse_timestamp(row.last_purchase_at) or cutoff) > cutoff]
    elif customer_filter == "top":
        rows = [row for row in rows if row.total_visits > 0]

    rows.sort(key=lambda row: row.total_spent, reverse=True)
    return rows[:limit] if limit is not None else rows


def get_customer(context: RuntimeContext, shop_id: str, customer_id: str) -> data_manager.CustomerRow:
    """Resolve a customer by identifier within one shop.

    Raises:
        NotFoundError: If the shop has no such customer.
    """

    for row in core_logic.cached_rows(context, CUSTOMERS_BUCKET, data_manager.iter_customers):
        if row.shop_id == shop_id and row.customer_id == customer_id:
            return row
    log.warning("Customer lookup failed for id '%s' in shop '%s'", customer_id, shop_id)
    raise NotFoundError(f"Unknown customer id: {customer_id}")


def find_customer(context: RuntimeContext, shop_id: str, identifier: str) -> Optional[data_manager.CustomerRow]:
    """Find an active customer by phone number, then by exact name."""

    identifier = (identifier or "").strip()
    if not identifier:
        return None
    rows = list_customers(context, shop_id)
    phone = core_logic.normalize_phone(identifier)
    if phone:
        for row in rows:
            if row.phone == phone:
                return row
    wanted = identifier.casefold()
    for row in rows:
        if row.name.casefold() == wanted:
            return row
    return None


def require_customer(context: RuntimeContext, shop_id: str, identifier: str) -> data_manager.CustomerRow:
    """Resolve a customer by phone or name.

    Raises:
        NotFoundError: With a hint to register the customer.
    """

    customer = find_customer(context, shop_id, identifier)
    if customer is None:
        raise NotFoundError(
            f"Customer '{identifier}' not found",
            hint=f"Register them first: customer add {identifier} <phone>",
        )
    return customer


@ledger_operation
def add_customer(
    context: RuntimeContext,
    shop_id: str,
    name: str,
    phone: str,
    *,
    email: Optional[str] = None,
    credit_limit: Decimal = core_logic.ZERO,
    timestamp: Optional[datetime] = None,
) -> data_manager.CustomerRow:
    """Register a customer with a phone number unique to the shop.

    Raises:
        ValidationError: If the name is blank, the phone has no digits, or the
            phone already belongs to another customer.
    """

    name = core_logic.require_text(name, label="Customer name")
    normalized = core_logic.normalize_phone(phone)
    if len(normalized) < 5:
        raise ValidationError(f"Phone number '{phone}' is too short", hint="Example: customer add Mary 0712345678")
    core_logic.require_nonnegative_money(credit_limit, label="Credit limit")

    for row in core_logic.cached_rows(context, CUSTOMERS_BUCKET, data_manager.iter_customers):
        if row.shop_id == shop_id and row.phone == normalized:
            raise ValidationError(f"Phone {normalized} already belongs to {row.name}")

    created = core_logic.resolve_timestamp(timestamp)
    customer = data_manager.CustomerRow(
        customer_id=core_logic.generate_id("C", when=created),
        shop_id=shop_id,
        name=name,
        phone=normalized,
        email=(email or "").strip() or None,
        total_spent=core_logic.ZERO,
        total_visits=0,
        loyalty_points=0,
        current_balance=core_logic.ZERO,
        credit_limit=credit_limit,
        first_purchase_at=None,
        last_purchase_at=None,
        is_active=True,
        created_at=created.isoformat(),
    )
    with core_logic.mutating(context, CUSTOMERS_BUCKET) as workbook:
        data_manager.append_customer(workbook, customer)
    log.info("Added customer '%s' (%s) to shop '%s'", name, customer.customer_id, shop_id)
    return customer


def apply_purchase(
    context: RuntimeContext,
    shop_id: str,
    customer_id: str,
    total: Decimal,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.CustomerRow:
    """Add one visit, the spend and ``floor(total)`` loyalty points to a customer.

    Raises:
        NotFoundError: If the customer is unknown.
    """

    when = core_logic.resolve_timestamp(timestamp)
    with core_logic.hold_locks(context, core_logic.customer_key(shop_id, customer_id)):
        customer = get_customer(context, shop_id, customer_id)
        updated = replace(
            customer,
            total_spent=customer.total_spent + total,
            total_visits=customer.total_visits + 1,
            loyalty_points=customer.loyalty_points + math.floor(total),
            first_purchase_at=customer.first_purchase_at or when.isoformat(),
            last_purchase_at=when.isoformat(),
        )
        with core_logic.mutating(context, CUSTOMERS_BUCKET) as workbook:
            data_manager.update_customer(
                workbook,
                customer_id,
                field_values={
                    "TotalSpent": updated.total_spent,
                    "TotalVisits": updated.total_visits,
                    "LoyaltyPoints": updated.loyalty_points,
                    "FirstPurchaseAt": updated.first_purchase_at,
                    "LastPurchaseAt": updated.last_purchase_at,
                },
            )
    log.info("Linked purchase of %s to customer '%s' in shop '%s'", total, customer.name, shop_id)
    return updated


record_purchase = ledger_operation(apply_purchase)


@ledger_operation
def set_credit_limit(context: RuntimeContext, shop_id: str, customer_id: str, limit: Decimal) -> data_manager.CustomerRow:
    """Set the informational credit limit shown next to a customer's balance."""

    core_logic.require_nonnegative_money(limit, label="Credit limit")
    with core_logic.hold_locks(context, core_logic.customer_key(shop_id, customer_id)):
        customer = get_customer(context, shop_id, customer_id)
        with core_logic.mutating(context, CUSTOMERS_BUCKET) as workbook:
            data_manager.update_customer(workbook, customer_id, field_values={"CreditLimit": limit})
    log.info("Set credit limit of '%s' in shop '%s' to %s", customer.name, shop_id, limit)
    return replace(customer, credit_limit=limit)
