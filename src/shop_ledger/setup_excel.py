"""Utility for initializing the Shop Ledger workbook.

The module doubles as a script (``python -m shop_ledger.setup_excel``) and as a
library used by the CLI ``init`` command and by tests. Shared helpers keep the
workbook bootstrap consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Mapping, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .constants import SheetName

# Column order must match the serialize_* helpers in data_manager.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.PRODUCTS.value: [
        "ProductID",
        "ShopID",
        "ProductName",
        "Price",
        "CostPrice",
        "Stock",
        "LowStockThreshold",
        "TrackStock",
        "IsActive",
        "CreatedAt",
    ],
    SheetName.CUSTOMERS.value: [
        "CustomerID",
        "ShopID",
        "Name",
        "Phone",
        "Email",
        "TotalSpent",
        "TotalVisits",
        "LoyaltyPoints",
        "CurrentBalance",
        "CreditLimit",
        "FirstPurchaseAt",
        "LastPurchaseAt",
        "IsActive",
        "CreatedAt",
    ],
    SheetName.CREDIT_TRANSACTIONS.value: [
        "EntryID",
        "ShopID",
        "CustomerID",
        "EntryType",
        "Amount",
        "Description",
        "Timestamp",
        "BalanceBefore",
        "BalanceAfter",
    ],
    SheetName.SALES.value: [
        "SaleID",
        "ShopID",
        "SaleType",
        "Total",
        "Timestamp",
        "CustomerID",
        "IsCancelled",
        "CancelledAt",
        "CancellationReason",
        "LayByeID",
    ],
    SheetName.LINE_ITEMS.value: [
        "ParentType",
        "ParentID",
        "ShopID",
        "LineNumber",
        "ProductID",
        "ProductName",
        "Quantity",
        "Price",
        "Total",
        "UnitCost",
    ],
    SheetName.ORDERS.value: [
        "OrderID",
        "ShopID",
        "CustomerID",
        "Total",
        "Status",
        "OrderType",
        "Notes",
        "OrderedAt",
        "ConfirmedAt",
        "ReadyAt",
        "CompletedAt",
        "CancelledAt",
    ],
    SheetName.LAYBYES.value: [
        "LayByeID",
        "ShopID",
        "CustomerID",
        "TotalAmount",
        "AmountPaid",
        "BalanceDue",
        "Status",
        "StartedAt",
        "DueDate",
        "CompletedAt",
        "CancelledAt",
    ],
    SheetName.INSTALLMENTS.value: [
        "InstallmentID",
        "LayByeID",
        "ShopID",
        "Amount",
        "Timestamp",
        "PaymentMethod",
    ],
    SheetName.EXPENSES.value: [
        "ExpenseID",
        "ShopID",
        "Amount",
        "Description",
        "Category",
        "PaymentMethod",
        "Timestamp",
        "ReceiptNumber",
    ],
}

CONFIG_FILE = data_manager.CONFIG_FILE_NAME


def create_master_workbook(
    destination: Path,
    *,
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create an empty ledger workbook at ``destination``.

    Every sheet receives a bold header row and nothing else; shops, products
    and customers are created later through the ledger commands. When
    ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing ledger workbook: {destination}")

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    workbook.save(destination)
    log.info("Created ledger workbook '%s' with %d sheets", destination, len(sheet_columns))
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``DataFile`` in ``config_path``."""

    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=Path(config_path).expanduser().resolve().parent)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the Shop Ledger workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except (FileNotFoundError, KeyError) as exc:
        print(f"[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except OSError as exc:
        print(f"[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"[SUCCESS] Created ledger workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
