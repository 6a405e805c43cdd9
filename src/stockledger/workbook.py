"""Excel import and export for the catalog and the ledger.

Stores hand over their catalog as a ``Products`` sheet and auditors receive
the ledger as a workbook. The relational database stays the system of record;
workbooks are only an exchange format.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import catalog, data_manager, ledger, log
from .errors import ValidationError
from .runtime import RuntimeContext


PRODUCTS_SHEET = "Products"
LEDGER_SHEET = "Ledger"
STOCK_SHEET = "StockLevels"

PRODUCT_COLUMNS: Sequence[str] = (
    "SKU",
    "Name",
    "Price",
    "CostPrice",
    "ReorderLevel",
    "OpeningStock",
)

EXPORT_COLUMNS: Mapping[str, Sequence[str]] = {
    LEDGER_SHEET: (
        "EntryID",
        "Timestamp",
        "ProductID",
        "SKU",
        "TransactionType",
        "Quantity",
        "ReferenceID",
        "Notes",
    ),
    STOCK_SHEET: (
        "ProductID",
        "SKU",
        "Name",
        "StockQuantity",
        "LedgerSum",
        "ReorderLevel",
    ),
}


@dataclass(frozen=True)
class ProductImportRow:
    """In-memory view of a row from the ``Products`` sheet."""

    sku: str
    name: str
    price: Decimal
    cost_price: Decimal
    reorder_level: int
    opening_stock: int


def _new_workbook(sheet_columns: Mapping[str, Sequence[str]]) -> Workbook:
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
    return workbook


def _save(workbook: Workbook, destination: Path, *, overwrite: bool) -> Path:
    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing workbook: {destination}")
    destination.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(destination)
    return destination


def create_catalog_template(destination: Path, *, overwrite: bool = False) -> Path:
    """Write an empty ``Products`` sheet with the import headers.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """
    workbook = _new_workbook({PRODUCTS_SHEET: PRODUCT_COLUMNS})
    path = _save(workbook, destination, overwrite=overwrite)
    log.info("Created catalog template '%s'", path)
    return path


def open_workbook(path: Path) -> Workbook:
    """Open an existing workbook.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
    """
    path = Path(path).expanduser().resolve()
    if not path.exists():
        raise FileNotFoundError(f"Workbook not found: {path}")
    return openpyxl.load_workbook(path)


def deserialize_product(raw_row: Sequence[object]) -> ProductImportRow:
    """Convert a raw ``Products`` row into a typed import row.

    Excel hands numbers back as ``int`` or ``float``; prices go through
    ``str`` into :class:`~decimal.Decimal` and counts through ``int``. Blank
    reorder levels default to 10 and blank opening stock to 0.

    Raises:
        ValidationError: If the SKU or name is blank or a number is malformed.
    """
    sku, name, price_raw, cost_raw, reorder_raw, opening_raw = (list(raw_row) + [None] * 6)[:6]
    if sku is None or name is None:
        raise ValidationError(f"Product row requires SKU and Name: {raw_row!r}")
    try:
        return ProductImportRow(
            sku=str(sku).strip(),
            name=str(name).strip(),
            price=Decimal(str(price_raw)) if price_raw is not None else Decimal("0.00"),
            cost_price=Decimal(str(cost_raw)) if cost_raw is not None else Decimal("0.00"),
            reorder_level=int(reorder_raw) if reorder_raw is not None else 10,
            opening_stock=int(opening_raw) if opening_raw is not None else 0,
        )
    except (ArithmeticError, ValueError, TypeError) as exc:
        raise ValidationError(f"Malformed product row {raw_row!r}: {exc}") from exc


def iter_product_rows(workbook: Workbook) -> Iterable[ProductImportRow]:
    """Yield typed rows from the ``Products`` sheet, skipping blank rows.

    Raises:
        KeyError: If the workbook has no ``Products`` sheet.
        ValidationError: If the header row does not match the template.
    """
    sheet = workbook[PRODUCTS_SHEET]
    header = [cell.value for cell in sheet[1]][: len(PRODUCT_COLUMNS)]
    if tuple(header) != tuple(PRODUCT_COLUMNS):
        raise ValidationError(f"Unexpected Products header: {header!r}")
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield deserialize_product(raw)


def import_products(context: RuntimeContext, path: Path) -> List[data_manager.ProductRecord]:
    """Register every product of a catalog workbook whose SKU is new.

    Each product is registered in its own unit of work, together with its
    opening stock entry. Rows whose SKU already exists are skipped.

    Args:
        context (RuntimeContext): Runtime context providing database access.
        path (Path): Workbook laid out like :func:`create_catalog_template`.

    Returns:
        list[data_manager.ProductRecord]: Newly registered products in sheet
            order.
    """
    workbook = open_workbook(path)
    existing = {product.sku for product in catalog.list_products(context)}
    imported: List[data_manager.ProductRecord] = []
    for row in iter_product_rows(workbook):
        if row.sku in existing:
            log.info("Skipping already registered SKU '%s'", row.sku)
            continue
        imported.append(
            catalog.register_product(
                context,
                sku=row.sku,
                name=row.name,
                price=row.price,
                cost_price=row.cost_price,
                reorder_level=row.reorder_level,
                opening_stock=row.opening_stock,
            )
        )
        existing.add(row.sku)
    log.info("Imported %d products from '%s'", len(imported), path)
    return imported


def serialize_entry(entry: data_manager.LedgerEntryRecord, sku: str) -> list[object]:
    return [
        entry.entry_id,
        entry.created_at.isoformat() if entry.created_at is not None else None,
        entry.product_id,
        sku,
        entry.kind,
        entry.quantity,
        entry.reference_id,
        entry.notes,
    ]


def export_ledger(context: RuntimeContext, destination: Path, *, overwrite: bool = False) -> Path:
    """Export the full ledger and per-product stock levels to a workbook.

    ``StockLevels`` shows the stored quantity next to the ledger sum so an
    auditor can check the two agree without database access.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """
    products = catalog.list_products(context)
    entries = ledger.list_entries(context)
    skus: Dict[str, str] = {product.product_id: product.sku for product in products}
    sums: Dict[str, int] = defaultdict(int)

    workbook = _new_workbook(EXPORT_COLUMNS)
    ledger_sheet = workbook[LEDGER_SHEET]
    for entry in entries:
        sums[entry.product_id] += entry.quantity
        ledger_sheet.append(serialize_entry(entry, skus.get(entry.product_id, "")))

    stock_sheet = workbook[STOCK_SHEET]
    for product in products:
        stock_sheet.append(
            [
                product.product_id,
                product.sku,
                product.name,
                product.stock_quantity,
                sums[product.product_id],
                product.reorder_level,
            ]
        )

    path = _save(workbook, destination, overwrite=overwrite)
    log.info("Exported %d ledger entries to '%s'", len(entries), path)
    return path
