"""Data access layer for the storefront ledger.

This module reads from and writes to the master workbook that backs the item,
sale, and settings stores. Business rules belong elsewhere.

The public API is organised around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, persisting, and reloading the Excel file.
3. Record codecs: turning worksheet rows and exported documents into one
   normalized shape per record type, coercing malformed values instead of
   failing.
4. Store operations: appending and updating rows, including the all-or-nothing
   sale batch that writes a sale together with its stock decrements.
"""


from __future__ import annotations

import configparser
from collections import defaultdict
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import (
    BEST_SELLER_LIMIT,
    LOW_STOCK_RATIO,
    PAYMENT_METHOD_ALIASES,
    PaymentMethod,
    SaleShape,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"
ITEMS_SHEET = SheetName.ITEMS.value
SALES_SHEET = SheetName.SALES.value
SALE_LINES_SHEET = SheetName.SALE_LINES.value
SETTINGS_SHEET = SheetName.SETTINGS.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    ITEMS_SHEET: [
        "ItemID",
        "OwnerID",
        "Name",
        "Category",
        "SellingPrice",
        "CostPrice",
        "Stock",
        "InitialStock",
        "Barcode",
        "CreatedAt",
        "UpdatedAt",
    ],
    SALES_SHEET: [
        "SaleID",
        "OwnerID",
        "Timestamp",
        "PaymentMethod",
        "TotalAmount",
        "BuyerName",
        "BuyerNumber",
        "ItemID",
        "ItemName",
        "Quantity",
        "UnitPrice",
    ],
    SALE_LINES_SHEET: [
        "SaleID",
        "LineNo",
        "ItemID",
        "ItemName",
        "Quantity",
        "UnitPrice",
        "LineTotal",
    ],
    SETTINGS_SHEET: [
        "OwnerID",
        "Key",
        "Value",
    ],
}

# Attribute names accepted by :func:`update_item` mapped onto sheet headers.
ITEM_FIELD_COLUMNS: Mapping[str, str] = {
    "name": "Name",
    "category": "Category",
    "selling_price": "SellingPrice",
    "cost_price": "CostPrice",
    "stock": "Stock",
    "initial_stock": "InitialStock",
    "barcode": "Barcode",
    "updated_at": "UpdatedAt",
}

SALE_FIELD_COLUMNS: Mapping[str, str] = {
    "payment_method": "PaymentMethod",
    "buyer_name": "BuyerName",
    "buyer_number": "BuyerNumber",
}


class AtomicWriteError(Exception):
    """Raised when a sale batch is rejected; no part of the batch was applied."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_owner_id: str
    low_stock_ratio: Decimal = LOW_STOCK_RATIO
    best_seller_limit: int = BEST_SELLER_LIMIT


@dataclass(frozen=True)
class ItemRow:
    """In-memory view of a row from the ``Items`` sheet."""

    item_id: str
    owner_id: str
    name: str
    category: Optional[str]
    selling_price: Decimal
    cost_price: Decimal
    stock: int
    initial_stock: int
    barcode: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class SaleLine:
    """One line item of a sale."""

    item_id: Optional[str]
    item_name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class SaleRow:
    """Normalized sale record, whichever shape it was stored in."""

    sale_id: str
    owner_id: str
    lines: tuple[SaleLine, ...]
    total_amount: Decimal
    payment_method: PaymentMethod
    shape: SaleShape = SaleShape.ITEMIZED
    buyer_name: Optional[str] = None
    buyer_number: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class StockDelta:
    """Signed adjustment applied to an item's on-hand stock."""

    item_id: str
    delta: int


@dataclass
class _BatchJournal:
    """Undo information captured while a sale batch is being applied."""

    row_marks: Dict[str, int] = field(default_factory=dict)
    cell_values: Dict[tuple[int, int], Any] = field(default_factory=dict)


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    An explicit path wins without verification. Otherwise the search walks up
    from the current working directory and returns the first
    ``CONFIG_FILE_NAME`` that exists.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Parser holding the raw configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` and ``[Defaults]`` are mandatory. ``[Analytics]`` is optional
    and falls back to the package defaults for the low-stock ratio and the
    best-seller list length. Relative ``DataFile`` entries are anchored to
    ``base_path`` (or the working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing.
        ValueError: If an ``[Analytics]`` value is not numeric.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        default_owner = parser.get("Defaults", "OwnerID")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    low_stock_raw = parser.get("Analytics", "LowStockRatio", fallback=str(LOW_STOCK_RATIO))
    try:
        low_stock_ratio = Decimal(low_stock_raw)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid LowStockRatio: {low_stock_raw!r}") from exc
    best_seller_limit = parser.getint("Analytics", "BestSellerLimit", fallback=BEST_SELLER_LIMIT)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_owner_id=default_owner,
        low_stock_ratio=low_stock_ratio,
        best_seller_limit=best_seller_limit,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------


def to_decimal(raw: Any) -> Decimal:
    """Coerce a cell or document value into a ``Decimal``; garbage becomes 0."""

    if raw is None or isinstance(raw, bool):
        return Decimal("0")
    if isinstance(raw, Decimal):
        return raw if raw.is_finite() else Decimal("0")
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        log.warning("Coercing unparsable numeric value %r to 0", raw)
        return Decimal("0")
    if not value.is_finite():
        log.warning("Coercing non-finite numeric value %r to 0", raw)
        return Decimal("0")
    return value


def to_int(raw: Any) -> int:
    """Coerce a cell or document value into an ``int``; garbage becomes 0."""

    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    return int(to_decimal(raw))


def to_optional_str(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw)
    return text if text != "" else None


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Parse a stored timestamp; unreadable values yield ``None``.

    Accepts ``datetime`` objects, ISO-8601 strings, epoch seconds, and the
    ``{"_seconds": ...}`` mappings found in cloud document exports. Naive
    results are treated as UTC.
    """

    parsed: Optional[datetime] = None
    try:
        if isinstance(raw, datetime):
            parsed = raw
        elif isinstance(raw, str) and raw.strip():
            parsed = datetime.fromisoformat(raw.strip())
        elif isinstance(raw, (int, float)) and not isinstance(raw, bool):
            parsed = datetime.fromtimestamp(raw, UTC)
        elif isinstance(raw, Mapping):
            seconds = raw.get("_seconds", raw.get("seconds"))
            if seconds is not None:
                parsed = datetime.fromtimestamp(float(seconds), UTC)
    except (ValueError, TypeError, OverflowError, OSError):
        log.warning("Ignoring unparsable timestamp %r", raw)
        return None

    if parsed is not None and parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def normalize_payment_method(raw: Any) -> PaymentMethod:
    """Resolve the stored payment method into :class:`PaymentMethod`.

    Older records wrap the value in an object (``{"paymentMethod": "paid"}``)
    or use the ``cash``/``pending`` aliases. Anything unrecognised is read as
    ``PAID``, which is also how receipts display it.
    """

    if isinstance(raw, PaymentMethod):
        return raw
    if isinstance(raw, Mapping):
        raw = raw.get("paymentMethod")
    if isinstance(raw, str):
        key = raw.strip().lower()
        if key in PAYMENT_METHOD_ALIASES:
            return PAYMENT_METHOD_ALIASES[key]
        try:
            return PaymentMethod(key)
        except ValueError:
            pass
    log.warning("Unrecognised payment method %r, treating as paid", raw)
    return PaymentMethod.PAID


# ---------------------------------------------------------------------------
# Sheet readers
# ---------------------------------------------------------------------------


def _header_map(sheet: Worksheet) -> Dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _iter_populated_rows(sheet: Worksheet) -> Iterable[tuple]:
    width = sheet.max_column
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            # Pad short rows so positional unpacking stays stable.
            yield tuple(raw) + (None,) * (width - len(raw))


def iter_items(workbook: Workbook, owner_id: Optional[str] = None) -> Iterable[ItemRow]:
    """Yield item records in sheet order, optionally limited to one owner."""

    for raw in _iter_populated_rows(workbook[ITEMS_SHEET]):
        item = deserialize_item(raw)
        if owner_id is None or item.owner_id == owner_id:
            yield item


def iter_sales(workbook: Workbook, owner_id: Optional[str] = None) -> Iterable[SaleRow]:
    """Yield sale records with their line items attached.

    ``SaleLines`` is read once and grouped by sale id. A sale with line rows is
    itemized; a sale without any is read through the legacy flat columns.
    """

    lines_by_sale: Dict[str, List[tuple[int, SaleLine]]] = defaultdict(list)
    for raw in _iter_populated_rows(workbook[SALE_LINES_SHEET]):
        sale_id, line_no, line = deserialize_sale_line(raw)
        lines_by_sale[sale_id].append((line_no, line))

    for raw in _iter_populated_rows(workbook[SALES_SHEET]):
        sale_id = str(raw[0])
        ordered = sorted(lines_by_sale.get(sale_id, []), key=lambda entry: entry[0])
        sale = deserialize_sale(raw, [line for _, line in ordered])
        if owner_id is None or sale.owner_id == owner_id:
            yield sale


def read_settings(workbook: Workbook, owner_id: str) -> Dict[str, str]:
    """Return the owner's business-profile blob as a flat mapping."""

    values: Dict[str, str] = {}
    for raw in _iter_populated_rows(workbook[SETTINGS_SHEET]):
        row_owner, key, value = raw[:3]
        if str(row_owner) == owner_id and key is not None:
            values[str(key)] = "" if value is None else str(value)
    return values


# ---------------------------------------------------------------------------
# Sheet writers
# ---------------------------------------------------------------------------


def append_item(workbook: Workbook, record: ItemRow) -> None:
    """Append an item record to the ``Items`` worksheet."""

    workbook[ITEMS_SHEET].append(serialize_item(record))


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    """Append a sale and, for itemized sales, its line rows.

    Legacy single-item sales keep their only line in the flat columns of the
    ``Sales`` sheet so they read back in the same shape.
    """

    workbook[SALES_SHEET].append(serialize_sale(record))
    if record.shape is SaleShape.ITEMIZED:
        lines_sheet = workbook[SALE_LINES_SHEET]
        for line_no, line in enumerate(record.lines, start=1):
            lines_sheet.append(serialize_sale_line(record.sale_id, line_no, line))


def update_item(workbook: Workbook, item_id: str, *, field_values: Mapping[str, Any], owner_id: Optional[str] = None) -> None:
    """Update selected columns of an existing item.

    ``field_values`` is keyed by :class:`ItemRow` attribute names (see
    ``ITEM_FIELD_COLUMNS``). Only the listed columns change.

    Raises:
        KeyError: If the item or a referenced field cannot be found.
    """

    row_index = locate_row(workbook, ITEMS_SHEET, "ItemID", item_id, owner_id=owner_id)
    if row_index is None:
        raise KeyError(f"Item not found: {item_id}")

    unknown = sorted(name for name in field_values if name not in ITEM_FIELD_COLUMNS)
    if unknown:
        raise KeyError(f"Unknown item field(s): {', '.join(unknown)}")

    sheet = workbook[ITEMS_SHEET]
    header_map = _header_map(sheet)
    for name, value in field_values.items():
        column = header_map[ITEM_FIELD_COLUMNS[name]]
        sheet.cell(row=row_index, column=column, value=_cell_value(value))


def delete_item(workbook: Workbook, item_id: str, *, owner_id: Optional[str] = None) -> None:
    """Remove an item row.

    Raises:
        KeyError: If the item does not exist.
    """

    row_index = locate_row(workbook, ITEMS_SHEET, "ItemID", item_id, owner_id=owner_id)
    if row_index is None:
        raise KeyError(f"Item not found: {item_id}")
    workbook[ITEMS_SHEET].delete_rows(row_index, 1)


def update_sale_field(workbook: Workbook, sale_id: str, field_name: str, value: Any, *, owner_id: Optional[str] = None) -> None:
    """Overwrite a single mutable column of a stored sale.

    Raises:
        KeyError: If the sale or the field is unknown.
    """

    if field_name not in SALE_FIELD_COLUMNS:
        raise KeyError(f"Unknown sale field: {field_name}")
    row_index = locate_row(workbook, SALES_SHEET, "SaleID", sale_id, owner_id=owner_id)
    if row_index is None:
        raise KeyError(f"Sale not found: {sale_id}")

    sheet = workbook[SALES_SHEET]
    column = _header_map(sheet)[SALE_FIELD_COLUMNS[field_name]]
    sheet.cell(row=row_index, column=column, value=_cell_value(value))


def write_settings(workbook: Workbook, owner_id: str, values: Mapping[str, Any]) -> None:
    """Merge ``values`` into the owner's settings rows."""

    sheet = workbook[SETTINGS_SHEET]
    existing: Dict[str, int] = {}
    for row_idx, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if raw and raw[0] is not None and str(raw[0]) == owner_id and raw[1] is not None:
            existing[str(raw[1])] = row_idx

    for key, value in values.items():
        text = "" if value is None else str(value)
        if key in existing:
            sheet.cell(row=existing[key], column=3, value=text)
        else:
            sheet.append([owner_id, key, text])


def commit_sale_batch(
    workbook: Workbook,
    sale: SaleRow,
    stock_deltas: Sequence[StockDelta],
    *,
    timestamp: Optional[datetime] = None,
) -> SaleRow:
    """Write a sale and its stock decrements as one all-or-nothing batch.

    Every referenced item must exist for the sale's owner before anything is
    written. Deltas are applied to the current stock value without any floor,
    so concurrent batches may leave stock negative. If any step fails, the
    appended rows and modified cells are restored and
    :class:`AtomicWriteError` is raised.

    Args:
        workbook (Workbook): Workbook holding the item and sale sheets.
        sale (SaleRow): Sale to insert; its timestamp is assigned here.
        stock_deltas (Sequence[StockDelta]): Signed stock adjustments.
        timestamp (datetime | None): Commit time override, defaults to now.

    Returns:
        SaleRow: The stored sale carrying its commit timestamp.

    Raises:
        AtomicWriteError: If the batch was rejected. No change remains.
    """

    items_sheet = workbook[ITEMS_SHEET]
    header_map = _header_map(items_sheet)
    stock_column = header_map["Stock"]
    updated_column = header_map["UpdatedAt"]

    targets: List[tuple[int, StockDelta]] = []
    for delta in stock_deltas:
        row_index = locate_row(workbook, ITEMS_SHEET, "ItemID", delta.item_id, owner_id=sale.owner_id)
        if row_index is None:
            log.error("Rejecting sale batch '%s': unknown item '%s'", sale.sale_id, delta.item_id)
            raise AtomicWriteError(f"Unknown item in sale batch: {delta.item_id}")
        targets.append((row_index, delta))

    committed_at = timestamp if timestamp is not None else datetime.now(UTC)
    committed = replace(sale, timestamp=committed_at)
    journal = _BatchJournal(
        row_marks={
            SALES_SHEET: workbook[SALES_SHEET].max_row,
            SALE_LINES_SHEET: workbook[SALE_LINES_SHEET].max_row,
        }
    )

    try:
        append_sale(workbook, committed)
        for row_index, delta in targets:
            for column in (stock_column, updated_column):
                journal.cell_values.setdefault(
                    (row_index, column),
                    items_sheet.cell(row=row_index, column=column).value,
                )
            _apply_stock_delta(items_sheet, row_index, stock_column, delta.delta)
            items_sheet.cell(row=row_index, column=updated_column, value=format_timestamp(committed_at))
    except Exception as exc:
        _rollback_batch(workbook, journal)
        log.error("Sale batch '%s' rolled back: %s", sale.sale_id, exc)
        raise AtomicWriteError(f"Sale batch rejected: {exc}") from exc

    return committed


def _apply_stock_delta(sheet: Worksheet, row_index: int, column: int, delta: int) -> None:
    cell = sheet.cell(row=row_index, column=column)
    cell.value = to_int(cell.value) + delta


def _rollback_batch(workbook: Workbook, journal: _BatchJournal) -> None:
    items_sheet = workbook[ITEMS_SHEET]
    for (row_index, column), value in journal.cell_values.items():
        items_sheet.cell(row=row_index, column=column, value=value)
    for sheet_name, mark in journal.row_marks.items():
        sheet = workbook[sheet_name]
        if sheet.max_row > mark:
            sheet.delete_rows(mark + 1, sheet.max_row - mark)


def locate_row(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    *,
    owner_id: Optional[str] = None,
) -> Optional[int]:
    """Find the first row whose ``key_column`` equals ``key_value``.

    When ``owner_id`` is given the row must also carry that ``OwnerID``.

    Returns:
        int | None: 1-based Excel row index, or ``None`` when nothing matches.

    Raises:
        KeyError: If ``key_column`` (or ``OwnerID`` when filtering by owner) is
            not a header of the worksheet.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")
    key_index = header_map[key_column] - 1
    owner_index = None
    if owner_id is not None:
        if "OwnerID" not in header_map:
            raise KeyError("Unknown column: OwnerID")
        owner_index = header_map["OwnerID"] - 1

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if key_index >= len(row) or row[key_index] is None:
            continue
        if str(row[key_index]) != key_value:
            continue
        if owner_index is not None and str(row[owner_index]) != owner_id:
            continue
        return row_idx

    return None


# ---------------------------------------------------------------------------
# Row codecs
# ---------------------------------------------------------------------------


def _cell_value(value: Any) -> Any:
    if isinstance(value, PaymentMethod):
        return value.value
    if isinstance(value, datetime):
        return format_timestamp(value)
    return value


def serialize_item(record: ItemRow) -> list[object]:
    """Arrange an item in ``Items`` column order."""

    return [
        record.item_id,
        record.owner_id,
        record.name,
        record.category,
        record.selling_price,
        record.cost_price,
        record.stock,
        record.initial_stock,
        record.barcode,
        format_timestamp(record.created_at),
        format_timestamp(record.updated_at),
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    """Arrange a sale in ``Sales`` column order.

    The flat item columns are only filled for legacy single-item records.
    """

    flat: list[object] = [None, None, None, None]
    if record.shape is SaleShape.LEGACY_SINGLE and record.lines:
        line = record.lines[0]
        flat = [line.item_id, line.item_name, line.quantity, line.unit_price]
    return [
        record.sale_id,
        record.owner_id,
        format_timestamp(record.timestamp),
        record.payment_method.value,
        record.total_amount,
        record.buyer_name,
        record.buyer_number,
        *flat,
    ]


def serialize_sale_line(sale_id: str, line_no: int, line: SaleLine) -> list[object]:
    return [
        sale_id,
        line_no,
        line.item_id,
        line.item_name,
        line.quantity,
        line.unit_price,
        line.line_total,
    ]


def deserialize_item(raw_row: Sequence[object]) -> ItemRow:
    """Convert an ``Items`` row into an :class:`ItemRow`.

    Numeric columns pass through the coercion helpers, so a corrupted cell
    reads as zero instead of breaking every listing.
    """

    (
        item_id,
        owner_id,
        name,
        category,
        selling_raw,
        cost_raw,
        stock_raw,
        initial_raw,
        barcode,
        created_raw,
        updated_raw,
    ) = raw_row[:11]

    return ItemRow(
        item_id=str(item_id),
        owner_id=str(owner_id) if owner_id is not None else "",
        name=str(name) if name is not None else "",
        category=to_optional_str(category),
        selling_price=to_decimal(selling_raw),
        cost_price=to_decimal(cost_raw),
        stock=to_int(stock_raw),
        initial_stock=to_int(initial_raw),
        barcode=to_optional_str(barcode),
        created_at=parse_timestamp(created_raw),
        updated_at=parse_timestamp(updated_raw),
    )


def deserialize_sale_line(raw_row: Sequence[object]) -> tuple[str, int, SaleLine]:
    sale_id, line_no, item_id, item_name, quantity_raw, unit_raw, total_raw = raw_row[:7]
    quantity = to_int(quantity_raw)
    unit_price = to_decimal(unit_raw)
    line_total = to_decimal(total_raw) if total_raw is not None else unit_price * quantity
    return (
        str(sale_id),
        to_int(line_no),
        SaleLine(
            item_id=to_optional_str(item_id),
            item_name=str(item_name) if item_name is not None else "",
            quantity=quantity,
            unit_price=unit_price,
            line_total=line_total,
        ),
    )


def deserialize_sale(raw_row: Sequence[object], lines: Sequence[SaleLine]) -> SaleRow:
    """Convert a ``Sales`` row plus its line rows into a :class:`SaleRow`.

    A sale without line rows is a legacy single-item record; its only line is
    rebuilt from the flat ``ItemID``/``ItemName``/``Quantity``/``UnitPrice``
    columns when any of them is filled.
    """

    (
        sale_id,
        owner_id,
        timestamp_raw,
        payment_raw,
        total_raw,
        buyer_name,
        buyer_number,
        item_id,
        item_name,
        quantity_raw,
        unit_raw,
    ) = raw_row[:11]

    if lines:
        shape = SaleShape.ITEMIZED
        resolved_lines = tuple(lines)
    else:
        shape = SaleShape.LEGACY_SINGLE
        resolved_lines = ()
        if any(value is not None for value in (item_id, item_name, quantity_raw, unit_raw)):
            quantity = to_int(quantity_raw)
            unit_price = to_decimal(unit_raw)
            resolved_lines = (
                SaleLine(
                    item_id=to_optional_str(item_id),
                    item_name=str(item_name) if item_name is not None else "",
                    quantity=quantity,
                    unit_price=unit_price,
                    line_total=unit_price * quantity,
                ),
            )

    return SaleRow(
        sale_id=str(sale_id),
        owner_id=str(owner_id) if owner_id is not None else "",
        lines=resolved_lines,
        total_amount=to_decimal(total_raw),
        payment_method=normalize_payment_method(payment_raw),
        shape=shape,
        buyer_name=to_optional_str(buyer_name),
        buyer_number=to_optional_str(buyer_number),
        timestamp=parse_timestamp(timestamp_raw),
    )


# ---------------------------------------------------------------------------
# Exported document normalization
# ---------------------------------------------------------------------------


def normalize_item_document(document: Mapping[str, Any], *, owner_id: str) -> ItemRow:
    """Turn an exported item document into an :class:`ItemRow`.

    Older documents carry ``purchasePrice`` instead of ``costPrice`` and may
    lack ``initialStock``, which then reads as 0.
    """

    cost_raw = document.get("costPrice")
    if cost_raw in (None, ""):
        cost_raw = document.get("purchasePrice")
    return ItemRow(
        item_id=str(document.get("id", "")),
        owner_id=owner_id,
        name=str(document.get("name") or ""),
        category=to_optional_str(document.get("category")),
        selling_price=to_decimal(document.get("sellingPrice")),
        cost_price=to_decimal(cost_raw),
        stock=to_int(document.get("stock")),
        initial_stock=to_int(document.get("initialStock")),
        barcode=to_optional_str(document.get("barcode")),
        created_at=parse_timestamp(document.get("createdAt")),
        updated_at=parse_timestamp(document.get("updatedAt")),
    )


def normalize_sale_document(document: Mapping[str, Any], *, owner_id: str) -> SaleRow:
    """Turn an exported sale document of either shape into a :class:`SaleRow`.

    Documents with an ``items`` list are itemized. Anything else is read as a
    legacy single-item sale from the flat ``itemId``/``itemName``/``quantity``/
    ``unitPrice``/``total`` fields.
    """

    raw_items = document.get("items")
    if isinstance(raw_items, list):
        shape = SaleShape.ITEMIZED
        lines = []
        for entry in raw_items:
            if not isinstance(entry, Mapping):
                log.warning("Skipping malformed line in sale document %r", document.get("id"))
                continue
            quantity = to_int(entry.get("quantity"))
            unit_price = to_decimal(entry.get("unitPrice"))
            line_total_raw = entry.get("total", entry.get("lineTotal"))
            lines.append(
                SaleLine(
                    item_id=to_optional_str(entry.get("itemId")),
                    item_name=str(entry.get("itemName") or entry.get("name") or ""),
                    quantity=quantity,
                    unit_price=unit_price,
                    line_total=to_decimal(line_total_raw) if line_total_raw is not None else unit_price * quantity,
                )
            )
        total_raw = document.get("totalAmount")
    else:
        shape = SaleShape.LEGACY_SINGLE
        quantity = to_int(document.get("quantity"))
        unit_price = to_decimal(document.get("unitPrice"))
        lines = [
            SaleLine(
                item_id=to_optional_str(document.get("itemId")),
                item_name=str(document.get("itemName") or ""),
                quantity=quantity,
                unit_price=unit_price,
                line_total=unit_price * quantity,
            )
        ]
        total_raw = document.get("totalAmount", document.get("total"))

    return SaleRow(
        sale_id=str(document.get("id", "")),
        owner_id=owner_id,
        lines=tuple(lines),
        total_amount=to_decimal(total_raw),
        payment_method=normalize_payment_method(document.get("paymentMethod")),
        shape=shape,
        buyer_name=to_optional_str(document.get("buyerName")),
        buyer_number=to_optional_str(document.get("buyerNumber")),
        timestamp=parse_timestamp(document.get("timestamp")),
    )
