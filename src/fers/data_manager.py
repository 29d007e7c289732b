"""Data access layer for the FERS shop.

This module is the persistence gateway: it reads from and writes to the
``openpyxl`` workbook that stores accounts, the product catalog, orders,
order lines and payments. Business rules belong in :mod:`fers.core_logic`.

The public API covers four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, saving and reloading the Excel file.
3. Record operations: typed iteration, inserts with gateway-generated ids,
   targeted column updates and deletes. Missing keys raise ``KeyError``;
   nothing is silently skipped.
4. Sheet snapshots used by the business layer to roll back multi-step
   writes.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, replace
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, TypeVar

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import SheetName


CONFIG_FILE_NAME = "config.ini"
ACCOUNTS_SHEET = SheetName.ACCOUNTS.value
INVENTORY_SHEET = SheetName.INVENTORY_ITEMS.value
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value
LINE_ITEMS_SHEET = SheetName.LINE_ITEMS.value
PAYMENTS_SHEET = SheetName.PAYMENTS.value
SEQUENCES_SHEET = SheetName.SEQUENCES.value

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    ACCOUNTS_SHEET: ["AccountID", "AccountName", "Password", "Role"],
    INVENTORY_SHEET: ["ItemID", "ItemName", "Description", "Price", "Stock"],
    TRANSACTIONS_SHEET: ["TransactionID", "AccountID", "Status", "CreatedAt", "Total"],
    LINE_ITEMS_SHEET: ["LineItemID", "TransactionID", "ItemID", "Quantity", "PriceAtPurchase"],
    PAYMENTS_SHEET: ["PaymentID", "TransactionID", "Method", "Status", "Amount", "PaidAt"],
    SEQUENCES_SHEET: ["SheetName", "LastID"],
}

# Primary key column of every sheet that receives generated ids.
KEY_COLUMNS: Mapping[str, str] = {
    ACCOUNTS_SHEET: "AccountID",
    INVENTORY_SHEET: "ItemID",
    TRANSACTIONS_SHEET: "TransactionID",
    LINE_ITEMS_SHEET: "LineItemID",
    PAYMENTS_SHEET: "PaymentID",
}

RowT = TypeVar("RowT")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    admin_username: str
    admin_password: str
    default_payment_method: str


@dataclass(frozen=True)
class AccountRow:
    """In-memory view of a row from the ``Accounts`` sheet."""

    account_id: Optional[int]
    account_name: str
    password: str
    role: Optional[str]


@dataclass(frozen=True)
class InventoryItemRow:
    """In-memory view of a row from the ``InventoryItems`` sheet."""

    item_id: Optional[int]
    item_name: str
    description: str
    price: Decimal
    stock: int


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet."""

    transaction_id: Optional[int]
    account_id: int
    status: str
    created_at: str
    total: Decimal


@dataclass(frozen=True)
class LineItemRow:
    """In-memory view of a row from the ``LineItems`` sheet."""

    line_item_id: Optional[int]
    transaction_id: int
    item_id: int
    quantity: int
    price_at_purchase: Decimal


@dataclass(frozen=True)
class PaymentRow:
    """In-memory view of a row from the ``Payments`` sheet."""

    payment_id: Optional[int]
    transaction_id: int
    method: str
    status: str
    amount: Decimal
    paid_at: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the shop runs.

    An explicit path wins without verification so callers can target a
    non-standard location on purpose. Otherwise the search walks up from the
    current working directory and returns the first ``config.ini`` found.

    Args:
        explicit_path (Path | None): Optional path that bypasses the search.

    Returns:
        Path: The caller's path or the discovered configuration file.

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
    """Load ``config.ini`` into a ``ConfigParser``.

    Sections are not validated here; :func:`parse_settings` owns that.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after ``~``
            expansion and resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Every required option must be present. A relative ``DataFile`` is
    anchored to ``base_path`` (the config directory in practice) or to the
    working directory when no base is given, and then resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor for relative ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings with the resolved data file path.

    Raises:
        KeyError: If a required section or option is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        admin_username = parser.get("Defaults", "AdminUsername")
        admin_password = parser.get("Defaults", "AdminPassword")
        payment_method = parser.get("Defaults", "PaymentMethod")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        admin_username=admin_username,
        admin_password=admin_password,
        default_payment_method=payment_method,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the shop workbook and return the live ``openpyxl`` object.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook at ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, dropping unsaved in-memory edits."""

    return open_workbook(data_file)


def header_map(workbook: Workbook, sheet_name: str) -> Dict[str, int]:
    """Map the header titles of ``sheet_name`` to 1-based column indices."""

    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def _iter_records(workbook: Workbook, sheet_name: str, deserializer: Callable[[Sequence[object]], RowT]) -> Iterable[RowT]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield deserializer(raw)


def iter_accounts(workbook: Workbook) -> Iterable[AccountRow]:
    """Yield every account on the ``Accounts`` sheet in row order."""

    return _iter_records(workbook, ACCOUNTS_SHEET, deserialize_account)


def iter_inventory_items(workbook: Workbook) -> Iterable[InventoryItemRow]:
    """Yield every catalog item on the ``InventoryItems`` sheet in row order."""

    return _iter_records(workbook, INVENTORY_SHEET, deserialize_inventory_item)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Yield every order on the ``Transactions`` sheet in row order."""

    return _iter_records(workbook, TRANSACTIONS_SHEET, deserialize_transaction)


def iter_line_items(workbook: Workbook) -> Iterable[LineItemRow]:
    """Yield every order line on the ``LineItems`` sheet in row order."""

    return _iter_records(workbook, LINE_ITEMS_SHEET, deserialize_line_item)


def iter_payments(workbook: Workbook) -> Iterable[PaymentRow]:
    """Yield every payment on the ``Payments`` sheet in row order."""

    return _iter_records(workbook, PAYMENTS_SHEET, deserialize_payment)


def next_id(workbook: Workbook, sheet_name: str) -> int:
    """Allocate the next primary key for ``sheet_name``.

    Counters live on the ``Sequences`` sheet so identifiers keep increasing
    even after the highest row is deleted. A sheet without a counter row is
    seeded from the largest id already present.

    Args:
        workbook (Workbook): Workbook holding both sheets.
        sheet_name (str): Sheet whose key is being allocated.

    Returns:
        int: Freshly reserved identifier, strictly greater than any issued
            before for the same sheet.

    Raises:
        KeyError: If ``sheet_name`` has no registered key column.
    """

    if sheet_name not in KEY_COLUMNS:
        raise KeyError(f"Sheet does not use generated ids: {sheet_name}")

    sequences = workbook[SEQUENCES_SHEET]
    row_index = locate_row(workbook, SEQUENCES_SHEET, "SheetName", sheet_name)
    if row_index is None:
        key_col = header_map(workbook, sheet_name)[KEY_COLUMNS[sheet_name]]
        existing = [
            row[key_col - 1]
            for row in workbook[sheet_name].iter_rows(min_row=2, values_only=True)
            if row[key_col - 1] is not None
        ]
        allocated = max((int(value) for value in existing), default=0) + 1
        sequences.append([sheet_name, allocated])
        return allocated

    last_id_col = header_map(workbook, SEQUENCES_SHEET)["LastID"]
    current = sequences.cell(row=row_index, column=last_id_col).value
    allocated = int(current or 0) + 1
    sequences.cell(row=row_index, column=last_id_col, value=allocated)
    return allocated


def append_account(workbook: Workbook, record: AccountRow) -> AccountRow:
    """Insert ``record`` on the ``Accounts`` sheet and return it with its id."""

    stored = replace(record, account_id=next_id(workbook, ACCOUNTS_SHEET))
    workbook[ACCOUNTS_SHEET].append(serialize_account(stored))
    return stored


def append_inventory_item(workbook: Workbook, record: InventoryItemRow) -> InventoryItemRow:
    """Insert ``record`` on the ``InventoryItems`` sheet and return it with its id."""

    stored = replace(record, item_id=next_id(workbook, INVENTORY_SHEET))
    workbook[INVENTORY_SHEET].append(serialize_inventory_item(stored))
    return stored


def append_transaction(workbook: Workbook, record: TransactionRow) -> TransactionRow:
    """Insert ``record`` on the ``Transactions`` sheet and return it with its id.

    Totals stay :class:`~decimal.Decimal` in memory; ``openpyxl`` writes them
    as numeric cells when the workbook is saved.
    """

    stored = replace(record, transaction_id=next_id(workbook, TRANSACTIONS_SHEET))
    workbook[TRANSACTIONS_SHEET].append(serialize_transaction(stored))
    return stored


def append_line_item(workbook: Workbook, record: LineItemRow) -> LineItemRow:
    """Insert ``record`` on the ``LineItems`` sheet and return it with its id."""

    stored = replace(record, line_item_id=next_id(workbook, LINE_ITEMS_SHEET))
    workbook[LINE_ITEMS_SHEET].append(serialize_line_item(stored))
    return stored


def append_payment(workbook: Workbook, record: PaymentRow) -> PaymentRow:
    """Insert ``record`` on the ``Payments`` sheet and return it with its id."""

    stored = replace(record, payment_id=next_id(workbook, PAYMENTS_SHEET))
    workbook[PAYMENTS_SHEET].append(serialize_payment(stored))
    return stored


def _update_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: Any, field_values: Mapping[str, Any]) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} row not found: {key_column}={key_value}")

    sheet = workbook[sheet_name]
    columns = header_map(workbook, sheet_name)
    for field, value in field_values.items():
        if field not in columns:
            raise KeyError(f"Unknown {sheet_name} field: {field}")
        sheet.cell(row=row_index, column=columns[field], value=value)


def update_inventory_item(workbook: Workbook, item_id: int, *, field_values: Dict[str, Any]) -> None:
    """Update selected columns of an existing catalog item.

    Only the named columns are written; the rest of the row is untouched.

    Args:
        workbook (Workbook): Workbook containing the inventory sheet.
        item_id (int): Identifier used to locate the target row.
        field_values (dict[str, Any]): Column titles mapped to new values.

    Raises:
        KeyError: If the item or any referenced column cannot be found.
    """

    _update_row(workbook, INVENTORY_SHEET, "ItemID", item_id, field_values)


def update_transaction_status(workbook: Workbook, transaction_id: int, status: str) -> None:
    """Overwrite the ``Status`` cell of an order.

    Raises:
        KeyError: If no order carries ``transaction_id``.
    """

    _update_row(workbook, TRANSACTIONS_SHEET, "TransactionID", transaction_id, {"Status": status})


def update_payment_status(workbook: Workbook, transaction_id: int, status: str) -> None:
    """Overwrite the ``Status`` cell of the payment attached to an order.

    Raises:
        KeyError: If the order has no payment row.
    """

    _update_row(workbook, PAYMENTS_SHEET, "TransactionID", transaction_id, {"Status": status})


def delete_inventory_item(workbook: Workbook, item_id: int) -> None:
    """Remove a catalog item row.

    Raises:
        KeyError: If no row carries ``item_id``.
    """

    row_index = locate_row(workbook, INVENTORY_SHEET, "ItemID", item_id)
    if row_index is None:
        raise KeyError(f"Inventory item not found: {item_id}")
    workbook[INVENTORY_SHEET].delete_rows(row_index)


def _stock_cell(workbook: Workbook, item_id: int):
    row_index = locate_row(workbook, INVENTORY_SHEET, "ItemID", item_id)
    if row_index is None:
        return None
    column = header_map(workbook, INVENTORY_SHEET)["Stock"]
    return workbook[INVENTORY_SHEET].cell(row=row_index, column=column)


def decrement_stock(workbook: Workbook, item_id: int, quantity: int) -> bool:
    """Subtract ``quantity`` from an item's stock without any floor.

    Returns:
        bool: ``False`` when no row carries ``item_id``, ``True`` otherwise.
    """

    cell = _stock_cell(workbook, item_id)
    if cell is None:
        return False
    cell.value = int(cell.value or 0) - quantity
    return True


def decrement_stock_if_available(workbook: Workbook, item_id: int, quantity: int) -> bool:
    """Subtract ``quantity`` only when the current stock covers it.

    This is the conditional form of :func:`decrement_stock`: the comparison
    and the write happen on the same cell in one call, so a stale read made
    earlier by the caller can never push stock below the requested amount.

    Returns:
        bool: ``True`` when the stock was decremented, ``False`` when the
            item is missing or its stock is below ``quantity``.
    """

    cell = _stock_cell(workbook, item_id)
    if cell is None:
        return False
    current = int(cell.value or 0)
    if current < quantity:
        log.debug("Conditional decrement refused for item %s: stock=%s requested=%s", item_id, current, quantity)
        return False
    cell.value = current - quantity
    return True


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: Any) -> Optional[int]:
    """Find the first row whose ``key_column`` equals ``key_value``.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title of the lookup column.
        key_value (Any): Value to match; the header row is never matched.

    Returns:
        int | None: 1-based row index of the match, otherwise ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    columns = header_map(workbook, sheet_name)
    if key_column not in columns:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = columns[key_column]
    for row_idx, row in enumerate(workbook[sheet_name].iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def snapshot_sheets(workbook: Workbook, sheet_names: Iterable[str]) -> Dict[str, List[tuple]]:
    """Capture the data rows (header excluded) of each named sheet."""

    return {
        name: [tuple(row) for row in workbook[name].iter_rows(min_row=2, values_only=True)]
        for name in sheet_names
    }


def restore_sheets(workbook: Workbook, snapshot: Mapping[str, List[tuple]]) -> None:
    """Replace the data rows of each sheet with a previously captured snapshot.

    Header rows and their formatting are left in place.
    """

    for name, rows in snapshot.items():
        sheet = workbook[name]
        if sheet.max_row > 1:
            sheet.delete_rows(2, sheet.max_row - 1)
        # explicit coordinates; append() may skip past the deleted range
        for row_idx, row in enumerate(rows, start=2):
            for col_idx, value in enumerate(row, start=1):
                sheet.cell(row=row_idx, column=col_idx, value=value)
        log.debug("Restored %d rows on sheet '%s'", len(rows), name)


def _to_decimal(raw: object, default: str = "0.00") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _to_int(raw: object) -> int:
    return int(raw) if raw is not None else 0


def serialize_account(record: AccountRow) -> list[object]:
    """Return ``[AccountID, AccountName, Password, Role]``."""

    return [record.account_id, record.account_name, record.password, record.role]


def serialize_inventory_item(record: InventoryItemRow) -> list[object]:
    """Return ``[ItemID, ItemName, Description, Price, Stock]``."""

    return [record.item_id, record.item_name, record.description, record.price, record.stock]


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Return ``[TransactionID, AccountID, Status, CreatedAt, Total]``."""

    return [record.transaction_id, record.account_id, record.status, record.created_at, record.total]


def serialize_line_item(record: LineItemRow) -> list[object]:
    """Return ``[LineItemID, TransactionID, ItemID, Quantity, PriceAtPurchase]``."""

    return [
        record.line_item_id,
        record.transaction_id,
        record.item_id,
        record.quantity,
        record.price_at_purchase,
    ]


def serialize_payment(record: PaymentRow) -> list[object]:
    """Return ``[PaymentID, TransactionID, Method, Status, Amount, PaidAt]``."""

    return [
        record.payment_id,
        record.transaction_id,
        record.method,
        record.status,
        record.amount,
        record.paid_at,
    ]


def deserialize_account(raw_row: Sequence[object]) -> AccountRow:
    """Convert a raw ``Accounts`` row into an :class:`AccountRow`.

    A blank role cell stays ``None`` so role predicates can report it as
    neither admin nor customer.
    """

    account_id, account_name, password, role = raw_row[:4]
    return AccountRow(
        account_id=_to_int(account_id),
        account_name=str(account_name) if account_name is not None else "",
        password=str(password) if password is not None else "",
        role=str(role) if role is not None else None,
    )


def deserialize_inventory_item(raw_row: Sequence[object]) -> InventoryItemRow:
    """Convert a raw ``InventoryItems`` row into an :class:`InventoryItemRow`.

    Excel hands numbers back as ``int`` or ``float``; prices are normalised
    to :class:`~decimal.Decimal` through ``str`` so binary float noise never
    reaches the totals.
    """

    item_id, item_name, description, price_raw, stock_raw = raw_row[:5]
    return InventoryItemRow(
        item_id=_to_int(item_id),
        item_name=str(item_name) if item_name is not None else "",
        description=str(description) if description is not None else "",
        price=_to_decimal(price_raw),
        stock=_to_int(stock_raw),
    )


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw ``Transactions`` row into a :class:`TransactionRow`."""

    transaction_id, account_id, status, created_at, total_raw = raw_row[:5]
    return TransactionRow(
        transaction_id=_to_int(transaction_id),
        account_id=_to_int(account_id),
        status=str(status) if status is not None else "",
        created_at=str(created_at) if created_at is not None else "",
        total=_to_decimal(total_raw),
    )


def deserialize_line_item(raw_row: Sequence[object]) -> LineItemRow:
    """Convert a raw ``LineItems`` row into a :class:`LineItemRow`."""

    line_item_id, transaction_id, item_id, quantity, price_raw = raw_row[:5]
    return LineItemRow(
        line_item_id=_to_int(line_item_id),
        transaction_id=_to_int(transaction_id),
        item_id=_to_int(item_id),
        quantity=_to_int(quantity),
        price_at_purchase=_to_decimal(price_raw),
    )


def deserialize_payment(raw_row: Sequence[object]) -> PaymentRow:
    """Convert a raw ``Payments`` row into a :class:`PaymentRow`."""

    payment_id, transaction_id, method, status, amount_raw, paid_at = raw_row[:6]
    return PaymentRow(
        payment_id=_to_int(payment_id),
        transaction_id=_to_int(transaction_id),
        method=str(method) if method is not None else "",
        status=str(status) if status is not None else "",
        amount=_to_decimal(amount_raw),
        paid_at=str(paid_at) if paid_at is not None else "",
    )
