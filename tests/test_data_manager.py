"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from decimal import Decimal
from pathlib import Path

from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from fers import constants, data_manager
from fers.setup_workbook import build_workbook


@pytest.fixture
def shop_workbook() -> OpenpyxlWorkbook:
    return build_workbook(admin_username="admin", admin_password="admin123")


def _item(name: str = "Scarf", price: str = "12.50", stock: int = 4) -> data_manager.InventoryItemRow:
    return data_manager.InventoryItemRow(
        item_id=None,
        item_name=name,
        description=f"{name} description",
        price=Decimal(price),
        stock=stock,
    )


def _transaction(account_id: int = 2, total: str = "25.00") -> data_manager.TransactionRow:
    return data_manager.TransactionRow(
        transaction_id=None,
        account_id=account_id,
        status=constants.TransactionStatus.CREATED.value,
        created_at="2025-03-01T10:00:00+00:00",
        total=Decimal(total),
    )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery walks up from the working directory."""

    config_path = tmp_path / "config.ini"
    config_path.write_text("[System]\nDataFile=fers_data.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_path


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    parser = data_manager.read_config(config_file)
    assert parser.get("System", "StoreName") == "Test Boutique"
    assert parser.get("Defaults", "AdminUsername") == "admin"


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = configparser.ConfigParser()
    parser.read(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.admin_username == "admin"
    assert settings.admin_password == "admin123"
    assert settings.default_payment_method == "CARD"


def test_parse_settings_requires_expected_sections(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile=x.xlsx")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_returns_openpyxl_instance(shop_workbook_path):
    workbook = data_manager.open_workbook(shop_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert set(data_manager.SHEET_COLUMNS) <= set(workbook.sheetnames)


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_and_refresh_round_trip_keeps_decimal_prices(tmp_path, shop_workbook):
    """Prices written as Decimal come back as Decimal after a save and reload."""

    data_manager.append_inventory_item(shop_workbook, _item(price="19.99"))
    destination = tmp_path / "nested" / "shop.xlsx"
    data_manager.save_workbook(shop_workbook, destination)

    reloaded = data_manager.refresh_workbook(destination)
    (item,) = list(data_manager.iter_inventory_items(reloaded))
    assert item.price == Decimal("19.99")
    assert isinstance(item.price, Decimal)


def test_header_map_returns_one_based_columns(shop_workbook):
    columns = data_manager.header_map(shop_workbook, data_manager.INVENTORY_SHEET)
    assert columns == {"ItemID": 1, "ItemName": 2, "Description": 3, "Price": 4, "Stock": 5}


# ---------------------------------------------------------------------------
# Identifier allocation
# ---------------------------------------------------------------------------


def test_append_assigns_increasing_ids(shop_workbook):
    first = data_manager.append_inventory_item(shop_workbook, _item("Hat"))
    second = data_manager.append_inventory_item(shop_workbook, _item("Belt"))
    assert (first.item_id, second.item_id) == (1, 2)


def test_ids_are_not_reused_after_delete(shop_workbook):
    """Deleting the newest row must not hand its id out again."""

    data_manager.append_inventory_item(shop_workbook, _item("Hat"))
    newest = data_manager.append_inventory_item(shop_workbook, _item("Belt"))
    data_manager.delete_inventory_item(shop_workbook, newest.item_id)

    replacement = data_manager.append_inventory_item(shop_workbook, _item("Gloves"))

    assert replacement.item_id == 3


def test_next_id_seeds_missing_counter_from_existing_rows(shop_workbook):
    sequences = shop_workbook[data_manager.SEQUENCES_SHEET]
    sequences.delete_rows(2, sequences.max_row - 1)

    # the default admin already holds AccountID 1
    assert data_manager.next_id(shop_workbook, data_manager.ACCOUNTS_SHEET) == 2
    assert data_manager.next_id(shop_workbook, data_manager.ACCOUNTS_SHEET) == 3


def test_next_id_rejects_sheet_without_key(shop_workbook):
    with pytest.raises(KeyError):
        data_manager.next_id(shop_workbook, data_manager.SEQUENCES_SHEET)


# ---------------------------------------------------------------------------
# Reads and updates
# ---------------------------------------------------------------------------


def test_iter_accounts_includes_default_admin(shop_workbook):
    accounts = list(data_manager.iter_accounts(shop_workbook))
    assert accounts == [data_manager.AccountRow(1, "admin", "admin123", constants.AccountRole.ADMIN.value)]


def test_update_inventory_item_writes_only_named_columns(shop_workbook):
    stored = data_manager.append_inventory_item(shop_workbook, _item("Scarf", "12.50", 4))

    data_manager.update_inventory_item(shop_workbook, stored.item_id, field_values={"Stock": 9})

    (item,) = list(data_manager.iter_inventory_items(shop_workbook))
    assert item.stock == 9
    assert item.price == Decimal("12.50")
    assert item.item_name == "Scarf"


def test_update_inventory_item_missing_row_raises(shop_workbook):
    with pytest.raises(KeyError):
        data_manager.update_inventory_item(shop_workbook, 99, field_values={"Stock": 1})


def test_update_inventory_item_unknown_column_raises(shop_workbook):
    stored = data_manager.append_inventory_item(shop_workbook, _item())
    with pytest.raises(KeyError):
        data_manager.update_inventory_item(shop_workbook, stored.item_id, field_values={"Colour": "red"})


def test_update_transaction_status_missing_row_raises(shop_workbook):
    with pytest.raises(KeyError):
        data_manager.update_transaction_status(shop_workbook, 42, constants.TransactionStatus.ACCEPTED.value)


def test_update_payment_status_targets_payment_of_transaction(shop_workbook):
    transaction = data_manager.append_transaction(shop_workbook, _transaction())
    data_manager.append_payment(
        shop_workbook,
        data_manager.PaymentRow(None, transaction.transaction_id, "CARD", "SUCCESS", Decimal("25.00"), "now"),
    )

    data_manager.update_payment_status(shop_workbook, transaction.transaction_id, "REFUNDED")

    (payment,) = list(data_manager.iter_payments(shop_workbook))
    assert payment.status == "REFUNDED"
    assert payment.amount == Decimal("25.00")


def test_delete_inventory_item_missing_row_raises(shop_workbook):
    with pytest.raises(KeyError):
        data_manager.delete_inventory_item(shop_workbook, 7)


def test_deserialize_account_keeps_blank_role_as_none():
    account = data_manager.deserialize_account([5, "ghost", "pw", None])
    assert account.role is None
    assert account.account_id == 5


# ---------------------------------------------------------------------------
# Stock decrements
# ---------------------------------------------------------------------------


def test_decrement_stock_has_no_floor(shop_workbook):
    stored = data_manager.append_inventory_item(shop_workbook, _item(stock=2))

    assert data_manager.decrement_stock(shop_workbook, stored.item_id, 5) is True

    (item,) = list(data_manager.iter_inventory_items(shop_workbook))
    assert item.stock == -3


def test_decrement_stock_reports_missing_item(shop_workbook):
    assert data_manager.decrement_stock(shop_workbook, 123, 1) is False


def test_decrement_stock_if_available_refuses_shortfall(shop_workbook):
    stored = data_manager.append_inventory_item(shop_workbook, _item(stock=2))

    assert data_manager.decrement_stock_if_available(shop_workbook, stored.item_id, 3) is False
    assert data_manager.decrement_stock_if_available(shop_workbook, stored.item_id, 2) is True

    (item,) = list(data_manager.iter_inventory_items(shop_workbook))
    assert item.stock == 0


def test_decrement_stock_if_available_reports_missing_item(shop_workbook):
    assert data_manager.decrement_stock_if_available(shop_workbook, 55, 1) is False


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


def test_restore_sheets_discards_rows_added_after_snapshot(shop_workbook):
    data_manager.append_transaction(shop_workbook, _transaction(total="10.00"))
    snapshot = data_manager.snapshot_sheets(shop_workbook, [data_manager.TRANSACTIONS_SHEET])

    data_manager.append_transaction(shop_workbook, _transaction(total="20.00"))
    data_manager.append_transaction(shop_workbook, _transaction(total="30.00"))
    data_manager.restore_sheets(shop_workbook, snapshot)

    rows = list(data_manager.iter_transactions(shop_workbook))
    assert [row.total for row in rows] == [Decimal("10.00")]
    assert shop_workbook[data_manager.TRANSACTIONS_SHEET].cell(row=1, column=1).value == "TransactionID"


def test_restore_sheets_puts_back_deleted_and_edited_rows(shop_workbook):
    first = data_manager.append_inventory_item(shop_workbook, _item("Hat", stock=3))
    second = data_manager.append_inventory_item(shop_workbook, _item("Belt", stock=8))
    snapshot = data_manager.snapshot_sheets(shop_workbook, [data_manager.INVENTORY_SHEET])

    data_manager.decrement_stock(shop_workbook, second.item_id, 8)
    data_manager.delete_inventory_item(shop_workbook, first.item_id)
    data_manager.restore_sheets(shop_workbook, snapshot)

    items = list(data_manager.iter_inventory_items(shop_workbook))
    assert [(item.item_id, item.stock) for item in items] == [(1, 3), (2, 8)]


def test_rows_appended_after_restore_remain_visible(shop_workbook):
    snapshot = data_manager.snapshot_sheets(shop_workbook, [data_manager.TRANSACTIONS_SHEET])
    data_manager.append_transaction(shop_workbook, _transaction())
    data_manager.restore_sheets(shop_workbook, snapshot)

    stored = data_manager.append_transaction(shop_workbook, _transaction(total="5.00"))

    rows = list(data_manager.iter_transactions(shop_workbook))
    assert [row.transaction_id for row in rows] == [stored.transaction_id]
    assert data_manager.locate_row(
        shop_workbook, data_manager.TRANSACTIONS_SHEET, "TransactionID", stored.transaction_id
    ) is not None
