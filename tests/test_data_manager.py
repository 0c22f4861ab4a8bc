"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from podo_ledger import constants, data_manager  # noqa: E402


def _owner(owner_id: str, *, shelf_codes=("S01", "S02"), balance: int = 0) -> data_manager.OwnerRow:
    return data_manager.OwnerRow(
        owner_id=owner_id,
        owner_number="MP001",
        name="Kim Podo",
        branch_id="BR001",
        shelf_codes=tuple(shelf_codes),
        balance=balance,
        status="active",
        phone="010-1234-5678",
        bank_account=None,
        created_at="2025-01-02",
    )


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent_directories(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=podo_master.xlsx")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    result = data_manager.find_config_file()
    assert result == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "ShopName") == "Test Books"
    assert parser.get("Defaults", "PaymentMethod") == "card"


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    parser = configparser.ConfigParser()
    bundle = config_factory(make_relative=True, capacity=25)
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.shop_name == "Test Books"
    assert settings.default_payment_method == "card"
    assert settings.notification_capacity == 25


def test_parse_settings_defaults_notification_capacity(tmp_path):
    """The [Ledger] section is optional."""

    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = data.xlsx\nShopName = Podo\nSchemaVersion = 1.0.0\n"
        "[Defaults]\nPaymentMethod = cash\n"
    )
    settings = data_manager.parse_settings(parser, base_path=tmp_path)
    assert settings.notification_capacity == constants.DEFAULT_NOTIFICATION_CAPACITY
    assert settings.data_file == (tmp_path / "data.xlsx").resolve()


def test_parse_settings_rejects_non_positive_capacity(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = data.xlsx\nShopName = Podo\nSchemaVersion = 1.0.0\n"
        "[Ledger]\nNotificationCapacity = 0\n"
        "[Defaults]\nPaymentMethod = cash\n"
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_master_workbook_has_every_collection_sheet(master_workbook_path):
    """The bootstrap workbook should expose one sheet per collection with headers."""

    workbook = data_manager.open_workbook(master_workbook_path)
    for sheet in constants.SheetName:
        header = next(workbook[sheet.value].iter_rows(min_row=1, max_row=1, values_only=True))
        assert list(header) == list(data_manager.SHEET_COLUMNS[sheet.value])


def test_load_collection_returns_seeded_branches(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    branches = data_manager.load_collection(workbook, constants.SheetName.BRANCHES)
    assert [branch.branch_id for branch in branches] == ["BR001", "BR002", "BR003"]
    assert branches[2].status == constants.RecordStatus.PENDING.value


def test_load_collection_returns_typed_shelves(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    shelves = data_manager.load_collection(workbook, constants.SheetName.SHELVES)
    first = shelves[0]
    assert isinstance(first, data_manager.ShelfRow)
    assert (first.code, first.shelf_type, first.price, first.owner_id) == ("M01", "M", 3000, None)


def test_load_collection_skips_blank_rows(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    sheet = workbook[constants.SheetName.OWNERS.value]
    for column, value in enumerate(data_manager.serialize_owner(_owner("OW5")), start=1):
        sheet.cell(row=5, column=column, value=value)

    owners = data_manager.load_collection(workbook, constants.SheetName.OWNERS)
    assert [owner.owner_id for owner in owners] == ["OW5"]


def test_save_collection_round_trips_through_disk(master_workbook_path):
    """Records written with save_collection should survive a save and reload."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.save_collection(
        workbook,
        constants.SheetName.OWNERS,
        [_owner("OW1", balance=6400), _owner("OW2", shelf_codes=())],
    )
    data_manager.save_workbook(workbook, master_workbook_path)

    reloaded = data_manager.refresh_workbook(master_workbook_path)
    owners = data_manager.load_collection(reloaded, constants.SheetName.OWNERS)
    assert owners[0] == _owner("OW1", balance=6400)
    assert owners[1].shelf_codes == ()
    assert owners[1].bank_account is None


def test_save_collection_replaces_previous_rows(master_workbook_path):
    """Shrinking a collection should not leave stale rows or gaps behind."""

    workbook = data_manager.open_workbook(master_workbook_path)
    name = constants.SheetName.OWNERS
    data_manager.save_collection(workbook, name, [_owner("OW1"), _owner("OW2"), _owner("OW3")])
    data_manager.save_collection(workbook, name, [_owner("OW2")])
    data_manager.save_collection(workbook, name, [_owner("OW2"), _owner("OW4")])

    sheet = workbook[name.value]
    raw_ids = [row[0] for row in sheet.iter_rows(min_row=2, values_only=True)]
    assert raw_ids == ["OW2", "OW4"]


def test_save_workbook_with_destination_creates_copy(master_workbook_path, tmp_path):
    """Providing a destination should create a new file independent of the source."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.save_collection(workbook, constants.SheetName.OWNERS, [_owner("OW9")])
    copy_path = tmp_path / "copies" / "copy.xlsx"
    data_manager.save_workbook(workbook, destination=copy_path)

    copy = openpyxl.load_workbook(copy_path)
    rows = list(copy[constants.SheetName.OWNERS.value].iter_rows(min_row=2, values_only=True))
    assert rows[0][0] == "OW9"


def test_serialize_owner_joins_shelf_codes():
    row = data_manager.serialize_owner(_owner("OW1"))
    assert row[4] == "S01,S02"


def test_deserialize_owner_splits_shelf_codes():
    raw = ["OW1", "MP001", "Kim", "BR001", "S01, L02", 1200.0, "active", None, "", "2025-01-02"]
    owner = data_manager.deserialize_owner(raw)
    assert owner.shelf_codes == ("S01", "L02")
    assert owner.balance == 1200
    assert owner.phone is None
    assert owner.bank_account is None


def test_serialize_book_preserves_column_order():
    book = data_manager.BookRow(
        item_id="BK1",
        branch_id="BR001",
        shelf_code="S01",
        owner_id="OW1",
        owner_number="MP001",
        price=12000,
        quantity=1,
        condition="used",
        availability="available",
        created_at="2025-01-02",
        isbn="9788937460784",
        title="Demian",
        author="Hermann Hesse",
        publisher=None,
        pub_year="2009",
        original_price=12000,
    )
    row = data_manager.serialize_book(book)
    assert len(row) == len(data_manager.SHEET_COLUMNS[constants.SheetName.BOOKS.value])
    assert row[:3] == ["BK1", "BR001", "S01"]
    assert row[-6:] == ["9788937460784", "Demian", "Hermann Hesse", None, "2009", 12000]
    assert data_manager.deserialize_book(row) == book
    assert book.display_name == "Demian"
    assert book.category is constants.ItemCategory.BOOK


def test_deserialize_goods_handles_house_items():
    """Goods without an owner keep a ``None`` owner and an empty owner number."""

    raw = ["GD1", "BR001", None, None, None, 15000, 10, "podo", "available", "2025-01-02", "Eco bag"]
    goods = data_manager.deserialize_goods(raw)
    assert goods.owner_id is None
    assert goods.owner_number == ""
    assert goods.display_name == "Eco bag"
    assert goods.category is constants.ItemCategory.GOODS


def test_deserialize_sale_coerces_amounts():
    raw = [
        "SL1", "BK1", "book", "Demian", 12000.0, "used", 6000.0, 6000.0,
        "OW1", "MP001", "BR001", "card", "completed", "2025-03-14T10:30:00+00:00", None,
    ]
    sale = data_manager.deserialize_sale(raw)
    assert (sale.price, sale.shop_amount, sale.owner_amount) == (12000, 6000, 6000)
    assert sale.refunded_at is None


def test_notification_round_trip_keeps_read_flag():
    row = data_manager.NotificationRow("NF1", "sale", "Sold", "owner", "OW1", True, "2025-03-14T10:30:00+00:00")
    assert data_manager.deserialize_notification(data_manager.serialize_notification(row)) == row


def test_serialize_collection_rejects_unknown_collection():
    with pytest.raises(ValueError):
        data_manager.serialize_collection("Unknown", [])
